"""Best-effort in-app notifications. Delivery failures are logged and never raised."""
import logging
from typing import Optional

from database import create_document, serialize
from schemas import Notification

logger = logging.getLogger(__name__)


def notify(db, user_id: Optional[str], type_: str, title: str, message: str = "", priority: str = "medium") -> Optional[str]:
    if not user_id:
        return None
    try:
        doc = Notification(userId=user_id, type=type_, title=title, message=message, priority=priority)
        return create_document("notification", doc, database=db)
    except Exception:
        logger.warning("notification %s to %s not delivered", type_, user_id, exc_info=True)
        return None


def list_notifications(db, user_id: str, limit: int = 20):
    cursor = db["notification"].find({"userId": user_id}).sort("created_at", -1).limit(limit)
    return [serialize(d) for d in cursor]


def mark_read(db, notification_id: str, user_id: str) -> bool:
    from bson import ObjectId
    from bson.errors import InvalidId
    try:
        oid = ObjectId(notification_id)
    except InvalidId:
        return False
    res = db["notification"].update_one({"_id": oid, "userId": user_id}, {"$set": {"read": True}})
    return res.matched_count > 0
