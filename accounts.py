"""
Account lifecycle: admin accounts, account deletion and the admin counters.

Deleting an account is the only path that removes transports and GPS history. The
cascade runs as separate deletes with the user document last, so an interrupted
deletion can simply be retried.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from assignments import public_profile
from database import create_document, now_utc, object_id, store_errors
from errors import Conflict, NotFound
from missions import LIVE_MISSION, start_of_day
from schemas import AdminCreate, AdminStats, Role

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()_+"


def generate_password(length: int = 14) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def _load(db, user_id: str) -> dict:
    oid = object_id(user_id, "User")
    with store_errors("load user"):
        user = db["user"].find_one({"_id": oid})
    if not user:
        raise NotFound("User not found")
    return user


def promote_to_admin(db, user_id: str) -> dict:
    user = _load(db, user_id)
    with store_errors("promote user"):
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": Role.admin.value, "updated_at": now_utc()}})
    logger.info("user %s promoted to admin", user_id)
    user["role"] = Role.admin.value
    return public_profile(user)


def create_admin(db, payload: AdminCreate, hash_password: Callable[[str], str]) -> dict:
    """Create an admin account with a generated password, returned once to the caller."""
    with store_errors("create admin"):
        if db["user"].find_one({"email": payload.email}):
            raise Conflict("Email already registered")
        password = generate_password()
        user_id = create_document(
            "user",
            {
                "email": payload.email,
                "displayName": payload.displayName,
                "role": Role.admin.value,
                "password": hash_password(password),
                "selectedDriverId": None,
            },
            database=db,
        )
    logger.info("admin %s created", payload.email)
    return {"id": user_id, "email": payload.email, "password": password}


def delete_account(db, user_id: str) -> Dict[str, int]:
    """Remove a user and everything that belongs to them. Returns per-collection counts."""
    user = _load(db, user_id)
    removed: Dict[str, int] = {}
    with store_errors("delete account"):
        transports = [t["_id"] for t in db["transport"].find({"$or": [{"ownerId": user_id}, {"driverId": user_id}]}, {"_id": 1})]
        transport_ids = [str(t) for t in transports]
        missions = [
            m["_id"]
            for m in db["activemission"].find({"$or": [{"driverId": user_id}, {"transportId": {"$in": transport_ids}}]}, {"_id": 1})
        ]
        mission_ids = [str(m) for m in missions]

        removed["gpsposition"] = db["gpsposition"].delete_many(
            {"$or": [{"driverId": user_id}, {"missionId": {"$in": mission_ids}}]}
        ).deleted_count
        removed["activemission"] = db["activemission"].delete_many({"_id": {"$in": missions}}).deleted_count
        removed["transport"] = db["transport"].delete_many({"_id": {"$in": transports}}).deleted_count
        removed["notification"] = db["notification"].delete_many({"userId": user_id}).deleted_count
        if user.get("role") == Role.driver.value:
            db["user"].update_many({"selectedDriverId": user_id}, {"$set": {"selectedDriverId": None}})
        removed["user"] = db["user"].delete_one({"_id": user["_id"]}).deleted_count

    logger.info("account %s deleted: %s", user_id, removed)
    return removed


def admin_stats(db, now: Optional[datetime] = None) -> AdminStats:
    now = now or now_utc()
    today = start_of_day(now)
    month_start = today.replace(day=1)
    with store_errors("load admin stats"):
        return AdminStats(
            totalUsers=db["user"].count_documents({}),
            newUsersThisMonth=db["user"].count_documents({"created_at": {"$gte": month_start}}),
            pendingDrivers=db["user"].count_documents({"role": Role.driver.value, "status": "pending"}),
            transportsToday=db["transport"].count_documents({"date": {"$gte": today, "$lt": today + timedelta(days=1)}}),
            transportsInProgress=db["activemission"].count_documents({"status": {"$in": LIVE_MISSION}}),
        )
