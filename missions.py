"""
Mission state machine.

Transport:      programmed -> in-progress (mission start) | cancelled | completed
ActiveMission:  started -> in_progress -> completed (terminal, kept as history)

A transport carries `activeMissionId` while one of its missions is live. Claiming that
field with a conditional update is what keeps two devices from starting the same
transport twice; the mission document is only inserted once the claim succeeded.
"""
import logging
from datetime import datetime, time as TimeOfDay
from typing import Callable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import create_document, now_utc, object_id, serialize, store_errors
from errors import Conflict, Forbidden, InvalidState, NotFound, UpstreamFailure
from notifications import notify
from schemas import ActiveMission, MissionSnapshot, Principal, Role, Transport, TransportCreate

logger = logging.getLogger(__name__)

TERMINAL_TRANSPORT = ["completed", "cancelled"]
LIVE_MISSION = ["started", "in_progress"]

DistanceFn = Callable[[dict, dict], float]


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), TimeOfDay.min)


# Transports


def get_transport(db, transport_id: str) -> dict:
    oid = object_id(transport_id, "Transport")
    with store_errors("load transport"):
        doc = db["transport"].find_one({"_id": oid})
    if not doc:
        raise NotFound("Transport not found")
    return doc


def list_transports(db, owner_id: str):
    with store_errors("list transports"):
        cursor = db["transport"].find({"ownerId": owner_id}).sort([("date", 1), ("time", 1)])
        return [serialize(d) for d in cursor]


def create_transport(db, owner: Principal, payload: TransportCreate, distance: Optional[DistanceFn] = None, now: Optional[datetime] = None) -> str:
    if owner.role != Role.parent:
        raise Forbidden("Only parents can schedule transports")
    now = now or now_utc()
    if payload.date < now.date():
        raise InvalidState("Transport date must be today or later")

    origin = payload.from_.model_dump()
    destination = payload.to.model_dump()
    meters = payload.distanceMeters
    if meters is None and distance is not None:
        try:
            meters = float(distance(origin, destination))
        except Exception as e:
            raise UpstreamFailure("Distance lookup failed, try again") from e

    transport = Transport(
        ownerId=owner.id,
        childId=payload.childId,
        childName=payload.childName,
        date=datetime.combine(payload.date, TimeOfDay.min),
        time=payload.time,
        transportType=payload.transportType,
        from_=payload.from_,
        to=payload.to,
        distanceMeters=meters or 0,
        driverId=owner.selectedDriverId,
        motif=payload.motif,
        waitingTime=payload.waitingTime,
    )
    with store_errors("create transport"):
        transport_id = create_document("transport", transport.to_document(), database=db)
    logger.info("transport %s scheduled by %s for %s", transport_id, owner.id, payload.date)

    notify(
        db,
        owner.selectedDriverId,
        "schedule_change",
        "Transport scheduled",
        f"{payload.childName} - {payload.transportType} on {payload.date:%d/%m/%Y} at {payload.time}",
    )
    return transport_id


def _check_owner(transport: dict, actor: Optional[Principal]):
    if actor is None or actor.role == Role.admin:
        return
    if actor.role != Role.parent or transport.get("ownerId") != actor.id:
        raise Forbidden("Transport belongs to another parent")


def cancel_transport(db, transport_id: str, actor: Optional[Principal] = None, now: Optional[datetime] = None) -> dict:
    """Cancel a transport scheduled today or later. An in-flight mission is left running."""
    transport = get_transport(db, transport_id)
    _check_owner(transport, actor)
    now = now or now_utc()
    if transport["date"] < start_of_day(now):
        raise InvalidState("Cannot cancel a past transport")
    if transport.get("status") in TERMINAL_TRANSPORT:
        raise InvalidState(f"Transport is already {transport['status']}")

    with store_errors("cancel transport"):
        res = db["transport"].update_one(
            {"_id": transport["_id"], "status": {"$nin": TERMINAL_TRANSPORT}},
            {"$set": {"status": "cancelled", "updated_at": now_utc()}},
        )
    if res.modified_count == 0:
        raise InvalidState("Transport changed state while cancelling")
    logger.info("transport %s cancelled", transport_id)

    notify(db, transport.get("driverId"), "schedule_change", "Transport cancelled",
           f"{transport.get('childName')} on {transport['date']:%d/%m/%Y} at {transport.get('time')}")
    transport["status"] = "cancelled"
    return serialize(transport)


def complete_transport(db, transport_id: str, actor: Optional[Principal] = None) -> dict:
    transport = get_transport(db, transport_id)
    if actor is not None and actor.role == Role.driver:
        if transport.get("driverId") not in (None, actor.id):
            raise Forbidden("Transport is assigned to another driver")
    else:
        _check_owner(transport, actor)
    if transport.get("status") in TERMINAL_TRANSPORT:
        raise InvalidState(f"Transport is already {transport['status']}")
    with store_errors("complete transport"):
        res = db["transport"].update_one(
            {"_id": transport["_id"], "status": {"$nin": TERMINAL_TRANSPORT}},
            {"$set": {"status": "completed", "updated_at": now_utc()}},
        )
    if res.modified_count == 0:
        raise InvalidState("Transport changed state while completing")
    transport["status"] = "completed"
    return serialize(transport)


def add_transport_comment(db, transport_id: str, author: Principal, text: str, now: Optional[datetime] = None) -> dict:
    # comments are only open once the trip is behind us
    text = (text or "").strip()
    if not text:
        raise InvalidState("Comment is empty")
    transport = get_transport(db, transport_id)
    _check_owner(transport, author)
    now = now or now_utc()
    if transport["date"] >= start_of_day(now) and transport.get("status") != "completed":
        raise InvalidState("Comments are only allowed on past or completed transports")
    comment = {"authorId": author.id, "text": text, "created_at": now}
    with store_errors("comment transport"):
        db["transport"].update_one({"_id": transport["_id"]}, {"$push": {"comments": comment}})
    return comment


# Missions


def get_mission(db, mission_id: str) -> dict:
    oid = object_id(mission_id, "Mission")
    with store_errors("load mission"):
        doc = db["activemission"].find_one({"_id": oid})
    if not doc:
        raise NotFound("Mission not found")
    return doc


def active_mission_for_transport(db, transport_id: str) -> Optional[dict]:
    with store_errors("load active mission"):
        return db["activemission"].find_one({"transportId": transport_id, "status": {"$in": LIVE_MISSION}})


def active_missions_for_driver(db, driver_id: str):
    with store_errors("list active missions"):
        cursor = db["activemission"].find({"driverId": driver_id, "status": {"$in": LIVE_MISSION}}).sort("startTime", 1)
        return [serialize(d) for d in cursor]


def _release_stale_claim(db, transport: dict):
    stale = transport.get("activeMissionId")
    if not stale:
        return
    mission = db["activemission"].find_one({"_id": ObjectId(stale)}) if ObjectId.is_valid(stale) else None
    if mission is None or mission.get("status") == "completed":
        db["transport"].update_one({"_id": transport["_id"], "activeMissionId": stale}, {"$set": {"activeMissionId": None}})
        logger.warning("released stale mission claim %s on transport %s", stale, transport["_id"])


def start_mission(db, transport_id: str, driver_id: str, snapshot: Optional[MissionSnapshot] = None, now: Optional[datetime] = None) -> str:
    """Create the live mission for a transport and return its id.

    Raises Conflict when the transport already has a non-completed mission and
    InvalidState when the transport is cancelled or completed.
    """
    transport = get_transport(db, transport_id)
    if transport.get("status") in TERMINAL_TRANSPORT:
        raise InvalidState(f"Transport is {transport['status']}")
    if transport.get("driverId") and transport["driverId"] != driver_id:
        raise Forbidden("Transport is assigned to another driver")
    if active_mission_for_transport(db, transport_id):
        raise Conflict("A mission is already active for this transport")

    now = now or now_utc()
    mission_id = ObjectId()
    with store_errors("start mission"):
        _release_stale_claim(db, transport)
        claimed = db["transport"].find_one_and_update(
            {"_id": transport["_id"], "activeMissionId": None, "status": {"$nin": TERMINAL_TRANSPORT}},
            {"$set": {"activeMissionId": str(mission_id), "status": "in-progress", "updated_at": now}},
        )
        if claimed is None:
            current = db["transport"].find_one({"_id": transport["_id"]}) or {}
            if current.get("status") in TERMINAL_TRANSPORT:
                raise InvalidState(f"Transport is {current['status']}")
            raise Conflict("A mission is already active for this transport")

        snapshot = snapshot or MissionSnapshot()
        mission = ActiveMission(
            transportId=transport_id,
            driverId=driver_id,
            childName=snapshot.childName or transport.get("childName", ""),
            from_=snapshot.from_ or transport["from"],
            to=snapshot.to or transport["to"],
            status="started",
            startTime=now,
        )
        doc = mission.to_document()
        doc["_id"] = mission_id
        try:
            create_document("activemission", doc, database=db)
        except PyMongoError:
            db["transport"].update_one(
                {"_id": transport["_id"], "activeMissionId": str(mission_id)},
                {"$set": {"activeMissionId": None, "status": claimed.get("status", "programmed")}},
            )
            raise

    logger.info("mission %s started on transport %s by driver %s", mission_id, transport_id, driver_id)
    notify(db, transport.get("ownerId"), "trip_started", "Trip started",
           f"{mission.childName} is on the way", priority="high")
    return str(mission_id)


def advance_to_in_progress(db, mission_id: str) -> bool:
    """started -> in_progress; a no-op for any other status."""
    oid = object_id(mission_id, "Mission")
    with store_errors("advance mission"):
        res = db["activemission"].update_one({"_id": oid, "status": "started"}, {"$set": {"status": "in_progress", "updated_at": now_utc()}})
    if res.modified_count:
        logger.info("mission %s in progress", mission_id)
    return res.modified_count > 0


def complete_mission(db, mission_id: str, driver_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Mark a mission completed, then mark its transport completed unless it was cancelled.

    The two writes are not atomic: if the transport update fails the mission stays
    completed and the transport catches up on the next explicit completion.
    """
    existing = get_mission(db, mission_id)
    if driver_id is not None and existing.get("driverId") != driver_id:
        raise Forbidden("Mission belongs to another driver")

    now = now or now_utc()
    with store_errors("complete mission"):
        updated = db["activemission"].find_one_and_update(
            {"_id": existing["_id"], "status": {"$ne": "completed"}},
            {"$set": {"status": "completed", "endTime": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    if updated is None:
        raise InvalidState("Mission is already completed")
    logger.info("mission %s completed", mission_id)

    transport_id = updated.get("transportId")
    try:
        toid = ObjectId(transport_id)
        db["transport"].update_one(
            {"_id": toid, "status": {"$nin": TERMINAL_TRANSPORT}},
            {"$set": {"status": "completed", "updated_at": now}},
        )
        db["transport"].update_one({"_id": toid, "activeMissionId": str(updated["_id"])}, {"$set": {"activeMissionId": None}})
        transport = db["transport"].find_one({"_id": toid}) or {}
    except (PyMongoError, InvalidId, TypeError):
        logger.warning("transport %s not synced after mission %s completed", transport_id, mission_id, exc_info=True)
        transport = {}

    notify(db, transport.get("ownerId"), "trip_completed", "Trip completed",
           f"{updated.get('childName')} has arrived")
    return serialize(updated)
