"""
Parent dashboard views built from `transport` and `activemission`.

When both collections describe the same transport, the live mission wins: its entry
is reported `in-progress` and placed ahead of the scheduled ones.
"""
import logging
import os
import re
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from database import now_utc, store_errors
from missions import LIVE_MISSION, TERMINAL_TRANSPORT, start_of_day
from schemas import DashboardStats, ScheduledTrip, UpcomingTrip, WeeklyDay

logger = logging.getLogger(__name__)

UPCOMING_TRIPS_LIMIT = int(os.getenv("UPCOMING_TRIPS_LIMIT", "5"))
DRIVER_PLACEHOLDER = "Assigned driver"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def scheduled_time(transport: dict) -> datetime:
    day: datetime = transport["date"]
    match = _TIME_RE.match(transport.get("time") or "")
    if not match:
        return day
    return day.replace(hour=int(match.group(1)), minute=int(match.group(2)), second=0, microsecond=0)


class _DriverNames:
    """Driver profile lookups, cached per consolidation. Failures fall back to a placeholder."""

    def __init__(self, db):
        self.db = db
        self._cache: Dict[str, tuple] = {}

    def get(self, driver_id: Optional[str]) -> tuple:
        if not driver_id:
            return DRIVER_PLACEHOLDER, None
        if driver_id not in self._cache:
            name, avatar = DRIVER_PLACEHOLDER, None
            try:
                doc = self.db["user"].find_one({"_id": ObjectId(driver_id)})
                if doc:
                    name = doc.get("displayName") or doc.get("name") or DRIVER_PLACEHOLDER
                    avatar = doc.get("avatar")
            except (PyMongoError, InvalidId, TypeError):
                logger.warning("driver %s lookup failed, using placeholder", driver_id, exc_info=True)
            self._cache[driver_id] = (name, avatar)
        return self._cache[driver_id]


def _trip(transport: dict, status: str, drivers: _DriverNames, mission: Optional[dict] = None) -> UpcomingTrip:
    name, avatar = drivers.get(transport.get("driverId"))
    return UpcomingTrip(
        id=str(transport["_id"]),
        childName=transport.get("childName", ""),
        driverName=name,
        driverAvatar=avatar,
        from_=transport.get("from"),
        to=transport.get("to"),
        scheduledTime=scheduled_time(transport),
        status=status,
        transportType=transport.get("transportType"),
        distance=transport.get("distanceMeters") or 0,
        missionId=str(mission["_id"]) if mission else None,
        currentPosition=(mission or {}).get("currentPosition"),
    )


def upcoming_trips(db, parent_id: str, limit: int = UPCOMING_TRIPS_LIMIT, now: Optional[datetime] = None) -> List[UpcomingTrip]:
    """At most `limit` trips for a parent: live missions first, then by scheduled date."""
    now = now or now_utc()
    drivers = _DriverNames(db)

    with store_errors("load upcoming trips"):
        scheduled = list(
            db["transport"]
            .find({"ownerId": parent_id, "date": {"$gte": start_of_day(now)}})
            .sort([("date", 1), ("time", 1)])
            .limit(limit)
        )
        live_missions = list(db["activemission"].find({"status": {"$in": LIVE_MISSION}}).sort("startTime", 1))

    live_by_transport: Dict[str, dict] = {}
    for mission in live_missions:
        live_by_transport.setdefault(mission.get("transportId"), mission)

    active: "OrderedDict[str, UpcomingTrip]" = OrderedDict()
    for mission in live_missions:
        transport_id = mission.get("transportId")
        if not transport_id or transport_id in active:
            continue
        try:
            transport = db["transport"].find_one({"_id": ObjectId(transport_id)})
        except (PyMongoError, InvalidId, TypeError):
            logger.warning("transport %s for mission %s unavailable", transport_id, mission["_id"], exc_info=True)
            continue
        if not transport or transport.get("ownerId") != parent_id:
            continue
        if transport.get("status") in TERMINAL_TRANSPORT:
            continue
        active[transport_id] = _trip(transport, "in-progress", drivers, mission)

    trips = list(active.values())
    for transport in scheduled:
        transport_id = str(transport["_id"])
        if transport_id in active or transport.get("status") in TERMINAL_TRANSPORT:
            continue
        mission = live_by_transport.get(transport_id)
        trips.append(_trip(transport, "in-progress" if mission else "programmed", drivers, mission))

    return trips[:limit]


def next_trip(trips: List[UpcomingTrip]) -> Optional[UpcomingTrip]:
    for trip in trips:
        if trip.status == "in-progress":
            return trip
    return None


def dashboard_stats(db, parent_id: str, now: Optional[datetime] = None) -> DashboardStats:
    now = now or now_utc()
    today = start_of_day(now)
    stats = DashboardStats()
    with store_errors("load dashboard stats"):
        transports = list(db["transport"].find({"ownerId": parent_id}, {"date": 1, "status": 1}))
        ids = [str(t["_id"]) for t in transports]
        live = set()
        if ids:
            live = {m["transportId"] for m in db["activemission"].find({"transportId": {"$in": ids}, "status": {"$in": LIVE_MISSION}}, {"transportId": 1})}

    for t in transports:
        stats.totalTrips += 1
        if str(t["_id"]) in live:
            stats.activeTrips += 1
        elif t.get("status") == "completed":
            stats.completedTrips += 1
        elif t.get("status") != "cancelled" and t["date"] >= today:
            stats.upcomingTrips += 1
    return stats


def weekly_schedule(db, parent_id: str, now: Optional[datetime] = None) -> List[WeeklyDay]:
    """Transports of the current Sunday-to-Saturday week, grouped by day."""
    now = now or now_utc()
    week_start = start_of_day(now) - timedelta(days=(now.weekday() + 1) % 7)
    week_end = week_start + timedelta(days=7)
    with store_errors("load weekly schedule"):
        cursor = db["transport"].find({"ownerId": parent_id, "date": {"$gte": week_start, "$lt": week_end}}).sort([("date", 1), ("time", 1)])
        transports = list(cursor)

    days: "OrderedDict[datetime, WeeklyDay]" = OrderedDict()
    for t in transports:
        day = days.setdefault(t["date"], WeeklyDay(date=t["date"]))
        kind = t.get("transportType") or "aller"
        day.trips.append(
            ScheduledTrip(
                id=str(t["_id"]),
                childName=t.get("childName", ""),
                time=t.get("time", ""),
                type="aller" if kind == "aller-retour" else kind,
                status=t.get("status") or "programmed",
                from_=t.get("from"),
                to=t.get("to"),
            )
        )
    return list(days.values())
