"""
Live position ingestion.

Every accepted sample is appended to `gpsposition` (never updated afterwards) and copied
onto the mission's `currentPosition`. Delivery is best effort: a sample that cannot be
written is dropped and the next one brings the mission back up to date.
"""
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from database import create_document, now_utc, object_id, serialize, store_errors
from errors import NotFound, TrackingError
from missions import advance_to_in_progress
from schemas import GPSPosition, PositionSample

logger = logging.getLogger(__name__)

MIN_POSITION_INTERVAL_SECONDS = float(os.getenv("MIN_POSITION_INTERVAL_SECONDS", "2.0"))
ENFORCE_MONOTONIC_POSITIONS = os.getenv("ENFORCE_MONOTONIC_POSITIONS", "1") not in ("0", "false", "False")


class Subscription:
    def __init__(self, feed: "MissionFeed", mission_id: str, callback: Callable[[dict], None]):
        self.feed = feed
        self.mission_id = mission_id
        self.callback = callback
        self.active = True

    def close(self):
        if self.active:
            self.active = False
            self.feed._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class MissionFeed:
    """Fan-out of position updates to whoever subscribed to a mission."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscription]] = {}

    def subscribe(self, mission_id: str, callback: Callable[[dict], None]) -> Subscription:
        sub = Subscription(self, mission_id, callback)
        with self._lock:
            self._subs.setdefault(mission_id, []).append(sub)
        return sub

    def _remove(self, sub: Subscription):
        with self._lock:
            subs = self._subs.get(sub.mission_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.mission_id, None)

    def subscriber_count(self, mission_id: str) -> int:
        with self._lock:
            return len(self._subs.get(mission_id, []))

    def publish(self, mission_id: str, event: dict):
        with self._lock:
            subs = list(self._subs.get(mission_id, []))
        for sub in subs:
            try:
                sub.callback(event)
            except Exception:
                logger.warning("dropping subscriber on mission %s", mission_id, exc_info=True)
                sub.close()


class PositionPipeline:
    def __init__(
        self,
        db,
        feed: Optional[MissionFeed] = None,
        min_interval: float = MIN_POSITION_INTERVAL_SECONDS,
        enforce_monotonic: bool = ENFORCE_MONOTONIC_POSITIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.feed = feed
        self.min_interval = min_interval
        self.enforce_monotonic = enforce_monotonic
        self.clock = clock
        self._last_accepted: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _throttled(self, mission_id: str) -> bool:
        if self.min_interval <= 0:
            return False
        now = self.clock()
        with self._lock:
            last = self._last_accepted.get(mission_id)
            if last is not None and now - last < self.min_interval:
                return True
            self._last_accepted[mission_id] = now
        return False

    def forget(self, mission_id: str):
        with self._lock:
            self._last_accepted.pop(mission_id, None)

    def ingest(self, mission_id: str, sample: PositionSample, driver_id: Optional[str] = None) -> bool:
        """Record one sample. Returns False when the sample was dropped.

        Samples for unknown or completed missions, or posted by a driver other than the
        mission's own, are dropped before they count against the rate guard.
        """
        ts: datetime = sample.timestamp or now_utc()
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
        try:
            oid = object_id(mission_id, "Mission")
            mission_id = str(oid)
            mission = self.db["activemission"].find_one({"_id": oid}, {"status": 1, "driverId": 1})
            if mission is None or mission.get("status") == "completed":
                logger.warning("sample for unknown or completed mission %s dropped", mission_id)
                self.forget(mission_id)
                return False
            if driver_id is not None and mission.get("driverId") != driver_id:
                logger.warning("driver %s posted a sample for mission %s of driver %s, dropped",
                               driver_id, mission_id, mission.get("driverId"))
                return False
            if self._throttled(mission_id):
                logger.debug("sample for mission %s throttled", mission_id)
                return False

            point = GPSPosition(
                driverId=driver_id or mission.get("driverId"),
                missionId=mission_id,
                lat=sample.lat,
                lng=sample.lng,
                timestamp=ts,
                speed=sample.speed,
                heading=sample.heading,
            )
            create_document("gpsposition", point, database=self.db)

            current = {"lat": sample.lat, "lng": sample.lng, "timestamp": ts}
            query = {"_id": oid, "status": {"$ne": "completed"}}
            if self.enforce_monotonic:
                # an older sample still lands in history but never rewinds the live position
                query["$or"] = [{"currentPosition": None}, {"currentPosition.timestamp": {"$lte": ts}}]
            res = self.db["activemission"].update_one(query, {"$set": {"currentPosition": current, "updated_at": now_utc()}})
            if res.matched_count == 0:
                logger.info("late sample for mission %s kept in history only", mission_id)

            advance_to_in_progress(self.db, mission_id)
        except PyMongoError:
            logger.warning("store write failed, sample for mission %s dropped", mission_id, exc_info=True)
            self.forget(mission_id)
            return False
        except TrackingError as e:
            logger.warning("sample for mission %s dropped: %s", mission_id, e.detail)
            self.forget(mission_id)
            return False

        if self.feed is not None and res.matched_count:
            self.feed.publish(mission_id, {"type": "position", "missionId": mission_id, "position": current})
        return True

    def history(self, mission_id: str):
        oid = object_id(mission_id, "Mission")
        with store_errors("load position history"):
            if self.db["activemission"].count_documents({"_id": oid}) == 0:
                raise NotFound("Mission not found")
            cursor = self.db["gpsposition"].find({"missionId": str(oid)}).sort("timestamp", 1)
            return [serialize(d) for d in cursor]
