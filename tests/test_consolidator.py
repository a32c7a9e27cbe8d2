from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

import consolidator
import missions
from errors import UpstreamFailure
from schemas import PositionSample
from tracking import PositionPipeline
from tests.conftest import NOW, TODAY, add_transport, add_user, days


def test_started_mission_shows_as_in_progress(db, parent_id, driver_id):
    tid = add_transport(db, parent_id, driver_id=driver_id)
    missions.start_mission(db, tid, driver_id, now=NOW)

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert len(trips) == 1
    assert trips[0].id == tid
    assert trips[0].status == "in-progress"
    assert trips[0].driverName == "Karim"
    assert trips[0].scheduledTime == datetime.combine(TODAY, datetime.min.time()).replace(hour=8)


def test_live_mission_status_overrides_stored_status(db, parent_id, driver_id):
    tid = add_transport(db, parent_id)
    mid = missions.start_mission(db, tid, driver_id, now=NOW)
    PositionPipeline(db, min_interval=0).ingest(mid, PositionSample(lat=48.86, lng=2.34, timestamp=NOW))
    # a stale write puts the transport back to programmed
    db["transport"].update_one({"_id": ObjectId(tid)}, {"$set": {"status": "programmed"}})

    [trip] = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert trip.status == "in-progress"
    assert trip.missionId == mid
    assert trip.currentPosition.lat == 48.86


@pytest.mark.parametrize("status", ["completed", "cancelled"])
def test_terminal_transports_never_listed(db, parent_id, driver_id, status):
    tid = add_transport(db, parent_id)
    missions.start_mission(db, tid, driver_id, now=NOW)
    db["transport"].update_one({"_id": ObjectId(tid)}, {"$set": {"status": status}})
    add_transport(db, parent_id, day=days(3), status=status)

    assert consolidator.upcoming_trips(db, parent_id, now=NOW) == []


def test_active_and_scheduled_entry_merge_into_one(db, parent_id, driver_id):
    tid = add_transport(db, parent_id, day=TODAY)
    add_transport(db, parent_id, day=days(1))
    missions.start_mission(db, tid, driver_id, now=NOW)

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert [t.id for t in trips].count(tid) == 1
    assert len(trips) == 2


def test_active_mission_beyond_the_window_comes_first(db, parent_id, driver_id):
    scheduled = [add_transport(db, parent_id, day=days(i)) for i in range(5)]
    late = add_transport(db, parent_id, day=days(9))
    missions.start_mission(db, late, driver_id, now=NOW)

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert len(trips) == 5
    assert trips[0].id == late
    assert trips[0].status == "in-progress"
    assert [t.id for t in trips[1:]] == scheduled[:4]
    assert consolidator.next_trip(trips).id == late


def test_several_active_missions_keep_discovery_order(db, parent_id, driver_id):
    first = add_transport(db, parent_id, day=days(2), child="Lea")
    second = add_transport(db, parent_id, day=days(1), child="Tom")
    add_transport(db, parent_id, day=TODAY, child="Zoe")
    missions.start_mission(db, first, driver_id, now=NOW)
    missions.start_mission(db, second, driver_id, now=NOW + timedelta(minutes=3))

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert [t.childName for t in trips] == ["Lea", "Tom", "Zoe"]
    assert [t.status for t in trips] == ["in-progress", "in-progress", "programmed"]


def test_ordering_without_active_missions(db, parent_id):
    add_transport(db, parent_id, day=days(2), child="B")
    add_transport(db, parent_id, day=days(-1), child="past")
    add_transport(db, parent_id, day=TODAY, child="A")

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert [t.childName for t in trips] == ["A", "B"]
    assert all(t.status == "programmed" for t in trips)
    assert consolidator.next_trip(trips) is None


def test_same_day_trips_follow_the_clock(db, parent_id):
    add_transport(db, parent_id, day=days(1), at="16:30", child="afternoon")
    add_transport(db, parent_id, day=days(1), at="8:00", child="morning")

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)
    assert [t.childName for t in trips] == ["morning", "afternoon"]
    assert trips[0].scheduledTime.hour == 8

    [first] = consolidator.upcoming_trips(db, parent_id, limit=1, now=NOW)
    assert first.childName == "morning"

    [day] = consolidator.weekly_schedule(db, parent_id, now=NOW)
    assert [(t.childName, t.time) for t in day.trips] == [("morning", "08:00"), ("afternoon", "16:30")]


def test_other_parents_missions_are_ignored(db, parent_id, driver_id):
    other_parent = add_user(db, "other@atypik.io", "parent", regionId="R1")
    theirs = add_transport(db, other_parent)
    missions.start_mission(db, theirs, driver_id, now=NOW)

    assert consolidator.upcoming_trips(db, parent_id, now=NOW) == []


def test_missing_driver_falls_back_to_placeholder(db, parent_id):
    add_transport(db, parent_id, driver_id=str(ObjectId()))
    add_transport(db, parent_id, driver_id="not-an-object-id")
    add_transport(db, parent_id)

    trips = consolidator.upcoming_trips(db, parent_id, now=NOW)

    assert [t.driverName for t in trips] == [consolidator.DRIVER_PLACEHOLDER] * 3


def test_driver_lookup_failure_degrades(db, parent_id, driver_id, monkeypatch):
    add_transport(db, parent_id, driver_id=driver_id)
    original = mongomock.Collection.find_one

    def flaky(self, *args, **kwargs):
        if self.name == "user":
            raise ServerSelectionTimeoutError("no primary")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "find_one", flaky)

    [trip] = consolidator.upcoming_trips(db, parent_id, now=NOW)
    assert trip.driverName == consolidator.DRIVER_PLACEHOLDER


def test_query_failure_is_reported_whole(db, parent_id, monkeypatch):
    add_transport(db, parent_id)

    def down(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no primary")

    monkeypatch.setattr(mongomock.Collection, "find", down)

    with pytest.raises(UpstreamFailure):
        consolidator.upcoming_trips(db, parent_id, now=NOW)


def test_dashboard_stats(db, parent_id, driver_id):
    live = add_transport(db, parent_id, day=TODAY)
    add_transport(db, parent_id, day=days(1))
    add_transport(db, parent_id, day=days(-2), status="completed")
    add_transport(db, parent_id, day=days(4), status="cancelled")
    missions.start_mission(db, live, driver_id, now=NOW)

    stats = consolidator.dashboard_stats(db, parent_id, now=NOW)

    assert stats.totalTrips == 4
    assert stats.activeTrips == 1
    assert stats.upcomingTrips == 1
    assert stats.completedTrips == 1


def test_weekly_schedule_groups_by_day(db, parent_id):
    # 2026-10-19 is a Monday, so the week runs from Sunday the 18th to Saturday the 24th
    add_transport(db, parent_id, day=TODAY, at="16:30", transportType="retour", child="Lea")
    add_transport(db, parent_id, day=TODAY, at="08:00", transportType="aller-retour", child="Tom")
    add_transport(db, parent_id, day=days(-1), child="Sunday")
    add_transport(db, parent_id, day=days(6), child="next week")

    week = consolidator.weekly_schedule(db, parent_id, now=NOW)

    assert [d.date.date() for d in week] == [days(-1), TODAY]
    assert [(t.childName, t.type) for t in week[1].trips] == [("Tom", "aller"), ("Lea", "retour")]
