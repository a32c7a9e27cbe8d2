from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

import missions
from errors import NotFound
from schemas import PositionSample
from tracking import MissionFeed, PositionPipeline
from tests.conftest import NOW, add_transport, add_user


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def mission_id(db, parent_id, driver_id):
    tid = add_transport(db, parent_id)
    return missions.start_mission(db, tid, driver_id, now=NOW)


def _sample(lat, lng, minutes=0):
    return PositionSample(lat=lat, lng=lng, timestamp=NOW + timedelta(minutes=minutes))


def _mission(db, mid):
    return db["activemission"].find_one({"_id": ObjectId(mid)})


def test_two_samples_update_current_position_and_history(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0)

    assert pipeline.ingest(mission_id, _sample(48.85, 2.35, 1))
    assert pipeline.ingest(mission_id, _sample(48.86, 2.36, 2))

    current = _mission(db, mission_id)["currentPosition"]
    assert (current["lat"], current["lng"]) == (48.86, 2.36)
    assert current["timestamp"] == NOW + timedelta(minutes=2)
    assert db["gpsposition"].count_documents({"missionId": mission_id}) == 2
    assert [p["lat"] for p in pipeline.history(mission_id)] == [48.85, 48.86]


def test_first_sample_moves_mission_in_progress(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0)
    assert _mission(db, mission_id)["status"] == "started"

    pipeline.ingest(mission_id, _sample(48.85, 2.35))

    assert _mission(db, mission_id)["status"] == "in_progress"


def test_late_sample_does_not_rewind_current_position(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0, enforce_monotonic=True)
    pipeline.ingest(mission_id, _sample(48.86, 2.36, 5))

    assert pipeline.ingest(mission_id, _sample(48.85, 2.35, 1))

    current = _mission(db, mission_id)["currentPosition"]
    assert current["lat"] == 48.86
    assert db["gpsposition"].count_documents({"missionId": mission_id}) == 2


def test_without_monotonic_ordering_last_ingested_wins(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0, enforce_monotonic=False)
    pipeline.ingest(mission_id, _sample(48.86, 2.36, 5))
    pipeline.ingest(mission_id, _sample(48.85, 2.35, 1))

    assert _mission(db, mission_id)["currentPosition"]["lat"] == 48.85


def test_samples_closer_than_min_interval_are_dropped(db, mission_id):
    clock = FakeClock()
    pipeline = PositionPipeline(db, min_interval=2.0, clock=clock)

    assert pipeline.ingest(mission_id, _sample(48.85, 2.35, 0))
    clock.advance(0.5)
    assert not pipeline.ingest(mission_id, _sample(48.851, 2.351, 0))
    clock.advance(2.0)
    assert pipeline.ingest(mission_id, _sample(48.852, 2.352, 1))

    assert db["gpsposition"].count_documents({"missionId": mission_id}) == 2


def test_samples_for_completed_or_unknown_missions_are_dropped(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0)
    missions.complete_mission(db, mission_id, now=NOW)

    assert not pipeline.ingest(mission_id, _sample(48.85, 2.35))
    assert not pipeline.ingest(str(ObjectId()), _sample(48.85, 2.35))
    assert not pipeline.ingest("garbage", _sample(48.85, 2.35))
    assert db["gpsposition"].count_documents({}) == 0


def test_store_failure_drops_sample_and_next_one_heals(db, mission_id, monkeypatch):
    pipeline = PositionPipeline(db, min_interval=0)
    original = mongomock.Collection.insert_one

    def unavailable(self, *args, **kwargs):
        if self.name == "gpsposition":
            raise AutoReconnect("primary stepped down")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "insert_one", unavailable)
    assert pipeline.ingest(mission_id, _sample(48.85, 2.35, 1)) is False
    assert _mission(db, mission_id)["currentPosition"] is None

    monkeypatch.undo()
    assert pipeline.ingest(mission_id, _sample(48.86, 2.36, 2)) is True
    assert _mission(db, mission_id)["currentPosition"]["lat"] == 48.86


def test_history_of_unknown_mission(db):
    with pytest.raises(NotFound):
        PositionPipeline(db).history(str(ObjectId()))


def test_feed_delivers_until_closed(db, mission_id):
    feed = MissionFeed()
    pipeline = PositionPipeline(db, feed=feed, min_interval=0)
    received = []

    sub = feed.subscribe(mission_id, received.append)
    pipeline.ingest(mission_id, _sample(48.85, 2.35, 1))
    sub.close()
    pipeline.ingest(mission_id, _sample(48.86, 2.36, 2))

    assert len(received) == 1
    assert received[0]["position"]["lat"] == 48.85
    assert feed.subscriber_count(mission_id) == 0


def test_feed_drops_failing_subscriber(db, mission_id):
    feed = MissionFeed()
    good = []

    def broken(event):
        raise RuntimeError("socket gone")

    feed.subscribe(mission_id, broken)
    with feed.subscribe(mission_id, good.append):
        feed.publish(mission_id, {"type": "position"})
        assert feed.subscriber_count(mission_id) == 1
    assert good == [{"type": "position"}]
    assert feed.subscriber_count(mission_id) == 0


def test_sample_from_another_driver_is_dropped(db, mission_id):
    intruder = add_user(db, "other.driver@atypik.io", "driver", regionId="R9", status="verified")
    clock = FakeClock()
    pipeline = PositionPipeline(db, min_interval=2.0, clock=clock)

    assert pipeline.ingest(mission_id, _sample(10.0, 10.0), driver_id=intruder) is False

    mission = _mission(db, mission_id)
    assert mission["currentPosition"] is None
    assert mission["status"] == "started"
    assert db["gpsposition"].count_documents({}) == 0
    # the dropped sample does not use up the owner's window
    assert pipeline.ingest(mission_id, _sample(48.85, 2.35), driver_id=mission["driverId"]) is True


def test_dropped_sample_for_completed_mission_frees_its_window(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=2.0, clock=FakeClock())
    assert pipeline.ingest(mission_id, _sample(48.85, 2.35))
    missions.complete_mission(db, mission_id, now=NOW)

    assert not pipeline.ingest(mission_id, _sample(48.86, 2.36, 1))
    assert mission_id not in pipeline._last_accepted


def test_mission_id_case_does_not_split_history(db, mission_id):
    pipeline = PositionPipeline(db, min_interval=0)

    assert pipeline.ingest(mission_id.upper(), _sample(48.85, 2.35, 1))

    assert len(pipeline.history(mission_id)) == 1
