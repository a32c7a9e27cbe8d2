import logging
import sys
from datetime import datetime, date, time, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import create_document
from schemas import Transport


NOW = datetime(2026, 10, 19, 9, 30)
TODAY = NOW.date()

HOME = {"address": "12 rue des Lilas, Paris", "lat": 48.85, "lng": 2.35}
SCHOOL = {"address": "Ecole Jules Ferry, Paris", "lat": 48.87, "lng": 2.33}


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)


@pytest.fixture
def db():
    return mongomock.MongoClient()["atypik_test"]


def add_user(db, email, role, **extra):
    doc = {"email": email, "role": role, "displayName": extra.pop("displayName", email.split("@")[0].title())}
    doc.update(extra)
    return create_document("user", doc, database=db)


def add_transport(db, owner_id, day: date = TODAY, status="programmed", at="08:00", driver_id=None, child="Lea", **extra):
    transport = Transport(
        ownerId=owner_id,
        childId="child-1",
        childName=child,
        date=datetime.combine(day, time.min),
        time=at,
        transportType=extra.pop("transportType", "aller"),
        from_=HOME,
        to=SCHOOL,
        distanceMeters=extra.pop("distanceMeters", 2500),
        driverId=driver_id,
        status=status,
    )
    doc = transport.to_document()
    doc.update(extra)
    return create_document("transport", doc, database=db)


@pytest.fixture
def parent_id(db):
    return add_user(db, "parent@atypik.io", "parent", regionId="R1")


@pytest.fixture
def driver_id(db):
    return add_user(db, "driver@atypik.io", "driver", regionId="R1", status="verified", displayName="Karim")


@pytest.fixture
def client(db):
    import main

    main.app.dependency_overrides[database.get_db] = lambda: db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def auth_headers(email):
    import main

    return {"Authorization": f"Bearer {main.create_access_token({'sub': email})}"}


def days(n):
    return TODAY + timedelta(days=n)
