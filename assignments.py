"""
Parent/driver pairing, constrained by region and driver verification.

A parent may only be paired with a verified driver of their own region. An existing
`selectedDriverId` that no longer satisfies this is hidden from the assignment board
but left in the database until an admin assigns someone else.
"""
import logging
from typing import Iterable, List, Optional

from database import create_document, object_id, serialize, store_errors
from errors import InvalidState, NotFound
from notifications import notify
from schemas import Region, Role

logger = logging.getLogger(__name__)


def is_eligible(parent: dict, driver: dict) -> bool:
    region = parent.get("regionId")
    return (
        driver.get("role") == Role.driver.value
        and bool(region)
        and driver.get("regionId") == region
        and driver.get("status") == "verified"
    )


def eligible_drivers(parent: dict, drivers: Iterable[dict]) -> List[dict]:
    return [d for d in drivers if is_eligible(parent, d)]


def resolve_selection(parent: dict, drivers: Iterable[dict]) -> Optional[str]:
    """The parent's current driver if still eligible, otherwise None."""
    selected = parent.get("selectedDriverId")
    if not selected:
        return None
    for d in eligible_drivers(parent, drivers):
        if str(d["_id"]) == selected:
            return selected
    return None


def public_profile(user: dict) -> dict:
    out = serialize(user)
    out.pop("password", None)
    return out


def assignment_board(db) -> List[dict]:
    with store_errors("load users"):
        parents = list(db["user"].find({"role": Role.parent.value}).sort("created_at", -1))
        drivers = list(db["user"].find({"role": Role.driver.value}))

    board = []
    for parent in parents:
        candidates = eligible_drivers(parent, drivers)
        board.append({
            "parent": public_profile(parent),
            "eligibleDrivers": [public_profile(d) for d in candidates],
            "selectedDriverId": resolve_selection(parent, candidates),
        })
    return board


def _load_user(db, user_id: str, role: Role) -> dict:
    oid = object_id(user_id, role.value.capitalize())
    with store_errors("load user"):
        doc = db["user"].find_one({"_id": oid})
    if not doc or doc.get("role") != role.value:
        raise NotFound(f"{role.value.capitalize()} not found")
    return doc


def assign_driver(db, parent_id: str, driver_id: str) -> dict:
    parent = _load_user(db, parent_id, Role.parent)
    driver = _load_user(db, driver_id, Role.driver)
    if not is_eligible(parent, driver):
        raise InvalidState("Driver must be verified and in the parent's region")
    with store_errors("assign driver"):
        db["user"].update_one({"_id": parent["_id"]}, {"$set": {"selectedDriverId": driver_id}})
    logger.info("driver %s assigned to parent %s", driver_id, parent_id)
    parent["selectedDriverId"] = driver_id
    return public_profile(parent)


def approve_driver(db, driver_id: str) -> dict:
    driver = _load_user(db, driver_id, Role.driver)
    with store_errors("approve driver"):
        db["user"].update_one({"_id": driver["_id"]}, {"$set": {"status": "verified"}})
    logger.info("driver %s verified", driver_id)
    notify(db, driver_id, "driver_message", "Account approved", "Your driver account has been verified")
    driver["status"] = "verified"
    return public_profile(driver)


def list_regions(db) -> List[dict]:
    with store_errors("list regions"):
        return [serialize(r) for r in db["region"].find({}).sort("name", 1)]


def create_region(db, payload: Region) -> str:
    with store_errors("create region"):
        return create_document("region", payload, database=db)
