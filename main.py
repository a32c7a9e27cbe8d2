import os
import asyncio
import logging
from typing import Optional, List
from fastapi import FastAPI, HTTPException, Depends, status, WebSocket, WebSocketDisconnect, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from datetime import timedelta

import database
from database import get_db, now_utc, object_id
from errors import TrackingError, UpstreamFailure, Forbidden
from schemas import (
    User as UserSchema,
    Region as RegionSchema,
    AdminCreate,
    AdminStats,
    Principal,
    Role,
    TransportCreate,
    MissionSnapshot,
    PositionSample,
    UpcomingTrip,
    DashboardStats,
    WeeklyDay,
)
import accounts
import assignments
import consolidator
import missions
import notifications
from tracking import MissionFeed, PositionPipeline

# Environment
SECRET_KEY = os.getenv("SECRET_KEY", "supersecret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# The first account signing up with this email may take the admin role
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("atypik")

# Auth utils
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# FastAPI app
app = FastAPI(title="Atypik Driver API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One feed per process; websocket clients subscribe to it, the pipeline publishes to it
feed = MissionFeed()
_pipeline: Optional[PositionPipeline] = None


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    if isinstance(exc, UpstreamFailure):
        return JSONResponse(status_code=exc.status_code, content={"detail": "Service temporarily unavailable, try again"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = now_utc() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def haversine(origin: dict, destination: dict) -> float:
    """Straight-line distance in meters, used when no routing service is wired in."""
    from math import radians, sin, cos, atan2, sqrt
    R = 6371000.0
    dLat = radians(destination["lat"] - origin["lat"])
    dLon = radians(destination["lng"] - origin["lng"])
    a = sin(dLat / 2) ** 2 + cos(radians(origin["lat"])) * cos(radians(destination["lat"])) * sin(dLon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return R * c


def get_distance():
    return haversine


def get_pipeline(db=Depends(get_db)) -> PositionPipeline:
    global _pipeline
    if _pipeline is None or _pipeline.db is not db:
        _pipeline = PositionPipeline(db, feed=feed)
    return _pipeline


def principal_from_token(token: str, db) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db["user"].find_one({"email": email})
    if not user:
        raise credentials_exception
    return Principal(
        id=str(user["_id"]),
        role=user.get("role", Role.parent.value),
        email=user.get("email"),
        displayName=user.get("displayName"),
        status=user.get("status"),
        regionId=user.get("regionId"),
        selectedDriverId=user.get("selectedDriverId"),
    )


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> Principal:
    return principal_from_token(token, db)


def require_role(*roles: Role):
    async def checker(user: Principal = Depends(get_current_user)) -> Principal:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return checker


# Root
@app.get("/")
def read_root():
    return {"message": "Atypik Driver Backend Running"}


def can_bootstrap_admin(db, email: str) -> bool:
    if not ADMIN_EMAIL or email.lower() != ADMIN_EMAIL.lower():
        return False
    return db["user"].count_documents({"role": Role.admin.value}) == 0


# Auth routes
@app.post("/auth/signup", response_model=Token)
def signup(user: UserSchema, db=Depends(get_db)):
    if user.role == Role.admin and not can_bootstrap_admin(db, user.email):
        raise HTTPException(status_code=403, detail="Admins are created by other admins")
    if db["user"].find_one({"email": user.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_dict = user.model_dump(mode="json")
    user_dict["password"] = get_password_hash(user.password or "changeme")
    user_dict["selectedDriverId"] = None
    if user.role == Role.driver:
        # drivers wait for an admin before they can be assigned
        user_dict["status"] = "pending"
    database.create_document("user", user_dict, database=db)
    token = create_access_token({"sub": user.email})
    return Token(access_token=token)


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = db["user"].find_one({"email": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    token = create_access_token({"sub": user["email"]})
    return Token(access_token=token)


@app.get("/auth/me", response_model=Principal)
def me(current_user: Principal = Depends(get_current_user)):
    return current_user


@app.delete("/auth/me")
def delete_me(current_user: Principal = Depends(get_current_user), db=Depends(get_db)):
    return {"deleted": accounts.delete_account(db, current_user.id)}


# Transports
@app.post("/transports", status_code=201)
def create_transport(
    payload: TransportCreate,
    user: Principal = Depends(require_role(Role.parent)),
    db=Depends(get_db),
    distance=Depends(get_distance),
):
    _id = missions.create_transport(db, user, payload, distance=distance)
    return {"_id": _id}


@app.get("/transports")
def list_transports(user: Principal = Depends(require_role(Role.parent)), db=Depends(get_db)):
    return missions.list_transports(db, user.id)


@app.post("/transports/{tid}/cancel")
def cancel_transport(tid: str, user: Principal = Depends(require_role(Role.parent, Role.admin)), db=Depends(get_db)):
    return missions.cancel_transport(db, tid, actor=user)


@app.post("/transports/{tid}/complete")
def complete_transport(tid: str, user: Principal = Depends(get_current_user), db=Depends(get_db)):
    return missions.complete_transport(db, tid, actor=user)


class CommentBody(BaseModel):
    text: str


@app.post("/transports/{tid}/comments", status_code=201)
def comment_transport(tid: str, body: CommentBody, user: Principal = Depends(require_role(Role.parent)), db=Depends(get_db)):
    return missions.add_transport_comment(db, tid, user, body.text)


# Missions
class StartMissionBody(BaseModel):
    transportId: str
    snapshot: Optional[MissionSnapshot] = None


@app.post("/missions", status_code=201)
def start_mission(body: StartMissionBody, user: Principal = Depends(require_role(Role.driver)), db=Depends(get_db)):
    mission_id = missions.start_mission(db, body.transportId, user.id, body.snapshot)
    return {"_id": mission_id, "status": "started"}


@app.get("/missions/active")
def active_missions(user: Principal = Depends(require_role(Role.driver)), db=Depends(get_db)):
    return missions.active_missions_for_driver(db, user.id)


@app.post("/missions/{mid}/positions", status_code=202)
def post_position(
    mid: str,
    sample: PositionSample,
    user: Principal = Depends(require_role(Role.driver)),
    pipeline: PositionPipeline = Depends(get_pipeline),
):
    # the device keeps sampling either way, so a dropped sample is not an error
    return {"accepted": pipeline.ingest(mid, sample, driver_id=user.id)}


@app.get("/missions/{mid}/positions")
def position_history(
    mid: str,
    user: Principal = Depends(get_current_user),
    db=Depends(get_db),
    pipeline: PositionPipeline = Depends(get_pipeline),
):
    check_mission_access(db, mid, user)
    return pipeline.history(mid)


@app.post("/missions/{mid}/complete")
def complete_mission(
    mid: str,
    user: Principal = Depends(require_role(Role.driver)),
    db=Depends(get_db),
    pipeline: PositionPipeline = Depends(get_pipeline),
):
    mission = missions.complete_mission(db, mid, driver_id=user.id)
    pipeline.forget(mission["id"])
    feed.publish(mission["id"], {"type": "completed", "missionId": mission["id"]})
    return mission


def check_mission_access(db, mission_id: str, user: Principal) -> dict:
    mission = missions.get_mission(db, mission_id)
    if user.role == Role.admin or mission.get("driverId") == user.id:
        return mission
    if user.role == Role.parent:
        transport = db["transport"].find_one({"_id": object_id(mission.get("transportId"), "Transport")})
        if transport and transport.get("ownerId") == user.id:
            return mission
    raise Forbidden("Mission not visible to this user")


# Parent dashboard
@app.get("/dashboard/upcoming", response_model=List[UpcomingTrip])
def dashboard_upcoming(user: Principal = Depends(require_role(Role.parent)), db=Depends(get_db)):
    return consolidator.upcoming_trips(db, user.id)


@app.get("/dashboard/stats", response_model=DashboardStats)
def dashboard_stats(user: Principal = Depends(require_role(Role.parent)), db=Depends(get_db)):
    return consolidator.dashboard_stats(db, user.id)


@app.get("/dashboard/week", response_model=List[WeeklyDay])
def dashboard_week(user: Principal = Depends(require_role(Role.parent)), db=Depends(get_db)):
    return consolidator.weekly_schedule(db, user.id)


# Admin
@app.get("/admin/assignments")
def admin_assignments(user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return assignments.assignment_board(db)


class AssignBody(BaseModel):
    driverId: str


@app.put("/admin/parents/{pid}/driver")
def admin_assign_driver(pid: str, body: AssignBody, user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return assignments.assign_driver(db, pid, body.driverId)


@app.post("/admin/drivers/{did}/approve")
def admin_approve_driver(did: str, user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return assignments.approve_driver(db, did)


@app.get("/admin/stats", response_model=AdminStats)
def admin_stats(user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return accounts.admin_stats(db)


@app.post("/admin/users", status_code=201)
def admin_create_admin(payload: AdminCreate, user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return accounts.create_admin(db, payload, get_password_hash)


@app.post("/admin/users/{uid}/promote")
def admin_promote(uid: str, user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return accounts.promote_to_admin(db, uid)


@app.get("/regions")
def list_regions(user: Principal = Depends(get_current_user), db=Depends(get_db)):
    return assignments.list_regions(db)


@app.post("/regions", status_code=201)
def create_region(payload: RegionSchema, user: Principal = Depends(require_role(Role.admin)), db=Depends(get_db)):
    return {"_id": assignments.create_region(db, payload)}


# Notifications
@app.get("/notifications")
def list_notifications(user: Principal = Depends(get_current_user), db=Depends(get_db)):
    return notifications.list_notifications(db, user.id)


@app.post("/notifications/{nid}/read")
def read_notification(nid: str, user: Principal = Depends(get_current_user), db=Depends(get_db)):
    return {"updated": notifications.mark_read(db, nid, user.id)}


# Live mission updates via WebSocket
@app.websocket("/ws/missions/{mid}")
async def mission_socket(websocket: WebSocket, mid: str, token: str = Query(...), db=Depends(get_db)):
    try:
        user = principal_from_token(token, db)
        mission = check_mission_access(db, mid, user)
    except (HTTPException, TrackingError):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    mission_id = str(mission["_id"])
    subscription = feed.subscribe(mission_id, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))
    try:
        if mission.get("currentPosition"):
            await websocket.send_json(jsonable_encoder({"type": "position", "missionId": mission_id, "position": mission["currentPosition"]}))
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event))
            if event.get("type") == "completed":
                break
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("mission socket %s closed", mid, exc_info=True)
    finally:
        subscription.close()


# Database diagnostics
@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = os.getenv("DATABASE_NAME") or "❌ Not Set"
            collections = database.db.list_collection_names()
            response["collections"] = collections[:10]
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️  Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
