"""
Database Schemas for Atypik Driver

Each Pydantic model corresponds to a MongoDB collection (collection name is the lowercase of the class name).
"""
from enum import Enum
from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, List, Literal
from datetime import datetime, date as CalendarDay


class Role(str, Enum):
    parent = "parent"
    driver = "driver"
    admin = "admin"


DriverStatus = Literal["pending", "verified"]
TransportType = Literal["aller", "retour", "aller-retour"]
TransportStatus = Literal["programmed", "in-progress", "completed", "cancelled"]
MissionStatus = Literal["started", "in_progress", "completed"]
NotificationType = Literal["trip_started", "trip_completed", "review_received", "schedule_change", "driver_message"]

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


def normalize_time(value: str) -> str:
    """Zero-pad the hour (8:05 -> 08:05) so stored times sort in clock order."""
    hours, minutes = value.split(":")
    return f"{int(hours):02d}:{minutes}"


class Location(BaseModel):
    address: str = Field(..., min_length=3)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class User(BaseModel):
    email: EmailStr
    password: Optional[str] = None
    displayName: Optional[str] = None
    avatar: Optional[str] = None
    role: Role = Role.parent
    status: Optional[DriverStatus] = None
    regionId: Optional[str] = None
    selectedDriverId: Optional[str] = None


class Region(BaseModel):
    name: str = Field(..., min_length=1)


class Principal(BaseModel):
    """The authenticated caller, resolved once from the bearer token."""

    id: str
    role: Role
    email: Optional[str] = None
    displayName: Optional[str] = None
    status: Optional[DriverStatus] = None
    regionId: Optional[str] = None
    selectedDriverId: Optional[str] = None


class Comment(BaseModel):
    authorId: str
    text: str
    created_at: datetime


class Transport(BaseModel):
    ownerId: str
    childId: str
    childName: str
    date: datetime  # midnight of the scheduled day
    time: str = Field(..., pattern=TIME_PATTERN)
    transportType: TransportType = "aller-retour"
    from_: Location = Field(..., alias="from")
    to: Location
    distanceMeters: float = 0
    driverId: Optional[str] = None
    status: TransportStatus = "programmed"
    motif: Optional[str] = None
    waitingTime: int = Field(0, ge=0, le=240)
    activeMissionId: Optional[str] = None
    comments: List[Comment] = []

    model_config = {"populate_by_name": True}

    @field_validator("time")
    @classmethod
    def pad_time(cls, v: str) -> str:
        return normalize_time(v)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class Position(BaseModel):
    lat: float
    lng: float
    timestamp: datetime


class ActiveMission(BaseModel):
    transportId: str
    driverId: str
    childName: str
    from_: Location = Field(..., alias="from")
    to: Location
    status: MissionStatus = "started"
    startTime: datetime
    endTime: Optional[datetime] = None
    currentPosition: Optional[Position] = None

    model_config = {"populate_by_name": True}

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class GPSPosition(BaseModel):
    driverId: Optional[str] = None
    missionId: str
    lat: float
    lng: float
    timestamp: datetime
    speed: Optional[float] = None  # km/h
    heading: Optional[float] = None  # degrees


class Notification(BaseModel):
    userId: str
    type: NotificationType
    title: str
    message: str = ""
    read: bool = False
    actionUrl: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"


# Request bodies


class TransportCreate(BaseModel):
    childId: str = Field(..., min_length=1)
    childName: str = "Child"
    date: CalendarDay
    time: str = Field(..., pattern=TIME_PATTERN)
    transportType: TransportType = "aller-retour"
    from_: Location = Field(..., alias="from")
    to: Location
    distanceMeters: Optional[float] = None
    motif: Optional[str] = None
    waitingTime: int = Field(0, ge=0, le=240)

    model_config = {"populate_by_name": True}

    @field_validator("time")
    @classmethod
    def pad_time(cls, v: str) -> str:
        return normalize_time(v)


class MissionSnapshot(BaseModel):
    childName: Optional[str] = None
    from_: Optional[Location] = Field(None, alias="from")
    to: Optional[Location] = None

    model_config = {"populate_by_name": True}


class PositionSample(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    speed: Optional[float] = None
    heading: Optional[float] = Field(None, ge=0, lt=360)


# Views


class UpcomingTrip(BaseModel):
    id: str
    childName: str
    driverName: str
    driverAvatar: Optional[str] = None
    from_: Optional[dict] = Field(None, alias="from")
    to: Optional[dict] = None
    scheduledTime: datetime
    status: TransportStatus
    transportType: Optional[TransportType] = None
    distance: float = 0
    missionId: Optional[str] = None
    currentPosition: Optional[Position] = None

    model_config = {"populate_by_name": True}


class DashboardStats(BaseModel):
    totalTrips: int = 0
    completedTrips: int = 0
    upcomingTrips: int = 0
    activeTrips: int = 0


class ScheduledTrip(BaseModel):
    id: str
    childName: str
    time: str
    type: Literal["aller", "retour"]
    status: TransportStatus
    from_: Optional[dict] = Field(None, alias="from")
    to: Optional[dict] = None

    model_config = {"populate_by_name": True}


class WeeklyDay(BaseModel):
    date: datetime
    trips: List[ScheduledTrip] = []


class AdminStats(BaseModel):
    totalUsers: int = 0
    newUsersThisMonth: int = 0
    pendingDrivers: int = 0
    transportsToday: int = 0
    transportsInProgress: int = 0


class AdminCreate(BaseModel):
    email: EmailStr
    displayName: Optional[str] = None
