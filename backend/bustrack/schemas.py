from datetime import datetime, timezone
from typing import Annotated, ClassVar, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .models import Bus, BusStatus, Rider, Role


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Rows hold naive UTC; attach the zone so JSON carries it."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Auth

class LoginRequest(BaseModel):
    email: str
    password: str


class RiderOut(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    student_id: Optional[str] = None
    phone: Optional[str] = None
    bus_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_rider(cls, rider: Rider) -> "RiderOut":
        return cls(
            id=rider.id,
            name=rider.name,
            email=rider.email,
            role=rider.role,
            student_id=rider.student_id,
            phone=rider.phone,
            bus_id=rider.assigned_bus_id,
            created_at=as_utc(rider.created_at),
        )


class LoginResponse(BaseModel):
    success: bool = True
    session_token: str
    expires_at: datetime
    rider: RiderOut


# Buses

class OccupantOut(BaseModel):
    id: int
    name: str
    email: str
    student_id: Optional[str] = None


class BusOut(BaseModel):
    bus_id: str
    bus_number: str
    route_name: Optional[str] = None
    capacity: Optional[int] = None
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: Optional[float] = None
    status: BusStatus
    updated_at: Optional[datetime] = None
    occupant_count: int = 0

    @classmethod
    def from_bus(cls, bus: Bus) -> "BusOut":
        return cls(
            bus_id=bus.bus_id,
            bus_number=bus.bus_number,
            route_name=bus.route_name,
            capacity=bus.capacity,
            driver_id=bus.driver_id,
            driver_name=bus.driver_name,
            latitude=bus.latitude,
            longitude=bus.longitude,
            speed=bus.speed,
            status=bus.status,
            updated_at=as_utc(bus.updated_at),
            occupant_count=len(bus.occupants),
        )


class BusDetail(BusOut):
    occupants: List[OccupantOut] = []

    @classmethod
    def from_bus(cls, bus: Bus) -> "BusDetail":
        base = BusOut.from_bus(bus).model_dump()
        base["occupants"] = [
            OccupantOut(id=r.id, name=r.name, email=r.email, student_id=r.student_id)
            for r in bus.occupants
        ]
        return cls(**base)


class BusCreate(BaseModel):
    # Presence is checked by the store so a missing number is a ValidationError, not a 422
    bus_id: Optional[str] = None
    bus_number: Optional[str] = None
    route_name: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)


class BusUpdate(BaseModel):
    bus_number: Optional[str] = None
    route_name: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)
    status: Optional[BusStatus] = None
    driver_id: Optional[int] = None


# Riders

class RiderCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Role] = None
    student_id: Optional[str] = None
    phone: Optional[str] = None
    bus_number: Optional[str] = None


class RiderUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Role] = None
    student_id: Optional[str] = None
    phone: Optional[str] = None
    bus_number: Optional[str] = None


class BulkImportRequest(BaseModel):
    users: List[RiderCreate] = []


class BusOption(BaseModel):
    bus_id: str
    bus_number: str
    route_name: Optional[str] = None


# Location submissions

class PositionReport(BaseModel):
    kind: Literal["position"]
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: Optional[float] = Field(None, ge=0)
    accuracy: Optional[float] = Field(None, ge=0)
    status: Optional[BusStatus] = None

    def to_fields(self) -> dict:
        fields = {"latitude": self.latitude, "longitude": self.longitude}
        if self.speed is not None:
            fields["speed"] = self.speed
        if self.accuracy is not None:
            fields["accuracy"] = self.accuracy
        if self.status is not None:
            fields["status"] = self.status.value
        return fields


class StatusReport(BaseModel):
    """Lifecycle change only, e.g. a driver stopping tracking; position stays put."""

    kind: Literal["status"]
    status: BusStatus

    def to_fields(self) -> dict:
        return {"status": self.status.value}


LocationSubmission = Annotated[Union[PositionReport, StatusReport], Field(discriminator="kind")]


class AdminLocationOverride(BaseModel):
    """Full replacement of a bus's position; never status-only."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: float = Field(0.0, ge=0)
    status: BusStatus = BusStatus.moving

    def to_fields(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "status": self.status.value,
        }


class SubmissionResult(BaseModel):
    success: bool = True
    message: str = "Location updated"
    tracking_count: int
    timestamp: datetime


# Routing

# OpenRouteService directions profiles; the value becomes part of the request path
RoutingProfile = Literal[
    "driving-car", "driving-hgv",
    "cycling-regular", "cycling-road", "cycling-mountain", "cycling-electric",
    "foot-walking", "foot-hiking", "wheelchair",
]
ROUTING_PROFILES = frozenset(get_args(RoutingProfile))


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RouteResult(BaseModel):
    distance_km: float
    duration_min: int
    duration_min_exact: float
    polyline: List[LatLng]
    is_fallback: bool


# Real-time events

class Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event: ClassVar[str] = ""

    def envelope(self) -> dict:
        return {"event": self.event, "data": self.model_dump(mode="json", by_alias=True)}


class BusLiveUpdate(Event):
    event: ClassVar[str] = "bus-live-update"

    bus_id: str
    bus_number: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: Optional[float] = None
    status: BusStatus
    timestamp: datetime

    @classmethod
    def from_bus(cls, bus: Bus):
        return cls(
            bus_id=bus.bus_id,
            bus_number=bus.bus_number,
            latitude=bus.latitude,
            longitude=bus.longitude,
            speed=bus.speed,
            status=bus.status,
            timestamp=as_utc(bus.updated_at),
        )


class BusAdminUpdate(BusLiveUpdate):
    """Same payload as the room event, sent on the global admin feed."""

    event: ClassVar[str] = "bus-update"


class TrackingCount(Event):
    """Number of riders assigned to the bus, not of connected subscribers."""

    event: ClassVar[str] = "tracking-count"

    bus_id: str
    count: int


class DriverStatus(Event):
    event: ClassVar[str] = "driver-status"

    driver_id: int
    status: Literal["online", "offline"]
    timestamp: datetime


class RoomRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bus_id: str = Field(..., min_length=1)


class InboundMessage(BaseModel):
    event: str
    data: dict = {}

    @model_validator(mode="before")
    @classmethod
    def _null_data(cls, values):
        if isinstance(values, dict) and values.get("data") is None:
            values = {**values, "data": {}}
        return values
