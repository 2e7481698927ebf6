import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import bcrypt
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings as default_settings
from .errors import Conflict, NotFound, TrackerError, ValidationError
from .models import Bus, BusStatus, Rider, RiderSession, Role

logger = logging.getLogger(__name__)

# Columns that may change after a bus is created; everything goes through update_bus_state
BUS_STATE_FIELDS = {
    "bus_number", "route_name", "capacity", "driver_id", "driver_name",
    "latitude", "longitude", "speed", "accuracy", "status",
}


def utcnow() -> datetime:
    """Naive UTC, the way rows store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash password using bcrypt directly"""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password using bcrypt directly"""
    try:
        return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError:
        return False


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_role(role) -> str:
    try:
        return Role(role).value
    except ValueError:
        raise ValidationError(f"Invalid role: {role}")


class DatabaseStore:
    """Buses, riders and sessions on top of one SQLAlchemy session."""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or default_settings

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Sessions

    def login(self, email: str, password: str) -> Optional[Dict]:
        """Check credentials and open a session"""
        rider = self.db.query(Rider).filter(Rider.email == _clean(email)).first()
        if not rider or not verify_password(password, rider.password_hash):
            return None

        token = secrets.token_urlsafe(24)
        expires = utcnow() + timedelta(minutes=self.settings.session_expire_minutes)
        self.db.add(RiderSession(rider_id=rider.id, token=token, expires_at=expires, is_active=True))
        rider.last_login_at = utcnow()
        self._commit()
        self.db.refresh(rider)
        logger.info("Login: rider=%s role=%s", rider.id, rider.role)
        return {"token": token, "expires": expires, "rider": rider}

    def get_session(self, token: Optional[str]) -> Optional[Rider]:
        """Rider behind a live session token"""
        if not token:
            return None
        session = self.db.query(RiderSession).filter(
            RiderSession.token == token,
            RiderSession.is_active == True,
            RiderSession.expires_at > utcnow()
        ).first()
        if not session:
            return None
        return session.rider

    def logout(self, token: str) -> bool:
        session = self.db.query(RiderSession).filter(
            RiderSession.token == token,
            RiderSession.is_active == True
        ).first()
        if not session:
            return False
        session.is_active = False
        self._commit()
        return True

    # Bus reads

    def find_bus(self, bus_id: str) -> Optional[Bus]:
        return self.db.query(Bus).filter(Bus.bus_id == bus_id).first()

    def get_bus(self, bus_id: str) -> Bus:
        bus = self.find_bus(bus_id)
        if not bus:
            raise NotFound("Bus not found")
        return bus

    def get_bus_by_number(self, bus_number: str) -> Optional[Bus]:
        return self.db.query(Bus).filter(Bus.bus_number == bus_number).first()

    def get_bus_for_driver(self, driver_id: int) -> Optional[Bus]:
        return self.db.query(Bus).filter(Bus.driver_id == driver_id).first()

    def list_bus_options(self) -> List[Bus]:
        """Every bus by number, for assignment dropdowns"""
        return self.db.query(Bus).order_by(Bus.bus_number).all()

    def list_buses(self, status: Optional[str] = None, search: Optional[str] = None) -> List[Bus]:
        query = self.db.query(Bus)
        if status and status != "all":
            query = query.filter(Bus.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Bus.bus_number.ilike(pattern),
                Bus.route_name.ilike(pattern),
                Bus.driver_name.ilike(pattern),
            ))
        return query.order_by(Bus.updated_at.desc()).all()

    def list_live_buses(self, window_minutes: Optional[int] = None) -> List[Bus]:
        """Buses that reported within the active window."""
        if window_minutes is None:
            window_minutes = self.settings.active_window_minutes
        since = utcnow() - timedelta(minutes=window_minutes)
        return self.db.query(Bus).filter(Bus.updated_at >= since).order_by(Bus.updated_at.desc()).all()

    # Bus writes

    def update_bus_state(self, bus: Bus, touch: bool = True, **fields) -> Bus:
        """
        The one path that mutates a bus row. Last write wins.
        touch=True stamps updated_at, which is what location reports do; CRUD edits leave it.
        """
        unknown = set(fields) - BUS_STATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown bus fields: {', '.join(sorted(unknown))}")

        latitude = fields.get("latitude", bus.latitude)
        longitude = fields.get("longitude", bus.longitude)
        if (latitude is None) != (longitude is None):
            raise ValidationError("Latitude and longitude must be set together")
        if "status" in fields:
            try:
                fields["status"] = BusStatus(fields["status"]).value
            except ValueError:
                raise ValidationError(f"Invalid status: {fields['status']}")

        for name, value in fields.items():
            setattr(bus, name, value)
        if touch:
            bus.updated_at = utcnow()
        self._commit()
        self.db.refresh(bus)
        return bus

    def create_bus(self, bus_id: Optional[str], bus_number: Optional[str],
                   route_name: Optional[str] = None, capacity: Optional[int] = None) -> Bus:
        bus_id, bus_number = _clean(bus_id), _clean(bus_number)
        if not bus_id or not bus_number:
            raise ValidationError("Bus ID and Bus Number are required")

        existing = self.db.query(Bus).filter(or_(Bus.bus_id == bus_id, Bus.bus_number == bus_number)).first()
        if existing:
            raise Conflict("Bus with this ID or number already exists")

        bus = Bus(
            bus_id=bus_id,
            bus_number=bus_number,
            route_name=_clean(route_name),
            capacity=capacity or 40,
            status=BusStatus.stopped.value,
        )
        self.db.add(bus)
        try:
            self._commit()
        except IntegrityError:
            raise Conflict("Bus with this ID or number already exists")
        self.db.refresh(bus)
        logger.info("Bus created: %s (%s)", bus.bus_id, bus.bus_number)
        return bus

    def update_bus(self, bus_id: str, bus_number: Optional[str] = None, route_name: Optional[str] = None,
                   capacity: Optional[int] = None, status: Optional[str] = None,
                   driver_id: Optional[int] = None) -> Bus:
        bus = self.get_bus(bus_id)
        fields = {}

        bus_number = _clean(bus_number)
        if bus_number and bus_number != bus.bus_number:
            if self.get_bus_by_number(bus_number):
                raise Conflict(f"Bus number {bus_number} already exists")
            fields["bus_number"] = bus_number
        if route_name is not None:
            fields["route_name"] = _clean(route_name)
        if capacity is not None:
            fields["capacity"] = capacity
        if status is not None:
            fields["status"] = status

        if driver_id is not None:
            driver = self.get_rider(driver_id)
            if driver.role != Role.driver.value:
                raise ValidationError(f"{driver.name} is not a driver")
            self._release_driver(driver.id, keep=bus)
            fields["driver_id"] = driver.id
            fields["driver_name"] = driver.name

        return self.update_bus_state(bus, touch=False, **fields)

    def delete_bus(self, bus_id: str) -> int:
        """Delete a bus after unassigning its occupants; returns how many were unassigned."""
        bus = self.get_bus(bus_id)
        occupants = list(bus.occupants)
        for rider in occupants:
            rider.bus_id = None
        self._commit()

        self.db.delete(bus)
        self._commit()
        logger.info("Bus deleted: %s, unassigned %d riders", bus_id, len(occupants))
        return len(occupants)

    def _release_driver(self, driver_id: int, keep: Optional[Bus] = None) -> None:
        """A driver drives one bus at a time; drop any other link."""
        for bus in self.db.query(Bus).filter(Bus.driver_id == driver_id).all():
            if keep is not None and bus.bus_id == keep.bus_id:
                continue
            self.update_bus_state(bus, touch=False, driver_id=None, driver_name=None)

    # Riders

    def find_rider(self, rider_id: int) -> Optional[Rider]:
        return self.db.query(Rider).filter(Rider.id == rider_id).first()

    def get_rider(self, rider_id: int) -> Rider:
        rider = self.find_rider(rider_id)
        if not rider:
            raise NotFound("User not found")
        return rider

    def list_riders(self, role: Optional[str] = None, search: Optional[str] = None) -> List[Rider]:
        query = self.db.query(Rider)
        if role and role != "all":
            query = query.filter(Rider.role == role)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Rider.name.ilike(pattern),
                Rider.email.ilike(pattern),
                Rider.student_id.ilike(pattern),
            ))
        return query.order_by(Rider.created_at.desc(), Rider.id.desc()).all()

    def list_drivers(self) -> List[Rider]:
        return self.db.query(Rider).filter(Rider.role == Role.driver.value).order_by(Rider.name).all()

    def _resolve_bus_number(self, bus_number: Optional[str]) -> Optional[Bus]:
        bus_number = _clean(bus_number)
        if not bus_number:
            return None
        bus = self.get_bus_by_number(bus_number)
        if not bus:
            raise ValidationError(f"Bus {bus_number} not found")
        return bus

    def _check_unique(self, rider_id: Optional[int], email: Optional[str], student_id: Optional[str]) -> None:
        if email:
            clash = self.db.query(Rider).filter(Rider.email == email, Rider.id != rider_id).first()
            if clash:
                raise Conflict(f"Email {email} is already registered")
        if student_id:
            clash = self.db.query(Rider).filter(Rider.student_id == student_id, Rider.id != rider_id).first()
            if clash:
                raise Conflict(f"Student ID {student_id} is already registered")

    def create_rider(self, name: Optional[str], email: Optional[str], password: Optional[str],
                     role=None, student_id: Optional[str] = None, phone: Optional[str] = None,
                     bus_number: Optional[str] = None) -> Rider:
        name, email = _clean(name), _clean(email)
        if not name or not email or not password or not role:
            raise ValidationError("Name, email, password, and role are required")
        role = _parse_role(role)
        student_id = _clean(student_id) if role == Role.student.value else None

        # Validate everything before the first write
        self._check_unique(None, email, student_id)
        bus = self._resolve_bus_number(bus_number)
        if bus and role == Role.admin.value:
            raise ValidationError("Admins cannot be assigned to a bus")

        rider = Rider(
            name=name,
            email=email,
            password_hash=hash_password(password, self.settings.bcrypt_rounds),
            role=role,
            student_id=student_id,
            phone=_clean(phone),
        )
        self.db.add(rider)
        try:
            self._commit()
        except IntegrityError:
            raise Conflict("User with this email or student ID already exists")
        self.db.refresh(rider)

        if bus:
            self._assign_bus(rider, bus)
        logger.info("Rider created: id=%s role=%s", rider.id, rider.role)
        return rider

    def bulk_create_riders(self, entries: List[Dict]) -> Tuple[List[Rider], List[Dict]]:
        """
        Create riders one at a time. A rejected entry is reported as
        {"email", "error"} and the import carries on with the next one.
        """
        if not entries:
            raise ValidationError("No users provided")
        created, failed = [], []
        for entry in entries:
            try:
                created.append(self.create_rider(**entry))
            except TrackerError as e:
                failed.append({"email": entry.get("email"), "error": e.message})
        logger.info("Bulk import: %d created, %d rejected", len(created), len(failed))
        return created, failed

    def update_rider(self, rider_id: int, name: Optional[str] = None, email: Optional[str] = None,
                     password: Optional[str] = None, role=None, student_id: Optional[str] = None,
                     phone: Optional[str] = None, bus_number: Optional[str] = None) -> Rider:
        rider = self.get_rider(rider_id)
        new_role = _parse_role(role) if role else rider.role
        email = _clean(email)
        student_id = _clean(student_id) if new_role == Role.student.value else None
        self._check_unique(rider.id, email, student_id)
        bus = self._resolve_bus_number(bus_number)
        if bus and new_role == Role.admin.value:
            raise ValidationError("Admins cannot be assigned to a bus")

        # Leaving a role drops the assignment that role carried
        if rider.role == Role.driver.value and new_role != Role.driver.value:
            self._release_driver(rider.id)
        if rider.role == Role.student.value and new_role != Role.student.value:
            rider.bus_id = None
            rider.student_id = None

        rider.name = _clean(name) or rider.name
        rider.email = email or rider.email
        rider.phone = _clean(phone) or rider.phone
        rider.role = new_role
        if student_id:
            rider.student_id = student_id
        if password:
            rider.password_hash = hash_password(password, self.settings.bcrypt_rounds)
        self._commit()
        self.db.refresh(rider)

        if bus:
            self._assign_bus(rider, bus)
        elif rider.role == Role.driver.value and name:
            # keep the denormalised name on the bus in step
            driven = self.get_bus_for_driver(rider.id)
            if driven and driven.driver_name != rider.name:
                self.update_bus_state(driven, touch=False, driver_name=rider.name)
        return rider

    def _assign_bus(self, rider: Rider, bus: Bus) -> None:
        if rider.role == Role.student.value:
            # Occupants are derived from this column, so both sides move together
            rider.bus_id = bus.bus_id
            self._commit()
        elif rider.role == Role.driver.value:
            self._release_driver(rider.id, keep=bus)
            self.update_bus_state(bus, touch=False, driver_id=rider.id, driver_name=rider.name)
        else:
            raise ValidationError("Admins cannot be assigned to a bus")
        self.db.refresh(rider)

    def delete_rider(self, rider_id: int) -> None:
        rider = self.get_rider(rider_id)
        if rider.role == Role.student.value and rider.bus_id:
            rider.bus_id = None
            self._commit()
        if rider.role == Role.driver.value:
            self._release_driver(rider.id)

        self.db.delete(rider)
        self._commit()
        logger.info("Rider deleted: id=%s", rider_id)

    # Dashboard

    def dashboard_stats(self) -> Dict:
        riders = self.db.query(Rider)
        total_buses = self.db.query(Bus).count()
        active_buses = len(self.list_live_buses())
        recent_buses = self.db.query(Bus).order_by(Bus.updated_at.desc()).limit(5).all()
        recent_riders = self.db.query(Rider).order_by(Rider.created_at.desc(), Rider.id.desc()).limit(5).all()
        return {
            "total_users": riders.count(),
            "total_students": riders.filter(Rider.role == Role.student.value).count(),
            "total_drivers": riders.filter(Rider.role == Role.driver.value).count(),
            "total_admins": riders.filter(Rider.role == Role.admin.value).count(),
            "total_buses": total_buses,
            "active_buses": active_buses,
            "inactive_buses": total_buses - active_buses,
            "recent_buses": recent_buses,
            "recent_users": recent_riders,
        }
