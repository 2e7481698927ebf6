import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship

from .database import Base


class Role(str, enum.Enum):
    student = "student"
    driver = "driver"
    admin = "admin"


class BusStatus(str, enum.Enum):
    moving = "moving"
    stopped = "stopped"
    delayed = "delayed"
    offline = "offline"


class Bus(Base):
    __tablename__ = "buses"

    bus_id = Column(String, primary_key=True, index=True)
    bus_number = Column(String, unique=True, nullable=False, index=True)
    route_name = Column(String, nullable=True)
    capacity = Column(Integer, default=40)

    # Driver link lives on the bus; no FK so buses and riders don't form a cycle
    driver_id = Column(Integer, nullable=True, unique=True, index=True)
    driver_name = Column(String, nullable=True)

    # Both null until the first report
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    speed = Column(Float, default=0.0)
    accuracy = Column(Float, nullable=True)
    status = Column(String, default=BusStatus.stopped.value, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    occupants = relationship("Rider", back_populates="bus", foreign_keys="Rider.bus_id")
    driver = relationship(
        "Rider",
        primaryjoin="foreign(Bus.driver_id) == Rider.id",
        uselist=False,
        viewonly=True,
    )

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Rider(Base):
    __tablename__ = "riders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, default=Role.student.value, nullable=False)
    student_id = Column(String, unique=True, nullable=True)  # NULLs don't collide
    phone = Column(String, nullable=True)
    bus_id = Column(String, ForeignKey("buses.bus_id"), nullable=True, index=True)  # students only
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    bus = relationship("Bus", back_populates="occupants", foreign_keys=[bus_id])
    driven_bus = relationship(
        "Bus",
        primaryjoin="Rider.id == foreign(Bus.driver_id)",
        uselist=False,
        viewonly=True,
    )
    sessions = relationship("RiderSession", back_populates="rider", cascade="all, delete-orphan")

    @property
    def assigned_bus_id(self):
        """Bus the rider rides (students) or drives (drivers)."""
        if self.role == Role.driver.value:
            return self.driven_bus.bus_id if self.driven_bus else None
        return self.bus_id


class RiderSession(Base):
    __tablename__ = "rider_sessions"

    session_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.id"), nullable=False, index=True)
    token = Column(String, unique=True, nullable=False, index=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True)

    # Relationships
    rider = relationship("Rider", back_populates="sessions")
