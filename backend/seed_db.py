"""
Seed script to populate demo accounts and a bus.
Run this once after setting up the database; re-running leaves existing rows alone.
"""
from typing import Dict, Optional

from sqlalchemy.orm import Session

from bustrack.database import Base, SessionLocal, engine
from bustrack.db_store import DatabaseStore
from bustrack.models import Rider

DEMO_BUS = {
    "bus_id": "BUS_01",
    "bus_number": "01",
    "route_name": "Main Campus Route",
    "capacity": 40,
}
DEMO_POSITION = {"latitude": 12.9716, "longitude": 77.5946, "status": "moving"}

DEMO_ACCOUNTS = [
    {"name": "System Admin", "email": "admin@college.edu", "password": "admin123", "role": "admin"},
    {"name": "John Driver", "email": "driver@college.edu", "password": "driver123", "role": "driver",
     "phone": "+1234567890"},
    {"name": "Test Student", "email": "student@college.edu", "password": "student123", "role": "student",
     "student_id": "STU001", "phone": "+9876543210"},
]


def _rider_by_email(db: Session, email: str) -> Optional[Rider]:
    return db.query(Rider).filter(Rider.email == email).first()


def seed_database(db: Session = None) -> Dict[str, int]:
    """Seed initial data; returns the ids of the seeded riders by role"""
    owns_session = db is None
    if owns_session:
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()
    store = DatabaseStore(db)
    try:
        bus = store.find_bus(DEMO_BUS["bus_id"])
        if not bus:
            bus = store.create_bus(**DEMO_BUS)
            store.update_bus_state(bus, **DEMO_POSITION)

        ids = {}
        for account in DEMO_ACCOUNTS:
            rider = _rider_by_email(db, account["email"])
            if not rider:
                bus_number = DEMO_BUS["bus_number"] if account["role"] != "admin" else None
                rider = store.create_rider(bus_number=bus_number, **account)
            ids[rider.role] = rider.id

        print("Database seeded successfully!")
        for account in DEMO_ACCOUNTS:
            print(f"   - {account['role'].upper()}: {account['email']} / {account['password']}")
        print(f"   - Bus: {DEMO_BUS['bus_number']} ({DEMO_BUS['route_name']})")
        return ids
    except Exception as e:
        db.rollback()
        print(f"Error seeding database: {e}")
        raise
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    seed_database()
