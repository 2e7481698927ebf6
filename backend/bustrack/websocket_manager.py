import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set

from .schemas import DriverStatus, Event

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data) -> None: ...


@dataclass
class DriverPresence:
    driver_id: int
    bus_id: Optional[str]
    connections: Set[Connection] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_update: Optional[datetime] = None
    update_count: int = 0


class ConnectionRegistry:
    """
    Live connections for real-time bus updates.
    bus_id -> set of connections subscribed to that bus (the bus room)
    admin feed -> admin connections, which see every bus update
    driver_id -> presence of a connected driver, online while any of its sockets is open
    One instance per app, handed to the location channel.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[Connection]] = {}
        self.admin_feed: Set[Connection] = set()
        self.drivers: Dict[int, DriverPresence] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # Rooms

    def join(self, connection: Connection, bus_id: str) -> int:
        """Add a connection to a bus room; returns the room size"""
        room = self.rooms.setdefault(bus_id, set())
        room.add(connection)
        logger.info("Joined room for bus %s. Total connections: %d", bus_id, len(room))
        return len(room)

    def leave(self, connection: Connection, bus_id: str) -> bool:
        """Remove a connection from a bus room, dropping the room once empty"""
        room = self.rooms.get(bus_id)
        if room is None or connection not in room:
            return False
        room.discard(connection)
        if not room:
            del self.rooms[bus_id]
            self._locks.pop(bus_id, None)
        logger.info("Left room for bus %s", bus_id)
        return True

    def rooms_for(self, connection: Connection) -> List[str]:
        return [bus_id for bus_id, room in self.rooms.items() if connection in room]

    def room_lock(self, bus_id: str) -> asyncio.Lock:
        """Held while a batch of events goes to one room, so they arrive in order."""
        lock = self._locks.get(bus_id)
        if lock is None:
            lock = self._locks[bus_id] = asyncio.Lock()
        return lock

    async def publish_batch(self, bus_id: str, events: List[Event]) -> int:
        """Send events to a room back to back; rooms nobody joined get no lock."""
        if bus_id not in self.rooms:
            return 0
        delivered = 0
        async with self.room_lock(bus_id):
            for event in events:
                delivered = await self.publish(bus_id, event)
        return delivered

    def get_connection_count(self, bus_id: str) -> int:
        """Number of connections subscribed to a bus"""
        return len(self.rooms.get(bus_id, set()))

    # Admin feed and driver presence

    def add_admin(self, connection: Connection) -> None:
        self.admin_feed.add(connection)

    def remove_admin(self, connection: Connection) -> None:
        self.admin_feed.discard(connection)

    async def add_driver(self, driver_id: int, connection: Connection, bus_id: Optional[str]) -> None:
        presence = self.drivers.get(driver_id)
        if presence is not None:
            # another tab or device; already online
            presence.connections.add(connection)
            presence.bus_id = bus_id
            return
        self.drivers[driver_id] = DriverPresence(driver_id=driver_id, bus_id=bus_id, connections={connection})
        logger.info("Driver %s online (bus %s)", driver_id, bus_id)
        await self.broadcast_admins(DriverStatus(driver_id=driver_id, status="online", timestamp=datetime.now(timezone.utc)))

    async def remove_driver(self, driver_id: int) -> None:
        if self.drivers.pop(driver_id, None) is None:
            return
        logger.info("Driver %s offline", driver_id)
        await self.broadcast_admins(DriverStatus(driver_id=driver_id, status="offline", timestamp=datetime.now(timezone.utc)))

    def note_driver_update(self, driver_id: int) -> None:
        presence = self.drivers.get(driver_id)
        if presence is not None:
            presence.last_update = datetime.now(timezone.utc)
            presence.update_count += 1

    def active_drivers(self) -> List[DriverPresence]:
        return list(self.drivers.values())

    async def disconnect(self, connection: Connection) -> None:
        """Forget a closed connection everywhere it was registered"""
        for bus_id in self.rooms_for(connection):
            self.leave(connection, bus_id)
        self.remove_admin(connection)
        for driver_id, presence in list(self.drivers.items()):
            if connection in presence.connections:
                presence.connections.discard(connection)
                if not presence.connections:
                    await self.remove_driver(driver_id)

    # Fan-out

    async def publish(self, bus_id: str, event: Event) -> int:
        """Send an event to every connection in a bus room; returns how many got it"""
        room = self.rooms.get(bus_id)
        if not room:
            return 0
        failed = await self._send_all(list(room), event.envelope())
        for connection in failed:
            self.leave(connection, bus_id)
        return len(room) if bus_id in self.rooms else 0

    async def broadcast_admins(self, event: Event) -> int:
        if not self.admin_feed:
            return 0
        failed = await self._send_all(list(self.admin_feed), event.envelope())
        for connection in failed:
            self.remove_admin(connection)
        return len(self.admin_feed)

    async def _send_all(self, connections: List[Connection], message: dict) -> Set[Connection]:
        failed = set()
        for connection in connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                # Closed sockets raise a variety of transport errors; the subscriber is just dropped
                logger.warning("Error sending %s: %s", message.get("event"), e)
                failed.add(connection)
        return failed
