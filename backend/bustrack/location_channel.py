import logging
from typing import Optional, Union

from .access import ensure_role
from .db_store import DatabaseStore
from .errors import NotAssigned
from .models import Bus, Rider, Role
from .rate_limit import SlidingWindowLimiter
from .schemas import (
    AdminLocationOverride,
    BusAdminUpdate,
    BusLiveUpdate,
    PositionReport,
    StatusReport,
    SubmissionResult,
    TrackingCount,
    as_utc,
)
from .websocket_manager import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class LiveLocationChannel:
    """
    Accepts position reports, persists them through the store and fans them out.
    Room subscribers get bus-live-update then tracking-count; admins get bus-update.
    """

    def __init__(self, registry: ConnectionRegistry, limiter: SlidingWindowLimiter):
        self.registry = registry
        self.limiter = limiter

    def subscribe(self, connection: Connection, bus_id: str) -> int:
        # Any signed-in role may watch any bus
        return self.registry.join(connection, bus_id)

    def unsubscribe(self, connection: Connection, bus_id: str) -> bool:
        return self.registry.leave(connection, bus_id)

    async def submit_location(
        self,
        store: DatabaseStore,
        rider: Optional[Rider],
        payload: Union[PositionReport, StatusReport],
        origin: str,
    ) -> SubmissionResult:
        """Driver report for the driver's own bus; status-only reports leave the position alone."""
        ensure_role(rider, Role.driver)
        self.limiter.hit(origin)

        bus = store.get_bus_for_driver(rider.id)
        if bus is None:
            raise NotAssigned()

        bus = store.update_bus_state(bus, **payload.to_fields())
        logger.info(
            "Location received: bus=%s kind=%s lat=%s lon=%s status=%s",
            bus.bus_id, payload.kind, bus.latitude, bus.longitude, bus.status,
        )
        self.registry.note_driver_update(rider.id)
        return await self._fan_out(bus)

    async def admin_set_location(
        self,
        store: DatabaseStore,
        rider: Optional[Rider],
        bus_id: str,
        payload: AdminLocationOverride,
    ) -> SubmissionResult:
        """Admin override; every field is replaced, whoever drives the bus."""
        ensure_role(rider, Role.admin)
        bus = store.get_bus(bus_id)
        bus = store.update_bus_state(bus, **payload.to_fields())
        logger.info("Admin %s set location of bus %s", rider.id, bus.bus_id)
        return await self._fan_out(bus)

    async def _fan_out(self, bus: Bus) -> SubmissionResult:
        # Assigned riders, not connected subscribers
        count = len(bus.occupants)
        live = BusLiveUpdate.from_bus(bus)

        await self.registry.publish_batch(bus.bus_id, [live, TrackingCount(bus_id=bus.bus_id, count=count)])
        await self.registry.broadcast_admins(BusAdminUpdate(**live.model_dump()))

        return SubmissionResult(tracking_count=count, timestamp=as_utc(bus.updated_at))
