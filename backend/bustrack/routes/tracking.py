from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from .. import schemas
from ..db_store import DatabaseStore
from ..deps import get_current_rider, get_resolver, get_store
from ..errors import NotAssigned, NotFound
from ..models import Bus, Rider
from ..routing import RouteResolver

router = APIRouter(prefix="/tracking", tags=["tracking"])


def _assigned_bus(rider: Rider, store: DatabaseStore) -> Bus:
    bus_id = rider.assigned_bus_id
    if not bus_id:
        raise NotAssigned("No bus assigned to you yet")
    return store.get_bus(bus_id)


@router.get("/buses", response_model=List[schemas.BusOut])
def all_bus_locations(
    _: Rider = Depends(get_current_rider),
    store: DatabaseStore = Depends(get_store),
):
    """Every bus with its last known position"""
    return [schemas.BusOut.from_bus(bus) for bus in store.list_buses()]


@router.get("/buses/by-number/{bus_number}", response_model=schemas.BusOut)
def bus_by_number(
    bus_number: str,
    _: Rider = Depends(get_current_rider),
    store: DatabaseStore = Depends(get_store),
):
    """Last known position of a bus by the number painted on it"""
    bus = store.get_bus_by_number(bus_number)
    if not bus:
        raise NotFound(f"Bus {bus_number} not found")
    return schemas.BusOut.from_bus(bus)


@router.get("/my-bus", response_model=schemas.BusOut)
def my_bus(
    rider: Rider = Depends(get_current_rider),
    store: DatabaseStore = Depends(get_store),
):
    """Bus the caller rides or drives"""
    return schemas.BusOut.from_bus(_assigned_bus(rider, store))


@router.get("/route", response_model=schemas.RouteResult)
async def route_info(
    rider_lat: float = Query(..., ge=-90, le=90),
    rider_lng: float = Query(..., ge=-180, le=180),
    bus_lat: Optional[float] = Query(None, ge=-90, le=90),
    bus_lng: Optional[float] = Query(None, ge=-180, le=180),
    profile: Optional[schemas.RoutingProfile] = None,
    rider: Rider = Depends(get_current_rider),
    store: DatabaseStore = Depends(get_store),
    resolver: RouteResolver = Depends(get_resolver),
):
    """
    Road route and ETA from the rider to a bus.
    Without bus coordinates the caller's assigned bus is used.
    """
    if bus_lat is None or bus_lng is None:
        bus = _assigned_bus(rider, store)
        if not bus.has_position:
            raise NotFound("Bus has not reported a position yet")
        bus_lat, bus_lng = bus.latitude, bus.longitude

    return await resolver.resolve_route(
        schemas.LatLng(lat=rider_lat, lng=rider_lng),
        schemas.LatLng(lat=bus_lat, lng=bus_lng),
        profile,
    )
