from typing import Annotated

from fastapi import APIRouter, Body, Depends

from .. import schemas
from ..db_store import DatabaseStore
from ..deps import client_origin, get_channel, get_store, require_role
from ..location_channel import LiveLocationChannel
from ..models import Rider, Role

router = APIRouter(prefix="/driver", tags=["driver"])


@router.get("/dashboard")
def dashboard(
    rider: Rider = Depends(require_role(Role.driver)),
    store: DatabaseStore = Depends(get_store),
):
    bus = store.get_bus_for_driver(rider.id)
    return {
        "success": True,
        "driver": schemas.RiderOut.from_rider(rider),
        "bus": schemas.BusDetail.from_bus(bus) if bus else None,
    }


@router.post("/location", response_model=schemas.SubmissionResult)
async def update_location(
    payload: Annotated[schemas.LocationSubmission, Body()],
    rider: Rider = Depends(require_role(Role.driver)),
    store: DatabaseStore = Depends(get_store),
    channel: LiveLocationChannel = Depends(get_channel),
    origin: str = Depends(client_origin),
):
    return await channel.submit_location(store, rider, payload, origin)
