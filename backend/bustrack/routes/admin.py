import csv
import io
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from .. import schemas
from ..db_store import DatabaseStore
from ..deps import get_channel, get_store, require_role
from ..errors import ValidationError
from ..location_channel import LiveLocationChannel
from ..models import Rider, Role

admin_only = require_role(Role.admin)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(admin_only)])


def _dt_iso(dt):
    dt = schemas.as_utc(dt)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


# Dashboard
@router.get("/dashboard")
def dashboard(store: DatabaseStore = Depends(get_store)):
    stats = store.dashboard_stats()
    recent_buses = stats.pop("recent_buses")
    recent_users = stats.pop("recent_users")
    return {
        "success": True,
        "stats": stats,
        "recent_buses": [schemas.BusOut.from_bus(b) for b in recent_buses],
        "recent_users": [schemas.RiderOut.from_rider(r) for r in recent_users],
    }


# User Management
@router.get("/users", response_model=List[schemas.RiderOut])
def list_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    store: DatabaseStore = Depends(get_store),
):
    return [schemas.RiderOut.from_rider(r) for r in store.list_riders(role=role, search=search)]


@router.post("/users")
def create_user(body: schemas.RiderCreate, store: DatabaseStore = Depends(get_store)):
    rider = store.create_rider(**body.model_dump())
    return {"success": True, "message": "User created successfully", "user": schemas.RiderOut.from_rider(rider)}


@router.post("/users/bulk-import")
def bulk_import_users(body: schemas.BulkImportRequest, store: DatabaseStore = Depends(get_store)):
    created, failed = store.bulk_create_riders([u.model_dump() for u in body.users])
    return {
        "success": True,
        "message": f"Imported {len(created)} users successfully",
        "results": [{"email": r.email, "name": r.name, "role": r.role, "status": "success"} for r in created],
        "errors": failed,
    }


@router.get("/users/{rider_id}")
def get_user(rider_id: int, store: DatabaseStore = Depends(get_store)):
    return {"success": True, "user": schemas.RiderOut.from_rider(store.get_rider(rider_id))}


@router.put("/users/{rider_id}")
def update_user(rider_id: int, body: schemas.RiderUpdate, store: DatabaseStore = Depends(get_store)):
    rider = store.update_rider(rider_id, **body.model_dump())
    return {"success": True, "message": "User updated successfully", "user": schemas.RiderOut.from_rider(rider)}


@router.delete("/users/{rider_id}")
def delete_user(rider_id: int, store: DatabaseStore = Depends(get_store)):
    store.delete_rider(rider_id)
    return {"success": True, "message": "User deleted successfully"}


@router.get("/drivers")
def available_drivers(store: DatabaseStore = Depends(get_store)):
    """Drivers for the assignment dropdown"""
    return {
        "success": True,
        "drivers": [{"id": d.id, "name": d.name, "email": d.email} for d in store.list_drivers()],
    }


# Bus Management - fixed paths before /buses/{bus_id}
@router.get("/buses/live", response_model=List[schemas.BusOut])
def live_buses(
    window_minutes: Optional[int] = Query(None, ge=1),
    store: DatabaseStore = Depends(get_store),
):
    """Buses that reported within the active window"""
    return [schemas.BusOut.from_bus(b) for b in store.list_live_buses(window_minutes)]


@router.get("/buses/options")
def bus_options(store: DatabaseStore = Depends(get_store)):
    """Buses for the assignment dropdown"""
    return {
        "success": True,
        "buses": [
            schemas.BusOption(bus_id=b.bus_id, bus_number=b.bus_number, route_name=b.route_name)
            for b in store.list_bus_options()
        ],
    }


@router.get("/buses", response_model=List[schemas.BusOut])
def list_buses(
    status: Optional[str] = None,
    search: Optional[str] = None,
    store: DatabaseStore = Depends(get_store),
):
    return [schemas.BusOut.from_bus(b) for b in store.list_buses(status=status, search=search)]


@router.post("/buses")
def create_bus(body: schemas.BusCreate, store: DatabaseStore = Depends(get_store)):
    bus = store.create_bus(**body.model_dump())
    return {"success": True, "message": "Bus created successfully", "bus": schemas.BusOut.from_bus(bus)}


@router.get("/buses/{bus_id}")
def get_bus(bus_id: str, store: DatabaseStore = Depends(get_store)):
    return {"success": True, "bus": schemas.BusDetail.from_bus(store.get_bus(bus_id))}


@router.put("/buses/{bus_id}")
def update_bus(bus_id: str, body: schemas.BusUpdate, store: DatabaseStore = Depends(get_store)):
    fields = body.model_dump()
    if fields["status"] is not None:
        fields["status"] = fields["status"].value
    bus = store.update_bus(bus_id, **fields)
    return {"success": True, "message": "Bus updated successfully", "bus": schemas.BusOut.from_bus(bus)}


@router.delete("/buses/{bus_id}")
def delete_bus(bus_id: str, store: DatabaseStore = Depends(get_store)):
    unassigned = store.delete_bus(bus_id)
    return {"success": True, "message": "Bus deleted successfully", "unassigned": unassigned}


@router.post("/buses/{bus_id}/location", response_model=schemas.SubmissionResult)
async def set_bus_location(
    bus_id: str,
    payload: schemas.AdminLocationOverride,
    rider: Rider = Depends(admin_only),
    store: DatabaseStore = Depends(get_store),
    channel: LiveLocationChannel = Depends(get_channel),
):
    result = await channel.admin_set_location(store, rider, bus_id, payload)
    result.message = "Bus location updated"
    return result


# Connected drivers
@router.get("/active-drivers")
def active_drivers(channel: LiveLocationChannel = Depends(get_channel)):
    return [
        {
            "driver_id": p.driver_id,
            "bus_id": p.bus_id,
            "connected_at": _dt_iso(p.connected_at),
            "last_update": _dt_iso(p.last_update),
            "update_count": p.update_count,
            "sockets": len(p.connections),
        }
        for p in channel.registry.active_drivers()
    ]


# Export
USER_COLUMNS = ["Name", "Email", "Role", "Student ID", "Phone", "Created At"]
BUS_COLUMNS = ["Bus Number", "Bus ID", "Route", "Driver", "Status", "Latitude", "Longitude", "Last Updated"]


def _csv_response(filename: str, header: list, rows: list) -> Response:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    writer.writerows(rows)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export/{kind}")
def export_data(kind: str, format: str = "json", store: DatabaseStore = Depends(get_store)):
    if kind == "users":
        riders = store.list_riders()
        if format == "csv":
            rows = [
                [r.name, r.email, r.role, r.student_id or "", r.phone or "", _dt_iso(r.created_at) or ""]
                for r in riders
            ]
            return _csv_response("users.csv", USER_COLUMNS, rows)
        return {"success": True, "users": [schemas.RiderOut.from_rider(r) for r in riders]}

    if kind == "buses":
        buses = store.list_buses()
        if format == "csv":
            rows = [
                [b.bus_number, b.bus_id, b.route_name or "", b.driver_name or "", b.status,
                 "" if b.latitude is None else b.latitude, "" if b.longitude is None else b.longitude,
                 _dt_iso(b.updated_at) or ""]
                for b in buses
            ]
            return _csv_response("buses.csv", BUS_COLUMNS, rows)
        return {"success": True, "buses": [schemas.BusOut.from_bus(b) for b in buses]}

    raise ValidationError("Invalid export type")
