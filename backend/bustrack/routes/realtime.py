import logging

import pydantic
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from sqlalchemy.exc import SQLAlchemyError

from .. import schemas
from ..access import ensure_role
from ..db_store import DatabaseStore
from ..errors import StorageUnavailable, TrackerError, ValidationError
from ..models import Role

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

submission_adapter = pydantic.TypeAdapter(schemas.LocationSubmission)


def _reply(event: str, **data) -> dict:
    return {"event": event, "data": data}


def _failure(source: str, error: TrackerError) -> dict:
    return _reply("error", source=source, **error.to_payload())


def _token(websocket: WebSocket) -> str:
    settings = websocket.app.state.settings
    return (
        websocket.headers.get("x-session-token")
        or websocket.cookies.get(settings.session_cookie_name)
        or websocket.query_params.get("token")
    )


class RealtimeSession:
    """
    One authenticated socket; a fresh DB session per inbound message.
    The session token is checked again on every message, so logout or expiry
    takes effect on sockets that are already open.
    """

    def __init__(self, websocket: WebSocket, token: str, rider_id: int, role: str):
        self.websocket = websocket
        self.token = token
        self.rider_id = rider_id
        self.role = role
        app = websocket.app
        self.settings = app.state.settings
        self.session_factory = app.state.session_factory
        self.channel = app.state.channel
        self.origin = websocket.client.host if websocket.client else "unknown"

    def store(self, db) -> DatabaseStore:
        return DatabaseStore(db, self.settings)

    def rider(self, store: DatabaseStore):
        """Rider behind the token right now; None once the session has ended."""
        return store.get_session(self.token)

    async def handle(self, message: schemas.InboundMessage) -> dict:
        if message.event == "join-bus-room":
            room = schemas.RoomRequest.model_validate(message.data)
            with self.session_factory() as db:
                store = self.store(db)
                ensure_role(self.rider(store), *Role)
                store.get_bus(room.bus_id)
            subscribers = self.channel.subscribe(self.websocket, room.bus_id)
            return _reply("joined-bus-room", busId=room.bus_id, subscribers=subscribers)

        if message.event == "leave-bus-room":
            room = schemas.RoomRequest.model_validate(message.data)
            self.channel.unsubscribe(self.websocket, room.bus_id)
            return _reply("left-bus-room", busId=room.bus_id)

        if message.event == "driver-location-update":
            payload = submission_adapter.validate_python(message.data)
            with self.session_factory() as db:
                store = self.store(db)
                rider = self.rider(store)
                result = await self.channel.submit_location(store, rider, payload, self.origin)
            return _reply(
                "location-ack",
                success=True,
                trackingCount=result.tracking_count,
                timestamp=result.model_dump(mode="json")["timestamp"],
            )

        if message.event == "ping":
            return _reply("pong")

        raise ValidationError(f"Unknown event: {message.event}")

    async def run(self) -> None:
        while True:
            raw = await self.websocket.receive_text()
            if raw == "ping":
                await self.websocket.send_text("pong")
                continue

            source = "unknown"
            try:
                message = schemas.InboundMessage.model_validate_json(raw)
                source = message.event
                reply = await self.handle(message)
            except pydantic.ValidationError as e:
                reply = _failure(source, ValidationError(f"Invalid payload: {e.errors()[0]['msg']}"))
            except TrackerError as e:
                reply = _failure(source, e)
            except SQLAlchemyError as e:
                logger.error("Storage failure handling %s from rider %s: %s", source, self.rider_id, e)
                reply = _failure(source, StorageUnavailable())
            await self.websocket.send_json(reply)


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket):
    """Bus rooms, driver location updates and the admin feed over one socket"""
    app = websocket.app
    token = _token(websocket)
    with app.state.session_factory() as db:
        rider = DatabaseStore(db, app.state.settings).get_session(token)
        identity = (rider.id, rider.role, rider.assigned_bus_id) if rider else None

    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    rider_id, role, bus_id = identity
    registry = app.state.channel.registry
    await websocket.accept()
    if role == Role.admin.value:
        registry.add_admin(websocket)
    elif role == Role.driver.value:
        await registry.add_driver(rider_id, websocket, bus_id)

    try:
        await RealtimeSession(websocket, token, rider_id, role).run()
    except WebSocketDisconnect:
        logger.info("WebSocket closed for rider %s", rider_id)
    finally:
        await registry.disconnect(websocket)
