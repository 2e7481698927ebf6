from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .access import ensure_role
from .database import get_db
from .db_store import DatabaseStore
from .location_channel import LiveLocationChannel
from .models import Rider, Role
from .routing import RouteResolver


def get_store(request: Request, db: Session = Depends(get_db)) -> DatabaseStore:
    """Get database store instance"""
    return DatabaseStore(db, request.app.state.settings)


def session_token(request: Request, x_session_token: Optional[str] = Header(None)) -> Optional[str]:
    """Header first, then the login cookie"""
    if x_session_token:
        return x_session_token
    return request.cookies.get(request.app.state.settings.session_cookie_name)


def get_current_rider(
    token: Optional[str] = Depends(session_token),
    store: DatabaseStore = Depends(get_store),
) -> Rider:
    return ensure_role(store.get_session(token), *Role)


def require_role(*roles: Role):
    def dependency(rider: Rider = Depends(get_current_rider)) -> Rider:
        return ensure_role(rider, *roles)
    return dependency


def get_channel(request: Request) -> LiveLocationChannel:
    return request.app.state.channel


def get_resolver(request: Request) -> RouteResolver:
    return request.app.state.resolver


def client_origin(request: Request) -> str:
    return request.client.host if request.client else "unknown"
