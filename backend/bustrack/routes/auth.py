from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from .. import schemas
from ..db_store import DatabaseStore
from ..deps import get_current_rider, get_store, session_token
from ..errors import Unauthenticated
from ..models import Rider

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=schemas.LoginResponse)
def login(payload: schemas.LoginRequest, request: Request, response: Response,
          store: DatabaseStore = Depends(get_store)):
    result = store.login(payload.email, payload.password)
    if not result:
        raise Unauthenticated("Invalid email or password")

    settings = request.app.state.settings
    response.set_cookie(
        settings.session_cookie_name,
        result["token"],
        max_age=settings.session_expire_minutes * 60,
        httponly=True,
        samesite="lax",
    )
    return schemas.LoginResponse(
        session_token=result["token"],
        expires_at=schemas.as_utc(result["expires"]),
        rider=schemas.RiderOut.from_rider(result["rider"]),
    )


@router.post("/logout")
def logout(request: Request, response: Response, token: Optional[str] = Depends(session_token),
           store: DatabaseStore = Depends(get_store)):
    if not token or not store.logout(token):
        raise Unauthenticated()
    response.delete_cookie(request.app.state.settings.session_cookie_name)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me", response_model=schemas.RiderOut)
def me(rider: Rider = Depends(get_current_rider)):
    return schemas.RiderOut.from_rider(rider)
