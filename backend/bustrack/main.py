import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from . import models  # Ensure all models are registered before create_all
from .config import Settings, settings as default_settings
from .database import Base, bind_database
from .errors import StorageUnavailable, TrackerError
from .location_channel import LiveLocationChannel
from .rate_limit import SlidingWindowLimiter
from .routes import admin, auth, driver, realtime, tracking
from .routing import RouteResolver
from .websocket_manager import ConnectionRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=app.state.engine)
    yield


async def tracker_error_handler(request: Request, exc: TrackerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return await tracker_error_handler(request, StorageUnavailable())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": "validation_error",
            "message": f"{where}: {first.get('msg', 'invalid value')}" if where else first.get("msg", "Invalid request"),
        },
    )


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine, app.state.session_factory = bind_database(settings.database_url)
    app.state.resolver = RouteResolver.from_settings(settings)
    app.state.channel = LiveLocationChannel(
        ConnectionRegistry(),
        SlidingWindowLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TrackerError, tracker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    app.include_router(auth.router)
    app.include_router(driver.router)
    app.include_router(tracking.router)
    app.include_router(admin.router)
    app.include_router(realtime.router)

    @app.get("/")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
