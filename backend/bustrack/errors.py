"""Failure taxonomy shared by the store, the location channel and the routers.

Each error knows the HTTP status it maps to and a short machine code; the
exception handler in ``main`` turns them into ``{"success": false, ...}``
bodies and the WebSocket endpoint sends the same shape as an ``error`` event.
"""
from fastapi import status


class TrackerError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class Unauthenticated(TrackerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_message = "Not authenticated"


class Forbidden(TrackerError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_message = "Access denied"


class NotAssigned(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_assigned"
    default_message = "No bus assigned"


class NotFound(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Not found"


class ValidationError(TrackerError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    default_message = "Invalid request"


class Conflict(TrackerError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    default_message = "Already exists"


class RateLimited(TrackerError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    default_message = "Too many location updates, please try again later"


class UpstreamUnavailable(TrackerError):
    """Routing provider failure. Never leaves the resolver."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "upstream_unavailable"
    default_message = "Routing provider unavailable"


class StorageUnavailable(TrackerError):
    """Database write or read failed; the caller may retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_unavailable"
    default_message = "Could not save the update, please retry"
