"""
Error taxonomy for fleet placement and provisioning.

Errors raised during the synchronous part of a request carry an HTTP status
and a stable machine code; ``register_exception_handlers`` renders them as
``{"detail": ..., "error": ...}``. Provider errors never reach a client
directly: the orchestrator records them on the Deployment.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FleetError(Exception):
    """Base for errors surfaced to API callers."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "bad_request"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FleetError):
    """Malformed input: bad IP, bad slug, missing field."""
    code = "validation_error"


class NotFoundError(FleetError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(FleetError):
    """Slug collision or an in-flight deployment for the same slug."""
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class PlacementError(FleetError):
    """An explicitly requested VPS cannot take the tenant."""
    status_code = status.HTTP_409_CONFLICT
    code = "placement_error"


class NoCapacityError(FleetError):
    """No shared VPS has a free slot."""
    status_code = status.HTTP_409_CONFLICT
    code = "no_capacity"


class CapacityExceededError(FleetError):
    """The atomic increment found the VPS full (a concurrent placement won)."""
    status_code = status.HTTP_409_CONFLICT
    code = "capacity_exceeded"


class InvalidTransitionError(FleetError):
    """A deployment was asked to move against its state machine."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "invalid_transition"


# ── Provider-side errors (recorded on deployments, never rendered) ───────────

class ProviderError(Exception):
    """The VPS provider rejected or failed the request. Terminal for a deployment."""


class ProviderUnavailableError(ProviderError):
    """Transient transport failure talking to the provider. Retried by the orchestrator."""


class ProvisioningTimeoutError(ProviderError):
    """The deployment exceeded its wall-clock budget."""


# ── Handlers ─────────────────────────────────────────────────────────────────

async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    content: dict[str, Any] = {"detail": exc.message, "error": exc.code}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body/query validation failures use the same envelope, with status 400."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "error": ValidationError.code, "details": {"errors": errors}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FleetError, fleet_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
