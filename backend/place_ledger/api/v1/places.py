"""
Place quota API endpoints.

Endpoints:
- GET /api/v1/places/limits - Capacity summary for the current user (display only)
- POST /api/v1/lists/{list_id}/places - Register a place behind the quota gate
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from place_ledger.auth import CurrentUser
from place_ledger.models.ledger import AvailabilitySummary, RegistrationOutcome, RegistrationResult
from place_ledger.services.availability import AvailabilityCalculator
from place_ledger.services.ledger_store import LedgerStoreError
from place_ledger.services.place_writer import PlaceWriter
from place_ledger.services.registration_gate import RegistrationGate

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["places"])


class RegisterPlaceRequest(BaseModel):
    """Place to add to a list."""

    name: str = Field(min_length=1, max_length=200)
    google_place_id: str | None = Field(default=None, max_length=300)
    notes: str | None = Field(default=None, max_length=2000)


class RegisterPlaceResponse(BaseModel):
    """Stored place plus the caller's usage after registering it."""

    place: dict[str, Any]
    used_places: int | None = None


def _get_calculator(request: Request) -> AvailabilityCalculator:
    calculator = getattr(request.app.state, "availability_calculator", None)
    if calculator is None:
        raise HTTPException(status_code=503, detail="Ledger service unavailable")
    return calculator


def _get_gate(request: Request) -> RegistrationGate:
    gate = getattr(request.app.state, "registration_gate", None)
    if gate is None:
        raise HTTPException(status_code=503, detail="Ledger service unavailable")
    return gate


def _get_place_writer(request: Request) -> PlaceWriter:
    writer = getattr(request.app.state, "place_writer", None)
    if writer is None:
        raise HTTPException(status_code=503, detail="Place storage unavailable")
    return writer


def _registration_error(result: RegistrationResult) -> HTTPException:
    if result.outcome == RegistrationOutcome.QUOTA_EXCEEDED:
        return HTTPException(
            status_code=402,
            detail={
                "code": "place_limit_reached",
                "error_key": "errors.places.limitReached",
                "used_places": result.consume.used_places,
            },
        )
    if result.outcome == RegistrationOutcome.STORE_ERROR:
        return HTTPException(
            status_code=503,
            detail={"code": "registration_failed", "error_key": "errors.places.tryAgain"},
        )
    return HTTPException(
        status_code=500,
        detail={"code": result.outcome.value, "error_key": "errors.common.internalError"},
    )


@router.get("/places/limits", response_model=AvailabilitySummary)
async def place_limits(request: Request, user: CurrentUser) -> AvailabilitySummary:
    """Return how many places the authenticated user can still register."""
    calculator = _get_calculator(request)
    try:
        return await calculator.get_availability(user.id)
    except LedgerStoreError as e:
        logger.error("place_limits_failed", user_id=user.id, error=str(e))
        raise HTTPException(
            status_code=503,
            detail={"code": "place_limits_unavailable", "error_key": "errors.common.internalError"},
        )


@router.post("/lists/{list_id}/places", response_model=RegisterPlaceResponse, status_code=201)
async def register_place(
    list_id: str,
    body: RegisterPlaceRequest,
    request: Request,
    user: CurrentUser,
) -> RegisterPlaceResponse:
    """Register a place in a list, spending one unit of the user's quota."""
    gate = _get_gate(request)
    writer = _get_place_writer(request)

    async def _insert() -> dict[str, Any]:
        return await writer.insert_place(user.id, list_id, body.model_dump(exclude_none=True))

    result = await gate.try_register_place(user.id, _insert)
    if not result.ok:
        raise _registration_error(result)

    return RegisterPlaceResponse(place=result.place or {}, used_places=result.consume.used_places)
