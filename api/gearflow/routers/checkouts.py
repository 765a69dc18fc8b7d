# gearflow/routers/checkouts.py
"""
Checkouts Router - active loans, scan verification and admin overrides.
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session
from gearflow.db_models import BookingKind, BookingStatus, ScanPhase
from gearflow.errors import ValidationError
from gearflow.models import (
    BookingOut, CheckoutCreateIn, OverrideEventOut, OverrideIn, ScanEventOut, ScanIn,
    ScanSessionOut, StartScanSessionIn, dump,
)
from gearflow.services.bookings import BookingService, page_bounds
from gearflow.services.capabilities import Actor
from gearflow.services.scans import ScanService

router = APIRouter(prefix="/checkouts", tags=["Checkouts"])


# ============================================================================
# Bookings
# ============================================================================

@router.get("")
async def list_checkouts(
    status: Optional[BookingStatus] = Query(None),
    location_id: Optional[int] = Query(None, alias="locationId"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    rows, total = await BookingService(db).list_bookings(
        BookingKind.CHECKOUT, status=status, location_id=location_id, limit=limit, offset=offset,
    )
    limit, offset = page_bounds(limit, offset)
    return {
        "data": [dump(BookingOut.model_validate(b)) for b in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=201)
async def create_checkout(
    request: CheckoutCreateIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a checkout. With ``sourceReservationId`` the reservation is
    converted and cancelled atomically.
    """
    booking = await BookingService(db).create(
        BookingKind.CHECKOUT,
        title=request.title,
        requester_id=request.requester_user_id,
        location_id=request.location_id,
        starts_at=request.starts_at,
        ends_at=request.ends_at,
        created_by=actor.id,
        serialized_asset_ids=request.serialized_asset_ids,
        bulk_items=request.bulk_items,
        notes=request.notes,
        source_reservation_id=request.source_reservation_id,
    )
    return {"data": dump(BookingOut.model_validate(booking))}


@router.get("/{booking_id}")
async def get_checkout(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    booking = await BookingService(db).get_booking(booking_id, BookingKind.CHECKOUT)
    return {"data": dump(BookingOut.model_validate(booking))}


# ============================================================================
# Scanning
# ============================================================================

@router.post("/{booking_id}/start-scan-session")
async def start_scan_session(
    booking_id: int,
    request: StartScanSessionIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    session, created = await ScanService(db).start_session(booking_id, actor.id, request.phase)
    return JSONResponse(
        status_code=201 if created else 200,
        content={"data": dump(ScanSessionOut.model_validate(session)), "created": created},
    )


async def _record(booking_id: int, request: ScanIn, phase: ScanPhase, actor: Actor, db: AsyncSession):
    if request.phase != phase:
        raise ValidationError(f"Invalid phase for {phase.value.lower()} scan")
    event = await ScanService(db).record_scan(
        booking_id,
        actor.id,
        phase,
        request.scan_type,
        request.scan_value,
        quantity=request.quantity,
        device_context=request.device_context,
    )
    return {"data": {"success": True, "event": dump(ScanEventOut.model_validate(event))}}


@router.post("/{booking_id}/checkout-scan")
async def checkout_scan(
    booking_id: int,
    request: ScanIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    return await _record(booking_id, request, ScanPhase.CHECKOUT, actor, db)


@router.post("/{booking_id}/checkin-scan")
async def checkin_scan(
    booking_id: int,
    request: ScanIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    return await _record(booking_id, request, ScanPhase.CHECKIN, actor, db)


@router.get("/{booking_id}/scan-status")
async def scan_status(
    booking_id: int,
    phase: ScanPhase = Query(ScanPhase.CHECKOUT),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    service = ScanService(db)
    await service.bookings.get_booking(booking_id, BookingKind.CHECKOUT)
    state = await service.completion_state(booking_id, phase)
    return {
        "data": {
            **dump(state),
            "complete": state.is_complete,
            "overrideExists": await service.has_override(booking_id),
        }
    }


@router.post("/{booking_id}/complete-checkout")
async def complete_checkout(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    result = await ScanService(db).complete_checkout(booking_id, actor.id)
    return dump(result)


@router.post("/{booking_id}/complete-checkin")
async def complete_checkin(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    result = await ScanService(db).complete_checkin(booking_id, actor.id)
    return dump(result)


# ============================================================================
# Admin override
# ============================================================================

@router.post("/{booking_id}/admin-override", status_code=201)
async def admin_override(
    booking_id: int,
    request: OverrideIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    event = await ScanService(db).create_admin_override(booking_id, actor, request.reason, request.details)
    return {"data": dump(OverrideEventOut.model_validate(event))}
