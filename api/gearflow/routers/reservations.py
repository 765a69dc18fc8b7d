# gearflow/routers/reservations.py
"""
Reservations Router - soft holds on future time.
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session
from gearflow.db_models import BookingKind
from gearflow.errors import ValidationError
from gearflow.models import BookingCreateIn, BookingOut, ReservationUpdateIn, dump
from gearflow.services.bookings import BookingService, page_bounds
from gearflow.services.capabilities import Actor
from gearflow.timeutil import parse_datetime

router = APIRouter(prefix="/reservations", tags=["Reservations"])


def _optional_datetime(value: Optional[str], name: str):
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}")


@router.get("")
async def list_reservations(
    location_id: Optional[int] = Query(None, alias="locationId"),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    service = BookingService(db)
    rows, total = await service.list_bookings(
        BookingKind.RESERVATION,
        location_id=location_id,
        starts_from=_optional_datetime(date_from, "from"),
        starts_to=_optional_datetime(date_to, "to"),
        limit=limit,
        offset=offset,
    )
    limit, offset = page_bounds(limit, offset)
    return {
        "data": [dump(BookingOut.model_validate(b)) for b in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=201)
async def create_reservation(
    request: BookingCreateIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    booking = await BookingService(db).create(
        BookingKind.RESERVATION,
        title=request.title,
        requester_id=request.requester_user_id,
        location_id=request.location_id,
        starts_at=request.starts_at,
        ends_at=request.ends_at,
        created_by=actor.id,
        serialized_asset_ids=request.serialized_asset_ids,
        bulk_items=request.bulk_items,
        notes=request.notes,
    )
    return {"data": dump(BookingOut.model_validate(booking))}


@router.get("/{booking_id}")
async def get_reservation(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    booking = await BookingService(db).get_booking(booking_id, BookingKind.RESERVATION)
    return {"data": dump(BookingOut.model_validate(booking))}


@router.patch("/{booking_id}")
async def update_reservation(
    booking_id: int,
    request: ReservationUpdateIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    booking = await BookingService(db).update_reservation(booking_id, actor.id, request)
    return {"data": dump(BookingOut.model_validate(booking))}


@router.post("/{booking_id}/cancel")
async def cancel_reservation(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    booking = await BookingService(db).cancel_reservation(booking_id, actor.id)
    return {"success": True, "data": dump(BookingOut.model_validate(booking))}
