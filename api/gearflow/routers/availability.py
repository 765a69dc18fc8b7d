# gearflow/routers/availability.py
from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session
from gearflow.models import AvailabilityCheckIn, dump
from gearflow.services.availability import AvailabilityService
from gearflow.services.capabilities import Actor

router = APIRouter(prefix="/availability", tags=["Availability"])


@router.post("/check")
async def check_availability(
    request: AvailabilityCheckIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    """Dry-run the booking checks for a window without writing anything."""
    report = await AvailabilityService(db).check(
        location_id=request.location_id,
        starts_at=request.starts_at,
        ends_at=request.ends_at,
        serialized_asset_ids=request.serialized_asset_ids,
        bulk_items=request.bulk_items,
        exclude_booking_id=request.exclude_booking_id,
    )
    return {"data": dump(report), "available": not report.has_problems}
