# gearflow/services/integrity.py
"""
Read-only sweep for overlapping active allocations.

The overlap guard should make this always return an empty list; operators
run it after restores or manual SQL to confirm that still holds.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from gearflow.db_models import AssetAllocation, Booking, HOLDING_STATUSES


async def find_overlapping_allocations(db: AsyncSession, asset_id: Optional[int] = None) -> List[Dict[str, Any]]:
    a = aliased(AssetAllocation)
    b = aliased(AssetAllocation)
    booking_a = aliased(Booking)
    booking_b = aliased(Booking)

    stmt = (
        select(a.asset_id, a.booking_id.label("first_booking_id"), b.booking_id.label("second_booking_id"),
               a.starts_at.label("first_starts_at"), a.ends_at.label("first_ends_at"),
               b.starts_at.label("second_starts_at"), b.ends_at.label("second_ends_at"))
        .join(b, (b.asset_id == a.asset_id) & (b.id > a.id))
        .join(booking_a, booking_a.id == a.booking_id)
        .join(booking_b, booking_b.id == b.booking_id)
        .where(
            a.active.is_(True),
            b.active.is_(True),
            booking_a.status.in_(HOLDING_STATUSES),
            booking_b.status.in_(HOLDING_STATUSES),
            a.starts_at < b.ends_at,
            a.ends_at > b.starts_at,
        )
        .order_by(a.asset_id, a.starts_at)
    )
    if asset_id is not None:
        stmt = stmt.where(a.asset_id == asset_id)

    result = await db.execute(stmt)
    return [
        {
            "assetId": row.asset_id,
            "firstBookingId": row.first_booking_id,
            "secondBookingId": row.second_booking_id,
            "firstStartsAt": row.first_starts_at.isoformat(),
            "firstEndsAt": row.first_ends_at.isoformat(),
            "secondStartsAt": row.second_starts_at.isoformat(),
            "secondEndsAt": row.second_ends_at.isoformat(),
        }
        for row in result.all()
    ]
