# gearflow/services/status.py
"""
Effective-Status Deriver.

RESERVED and CHECKED_OUT are never stored on the asset; they are computed
from active allocations at read time. Stored MAINTENANCE / RETIRED win
outright and skip the allocation lookup.
"""
from __future__ import annotations
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.database import utcnow
from gearflow.db_models import (
    Asset, AssetAllocation, AssetStatus, Booking, BookingKind, BookingStatus, EffectiveStatus,
)

_STORED_TERMINAL = {
    AssetStatus.MAINTENANCE: EffectiveStatus.MAINTENANCE,
    AssetStatus.RETIRED: EffectiveStatus.RETIRED,
}

_Hold = Tuple[BookingKind, BookingStatus, datetime, datetime]


def _resolve(holds: Iterable[_Hold], now: datetime) -> EffectiveStatus:
    holds = list(holds)
    if any(kind == BookingKind.CHECKOUT and status == BookingStatus.OPEN for kind, status, _, _ in holds):
        return EffectiveStatus.CHECKED_OUT
    if any(
        kind == BookingKind.RESERVATION and status == BookingStatus.BOOKED and start <= now < end
        for kind, status, start, end in holds
    ):
        return EffectiveStatus.RESERVED
    return EffectiveStatus.AVAILABLE


async def derive_asset_statuses(
    db: AsyncSession,
    asset_ids: Sequence[int],
    now: Optional[datetime] = None,
) -> Dict[int, EffectiveStatus]:
    """Batch form: one status query plus one allocation query. Unknown ids are omitted."""
    if not asset_ids:
        return {}
    now = now or utcnow()

    result = await db.execute(select(Asset.id, Asset.status).where(Asset.id.in_(list(asset_ids))))
    stored = {row.id: row.status for row in result.all()}

    statuses: Dict[int, EffectiveStatus] = {}
    pending: List[int] = []
    for asset_id, status in stored.items():
        if status in _STORED_TERMINAL:
            statuses[asset_id] = _STORED_TERMINAL[status]
        else:
            pending.append(asset_id)
    if not pending:
        return statuses

    result = await db.execute(
        select(AssetAllocation.asset_id, Booking.kind, Booking.status, AssetAllocation.starts_at, AssetAllocation.ends_at)
        .join(Booking, Booking.id == AssetAllocation.booking_id)
        .where(
            AssetAllocation.asset_id.in_(pending),
            AssetAllocation.active.is_(True),
            Booking.status.in_((BookingStatus.OPEN, BookingStatus.BOOKED)),
        )
    )
    holds: Dict[int, List[_Hold]] = defaultdict(list)
    for row in result.all():
        holds[row.asset_id].append((row.kind, row.status, row.starts_at, row.ends_at))

    for asset_id in pending:
        statuses[asset_id] = _resolve(holds.get(asset_id, ()), now)
    return statuses


async def derive_asset_status(db: AsyncSession, asset_id: int, now: Optional[datetime] = None) -> EffectiveStatus:
    statuses = await derive_asset_statuses(db, [asset_id], now)
    return statuses.get(asset_id, EffectiveStatus.AVAILABLE)


async def enrich_assets_with_status(
    db: AsyncSession,
    assets: Sequence[Asset],
    now: Optional[datetime] = None,
) -> List[Tuple[Asset, EffectiveStatus]]:
    statuses = await derive_asset_statuses(db, [a.id for a in assets], now)
    return [(a, statuses.get(a.id, EffectiveStatus.AVAILABLE)) for a in assets]


async def count_assets_by_effective_status(
    db: AsyncSession,
    location_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    stmt = select(Asset.id)
    if location_id is not None:
        stmt = stmt.where(Asset.location_id == location_id)
    asset_ids = list((await db.execute(stmt)).scalars().all())

    counts = {status.value: 0 for status in EffectiveStatus}
    for status in (await derive_asset_statuses(db, asset_ids, now)).values():
        counts[status.value] += 1
    return counts
