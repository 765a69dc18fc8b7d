# gearflow/services/availability.py
"""
Availability Checker - read-only conflict, shortage and status checks.

All three checks always run so a caller sees every problem at once.
"""
from __future__ import annotations
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.db_models import (
    Asset, AssetAllocation, AssetStatus, Booking, HOLDING_STATUSES,
)
from gearflow.db_models_ext import BulkStockBalance
from gearflow.models import (
    AvailabilityReport, BulkItemIn, BulkShortage, SerializedConflict, UnavailableAsset,
)
from gearflow.timeutil import DateInput, parse_date_range

NOT_FOUND = "NOT_FOUND"


class AvailabilityService:
    """Answers "can these items be booked for this window at this location?"."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check_serialized_conflicts(
        self,
        asset_ids: Sequence[int],
        starts_at: datetime,
        ends_at: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> List[SerializedConflict]:
        if not asset_ids:
            return []
        stmt = (
            select(AssetAllocation.asset_id, AssetAllocation.booking_id,
                   AssetAllocation.starts_at, AssetAllocation.ends_at)
            .join(Booking, Booking.id == AssetAllocation.booking_id)
            .where(
                AssetAllocation.asset_id.in_(list(asset_ids)),
                AssetAllocation.active.is_(True),
                Booking.status.in_(HOLDING_STATUSES),
                # half-open overlap: existing.start < new.end AND existing.end > new.start
                AssetAllocation.starts_at < ends_at,
                AssetAllocation.ends_at > starts_at,
            )
            .order_by(AssetAllocation.asset_id, AssetAllocation.starts_at)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(AssetAllocation.booking_id != exclude_booking_id)

        result = await self.db.execute(stmt)
        return [
            SerializedConflict(
                asset_id=row.asset_id,
                conflicting_booking_id=row.booking_id,
                starts_at=row.starts_at,
                ends_at=row.ends_at,
            )
            for row in result.all()
        ]

    async def check_asset_statuses(self, asset_ids: Sequence[int]) -> List[UnavailableAsset]:
        if not asset_ids:
            return []
        result = await self.db.execute(
            select(Asset.id, Asset.status).where(Asset.id.in_(list(asset_ids)))
        )
        stored: Dict[int, AssetStatus] = {row.id: row.status for row in result.all()}

        out: List[UnavailableAsset] = []
        for asset_id in asset_ids:
            status = stored.get(asset_id)
            if status is None:
                out.append(UnavailableAsset(asset_id=asset_id, status=NOT_FOUND))
            elif status != AssetStatus.AVAILABLE:
                out.append(UnavailableAsset(asset_id=asset_id, status=status.value))
        return out

    async def check_bulk_shortages(
        self,
        location_id: int,
        bulk_items: Iterable[BulkItemIn],
    ) -> List[BulkShortage]:
        items = list(bulk_items)
        if not items:
            return []
        sku_ids = [item.bulk_sku_id for item in items]
        result = await self.db.execute(
            select(BulkStockBalance.bulk_sku_id, BulkStockBalance.on_hand_quantity).where(
                BulkStockBalance.location_id == location_id,
                BulkStockBalance.bulk_sku_id.in_(sku_ids),
            )
        )
        on_hand = {row.bulk_sku_id: row.on_hand_quantity for row in result.all()}

        shortages: List[BulkShortage] = []
        for item in items:
            available = on_hand.get(item.bulk_sku_id, 0)
            if available < item.quantity:
                shortages.append(
                    BulkShortage(bulk_sku_id=item.bulk_sku_id, requested=item.quantity, available=available)
                )
        return shortages

    async def check(
        self,
        location_id: int,
        starts_at: DateInput,
        ends_at: DateInput,
        serialized_asset_ids: Sequence[int] = (),
        bulk_items: Iterable[BulkItemIn] = (),
        exclude_booking_id: Optional[int] = None,
    ) -> AvailabilityReport:
        start, end = parse_date_range(starts_at, ends_at)
        asset_ids = dedupe(serialized_asset_ids)
        items = merge_bulk_items(bulk_items)

        return AvailabilityReport(
            conflicts=await self.check_serialized_conflicts(asset_ids, start, end, exclude_booking_id),
            shortages=await self.check_bulk_shortages(location_id, items),
            unavailable_assets=await self.check_asset_statuses(asset_ids),
        )


def dedupe(ids: Iterable[int]) -> List[int]:
    """Drop repeated ids, keeping first-seen order."""
    return list(dict.fromkeys(ids))


def merge_bulk_items(items: Iterable[BulkItemIn]) -> List[BulkItemIn]:
    """Collapse repeated SKUs into one line with the summed quantity."""
    merged: Dict[int, int] = {}
    for item in items:
        merged[item.bulk_sku_id] = merged.get(item.bulk_sku_id, 0) + item.quantity
    return [BulkItemIn(bulk_sku_id=sku_id, quantity=qty) for sku_id, qty in merged.items()]
