# gearflow/routers/bulk_skus.py
"""
Bulk SKU Router - quantity-tracked consumables and their stock ledger.
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session
from gearflow.db_models import BulkSku
from gearflow.db_models_ext import BulkStockBalance, BulkStockMovement
from gearflow.models import BulkAdjustIn, BulkSkuIn, BulkSkuOut, dump
from gearflow.services.capabilities import Actor, Capability, require_capability
from gearflow.services.ledger import BulkStockLedger

router = APIRouter(prefix="/bulk-skus", tags=["Bulk SKUs"])


@router.get("")
async def list_bulk_skus(
    location_id: Optional[int] = Query(None, alias="locationId"),
    include_inactive: bool = Query(False, alias="includeInactive"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    stmt = (
        select(BulkSku, BulkStockBalance.on_hand_quantity)
        .outerjoin(
            BulkStockBalance,
            and_(
                BulkStockBalance.bulk_sku_id == BulkSku.id,
                BulkStockBalance.location_id == BulkSku.location_id,
            ),
        )
        .order_by(BulkSku.name, BulkSku.id)
    )
    if location_id is not None:
        stmt = stmt.where(BulkSku.location_id == location_id)
    if not include_inactive:
        stmt = stmt.where(BulkSku.active.is_(True))

    result = await db.execute(stmt)
    data = []
    for sku, on_hand in result.all():
        out = BulkSkuOut.model_validate(sku)
        out.on_hand_quantity = on_hand or 0
        row = dump(out)
        row["belowThreshold"] = out.on_hand_quantity < sku.min_threshold
        data.append(row)
    return {"data": data}


@router.post("", status_code=201)
async def create_bulk_sku(
    request: BulkSkuIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    require_capability(actor, Capability.MANAGE_CATALOG)
    ledger = BulkStockLedger(db)
    sku = await ledger.create_sku(request, actor.id)
    out = BulkSkuOut.model_validate(sku)
    out.on_hand_quantity = await ledger.on_hand(sku.id, sku.location_id)
    return {"data": dump(out)}


@router.post("/{sku_id}/adjust")
async def adjust_bulk_sku(
    sku_id: int,
    request: BulkAdjustIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    require_capability(actor, Capability.ADJUST_STOCK)
    result = await BulkStockLedger(db).adjust(sku_id, actor.id, request.quantity_delta, request.reason)
    return {"data": {"current": result.current, "next": result.next}}


@router.get("/{sku_id}/movements")
async def list_movements(
    sku_id: int,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    result = await db.execute(
        select(BulkStockMovement)
        .where(BulkStockMovement.bulk_sku_id == sku_id)
        .order_by(BulkStockMovement.id.desc())
        .limit(limit)
    )
    return {
        "data": [
            {
                "id": m.id,
                "kind": m.kind.value,
                "quantity": m.quantity,
                "delta": m.delta,
                "balanceAfter": m.balance_after,
                "bookingId": m.booking_id,
                "actorUserId": m.actor_user_id,
                "reason": m.reason,
                "createdAt": m.created_at.isoformat(),
            }
            for m in result.scalars().all()
        ]
    }
