# gearflow/routers/assets.py
"""
Assets Router - serialized equipment with its derived status.
"""
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session, transaction
from gearflow.db_models import Asset
from gearflow.errors import NotFoundError
from gearflow.models import AssetIn, AssetOut, dump
from gearflow.services.audit import write_audit
from gearflow.services.bookings import page_bounds
from gearflow.services.capabilities import Actor, Capability, require_capability
from gearflow.services.status import (
    count_assets_by_effective_status, derive_asset_status, enrich_assets_with_status,
)

router = APIRouter(prefix="/assets", tags=["Assets"])


def _asset_out(asset: Asset, status) -> dict:
    out = AssetOut.model_validate(asset)
    out.computed_status = status
    return dump(out)


@router.get("")
async def list_assets(
    location_id: Optional[int] = Query(None, alias="locationId"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    limit, offset = page_bounds(limit, offset)
    filters = []
    if location_id is not None:
        filters.append(Asset.location_id == location_id)

    total = await db.scalar(select(func.count(Asset.id)).where(*filters))
    result = await db.execute(
        select(Asset).where(*filters).order_by(Asset.asset_tag).limit(limit).offset(offset)
    )
    enriched = await enrich_assets_with_status(db, list(result.scalars().all()))
    return {
        "data": [_asset_out(asset, status) for asset, status in enriched],
        "total": int(total or 0),
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=201)
async def create_asset(
    request: AssetIn,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    require_capability(actor, Capability.MANAGE_CATALOG)
    async with transaction(db):
        asset = Asset(**request.model_dump())
        db.add(asset)
        await db.flush()
        await write_audit(db, actor.id, "asset", asset.id, "created", after={"assetTag": asset.asset_tag})
    return {"data": _asset_out(asset, await derive_asset_status(db, asset.id))}


@router.get("/status-counts")
async def status_counts(
    location_id: Optional[int] = Query(None, alias="locationId"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    return {"data": await count_assets_by_effective_status(db, location_id)}


@router.get("/{asset_id}")
async def get_asset(
    asset_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    asset = await db.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    return {"data": _asset_out(asset, await derive_asset_status(db, asset.id))}
