# gearflow/routers/integrity.py
from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.actor import get_actor
from gearflow.database import get_session
from gearflow.services.capabilities import Actor
from gearflow.services.integrity import find_overlapping_allocations

router = APIRouter(prefix="/integrity", tags=["Integrity"])


@router.get("/allocations")
async def overlapping_allocations(
    asset_id: Optional[int] = Query(None, alias="assetId"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    overlaps = await find_overlapping_allocations(db, asset_id)
    return {"data": overlaps, "ok": not overlaps}
