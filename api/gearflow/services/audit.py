# gearflow/services/audit.py
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.db_models import Booking
from gearflow.db_models_ext import AuditLog


async def write_audit(
    db: AsyncSession,
    actor_id: Optional[int],
    entity_type: str,
    entity_id: int,
    action: str,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Append one audit row inside the caller's transaction."""
    entry = AuditLog(
        actor_user_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before_json=before,
        after_json=after,
    )
    db.add(entry)
    await db.flush()
    return entry


def booking_snapshot(booking: Booking, asset_ids=None, bulk_items=None) -> Dict[str, Any]:
    """JSON-safe view of a booking for before/after audit payloads."""
    if asset_ids is None:
        asset_ids = [item.asset_id for item in booking.serialized_items]
    if bulk_items is None:
        bulk_items = [
            {"bulkSkuId": item.bulk_sku_id, "quantity": item.planned_quantity}
            for item in booking.bulk_items
        ]
    return {
        "kind": booking.kind.value,
        "title": booking.title,
        "status": booking.status.value,
        "requesterUserId": booking.requester_user_id,
        "locationId": booking.location_id,
        "startsAt": booking.starts_at.isoformat(),
        "endsAt": booking.ends_at.isoformat(),
        "notes": booking.notes,
        "sourceReservationId": booking.source_reservation_id,
        "serializedAssetIds": list(asset_ids),
        "bulkItems": list(bulk_items),
    }
