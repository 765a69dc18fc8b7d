# gearflow/services/ledger.py
"""
Bulk Stock Ledger - the only writer of bulk stock balances.

Each change appends an immutable BulkStockMovement carrying the balance it
produced. A change that would take a balance below zero is rejected and
leaves the balance untouched.

The ledger never commits: callers wrap it in their own transaction so a
booking and its stock movements land (or fail) together.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.database import transaction
from gearflow.db_models import BulkSku, MovementKind
from gearflow.db_models_ext import BulkStockBalance, BulkStockMovement
from gearflow.errors import NotFoundError, StockConflictError, ValidationError
from gearflow.models import BulkSkuIn
from gearflow.services.audit import write_audit

log = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    current: int
    next: int
    movement: BulkStockMovement


class BulkStockLedger:
    """Service for bulk stock balances and their movement history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Balances
    # =========================================================================

    async def get_balance(self, bulk_sku_id: int, location_id: int) -> Optional[BulkStockBalance]:
        stmt = select(BulkStockBalance).where(
            BulkStockBalance.bulk_sku_id == bulk_sku_id,
            BulkStockBalance.location_id == location_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def on_hand(self, bulk_sku_id: int, location_id: int) -> int:
        balance = await self.get_balance(bulk_sku_id, location_id)
        return balance.on_hand_quantity if balance else 0

    # =========================================================================
    # Movements
    # =========================================================================

    async def apply_movement(
        self,
        bulk_sku_id: int,
        location_id: int,
        actor_id: int,
        kind: MovementKind,
        quantity: int,
        booking_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply one stock change.

        CHECKOUT and CHECKIN take a positive magnitude (CHECKOUT subtracts,
        CHECKIN adds). ADJUSTMENT takes a non-zero signed delta.
        """
        if kind == MovementKind.ADJUSTMENT:
            if quantity == 0:
                raise ValidationError("Adjustment quantity must be non-zero")
            delta = quantity
        else:
            if quantity <= 0:
                raise ValidationError("Movement quantity must be positive")
            delta = -quantity if kind == MovementKind.CHECKOUT else quantity

        balance = await self.get_balance(bulk_sku_id, location_id)
        current = balance.on_hand_quantity if balance else 0
        next_quantity = current + delta

        if next_quantity < 0:
            log.info(
                "ledger rejected %s of %s for sku=%s location=%s (on hand %s)",
                kind.value, quantity, bulk_sku_id, location_id, current,
            )
            name = await self._sku_name(bulk_sku_id)
            raise StockConflictError(
                f"Insufficient bulk stock for {name}. On hand: {current}, required: {abs(delta)}",
                {"bulkSkuId": bulk_sku_id, "current": current, "requested": abs(delta)},
            )

        if balance is None:
            balance = BulkStockBalance(
                bulk_sku_id=bulk_sku_id,
                location_id=location_id,
                on_hand_quantity=next_quantity,
            )
            self.db.add(balance)
        else:
            balance.on_hand_quantity = next_quantity

        movement = BulkStockMovement(
            bulk_sku_id=bulk_sku_id,
            location_id=location_id,
            booking_id=booking_id,
            actor_user_id=actor_id,
            kind=kind,
            quantity=abs(delta),
            delta=delta,
            balance_after=next_quantity,
            reason=reason,
        )
        self.db.add(movement)
        await self.db.flush()
        return LedgerResult(current=current, next=next_quantity, movement=movement)

    async def _sku_name(self, bulk_sku_id: int) -> str:
        result = await self.db.execute(select(BulkSku.name).where(BulkSku.id == bulk_sku_id))
        return result.scalar_one_or_none() or f"SKU {bulk_sku_id}"

    # =========================================================================
    # Catalog-facing operations (own their transaction)
    # =========================================================================

    async def adjust(self, bulk_sku_id: int, actor_id: int, quantity_delta: int, reason: str) -> LedgerResult:
        """Manual stock correction at the SKU's home location."""
        reason = (reason or "").strip()
        if len(reason) < 3:
            raise ValidationError("Adjustment reason must be at least 3 characters")

        async with transaction(self.db):
            sku = await self.db.get(BulkSku, bulk_sku_id)
            if sku is None:
                raise NotFoundError("Bulk SKU not found")
            balance = await self.get_balance(sku.id, sku.location_id)
            current = balance.on_hand_quantity if balance else 0
            if current + quantity_delta < 0:
                raise StockConflictError(
                    f"Adjustment would drop stock below zero. Current: {current}",
                    {"bulkSkuId": sku.id, "current": current, "requested": quantity_delta},
                )
            result = await self.apply_movement(
                sku.id, sku.location_id, actor_id, MovementKind.ADJUSTMENT, quantity_delta, reason=reason,
            )
            await write_audit(
                self.db, actor_id, "bulk_sku", sku.id, "stock_adjusted",
                before={"onHandQuantity": result.current},
                after={"onHandQuantity": result.next, "reason": reason},
            )
        log.info("sku=%s adjusted %s -> %s by user=%s", sku.id, result.current, result.next, actor_id)
        return result

    async def create_sku(self, payload: BulkSkuIn, actor_id: int) -> BulkSku:
        """Create a SKU with its balance row; seed stock through the ledger."""
        async with transaction(self.db):
            sku = BulkSku(
                name=payload.name,
                category=payload.category,
                unit=payload.unit,
                location_id=payload.location_id,
                bin_qr_code_value=payload.bin_qr_code_value,
                min_threshold=payload.min_threshold,
                active=payload.active,
            )
            self.db.add(sku)
            await self.db.flush()

            if payload.initial_quantity > 0:
                await self.apply_movement(
                    sku.id, sku.location_id, actor_id, MovementKind.ADJUSTMENT,
                    payload.initial_quantity, reason="Initial quantity",
                )
            else:
                self.db.add(BulkStockBalance(bulk_sku_id=sku.id, location_id=sku.location_id, on_hand_quantity=0))
            await write_audit(
                self.db, actor_id, "bulk_sku", sku.id, "created",
                after={"name": sku.name, "initialQuantity": payload.initial_quantity},
            )
        return sku
