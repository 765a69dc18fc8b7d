# gearflow/services/scans.py
"""
Scan Verification State Machine.

Scans are recorded as immutable events per phase (CHECKOUT at pickup,
CHECKIN at return). Completion of a phase is only reachable when every
declared asset has a successful scan and every bulk line has been scanned
up to its planned quantity, or when an admin override exists for the
booking. Failed scans are persisted too, then reported as errors.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gearflow.database import transaction, utcnow
from gearflow.db_models import (
    Asset, Booking, BookingBulkItem, BookingKind, BookingSerializedItem, BookingStatus,
    BulkSku, ScanPhase, ScanSessionStatus, ScanType,
)
from gearflow.db_models_ext import OverrideEvent, ScanEvent, ScanSession
from gearflow.errors import IncompleteScanError, ValidationError, is_concurrency_conflict
from gearflow.models import CompletionResult, CompletionState, MissingBulk, ScanEventOut, dump
from gearflow.services.audit import write_audit
from gearflow.services.bookings import BookingService
from gearflow.services.capabilities import Actor, Capability, require_capability

log = logging.getLogger(__name__)

SERIALIZED_MISMATCH = "Scanned serialized QR does not belong to this checkout"
BULK_MISMATCH = "Scanned bulk bin QR does not belong to this checkout"


class ScanService:
    """Service for scan sessions, scan events and admin overrides."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.bookings = BookingService(db)

    async def _checkout(self, booking_id: int) -> Booking:
        return await self.bookings.get_booking(booking_id, BookingKind.CHECKOUT)

    async def _open_session(self, booking_id: int, phase: ScanPhase) -> Optional[ScanSession]:
        stmt = select(ScanSession).where(
            ScanSession.booking_id == booking_id,
            ScanSession.phase == phase,
            ScanSession.status == ScanSessionStatus.OPEN,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_session(self, booking_id: int, actor_id: int, phase: ScanPhase) -> Tuple[ScanSession, bool]:
        """Open a scan session, or return the one already OPEN for this phase.

        Returns ``(session, created)``.
        """
        try:
            async with transaction(self.db):
                await self._checkout(booking_id)
                existing = await self._open_session(booking_id, phase)
                if existing is not None:
                    return existing, False

                session = ScanSession(
                    booking_id=booking_id,
                    actor_user_id=actor_id,
                    phase=phase,
                    status=ScanSessionStatus.OPEN,
                )
                self.db.add(session)
                await self.db.flush()
        except IntegrityError as exc:
            # a concurrent caller opened the session first
            if not is_concurrency_conflict(exc):
                raise
            existing = await self._open_session(booking_id, phase)
            if existing is None:
                raise
            log.info("scan session for checkout %s (%s) opened concurrently; reusing %s",
                     booking_id, phase.value, existing.id)
            return existing, False
        log.info("scan session %s opened for checkout %s (%s)", session.id, booking_id, phase.value)
        return session, True

    # =========================================================================
    # Scan events
    # =========================================================================

    async def record_scan(
        self,
        booking_id: int,
        actor_id: int,
        phase: ScanPhase,
        scan_type: ScanType,
        scan_value: str,
        quantity: Optional[int] = None,
        device_context: Optional[str] = None,
    ) -> ScanEvent:
        if scan_type == ScanType.BULK_BIN and (quantity is None or quantity <= 0):
            raise ValidationError("Bulk scans require a positive quantity")

        async with transaction(self.db):
            booking = await self._checkout(booking_id)
            session = await self._open_session(booking.id, phase)
            event = ScanEvent(
                booking_id=booking.id,
                scan_session_id=session.id if session else None,
                actor_user_id=actor_id,
                scan_type=scan_type,
                scan_value=scan_value,
                phase=phase,
                success=False,
                quantity=quantity if scan_type == ScanType.BULK_BIN else None,
                device_context=device_context,
            )

            if scan_type == ScanType.SERIALIZED:
                asset_id = await self._match_asset(booking.id, scan_value)
                if asset_id is not None:
                    event.success = True
                    event.asset_id = asset_id
            else:
                item = await self._match_bulk_item(booking.id, scan_value)
                if item is not None:
                    event.success = True
                    event.bulk_sku_id = item.bulk_sku_id
                    await self._count_bulk(item, phase, quantity)

            self.db.add(event)
            await self.db.flush()

        if not event.success:
            log.info("rejected %s scan %r on checkout %s", scan_type.value, scan_value, booking_id)
            message = SERIALIZED_MISMATCH if scan_type == ScanType.SERIALIZED else BULK_MISMATCH
            raise ValidationError(message, {"event": dump(ScanEventOut.model_validate(event))})
        return event

    async def _match_asset(self, booking_id: int, scan_value: str) -> Optional[int]:
        stmt = (
            select(Asset.id)
            .join(BookingSerializedItem, BookingSerializedItem.asset_id == Asset.id)
            .where(BookingSerializedItem.booking_id == booking_id, Asset.qr_code_value == scan_value)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _match_bulk_item(self, booking_id: int, scan_value: str) -> Optional[BookingBulkItem]:
        stmt = (
            select(BookingBulkItem)
            .join(BulkSku, BulkSku.id == BookingBulkItem.bulk_sku_id)
            .where(BookingBulkItem.booking_id == booking_id, BulkSku.bin_qr_code_value == scan_value)
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def _count_bulk(self, item: BookingBulkItem, phase: ScanPhase, quantity: int) -> None:
        column = (
            BookingBulkItem.checked_out_quantity if phase == ScanPhase.CHECKOUT
            else BookingBulkItem.checked_in_quantity
        )
        await self.db.execute(
            update(BookingBulkItem)
            .where(BookingBulkItem.id == item.id)
            .values({column: func.coalesce(column, 0) + quantity})
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Completion
    # =========================================================================

    async def completion_state(self, booking_id: int, phase: ScanPhase) -> CompletionState:
        declared = (await self.db.execute(
            select(BookingSerializedItem.asset_id)
            .where(BookingSerializedItem.booking_id == booking_id)
            .order_by(BookingSerializedItem.id)
        )).scalars().all()
        scanned_assets = set((await self.db.execute(
            select(ScanEvent.asset_id).where(
                ScanEvent.booking_id == booking_id,
                ScanEvent.phase == phase,
                ScanEvent.success.is_(True),
                ScanEvent.asset_id.is_not(None),
            )
        )).scalars().all())

        planned = (await self.db.execute(
            select(BookingBulkItem.bulk_sku_id, BookingBulkItem.planned_quantity)
            .where(BookingBulkItem.booking_id == booking_id)
            .order_by(BookingBulkItem.id)
        )).all()
        scanned_bulk: Dict[int, int] = {
            row.bulk_sku_id: int(row.scanned or 0)
            for row in (await self.db.execute(
                select(ScanEvent.bulk_sku_id, func.sum(ScanEvent.quantity).label("scanned"))
                .where(
                    ScanEvent.booking_id == booking_id,
                    ScanEvent.phase == phase,
                    ScanEvent.success.is_(True),
                    ScanEvent.bulk_sku_id.is_not(None),
                )
                .group_by(ScanEvent.bulk_sku_id)
            )).all()
        }

        return CompletionState(
            missing_serialized=[asset_id for asset_id in declared if asset_id not in scanned_assets],
            missing_bulk=[
                MissingBulk(bulk_sku_id=row.bulk_sku_id, required=row.planned_quantity,
                            scanned=scanned_bulk.get(row.bulk_sku_id, 0))
                for row in planned
                if scanned_bulk.get(row.bulk_sku_id, 0) < row.planned_quantity
            ],
        )

    async def has_override(self, booking_id: int) -> bool:
        count = await self.db.scalar(
            select(func.count(OverrideEvent.id)).where(OverrideEvent.booking_id == booking_id)
        )
        return bool(count)

    async def _gate(self, booking_id: int, phase: ScanPhase) -> CompletionResult:
        booking = await self._checkout(booking_id)
        if booking.status != BookingStatus.OPEN:
            raise ValidationError("Checkout must be open")

        state = await self.completion_state(booking.id, phase)
        override = await self.has_override(booking.id)
        if not override and not state.is_complete:
            raise IncompleteScanError(
                state.missing_serialized,
                [dump(m) for m in state.missing_bulk],
            )

        await self.db.execute(
            update(ScanSession)
            .where(
                ScanSession.booking_id == booking.id,
                ScanSession.phase == phase,
                ScanSession.status == ScanSessionStatus.OPEN,
            )
            .values(status=ScanSessionStatus.COMPLETED, completed_at=utcnow())
        )
        return CompletionResult(
            missing_serialized=state.missing_serialized,
            missing_bulk=state.missing_bulk,
            override_used=override,
        )

    async def complete_checkout(self, booking_id: int, actor_id: int) -> CompletionResult:
        async with transaction(self.db):
            result = await self._gate(booking_id, ScanPhase.CHECKOUT)
            await write_audit(
                self.db, actor_id, "booking", booking_id, "checkout_scan_completed",
                after={"overrideUsed": result.override_used},
            )
        log.info("checkout %s pickup verified (override=%s)", booking_id, result.override_used)
        return result

    async def complete_checkin(self, booking_id: int, actor_id: int) -> CompletionResult:
        """Gate the return, then finalize the checkout in the same transaction."""
        async with transaction(self.db):
            result = await self._gate(booking_id, ScanPhase.CHECKIN)
            await self.bookings.mark_checkout_completed(booking_id, actor_id)
        log.info("checkout %s returned and completed (override=%s)", booking_id, result.override_used)
        return result

    # =========================================================================
    # Admin override
    # =========================================================================

    async def create_admin_override(
        self,
        booking_id: int,
        actor: Actor,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> OverrideEvent:
        require_capability(actor, Capability.CREATE_OVERRIDE)
        reason = (reason or "").strip()
        if not 5 <= len(reason) <= 1000:
            raise ValidationError("Override reason must be between 5 and 1000 characters")

        async with transaction(self.db):
            await self._checkout(booking_id)
            event = OverrideEvent(
                booking_id=booking_id,
                actor_user_id=actor.id,
                reason=reason,
                details=details,
            )
            self.db.add(event)
            await self.db.flush()
            await write_audit(
                self.db, actor.id, "booking", booking_id, "admin_override",
                after={"reason": reason, "details": details},
            )
        log.warning("admin override on checkout %s by user=%s: %s", booking_id, actor.id, reason)
        return event
