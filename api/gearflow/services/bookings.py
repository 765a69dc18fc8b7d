# gearflow/services/bookings.py
"""
Booking Lifecycle Manager.

Creates, amends, cancels and converts bookings. Every write runs in one
transaction: the availability check, the booking row, its allocations,
its bulk stock movements and its audit entry commit together or not at
all. Competing writes are adjudicated by the database (SERIALIZABLE on
PostgreSQL, BEGIN IMMEDIATE on SQLite, plus the allocation overlap guard);
the loser gets the same 409 shape as an ordinary conflict.
"""
from __future__ import annotations
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from gearflow.database import transaction, utcnow
from gearflow.db_models import (
    AssetAllocation, Booking, BookingBulkItem, BookingKind, BookingSerializedItem,
    BookingStatus, MovementKind, ScanPhase, ScanSessionStatus,
)
from gearflow.db_models_ext import ScanSession
from gearflow.errors import ConflictError, NotFoundError, ValidationError, is_concurrency_conflict
from gearflow.models import AvailabilityReport, BulkItemIn, ReservationUpdateIn, dump
from gearflow.services.audit import booking_snapshot, write_audit
from gearflow.services.availability import AvailabilityService, dedupe, merge_bulk_items
from gearflow.services.ledger import BulkStockLedger
from gearflow.settings import settings
from gearflow.timeutil import DateInput, parse_date_range

log = logging.getLogger(__name__)

NOT_FOUND_MESSAGES = {
    None: "Booking not found",
    BookingKind.RESERVATION: "Reservation not found",
    BookingKind.CHECKOUT: "Checkout not found",
}

CLOSED_STATUSES = (BookingStatus.CANCELLED, BookingStatus.COMPLETED)


def page_bounds(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    """Clamp pagination to the configured default/maximum."""
    if limit is None or limit <= 0:
        limit = settings.PAGINATION_DEFAULT_LIMIT
    limit = min(limit, settings.PAGINATION_MAX_LIMIT)
    return limit, max(offset or 0, 0)


def availability_conflict(report: AvailabilityReport) -> ConflictError:
    return ConflictError("Availability conflict", dump(report))


class BookingService:
    """Service for reservations and checkouts."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.availability = AvailabilityService(db)
        self.ledger = BulkStockLedger(db)

    # =========================================================================
    # Reads
    # =========================================================================

    async def _load(self, booking_id: int) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .options(
                selectinload(Booking.serialized_items),
                selectinload(Booking.bulk_items),
                selectinload(Booking.allocations),
            )
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking(self, booking_id: int, kind: Optional[BookingKind] = None) -> Booking:
        booking = await self._load(booking_id)
        if booking is None or (kind is not None and booking.kind != kind):
            raise NotFoundError(NOT_FOUND_MESSAGES[kind])
        return booking

    async def list_bookings(
        self,
        kind: BookingKind,
        status: Optional[BookingStatus] = None,
        location_id: Optional[int] = None,
        starts_from: Optional[datetime] = None,
        starts_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Tuple[List[Booking], int]:
        limit, offset = page_bounds(limit, offset)

        filters = [Booking.kind == kind]
        if status is not None:
            filters.append(Booking.status == status)
        if location_id is not None:
            filters.append(Booking.location_id == location_id)
        if starts_from is not None:
            filters.append(Booking.ends_at > starts_from)
        if starts_to is not None:
            filters.append(Booking.starts_at < starts_to)

        total = await self.db.scalar(select(func.count(Booking.id)).where(*filters))
        stmt = (
            select(Booking)
            .options(
                selectinload(Booking.serialized_items),
                selectinload(Booking.bulk_items),
                selectinload(Booking.allocations),
            )
            .where(*filters)
            .order_by(Booking.starts_at, Booking.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), int(total or 0)

    # =========================================================================
    # Create / convert
    # =========================================================================

    async def create(
        self,
        kind: BookingKind,
        *,
        title: str,
        requester_id: int,
        location_id: int,
        starts_at: DateInput,
        ends_at: DateInput,
        created_by: int,
        serialized_asset_ids: Sequence[int] = (),
        bulk_items: Iterable[BulkItemIn] = (),
        notes: Optional[str] = None,
        source_reservation_id: Optional[int] = None,
    ) -> Booking:
        """
        Create a reservation (BOOKED) or checkout (OPEN).

        With ``source_reservation_id`` the reservation is converted: it is
        cancelled in the same transaction, and when no items are given the
        checkout inherits the reservation's items.
        """
        start, end = parse_date_range(starts_at, ends_at)
        asset_ids = dedupe(serialized_asset_ids)
        items = merge_bulk_items(bulk_items)
        if source_reservation_id is not None and kind != BookingKind.CHECKOUT:
            raise ValidationError("Only checkouts can be created from a reservation")

        try:
            async with transaction(self.db):
                source = None
                if source_reservation_id is not None:
                    source = await self._source_reservation(source_reservation_id, location_id)
                    if not asset_ids and not items:
                        asset_ids = [it.asset_id for it in source.serialized_items]
                        items = [
                            BulkItemIn(bulk_sku_id=it.bulk_sku_id, quantity=it.planned_quantity)
                            for it in source.bulk_items
                        ]

                report = await self.availability.check(
                    location_id, start, end, asset_ids, items,
                    exclude_booking_id=source.id if source else None,
                )
                if report.has_problems:
                    raise availability_conflict(report)

                if source is not None:
                    source_before = booking_snapshot(source)
                    # free the reservation's allocations before the checkout claims them
                    await self._release(source, BookingStatus.CANCELLED)

                booking = Booking(
                    kind=kind,
                    title=title,
                    requester_user_id=requester_id,
                    location_id=location_id,
                    starts_at=start,
                    ends_at=end,
                    status=BookingStatus.OPEN if kind == BookingKind.CHECKOUT else BookingStatus.BOOKED,
                    notes=notes,
                    created_by=created_by,
                    source_reservation_id=source.id if source else None,
                )
                self.db.add(booking)
                await self.db.flush()
                self.db.add_all(self._item_rows(booking, asset_ids, items))
                await self.db.flush()

                if kind == BookingKind.CHECKOUT:
                    for item in items:
                        await self.ledger.apply_movement(
                            item.bulk_sku_id, location_id, created_by, MovementKind.CHECKOUT,
                            item.quantity, booking_id=booking.id,
                        )

                await write_audit(
                    self.db, created_by, "booking", booking.id, "created",
                    after=booking_snapshot(booking, asset_ids, [dump(i) for i in items]),
                )
                if source is not None:
                    await write_audit(
                        self.db, created_by, "booking", source.id, "cancelled_by_checkout_conversion",
                        before=source_before,
                        after={"status": BookingStatus.CANCELLED.value, "convertedToCheckoutId": booking.id},
                    )

                booking = await self._load(booking.id)
        except DBAPIError as exc:
            if not is_concurrency_conflict(exc):
                raise
            log.info("booking create lost a concurrent race: %s", exc.orig)
            report = await self.availability.check(
                location_id, start, end, asset_ids, items, exclude_booking_id=source_reservation_id,
            )
            raise availability_conflict(report) from exc

        if source_reservation_id is not None:
            log.info("reservation %s converted to checkout %s", source_reservation_id, booking.id)
        log.info("%s %s created by user=%s", kind.value.lower(), booking.id, created_by)
        return booking

    async def _source_reservation(self, reservation_id: int, location_id: int) -> Booking:
        source = await self._load(reservation_id)
        if source is None:
            raise NotFoundError("Source reservation not found")
        if source.kind != BookingKind.RESERVATION:
            raise ValidationError("Source booking is not a reservation")
        if source.status != BookingStatus.BOOKED:
            raise ValidationError("Only booked reservations can be converted")
        if source.location_id != location_id:
            raise ValidationError("Source reservation belongs to a different location")
        return source

    @staticmethod
    def _item_rows(booking: Booking, asset_ids: Sequence[int], items: Sequence[BulkItemIn]) -> list:
        """Declared items plus one allocation per asset, bound by booking id."""
        is_checkout = booking.kind == BookingKind.CHECKOUT
        rows: list = []
        for asset_id in asset_ids:
            rows.append(BookingSerializedItem(booking_id=booking.id, asset_id=asset_id))
            rows.append(
                AssetAllocation(
                    booking_id=booking.id,
                    asset_id=asset_id,
                    starts_at=booking.starts_at,
                    ends_at=booking.ends_at,
                    active=True,
                    kind=booking.kind,
                )
            )
        for item in items:
            rows.append(
                BookingBulkItem(
                    booking_id=booking.id,
                    bulk_sku_id=item.bulk_sku_id,
                    planned_quantity=item.quantity,
                    checked_out_quantity=0 if is_checkout else None,
                )
            )
        return rows

    async def _release(self, booking: Booking, status: BookingStatus) -> None:
        """Close a booking: new status, allocations off, OPEN scan sessions cancelled."""
        booking.status = status
        for allocation in booking.allocations:
            allocation.active = False
        await self.db.execute(
            update(ScanSession)
            .where(ScanSession.booking_id == booking.id, ScanSession.status == ScanSessionStatus.OPEN)
            .values(status=ScanSessionStatus.CANCELLED, completed_at=utcnow())
        )
        await self.db.flush()

    # =========================================================================
    # Amend / cancel reservations
    # =========================================================================

    async def update_reservation(self, booking_id: int, actor_id: int, changes: ReservationUpdateIn) -> Booking:
        fields = changes.model_dump(exclude_unset=True)
        start = end = location_id = None
        asset_ids: List[int] = []
        items: List[BulkItemIn] = []
        try:
            async with transaction(self.db):
                booking = await self.get_booking(booking_id, BookingKind.RESERVATION)
                if booking.status in CLOSED_STATUSES:
                    raise ValidationError("Cancelled or completed reservations cannot be edited")
                before = booking_snapshot(booking)

                start, end = parse_date_range(
                    fields.get("starts_at") or booking.starts_at,
                    fields.get("ends_at") or booking.ends_at,
                )
                location_id = fields.get("location_id") or booking.location_id
                if changes.serialized_asset_ids is not None:
                    asset_ids = dedupe(changes.serialized_asset_ids)
                else:
                    asset_ids = [it.asset_id for it in booking.serialized_items]
                if changes.bulk_items is not None:
                    items = merge_bulk_items(changes.bulk_items)
                else:
                    items = [
                        BulkItemIn(bulk_sku_id=it.bulk_sku_id, quantity=it.planned_quantity)
                        for it in booking.bulk_items
                    ]

                report = await self.availability.check(
                    location_id, start, end, asset_ids, items, exclude_booking_id=booking.id,
                )
                if report.has_problems:
                    raise availability_conflict(report)

                # old rows go first so the replacements never collide with them
                for model in (AssetAllocation, BookingSerializedItem, BookingBulkItem):
                    await self.db.execute(delete(model).where(model.booking_id == booking.id))
                self.db.expire(booking, ["allocations", "serialized_items", "bulk_items"])

                for name in ("title", "requester_user_id", "notes"):
                    if name in fields and (fields[name] is not None or name == "notes"):
                        setattr(booking, name, fields[name])
                booking.location_id = location_id
                booking.starts_at = start
                booking.ends_at = end
                await self.db.flush()
                self.db.add_all(self._item_rows(booking, asset_ids, items))
                await self.db.flush()

                await write_audit(
                    self.db, actor_id, "booking", booking.id, "updated",
                    before=before,
                    after=booking_snapshot(booking, asset_ids, [dump(i) for i in items]),
                )
                booking = await self._load(booking.id)
        except DBAPIError as exc:
            if not is_concurrency_conflict(exc) or start is None:
                raise
            log.info("reservation %s update lost a concurrent race: %s", booking_id, exc.orig)
            report = await self.availability.check(
                location_id, start, end, asset_ids, items, exclude_booking_id=booking_id,
            )
            raise availability_conflict(report) from exc

        log.info("reservation %s updated by user=%s", booking_id, actor_id)
        return booking

    async def cancel_reservation(self, booking_id: int, actor_id: int) -> Booking:
        async with transaction(self.db):
            booking = await self._load(booking_id)
            if booking is None:
                raise NotFoundError("Reservation not found")
            if booking.kind != BookingKind.RESERVATION:
                raise ValidationError("Only reservations can be cancelled")
            if booking.status in CLOSED_STATUSES:
                raise ValidationError(f"Reservation is already {booking.status.value.lower()}")

            before = booking_snapshot(booking)
            await self._release(booking, BookingStatus.CANCELLED)
            await write_audit(
                self.db, actor_id, "booking", booking.id, "cancelled",
                before=before, after={"status": BookingStatus.CANCELLED.value},
            )
        log.info("reservation %s cancelled by user=%s", booking_id, actor_id)
        return booking

    # =========================================================================
    # Check-in finalize
    # =========================================================================

    async def mark_checkout_completed(self, booking_id: int, actor_id: int) -> Booking:
        """
        Finalize a returned checkout. Runs inside the caller's transaction.

        Each bulk line is checked back in at max(checked out, planned).
        """
        booking = await self._load(booking_id)
        if booking is None or booking.kind != BookingKind.CHECKOUT:
            raise NotFoundError("Checkout not found")

        before = booking_snapshot(booking)
        booking.status = BookingStatus.COMPLETED
        for allocation in booking.allocations:
            allocation.active = False

        returned = []
        for item in booking.bulk_items:
            quantity = max(item.checked_out_quantity or 0, item.planned_quantity)
            await self.ledger.apply_movement(
                item.bulk_sku_id, booking.location_id, actor_id, MovementKind.CHECKIN,
                quantity, booking_id=booking.id,
            )
            returned.append({"bulkSkuId": item.bulk_sku_id, "quantity": quantity})

        now = utcnow()
        await self.db.execute(
            update(ScanSession)
            .where(
                ScanSession.booking_id == booking.id,
                ScanSession.phase == ScanPhase.CHECKIN,
                ScanSession.status == ScanSessionStatus.OPEN,
            )
            .values(status=ScanSessionStatus.COMPLETED, completed_at=now)
        )
        await self.db.flush()
        await write_audit(
            self.db, actor_id, "booking", booking.id, "checkin_completed",
            before=before,
            after={"status": BookingStatus.COMPLETED.value, "bulkCheckedIn": returned},
        )
        return booking
