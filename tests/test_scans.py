import pytest
from sqlalchemy import select

from gearflow.db_models import BookingKind, BookingStatus, Role, ScanPhase, ScanSessionStatus, ScanType
from gearflow.db_models_ext import AuditLog, ScanEvent, ScanSession
from gearflow.errors import ForbiddenError, IncompleteScanError, NotFoundError, ValidationError
from gearflow.models import BulkItemIn
from gearflow.services.bookings import BookingService
from gearflow.services.capabilities import Actor
from gearflow.services.ledger import BulkStockLedger
from gearflow.services.scans import SERIALIZED_MISMATCH, ScanService

from conftest import at

pytestmark = pytest.mark.anyio


@pytest.fixture
async def checkout_id(session_factory, seed):
    """Open checkout for the camera plus 2 XLR cables (stock 5 -> 3)."""
    async with session_factory() as db:
        booking = await BookingService(db).create(
            BookingKind.CHECKOUT,
            title="Studio B loan",
            requester_id=seed.student,
            location_id=seed.location,
            starts_at=at(10),
            ends_at=at(18),
            created_by=seed.staff,
            serialized_asset_ids=[seed.camera],
            bulk_items=[BulkItemIn(bulk_sku_id=seed.xlr, quantity=2)],
        )
        return booking.id


async def _scan(session_factory, seed, checkout_id, phase, scan_type, value, quantity=None):
    async with session_factory() as db:
        return await ScanService(db).record_scan(
            checkout_id, seed.staff, phase, scan_type, value, quantity=quantity,
        )


async def _scan_all(session_factory, seed, checkout_id, phase):
    await _scan(session_factory, seed, checkout_id, phase, ScanType.SERIALIZED, "QR-CAM-001")
    await _scan(session_factory, seed, checkout_id, phase, ScanType.BULK_BIN, "BIN-XLR", 2)


# ============================================================================
# Sessions
# ============================================================================

async def test_start_session_is_idempotent_per_phase(session_factory, seed, checkout_id):
    async with session_factory() as db:
        service = ScanService(db)
        first, created = await service.start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        assert created
        again, created_again = await service.start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        assert not created_again
        assert again.id == first.id

        checkin, created_checkin = await service.start_session(checkout_id, seed.staff, ScanPhase.CHECKIN)
        assert created_checkin
        assert checkin.id != first.id


async def test_start_session_reuses_session_opened_concurrently(session_factory, seed, checkout_id, monkeypatch):
    async with session_factory() as db:
        first, _ = await ScanService(db).start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        first_id = first.id

    original = ScanService._open_session
    lookups = []

    async def open_session(self, booking_id, phase):
        lookups.append(phase)
        if len(lookups) == 1:
            # the other caller has not committed yet when this one looks
            return None
        return await original(self, booking_id, phase)

    monkeypatch.setattr(ScanService, "_open_session", open_session)
    async with session_factory() as db:
        session, created = await ScanService(db).start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        assert not created
        assert session.id == first_id
    assert len(lookups) == 2

    async with session_factory() as db:
        open_ids = (await db.execute(
            select(ScanSession.id).where(
                ScanSession.booking_id == checkout_id, ScanSession.status == ScanSessionStatus.OPEN,
            )
        )).scalars().all()
    assert open_ids == [first_id]


async def test_start_session_requires_checkout(session_factory, seed):
    async with session_factory() as db:
        reservation = await BookingService(db).create(
            BookingKind.RESERVATION, title="Hold", requester_id=seed.student, location_id=seed.location,
            starts_at=at(10), ends_at=at(11), created_by=seed.staff,
        )
        reservation_id = reservation.id

    async with session_factory() as db:
        with pytest.raises(NotFoundError):
            await ScanService(db).start_session(reservation_id, seed.staff, ScanPhase.CHECKOUT)


# ============================================================================
# Scan events
# ============================================================================

async def test_matching_serialized_scan_succeeds(session_factory, seed, checkout_id):
    async with session_factory() as db:
        session, _ = await ScanService(db).start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        session_id = session.id

    event = await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.SERIALIZED, "QR-CAM-001")
    assert event.success
    assert event.asset_id == seed.camera
    assert event.scan_session_id == session_id


async def test_foreign_qr_is_persisted_then_rejected(session_factory, seed, checkout_id):
    with pytest.raises(ValidationError) as exc:
        await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.SERIALIZED, "QR-MIC-001")
    assert exc.value.message == SERIALIZED_MISMATCH
    assert exc.value.data["event"]["success"] is False
    assert exc.value.data["event"]["scanValue"] == "QR-MIC-001"

    async with session_factory() as db:
        events = (await db.execute(select(ScanEvent).where(ScanEvent.booking_id == checkout_id))).scalars().all()
    assert [(e.scan_value, e.success) for e in events] == [("QR-MIC-001", False)]


async def test_bulk_scan_needs_positive_quantity(session_factory, seed, checkout_id):
    for quantity in (None, 0, -2):
        with pytest.raises(ValidationError) as exc:
            await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.BULK_BIN, "BIN-XLR", quantity)
        assert exc.value.message == "Bulk scans require a positive quantity"

    async with session_factory() as db:
        events = (await db.execute(select(ScanEvent).where(ScanEvent.booking_id == checkout_id))).scalars().all()
    assert events == []


async def test_repeat_serialized_scans_are_harmless(session_factory, seed, checkout_id):
    for _ in range(3):
        await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.SERIALIZED, "QR-CAM-001")

    async with session_factory() as db:
        state = await ScanService(db).completion_state(checkout_id, ScanPhase.CHECKOUT)
        events = (await db.execute(select(ScanEvent).where(ScanEvent.booking_id == checkout_id))).scalars().all()
    assert state.missing_serialized == []
    assert len(events) == 3


async def test_bulk_scans_accumulate_on_the_line(session_factory, seed, checkout_id):
    await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.BULK_BIN, "BIN-XLR", 1)
    await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.BULK_BIN, "BIN-XLR", 2)

    async with session_factory() as db:
        booking = await BookingService(db).get_booking(checkout_id)
        assert [i.checked_out_quantity for i in booking.bulk_items] == [3]
        assert [i.checked_in_quantity for i in booking.bulk_items] == [None]


# ============================================================================
# Completion gate
# ============================================================================

async def test_completion_state_lists_missing_items(session_factory, seed, checkout_id):
    await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.BULK_BIN, "BIN-XLR", 1)

    async with session_factory() as db:
        state = await ScanService(db).completion_state(checkout_id, ScanPhase.CHECKOUT)
    assert state.missing_serialized == [seed.camera]
    assert [(m.bulk_sku_id, m.required, m.scanned) for m in state.missing_bulk] == [(seed.xlr, 2, 1)]
    assert not state.is_complete


async def test_complete_checkout_blocked_until_everything_scanned(session_factory, seed, checkout_id):
    async with session_factory() as db:
        with pytest.raises(IncompleteScanError) as exc:
            await ScanService(db).complete_checkout(checkout_id, seed.staff)
    assert exc.value.status_code == 400
    assert exc.value.message == "Scan requirements not met"
    assert exc.value.data["missingSerialized"] == [seed.camera]
    assert exc.value.data["missingBulk"] == [{"bulkSkuId": seed.xlr, "required": 2, "scanned": 0}]
    assert exc.value.data["overrideUsed"] is False

    async with session_factory() as db:
        session, _ = await ScanService(db).start_session(checkout_id, seed.staff, ScanPhase.CHECKOUT)
        session_id = session.id
    await _scan_all(session_factory, seed, checkout_id, ScanPhase.CHECKOUT)

    async with session_factory() as db:
        result = await ScanService(db).complete_checkout(checkout_id, seed.staff)
    assert result.success
    assert result.override_used is False

    async with session_factory() as db:
        session = await db.get(ScanSession, session_id)
        assert session.status == ScanSessionStatus.COMPLETED
        assert session.completed_at is not None
        booking = await BookingService(db).get_booking(checkout_id)
        assert booking.status == BookingStatus.OPEN


async def test_checkout_scans_do_not_count_for_checkin(session_factory, seed, checkout_id):
    await _scan_all(session_factory, seed, checkout_id, ScanPhase.CHECKOUT)

    async with session_factory() as db:
        with pytest.raises(IncompleteScanError):
            await ScanService(db).complete_checkin(checkout_id, seed.staff)


async def test_checkin_restores_stock_and_completes(session_factory, seed, checkout_id):
    await _scan_all(session_factory, seed, checkout_id, ScanPhase.CHECKOUT)
    async with session_factory() as db:
        await ScanService(db).complete_checkout(checkout_id, seed.staff)
        assert await BulkStockLedger(db).on_hand(seed.xlr, seed.location) == 3

    await _scan_all(session_factory, seed, checkout_id, ScanPhase.CHECKIN)
    async with session_factory() as db:
        result = await ScanService(db).complete_checkin(checkout_id, seed.staff)
    assert result.success

    async with session_factory() as db:
        booking = await BookingService(db).get_booking(checkout_id)
        assert booking.status == BookingStatus.COMPLETED
        assert not any(a.active for a in booking.allocations)
        assert await BulkStockLedger(db).on_hand(seed.xlr, seed.location) == 5
        actions = (await db.execute(
            select(AuditLog.action).where(AuditLog.entity_id == checkout_id, AuditLog.entity_type == "booking")
            .order_by(AuditLog.id)
        )).scalars().all()
    assert actions == ["created", "checkout_scan_completed", "checkin_completed"]

    # a completed checkout cannot be completed again
    async with session_factory() as db:
        with pytest.raises(ValidationError) as exc:
            await ScanService(db).complete_checkin(checkout_id, seed.staff)
    assert exc.value.message == "Checkout must be open"


# ============================================================================
# Admin override
# ============================================================================

async def test_override_requires_admin(session_factory, seed, checkout_id):
    async with session_factory() as db:
        service = ScanService(db)
        for role, user in ((Role.STAFF, seed.staff), (Role.STUDENT, seed.student)):
            with pytest.raises(ForbiddenError) as exc:
                await service.create_admin_override(checkout_id, Actor(user, role), "Scanner broken")
            assert exc.value.message == "Only admins can create overrides"


async def test_override_reason_is_validated(session_factory, seed, checkout_id):
    async with session_factory() as db:
        with pytest.raises(ValidationError):
            await ScanService(db).create_admin_override(checkout_id, Actor(seed.admin, Role.ADMIN), "  ok  ")


async def test_partial_scan_then_override(session_factory, seed):
    async with session_factory() as db:
        booking = await BookingService(db).create(
            BookingKind.CHECKOUT, title="Two-camera shoot", requester_id=seed.student,
            location_id=seed.location, starts_at=at(10), ends_at=at(12), created_by=seed.staff,
            serialized_asset_ids=[seed.camera, seed.mic],
        )
        checkout_id = booking.id
    await _scan(session_factory, seed, checkout_id, ScanPhase.CHECKOUT, ScanType.SERIALIZED, "QR-CAM-001")

    async with session_factory() as db:
        with pytest.raises(IncompleteScanError) as exc:
            await ScanService(db).complete_checkout(checkout_id, seed.staff)
    assert exc.value.data["missingSerialized"] == [seed.mic]

    async with session_factory() as db:
        await ScanService(db).create_admin_override(checkout_id, Actor(seed.admin, Role.ADMIN), "Mic label unreadable")
    async with session_factory() as db:
        result = await ScanService(db).complete_checkout(checkout_id, seed.staff)
    assert result.override_used is True
    assert result.missing_serialized == [seed.mic]


async def test_override_unlocks_completion(session_factory, seed, checkout_id):
    admin = Actor(seed.admin, Role.ADMIN)
    async with session_factory() as db:
        event = await ScanService(db).create_admin_override(
            checkout_id, admin, "Label on camera is damaged", {"assetId": seed.camera},
        )
        assert event.reason == "Label on camera is damaged"
        assert event.details == {"assetId": seed.camera}

    async with session_factory() as db:
        service = ScanService(db)
        assert await service.has_override(checkout_id)
        result = await service.complete_checkout(checkout_id, seed.staff)
    assert result.override_used is True
    assert result.missing_serialized == [seed.camera]

    async with session_factory() as db:
        audit = (await db.execute(
            select(AuditLog).where(AuditLog.action == "admin_override")
        )).scalar_one()
    assert audit.actor_user_id == seed.admin
    assert audit.after_json["reason"] == "Label on camera is damaged"
