import pytest

from gearflow.db_models import BookingKind
from gearflow.errors import ValidationError
from gearflow.models import BulkItemIn
from gearflow.services.availability import AvailabilityService, dedupe, merge_bulk_items
from gearflow.services.bookings import BookingService

from conftest import at

pytestmark = pytest.mark.anyio


async def _reserve(session_factory, seed, start, end, asset_ids=(), bulk_items=()):
    async with session_factory() as db:
        booking = await BookingService(db).create(
            BookingKind.RESERVATION,
            title="Shoot",
            requester_id=seed.student,
            location_id=seed.location,
            starts_at=at(start),
            ends_at=at(end),
            created_by=seed.staff,
            serialized_asset_ids=asset_ids,
            bulk_items=bulk_items,
        )
        return booking.id


def test_dedupe_keeps_first_seen_order():
    assert dedupe([3, 1, 3, 2, 1]) == [3, 1, 2]


def test_merge_bulk_items_sums_repeated_skus():
    merged = merge_bulk_items([
        BulkItemIn(bulk_sku_id=1, quantity=2),
        BulkItemIn(bulk_sku_id=2, quantity=1),
        BulkItemIn(bulk_sku_id=1, quantity=3),
    ])
    assert [(m.bulk_sku_id, m.quantity) for m in merged] == [(1, 5), (2, 1)]


async def test_empty_request_is_available(session_factory, seed):
    async with session_factory() as db:
        report = await AvailabilityService(db).check(seed.location, at(10), at(12))
    assert not report.has_problems


async def test_overlapping_allocation_is_reported(session_factory, seed):
    booking_id = await _reserve(session_factory, seed, 10, 12, [seed.camera])

    async with session_factory() as db:
        report = await AvailabilityService(db).check(seed.location, at(11), at(13), [seed.camera])
    assert [(c.asset_id, c.conflicting_booking_id) for c in report.conflicts] == [(seed.camera, booking_id)]
    assert report.conflicts[0].starts_at == at(10)
    assert report.conflicts[0].ends_at == at(12)


async def test_adjacent_windows_do_not_conflict(session_factory, seed):
    await _reserve(session_factory, seed, 10, 12, [seed.camera])

    async with session_factory() as db:
        service = AvailabilityService(db)
        after = await service.check(seed.location, at(12), at(13), [seed.camera])
        before = await service.check(seed.location, at(8), at(10), [seed.camera])
    assert not after.has_problems
    assert not before.has_problems


async def test_excluded_booking_is_ignored(session_factory, seed):
    booking_id = await _reserve(session_factory, seed, 10, 12, [seed.camera])

    async with session_factory() as db:
        report = await AvailabilityService(db).check(
            seed.location, at(11), at(13), [seed.camera], exclude_booking_id=booking_id,
        )
    assert report.conflicts == []


async def test_cancelled_booking_frees_the_asset(session_factory, seed):
    booking_id = await _reserve(session_factory, seed, 10, 12, [seed.camera])
    async with session_factory() as db:
        await BookingService(db).cancel_reservation(booking_id, seed.staff)

    async with session_factory() as db:
        report = await AvailabilityService(db).check(seed.location, at(10), at(12), [seed.camera])
    assert not report.has_problems


async def test_unavailable_and_unknown_assets_are_reported(session_factory, seed):
    async with session_factory() as db:
        report = await AvailabilityService(db).check(
            seed.location, at(10), at(12), [seed.lens, 999_999, seed.mic],
        )
    assert [(u.asset_id, u.status) for u in report.unavailable_assets] == [
        (seed.lens, "MAINTENANCE"),
        (999_999, "NOT_FOUND"),
    ]


async def test_bulk_shortage_reports_requested_and_available(session_factory, seed):
    async with session_factory() as db:
        service = AvailabilityService(db)
        ok = await service.check(seed.location, at(10), at(12), bulk_items=[BulkItemIn(bulk_sku_id=seed.xlr, quantity=5)])
        short = await service.check(seed.location, at(10), at(12), bulk_items=[BulkItemIn(bulk_sku_id=seed.xlr, quantity=6)])
        elsewhere = await service.check(seed.annex, at(10), at(12), bulk_items=[BulkItemIn(bulk_sku_id=seed.xlr, quantity=1)])

    assert not ok.has_problems
    assert [(s.bulk_sku_id, s.requested, s.available) for s in short.shortages] == [(seed.xlr, 6, 5)]
    assert [(s.requested, s.available) for s in elsewhere.shortages] == [(1, 0)]


async def test_all_problem_kinds_are_reported_together(session_factory, seed):
    await _reserve(session_factory, seed, 10, 12, [seed.camera])

    async with session_factory() as db:
        report = await AvailabilityService(db).check(
            seed.location, at(11), at(12),
            [seed.camera, seed.lens],
            [BulkItemIn(bulk_sku_id=seed.xlr, quantity=50)],
        )
    assert len(report.conflicts) == 1
    assert len(report.shortages) == 1
    assert len(report.unavailable_assets) == 1


async def test_invalid_window_is_rejected(session_factory, seed):
    async with session_factory() as db:
        with pytest.raises(ValidationError):
            await AvailabilityService(db).check(seed.location, at(12), at(10))
