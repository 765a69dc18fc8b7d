import pytest
from sqlalchemy.exc import DBAPIError

from gearflow.database import transaction
from gearflow.db_models import AssetAllocation, BookingKind
from gearflow.errors import ALLOCATION_GUARD, is_concurrency_conflict
from gearflow.services.bookings import BookingService
from gearflow.services.integrity import find_overlapping_allocations

from conftest import at

pytestmark = pytest.mark.anyio


async def _reservation(session_factory, seed, start, end, asset_ids=()):
    async with session_factory() as db:
        booking = await BookingService(db).create(
            BookingKind.RESERVATION, title="Guarded", requester_id=seed.student,
            location_id=seed.location, starts_at=at(start), ends_at=at(end),
            created_by=seed.staff, serialized_asset_ids=asset_ids,
        )
        return booking.id


async def test_overlapping_active_allocation_is_refused_by_storage(session_factory, seed):
    await _reservation(session_factory, seed, 10, 12, [seed.camera])
    other = await _reservation(session_factory, seed, 14, 15)

    async with session_factory() as db:
        with pytest.raises(DBAPIError) as exc:
            async with transaction(db):
                db.add(AssetAllocation(
                    asset_id=seed.camera, booking_id=other, starts_at=at(11), ends_at=at(13),
                    active=True, kind=BookingKind.RESERVATION,
                ))
                await db.flush()
    assert ALLOCATION_GUARD in str(exc.value.orig)
    assert is_concurrency_conflict(exc.value)

    async with session_factory() as db:
        assert await find_overlapping_allocations(db) == []


async def test_inactive_and_adjacent_allocations_are_allowed(session_factory, seed):
    await _reservation(session_factory, seed, 10, 12, [seed.camera])
    other = await _reservation(session_factory, seed, 14, 15)

    async with session_factory() as db:
        async with transaction(db):
            db.add_all([
                AssetAllocation(asset_id=seed.camera, booking_id=other, starts_at=at(11), ends_at=at(13),
                                active=False, kind=BookingKind.RESERVATION),
                AssetAllocation(asset_id=seed.camera, booking_id=other, starts_at=at(12), ends_at=at(13),
                                active=True, kind=BookingKind.RESERVATION),
            ])
            await db.flush()

    async with session_factory() as db:
        assert await find_overlapping_allocations(db, seed.camera) == []


def test_non_database_errors_are_not_conflicts():
    assert not is_concurrency_conflict(ValueError(ALLOCATION_GUARD))
