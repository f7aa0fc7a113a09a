"""
Ride lifecycle service against an in-memory database.
"""
from decimal import Decimal

import pytest

from tripsalama.errors import ForbiddenError, IllegalTransitionError, InvalidInputError, NotFoundError, StaleRideError
from tripsalama.models.user import User
from tripsalama.models.vehicle import Vehicle
from tripsalama.services import rides


@pytest.mark.asyncio
class TestAssignDriver:
    async def test_assign_driver_seven_vehicle_three(self, db, make_ride):
        db.add(User(id=7, email="driver7@tripsalama.test", password_hash="x", first_name="Salma", last_name="B", role="driver"))
        db.add(Vehicle(id=3, driver_id=7, brand="Dacia", model="Sandero", color="Grey", license_plate="777-B-3"))
        await db.commit()
        ride_id = await make_ride()

        ride = await rides.find_by_id(ride_id, db)
        assert ride.status == "pending"

        ride = await rides.assign_driver(ride_id, 7, 3, db)
        assert ride.status == "accepted"
        assert ride.driver_id == 7
        assert ride.vehicle_id == 3
        assert ride.accepted_at is not None
        assert ride.started_at is None
        assert ride.completed_at is None
        assert ride.cancelled_at is None

    async def test_assign_bumps_version(self, db, make_user, make_ride):
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride()
        ride = await rides.assign_driver(ride_id, driver_id, None, db)
        assert ride.version == 2

    async def test_second_driver_cannot_take_an_accepted_ride(self, db, make_user, make_ride):
        first = await make_user("driver", verified=True)
        second = await make_user("driver", verified=True)
        ride_id = await make_ride()
        await rides.assign_driver(ride_id, first, None, db)

        with pytest.raises(IllegalTransitionError):
            await rides.assign_driver(ride_id, second, None, db)
        ride = await rides.find_by_id(ride_id, db)
        assert ride.driver_id == first

    async def test_lost_race_raises_stale(self, db, make_user, make_ride, monkeypatch):
        """Both drivers read the ride while pending; only the first UPDATE lands."""
        first = await make_user("driver", verified=True)
        second = await make_user("driver", verified=True)
        ride_id = await make_ride()

        stale = await rides.find_by_id(ride_id, db)
        stale_snapshot = {"id": stale.id, "status": stale.status, "version": stale.version}
        await rides.assign_driver(ride_id, first, None, db)

        class Snapshot:
            id = stale_snapshot["id"]
            status = stale_snapshot["status"]
            version = stale_snapshot["version"]

        async def stale_read(_ride_id, _db):
            return Snapshot()

        with monkeypatch.context() as m:
            m.setattr(rides, "require_ride", stale_read)
            with pytest.raises(StaleRideError):
                await rides.assign_driver(ride_id, second, None, db)

        ride = await rides.find_by_id(ride_id, db)
        assert ride.driver_id == first
        assert ride.version == 2

    async def test_unknown_ride(self, db):
        with pytest.raises(NotFoundError):
            await rides.assign_driver(9999, 1, None, db)


@pytest.mark.asyncio
class TestStatusTransitions:
    async def test_full_lifecycle_stamps_each_timestamp_once(self, db, make_user, make_ride):
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride()
        await rides.assign_driver(ride_id, driver_id, None, db)

        ride = await rides.update_status(ride_id, "driver_arriving", db)
        assert ride.status == "driver_arriving"
        assert ride.started_at is None

        ride = await rides.update_status(ride_id, "in_progress", db)
        assert ride.started_at is not None
        assert ride.completed_at is None

        ride = await rides.complete(ride_id, db)
        assert ride.status == "completed"
        assert ride.completed_at is not None
        assert ride.cancelled_at is None
        assert ride.final_price == Decimal("80.00")
        assert ride.version == 5

    async def test_pending_to_completed_is_rejected(self, db, make_ride):
        ride_id = await make_ride()
        with pytest.raises(IllegalTransitionError):
            await rides.update_status(ride_id, "completed", db)
        ride = await rides.find_by_id(ride_id, db)
        assert ride.status == "pending"
        assert ride.completed_at is None

    async def test_accepted_only_through_assignment(self, db, make_ride):
        ride_id = await make_ride()
        with pytest.raises(IllegalTransitionError):
            await rides.update_status(ride_id, "accepted", db)

    async def test_unknown_status_string(self, db, make_ride):
        ride_id = await make_ride()
        with pytest.raises(InvalidInputError):
            await rides.update_status(ride_id, "paused", db)

    async def test_completed_ride_cannot_be_cancelled(self, db, completed_ride):
        ride_id, passenger_id, _ = await completed_ride()
        with pytest.raises(IllegalTransitionError):
            await rides.cancel(ride_id, passenger_id, db)


@pytest.mark.asyncio
class TestCancel:
    async def test_passenger_cancels_pending_ride(self, db, make_user, make_ride):
        passenger_id = await make_user("passenger")
        ride_id = await make_ride(passenger_id)
        ride = await rides.cancel(ride_id, passenger_id, db)
        assert ride.status == "cancelled"
        assert ride.cancelled_at is not None
        assert ride.accepted_at is None

    async def test_stranger_cannot_cancel(self, db, make_user, make_ride):
        stranger = await make_user("passenger")
        ride_id = await make_ride()
        with pytest.raises(ForbiddenError):
            await rides.cancel(ride_id, stranger, db)

    async def test_driver_can_cancel_before_pickup(self, db, make_user, make_ride):
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride()
        await rides.assign_driver(ride_id, driver_id, None, db)
        await rides.update_status(ride_id, "driver_arriving", db)
        ride = await rides.cancel(ride_id, driver_id, db)
        assert ride.status == "cancelled"


@pytest.mark.asyncio
class TestQueries:
    async def test_active_ride_for_passenger_and_driver(self, db, make_user, make_ride):
        passenger_id = await make_user("passenger")
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride(passenger_id)

        assert (await rides.get_active_by_passenger(passenger_id, db)).id == ride_id
        assert await rides.get_active_by_driver(driver_id, db) is None

        await rides.assign_driver(ride_id, driver_id, None, db)
        assert (await rides.get_active_by_driver(driver_id, db)).id == ride_id

        await rides.cancel(ride_id, passenger_id, db)
        assert await rides.get_active_by_passenger(passenger_id, db) is None

    async def test_pending_rides_oldest_first_and_ignores_position(self, db, make_ride):
        first = await make_ride()
        second = await make_ride()
        # far away from both rides; the position does not filter
        pending = await rides.get_pending(-33.9, 18.4, db, radius_km=1.0)
        assert [r.id for r in pending] == [first, second]

    async def test_history_filtered_by_status(self, db, make_user, make_ride):
        passenger_id = await make_user("passenger")
        kept = await make_ride(passenger_id)
        cancelled = await make_ride(passenger_id)
        await rides.cancel(cancelled, passenger_id, db)

        assert [r.id for r in await rides.get_by_passenger(passenger_id, db, status="pending")] == [kept]
        assert {r.id for r in await rides.get_by_passenger(passenger_id, db)} == {kept, cancelled}

    async def test_driver_stats_use_net_of_commission(self, db, completed_ride):
        _, _, driver_id = await completed_ride(price="100.00")
        stats = await rides.get_driver_stats(driver_id, db)
        assert stats["rides_total"] == 1
        assert stats["rides_today"] == 1
        assert stats["earnings_today"] == Decimal("88.00")
        assert stats["distance_total"] == pytest.approx(4.2)

    async def test_count_by_passenger(self, db, make_user, make_ride):
        passenger_id = await make_user("passenger")
        await make_ride(passenger_id)
        await make_ride(passenger_id)
        assert await rides.count_by_passenger(passenger_id, db) == 2
        assert await rides.count_by_passenger(passenger_id, db, period="month") == 2


@pytest.mark.asyncio
class TestRatingsAndPositions:
    async def test_both_sides_rate_into_one_row(self, db, completed_ride):
        ride_id, passenger_id, driver_id = await completed_ride()
        await rides.rate(ride_id, passenger_id, 5, db, comment="Very safe driver")
        row = await rides.rate(ride_id, driver_id, 4, db)
        assert row.passenger_rating == 5
        assert row.passenger_comment == "Very safe driver"
        assert row.driver_rating == 4

    async def test_rating_out_of_range(self, db, completed_ride):
        ride_id, passenger_id, _ = await completed_ride()
        with pytest.raises(InvalidInputError):
            await rides.rate(ride_id, passenger_id, 6, db)

    async def test_last_position_wins(self, db, make_ride):
        ride_id = await make_ride()
        assert await rides.get_last_position(ride_id, db) is None
        await rides.save_position(ride_id, 33.57, -7.58, db)
        await rides.save_position(ride_id, 33.58, -7.59, db, heading=90.0)
        last = await rides.get_last_position(ride_id, db)
        assert (last.lat, last.lng, last.heading) == (33.58, -7.59, 90.0)
