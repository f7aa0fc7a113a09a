"""
Driver availability registry: freshness window, radius search, sweeping.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from tripsalama.database import utcnow
from tripsalama.models.driver_status import DriverStatus
from tripsalama.services import availability
from tripsalama.services.geo import haversine_km
from tripsalama.services.sweeper import sweep_once

CASABLANCA = (33.5731, -7.5898)


async def _age(db, driver_id: int, minutes: int) -> None:
    await db.execute(
        update(DriverStatus)
        .where(DriverStatus.driver_id == driver_id)
        .values(last_update=utcnow() - timedelta(minutes=minutes))
    )
    await db.commit()


@pytest.mark.asyncio
class TestRegistry:
    async def test_get_or_create_inserts_unavailable_default(self, db, make_user):
        driver_id = await make_user("driver", verified=True)
        assert await availability.find_by_driver_id(driver_id, db) is None

        row = await availability.get_or_create(driver_id, db)
        assert row.id is not None
        assert row.is_available is False
        assert await availability.get_or_create(driver_id, db) is not None

    async def test_set_availability_upserts(self, db, make_user):
        driver_id = await make_user("driver", verified=True)
        row = await availability.set_availability(driver_id, True, db, *CASABLANCA)
        assert row.is_available is True
        assert (row.current_lat, row.current_lng) == CASABLANCA

        row = await availability.set_availability(driver_id, False, db)
        assert row.is_available is False
        # position kept when none is sent
        assert (row.current_lat, row.current_lng) == CASABLANCA

    async def test_update_position_creates_row(self, db, make_user):
        driver_id = await make_user("driver", verified=True)
        row = await availability.update_position(driver_id, 33.6, -7.6, db, heading=180.0, speed=32.5)
        assert (row.current_lat, row.current_lng, row.heading, row.speed) == (33.6, -7.6, 180.0, 32.5)
        assert row.is_available is False


@pytest.mark.asyncio
class TestAvailableInRadius:
    async def test_fresh_within_five_minutes_stale_after(self, db, make_user):
        fresh = await make_user("driver", verified=True)
        stale = await make_user("driver", verified=True)
        for driver_id in (fresh, stale):
            await availability.set_availability(driver_id, True, db, 33.5740, -7.5900)
        await _age(db, fresh, 4)
        await _age(db, stale, 6)

        found = await availability.get_available_in_radius(*CASABLANCA, 5.0, db)
        assert [d.driver_id for d in found] == [fresh]
        assert await availability.count_available(db) == 1

    async def test_radius_boundary(self, db, make_user):
        inside = await make_user("driver", verified=True)
        outside = await make_user("driver", verified=True)
        # ~4.9 km and ~5.1 km due north of the search centre
        await availability.set_availability(inside, True, db, CASABLANCA[0] + 4.9 / 111.195, CASABLANCA[1])
        await availability.set_availability(outside, True, db, CASABLANCA[0] + 5.1 / 111.195, CASABLANCA[1])

        found = await availability.get_available_in_radius(*CASABLANCA, 5.0, db)
        assert [d.driver_id for d in found] == [inside]
        assert found[0].distance_km == pytest.approx(4.9, abs=0.01)

    async def test_sorted_by_distance_and_limited(self, db, make_user):
        ids = []
        for km in (3.0, 1.0, 2.0):
            driver_id = await make_user("driver", verified=True)
            await availability.set_availability(driver_id, True, db, CASABLANCA[0] + km / 111.195, CASABLANCA[1])
            ids.append(driver_id)

        found = await availability.get_available_in_radius(*CASABLANCA, 10.0, db)
        assert [d.driver_id for d in found] == [ids[1], ids[2], ids[0]]
        distances = [d.distance_km for d in found]
        assert distances == sorted(distances)

        limited = await availability.get_available_in_radius(*CASABLANCA, 10.0, db, limit=2)
        assert [d.driver_id for d in limited] == [ids[1], ids[2]]

    async def test_unavailable_and_unknown_position_excluded(self, db, make_user):
        offline = await make_user("driver", verified=True)
        no_position = await make_user("driver", verified=True)
        await availability.set_availability(offline, False, db, *CASABLANCA)
        await availability.set_availability(no_position, True, db)

        assert await availability.get_available_in_radius(*CASABLANCA, 10.0, db) == []

    async def test_joins_current_vehicle(self, db, make_user, make_vehicle):
        driver_id = await make_user("driver", verified=True)
        await make_vehicle(driver_id, plate="OLD-1")
        await make_vehicle(driver_id, plate="NEW-2")
        await availability.set_availability(driver_id, True, db, *CASABLANCA)

        [driver] = await availability.get_available_in_radius(*CASABLANCA, 1.0, db)
        assert driver.license_plate == "NEW-2"
        assert driver.vehicle_brand == "Dacia"
        assert driver.distance_km == pytest.approx(0.0)

    async def test_distance_matches_haversine(self, db, make_user):
        driver_id = await make_user("driver", verified=True)
        await availability.set_availability(driver_id, True, db, 33.59, -7.61)
        [driver] = await availability.get_available_in_radius(*CASABLANCA, 10.0, db)
        assert driver.distance_km == pytest.approx(haversine_km(*CASABLANCA, 33.59, -7.61), abs=0.001)


@pytest.mark.asyncio
class TestSweep:
    async def test_deactivate_inactive_is_idempotent(self, db, make_user):
        silent = await make_user("driver", verified=True)
        recent = await make_user("driver", verified=True)
        for driver_id in (silent, recent):
            await availability.set_availability(driver_id, True, db, *CASABLANCA)
        await _age(db, silent, 31)
        await _age(db, recent, 10)

        assert await availability.deactivate_inactive(db) == 1
        assert await availability.deactivate_inactive(db) == 0
        assert (await availability.find_by_driver_id(silent, db)).is_available is False
        assert (await availability.find_by_driver_id(recent, db)).is_available is True

    async def test_sweep_once_uses_its_own_session(self, db, session_factory, make_user):
        driver_id = await make_user("driver", verified=True)
        await availability.set_availability(driver_id, True, db, *CASABLANCA)
        await _age(db, driver_id, 45)

        assert await sweep_once(session_factory) == 1
        assert (await availability.find_by_driver_id(driver_id, db)).is_available is False
