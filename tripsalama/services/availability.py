"""
Driver availability registry.

One ``driver_status`` row per driver. A driver counts as available only when
``is_available`` is set AND the row was refreshed within
``driver_fresh_minutes``; the freshness rule is applied at query time, the
sweeper in ``services.sweeper`` only cleans up long-stale rows.
"""
import logging
from datetime import timedelta

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import utcnow
from tripsalama.models.driver_status import DriverStatus
from tripsalama.models.user import User
from tripsalama.models.vehicle import Vehicle
from tripsalama.schemas.schemas import NearbyDriver
from tripsalama.services.geo import bounding_box, haversine_km

logger = logging.getLogger(__name__)
settings = get_settings()


async def find_by_driver_id(driver_id: int, db: AsyncSession) -> DriverStatus | None:
    result = await db.execute(
        select(DriverStatus)
        .where(DriverStatus.driver_id == driver_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create(driver_id: int, db: AsyncSession) -> DriverStatus:
    """Return the driver's row, inserting the unavailable default first if needed."""
    status = await find_by_driver_id(driver_id, db)
    if status is not None:
        return status

    db.add(DriverStatus(driver_id=driver_id, is_available=False, last_update=utcnow()))
    try:
        await db.commit()
    except IntegrityError:
        # a concurrent request inserted the row first; theirs is just as good
        await db.rollback()
    return await find_by_driver_id(driver_id, db)


async def set_availability(
    driver_id: int,
    is_available: bool,
    db: AsyncSession,
    lat: float | None = None,
    lng: float | None = None,
) -> DriverStatus:
    await get_or_create(driver_id, db)
    values = {"is_available": is_available, "last_update": utcnow()}
    if lat is not None and lng is not None:
        values.update(current_lat=lat, current_lng=lng)

    await db.execute(
        update(DriverStatus)
        .where(DriverStatus.driver_id == driver_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Driver %s availability=%s", driver_id, is_available)
    return await find_by_driver_id(driver_id, db)


async def update_position(
    driver_id: int,
    lat: float,
    lng: float,
    db: AsyncSession,
    heading: float | None = None,
    speed: float | None = None,
) -> DriverStatus:
    await get_or_create(driver_id, db)
    await db.execute(
        update(DriverStatus)
        .where(DriverStatus.driver_id == driver_id)
        .values(current_lat=lat, current_lng=lng, heading=heading, speed=speed, last_update=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await find_by_driver_id(driver_id, db)


def _fresh_cutoff():
    return utcnow() - timedelta(minutes=settings.driver_fresh_minutes)


async def get_available_in_radius(
    lat: float,
    lng: float,
    radius_km: float,
    db: AsyncSession,
    limit: int | None = None,
) -> list[NearbyDriver]:
    """
    Available, fresh drivers within ``radius_km`` (Haversine), nearest first.

    The database narrows candidates with a lat/lng bounding box; the exact
    great-circle distance is then computed per candidate.
    """
    limit = settings.nearby_drivers_limit if limit is None else limit
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)

    result = await db.execute(
        select(DriverStatus, User, Vehicle)
        .join(User, User.id == DriverStatus.driver_id)
        .outerjoin(Vehicle, and_(Vehicle.driver_id == DriverStatus.driver_id, Vehicle.is_active.is_(True)))
        .where(
            DriverStatus.is_available.is_(True),
            DriverStatus.current_lat.is_not(None),
            DriverStatus.current_lng.is_not(None),
            DriverStatus.last_update > _fresh_cutoff(),
            DriverStatus.current_lat.between(min_lat, max_lat),
            DriverStatus.current_lng.between(min_lng, max_lng),
        )
        .order_by(DriverStatus.driver_id, Vehicle.id.desc())
    )

    nearby: dict[int, NearbyDriver] = {}
    for status, user, vehicle in result.all():
        if status.driver_id in nearby:
            continue  # older active vehicle of a driver already seen
        distance = haversine_km(lat, lng, status.current_lat, status.current_lng)
        if distance > radius_km:
            continue
        nearby[status.driver_id] = NearbyDriver(
            driver_id=status.driver_id,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            lat=status.current_lat,
            lng=status.current_lng,
            heading=status.heading,
            distance_km=round(distance, 3),
            vehicle_brand=vehicle.brand if vehicle else None,
            vehicle_model=vehicle.model if vehicle else None,
            vehicle_color=vehicle.color if vehicle else None,
            license_plate=vehicle.license_plate if vehicle else None,
        )

    return sorted(nearby.values(), key=lambda d: d.distance_km)[:limit]


async def count_available(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(DriverStatus.id)).where(
            DriverStatus.is_available.is_(True),
            DriverStatus.last_update > _fresh_cutoff(),
        )
    )
    return int(result.scalar_one())


async def deactivate_inactive(db: AsyncSession) -> int:
    """Flip drivers silent for ``driver_inactive_minutes`` to unavailable."""
    cutoff = utcnow() - timedelta(minutes=settings.driver_inactive_minutes)
    result = await db.execute(
        update(DriverStatus)
        .where(DriverStatus.is_available.is_(True), DriverStatus.last_update < cutoff)
        .values(is_available=False)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Deactivated %d inactive drivers", result.rowcount)
    return result.rowcount
