"""
Ride lifecycle service.

Every status write is validated against the transition table in
``services.lifecycle`` and issued as a single conditional UPDATE guarded by
the ride's ``version`` column, so two concurrent writers (e.g. two drivers
accepting the same ride) cannot both succeed.
"""
import logging
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import utcnow
from tripsalama.errors import ForbiddenError, IllegalTransitionError, InvalidInputError, NotFoundError, StaleRideError
from tripsalama.models.ride import Rating, Ride, RidePosition
from tripsalama.schemas.schemas import RideCreateRequest, RideStatusEnum
from tripsalama.services.lifecycle import (
    DRIVER_ACTIVE_STATES,
    PASSENGER_ACTIVE_STATES,
    TIMESTAMP_COLUMNS,
    ensure_transition,
    parse_status,
)
from tripsalama.services.money import to_money
from tripsalama.services.periods import calendar_start

logger = logging.getLogger(__name__)
settings = get_settings()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def find_by_id(ride_id: int, db: AsyncSession) -> Ride | None:
    return await db.get(Ride, ride_id, populate_existing=True)


async def require_ride(ride_id: int, db: AsyncSession) -> Ride:
    ride = await find_by_id(ride_id, db)
    if ride is None:
        raise NotFoundError("Ride not found")
    return ride


def ensure_party(ride: Ride, user_id: int) -> None:
    if user_id not in (ride.passenger_id, ride.driver_id):
        raise ForbiddenError("Not a participant of this ride")


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def create_ride(passenger_id: int, payload: RideCreateRequest, db: AsyncSession) -> Ride:
    """Always starts in ``pending``; coordinates are taken as given."""
    ride = Ride(
        passenger_id=passenger_id,
        status=RideStatusEnum.pending.value,
        pickup_address=payload.pickup_address,
        pickup_lat=payload.pickup_lat,
        pickup_lng=payload.pickup_lng,
        dropoff_address=payload.dropoff_address,
        dropoff_lat=payload.dropoff_lat,
        dropoff_lng=payload.dropoff_lng,
        estimated_distance_km=payload.estimated_distance_km,
        estimated_duration_min=payload.estimated_duration_min,
        estimated_price=payload.estimated_price,
        route_polyline=payload.route_polyline,
    )
    db.add(ride)
    await db.commit()
    await db.refresh(ride)
    logger.info("Ride %s created by passenger=%s", ride.id, passenger_id)
    return ride


async def assign_driver(ride_id: int, driver_id: int, vehicle_id: int | None, db: AsyncSession) -> Ride:
    """
    pending -> accepted, setting driver, vehicle and accepted_at in one
    UPDATE. This is the only writer of driver_id / vehicle_id.
    """
    ride = await require_ride(ride_id, db)
    ensure_transition(ride.status, RideStatusEnum.accepted)
    now = utcnow()

    result = await db.execute(
        update(Ride)
        .where(
            Ride.id == ride_id,
            Ride.status == RideStatusEnum.pending.value,
            Ride.version == ride.version,
        )
        .values(
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            status=RideStatusEnum.accepted.value,
            accepted_at=now,
            version=Ride.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.warning("Lost assignment race ride=%s driver=%s", ride_id, driver_id)
        raise StaleRideError("Ride was taken by another driver")

    await db.commit()
    logger.info("Ride %s accepted by driver=%s vehicle=%s", ride_id, driver_id, vehicle_id)
    return await require_ride(ride_id, db)


async def _transition(ride: Ride, target: RideStatusEnum, db: AsyncSession, **extra) -> Ride:
    ride_id, current, version = ride.id, ride.status, ride.version
    ensure_transition(current, target)
    now = utcnow()

    values = {"status": target.value, "version": Ride.version + 1, "updated_at": now, **extra}
    column = TIMESTAMP_COLUMNS.get(target)
    if column:
        values[column] = now

    result = await db.execute(
        update(Ride)
        .where(Ride.id == ride_id, Ride.status == current, Ride.version == version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.warning("Concurrent update on ride=%s (%s -> %s)", ride_id, current, target.value)
        raise StaleRideError("Ride was modified concurrently, reload and retry")

    await db.commit()
    logger.info("Ride %s: %s -> %s", ride_id, current, target.value)
    return await require_ride(ride_id, db)


async def update_status(ride_id: int, status: str, db: AsyncSession) -> Ride:
    """
    Move a ride along the state machine and stamp the matching timestamp
    column. Accepting a ride must go through ``assign_driver``.
    """
    target = parse_status(status)
    ride = await require_ride(ride_id, db)
    if target is RideStatusEnum.accepted:
        raise IllegalTransitionError(ride.status, target.value)
    return await _transition(ride, target, db)


async def cancel(ride_id: int, user_id: int, db: AsyncSession) -> Ride:
    ride = await require_ride(ride_id, db)
    ensure_party(ride, user_id)
    return await _transition(ride, RideStatusEnum.cancelled, db)


async def complete(ride_id: int, db: AsyncSession) -> Ride:
    """in_progress -> completed; the estimate becomes the final price."""
    ride = await require_ride(ride_id, db)
    return await _transition(ride, RideStatusEnum.completed, db, final_price=Ride.estimated_price)


async def rate(ride_id: int, user_id: int, rating: int, db: AsyncSession, comment: str | None = None) -> Rating:
    if not 1 <= rating <= 5:
        raise InvalidInputError("Rating must be between 1 and 5")
    ride = await require_ride(ride_id, db)
    ensure_party(ride, user_id)
    is_passenger = user_id == ride.passenger_id

    result = await db.execute(select(Rating).where(Rating.ride_id == ride_id))
    row = result.scalar_one_or_none()
    if row is None:
        row = Rating(ride_id=ride_id)
        db.add(row)

    if is_passenger:
        row.passenger_rating, row.passenger_comment, row.passenger_rated_at = rating, comment, utcnow()
    else:
        row.driver_rating, row.driver_comment, row.driver_rated_at = rating, comment, utcnow()
    await db.commit()
    return row


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_by_passenger(
    passenger_id: int, db: AsyncSession, status: str | None = None, limit: int = 50
) -> list[Ride]:
    stmt = select(Ride).where(Ride.passenger_id == passenger_id)
    if status:
        stmt = stmt.where(Ride.status == parse_status(status).value)
    result = await db.execute(stmt.order_by(Ride.created_at.desc(), Ride.id.desc()).limit(limit))
    return list(result.scalars())


async def get_by_driver(
    driver_id: int, db: AsyncSession, status: str | None = None, limit: int = 50
) -> list[Ride]:
    stmt = select(Ride).where(Ride.driver_id == driver_id)
    if status:
        stmt = stmt.where(Ride.status == parse_status(status).value)
    result = await db.execute(stmt.order_by(Ride.created_at.desc(), Ride.id.desc()).limit(limit))
    return list(result.scalars())


async def get_active_by_passenger(passenger_id: int, db: AsyncSession) -> Ride | None:
    result = await db.execute(
        select(Ride)
        .where(
            Ride.passenger_id == passenger_id,
            Ride.status.in_([s.value for s in PASSENGER_ACTIVE_STATES]),
        )
        .order_by(Ride.created_at.desc(), Ride.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_by_driver(driver_id: int, db: AsyncSession) -> Ride | None:
    result = await db.execute(
        select(Ride)
        .where(
            Ride.driver_id == driver_id,
            Ride.status.in_([s.value for s in DRIVER_ACTIVE_STATES]),
        )
        .order_by(Ride.created_at.desc(), Ride.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_pending(lat: float, lng: float, db: AsyncSession, radius_km: float | None = None) -> list[Ride]:
    """
    Oldest pending rides first, capped at ``pending_rides_limit``.

    lat/lng/radius_km are accepted for API compatibility but do not filter
    yet: there is no agreed rule for which pending rides a driver should see.
    """
    result = await db.execute(
        select(Ride)
        .where(Ride.status == RideStatusEnum.pending.value)
        .order_by(Ride.created_at.asc(), Ride.id.asc())
        .limit(settings.pending_rides_limit)
    )
    return list(result.scalars())


async def get_recent_by_passenger(passenger_id: int, db: AsyncSession, limit: int = 3) -> list[Ride]:
    """Completed rides, newest first; used for "recent destinations"."""
    return await get_by_passenger(passenger_id, db, status=RideStatusEnum.completed.value, limit=limit)


async def count_by_passenger(passenger_id: int, db: AsyncSession, period: str | None = None) -> int:
    stmt = select(func.count(Ride.id)).where(Ride.passenger_id == passenger_id)
    since = calendar_start(period) if period == "month" else None
    if since is not None:
        stmt = stmt.where(Ride.created_at >= since)
    return int((await db.execute(stmt)).scalar_one())


def _completed_by_driver(stmt, driver_id: int, period: str | None):
    stmt = stmt.where(Ride.driver_id == driver_id, Ride.status == RideStatusEnum.completed.value)
    since = calendar_start(period)
    if since is not None:
        stmt = stmt.where(Ride.completed_at >= since)
    return stmt


async def count_by_driver(driver_id: int, db: AsyncSession, period: str | None = None) -> int:
    stmt = _completed_by_driver(select(func.count(Ride.id)), driver_id, period)
    return int((await db.execute(stmt)).scalar_one())


async def get_earnings_by_driver(driver_id: int, db: AsyncSession, period: str | None = None) -> Decimal:
    """Driver share of completed fares (estimate minus platform commission)."""
    share = Decimal(str(1 - settings.commission_rate))
    stmt = _completed_by_driver(
        select(func.coalesce(func.sum(Ride.estimated_price * share), 0)), driver_id, period
    )
    value = (await db.execute(stmt)).scalar_one()
    return to_money(value or 0)


async def get_total_distance_by_driver(driver_id: int, db: AsyncSession, period: str | None = None) -> float:
    stmt = _completed_by_driver(
        select(func.coalesce(func.sum(Ride.estimated_distance_km), 0)), driver_id, period
    )
    return float((await db.execute(stmt)).scalar_one() or 0)


async def get_driver_stats(driver_id: int, db: AsyncSession) -> dict:
    return {
        "rides_today": await count_by_driver(driver_id, db, "today"),
        "rides_week": await count_by_driver(driver_id, db, "week"),
        "rides_month": await count_by_driver(driver_id, db, "month"),
        "rides_total": await count_by_driver(driver_id, db),
        "earnings_today": await get_earnings_by_driver(driver_id, db, "today"),
        "earnings_week": await get_earnings_by_driver(driver_id, db, "week"),
        "earnings_month": await get_earnings_by_driver(driver_id, db, "month"),
        "distance_today": await get_total_distance_by_driver(driver_id, db, "today"),
        "distance_week": await get_total_distance_by_driver(driver_id, db, "week"),
        "distance_total": await get_total_distance_by_driver(driver_id, db),
    }


# ---------------------------------------------------------------------------
# Position log
# ---------------------------------------------------------------------------

async def save_position(
    ride_id: int,
    lat: float,
    lng: float,
    db: AsyncSession,
    heading: float | None = None,
    speed: float | None = None,
) -> RidePosition:
    position = RidePosition(ride_id=ride_id, lat=lat, lng=lng, heading=heading, speed=speed)
    db.add(position)
    await db.commit()
    return position


async def get_last_position(ride_id: int, db: AsyncSession) -> RidePosition | None:
    result = await db.execute(
        select(RidePosition)
        .where(RidePosition.ride_id == ride_id)
        .order_by(RidePosition.recorded_at.desc(), RidePosition.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
