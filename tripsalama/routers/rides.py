"""
Rides router: POST /v1/rides, GET /v1/rides/{id}, lifecycle actions,
ratings and the position log.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import get_db
from tripsalama.errors import ForbiddenError, NotFoundError
from tripsalama.middleware.auth import get_current_driver, get_current_passenger, get_current_user
from tripsalama.redis_client import cache_get, cache_set, get_redis, invalidate_ride, ride_cache_key
from tripsalama.schemas.schemas import (
    AcceptRideRequest,
    PositionRequest,
    PositionResponse,
    RateRideRequest,
    RideCreateRequest,
    RideCreateResponse,
    RideResponse,
    RideStatusEnum,
    RoleEnum,
)
from tripsalama.services import rides, users, vehicles

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


async def _driver_ride(ride_id: int, driver_id: int, db: AsyncSession):
    ride = await rides.require_ride(ride_id, db)
    if ride.driver_id != driver_id:
        raise ForbiddenError("Not the driver of this ride")
    return ride


async def _move(ride_id: int, driver_id: int, target: RideStatusEnum, db: AsyncSession) -> RideResponse:
    await _driver_ride(ride_id, driver_id, db)
    if target is RideStatusEnum.completed:
        ride = await rides.complete(ride_id, db)
    else:
        ride = await rides.update_status(ride_id, target.value, db)
    await invalidate_ride(ride_id)
    return RideResponse.model_validate(ride)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideCreateResponse)
async def create_ride(
    payload: RideCreateRequest,
    db: AsyncSession = Depends(get_db),
    passenger_id: int = Depends(get_current_passenger),
):
    ride = await rides.create_ride(passenger_id, payload, db)
    return RideCreateResponse(ride_id=ride.id, status=ride.status)


@router.get("/active", response_model=RideResponse | None)
async def get_active_ride(
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    user_id = int(token_data["sub"])
    if token_data.get("role") == RoleEnum.driver.value:
        ride = await rides.get_active_by_driver(user_id, db)
    else:
        ride = await rides.get_active_by_passenger(user_id, db)
    return RideResponse.model_validate(ride) if ride else None


@router.get("/history", response_model=list[RideResponse])
async def get_history(
    status_filter: RideStatusEnum | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    user_id = int(token_data["sub"])
    status_value = status_filter.value if status_filter else None
    if token_data.get("role") == RoleEnum.driver.value:
        found = await rides.get_by_driver(user_id, db, status=status_value, limit=min(limit, 100))
    else:
        found = await rides.get_by_passenger(user_id, db, status=status_value, limit=min(limit, 100))
    return [RideResponse.model_validate(r) for r in found]


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    user_id = int(token_data["sub"])
    is_admin = token_data.get("role") == RoleEnum.admin.value
    redis = await get_redis()

    # Cache-aside: check Redis first
    cache_key = ride_cache_key(ride_id)
    cached = await cache_get(redis, cache_key)
    if cached:
        resp = RideResponse.model_validate_json(cached)
    else:
        ride = await rides.require_ride(ride_id, db)
        resp = RideResponse.model_validate(ride)
        await cache_set(redis, cache_key, resp.model_dump_json(), ttl=settings.ride_cache_ttl_seconds)

    if not is_admin and user_id not in (resp.passenger_id, resp.driver_id):
        raise ForbiddenError("Not a participant of this ride")
    return resp


@router.post("/{ride_id}/accept", response_model=RideResponse)
async def accept_ride(
    ride_id: int,
    payload: AcceptRideRequest | None = None,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    """Driver takes a pending ride. Only one driver can win a given ride."""
    driver = await users.find_by_id(driver_id, db)
    if driver is None or not driver.is_verified:
        raise ForbiddenError("Driver identity is not verified")

    vehicle_id = payload.vehicle_id if payload else None
    if vehicle_id is None:
        vehicle = await vehicles.find_by_driver(driver_id, db)
        vehicle_id = vehicle.id if vehicle else None
    else:
        vehicle = await vehicles.find_by_id(vehicle_id, db)
        if vehicle is None or vehicle.driver_id != driver_id:
            raise NotFoundError("Vehicle not found")

    ride = await rides.assign_driver(ride_id, driver_id, vehicle_id, db)
    await invalidate_ride(ride_id)
    return RideResponse.model_validate(ride)


@router.post("/{ride_id}/arriving", response_model=RideResponse)
async def driver_arriving(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    return await _move(ride_id, driver_id, RideStatusEnum.driver_arriving, db)


@router.post("/{ride_id}/start", response_model=RideResponse)
async def start_ride(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    return await _move(ride_id, driver_id, RideStatusEnum.in_progress, db)


@router.post("/{ride_id}/complete", response_model=RideResponse)
async def complete_ride(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    return await _move(ride_id, driver_id, RideStatusEnum.completed, db)


@router.post("/{ride_id}/cancel", response_model=RideResponse)
async def cancel_ride(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    ride = await rides.cancel(ride_id, int(token_data["sub"]), db)
    await invalidate_ride(ride_id)
    return RideResponse.model_validate(ride)


@router.post("/{ride_id}/rate", status_code=status.HTTP_204_NO_CONTENT)
async def rate_ride(
    ride_id: int,
    payload: RateRideRequest,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    await rides.rate(ride_id, int(token_data["sub"]), payload.rating, db, comment=payload.comment)


@router.post("/{ride_id}/positions", status_code=status.HTTP_201_CREATED, response_model=PositionResponse)
async def post_position(
    ride_id: int,
    payload: PositionRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    await _driver_ride(ride_id, driver_id, db)
    position = await rides.save_position(ride_id, payload.lat, payload.lng, db, heading=payload.heading, speed=payload.speed)
    return PositionResponse.model_validate(position)


@router.get("/{ride_id}/positions/latest", response_model=PositionResponse)
async def latest_position(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    ride = await rides.require_ride(ride_id, db)
    rides.ensure_party(ride, int(token_data["sub"]))
    position = await rides.get_last_position(ride_id, db)
    if position is None:
        raise NotFoundError("No position recorded yet")
    return PositionResponse.model_validate(position)
