"""
Drivers router: availability toggle, position updates, pending ride feed,
nearby search and dashboard stats.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import get_db
from tripsalama.errors import ForbiddenError
from tripsalama.middleware.auth import get_current_driver, get_current_user_id
from tripsalama.schemas.schemas import (
    AvailabilityRequest,
    DriverStatsResponse,
    DriverStatusResponse,
    NearbyDriver,
    PositionRequest,
    RideResponse,
)
from tripsalama.services import availability, rides, users

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


@router.post("/availability", response_model=DriverStatusResponse)
async def set_availability(
    payload: AvailabilityRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    """Go online/offline. Unverified drivers cannot go online."""
    if payload.is_available:
        driver = await users.find_by_id(driver_id, db)
        if driver is None or not driver.is_verified:
            raise ForbiddenError("Driver identity is not verified")
    row = await availability.set_availability(driver_id, payload.is_available, db, lat=payload.lat, lng=payload.lng)
    return DriverStatusResponse.model_validate(row)


@router.post("/position", response_model=DriverStatusResponse)
async def update_position(
    payload: PositionRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    row = await availability.update_position(
        driver_id, payload.lat, payload.lng, db, heading=payload.heading, speed=payload.speed
    )
    return DriverStatusResponse.model_validate(row)


@router.get("/status", response_model=DriverStatusResponse)
async def get_status(
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    row = await availability.get_or_create(driver_id, db)
    return DriverStatusResponse.model_validate(row)


@router.get("/pending-rides", response_model=list[RideResponse])
async def pending_rides(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float | None = Query(default=None, gt=0),
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    found = await rides.get_pending(lat, lng, db, radius_km=radius_km)
    return [RideResponse.model_validate(r) for r in found]


@router.get("/nearby", response_model=list[NearbyDriver])
async def nearby_drivers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float | None = Query(default=None, gt=0, le=100),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    radius = radius_km or settings.default_search_radius_km
    return await availability.get_available_in_radius(lat, lng, radius, db)


@router.get("/available-count")
async def available_count(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return {"available": await availability.count_available(db)}


@router.get("/stats", response_model=DriverStatsResponse)
async def driver_stats(
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    return DriverStatsResponse(**await rides.get_driver_stats(driver_id, db))
