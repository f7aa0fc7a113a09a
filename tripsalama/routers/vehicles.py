from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.errors import NotFoundError
from tripsalama.middleware.auth import get_current_driver
from tripsalama.schemas.schemas import VehicleCreateRequest, VehicleResponse, VehicleUpdateRequest
from tripsalama.services import vehicles

router = APIRouter(prefix="/v1/vehicles", tags=["Vehicles"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=VehicleResponse)
async def create_vehicle(
    payload: VehicleCreateRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    vehicle = await vehicles.create(driver_id, payload, db)
    return VehicleResponse.model_validate(vehicle)


@router.get("/current", response_model=VehicleResponse)
async def current_vehicle(
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    vehicle = await vehicles.find_by_driver(driver_id, db)
    if vehicle is None:
        raise NotFoundError("No active vehicle")
    return VehicleResponse.model_validate(vehicle)


@router.patch("/{vehicle_id}", response_model=VehicleResponse)
async def update_vehicle(
    vehicle_id: int,
    payload: VehicleUpdateRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    vehicle = await vehicles.update(vehicle_id, driver_id, db, **payload.model_dump(exclude_unset=True))
    return VehicleResponse.model_validate(vehicle)
