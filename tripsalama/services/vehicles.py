import logging

from sqlalchemy import select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.errors import ForbiddenError, NotFoundError
from tripsalama.models.vehicle import Vehicle
from tripsalama.schemas.schemas import VehicleCreateRequest

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"brand", "model", "color", "license_plate", "year", "is_active"}


async def find_by_id(vehicle_id: int, db: AsyncSession) -> Vehicle | None:
    return await db.get(Vehicle, vehicle_id, populate_existing=True)


async def find_by_driver(driver_id: int, db: AsyncSession) -> Vehicle | None:
    """The driver's current vehicle: the most recently added active one."""
    result = await db.execute(
        select(Vehicle)
        .where(Vehicle.driver_id == driver_id, Vehicle.is_active.is_(True))
        .order_by(Vehicle.created_at.desc(), Vehicle.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create(driver_id: int, payload: VehicleCreateRequest, db: AsyncSession) -> Vehicle:
    vehicle = Vehicle(driver_id=driver_id, **payload.model_dump())
    db.add(vehicle)
    await db.commit()
    await db.refresh(vehicle)
    logger.info("Vehicle %s registered for driver=%s", vehicle.id, driver_id)
    return vehicle


async def update(vehicle_id: int, driver_id: int, db: AsyncSession, **fields) -> Vehicle:
    vehicle = await find_by_id(vehicle_id, db)
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    if vehicle.driver_id != driver_id:
        raise ForbiddenError("Not your vehicle")

    values = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
    if values:
        await db.execute(
            sql_update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return await find_by_id(vehicle_id, db)
