"""
Promo router: passengers validate and apply codes; admins manage them.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.middleware.auth import get_current_admin, get_current_passenger
from tripsalama.redis_client import invalidate_ride
from tripsalama.schemas.schemas import (
    PromoApplyRequest,
    PromoCodeCreateRequest,
    PromoCodeResponse,
    PromoCodeUpdateRequest,
    PromoValidateRequest,
)
from tripsalama.services import promo
from tripsalama.services.money import to_money

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/promo", tags=["Promo"])


@router.post("/validate")
async def validate_code(
    payload: PromoValidateRequest,
    db: AsyncSession = Depends(get_db),
    passenger_id: int = Depends(get_current_passenger),
):
    code, discount = await promo.validate(payload.code, passenger_id, payload.amount, db)
    amount = to_money(payload.amount)
    return {
        "code": code.code,
        "description": code.description,
        "discount_type": code.discount_type,
        "discount": str(discount),
        "final_amount": str(amount - discount),
    }


@router.post("/apply")
async def apply_code(
    payload: PromoApplyRequest,
    db: AsyncSession = Depends(get_db),
    passenger_id: int = Depends(get_current_passenger),
):
    result = await promo.apply_to_ride(payload.code, passenger_id, payload.ride_id, db)
    await invalidate_ride(payload.ride_id)
    result["discount"] = str(result["discount"])
    result["discount_value"] = str(result["discount_value"])
    return result


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post("", status_code=status.HTTP_201_CREATED, response_model=PromoCodeResponse)
async def create_code(
    payload: PromoCodeCreateRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return PromoCodeResponse.model_validate(await promo.create(payload, db, created_by=admin_id))


@router.get("", response_model=list[PromoCodeResponse])
async def list_codes(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return [PromoCodeResponse.model_validate(p) for p in await promo.get_all(db, active_only=active_only)]


@router.get("/generate-code")
async def generate_code(
    length: int = 8,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return {"code": await promo.generate_unique_code(db, length=min(max(length, 4), 16))}


@router.patch("/{promo_id}", response_model=PromoCodeResponse)
async def update_code(
    promo_id: int,
    payload: PromoCodeUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return PromoCodeResponse.model_validate(await promo.update_promo(promo_id, payload, db))


@router.post("/{promo_id}/deactivate", response_model=PromoCodeResponse)
async def deactivate_code(
    promo_id: int,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    logger.info("Promo %s deactivated by admin=%s", promo_id, admin_id)
    return PromoCodeResponse.model_validate(await promo.deactivate(promo_id, db))


@router.get("/{promo_id}/stats")
async def code_stats(
    promo_id: int,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    stats = await promo.get_stats(promo_id, db)
    stats["total_discount"] = str(stats["total_discount"])
    stats["avg_discount"] = str(stats["avg_discount"])
    return stats
