"""
Referrals router: GET /v1/referrals/me, GET /v1/referrals, POST /v1/referrals/apply,
GET /v1/referrals/validate
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.middleware.auth import get_current_user_id
from tripsalama.schemas.schemas import ReferralApplyRequest, ReferralResponse
from tripsalama.services import referrals

router = APIRouter(prefix="/v1/referrals", tags=["Referrals"])


@router.get("/me")
async def my_referral_stats(db: AsyncSession = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    stats = await referrals.get_stats(user_id, db)
    for key in ("total_earned", "referrer_bonus", "referred_bonus"):
        stats[key] = str(stats[key])
    return stats


@router.get("", response_model=list[ReferralResponse])
async def my_referrals(db: AsyncSession = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    return [ReferralResponse.model_validate(r) for r in await referrals.get_referrals(user_id, db)]


@router.post("/apply", response_model=ReferralResponse)
async def apply_referral(
    payload: ReferralApplyRequest,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return ReferralResponse.model_validate(await referrals.apply_code(user_id, payload.code, db))


@router.get("/validate")
async def validate_referral(code: str, db: AsyncSession = Depends(get_db)):
    """Public: lets the sign-up form check a code before registering."""
    referrer = await referrals.find_referrer(code, db)
    if referrer is None:
        return {"valid": False}
    return {"valid": True, "referrer_first_name": referrer.first_name}
