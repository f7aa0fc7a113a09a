from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.errors import NotFoundError
from tripsalama.middleware.auth import get_current_admin, get_current_user_id
from tripsalama.schemas.schemas import VerificationRejectRequest, VerificationResponse, VerificationSubmitRequest
from tripsalama.services import identity

router = APIRouter(prefix="/v1/verification", tags=["Verification"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=VerificationResponse)
async def submit(
    payload: VerificationSubmitRequest,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    verification = await identity.submit(
        user_id, payload.image, db, confidence=payload.ai_confidence, label=payload.ai_result
    )
    return VerificationResponse.model_validate(verification)


@router.get("/status", response_model=VerificationResponse)
async def my_status(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    verification = await identity.find_by_user_id(user_id, db)
    if verification is None:
        raise NotFoundError("No verification submitted")
    return VerificationResponse.model_validate(verification)


@router.get("/pending", response_model=list[VerificationResponse])
async def pending_queue(
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return [VerificationResponse.model_validate(v) for v in await identity.get_pending_manual_reviews(db)]


@router.get("/stats")
async def stats(
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return await identity.get_stats(db)


@router.post("/{verification_id}/approve", response_model=VerificationResponse)
async def approve(
    verification_id: int,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return VerificationResponse.model_validate(await identity.approve_by_admin(verification_id, admin_id, db))


@router.post("/{verification_id}/reject", response_model=VerificationResponse)
async def reject(
    verification_id: int,
    payload: VerificationRejectRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    return VerificationResponse.model_validate(
        await identity.reject_by_admin(verification_id, admin_id, payload.reason, db)
    )
