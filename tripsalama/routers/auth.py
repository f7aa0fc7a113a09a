"""
Auth router: POST /v1/auth/register, POST /v1/auth/login, GET /v1/auth/me
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.errors import ForbiddenError, InvalidInputError, NotFoundError
from tripsalama.middleware.auth import create_access_token, get_current_user_id
from tripsalama.schemas.schemas import LoginRequest, RegisterRequest, RoleEnum, TokenResponse, UserResponse
from tripsalama.services import referrals, users

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/auth", tags=["Auth"])


@router.post("/register", status_code=status.HTTP_201_CREATED, response_model=TokenResponse)
async def register(payload: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Public sign-up for passengers and drivers; admins are provisioned out of band."""
    if payload.role is RoleEnum.admin:
        raise ForbiddenError("Cannot self-register as admin")
    if payload.referral_code and await referrals.find_referrer(payload.referral_code, db) is None:
        raise InvalidInputError("Invalid referral code")
    user = await users.create_user(
        payload.email,
        payload.password,
        payload.first_name,
        payload.last_name,
        db,
        phone=payload.phone,
        role=payload.role,
    )
    if payload.referral_code:
        await referrals.apply_code(user.id, payload.referral_code, db)
    return TokenResponse(access_token=create_access_token(user.id, user.role), user_id=user.id, role=user.role)


@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await users.authenticate(payload.email, payload.password, db)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenResponse(access_token=create_access_token(user.id, user.role), user_id=user.id, role=user.role)


@router.get("/me", response_model=UserResponse)
async def me(db: AsyncSession = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    user = await users.find_by_id(user_id, db)
    if user is None:
        raise NotFoundError("User not found")
    return UserResponse.model_validate(user)


@router.get("/me/stats")
async def my_stats(db: AsyncSession = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    return await users.get_stats(user_id, db)
