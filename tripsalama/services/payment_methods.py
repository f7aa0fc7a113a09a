"""
Saved cards. Removal is a soft delete; a user has at most one default card.
"""
import logging

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import atomic
from tripsalama.errors import ConflictError, NotFoundError, TransientError
from tripsalama.models.payment_method import PaymentMethod
from tripsalama.services import payment

logger = logging.getLogger(__name__)


async def list_for_user(user_id: int, db: AsyncSession) -> list[PaymentMethod]:
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars())


async def get_owned(user_id: int, method_id: int, db: AsyncSession) -> PaymentMethod:
    result = await db.execute(
        select(PaymentMethod)
        .where(
            PaymentMethod.id == method_id,
            PaymentMethod.user_id == user_id,
            PaymentMethod.is_active.is_(True),
        )
        .execution_options(populate_existing=True)
    )
    method = result.scalar_one_or_none()
    if method is None:
        raise NotFoundError("Payment method not found")
    return method


async def get_default(user_id: int, db: AsyncSession) -> PaymentMethod | None:
    methods = await list_for_user(user_id, db)
    return methods[0] if methods and methods[0].is_default else None


async def add(user_id: int, provider_payment_method_id: str, db: AsyncSession) -> PaymentMethod:
    """Looks the card up at the PSP and saves it; the first card becomes the default."""
    existing = await list_for_user(user_id, db)
    if any(m.provider_payment_method_id == provider_payment_method_id for m in existing):
        raise ConflictError("Payment method already saved")

    try:
        card = await payment.retrieve_payment_method(provider_payment_method_id)
    except payment.PSPError as e:
        logger.warning("PSP lookup of payment method failed: %s", e)
        raise NotFoundError("Payment method not found at the payment provider")
    except httpx.HTTPError as e:
        logger.error("PSP unreachable while adding payment method: %s", e)
        raise TransientError("Payment provider unavailable, try again later")

    method = PaymentMethod(
        user_id=user_id,
        type="card",
        provider="psp",
        provider_payment_method_id=provider_payment_method_id,
        last_four=card["last4"],
        brand=card["brand"],
        exp_month=card["exp_month"],
        exp_year=card["exp_year"],
        is_default=not existing,
    )
    db.add(method)
    await db.commit()
    await db.refresh(method)
    logger.info("Payment method %s added for user %s", method.id, user_id)
    return method


async def set_default(user_id: int, method_id: int, db: AsyncSession) -> PaymentMethod:
    await get_owned(user_id, method_id, db)
    async with atomic(db):
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.id == method_id, PaymentMethod.user_id == user_id)
            .values(is_default=True)
            .execution_options(synchronize_session=False)
        )
    return await get_owned(user_id, method_id, db)


async def remove(user_id: int, method_id: int, db: AsyncSession) -> None:
    """Deactivates the card; when it was the default, the newest remaining card takes over."""
    method = await get_owned(user_id, method_id, db)
    was_default = method.is_default
    async with atomic(db):
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.id == method_id, PaymentMethod.user_id == user_id)
            .values(is_active=False, is_default=False)
            .execution_options(synchronize_session=False)
        )
    if was_default:
        remaining = await list_for_user(user_id, db)
        if remaining:
            await set_default(user_id, remaining[0].id, db)
    logger.info("Payment method %s removed for user %s", method_id, user_id)
