"""
Promo codes.

A code is checked against its activity flag, validity window, global and
per-user usage limits, minimum fare and first-ride rule. Applying it to a
ride records one use, bumps the usage counter under a conditional UPDATE and
stores the discount on the ride; the passenger then pays the fare less the
discount, and the platform funds the difference.
"""
import logging
import secrets
import string
from datetime import timezone
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import atomic, utcnow
from tripsalama.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from tripsalama.models.promo import PromoCode, PromoCodeUse
from tripsalama.models.ride import Ride
from tripsalama.schemas.schemas import DiscountTypeEnum, PromoCodeCreateRequest, PromoCodeUpdateRequest, RideStatusEnum
from tripsalama.services import rides
from tripsalama.services.money import to_money

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def normalize(code: str) -> str:
    return code.strip().upper()


async def find_by_code(code: str, db: AsyncSession) -> PromoCode | None:
    result = await db.execute(
        select(PromoCode).where(PromoCode.code == normalize(code)).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_id(promo_id: int, db: AsyncSession) -> PromoCode | None:
    return await db.get(PromoCode, promo_id, populate_existing=True)


async def require_promo(promo_id: int, db: AsyncSession) -> PromoCode:
    promo = await find_by_id(promo_id, db)
    if promo is None:
        raise NotFoundError("Promo code not found")
    return promo


async def create(payload: PromoCodeCreateRequest, db: AsyncSession, created_by: int | None = None) -> PromoCode:
    if payload.discount_type is DiscountTypeEnum.percentage and payload.discount_value > 100:
        raise InvalidInputError("Percentage discount cannot exceed 100")
    promo = PromoCode(
        code=normalize(payload.code),
        description=payload.description,
        discount_type=payload.discount_type.value,
        discount_value=to_money(payload.discount_value),
        max_discount=to_money(payload.max_discount) if payload.max_discount is not None else None,
        min_ride_amount=to_money(payload.min_ride_amount) if payload.min_ride_amount is not None else None,
        max_uses=payload.max_uses,
        max_uses_per_user=payload.max_uses_per_user,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        is_active=payload.is_active,
        is_first_ride_only=payload.is_first_ride_only,
        created_by=created_by,
    )
    db.add(promo)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Promo code already exists")
    await db.refresh(promo)
    logger.info("Promo code %s created by %s", promo.code, created_by)
    return promo


async def update_promo(promo_id: int, payload: PromoCodeUpdateRequest, db: AsyncSession) -> PromoCode:
    values = payload.model_dump(exclude_unset=True)
    if "discount_type" in values:
        values["discount_type"] = DiscountTypeEnum(values["discount_type"]).value
    if values:
        values["updated_at"] = utcnow()
        await db.execute(
            update(PromoCode).where(PromoCode.id == promo_id).values(**values).execution_options(synchronize_session=False)
        )
        await db.commit()
    return await require_promo(promo_id, db)


async def deactivate(promo_id: int, db: AsyncSession) -> PromoCode:
    await require_promo(promo_id, db)
    await db.execute(
        update(PromoCode)
        .where(PromoCode.id == promo_id)
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await require_promo(promo_id, db)


async def get_all(db: AsyncSession, active_only: bool = False) -> list[PromoCode]:
    stmt = select(PromoCode)
    if active_only:
        stmt = stmt.where(
            PromoCode.is_active.is_(True),
            or_(PromoCode.valid_until.is_(None), PromoCode.valid_until > utcnow()),
        )
    result = await db.execute(stmt.order_by(PromoCode.created_at.desc(), PromoCode.id.desc()))
    return list(result.scalars())


def calculate_discount(promo: PromoCode, amount) -> Decimal:
    """Percentage discounts honour ``max_discount``; no discount exceeds the fare."""
    amount = to_money(amount)
    if promo.discount_type == DiscountTypeEnum.percentage.value:
        discount = to_money(amount * to_money(promo.discount_value) / 100)
        if promo.max_discount is not None:
            discount = min(discount, to_money(promo.max_discount))
    else:
        discount = to_money(promo.discount_value)
    return min(discount, amount)


def _as_aware(value):
    # SQLite hands back naive datetimes
    return value if value is None or value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _user_use_count(promo_id: int, user_id: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(PromoCodeUse.id)).where(PromoCodeUse.promo_code_id == promo_id, PromoCodeUse.user_id == user_id)
    )
    return result.scalar_one()


async def _completed_rides(user_id: int, db: AsyncSession, exclude_ride_id: int | None = None) -> int:
    stmt = select(func.count(Ride.id)).where(
        Ride.passenger_id == user_id, Ride.status == RideStatusEnum.completed.value
    )
    if exclude_ride_id is not None:
        stmt = stmt.where(Ride.id != exclude_ride_id)
    return (await db.execute(stmt)).scalar_one()


async def validate(
    code: str,
    user_id: int,
    ride_amount,
    db: AsyncSession,
    ride_id: int | None = None,
) -> tuple[PromoCode, Decimal]:
    """
    Checks every rule of the code for this user and fare.
    Returns (promo, discount); raises InvalidInputError naming the failed rule.
    """
    promo = await find_by_code(code, db)
    if promo is None:
        raise InvalidInputError("Invalid promo code")
    if not promo.is_active:
        raise InvalidInputError("Promo code has expired")

    now = utcnow()
    if promo.valid_from is not None and _as_aware(promo.valid_from) > now:
        raise InvalidInputError("Promo code is not valid yet")
    if promo.valid_until is not None and _as_aware(promo.valid_until) < now:
        raise InvalidInputError("Promo code has expired")
    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        raise InvalidInputError("Promo code usage limit reached")
    if await _user_use_count(promo.id, user_id, db) >= promo.max_uses_per_user:
        raise InvalidInputError("Promo code already used")

    ride_amount = to_money(ride_amount)
    if promo.min_ride_amount is not None and ride_amount < to_money(promo.min_ride_amount):
        raise InvalidInputError(f"Promo code requires a fare of at least {to_money(promo.min_ride_amount)}")
    if promo.is_first_ride_only and await _completed_rides(user_id, db, exclude_ride_id=ride_id) > 0:
        raise InvalidInputError("Promo code is for a first ride only")

    return promo, calculate_discount(promo, ride_amount)


async def apply_to_ride(code: str, passenger_id: int, ride_id: int, db: AsyncSession) -> dict:
    """Attach a code to one of the passenger's unpaid rides; one code per ride."""
    ride = await rides.require_ride(ride_id, db)
    if ride.passenger_id != passenger_id:
        raise ForbiddenError("Only the passenger can apply a promo code to this ride")
    if ride.status == RideStatusEnum.cancelled.value:
        raise ConflictError("Ride is cancelled")
    if ride.payment_status != "unpaid":
        raise ConflictError("Ride is already paid")
    if ride.promo_code_id is not None:
        raise ConflictError("A promo code is already applied to this ride")
    fare = ride.final_price if ride.final_price is not None else ride.estimated_price
    if fare is None:
        raise InvalidInputError("Ride has no fare yet")

    promo, discount = await validate(code, passenger_id, fare, db, ride_id=ride_id)
    promo_id = promo.id
    async with atomic(db):
        bumped = await db.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo_id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .values(current_uses=PromoCode.current_uses + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            raise InvalidInputError("Promo code usage limit reached")
        attached = await db.execute(
            update(Ride)
            .where(Ride.id == ride_id, Ride.promo_code_id.is_(None), Ride.payment_status == "unpaid")
            .values(promo_code_id=promo_id, discount_amount=discount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if attached.rowcount == 0:
            raise ConflictError("A promo code is already applied to this ride")
        db.add(PromoCodeUse(promo_code_id=promo_id, user_id=passenger_id, ride_id=ride_id, discount_applied=discount))

    logger.info("Promo %s applied to ride %s: discount=%s", promo.code, ride_id, discount)
    return {
        "promo_id": promo_id,
        "code": promo.code,
        "discount": discount,
        "discount_type": promo.discount_type,
        "discount_value": to_money(promo.discount_value),
        "description": promo.description,
    }


async def get_stats(promo_id: int, db: AsyncSession) -> dict:
    await require_promo(promo_id, db)
    result = await db.execute(
        select(
            func.count(PromoCodeUse.id),
            func.count(func.distinct(PromoCodeUse.user_id)),
            func.coalesce(func.sum(PromoCodeUse.discount_applied), 0),
            func.avg(PromoCodeUse.discount_applied),
        ).where(PromoCodeUse.promo_code_id == promo_id)
    )
    total, unique_users, total_discount, avg_discount = result.one()
    return {
        "total_uses": int(total or 0),
        "unique_users": int(unique_users or 0),
        "total_discount": to_money(total_discount or 0),
        "avg_discount": to_money(avg_discount) if avg_discount is not None else Decimal("0.00"),
    }


async def generate_unique_code(db: AsyncSession, length: int = 8) -> str:
    while True:
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        if await find_by_code(code, db) is None:
            return code
