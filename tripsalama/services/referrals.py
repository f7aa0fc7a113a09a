"""
Referral programme: every user gets a shareable code; a new user who signs
up with it is linked to the referrer, and both wallets receive a bonus once
the new user's first ride is paid.
"""
import logging
import secrets
import string

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import atomic, utcnow
from tripsalama.errors import ConflictError, InvalidInputError, NotFoundError
from tripsalama.models.referral import Referral
from tripsalama.models.user import User
from tripsalama.services import transactions, users, wallet
from tripsalama.services.money import to_money

logger = logging.getLogger(__name__)
settings = get_settings()

PENDING, COMPLETED = "pending", "completed"


async def _code_taken(code: str, db: AsyncSession) -> bool:
    result = await db.execute(select(func.count(User.id)).where(User.referral_code == code))
    return result.scalar_one() > 0


async def _new_code(user_id: int, db: AsyncSession) -> str:
    # TRIP + two letters + the last four digits of the id
    code = "TRIP" + "".join(secrets.choice(string.ascii_uppercase) for _ in range(2)) + f"{user_id % 10000:04d}"
    if await _code_taken(code, db):
        code = "TRIP" + secrets.token_hex(3).upper()
    return code


async def get_or_create_code(user_id: int, db: AsyncSession) -> str:
    user = await users.find_by_id(user_id, db)
    if user is None:
        raise NotFoundError("User not found")
    if user.referral_code:
        return user.referral_code

    code = await _new_code(user_id, db)
    await db.execute(
        update(User)
        .where(User.id == user_id, User.referral_code.is_(None))
        .values(referral_code=code)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return (await users.find_by_id(user_id, db)).referral_code


def share_link(code: str) -> str:
    return f"{settings.app_url}/register?ref={code}"


async def find_referrer(code: str, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.referral_code == code.strip().upper()))
    return result.scalar_one_or_none()


async def apply_code(new_user_id: int, code: str, db: AsyncSession) -> Referral:
    """Link a new user to the owner of ``code``; the bonuses stay pending until the first paid ride."""
    referrer = await find_referrer(code, db)
    if referrer is None or referrer.id == new_user_id:
        raise InvalidInputError("Invalid referral code")
    user = await users.find_by_id(new_user_id, db)
    if user is None:
        raise NotFoundError("User not found")
    if user.referred_by is not None:
        raise ConflictError("Account was already referred")

    referral = Referral(
        referrer_id=referrer.id,
        referred_id=new_user_id,
        referral_code=referrer.referral_code,
        status=PENDING,
        referrer_bonus=to_money(settings.referrer_bonus),
        referred_bonus=to_money(settings.referred_bonus),
        currency=settings.currency,
    )
    try:
        async with atomic(db):
            await db.execute(
                update(User)
                .where(User.id == new_user_id)
                .values(referred_by=referrer.id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.add(referral)
    except IntegrityError:
        raise ConflictError("Account was already referred")
    await db.refresh(referral)
    logger.info("User %s referred by %s", new_user_id, referrer.id)
    return referral


async def complete_referral(referred_user_id: int, db: AsyncSession) -> Referral | None:
    """
    Pay both bonuses for the user's pending referral, if any. The status flip
    is a conditional UPDATE, so the bonuses are paid once.
    """
    result = await db.execute(
        select(Referral).where(Referral.referred_id == referred_user_id, Referral.status == PENDING)
    )
    referral = result.scalar_one_or_none()
    if referral is None:
        return None
    referral_id, referrer_id = referral.id, referral.referrer_id
    referrer_bonus, referred_bonus = referral.referrer_bonus, referral.referred_bonus

    await wallet.get_or_create(referrer_id, db)
    await wallet.get_or_create(referred_user_id, db)
    async with atomic(db):
        flipped = await db.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status == PENDING)
            .values(status=COMPLETED, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            return None
        for user_id, bonus, other_id in (
            (referrer_id, referrer_bonus, referred_user_id),
            (referred_user_id, referred_bonus, referrer_id),
        ):
            row = await transactions.create_referral_bonus(user_id, bonus, other_id, db, commit=False)
            await wallet.apply_credit(row, db)

    logger.info("Referral %s completed: referrer=%s referred=%s", referral_id, referrer_id, referred_user_id)
    return await db.get(Referral, referral_id, populate_existing=True)


async def get_stats(user_id: int, db: AsyncSession) -> dict:
    result = await db.execute(
        select(
            func.count(case((Referral.status == COMPLETED, 1))),
            func.count(case((Referral.status == PENDING, 1))),
            func.coalesce(func.sum(case((Referral.status == COMPLETED, Referral.referrer_bonus), else_=0)), 0),
        ).where(Referral.referrer_id == user_id)
    )
    completed, pending, earned = result.one()
    code = await get_or_create_code(user_id, db)
    return {
        "referral_code": code,
        "share_link": share_link(code),
        "completed_referrals": int(completed or 0),
        "pending_referrals": int(pending or 0),
        "total_earned": to_money(earned or 0),
        "referrer_bonus": to_money(settings.referrer_bonus),
        "referred_bonus": to_money(settings.referred_bonus),
    }


async def get_referrals(user_id: int, db: AsyncSession) -> list[Referral]:
    result = await db.execute(
        select(Referral).where(Referral.referrer_id == user_id).order_by(Referral.created_at.desc(), Referral.id.desc())
    )
    return list(result.scalars())
