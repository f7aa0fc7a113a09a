"""
Transaction records: one immutable row per financial event.

After insert only ``status``, ``error_message`` and ``processed_at`` change,
plus the ledger columns stamped once when a pending row is posted to a
wallet (see ``services.wallet``).
"""
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import utcnow
from tripsalama.errors import InvalidInputError, NotFoundError
from tripsalama.models.ride import Ride
from tripsalama.models.transaction import Transaction
from tripsalama.schemas.schemas import RideStatusEnum, TransactionStatusEnum, TransactionTypeEnum
from tripsalama.services.money import to_money
from tripsalama.services.periods import rolling_start

logger = logging.getLogger(__name__)
settings = get_settings()

T = TransactionTypeEnum
PROCESSED_STATUSES = {TransactionStatusEnum.completed.value, TransactionStatusEnum.failed.value}


def build(
    user_id: int,
    type: TransactionTypeEnum,
    amount,
    *,
    wallet_id: int | None = None,
    ride_id: int | None = None,
    currency: str | None = None,
    status: TransactionStatusEnum = TransactionStatusEnum.pending,
    payment_method_id: int | None = None,
    provider: str | None = None,
    provider_transaction_id: str | None = None,
    provider_charge_id: str | None = None,
    description: str | None = None,
    meta: dict | None = None,
) -> Transaction:
    """Unsaved transaction with the defaults applied."""
    status = TransactionStatusEnum(status).value
    return Transaction(
        user_id=user_id,
        wallet_id=wallet_id,
        ride_id=ride_id,
        type=TransactionTypeEnum(type).value,
        amount=to_money(amount),
        currency=currency or settings.currency,
        status=status,
        processed_at=utcnow() if status in PROCESSED_STATUSES else None,
        payment_method_id=payment_method_id,
        provider=provider,
        provider_transaction_id=provider_transaction_id,
        provider_charge_id=provider_charge_id,
        description=description,
        meta=meta,
    )


async def create(user_id: int, type: TransactionTypeEnum, amount, db: AsyncSession, commit: bool = True, **fields) -> Transaction:
    txn = build(user_id, type, amount, **fields)
    db.add(txn)
    if commit:
        await db.commit()
        await db.refresh(txn)
    else:
        await db.flush()
    return txn


async def find_by_id(transaction_id: int, db: AsyncSession) -> Transaction | None:
    return await db.get(Transaction, transaction_id, populate_existing=True)


async def find_by_provider_id(provider_transaction_id: str, db: AsyncSession) -> Transaction | None:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.provider_transaction_id == provider_transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def update_status(
    transaction_id: int,
    status: str,
    db: AsyncSession,
    error_message: str | None = None,
    commit: bool = True,
) -> Transaction:
    """processed_at is stamped only when the row reaches completed or failed."""
    try:
        status = TransactionStatusEnum(status).value
    except ValueError:
        raise InvalidInputError(f"Unknown transaction status: {status!r}")

    txn = await find_by_id(transaction_id, db)
    if txn is None:
        raise NotFoundError("Transaction not found")
    txn.status = status
    txn.error_message = error_message
    if status in PROCESSED_STATUSES:
        txn.processed_at = utcnow()

    if commit:
        await db.commit()
    else:
        await db.flush()
    return txn


async def get_by_user(user_id: int, db: AsyncSession, limit: int = 20, offset: int = 0) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars())


async def get_by_ride(ride_id: int, db: AsyncSession) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.ride_id == ride_id)
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
    )
    return list(result.scalars())


# ---------------------------------------------------------------------------
# Constructors for the usual events
# ---------------------------------------------------------------------------

async def create_ride_payment(
    user_id: int,
    ride_id: int,
    amount,
    provider: str,
    db: AsyncSession,
    payment_method_id: int | None = None,
    commit: bool = True,
) -> Transaction:
    return await create(
        user_id, T.payment, amount, db, commit=commit,
        ride_id=ride_id, provider=provider, payment_method_id=payment_method_id,
        description=f"Ride #{ride_id} payment",
    )


async def create_topup(
    user_id: int,
    wallet_id: int,
    amount,
    provider: str,
    db: AsyncSession,
    provider_transaction_id: str | None = None,
    commit: bool = True,
    payment_method_id: int | None = None,
) -> Transaction:
    return await create(
        user_id, T.topup, amount, db, commit=commit,
        wallet_id=wallet_id, provider=provider, provider_transaction_id=provider_transaction_id,
        payment_method_id=payment_method_id,
        description="Wallet top-up",
    )


async def create_tip(user_id: int, ride_id: int, amount, db: AsyncSession, commit: bool = True) -> Transaction:
    return await create(
        user_id, T.tip, amount, db, commit=commit,
        ride_id=ride_id, provider="wallet", description=f"Ride #{ride_id} tip",
    )


async def create_commission(
    driver_id: int,
    ride_id: int,
    amount,
    db: AsyncSession,
    commit: bool = True,
    status: TransactionStatusEnum = TransactionStatusEnum.pending,
) -> Transaction:
    # stored negative: it is deducted from the driver's share
    return await create(
        driver_id, T.commission, -to_money(amount), db, commit=commit,
        ride_id=ride_id, provider="platform", status=status,
        description=f"TripSalama commission ride #{ride_id}",
    )


async def create_refund(
    user_id: int, ride_id: int, amount, db: AsyncSession, reason: str = "", commit: bool = True
) -> Transaction:
    return await create(
        user_id, T.refund, amount, db, commit=commit,
        ride_id=ride_id, provider="platform", description=f"Refund: {reason}",
    )


async def create_promo_discount(
    user_id: int, ride_id: int, amount, promo_code: str, db: AsyncSession, commit: bool = True
) -> Transaction:
    return await create(
        user_id, T.promo, amount, db, commit=commit,
        ride_id=ride_id, provider="promo", description=f"Promo code discount: {promo_code}",
        meta={"promo_code": promo_code},
    )


async def create_referral_bonus(
    user_id: int, amount, referred_user_id: int, db: AsyncSession, commit: bool = True
) -> Transaction:
    return await create(
        user_id, T.referral, amount, db, commit=commit,
        provider="referral", description="Referral bonus",
        meta={"referred_user_id": referred_user_id},
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

async def get_stats(db: AsyncSession, user_id: int | None = None, period: str = "month") -> list[dict]:
    stmt = select(
        Transaction.type,
        Transaction.status,
        func.count(Transaction.id),
        func.sum(Transaction.amount),
    )
    since = rolling_start(period)
    if since is not None:
        stmt = stmt.where(Transaction.created_at >= since)
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    result = await db.execute(stmt.group_by(Transaction.type, Transaction.status))
    return [
        {"type": type_, "status": status, "count": count, "total_amount": to_money(total or 0)}
        for type_, status, count, total in result.all()
    ]


async def get_driver_earnings(driver_id: int, db: AsyncSession, period: str = "month") -> dict:
    stmt = select(
        func.count(Ride.id),
        func.coalesce(func.sum(Ride.driver_earnings), 0),
        func.coalesce(func.sum(Ride.tip_amount), 0),
        func.coalesce(func.sum(Ride.commission_amount), 0),
    ).where(Ride.driver_id == driver_id, Ride.status == RideStatusEnum.completed.value)
    since = rolling_start(period)
    if since is not None:
        stmt = stmt.where(Ride.completed_at >= since)

    ride_count, earnings, tips, commission = (await db.execute(stmt)).one()
    return {
        "ride_count": int(ride_count),
        "total_earnings": to_money(earnings or 0),
        "total_tips": to_money(tips or 0),
        "total_commission": to_money(commission or 0),
    }
