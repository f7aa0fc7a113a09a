"""
Wallet balances.

Rules:
  * the only way to lower a balance is one conditional UPDATE
    (``balance >= amount``), so a balance can never go negative;
  * every balance change posts exactly one transaction row carrying the
    signed ``wallet_delta``, inside the same database transaction, so the
    balance can always be checked against the ledger (``reconcile``).

``apply_credit`` / ``apply_debit`` do not commit and are meant to be composed
inside ``database.atomic``; ``credit`` / ``debit`` / ``transfer`` are the
self-contained entry points.
"""
import logging
from decimal import Decimal

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import atomic, utcnow
from tripsalama.errors import InsufficientFundsError, InvalidInputError, NotFoundError
from tripsalama.models.transaction import Transaction
from tripsalama.models.wallet import Wallet
from tripsalama.schemas.schemas import TransactionStatusEnum, TransactionTypeEnum
from tripsalama.services import transactions
from tripsalama.services.money import positive_amount, to_money

logger = logging.getLogger(__name__)
settings = get_settings()

COMPLETED = TransactionStatusEnum.completed.value


async def find_by_user_id(user_id: int, db: AsyncSession) -> Wallet | None:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id, Wallet.is_active.is_(True))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_id(wallet_id: int, db: AsyncSession) -> Wallet | None:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.id == wallet_id, Wallet.is_active.is_(True))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create(user_id: int, db: AsyncSession, currency: str | None = None) -> Wallet:
    wallet = await find_by_user_id(user_id, db)
    if wallet is not None:
        return wallet

    db.add(Wallet(user_id=user_id, balance=Decimal("0.00"), currency=currency or settings.currency))
    try:
        await db.commit()
    except IntegrityError:
        # either a concurrent insert won or the user's wallet is deactivated
        await db.rollback()
    wallet = await find_by_user_id(user_id, db)
    if wallet is None:
        raise NotFoundError("Wallet is not active")
    return wallet


async def _post(entry: Transaction, wallet: Wallet, delta: Decimal, db: AsyncSession) -> Transaction:
    entry.wallet_id = wallet.id
    entry.wallet_delta = delta
    entry.currency = wallet.currency
    entry.status = COMPLETED
    entry.processed_at = utcnow()
    db.add(entry)
    await db.flush()
    return entry


async def apply_credit(entry: Transaction, db: AsyncSession) -> Transaction:
    """Add ``entry.amount`` to the owner's wallet and post ``entry``. No commit."""
    amount = positive_amount(entry.amount)
    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == entry.user_id, Wallet.is_active.is_(True))
        .values(balance=Wallet.balance + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Wallet not found")
    wallet = await find_by_user_id(entry.user_id, db)
    logger.info("Wallet credit user=%s amount=%s type=%s", entry.user_id, amount, entry.type)
    return await _post(entry, wallet, amount, db)


async def apply_debit(entry: Transaction, db: AsyncSession) -> Transaction:
    """
    Subtract ``entry.amount`` only if the balance covers it, then post
    ``entry``. No commit. Raises InsufficientFundsError when the guard
    matched no row.
    """
    amount = positive_amount(entry.amount)
    result = await db.execute(
        update(Wallet)
        .where(
            Wallet.user_id == entry.user_id,
            Wallet.is_active.is_(True),
            Wallet.balance >= amount,
        )
        .values(balance=Wallet.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    wallet = await find_by_user_id(entry.user_id, db)
    if result.rowcount == 0:
        if wallet is None:
            raise NotFoundError("Wallet not found")
        logger.warning(
            "Insufficient funds user=%s balance=%s amount=%s", entry.user_id, wallet.balance, amount
        )
        raise InsufficientFundsError("Insufficient wallet balance")
    logger.info("Wallet debit user=%s amount=%s type=%s", entry.user_id, amount, entry.type)
    return await _post(entry, wallet, -amount, db)


async def credit(
    user_id: int,
    amount,
    db: AsyncSession,
    kind: TransactionTypeEnum = TransactionTypeEnum.topup,
    ride_id: int | None = None,
    description: str | None = None,
    provider: str = "wallet",
    meta: dict | None = None,
) -> Transaction:
    amount = positive_amount(amount)
    await get_or_create(user_id, db)
    entry = transactions.build(
        user_id, kind, amount, ride_id=ride_id, description=description, provider=provider, meta=meta
    )
    async with atomic(db):
        await apply_credit(entry, db)
    return entry


async def debit(
    user_id: int,
    amount,
    db: AsyncSession,
    kind: TransactionTypeEnum = TransactionTypeEnum.payment,
    ride_id: int | None = None,
    description: str | None = None,
    provider: str = "wallet",
    meta: dict | None = None,
) -> Transaction:
    amount = positive_amount(amount)
    entry = transactions.build(
        user_id, kind, amount, ride_id=ride_id, description=description, provider=provider, meta=meta
    )
    async with atomic(db):
        await apply_debit(entry, db)
    return entry


async def transfer(
    from_user_id: int,
    to_user_id: int,
    amount,
    db: AsyncSession,
    kind: TransactionTypeEnum = TransactionTypeEnum.payment,
    ride_id: int | None = None,
    description: str | None = None,
    in_kind: TransactionTypeEnum = TransactionTypeEnum.earning,
) -> tuple[Transaction, Transaction]:
    """
    Debit one wallet and credit another; either both legs land or neither.
    The outgoing leg is recorded as ``kind``, the incoming one as ``in_kind``.
    """
    amount = positive_amount(amount)
    if from_user_id == to_user_id:
        raise InvalidInputError("Cannot transfer to the same wallet")
    await get_or_create(to_user_id, db)

    out_entry = transactions.build(from_user_id, kind, amount, ride_id=ride_id, description=description, provider="wallet")
    in_entry = transactions.build(to_user_id, in_kind, amount, ride_id=ride_id, description=description, provider="wallet")
    async with atomic(db):
        await apply_debit(out_entry, db)
        await apply_credit(in_entry, db)
    return out_entry, in_entry


async def has_sufficient_balance(user_id: int, amount, db: AsyncSession) -> bool:
    wallet = await find_by_user_id(user_id, db)
    return wallet is not None and wallet.balance >= to_money(amount)


async def get_balance(user_id: int, db: AsyncSession) -> Decimal:
    wallet = await find_by_user_id(user_id, db)
    return to_money(wallet.balance) if wallet else Decimal("0.00")


async def get_transaction_history(user_id: int, db: AsyncSession, limit: int = 20, offset: int = 0) -> list[Transaction]:
    return await transactions.get_by_user(user_id, db, limit=limit, offset=offset)


def _completed_total(kind: TransactionTypeEnum):
    return func.coalesce(
        func.sum(
            case(
                (and_(Transaction.type == kind.value, Transaction.status == COMPLETED), Transaction.amount),
                else_=0,
            )
        ),
        0,
    )


async def get_stats(user_id: int, db: AsyncSession) -> dict:
    wallet = await find_by_user_id(user_id, db)
    T = TransactionTypeEnum
    result = await db.execute(
        select(
            _completed_total(T.payment),
            _completed_total(T.topup),
            _completed_total(T.tip),
            _completed_total(T.promo),
            func.count(case((and_(Transaction.type == T.payment.value, Transaction.status == COMPLETED), 1))),
        ).where(Transaction.user_id == user_id)
    )
    spent, topup, tips, promo, payment_count = result.one()
    return {
        "balance": to_money(wallet.balance) if wallet else Decimal("0.00"),
        "currency": wallet.currency if wallet else settings.currency,
        "total_spent": to_money(spent or 0),
        "total_topup": to_money(topup or 0),
        "total_tips": to_money(tips or 0),
        "total_promo": to_money(promo or 0),
        "payment_count": int(payment_count or 0),
    }


async def reconcile(user_id: int, db: AsyncSession) -> dict:
    """Compare the stored balance with the sum of posted ledger deltas."""
    wallet = await find_by_user_id(user_id, db)
    if wallet is None:
        raise NotFoundError("Wallet not found")
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.wallet_delta), 0)).where(
            Transaction.wallet_id == wallet.id,
            Transaction.status == COMPLETED,
        )
    )
    ledger_total = to_money(result.scalar_one() or 0)
    balance = to_money(wallet.balance)
    if balance != ledger_total:
        logger.error("Wallet %s out of balance: stored=%s ledger=%s", wallet.id, balance, ledger_total)
    return {"balance": balance, "ledger_total": ledger_total, "consistent": balance == ledger_total}
