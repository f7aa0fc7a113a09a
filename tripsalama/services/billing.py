"""
Ride payments, top-ups, tips and refunds.

Each flow runs inside one ``atomic`` block: the ride row, the wallet
balances and the ledger rows either all change or none do.

A ride's amount due is its final price less any promo discount. Commission
and driver earnings are always computed on the full final price; the
platform funds the discount.
"""
import logging
import uuid
from decimal import Decimal

import httpx
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import atomic, utcnow
from tripsalama.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError, TransientError
from tripsalama.models.promo import PromoCode
from tripsalama.models.ride import Ride
from tripsalama.models.transaction import Transaction
from tripsalama.schemas.schemas import RideStatusEnum, TransactionStatusEnum, TransactionTypeEnum
from tripsalama.services import payment, payment_methods, referrals, rides, transactions, wallet
from tripsalama.services.money import commission_split, positive_amount, to_money

logger = logging.getLogger(__name__)
settings = get_settings()

T = TransactionTypeEnum
S = TransactionStatusEnum
UNPAID, PAID, REFUNDED = "unpaid", "paid", "refunded"


def amount_due(ride: Ride) -> Decimal:
    return to_money(ride.final_price) - to_money(ride.discount_amount or 0)


async def _payable_ride(ride_id: int, db: AsyncSession) -> Ride:
    ride = await rides.require_ride(ride_id, db)
    if ride.status != RideStatusEnum.completed.value:
        raise ConflictError("Only completed rides can be paid")
    if ride.driver_id is None:
        raise ConflictError("Ride has no driver")
    if ride.payment_status != UNPAID:
        raise ConflictError("Ride is already paid")
    return ride


def _check_amount(ride: Ride, amount) -> Decimal:
    amount = to_money(amount)
    due = amount_due(ride)
    if amount != due:
        raise InvalidInputError(f"Amount must equal the fare due: {due} {settings.currency}")
    return amount


async def _mark_paid(ride_id: int, commission, earnings, db: AsyncSession) -> None:
    result = await db.execute(
        update(Ride)
        .where(Ride.id == ride_id, Ride.payment_status == UNPAID)
        .values(
            payment_status=PAID,
            commission_amount=commission,
            driver_earnings=earnings,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError("Ride is already paid")


async def _record_discount(passenger_id: int, ride_id: int, promo_code_id: int | None, discount, db: AsyncSession) -> None:
    """Completed promo row for the passenger; moves no wallet."""
    if not discount or promo_code_id is None:
        return
    promo = await db.get(PromoCode, promo_code_id)
    row = await transactions.create_promo_discount(passenger_id, ride_id, discount, promo.code, db, commit=False)
    await transactions.update_status(row.id, S.completed.value, db, commit=False)


async def pay_ride_with_wallet(passenger_id: int, ride_id: int, amount, db: AsyncSession) -> dict:
    """
    Passenger pays a completed ride from their wallet. The driver's wallet
    receives the fare minus the platform commission.
    """
    ride = await _payable_ride(ride_id, db)
    if ride.passenger_id != passenger_id:
        raise ForbiddenError("Only the passenger can pay for this ride")
    amount = _check_amount(ride, amount)
    driver_id = ride.driver_id
    commission, earnings = commission_split(to_money(ride.final_price))
    promo_code_id, discount = ride.promo_code_id, ride.discount_amount

    await wallet.get_or_create(driver_id, db)
    payment_row = transactions.build(
        passenger_id, T.payment, amount, ride_id=ride_id, provider="wallet",
        status=S.pending if amount > 0 else S.completed,
        description=f"Ride #{ride_id} payment",
    )
    earning_row = transactions.build(
        driver_id, T.earning, earnings, ride_id=ride_id, provider="wallet",
        description=f"Ride #{ride_id} earnings",
    )
    async with atomic(db):
        await _mark_paid(ride_id, commission, earnings, db)
        if amount > 0:
            await wallet.apply_debit(payment_row, db)
        else:
            db.add(payment_row)
            await db.flush()
        await wallet.apply_credit(earning_row, db)
        await transactions.create_commission(driver_id, ride_id, commission, db, commit=False, status=S.completed)
        await _record_discount(passenger_id, ride_id, promo_code_id, discount, db)

    logger.info("Ride %s paid by wallet: amount=%s commission=%s", ride_id, amount, commission)
    await referrals.complete_referral(passenger_id, db)
    return {
        "transaction_id": payment_row.id,
        "amount": amount,
        "commission": commission,
        "driver_earnings": earnings,
        "balance": await wallet.get_balance(passenger_id, db),
    }


async def pay_ride_with_cash(ride_id: int, amount, confirmed_by: int, db: AsyncSession) -> dict:
    """Driver confirms the passenger paid in cash. No wallet moves."""
    ride = await _payable_ride(ride_id, db)
    if confirmed_by != ride.driver_id:
        raise ForbiddenError("Only the ride's driver can confirm a cash payment")
    amount = _check_amount(ride, amount)
    passenger_id, driver_id = ride.passenger_id, ride.driver_id
    commission, earnings = commission_split(to_money(ride.final_price))
    promo_code_id, discount = ride.promo_code_id, ride.discount_amount

    async with atomic(db):
        await _mark_paid(ride_id, commission, earnings, db)
        row = await transactions.create(
            passenger_id, T.payment, amount, db, commit=False,
            ride_id=ride_id, provider="cash", status=S.completed,
            description=f"Ride #{ride_id} cash payment",
            meta={"confirmed_by": confirmed_by},
        )
        await transactions.create_commission(driver_id, ride_id, commission, db, commit=False, status=S.completed)
        await _record_discount(passenger_id, ride_id, promo_code_id, discount, db)

    logger.info("Ride %s paid in cash: amount=%s confirmed_by=%s", ride_id, amount, confirmed_by)
    await referrals.complete_referral(passenger_id, db)
    return {"transaction_id": row.id, "amount": amount, "commission": commission, "driver_earnings": earnings}


def _topup_amount(amount) -> Decimal:
    amount = positive_amount(amount)
    if amount not in {to_money(a) for a in settings.topup_amounts}:
        raise InvalidInputError(f"Top-up amount must be one of {settings.topup_amounts}")
    return amount


async def topup_wallet(
    user_id: int,
    amount,
    db: AsyncSession,
    payment_method: str = "card",
    idempotency_key: str | None = None,
    payment_method_id: int | None = None,
) -> dict:
    """
    Charges the card and credits the wallet. ``payment_method_id`` picks a
    saved card; without it the user's default card is charged when there is
    one, else ``payment_method`` is sent as the source.
    """
    amount = _topup_amount(amount)
    if payment_method_id is not None:
        card = await payment_methods.get_owned(user_id, payment_method_id, db)
    else:
        card = await payment_methods.get_default(user_id, db)
    if card is not None:
        payment_method, payment_method_id = card.provider_payment_method_id, card.id

    user_wallet = await wallet.get_or_create(user_id, db)
    row = await transactions.create_topup(user_id, user_wallet.id, amount, "psp", db, payment_method_id=payment_method_id)
    row_id = row.id

    result = await payment.charge(user_id, amount, payment_method, idempotency_key or uuid.uuid4().hex)
    if result["status"] != "SUCCESS":
        await transactions.update_status(row_id, S.failed.value, db, error_message="PSP charge failed")
        raise TransientError("Payment provider unavailable, try again later")

    try:
        row = await transactions.find_by_id(row_id, db)
        row.provider_transaction_id = result["psp_ref"]
        async with atomic(db):
            await wallet.apply_credit(row, db)
    except Exception as e:
        # the card was charged but the wallet was not credited
        logger.error(
            "Top-up %s charged (psp_ref=%s) but wallet credit failed: %s", row_id, result["psp_ref"], e
        )
        failed = await transactions.update_status(
            row_id, S.failed.value, db, error_message=f"Wallet credit failed after charge {result['psp_ref']}"
        )
        failed.provider_transaction_id = result["psp_ref"]
        await db.commit()
        raise

    return {"transaction_id": row_id, "amount": amount, "balance": await wallet.get_balance(user_id, db)}


async def add_tip(passenger_id: int, ride_id: int, amount, db: AsyncSession) -> dict:
    """
    The whole tip goes to the driver. All tips on a ride together are capped
    at ``max_tip_ratio`` of the fare.
    """
    amount = positive_amount(amount)
    ride = await rides.require_ride(ride_id, db)
    if ride.passenger_id != passenger_id:
        raise ForbiddenError("Only the passenger can tip this ride")
    if ride.status != RideStatusEnum.completed.value or ride.driver_id is None:
        raise ConflictError("Only completed rides can be tipped")
    fare = ride.final_price if ride.final_price is not None else ride.estimated_price
    if fare is None:
        raise InvalidInputError("Ride has no fare to tip on")
    cap = to_money(to_money(fare) * Decimal(str(settings.max_tip_ratio)))
    already = to_money(ride.tip_amount or 0)
    if already + amount > cap:
        raise InvalidInputError(f"Tips on this ride cannot exceed {cap} {settings.currency}")
    driver_id = ride.driver_id

    await wallet.get_or_create(driver_id, db)
    out_row = transactions.build(passenger_id, T.tip, amount, ride_id=ride_id, provider="wallet", description=f"Ride #{ride_id} tip")
    in_row = transactions.build(driver_id, T.tip, amount, ride_id=ride_id, provider="wallet", description=f"Ride #{ride_id} tip received")
    async with atomic(db):
        # cap enforced in the UPDATE as well
        result = await db.execute(
            update(Ride)
            .where(Ride.id == ride_id, func.coalesce(Ride.tip_amount, 0) + amount <= cap)
            .values(tip_amount=func.coalesce(Ride.tip_amount, 0) + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidInputError(f"Tips on this ride cannot exceed {cap} {settings.currency}")
        await wallet.apply_debit(out_row, db)
        await wallet.apply_credit(in_row, db)

    logger.info("Tip on ride %s: %s", ride_id, amount)
    return {"transaction_id": out_row.id, "amount": amount, "balance": await wallet.get_balance(passenger_id, db)}


async def refund_ride(ride_id: int, amount, db: AsyncSession, reason: str = "") -> Transaction:
    """
    Credit the passenger's wallet and flag the ride as refunded. Only a paid
    ride can be refunded, once, for at most what the passenger paid.
    """
    amount = positive_amount(amount)
    ride = await rides.require_ride(ride_id, db)
    if ride.payment_status == REFUNDED:
        raise ConflictError("Ride is already refunded")
    if ride.payment_status != PAID:
        raise ConflictError("Only paid rides can be refunded")
    paid = amount_due(ride)
    if amount > paid:
        raise InvalidInputError(f"Refund cannot exceed the amount paid: {paid} {settings.currency}")
    passenger_id = ride.passenger_id

    await wallet.get_or_create(passenger_id, db)
    row = transactions.build(
        passenger_id, T.refund, amount, ride_id=ride_id, provider="platform",
        description=f"Refund: {reason}", meta={"reason": reason} if reason else None,
    )
    async with atomic(db):
        result = await db.execute(
            update(Ride)
            .where(Ride.id == ride_id, Ride.payment_status == PAID)
            .values(payment_status=REFUNDED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("Ride is already refunded")
        await wallet.apply_credit(row, db)

    logger.info("Ride %s refunded %s (%s)", ride_id, amount, reason or "no reason")
    return row


# ---------------------------------------------------------------------------
# Card payments through PSP payment intents
# ---------------------------------------------------------------------------

async def _open_intent(amount: Decimal, metadata: dict, idempotency_key: str | None) -> dict:
    try:
        return await payment.create_intent(amount, metadata, idempotency_key)
    except (payment.PSPError, httpx.HTTPError) as e:
        logger.error("PSP intent creation failed: %s", e)
        raise TransientError("Payment provider unavailable, try again later")


async def create_ride_payment_intent(
    passenger_id: int, ride_id: int, db: AsyncSession, idempotency_key: str | None = None
) -> dict:
    """Open a card payment for the amount due on a ride; settled by ``confirm_payment``."""
    ride = await _payable_ride(ride_id, db)
    if ride.passenger_id != passenger_id:
        raise ForbiddenError("Only the passenger can pay for this ride")
    due = amount_due(ride)
    if due <= 0:
        raise InvalidInputError("Nothing to charge on this ride")

    intent = await _open_intent(due, {"user_id": passenger_id, "ride_id": ride_id, "type": "payment"}, idempotency_key)
    row = await transactions.create(
        passenger_id, T.payment, due, db,
        ride_id=ride_id, provider="psp", provider_transaction_id=intent["id"],
        description=f"Ride #{ride_id} card payment",
    )
    logger.info("Payment intent %s opened for ride %s: amount=%s", intent["id"], ride_id, due)
    return {"transaction_id": row.id, "payment_intent_id": intent["id"], "client_secret": intent["client_secret"], "amount": due}


async def create_topup_intent(user_id: int, amount, db: AsyncSession, idempotency_key: str | None = None) -> dict:
    """Open a card top-up; the wallet is credited by ``confirm_payment``."""
    amount = _topup_amount(amount)
    user_wallet = await wallet.get_or_create(user_id, db)
    intent = await _open_intent(
        amount, {"user_id": user_id, "wallet_id": user_wallet.id, "type": "topup"}, idempotency_key
    )
    row = await transactions.create_topup(user_id, user_wallet.id, amount, "psp", db, provider_transaction_id=intent["id"])
    logger.info("Top-up intent %s opened for user %s: amount=%s", intent["id"], user_id, amount)
    return {"transaction_id": row.id, "payment_intent_id": intent["id"], "client_secret": intent["client_secret"], "amount": amount}


async def _settle_card_payment(row: Transaction, db: AsyncSession) -> None:
    ride = await rides.require_ride(row.ride_id, db)
    if ride.driver_id is None:
        raise ConflictError("Ride has no driver")
    row_id, ride_id, passenger_id, driver_id = row.id, ride.id, ride.passenger_id, ride.driver_id
    promo_code_id, discount = ride.promo_code_id, ride.discount_amount
    commission, earnings = commission_split(to_money(ride.final_price))

    await wallet.get_or_create(driver_id, db)
    earning_row = transactions.build(
        driver_id, T.earning, earnings, ride_id=ride_id, provider="wallet",
        description=f"Ride #{ride_id} earnings",
    )
    async with atomic(db):
        await _mark_paid(ride_id, commission, earnings, db)
        await transactions.update_status(row_id, S.completed.value, db, commit=False)
        await wallet.apply_credit(earning_row, db)
        await transactions.create_commission(driver_id, ride_id, commission, db, commit=False, status=S.completed)
        await _record_discount(passenger_id, ride_id, promo_code_id, discount, db)
    await referrals.complete_referral(passenger_id, db)


async def confirm_payment(payment_intent_id: str, db: AsyncSession) -> dict:
    """
    Settle the pending row behind a PSP intent once the PSP reports it
    succeeded: a top-up credits the wallet, a ride payment marks the ride
    paid and pays the driver. Rows already settled are left untouched, so
    replayed notifications are harmless.
    """
    row = await transactions.find_by_provider_id(payment_intent_id, db)
    if row is None:
        raise NotFoundError("Transaction not found")
    row_id = row.id
    if row.status != S.pending.value:
        return {"transaction_id": row_id, "status": row.status}

    try:
        intent = await payment.retrieve_intent(payment_intent_id)
    except (payment.PSPError, httpx.HTTPError) as e:
        logger.error("PSP intent lookup failed for %s: %s", payment_intent_id, e)
        raise TransientError("Payment provider unavailable, try again later")
    if intent["status"] != payment.INTENT_SUCCEEDED:
        return {"transaction_id": row_id, "status": intent["status"]}

    try:
        if row.type == T.topup.value:
            async with atomic(db):
                await wallet.apply_credit(row, db)
        else:
            await _settle_card_payment(row, db)
    except ConflictError as e:
        # the PSP captured the money but the ride was settled some other way
        logger.error("Intent %s succeeded but could not be settled: %s", payment_intent_id, e.detail)
        await transactions.update_status(row_id, S.failed.value, db, error_message=e.detail)
        raise

    logger.info("Intent %s settled (transaction %s)", payment_intent_id, row_id)
    return {"transaction_id": row_id, "status": S.completed.value}


async def fail_payment(payment_intent_id: str, db: AsyncSession, error_message: str | None = None) -> Transaction | None:
    """Mark the pending row behind a failed intent as failed. Unknown intents are ignored."""
    row = await transactions.find_by_provider_id(payment_intent_id, db)
    if row is None:
        logger.warning("Payment failure for unknown intent %s", payment_intent_id)
        return None
    if row.status != S.pending.value:
        return row
    logger.warning("Intent %s failed: %s", payment_intent_id, error_message)
    return await transactions.update_status(row.id, S.failed.value, db, error_message=error_message or "Payment failed")
