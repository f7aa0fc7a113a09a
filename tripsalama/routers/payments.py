"""
Payments router: wallet view, ledger history, ride payment (wallet or cash),
top-ups, tips, refunds, card payment intents and saved cards.

Top-up, wallet payment and tip accept an ``Idempotency-Key`` header; a
repeated call with the same key replays the first response.
"""
import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.errors import ForbiddenError, InvalidInputError
from tripsalama.middleware.auth import (
    get_current_admin,
    get_current_driver,
    get_current_passenger,
    get_current_user,
    get_current_user_id,
)
from tripsalama.middleware.idempotency import check_idempotency, store_idempotency_result
from tripsalama.redis_client import invalidate_ride
from tripsalama.schemas.schemas import (
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentMethodCreateRequest,
    PaymentMethodResponse,
    PaymentResponse,
    RefundRequest,
    RidePaymentRequest,
    RoleEnum,
    TipRequest,
    TopupRequest,
    TransactionResponse,
    WalletResponse,
)
from tripsalama.services import billing, payment_methods, wallet

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    await wallet.get_or_create(user_id, db)
    return WalletResponse(**await wallet.get_stats(user_id, db))


@router.get("/wallet/reconcile")
async def reconcile_wallet(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return await wallet.reconcile(user_id, db)


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    limit: int = 20,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    rows = await wallet.get_transaction_history(user_id, db, limit=min(limit, 100), offset=max(offset, 0))
    return [TransactionResponse.model_validate(r) for r in rows]


@router.post("/rides/wallet", response_model=PaymentResponse)
async def pay_with_wallet(
    payload: RidePaymentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    passenger_id: int = Depends(get_current_passenger),
):
    cached = await check_idempotency(request, passenger_id)
    if cached:
        return cached

    result = await billing.pay_ride_with_wallet(passenger_id, payload.ride_id, payload.amount, db)
    await invalidate_ride(payload.ride_id)
    resp = PaymentResponse(**result)
    await store_idempotency_result(request, passenger_id, 200, resp.model_dump(mode="json"))
    return resp


@router.post("/rides/cash", response_model=PaymentResponse)
async def confirm_cash(
    payload: RidePaymentRequest,
    db: AsyncSession = Depends(get_db),
    driver_id: int = Depends(get_current_driver),
):
    result = await billing.pay_ride_with_cash(payload.ride_id, payload.amount, driver_id, db)
    await invalidate_ride(payload.ride_id)
    return PaymentResponse(**result)


@router.post("/topup", response_model=PaymentResponse)
async def topup(
    payload: TopupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    cached = await check_idempotency(request, user_id)
    if cached:
        return cached

    result = await billing.topup_wallet(
        user_id,
        payload.amount,
        db,
        idempotency_key=request.headers.get("Idempotency-Key"),
        payment_method_id=payload.payment_method_id,
    )
    resp = PaymentResponse(**result)
    await store_idempotency_result(request, user_id, 200, resp.model_dump(mode="json"))
    return resp


@router.post("/tip", response_model=PaymentResponse)
async def tip(
    payload: TipRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    passenger_id: int = Depends(get_current_passenger),
):
    cached = await check_idempotency(request, passenger_id)
    if cached:
        return cached

    result = await billing.add_tip(passenger_id, payload.ride_id, payload.amount, db)
    await invalidate_ride(payload.ride_id)
    resp = PaymentResponse(**result)
    await store_idempotency_result(request, passenger_id, 200, resp.model_dump(mode="json"))
    return resp


@router.post("/refund", response_model=PaymentResponse)
async def refund(
    payload: RefundRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: int = Depends(get_current_admin),
):
    row = await billing.refund_ride(payload.ride_id, payload.amount, db, reason=payload.reason)
    await invalidate_ride(payload.ride_id)
    logger.info("Refund on ride %s issued by admin=%s", payload.ride_id, admin_id)
    return PaymentResponse(transaction_id=row.id, amount=row.amount)


@router.post("/intents", status_code=status.HTTP_201_CREATED, response_model=PaymentIntentResponse)
async def create_intent(
    payload: PaymentIntentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    token_data: dict = Depends(get_current_user),
):
    """Card payment: ``ride_id`` pays a completed ride, ``amount`` alone tops up the wallet."""
    user_id = int(token_data["sub"])
    key = request.headers.get("Idempotency-Key")
    if payload.ride_id is not None:
        if token_data.get("role") != RoleEnum.passenger.value:
            raise ForbiddenError("Passenger access required")
        result = await billing.create_ride_payment_intent(user_id, payload.ride_id, db, idempotency_key=key)
    elif payload.amount is not None:
        result = await billing.create_topup_intent(user_id, payload.amount, db, idempotency_key=key)
    else:
        raise InvalidInputError("Either ride_id or amount is required")
    return PaymentIntentResponse(**result)


@router.get("/methods", response_model=list[PaymentMethodResponse])
async def list_methods(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return [PaymentMethodResponse.model_validate(m) for m in await payment_methods.list_for_user(user_id, db)]


@router.post("/methods", status_code=status.HTTP_201_CREATED, response_model=PaymentMethodResponse)
async def add_method(
    payload: PaymentMethodCreateRequest,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    method = await payment_methods.add(user_id, payload.payment_method_id, db)
    return PaymentMethodResponse.model_validate(method)


@router.put("/methods/{method_id}/default", response_model=PaymentMethodResponse)
async def set_default_method(
    method_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    method = await payment_methods.set_default(user_id, method_id, db)
    return PaymentMethodResponse.model_validate(method)


@router.delete("/methods/{method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_method(
    method_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    await payment_methods.remove(user_id, method_id, db)
