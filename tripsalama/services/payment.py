"""
Card payment provider adapter: direct charges for wallet top-ups, payment
intents confirmed later through the webhook, and saved card lookups.

Without a ``psp_api_key`` the adapter simulates a provider where every
charge and every intent succeeds.
"""
import asyncio
import logging
import uuid
from datetime import date
from decimal import Decimal

import httpx

from tripsalama.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

INTENT_SUCCEEDED = "succeeded"


class PSPError(Exception):
    pass


def _minor_units(amount: Decimal) -> int:
    # centimes
    return int(amount * 100)


async def _request(method: str, path: str, data: dict | None = None, idempotency_key: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {settings.psp_api_key}"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    async with httpx.AsyncClient(base_url=settings.psp_base_url, timeout=settings.psp_timeout_seconds) as client:
        resp = await client.request(method, path, headers=headers, data=data)
    if resp.status_code >= 400:
        raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
    return resp.json()


async def charge(
    user_id: int,
    amount: Decimal,
    payment_method: str,
    idempotency_key: str,
) -> dict:
    """
    Sends the charge to the PSP, retrying with exponential backoff up to
    ``psp_max_attempts`` times.
    Returns: {"psp_ref": str | None, "status": "SUCCESS"/"FAILED"}
    """
    attempts = settings.psp_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = await _call_psp(user_id, amount, payment_method, idempotency_key)
            logger.info("PSP charge success: ref=%s amount=%s %s", result["psp_ref"], amount, settings.currency)
            return result
        except (PSPError, httpx.HTTPError) as e:
            if attempt == attempts:
                logger.error("PSP charge failed after %d attempts: %s", attempts, e)
                break
            logger.warning("PSP charge attempt %d failed: %s", attempt, e)
            await asyncio.sleep(2 ** attempt)

    return {"psp_ref": None, "status": "FAILED"}


async def _call_psp(user_id: int, amount: Decimal, payment_method: str, idempotency_key: str) -> dict:
    if amount <= 0:
        raise PSPError("Amount must be positive")
    if not settings.psp_api_key:
        return _simulated_charge()

    body = await _request(
        "POST",
        "/charges",
        idempotency_key=idempotency_key,
        data={
            "amount": _minor_units(amount),
            "currency": settings.currency.lower(),
            "source": payment_method,
            "metadata[user_id]": str(user_id),
        },
    )
    return {"psp_ref": body["id"], "status": "SUCCESS"}


def _simulated_charge() -> dict:
    """Development mode: no PSP key configured, every charge succeeds."""
    return {
        "psp_ref": f"PSP-{uuid.uuid4().hex[:12].upper()}",
        "status": "SUCCESS",
    }


async def create_intent(amount: Decimal, metadata: dict, idempotency_key: str | None = None) -> dict:
    """
    Opens a payment intent the client app confirms with the PSP.
    Returns: {"id": str, "client_secret": str, "status": str}
    Raises PSPError (or httpx.HTTPError) when the PSP refuses or is unreachable.
    """
    if amount <= 0:
        raise PSPError("Amount must be positive")
    if not settings.psp_api_key:
        intent_id = f"pi_sim_{uuid.uuid4().hex[:16]}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:12]}", "status": "requires_confirmation"}

    data = {
        "amount": _minor_units(amount),
        "currency": settings.currency.lower(),
        "automatic_payment_methods[enabled]": "true",
    }
    for key, value in metadata.items():
        data[f"metadata[{key}]"] = str(value)
    body = await _request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
    logger.info("PSP intent created: id=%s amount=%s %s", body["id"], amount, settings.currency)
    return {"id": body["id"], "client_secret": body["client_secret"], "status": body["status"]}


async def retrieve_intent(intent_id: str) -> dict:
    """Returns: {"id": str, "status": str, "error": str | None}"""
    if not settings.psp_api_key:
        return {"id": intent_id, "status": INTENT_SUCCEEDED, "error": None}
    body = await _request("GET", f"/payment_intents/{intent_id}")
    error = (body.get("last_payment_error") or {}).get("message")
    return {"id": body["id"], "status": body["status"], "error": error}


async def retrieve_payment_method(provider_payment_method_id: str) -> dict:
    """Card display details: {"brand", "last4", "exp_month", "exp_year"}."""
    if not settings.psp_api_key:
        return {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": date.today().year + 3}
    body = await _request("GET", f"/payment_methods/{provider_payment_method_id}")
    card = body.get("card") or {}
    return {
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }
