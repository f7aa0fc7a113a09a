"""
Payment provider adapter: retry with exponential backoff.
"""
from decimal import Decimal
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest

from tripsalama.services import billing, payment, transactions, wallet


@pytest.fixture
def no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(payment.asyncio, "sleep", sleep)
    return sleep


@pytest.mark.asyncio
class TestCharge:
    async def test_success_first_try(self, no_sleep):
        result = await payment.charge(1, Decimal("50.00"), "card", "key-1")
        assert result["status"] == "SUCCESS"
        assert result["psp_ref"].startswith("PSP-")
        no_sleep.assert_not_awaited()

    async def test_retries_then_succeeds(self, monkeypatch, no_sleep):
        call = AsyncMock(side_effect=[
            payment.PSPError("gateway timeout"),
            httpx.ConnectError("connection reset"),
            {"psp_ref": "PSP-OK", "status": "SUCCESS"},
        ])
        monkeypatch.setattr(payment, "_call_psp", call)

        result = await payment.charge(1, Decimal("50.00"), "card", "key-2")
        assert result == {"psp_ref": "PSP-OK", "status": "SUCCESS"}
        assert call.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [2, 4]

    async def test_gives_up_after_max_attempts(self, monkeypatch, no_sleep):
        call = AsyncMock(side_effect=payment.PSPError("card declined"))
        monkeypatch.setattr(payment, "_call_psp", call)

        result = await payment.charge(1, Decimal("50.00"), "card", "key-3")
        assert result == {"psp_ref": None, "status": "FAILED"}
        assert call.await_count == payment.settings.psp_max_attempts


@pytest.fixture
def psp(monkeypatch):
    """Routes the adapter's HTTP calls to a handler and turns on live mode."""
    requests = []
    responses = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.pop(0)

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(payment.settings, "psp_api_key", "sk_test_123")
    monkeypatch.setattr(payment.httpx, "AsyncClient", client_factory)
    return requests, responses


@pytest.mark.asyncio
class TestLivePSP:
    async def test_charge_posts_minor_units(self, psp, no_sleep):
        requests, responses = psp
        responses.append(httpx.Response(200, json={"id": "ch_3Nx"}))

        result = await payment.charge(42, Decimal("100.00"), "tok_visa", "key-4")
        assert result == {"psp_ref": "ch_3Nx", "status": "SUCCESS"}

        [request] = requests
        assert request.url.path == "/v1/charges"
        assert request.headers["Idempotency-Key"] == "key-4"
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        form = parse_qs(request.content.decode())
        assert form["amount"] == ["10000"]
        assert form["currency"] == ["mad"]

    async def test_http_error_is_retried(self, psp, no_sleep):
        requests, responses = psp
        responses.extend([httpx.Response(502, text="bad gateway"), httpx.Response(200, json={"id": "ch_ok"})])

        result = await payment.charge(42, Decimal("50.00"), "tok_visa", "key-5")
        assert result["psp_ref"] == "ch_ok"
        assert len(requests) == 2

    async def test_intent_carries_metadata(self, psp):
        requests, responses = psp
        responses.append(httpx.Response(200, json={"id": "pi_3Nx", "client_secret": "pi_3Nx_secret_abc", "status": "requires_payment_method"}))

        intent = await payment.create_intent(Decimal("80.00"), {"user_id": 7, "ride_id": 12, "type": "payment"}, "key-6")
        assert intent == {"id": "pi_3Nx", "client_secret": "pi_3Nx_secret_abc", "status": "requires_payment_method"}

        [request] = requests
        assert request.url.path == "/v1/payment_intents"
        assert request.headers["Idempotency-Key"] == "key-6"
        form = parse_qs(request.content.decode())
        assert form["amount"] == ["8000"]
        assert form["metadata[ride_id]"] == ["12"]
        assert form["metadata[type]"] == ["payment"]

    async def test_intent_lookup_reports_last_error(self, psp):
        requests, responses = psp
        responses.append(httpx.Response(200, json={
            "id": "pi_3Nx", "status": "requires_payment_method",
            "last_payment_error": {"message": "Your card was declined."},
        }))

        intent = await payment.retrieve_intent("pi_3Nx")
        assert intent == {"id": "pi_3Nx", "status": "requires_payment_method", "error": "Your card was declined."}
        assert requests[0].method == "GET"
        assert requests[0].url.path == "/v1/payment_intents/pi_3Nx"

    async def test_intent_refused(self, psp):
        _, responses = psp
        responses.append(httpx.Response(402, json={"error": {"message": "amount too small"}}))
        with pytest.raises(payment.PSPError):
            await payment.create_intent(Decimal("1.00"), {}, None)

    async def test_card_details(self, psp):
        requests, responses = psp
        responses.append(httpx.Response(200, json={
            "id": "pm_1", "card": {"brand": "mastercard", "last4": "4444", "exp_month": 3, "exp_year": 2029},
        }))
        card = await payment.retrieve_payment_method("pm_1")
        assert card == {"brand": "mastercard", "last4": "4444", "exp_month": 3, "exp_year": 2029}
        assert requests[0].url.path == "/v1/payment_methods/pm_1"


@pytest.mark.asyncio
class TestEarningsReport:
    async def test_driver_earnings_after_wallet_payment(self, db, completed_ride):
        ride_id, passenger_id, driver_id = await completed_ride(price="50.00")
        await wallet.credit(passenger_id, 100, db)
        await billing.pay_ride_with_wallet(passenger_id, ride_id, "50.00", db)
        await billing.add_tip(passenger_id, ride_id, 10, db)

        report = await transactions.get_driver_earnings(driver_id, db)
        assert report == {
            "ride_count": 1,
            "total_earnings": Decimal("44.00"),
            "total_tips": Decimal("10.00"),
            "total_commission": Decimal("6.00"),
        }
