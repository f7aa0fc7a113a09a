"""
Saved cards: lookup at the PSP, default card handling and soft delete.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from tripsalama.errors import ConflictError, NotFoundError, TransientError
from tripsalama.services import billing, payment, payment_methods, transactions


@pytest.mark.asyncio
class TestSavedCards:
    async def test_first_card_becomes_default(self, db, make_user):
        user_id = await make_user("passenger")
        first = await payment_methods.add(user_id, "pm_card_visa", db)
        second = await payment_methods.add(user_id, "pm_card_mastercard", db)

        assert first.is_default is True
        assert second.is_default is False
        assert first.last_four == "4242"
        assert first.brand == "visa"
        assert (await payment_methods.get_default(user_id, db)).id == first.id

    async def test_same_card_cannot_be_saved_twice(self, db, make_user):
        user_id = await make_user("passenger")
        await payment_methods.add(user_id, "pm_card_visa", db)
        with pytest.raises(ConflictError):
            await payment_methods.add(user_id, "pm_card_visa", db)

    async def test_switching_the_default(self, db, make_user):
        user_id = await make_user("passenger")
        first = await payment_methods.add(user_id, "pm_a", db)
        second = await payment_methods.add(user_id, "pm_b", db)

        updated = await payment_methods.set_default(user_id, second.id, db)
        assert updated.is_default is True
        methods = await payment_methods.list_for_user(user_id, db)
        assert [(m.id, m.is_default) for m in methods] == [(second.id, True), (first.id, False)]

    async def test_removing_the_default_promotes_another(self, db, make_user):
        user_id = await make_user("passenger")
        first = await payment_methods.add(user_id, "pm_a", db)
        second = await payment_methods.add(user_id, "pm_b", db)

        await payment_methods.remove(user_id, first.id, db)
        [remaining] = await payment_methods.list_for_user(user_id, db)
        assert remaining.id == second.id
        assert remaining.is_default is True
        with pytest.raises(NotFoundError):
            await payment_methods.get_owned(user_id, first.id, db)

    async def test_cards_are_private(self, db, make_user):
        owner = await make_user("passenger")
        other = await make_user("passenger")
        card = await payment_methods.add(owner, "pm_a", db)
        with pytest.raises(NotFoundError):
            await payment_methods.set_default(other, card.id, db)
        with pytest.raises(NotFoundError):
            await payment_methods.remove(other, card.id, db)

    async def test_unknown_card_at_psp(self, db, make_user, monkeypatch):
        user_id = await make_user("passenger")
        monkeypatch.setattr(payment, "retrieve_payment_method", AsyncMock(side_effect=payment.PSPError("No such payment_method")))
        with pytest.raises(NotFoundError):
            await payment_methods.add(user_id, "pm_missing", db)
        assert await payment_methods.list_for_user(user_id, db) == []

    async def test_psp_unreachable(self, db, make_user, monkeypatch):
        user_id = await make_user("passenger")
        monkeypatch.setattr(payment, "retrieve_payment_method", AsyncMock(side_effect=httpx.ConnectTimeout("timed out")))
        with pytest.raises(TransientError):
            await payment_methods.add(user_id, "pm_a", db)


@pytest.mark.asyncio
class TestTopupWithSavedCard:
    async def test_default_card_is_charged(self, db, make_user, monkeypatch):
        user_id = await make_user("passenger")
        card = await payment_methods.add(user_id, "pm_card_visa", db)
        charge = AsyncMock(return_value={"psp_ref": "ch_1", "status": "SUCCESS"})
        monkeypatch.setattr(payment, "charge", charge)

        result = await billing.topup_wallet(user_id, 100, db)
        assert result["balance"] == Decimal("100.00")
        assert charge.await_args.args[2] == "pm_card_visa"
        row = await transactions.find_by_id(result["transaction_id"], db)
        assert row.payment_method_id == card.id

    async def test_explicit_card_must_belong_to_user(self, db, make_user):
        owner = await make_user("passenger")
        other = await make_user("passenger")
        card = await payment_methods.add(owner, "pm_a", db)
        with pytest.raises(NotFoundError):
            await billing.topup_wallet(other, 100, db, payment_method_id=card.id)
        assert await transactions.get_by_user(other, db) == []
