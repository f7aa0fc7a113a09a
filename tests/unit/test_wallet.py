"""
Wallet balance and ledger rules.
"""
from decimal import Decimal

import pytest

from tripsalama.errors import InsufficientFundsError, InvalidInputError, NotFoundError
from tripsalama.schemas.schemas import TransactionTypeEnum
from tripsalama.services import transactions, wallet


@pytest.mark.asyncio
class TestCreditDebit:
    async def test_debit_more_than_balance_then_exact_debit(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, 100, db)

        with pytest.raises(InsufficientFundsError):
            await wallet.debit(user_id, 150, db)
        assert await wallet.get_balance(user_id, db) == Decimal("100.00")

        await wallet.debit(user_id, 50, db)
        assert await wallet.get_balance(user_id, db) == Decimal("50.00")

    async def test_repeated_debits_stop_at_zero(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, 100, db)

        accepted = 0
        for _ in range(5):
            try:
                await wallet.debit(user_id, 30, db)
                accepted += 1
            except InsufficientFundsError:
                pass
        assert accepted == 3
        assert await wallet.get_balance(user_id, db) == Decimal("10.00")

    async def test_draining_to_exactly_zero(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, "42.50", db)
        await wallet.debit(user_id, "42.50", db)
        assert await wallet.get_balance(user_id, db) == Decimal("0.00")
        with pytest.raises(InsufficientFundsError):
            await wallet.debit(user_id, "0.01", db)

    @pytest.mark.parametrize("amount", [0, -10, "-0.01"])
    async def test_non_positive_amounts_rejected(self, db, make_user, amount):
        user_id = await make_user("passenger")
        with pytest.raises(InvalidInputError):
            await wallet.credit(user_id, amount, db)
        with pytest.raises(InvalidInputError):
            await wallet.debit(user_id, amount, db)

    async def test_debit_without_wallet(self, db, make_user):
        user_id = await make_user("passenger")
        with pytest.raises(NotFoundError):
            await wallet.debit(user_id, 10, db)

    async def test_credit_creates_wallet_lazily(self, db, make_user):
        user_id = await make_user("passenger")
        assert await wallet.find_by_user_id(user_id, db) is None
        await wallet.credit(user_id, 20, db)
        found = await wallet.find_by_user_id(user_id, db)
        assert found.balance == Decimal("20.00")
        assert found.currency == "MAD"

    async def test_get_or_create_is_stable(self, db, make_user):
        user_id = await make_user("passenger")
        first = await wallet.get_or_create(user_id, db)
        second = await wallet.get_or_create(user_id, db)
        assert first.id == second.id


@pytest.mark.asyncio
class TestLedger:
    async def test_each_mutation_posts_one_signed_row(self, db, make_user):
        user_id = await make_user("passenger")
        credit_row = await wallet.credit(user_id, 100, db)
        debit_row = await wallet.debit(user_id, 30, db)

        assert credit_row.wallet_delta == Decimal("100.00")
        assert debit_row.wallet_delta == Decimal("-30.00")
        assert credit_row.status == debit_row.status == "completed"
        assert credit_row.processed_at is not None

        rows = await transactions.get_by_user(user_id, db)
        assert len(rows) == 2

    async def test_failed_debit_posts_nothing(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, 10, db)
        with pytest.raises(InsufficientFundsError):
            await wallet.debit(user_id, 20, db)
        assert len(await transactions.get_by_user(user_id, db)) == 1

    async def test_reconcile_matches_after_mixed_activity(self, db, make_user):
        a = await make_user("passenger")
        b = await make_user("driver", verified=True)
        await wallet.credit(a, 200, db)
        await wallet.debit(a, "35.75", db)
        await wallet.transfer(a, b, 40, db)
        with pytest.raises(InsufficientFundsError):
            await wallet.debit(a, 1000, db)

        for user_id, expected in ((a, Decimal("124.25")), (b, Decimal("40.00"))):
            report = await wallet.reconcile(user_id, db)
            assert report["balance"] == expected
            assert report["ledger_total"] == expected
            assert report["consistent"] is True

    async def test_stats(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, 100, db)
        await wallet.debit(user_id, 30, db, kind=TransactionTypeEnum.payment)
        await wallet.debit(user_id, 5, db, kind=TransactionTypeEnum.tip)

        stats = await wallet.get_stats(user_id, db)
        assert stats["balance"] == Decimal("65.00")
        assert stats["total_topup"] == Decimal("100.00")
        assert stats["total_spent"] == Decimal("30.00")
        assert stats["total_tips"] == Decimal("5.00")
        assert stats["payment_count"] == 1


@pytest.mark.asyncio
class TestTransfer:
    async def test_transfer_moves_funds(self, db, make_user):
        a = await make_user("passenger")
        b = await make_user("driver", verified=True)
        await wallet.credit(a, 50, db)

        out_row, in_row = await wallet.transfer(a, b, 20, db)
        assert out_row.wallet_delta == Decimal("-20.00")
        assert in_row.wallet_delta == Decimal("20.00")
        assert await wallet.get_balance(a, db) == Decimal("30.00")
        assert await wallet.get_balance(b, db) == Decimal("20.00")

    async def test_received_funds_are_not_spending(self, db, make_user):
        a = await make_user("passenger")
        b = await make_user("driver", verified=True)
        await wallet.credit(a, 50, db)

        out_row, in_row = await wallet.transfer(a, b, 20, db)
        assert out_row.type == "payment"
        assert in_row.type == "earning"

        sender = await wallet.get_stats(a, db)
        assert sender["total_spent"] == Decimal("20.00")
        assert sender["payment_count"] == 1
        recipient = await wallet.get_stats(b, db)
        assert recipient["balance"] == Decimal("20.00")
        assert recipient["total_spent"] == Decimal("0.00")
        assert recipient["payment_count"] == 0

    async def test_insufficient_transfer_changes_nothing(self, db, make_user):
        a = await make_user("passenger")
        b = await make_user("driver", verified=True)
        await wallet.credit(a, 10, db)

        with pytest.raises(InsufficientFundsError):
            await wallet.transfer(a, b, 20, db)
        assert await wallet.get_balance(a, db) == Decimal("10.00")
        assert await wallet.get_balance(b, db) == Decimal("0.00")

    async def test_failing_credit_leg_rolls_back_debit(self, db, make_user, monkeypatch):
        a = await make_user("passenger")
        b = await make_user("driver", verified=True)
        await wallet.credit(a, 50, db)

        async def broken_credit(entry, _db):
            raise RuntimeError("connection dropped")

        monkeypatch.setattr(wallet, "apply_credit", broken_credit)
        with pytest.raises(RuntimeError):
            await wallet.transfer(a, b, 20, db)

        assert await wallet.get_balance(a, db) == Decimal("50.00")
        assert await wallet.get_balance(b, db) == Decimal("0.00")
        assert len(await transactions.get_by_user(a, db)) == 1
        assert (await wallet.reconcile(a, db))["consistent"] is True

    async def test_transfer_to_self_rejected(self, db, make_user):
        a = await make_user("passenger")
        await wallet.credit(a, 50, db)
        with pytest.raises(InvalidInputError):
            await wallet.transfer(a, a, 10, db)
