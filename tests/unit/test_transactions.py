"""
Transaction records: defaults, status updates, typed constructors, reports.
"""
from decimal import Decimal

import pytest

from tripsalama.errors import InvalidInputError, NotFoundError
from tripsalama.schemas.schemas import TransactionTypeEnum
from tripsalama.services import transactions, wallet


@pytest.mark.asyncio
class TestTransactions:
    async def test_create_defaults_to_pending(self, db, make_user):
        user_id = await make_user("passenger")
        txn = await transactions.create(user_id, TransactionTypeEnum.payment, "12.5", db, provider="card")
        assert txn.status == "pending"
        assert txn.amount == Decimal("12.50")
        assert txn.currency == "MAD"
        assert txn.processed_at is None

    async def test_processed_at_only_on_completed_or_failed(self, db, make_user):
        user_id = await make_user("passenger")
        txn = await transactions.create(user_id, TransactionTypeEnum.topup, 50, db)
        txn_id = txn.id

        txn = await transactions.update_status(txn_id, "processing", db)
        assert txn.processed_at is None

        txn = await transactions.update_status(txn_id, "failed", db, error_message="card declined")
        assert txn.processed_at is not None
        assert txn.error_message == "card declined"

    async def test_update_status_rejects_unknown_status(self, db, make_user):
        user_id = await make_user("passenger")
        txn = await transactions.create(user_id, TransactionTypeEnum.topup, 50, db)
        with pytest.raises(InvalidInputError):
            await transactions.update_status(txn.id, "lost", db)

    async def test_update_status_missing_row(self, db):
        with pytest.raises(NotFoundError):
            await transactions.update_status(404, "completed", db)

    async def test_commission_is_stored_negative(self, db, completed_ride):
        ride_id, _, driver_id = await completed_ride()
        txn = await transactions.create_commission(driver_id, ride_id, Decimal("9.60"), db)
        assert txn.type == "commission"
        assert txn.amount == Decimal("-9.60")
        assert txn.provider == "platform"

    async def test_promo_and_referral_metadata(self, db, make_user, completed_ride):
        ride_id, passenger_id, _ = await completed_ride()
        promo = await transactions.create_promo_discount(passenger_id, ride_id, 10, "SALAMA10", db)
        assert promo.meta == {"promo_code": "SALAMA10"}

        referrer = await make_user("passenger")
        bonus = await transactions.create_referral_bonus(referrer, 25, passenger_id, db)
        assert bonus.meta == {"referred_user_id": passenger_id}
        assert bonus.ride_id is None

    async def test_find_by_provider_id(self, db, make_user):
        user_id = await make_user("passenger")
        user_wallet = await wallet.get_or_create(user_id, db)
        txn = await transactions.create_topup(user_id, user_wallet.id, 100, "psp", db, provider_transaction_id="PSP-ABC123")
        found = await transactions.find_by_provider_id("PSP-ABC123", db)
        assert found.id == txn.id
        assert await transactions.find_by_provider_id("PSP-NOPE", db) is None

    async def test_history_newest_first_with_paging(self, db, make_user):
        user_id = await make_user("passenger")
        ids = [(await transactions.create(user_id, TransactionTypeEnum.topup, n, db)).id for n in (10, 20, 30)]
        page = await transactions.get_by_user(user_id, db, limit=2)
        assert [t.id for t in page] == [ids[2], ids[1]]
        rest = await transactions.get_by_user(user_id, db, limit=2, offset=2)
        assert [t.id for t in rest] == [ids[0]]

    async def test_stats_grouped_by_type_and_status(self, db, make_user):
        user_id = await make_user("passenger")
        await wallet.credit(user_id, 100, db)
        await wallet.credit(user_id, 50, db)
        await wallet.debit(user_id, 20, db)

        stats = {(s["type"], s["status"]): s for s in await transactions.get_stats(db, user_id=user_id)}
        assert stats[("topup", "completed")]["count"] == 2
        assert stats[("topup", "completed")]["total_amount"] == Decimal("150.00")
        assert stats[("payment", "completed")]["total_amount"] == Decimal("20.00")
