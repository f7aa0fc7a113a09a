import pytest

from tripsalama.errors import ConflictError, ForbiddenError, InvalidInputError
from tripsalama.services import chat, rides


@pytest.fixture
def live_ride(db, make_user, make_ride):
    async def _make() -> tuple[int, int, int]:
        passenger_id = await make_user("passenger")
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride(passenger_id)
        await rides.assign_driver(ride_id, driver_id, None, db)
        return ride_id, passenger_id, driver_id

    return _make


@pytest.mark.asyncio
class TestChat:
    async def test_send_and_read_cycle(self, db, live_ride):
        ride_id, passenger_id, driver_id = await live_ride()
        await chat.send(ride_id, passenger_id, "  I'm at the main entrance ", db)
        await chat.send(ride_id, passenger_id, "Blue jacket", db)

        assert await chat.unread_count(ride_id, driver_id, db) == 2
        assert await chat.unread_count(ride_id, passenger_id, db) == 0

        messages = await chat.list_by_ride(ride_id, driver_id, db)
        assert [m.content for m in messages] == ["I'm at the main entrance", "Blue jacket"]
        assert all(m.is_read for m in messages)
        assert await chat.unread_count(ride_id, driver_id, db) == 0

    async def test_outsider_has_no_access(self, db, make_user, live_ride):
        ride_id, _, _ = await live_ride()
        outsider = await make_user("passenger")
        assert await chat.user_has_access(ride_id, outsider, db) is False
        with pytest.raises(ForbiddenError):
            await chat.send(ride_id, outsider, "hello", db)
        with pytest.raises(ForbiddenError):
            await chat.list_by_ride(ride_id, outsider, db)

    async def test_empty_message_rejected(self, db, live_ride):
        ride_id, passenger_id, _ = await live_ride()
        with pytest.raises(InvalidInputError):
            await chat.send(ride_id, passenger_id, "   ", db)

    async def test_unknown_type_falls_back_to_text(self, db, live_ride):
        ride_id, _, driver_id = await live_ride()
        message = await chat.send(ride_id, driver_id, "I have arrived", db, message_type="quick")
        assert message.message_type == "quick"
        message = await chat.send(ride_id, driver_id, "ok", db, message_type="sticker")
        assert message.message_type == "text"
        assert (await chat.get_last_message(ride_id, db)).id == message.id

    async def test_chat_closes_after_completion(self, db, live_ride):
        ride_id, passenger_id, driver_id = await live_ride()
        await chat.send(ride_id, driver_id, "On my way", db)
        await rides.update_status(ride_id, "in_progress", db)
        await rides.complete(ride_id, db)

        with pytest.raises(ConflictError):
            await chat.send(ride_id, passenger_id, "Thanks!", db)
        # history stays readable
        assert len(await chat.list_by_ride(ride_id, passenger_id, db)) == 1

    async def test_pending_ride_has_no_chat(self, db, make_user, make_ride):
        passenger_id = await make_user("passenger")
        ride_id = await make_ride(passenger_id)
        with pytest.raises(ConflictError):
            await chat.send(ride_id, passenger_id, "anyone?", db)
