"""
In-ride chat between the passenger and the driver.

Messages can only be sent while the ride is live (accepted through
in_progress); history stays readable afterwards.
"""
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.errors import ConflictError, ForbiddenError, InvalidInputError
from tripsalama.models.message import Message
from tripsalama.models.ride import Ride
from tripsalama.schemas.schemas import MessageTypeEnum, RideStatusEnum
from tripsalama.services import rides

logger = logging.getLogger(__name__)

CHAT_OPEN_STATES = {
    RideStatusEnum.accepted.value,
    RideStatusEnum.driver_arriving.value,
    RideStatusEnum.in_progress.value,
}
MESSAGE_TYPES = {t.value for t in MessageTypeEnum}


async def user_has_access(ride_id: int, user_id: int, db: AsyncSession) -> bool:
    result = await db.execute(
        select(func.count(Ride.id)).where(
            Ride.id == ride_id,
            or_(Ride.passenger_id == user_id, Ride.driver_id == user_id),
        )
    )
    return result.scalar_one() > 0


async def require_access(ride_id: int, user_id: int, db: AsyncSession) -> None:
    if not await user_has_access(ride_id, user_id, db):
        raise ForbiddenError("Not a participant of this ride")


async def send(
    ride_id: int,
    sender_id: int,
    content: str,
    db: AsyncSession,
    message_type: str = MessageTypeEnum.text.value,
) -> Message:
    content = (content or "").strip()
    if not content:
        raise InvalidInputError("Message cannot be empty")
    await require_access(ride_id, sender_id, db)
    ride = await rides.require_ride(ride_id, db)
    if ride.status not in CHAT_OPEN_STATES:
        raise ConflictError("Chat is closed for this ride")

    message = Message(
        ride_id=ride_id,
        sender_id=sender_id,
        content=content,
        message_type=message_type if message_type in MESSAGE_TYPES else MessageTypeEnum.text.value,
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    return message


async def mark_as_read(ride_id: int, user_id: int, db: AsyncSession) -> int:
    """Marks the other party's messages read; returns how many changed."""
    result = await db.execute(
        update(Message)
        .where(Message.ride_id == ride_id, Message.sender_id != user_id, Message.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def list_by_ride(ride_id: int, user_id: int, db: AsyncSession) -> list[Message]:
    await require_access(ride_id, user_id, db)
    await mark_as_read(ride_id, user_id, db)
    result = await db.execute(
        select(Message)
        .where(Message.ride_id == ride_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars())


async def unread_count(ride_id: int, user_id: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(Message.id)).where(
            Message.ride_id == ride_id,
            Message.sender_id != user_id,
            Message.is_read.is_(False),
        )
    )
    return int(result.scalar_one())


async def get_last_message(ride_id: int, db: AsyncSession) -> Message | None:
    result = await db.execute(
        select(Message)
        .where(Message.ride_id == ride_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
