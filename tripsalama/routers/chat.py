from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import get_db
from tripsalama.middleware.auth import get_current_user_id
from tripsalama.schemas.schemas import MessageCreateRequest, MessageResponse
from tripsalama.services import chat

router = APIRouter(prefix="/v1/chat", tags=["Chat"])


@router.post("/{ride_id}/messages", status_code=status.HTTP_201_CREATED, response_model=MessageResponse)
async def send_message(
    ride_id: int,
    payload: MessageCreateRequest,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    message = await chat.send(ride_id, user_id, payload.content, db, message_type=payload.message_type)
    return MessageResponse.model_validate(message)


@router.get("/{ride_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Reading the thread marks the other party's messages as read."""
    return [MessageResponse.model_validate(m) for m in await chat.list_by_ride(ride_id, user_id, db)]


@router.post("/{ride_id}/read")
async def mark_read(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    await chat.require_access(ride_id, user_id, db)
    return {"marked": await chat.mark_as_read(ride_id, user_id, db)}


@router.get("/{ride_id}/unread")
async def unread(
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    await chat.require_access(ride_id, user_id, db)
    return {"unread": await chat.unread_count(ride_id, user_id, db)}
