"""
Identity verification gate.

A submission carries the on-device classifier output. It is approved on the
spot only when the label is the configured one AND the confidence reaches the
threshold; anything else waits in the manual review queue.
"""
import base64
import binascii
import logging
import re
import uuid
from pathlib import Path

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import atomic, utcnow
from tripsalama.errors import ConflictError, InvalidInputError, NotFoundError
from tripsalama.models.identity_verification import IdentityVerification
from tripsalama.models.user import User
from tripsalama.schemas.schemas import VerificationStatusEnum

logger = logging.getLogger(__name__)
settings = get_settings()

PENDING = VerificationStatusEnum.pending.value
APPROVED = VerificationStatusEnum.approved.value
REJECTED = VerificationStatusEnum.rejected.value

DATA_URL = re.compile(r"^data:image/(jpeg|jpg|png|webp);base64,(.+)$", re.DOTALL)
EXTENSIONS = {"jpeg": "jpg", "jpg": "jpg", "png": "png", "webp": "webp"}


def auto_decision(confidence: float | None, label: str | None) -> str:
    if (
        confidence is not None
        and label == settings.identity_auto_approve_label
        and confidence >= settings.identity_auto_approve_confidence
    ):
        return APPROVED
    return PENDING


async def _mark_user_verified(user_id: int, db: AsyncSession) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(is_verified=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def create(
    user_id: int,
    photo_path: str,
    db: AsyncSession,
    confidence: float | None = None,
    label: str | None = None,
) -> IdentityVerification:
    status = auto_decision(confidence, label)
    verification = IdentityVerification(
        user_id=user_id,
        photo_path=photo_path,
        ai_confidence=confidence,
        ai_result=label,
        status=status,
    )
    async with atomic(db):
        db.add(verification)
        if status == APPROVED:
            await _mark_user_verified(user_id, db)
    await db.refresh(verification)
    logger.info("Verification %s for user=%s: %s", verification.id, user_id, status)
    return verification


def decode_photo(data_url: str) -> tuple[bytes, str]:
    """
    Parses a ``data:image/<type>;base64,<payload>`` string.
    Returns (image bytes, file extension); raises InvalidInputError when the
    prefix, the encoding or the size is wrong.
    """
    match = DATA_URL.match(data_url.strip())
    if match is None:
        raise InvalidInputError("Photo must be a base64 data URL of a JPEG, PNG or WebP image")
    kind, encoded = match.groups()
    limit = settings.identity_max_photo_bytes
    if len(encoded) > (limit // 3 + 1) * 4:
        raise InvalidInputError(f"Photo exceeds the size limit ({limit} bytes)")
    try:
        content = base64.b64decode(encoded, validate=True)
    except binascii.Error:
        raise InvalidInputError("Photo is not valid base64")
    if not content:
        raise InvalidInputError("Photo is empty")
    if len(content) > limit:
        raise InvalidInputError(f"Photo exceeds the size limit ({limit} bytes)")
    return content, EXTENSIONS[kind]


def store_photo(user_id: int, content: bytes, extension: str) -> str:
    """Writes under ``<upload_dir>/verifications/<user_id>/``; returns the path relative to upload_dir."""
    relative = Path("verifications") / str(user_id) / f"identity_{uuid.uuid4().hex}.{extension}"
    target = Path(settings.upload_dir) / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return relative.as_posix()


async def submit(
    user_id: int,
    data_url: str,
    db: AsyncSession,
    confidence: float | None = None,
    label: str | None = None,
) -> IdentityVerification:
    content, extension = decode_photo(data_url)
    photo_path = store_photo(user_id, content, extension)
    logger.info("Identity photo stored for user=%s: %s (%d bytes)", user_id, photo_path, len(content))
    return await create(user_id, photo_path, db, confidence=confidence, label=label)


async def find_by_user_id(user_id: int, db: AsyncSession) -> IdentityVerification | None:
    """Latest attempt."""
    result = await db.execute(
        select(IdentityVerification)
        .where(IdentityVerification.user_id == user_id)
        .order_by(IdentityVerification.created_at.desc(), IdentityVerification.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_id(verification_id: int, db: AsyncSession) -> IdentityVerification | None:
    return await db.get(IdentityVerification, verification_id, populate_existing=True)


async def update_status(
    verification_id: int, status: str, db: AsyncSession, reason: str | None = None
) -> IdentityVerification:
    try:
        status = VerificationStatusEnum(status).value
    except ValueError:
        raise InvalidInputError(f"Unknown verification status: {status!r}")
    verification = await find_by_id(verification_id, db)
    if verification is None:
        raise NotFoundError("Verification not found")
    verification.status = status
    verification.rejection_reason = reason
    await db.commit()
    return verification


async def get_pending_manual_reviews(db: AsyncSession) -> list[IdentityVerification]:
    """Oldest first."""
    result = await db.execute(
        select(IdentityVerification)
        .where(IdentityVerification.status == PENDING)
        .order_by(IdentityVerification.created_at.asc(), IdentityVerification.id.asc())
    )
    return list(result.scalars())


async def _review(verification_id: int, admin_id: int, db: AsyncSession) -> IdentityVerification:
    verification = await find_by_id(verification_id, db)
    if verification is None:
        raise NotFoundError("Verification not found")
    if verification.status != PENDING:
        raise ConflictError(f"Verification already {verification.status}")
    verification.manual_review_by = admin_id
    verification.manual_review_at = utcnow()
    return verification


async def approve_by_admin(verification_id: int, admin_id: int, db: AsyncSession) -> IdentityVerification:
    verification = await _review(verification_id, admin_id, db)
    async with atomic(db):
        verification.status = APPROVED
        verification.rejection_reason = None
        await _mark_user_verified(verification.user_id, db)
    logger.info("Verification %s approved by admin=%s", verification_id, admin_id)
    return verification


async def reject_by_admin(verification_id: int, admin_id: int, reason: str, db: AsyncSession) -> IdentityVerification:
    if not reason or not reason.strip():
        raise InvalidInputError("A rejection reason is required")
    verification = await _review(verification_id, admin_id, db)
    async with atomic(db):
        verification.status = REJECTED
        verification.rejection_reason = reason.strip()
    logger.info("Verification %s rejected by admin=%s", verification_id, admin_id)
    return verification


async def get_stats(db: AsyncSession) -> dict:
    result = await db.execute(
        select(
            func.count(IdentityVerification.id),
            func.count(case((IdentityVerification.status == PENDING, 1))),
            func.count(case((IdentityVerification.status == APPROVED, 1))),
            func.count(case((IdentityVerification.status == REJECTED, 1))),
            func.count(case((IdentityVerification.manual_review_by.is_(None) & (IdentityVerification.status == APPROVED), 1))),
            func.avg(IdentityVerification.ai_confidence),
        )
    )
    total, pending, approved, rejected, auto_approved, avg_confidence = result.one()
    return {
        "total": int(total or 0),
        "pending": int(pending or 0),
        "approved": int(approved or 0),
        "rejected": int(rejected or 0),
        "auto_approved": int(auto_approved or 0),
        "avg_confidence": round(float(avg_confidence), 3) if avg_confidence is not None else None,
    }
