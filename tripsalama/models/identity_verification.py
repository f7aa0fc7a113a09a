from datetime import datetime
from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from tripsalama.database import Base, utcnow


class IdentityVerification(Base):
    __tablename__ = "identity_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    photo_path: Mapped[str] = mapped_column(String(255), nullable=False)
    ai_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_result: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # pending | approved | rejected
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    manual_review_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    manual_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
