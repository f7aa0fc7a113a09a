from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from tripsalama.database import Base, utcnow


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    wallet_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("wallets.id"), nullable=True, index=True)
    ride_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("rides.id"), nullable=True, index=True)

    # topup | payment | refund | commission | tip | promo | referral | withdrawal | earning
    type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # signed change applied to wallet.balance; NULL when the wallet was untouched
    wallet_delta: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MAD")
    # pending | processing | completed | failed | cancelled | refunded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    payment_method_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider: Mapped[str | None] = mapped_column(String(30), nullable=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
