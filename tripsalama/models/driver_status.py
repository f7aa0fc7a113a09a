from datetime import datetime
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column
from tripsalama.database import Base, utcnow


class DriverStatus(Base):
    __tablename__ = "driver_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    driver_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    current_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
