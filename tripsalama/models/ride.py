from datetime import datetime
from decimal import Decimal
from sqlalchemy import DateTime, Float, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from tripsalama.database import Base, utcnow


class Ride(Base):
    __tablename__ = "rides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    passenger_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    driver_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    vehicle_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("vehicles.id"), nullable=True)

    # pending | accepted | driver_arriving | in_progress | completed | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    pickup_address: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)

    estimated_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    estimated_duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    route_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)

    final_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    # unpaid | paid | refunded
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unpaid")
    commission_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    driver_earnings: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    tip_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    promo_code_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("promo_codes.id"), nullable=True)
    discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RidePosition(Base):
    """Append-only position log; the latest row per ride is the current one."""

    __tablename__ = "ride_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[int] = mapped_column(Integer, ForeignKey("rides.id"), nullable=False, index=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (UniqueConstraint("ride_id", name="uq_ratings_ride"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[int] = mapped_column(Integer, ForeignKey("rides.id"), nullable=False)
    # given by the passenger to the driver
    passenger_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passenger_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    passenger_rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # given by the driver to the passenger
    driver_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    driver_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
