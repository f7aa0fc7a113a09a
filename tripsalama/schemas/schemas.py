from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoleEnum(str, Enum):
    passenger = "passenger"
    driver = "driver"
    admin = "admin"


class RideStatusEnum(str, Enum):
    pending = "pending"
    accepted = "accepted"
    driver_arriving = "driver_arriving"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class TransactionTypeEnum(str, Enum):
    topup = "topup"
    payment = "payment"
    refund = "refund"
    commission = "commission"
    tip = "tip"
    promo = "promo"
    referral = "referral"
    withdrawal = "withdrawal"
    earning = "earning"


class TransactionStatusEnum(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


class MessageTypeEnum(str, Enum):
    text = "text"
    quick = "quick"


class VerificationStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class PeriodEnum(str, Enum):
    today = "today"
    week = "week"
    month = "month"


class DiscountTypeEnum(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


# ---------------------------------------------------------------------------
# Auth / user schemas
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    role: RoleEnum = RoleEnum.passenger
    referral_code: Optional[str] = Field(default=None, max_length=20)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    role: RoleEnum


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: RoleEnum
    is_verified: bool
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Vehicle schemas
# ---------------------------------------------------------------------------

class VehicleCreateRequest(BaseModel):
    brand: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=50)
    color: str = Field(..., min_length=1, max_length=30)
    license_plate: str = Field(..., min_length=2, max_length=20)
    year: Optional[int] = Field(default=None, ge=1950, le=2100)


class VehicleUpdateRequest(BaseModel):
    brand: Optional[str] = Field(default=None, max_length=50)
    model: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=30)
    license_plate: Optional[str] = Field(default=None, max_length=20)
    year: Optional[int] = Field(default=None, ge=1950, le=2100)
    is_active: Optional[bool] = None


class VehicleResponse(BaseModel):
    id: int
    driver_id: int
    brand: str
    model: str
    color: str
    license_plate: str
    year: Optional[int] = None
    is_active: bool

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class RideCreateRequest(BaseModel):
    pickup_address: str = Field(default="", max_length=255)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_address: str = Field(default="", max_length=255)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    estimated_distance_km: Optional[float] = Field(default=None, ge=0)
    estimated_duration_min: Optional[int] = Field(default=None, ge=0)
    estimated_price: Optional[Decimal] = Field(default=None, ge=0)
    route_polyline: Optional[str] = None


class RideCreateResponse(BaseModel):
    ride_id: int
    status: RideStatusEnum


class RideResponse(BaseModel):
    id: int
    passenger_id: int
    driver_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    status: RideStatusEnum
    version: int
    pickup_address: str
    pickup_lat: float
    pickup_lng: float
    dropoff_address: str
    dropoff_lat: float
    dropoff_lng: float
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[int] = None
    estimated_price: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    payment_status: str
    tip_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AcceptRideRequest(BaseModel):
    vehicle_id: Optional[int] = None


class RateRideRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)


class PositionRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = Field(default=None, ge=0, lt=360)
    speed: Optional[float] = Field(default=None, ge=0)


class PositionResponse(BaseModel):
    ride_id: int
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    recorded_at: datetime

    model_config = {"from_attributes": True}


class DriverStatsResponse(BaseModel):
    rides_today: int
    rides_week: int
    rides_month: int
    rides_total: int
    earnings_today: Decimal
    earnings_week: Decimal
    earnings_month: Decimal
    distance_today: float
    distance_week: float
    distance_total: float


# ---------------------------------------------------------------------------
# Driver availability schemas
# ---------------------------------------------------------------------------

class AvailabilityRequest(BaseModel):
    is_available: bool
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class DriverStatusResponse(BaseModel):
    driver_id: int
    is_available: bool
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    last_update: datetime

    model_config = {"from_attributes": True}


class NearbyDriver(BaseModel):
    driver_id: int
    first_name: str
    last_name: str
    phone: Optional[str] = None
    lat: float
    lng: float
    heading: Optional[float] = None
    distance_km: float
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    license_plate: Optional[str] = None


# ---------------------------------------------------------------------------
# Chat schemas
# ---------------------------------------------------------------------------

class MessageCreateRequest(BaseModel):
    content: str = Field(..., max_length=1000)
    message_type: str = MessageTypeEnum.text.value


class MessageResponse(BaseModel):
    id: int
    ride_id: int
    sender_id: int
    content: str
    message_type: MessageTypeEnum
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Wallet / payment schemas
# ---------------------------------------------------------------------------

class WalletResponse(BaseModel):
    balance: Decimal
    currency: str
    total_spent: Decimal
    total_topup: Decimal
    total_tips: Decimal
    total_promo: Decimal
    payment_count: int


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    wallet_id: Optional[int] = None
    ride_id: Optional[int] = None
    type: TransactionTypeEnum
    amount: Decimal
    wallet_delta: Optional[Decimal] = None
    currency: str
    status: TransactionStatusEnum
    provider: Optional[str] = None
    description: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class RidePaymentRequest(BaseModel):
    ride_id: int
    # fare less any promo discount; zero when the discount covers the whole fare
    amount: Decimal = Field(..., ge=0)


class TopupRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    # saved card to charge; the default card is used when omitted
    payment_method_id: Optional[int] = None


class TipRequest(BaseModel):
    ride_id: int
    amount: Decimal = Field(..., gt=0)


class RefundRequest(BaseModel):
    ride_id: int
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(default="", max_length=255)


class PaymentResponse(BaseModel):
    transaction_id: int
    amount: Decimal
    commission: Optional[Decimal] = None
    driver_earnings: Optional[Decimal] = None
    balance: Optional[Decimal] = None


class PaymentIntentRequest(BaseModel):
    """Exactly one of ride_id (card payment of a ride) or amount (wallet top-up)."""
    ride_id: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)


class PaymentIntentResponse(BaseModel):
    transaction_id: int
    payment_intent_id: str
    client_secret: str
    amount: Decimal


class PaymentConfirmResponse(BaseModel):
    transaction_id: int
    status: str


class PaymentMethodCreateRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, max_length=255)


class PaymentMethodResponse(BaseModel):
    id: int
    type: str
    provider: str
    last_four: Optional[str] = None
    brand: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Promo code / referral schemas
# ---------------------------------------------------------------------------

class PromoCodeCreateRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=32)
    description: Optional[str] = Field(default=None, max_length=255)
    discount_type: DiscountTypeEnum = DiscountTypeEnum.percentage
    discount_value: Decimal = Field(..., gt=0)
    max_discount: Optional[Decimal] = Field(default=None, gt=0)
    min_ride_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    is_first_ride_only: bool = False


class PromoCodeUpdateRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    discount_type: Optional[DiscountTypeEnum] = None
    discount_value: Optional[Decimal] = Field(default=None, gt=0)
    max_discount: Optional[Decimal] = Field(default=None, gt=0)
    min_ride_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    is_first_ride_only: Optional[bool] = None


class PromoCodeResponse(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: DiscountTypeEnum
    discount_value: Decimal
    max_discount: Optional[Decimal] = None
    min_ride_amount: Optional[Decimal] = None
    max_uses: Optional[int] = None
    current_uses: int
    max_uses_per_user: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool
    is_first_ride_only: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class PromoValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    amount: Decimal = Field(..., gt=0)


class PromoApplyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    ride_id: int


class ReferralApplyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)


class ReferralResponse(BaseModel):
    id: int
    referrer_id: int
    referred_id: int
    status: str
    referrer_bonus: Decimal
    referred_bonus: Decimal
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Identity verification schemas
# ---------------------------------------------------------------------------

class VerificationSubmitRequest(BaseModel):
    # data:image/<jpeg|png|webp>;base64,<payload>
    image: str = Field(..., min_length=1)
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    ai_result: Optional[str] = Field(default=None, max_length=20)


class VerificationRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class VerificationResponse(BaseModel):
    id: int
    user_id: int
    photo_path: str
    ai_confidence: Optional[float] = None
    ai_result: Optional[str] = None
    status: VerificationStatusEnum
    rejection_reason: Optional[str] = None
    manual_review_by: Optional[int] = None
    manual_review_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
