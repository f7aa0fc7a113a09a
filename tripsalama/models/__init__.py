from tripsalama.models.user import User
from tripsalama.models.vehicle import Vehicle
from tripsalama.models.driver_status import DriverStatus
from tripsalama.models.ride import Ride, RidePosition, Rating
from tripsalama.models.message import Message
from tripsalama.models.wallet import Wallet
from tripsalama.models.transaction import Transaction
from tripsalama.models.identity_verification import IdentityVerification
from tripsalama.models.payment_method import PaymentMethod
from tripsalama.models.promo import PromoCode, PromoCodeUse
from tripsalama.models.referral import Referral

__all__ = [
    "User", "Vehicle", "DriverStatus", "Ride", "RidePosition", "Rating",
    "Message", "Wallet", "Transaction", "IdentityVerification",
    "PaymentMethod", "PromoCode", "PromoCodeUse", "Referral",
]
