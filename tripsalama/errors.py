"""
Typed errors raised by the service layer.

Each error carries the HTTP status it maps to; ``main.py`` turns any
``TripSalamaError`` into a JSON ``{"detail": ...}`` response.
"""
from fastapi import status


class TripSalamaError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(TripSalamaError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidInputError(TripSalamaError):
    status_code = status.HTTP_400_BAD_REQUEST


class ForbiddenError(TripSalamaError):
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(TripSalamaError):
    status_code = status.HTTP_409_CONFLICT


class IllegalTransitionError(ConflictError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move ride from {current} to {target}")
        self.current = current
        self.target = target


class InsufficientFundsError(ConflictError):
    pass


class StaleRideError(ConflictError):
    """Another writer changed the ride between our read and our update."""


class TransientError(TripSalamaError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
