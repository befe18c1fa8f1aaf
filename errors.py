"""Exception types shared by the data layer and the Flask API."""

from __future__ import annotations

from typing import Optional


class MarketplaceError(Exception):
    """Base error carrying the message and HTTP status surfaced to the caller."""

    status_code = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(MarketplaceError):
    """Malformed or missing input."""

    status_code = 400


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    """Authenticated, but not entitled to the action."""

    status_code = 403


class NotFound(MarketplaceError):
    """Referenced entity is absent or not owned by the caller."""

    status_code = 404


class BusinessRuleViolation(MarketplaceError):
    status_code = 400


class InsufficientStock(BusinessRuleViolation):
    pass
