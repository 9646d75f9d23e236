from __future__ import annotations

from typing import Any, Optional


class CreditError(Exception):
    """Base class for errors raised by the member credit system."""


class AuthError(CreditError):
    """The identity exchange was rejected, unreachable, or given bad hints."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class ConfigurationError(CreditError):
    """A required credential or token is not configured."""


class InsufficientCreditsError(CreditError, ValueError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__("insufficient credits")
        self.required = required
        self.available = available


class NotFoundError(CreditError, LookupError):
    """Member or credit account does not exist."""


class PersistenceError(CreditError):
    """A ledger write failed; the enclosing transaction was rolled back."""
