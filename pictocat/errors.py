"""
Domain errors raised by the PictoCat core.

Every error carries the HTTP status it maps to, so the web layer can render
any of them with a single exception handler.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PictoCatError(Exception):
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": False,
            "message": self.message,
            "error": self.__class__.__name__,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthenticated(PictoCatError):
    status_code = 401


class Forbidden(PictoCatError):
    status_code = 403


class NotFound(PictoCatError):
    status_code = 404


class InvalidInput(PictoCatError):
    status_code = 400


class Conflict(PictoCatError):
    status_code = 409


class InsufficientFunds(PictoCatError):
    """Raised when a purchase costs more than the player's balance."""

    status_code = 402

    def __init__(self, required: int, current: int) -> None:
        self.required = required
        self.current = current
        super().__init__(
            "Not enough coins.",
            {"required": required, "current": current},
        )


class InvalidOffer(PictoCatError):
    status_code = 400


class OfferExhausted(PictoCatError):
    status_code = 400


class NothingToClaim(PictoCatError):
    status_code = 400


class NotFriends(Forbidden):
    pass


class InvalidItems(InvalidInput):
    pass
