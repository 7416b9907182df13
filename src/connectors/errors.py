"""Typed exchange errors raised by exchange clients."""

from __future__ import annotations


class ExchangeError(Exception):
    """Base class for failures reported by an exchange client."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class AuthError(ExchangeError):
    """Credential rejected: invalid key, bad signature or missing permission."""


class RateLimitError(ExchangeError):
    """Exchange throttled the request."""


class InsufficientFundsError(ExchangeError):
    pass


class NetworkError(ExchangeError):
    """Transport failure, timeout or exchange-side 5xx / unavailability."""


class UnknownExchangeError(ExchangeError):
    pass


# Kraken error prefixes, matched against each entry of the response "error" array.
KRAKEN_ERROR_PREFIXES: tuple[tuple[str, type[ExchangeError]], ...] = (
    ("EAPI:Invalid key", AuthError),
    ("EAPI:Invalid signature", AuthError),
    ("EAPI:Invalid nonce", AuthError),
    ("EGeneral:Permission denied", AuthError),
    ("EAPI:Rate limit exceeded", RateLimitError),
    ("EOrder:Rate limit exceeded", RateLimitError),
    ("EGeneral:Too many requests", RateLimitError),
    ("EOrder:Insufficient funds", InsufficientFundsError),
    ("EService:Unavailable", NetworkError),
    ("EService:Busy", NetworkError),
    ("EService:Deadline elapsed", NetworkError),
    ("EGeneral:Temporary lockout", RateLimitError),
)


def map_kraken_errors(errors: list[str]) -> ExchangeError:
    """Convert a non-empty Kraken ``error`` array into the matching typed exception."""
    message = ", ".join(errors)
    for entry in errors:
        for prefix, error_cls in KRAKEN_ERROR_PREFIXES:
            if entry.startswith(prefix):
                return error_cls(f"Kraken API error: {message}", code=entry)
    return UnknownExchangeError(f"Kraken API error: {message}", code=errors[0] if errors else None)
