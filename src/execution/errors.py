"""Closed taxonomy of submission failures and the policy applied to each kind."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx

from src.connectors.errors import (
    AuthError,
    InsufficientFundsError,
    NetworkError,
    RateLimitError,
)


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorPolicy:
    """How the executor reacts to one error kind.

    ``exclude_credential`` adds the credential to the order's failed list;
    ``breaker_weight`` is the number of failures reported to the breaker.
    """

    exclude_credential: bool
    breaker_weight: int


ERROR_POLICIES: dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.AUTH: ErrorPolicy(exclude_credential=True, breaker_weight=1),
    ErrorKind.RATE_LIMIT: ErrorPolicy(exclude_credential=False, breaker_weight=0),
    # Bounded by max_attempts; funds rarely appear by retrying.
    ErrorKind.INSUFFICIENT_FUNDS: ErrorPolicy(exclude_credential=False, breaker_weight=0),
    ErrorKind.NETWORK: ErrorPolicy(exclude_credential=False, breaker_weight=1),
    ErrorKind.UNKNOWN: ErrorPolicy(exclude_credential=False, breaker_weight=1),
}


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, AuthError):
        return ErrorKind.AUTH
    if isinstance(exc, RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(exc, InsufficientFundsError):
        return ErrorKind.INSUFFICIENT_FUNDS
    if isinstance(exc, (NetworkError, asyncio.TimeoutError, httpx.RequestError, ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return ErrorKind.AUTH
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status >= 500:
            return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def policy_for(kind: ErrorKind, rate_limit_counts_as_failure: bool = False) -> ErrorPolicy:
    policy = ERROR_POLICIES[kind]
    if kind == ErrorKind.RATE_LIMIT and rate_limit_counts_as_failure:
        return ErrorPolicy(exclude_credential=False, breaker_weight=1)
    return policy


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "submission timed out"
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
