"""Exchange connectors and credential sources."""

from src.connectors.credentials import Credential, CredentialProvider, StaticCredentialProvider
from src.connectors.errors import (
    AuthError,
    ExchangeError,
    InsufficientFundsError,
    NetworkError,
    RateLimitError,
    UnknownExchangeError,
)
from src.connectors.exchange import ExchangeClient, OrderFill
from src.connectors.kraken import KrakenRestClient
from src.connectors.paper import PaperExchangeClient

__all__ = [
    "AuthError",
    "Credential",
    "CredentialProvider",
    "ExchangeClient",
    "ExchangeError",
    "InsufficientFundsError",
    "KrakenRestClient",
    "NetworkError",
    "OrderFill",
    "PaperExchangeClient",
    "RateLimitError",
    "StaticCredentialProvider",
    "UnknownExchangeError",
]
