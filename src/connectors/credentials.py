"""Exchange credentials and where the executor gets them from."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from src.config.settings import CredentialConfig


@dataclass(frozen=True)
class Credential:
    id: str
    api_key: str
    api_secret: str = field(repr=False)
    name: str = ""
    is_active: bool = True


class CredentialProvider(Protocol):
    def get_credentials(self, user_id: str) -> list[Credential]:
        """Active credentials for ``user_id`` in preference order."""
        ...


class StaticCredentialProvider:
    """Credentials declared in settings, keyed by user id."""

    def __init__(self, credentials: dict[str, list[CredentialConfig]]) -> None:
        self._credentials = {
            user_id: [
                Credential(
                    id=c.id,
                    api_key=c.api_key,
                    api_secret=c.api_secret,
                    name=c.name or c.id,
                    is_active=c.is_active,
                )
                for c in configs
            ]
            for user_id, configs in credentials.items()
        }

    def get_credentials(self, user_id: str) -> list[Credential]:
        return [c for c in self._credentials.get(user_id, []) if c.is_active]
