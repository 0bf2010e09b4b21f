"""
Credential lookup for provider adapters.

Configuration only carries a reference (``credentials_ref``); the key
material is resolved at call time through a SecretProvider and held as a
pydantic SecretStr so it never shows up in reprs or logs.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from pydantic import SecretStr

logger = logging.getLogger(__name__)


class SecretNotFound(LookupError):
    """Raised when no provider in the chain can resolve a reference."""


class SecretProvider(ABC):

    @abstractmethod
    async def get(self, ref: str) -> SecretStr:
        """Resolve a credential reference or raise SecretNotFound."""


class EnvSecretProvider(SecretProvider):
    """Reads ``<prefix><REF>`` from the process environment."""

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix

    async def get(self, ref: str) -> SecretStr:
        name = f"{self._prefix}{ref}".upper().replace("-", "_")
        value = os.environ.get(name, "")
        if not value:
            raise SecretNotFound(f"Secret '{ref}' not found in environment")
        return SecretStr(value)


class StaticSecretProvider(SecretProvider):
    """In-memory secrets, for tests and local development."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = {k: SecretStr(v) for k, v in (secrets or {}).items()}

    def add(self, ref: str, value: str) -> None:
        self._secrets[ref] = SecretStr(value)

    async def get(self, ref: str) -> SecretStr:
        try:
            return self._secrets[ref]
        except KeyError:
            raise SecretNotFound(f"Secret '{ref}' not configured") from None


class ChainedSecretProvider(SecretProvider):
    """Tries each provider in order; the first one that resolves wins."""

    def __init__(self, *providers: SecretProvider) -> None:
        self._providers = list(providers)

    def add_provider(self, provider: SecretProvider) -> None:
        self._providers.append(provider)

    async def get(self, ref: str) -> SecretStr:
        for provider in self._providers:
            try:
                return await provider.get(ref)
            except SecretNotFound:
                logger.debug("%s could not resolve '%s'", type(provider).__name__, ref)
        raise SecretNotFound(f"Secret '{ref}' could not be resolved by any provider")
