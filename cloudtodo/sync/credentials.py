"""Credential resolution for the remote service."""

import logging
from abc import ABC, abstractmethod

from .remote_client import AuthenticationError

logger = logging.getLogger(__name__)


class CredentialProvider(ABC):
    """Resolves an account reference into request headers."""

    @abstractmethod
    async def resolve(self, account: str | None) -> dict[str, str]:
        """Resolve credentials for an account.

        Args:
            account: Account name, or None for the default account.

        Returns:
            Headers to attach to every request of the sync cycle.

        Raises:
            AuthenticationError: Credentials are unavailable or refused.
            NetworkError: The identity provider could not be reached.
        """
        pass


class StaticTokenCredentials(CredentialProvider):
    """Bearer tokens configured up front, keyed by account name."""

    def __init__(self, tokens: dict[str, str] | str | None = None):
        """Initialize with tokens.

        Args:
            tokens: Mapping of account name to token, or a single token used
                for any account.
        """
        if isinstance(tokens, str):
            self._default: str | None = tokens
            self._tokens: dict[str, str] = {}
        else:
            self._default = None
            self._tokens = dict(tokens or {})

    async def resolve(self, account: str | None) -> dict[str, str]:
        token = self._tokens.get(account) if account else None
        if token is None:
            token = self._default

        if not token:
            logger.error(f"No credentials configured for account {account!r}")
            raise AuthenticationError(
                f"No token for account {account!r}", invalid_credentials=True
            )

        return {"Authorization": f"Bearer {token}"}
