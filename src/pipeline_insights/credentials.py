"""Bearer-token acquisition for the two backends.

Adapters only depend on the :class:`TokenProvider` protocol; the concrete
provider is chosen by the caller when connecting.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pipeline_insights.errors import TransportError

logger = logging.getLogger(__name__)

# Azure DevOps resource id and the Kusto audience used by the analytics cluster.
AZDO_AUDIENCE = "499b84ac-1321-427f-aa17-267ca6975798/.default"
KUSTO_AUDIENCE = "https://kusto.kusto.windows.net/.default"


class TokenProvider(Protocol):
    """Supplies a bearer token for a scope/audience string."""

    async def get_token(self, audience: str) -> str: ...


class StaticTokenProvider:
    """Return a pre-acquired token for every audience.

    Useful for tests and for tokens minted out of band
    (e.g. ``az account get-access-token``).
    """

    def __init__(self, token: str) -> None:
        token = token.strip()
        if not token:
            raise ValueError("token must be a non-empty string")
        self._token = token

    async def get_token(self, audience: str) -> str:
        logger.debug("Using static token for audience %s", audience)
        return self._token


class AzureIdentityTokenProvider:
    """Acquire tokens through ``azure.identity``'s default credential chain."""

    def __init__(self, credential=None) -> None:
        if credential is None:
            try:
                from azure.identity.aio import DefaultAzureCredential

                credential = DefaultAzureCredential()
            except Exception as exc:
                raise TransportError(f"Failed to set up the Azure credential chain: {exc}") from exc
        self._credential = credential

    async def get_token(self, audience: str) -> str:
        try:
            access_token = await self._credential.get_token(audience)
        except Exception as exc:
            raise TransportError(f"Failed to acquire a token for {audience}: {exc}") from exc
        logger.debug("Acquired token for audience %s", audience)
        return access_token.token

    async def aclose(self) -> None:
        await self._credential.close()
