"""HTTP client for the context retrieval collaborator."""

from __future__ import annotations

import logging
import time

import httpx
from pydantic import ValidationError

from shared.errors import RetrievalError
from shared.schemas import ContextResponse

_LOGGER = logging.getLogger(__name__)


class RetrievalClient:
    """Looks up advisory context text for a user utterance."""

    def __init__(self, url: str, timeout_s: float = 10.0) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout_s)

    async def lookup(self, query: str) -> str:
        """Returns context text for ``query``; empty when nothing matched.

        Raises:
            RetrievalError: If the request fails or the body is malformed.
        """
        started = time.monotonic()
        try:
            response = await self._client.get(self.url, params={"query": query})
            response.raise_for_status()
            body = ContextResponse.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise RetrievalError(f"Context lookup failed: {exc}") from exc
        _LOGGER.debug(
            "Context lookup completed.",
            extra={
                "query_length": len(query),
                "message_length": len(body.message),
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return body.message

    async def close(self) -> None:
        await self._client.aclose()
