from __future__ import annotations

import asyncio

import httpx
import pytest

from shared.errors import RetrievalError
from voice_console.app.retrieval_client import RetrievalClient


def run(coro):
    return asyncio.run(coro)


def _client(handler) -> RetrievalClient:
    client = RetrievalClient("http://context.test/api/context")
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


def test_lookup_sends_query_and_returns_message() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["query"] = request.url.params.get("query")
        return httpx.Response(200, json={"message": "Store hours are 9 to 5."})

    client = _client(handler)

    message = run(client.lookup("when do you open"))

    assert message == "Store hours are 9 to 5."
    assert captured == {"method": "GET", "query": "when do you open"}

    run(client.close())


def test_lookup_without_message_returns_empty() -> None:
    client = _client(lambda _request: httpx.Response(200, json={}))

    assert run(client.lookup("anything")) == ""

    run(client.close())


def test_lookup_http_failure_raises_retrieval_error() -> None:
    client = _client(lambda _request: httpx.Response(500, json={"error": "boom"}))

    with pytest.raises(RetrievalError):
        run(client.lookup("anything"))

    run(client.close())


def test_lookup_invalid_body_raises_retrieval_error() -> None:
    client = _client(lambda _request: httpx.Response(200, content=b"not json"))

    with pytest.raises(RetrievalError):
        run(client.lookup("anything"))

    run(client.close())
