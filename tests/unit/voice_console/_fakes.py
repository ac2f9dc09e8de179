from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

_CLOSE = object()


def run(coro):
    return asyncio.run(coro)


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Polls until ``predicate`` holds, yielding to other tasks in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class FakeWebsocketConnection:
    """Stands in for a ``websockets`` client connection."""

    def __init__(self) -> None:
        self.sent: list[str | bytes] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, message: str | bytes) -> None:
        self._incoming.put_nowait(message)

    def feed_event(self, event: dict[str, Any]) -> None:
        self.feed(json.dumps(event))

    def finish(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def sent_events(self) -> list[dict[str, Any]]:
        return [json.loads(message) for message in self.sent if isinstance(message, str)]

    def sent_types(self) -> list[str]:
        return [event["type"] for event in self.sent_events()]

    async def send(self, message: str | bytes) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str | bytes:
        message = await self._incoming.get()
        if message is _CLOSE:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Replacement for ``websockets.asyncio.client.connect``."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connections: list[FakeWebsocketConnection] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebsocketConnection:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        connection = FakeWebsocketConnection()
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeWebsocketConnection:
        return self.connections[-1]


class FakePortAudioError(Exception):
    pass


class FakeStream:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.started = False
        self.closed = False
        self.close_count = 0

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True
        self.close_count += 1


class FakeSounddevice:
    """Module-shaped stand-in for ``sounddevice``."""

    PortAudioError = FakePortAudioError

    def __init__(self, *, fail_input: bool = False, fail_output: bool = False) -> None:
        self.fail_input = fail_input
        self.fail_output = fail_output
        self.input_streams: list[FakeStream] = []
        self.output_streams: list[FakeStream] = []

    def RawInputStream(self, **kwargs: Any) -> FakeStream:  # noqa: N802
        if self.fail_input:
            raise FakePortAudioError("no input device")
        stream = FakeStream(**kwargs)
        self.input_streams.append(stream)
        return stream

    def RawOutputStream(self, **kwargs: Any) -> FakeStream:  # noqa: N802
        if self.fail_output:
            raise FakePortAudioError("no output device")
        stream = FakeStream(**kwargs)
        self.output_streams.append(stream)
        return stream


def render(stream: FakeStream, frames: int) -> bytes:
    """Drives an output stream callback once and returns the rendered bytes."""
    outdata = bytearray(frames * 2)
    stream.callback(memoryview(outdata), frames, None, None)
    return bytes(outdata)


def pcm(sample_count: int, value: int = 1000) -> bytes:
    return value.to_bytes(2, "little", signed=True) * sample_count


class FakeRetrievalClient:
    def __init__(self, message: str = "", error: Exception | None = None) -> None:
        self.message = message
        self.error = error
        self.queries: list[str] = []
        self.closed = False

    async def lookup(self, query: str) -> str:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.message

    async def close(self) -> None:
        self.closed = True
