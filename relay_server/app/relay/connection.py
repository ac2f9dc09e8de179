"""Per-client websocket relay between a console and the realtime service.

Each accepted client websocket is paired with exactly one credentialed
upstream websocket. Frames are forwarded verbatim in both directions:
1. Client frames -> upstream connection (text stays text, binary stays binary).
2. Upstream frames -> client websocket.

Payloads are never parsed. The credential is attached only to the upstream
handshake and nothing originating in the relay is written to the client.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.errors import RelayConnectionError

_LOGGER = logging.getLogger(__name__)

# Close codes that are reserved for local reporting and may not be sent on
# the wire. They are mapped before being propagated to the opposite leg.
_NORMAL_CLOSURE = 1000
_INTERNAL_ERROR = 1011
_NO_STATUS_CODES = frozenset({1005})
_ABNORMAL_CODES = frozenset({1004, 1006, 1015})


def sendable_close_code(code: int | None) -> int:
    """Maps an observed close code to one that may be sent in a close frame.

    Args:
        code: Close code observed on one leg, or None when none was received.

    Returns:
        Close code suitable for closing the opposite leg.
    """
    if code is None or code in _NO_STATUS_CODES:
        return _NORMAL_CLOSURE
    if code in _ABNORMAL_CODES or code < 1000 or code > 4999:
        return _INTERNAL_ERROR
    return code


class RelayConnection:
    """Bridges one client websocket with one upstream realtime websocket.

    Usage pattern:
    1. ``main.py`` creates one ``RelayConnection`` per accepted websocket.
    2. ``start()`` accepts the client and opens the upstream connection.
    3. ``wait_until_done()`` blocks until either leg ends.
    4. ``shutdown()`` closes the opposite leg with a matching status.

    Background tasks started by ``start()``:
    - ``_client_loop_task``: client frames -> upstream.
    - ``_upstream_loop_task``: upstream frames -> client.
    """

    def __init__(
        self,
        websocket: WebSocket,
        upstream_url: str,
        credential: str,
        *,
        beta_header: str = "realtime=v1",
        connect_timeout_s: float = 10.0,
        close_timeout_s: float = 5.0,
        log_sample_every_n: int = 200,
        verbose_frame_logging: bool = False,
    ) -> None:
        """Initializes per-client relay state.

        Args:
            websocket: Client websocket that has not yet been accepted.
            upstream_url: Realtime service websocket URL.
            credential: Secret used for the upstream `Authorization` header.
            beta_header: Protocol marker sent as `OpenAI-Beta`.
            connect_timeout_s: Upstream opening handshake timeout.
            close_timeout_s: Upstream closing handshake timeout.
            log_sample_every_n: Frame sampling cadence for debug logging.
            verbose_frame_logging: Logs every frame when True.
        """
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex[:12]
        self._upstream_url = upstream_url
        self._credential = credential
        self._beta_header = beta_header
        self._connect_timeout_s = connect_timeout_s
        self._close_timeout_s = close_timeout_s
        self._log_sample_every_n = max(1, log_sample_every_n)
        self._verbose_frame_logging = verbose_frame_logging

        self._upstream = None
        self._client_loop_task: asyncio.Task[None] | None = None
        self._upstream_loop_task: asyncio.Task[None] | None = None

        # First leg to end decides how the opposite leg is closed.
        self._closed_by: str | None = None
        self._close_code: int | None = None
        self._close_reason = ""

        self._is_shutting_down = False
        self._started_at = time.monotonic()
        self._client_frame_count = 0
        self._upstream_frame_count = 0
        self._client_bytes = 0
        self._upstream_bytes = 0

    def _upstream_headers(self) -> dict[str, str]:
        """Builds the upstream handshake headers.

        Returns:
            Authorization and protocol marker headers.
        """
        return {
            "Authorization": f"Bearer {self._credential}",
            "OpenAI-Beta": self._beta_header,
        }

    def _record_close(self, closed_by: str, code: int | None, reason: str | None) -> None:
        """Stores the first observed close so teardown can mirror it."""
        if self._closed_by is not None:
            return
        self._closed_by = closed_by
        self._close_code = code
        self._close_reason = reason or ""
        _LOGGER.debug(
            "Relay leg closed.",
            extra={
                "connection_id": self.connection_id,
                "closed_by": closed_by,
                "close_code": code,
            },
        )

    def _log_frame(self, direction: str, count: int, size: int) -> None:
        """Emits sampled per-frame debug logs."""
        if self._verbose_frame_logging or count % self._log_sample_every_n == 0:
            _LOGGER.debug(
                "Relayed frame.",
                extra={
                    "connection_id": self.connection_id,
                    "direction": direction,
                    "frame_count": count,
                    "bytes": size,
                },
            )

    async def start(self) -> None:
        """Accepts the client and opens the credentialed upstream connection.

        Raises:
            ValueError: If no upstream credential is configured.
            RelayConnectionError: If the upstream connection cannot be opened.
                The client websocket is closed with 1011 before raising.
        """
        if not self._credential:
            _LOGGER.debug("Relay credential missing during connection startup.")
            raise ValueError("OPENAI_API_KEY is required")

        await self.websocket.accept()
        _LOGGER.info(
            "Relay client accepted; connecting upstream.",
            extra={"connection_id": self.connection_id, "upstream_url": self._upstream_url},
        )
        try:
            self._upstream = await connect(
                self._upstream_url,
                additional_headers=self._upstream_headers(),
                max_size=None,
                open_timeout=self._connect_timeout_s,
                close_timeout=self._close_timeout_s,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            _LOGGER.warning(
                "Upstream connection failed.",
                extra={"connection_id": self.connection_id, "error": str(exc)},
            )
            self._is_shutting_down = True
            with contextlib.suppress(Exception):
                await self.websocket.close(code=_INTERNAL_ERROR, reason="Upstream connection failed.")
            raise RelayConnectionError(
                f"Could not connect to upstream realtime service: {exc}"
            ) from exc

        _LOGGER.info("Upstream connected.", extra={"connection_id": self.connection_id})
        self._client_loop_task = asyncio.create_task(self._client_to_upstream_loop())
        self._upstream_loop_task = asyncio.create_task(self._upstream_to_client_loop())

    async def wait_until_done(self) -> None:
        """Waits until either relay loop ends, then tears down both legs."""
        tasks = {task for task in (self._client_loop_task, self._upstream_loop_task) if task}
        if not tasks:
            _LOGGER.debug("RelayConnection.wait_until_done() called before start; returning early.")
            return
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Idempotently cancels loops and closes both legs exactly once.

        The leg that closed first determines the status used for the other
        one. When neither leg closed (external shutdown or loop failure) both
        are closed with the recorded status, defaulting to normal closure.
        """
        if self._is_shutting_down:
            return
        self._is_shutting_down = True

        await self._cancel_background_tasks()

        code = sendable_close_code(self._close_code) if self._closed_by else _NORMAL_CLOSURE
        reason = self._close_reason

        if self._upstream is not None and self._closed_by != "upstream":
            with contextlib.suppress(Exception):
                await self._upstream.close(code=code, reason=reason)

        if self._closed_by != "client" and self.websocket.client_state != WebSocketState.DISCONNECTED:
            with contextlib.suppress(Exception):
                await self.websocket.close(code=code, reason=reason)

        _LOGGER.info(
            "Relay connection closed.",
            extra={
                "connection_id": self.connection_id,
                "closed_by": self._closed_by,
                "close_code": code,
                "client_frames": self._client_frame_count,
                "upstream_frames": self._upstream_frame_count,
                "client_bytes": self._client_bytes,
                "upstream_bytes": self._upstream_bytes,
                "duration_s": round(time.monotonic() - self._started_at, 3),
            },
        )

    async def _cancel_background_tasks(self) -> None:
        """Cancels and awaits both relay loops, skipping the current task."""
        current = asyncio.current_task()
        tasks = [self._client_loop_task, self._upstream_loop_task]
        for task in tasks:
            if task and task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task and task is not current:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def _client_to_upstream_loop(self) -> None:
        """Forwards client frames to the upstream connection verbatim."""
        assert self._upstream is not None
        try:
            while not self._is_shutting_down:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    self._record_close("client", message.get("code"), message.get("reason"))
                    return
                text = message.get("text")
                if text is not None:
                    await self._upstream.send(text)
                    size = len(text)
                else:
                    data = message.get("bytes") or b""
                    await self._upstream.send(data)
                    size = len(data)
                self._client_frame_count += 1
                self._client_bytes += size
                self._log_frame("client_to_upstream", self._client_frame_count, size)
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect as exc:
            self._record_close("client", exc.code, exc.reason)
        except ConnectionClosed as exc:
            self._record_close("upstream", _received_code(exc), _received_reason(exc))
        except Exception:
            _LOGGER.exception("Client to upstream relay loop failed.", extra={"connection_id": self.connection_id})
            self._record_close("error", _INTERNAL_ERROR, "Relay failure.")

    async def _upstream_to_client_loop(self) -> None:
        """Forwards upstream frames to the client websocket verbatim."""
        assert self._upstream is not None
        try:
            async for message in self._upstream:
                if isinstance(message, str):
                    await self.websocket.send_text(message)
                else:
                    await self.websocket.send_bytes(bytes(message))
                self._upstream_frame_count += 1
                self._upstream_bytes += len(message)
                self._log_frame("upstream_to_client", self._upstream_frame_count, len(message))
            self._record_close(
                "upstream",
                getattr(self._upstream, "close_code", None),
                getattr(self._upstream, "close_reason", None),
            )
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            self._record_close("upstream", _received_code(exc), _received_reason(exc))
        except WebSocketDisconnect as exc:
            self._record_close("client", exc.code, exc.reason)
        except Exception:
            _LOGGER.exception("Upstream to client relay loop failed.", extra={"connection_id": self.connection_id})
            self._record_close("error", _INTERNAL_ERROR, "Relay failure.")


def _received_code(exc: ConnectionClosed) -> int | None:
    """Returns the close code received from the peer, if any."""
    return exc.rcvd.code if exc.rcvd is not None else 1006


def _received_reason(exc: ConnectionClosed) -> str:
    """Returns the close reason received from the peer, if any."""
    return exc.rcvd.reason if exc.rcvd is not None else ""
