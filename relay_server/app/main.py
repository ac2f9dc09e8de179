"""FastAPI entrypoint for the realtime session relay.

This module performs three primary responsibilities:
1. Configure process logging from environment settings.
2. Host the websocket endpoint that pairs each client with one credentialed
   upstream realtime connection.
3. Serve the app with uvicorn on the configured interface and port.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI, WebSocket

from shared.errors import RelayConnectionError

from .config import settings
from .relay.connection import RelayConnection

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RelayConfig:
    """Static per-process relay configuration shared by all connections.

    Attributes:
        upstream_url: Realtime service websocket URL.
        credential: Upstream secret; never exposed to relay clients.
        beta_header: Protocol marker sent as `OpenAI-Beta`.
        connect_timeout_s: Upstream opening handshake timeout.
        close_timeout_s: Upstream closing handshake timeout.
        log_sample_every_n: Frame sampling cadence for debug logs.
        verbose_frame_logging: Logs every relayed frame when True.
    """

    upstream_url: str
    credential: str
    beta_header: str = "realtime=v1"
    connect_timeout_s: float = 10.0
    close_timeout_s: float = 5.0
    log_sample_every_n: int = 200
    verbose_frame_logging: bool = False


def _configure_logging() -> None:
    """Configures runtime log level for relay lifecycle tracing."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    websockets_level = getattr(
        logging,
        settings.WEBSOCKETS_LOG_LEVEL.upper(),
        logging.INFO,
    )
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)

    _LOGGER.setLevel(level)
    logging.getLogger("relay_server").setLevel(level)
    logging.getLogger("websockets").setLevel(websockets_level)
    logging.getLogger("websockets.client").setLevel(websockets_level)
    _LOGGER.debug(
        "Logging configured for relay server.",
        extra={
            "log_level": settings.LOG_LEVEL,
            "websockets_log_level": settings.WEBSOCKETS_LOG_LEVEL,
        },
    )


def _build_config(upstream_url: str, credential: str) -> RelayConfig:
    """Builds relay configuration, taking tuning values from settings."""
    return RelayConfig(
        upstream_url=upstream_url,
        credential=credential,
        beta_header=settings.OPENAI_BETA_HEADER,
        connect_timeout_s=settings.RELAY_CONNECT_TIMEOUT_S,
        close_timeout_s=settings.RELAY_CLOSE_TIMEOUT_S,
        log_sample_every_n=settings.RELAY_LOG_SAMPLE_EVERY_N,
        verbose_frame_logging=settings.VERBOSE_RELAY_FRAME_LOGGING,
    )


def create_app(config: RelayConfig | None = None) -> FastAPI:
    """Builds the relay application.

    Args:
        config: Relay configuration. Defaults to environment settings.

    Returns:
        FastAPI app exposing `/health` and the relay websocket at `/`.
    """
    application = FastAPI()
    application.state.relay_config = config or _build_config(
        settings.upstream_url,
        settings.OPENAI_API_KEY,
    )

    @application.get("/health")
    async def health() -> dict[str, str]:
        """Returns a minimal liveness response for health checks."""
        return {"status": "ok", "service": "relay_server"}

    @application.websocket("/")
    async def relay(websocket: WebSocket) -> None:
        """Relays one client websocket to the upstream realtime service.

        Args:
            websocket: Upgraded websocket connection from a console client.
        """
        relay_config: RelayConfig = websocket.app.state.relay_config
        _LOGGER.debug(
            "Relay websocket upgrade request received.",
            extra={"client": str(getattr(websocket, "client", None))},
        )
        # Refuse the upgrade before accepting when no credential is available.
        if not relay_config.credential:
            _LOGGER.error("Relay credential is not configured; rejecting client.")
            await websocket.close(code=1011, reason="Relay credential is not configured.")
            return

        connection = RelayConnection(
            websocket,
            relay_config.upstream_url,
            relay_config.credential,
            beta_header=relay_config.beta_header,
            connect_timeout_s=relay_config.connect_timeout_s,
            close_timeout_s=relay_config.close_timeout_s,
            log_sample_every_n=relay_config.log_sample_every_n,
            verbose_frame_logging=relay_config.verbose_frame_logging,
        )
        try:
            await connection.start()
            await connection.wait_until_done()
        except RelayConnectionError:
            _LOGGER.warning(
                "Relay connection aborted; upstream unavailable.",
                extra={"connection_id": connection.connection_id},
            )
        except Exception:
            _LOGGER.exception("Unhandled error while relaying websocket.")
            raise
        finally:
            # Idempotent and safe to call even if shutdown happened earlier.
            await connection.shutdown()

    return application


async def start(listen_host: str, listen_port: int, upstream_url: str, credential: str) -> None:
    """Serves the relay until the process is stopped.

    Args:
        listen_host: Interface to bind.
        listen_port: Port to bind.
        upstream_url: Realtime service websocket URL.
        credential: Upstream secret.
    """
    config = _build_config(upstream_url, credential)
    if not credential:
        _LOGGER.warning("OPENAI_API_KEY is empty; every relay client will be rejected.")
    _LOGGER.info(
        "Relay server listening.",
        extra={"host": listen_host, "port": listen_port, "upstream_url": upstream_url},
    )
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config),
            host=listen_host,
            port=listen_port,
            log_level=settings.LOG_LEVEL.lower(),
        )
    )
    await server.serve()


def run() -> None:
    """Console-script entrypoint for `realtime-relay`."""
    _configure_logging()
    asyncio.run(
        start(
            settings.RELAY_HOST,
            settings.RELAY_PORT,
            settings.upstream_url,
            settings.OPENAI_API_KEY,
        )
    )


_configure_logging()
app = create_app()


if __name__ == "__main__":
    run()
