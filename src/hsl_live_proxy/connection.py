"""TCP connection to the HSL live telemetry feed.

Two-state machine driven only by subscriber demand::

    DISCONNECTED → connect()    → CONNECTED
    CONNECTED    → disconnect() → DISCONNECTED
    CONNECTED    → (transport error / EOF) → DISCONNECTED

On connect the authentication handshake ``&<username>;<password> <filter>&``
is written once.  The server then pushes raw batches and single ``\\r``
keep-alive pings.  A failed connection is not retried; the next
:meth:`UpstreamConnection.connect` opens a fresh one.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Optional

from hsl_live_proxy.config import UpstreamConfig
from hsl_live_proxy.errors import UpstreamTransportError

logger = logging.getLogger(__name__)

PING = "\r"

OpenConnection = Callable[..., Awaitable[tuple[asyncio.StreamReader, Any]]]


class ConnectionState(enum.Enum):
    """States of the upstream connection."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTED = "CONNECTED"


def build_handshake(config: UpstreamConfig) -> bytes:
    """Return the authentication/subscription message for *config*."""
    return f"&{config.username};{config.password} {config.filter}&".encode()


class UpstreamConnection:
    """Owns the single shared connection to the feed.

    Parameters
    ----------
    config:
        Feed host, port, credentials and filter directive.
    on_batch:
        Called synchronously with every received batch (decoded text).
    open_connection:
        Coroutine returning a ``(reader, writer)`` pair; defaults to
        :func:`asyncio.open_connection`.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        on_batch: Callable[[str], Any],
        open_connection: OpenConnection = asyncio.open_connection,
    ) -> None:
        self._config = config
        self._on_batch = on_batch
        self._open_connection = open_connection
        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._last_task: Optional[asyncio.Task] = None
        self._writer = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def connect(self) -> None:
        """Open the feed connection unless one already exists.

        Must be called from within a running event loop.
        """
        if self.is_connected:
            return

        self._set_state(ConnectionState.CONNECTED)
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._last_task = self._task

    def disconnect(self) -> None:
        """Tear down the feed connection, if any."""
        if not self.is_connected:
            return

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._close_writer()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait for the most recent reader task to finish."""
        task = self._last_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ── internal: connect + receive ─────────────────────────────────

    async def _run(self) -> None:
        host, port = self._config.host, self._config.port
        try:
            try:
                reader, writer = await self._open_connection(host, port)
            except OSError as exc:
                raise UpstreamTransportError(
                    f"Could not connect to {host}:{port}: {exc}"
                ) from exc

            self._writer = writer
            logger.info("Successfully connected to %s:%s", host, port)
            logger.info("Sending authentication")
            writer.write(build_handshake(self._config))
            await writer.drain()

            while True:
                chunk = await reader.read(self._config.read_size)
                if not chunk:
                    raise UpstreamTransportError(f"{host}:{port} closed the connection")
                self._handle_data(chunk)

        except UpstreamTransportError as exc:
            logger.warning("Upstream connection lost: %s", exc)
        except OSError as exc:
            logger.warning("Upstream network error: %s", exc)
        finally:
            # A newer connection may already own the state after disconnect().
            if self._task is asyncio.current_task():
                self._task = None
                self._close_writer()
                self._set_state(ConnectionState.DISCONNECTED)

    def _handle_data(self, chunk: bytes) -> None:
        data = chunk.decode("utf-8", errors="replace")
        if data == PING:
            logger.debug("Received PING from server")
            return
        self._on_batch(data)

    # ── helpers ─────────────────────────────────────────────────────

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("Connection state: %s → %s", old.value, new.value)
