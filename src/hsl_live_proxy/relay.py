"""The relay: sole owner of the subscriber set and the upstream connection.

All mutation goes through four entry points, each running to completion
inside one event-loop step:

* :meth:`Relay.subscriber_connected`
* :meth:`Relay.subscriber_disconnected`
* :meth:`Relay.handle_message` / :meth:`Relay.update_subscription`
* batch delivery, via :meth:`BroadcastDispatcher.handle_batch`

The upstream feed is opened by the first subscription update and closed
when the last subscriber leaves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import websockets.exceptions
from websockets.asyncio.server import ServerConnection, serve

from hsl_live_proxy.config import AppConfig
from hsl_live_proxy.connection import UpstreamConnection
from hsl_live_proxy.dispatcher import BroadcastDispatcher, Subscriber
from hsl_live_proxy.errors import SubscriptionMessageError
from hsl_live_proxy.messages import parse_client_message
from hsl_live_proxy.models import Subscription, UnrecognizedMessage, UpdateSubscription

logger = logging.getLogger(__name__)


class Relay:
    """Bridges the upstream feed to the WebSocket subscribers.

    Parameters
    ----------
    config:
        Full application config.
    upstream:
        Optional pre-built upstream connection (anything with ``connect``,
        ``disconnect``, ``wait_closed`` and ``is_connected``).  Built from
        ``config.upstream`` when omitted.
    """

    def __init__(self, config: AppConfig, upstream: Optional[Any] = None) -> None:
        self._config = config
        self.dispatcher = BroadcastDispatcher()
        if upstream is None:
            upstream = UpstreamConnection(
                config.upstream, on_batch=self.dispatcher.handle_batch
            )
        self.upstream = upstream
        self._shutdown = asyncio.Event()
        self.server: Optional[Any] = None

    # ── entry points ────────────────────────────────────────────────

    def subscriber_connected(self, subscriber: Subscriber) -> None:
        logger.info(
            "Got new client connection from %s, waiting for subscription ...",
            subscriber.remote_address,
        )
        self.dispatcher.add(subscriber)

    def subscriber_disconnected(self, subscriber: Subscriber) -> None:
        self.dispatcher.remove(subscriber)
        logger.info(
            "Client %s disconnected (%d remaining)",
            subscriber.remote_address,
            len(self.dispatcher),
        )

        if len(self.dispatcher) == 0 and self.upstream.is_connected:
            logger.info("No more connected clients, disconnecting from upstream")
            self.upstream.disconnect()

    def handle_message(self, subscriber: Subscriber, raw: str | bytes) -> None:
        """Dispatch one inbound client frame; invalid frames are logged and dropped."""
        try:
            message = parse_client_message(raw)
        except SubscriptionMessageError as exc:
            logger.warning("Ignoring message from %s: %s", subscriber.remote_address, exc)
            return

        if isinstance(message, UpdateSubscription):
            self.update_subscription(subscriber, message.subscription)
        elif isinstance(message, UnrecognizedMessage):
            logger.warning('Unhandled message "%s" received', message.msg)

    def update_subscription(self, subscriber: Subscriber, subscription: Subscription) -> None:
        """Replace *subscriber*'s subscription and make sure the feed is open."""
        if not self.upstream.is_connected:
            self.upstream.connect()

        logger.info(
            "Got client subscription from %s: vehicleType=%s routes=%s",
            subscriber.remote_address,
            subscription.vehicle_type.value if subscription.vehicle_type else None,
            sorted(subscription.routes),
        )
        subscriber.subscription = subscription

    # ── WebSocket server ────────────────────────────────────────────

    async def handler(self, connection: ServerConnection) -> None:
        """Serve one WebSocket client for the lifetime of its connection."""
        subscriber = Subscriber(connection)
        self.subscriber_connected(subscriber)
        try:
            async for raw in connection:
                self.handle_message(subscriber, raw)
        except websockets.exceptions.ConnectionClosedError as exc:
            logger.info("Client %s connection error: %s", subscriber.remote_address, exc)
        finally:
            self.subscriber_disconnected(subscriber)

    def request_shutdown(self) -> None:
        """Signal :meth:`serve` to stop accepting clients and exit."""
        self._shutdown.set()

    async def serve(self) -> None:
        """Run the WebSocket server until :meth:`request_shutdown` is called."""
        host, port = self._config.server.host, self._config.server.port
        async with serve(self.handler, host, port) as server:
            self.server = server
            logger.info(
                "WebSocket server started, waiting for connections on port %d ...",
                port,
            )
            await self._shutdown.wait()

        if self.upstream.is_connected:
            self.upstream.disconnect()
        await self.upstream.wait_closed()
        logger.info("Relay shut down")
