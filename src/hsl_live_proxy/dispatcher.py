"""Fan decoded feed batches out to the connected subscribers.

For every batch::

    split → decode (skip DecodeError) → for each data point:
        serialize once → deliver to every subscriber whose subscription matches
    → deliver "batchComplete" to every subscriber

Delivery never awaits, so a whole batch is dispatched within one event-loop
step and the subscriber list cannot change part-way through it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

from websockets.asyncio.server import broadcast
from websockets.protocol import State

from hsl_live_proxy.decoder import decode_record, split_batch
from hsl_live_proxy.errors import DecodeError, DeliveryError
from hsl_live_proxy.matcher import matches
from hsl_live_proxy.messages import BATCH_COMPLETE, serialize_data_point
from hsl_live_proxy.models import Subscription

logger = logging.getLogger(__name__)


class Subscriber:
    """A connected WebSocket client and its current subscription."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection
        self.subscription: Optional[Subscription] = None

    @property
    def remote_address(self) -> Any:
        return getattr(self.connection, "remote_address", None)

    def deliver(self, message: str) -> None:
        """Queue *message* for sending without waiting for the write.

        Raises
        ------
        DeliveryError
            If the connection is closing or closed.
        """
        state = self.connection.protocol.state
        if state is not State.OPEN:
            raise DeliveryError(f"Connection to {self.remote_address} is {state.name}")
        broadcast([self.connection], message)

    def __repr__(self) -> str:
        return f"<Subscriber {self.remote_address} {self.subscription}>"


class BroadcastDispatcher:
    """Ordered collection of live subscribers plus the batch fan-out."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def add(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def remove(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def __len__(self) -> int:
        return len(self._subscribers)

    def __iter__(self) -> Iterator[Subscriber]:
        return iter(list(self._subscribers))

    def handle_batch(self, batch: str) -> int:
        """Decode *batch* and deliver it to the matching subscribers.

        Parameters
        ----------
        batch:
            Raw batch text as received from the feed.

        Returns
        -------
        int
            The number of records that decoded successfully.
        """
        records = split_batch(batch)
        decoded = 0

        for record in records:
            try:
                data_point = decode_record(record)
            except DecodeError as exc:
                logger.warning("Skipping undecodable record: %s (%r)", exc, exc.record)
                continue

            decoded += 1
            payload: Optional[str] = None
            for subscriber in self._subscribers:
                if not matches(data_point, subscriber.subscription):
                    continue
                if payload is None:
                    payload = serialize_data_point(data_point)
                self._deliver(subscriber, payload)

        self.broadcast(BATCH_COMPLETE)

        logger.debug(
            "Received %d data points in the last batch (%d bytes, %d decoded)",
            len(records),
            len(batch),
            decoded,
        )
        return decoded

    def broadcast(self, message: str) -> None:
        """Deliver *message* to every live subscriber."""
        for subscriber in self._subscribers:
            self._deliver(subscriber, message)

    def _deliver(self, subscriber: Subscriber, message: str) -> None:
        try:
            subscriber.deliver(message)
        except DeliveryError as exc:
            logger.debug("Dropped message for %r: %s", subscriber, exc)
