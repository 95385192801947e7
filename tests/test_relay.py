"""Tests for the relay: connection lifecycle and message handling."""

import asyncio

import orjson
import websockets.exceptions
from websockets.asyncio.client import connect

from hsl_live_proxy.config import AppConfig, ServerConfig, UpstreamConfig
from hsl_live_proxy.connection import UpstreamConnection
from hsl_live_proxy.messages import BATCH_COMPLETE
from hsl_live_proxy.models import VehicleType
from hsl_live_proxy.relay import Relay

from fakes import FakeTransport, RecordingSubscriber, settle


class FakeUpstream:
    """Counts lifecycle transitions instead of opening sockets."""

    def __init__(self) -> None:
        self.is_connected = False
        self.connects = 0
        self.disconnects = 0

    def connect(self) -> None:
        self.connects += 1
        self.is_connected = True

    def disconnect(self) -> None:
        self.disconnects += 1
        self.is_connected = False

    async def wait_closed(self) -> None:
        pass


def _subscribe(vehicle_type: str | None = "bus", routes: list | None = None) -> str:
    sub: dict = {"vehicleType": vehicle_type}
    if routes is not None:
        sub["routes"] = routes
    return orjson.dumps({"msg": "updateSubscription", "subscription": sub}).decode()


def _relay() -> tuple[Relay, FakeUpstream]:
    upstream = FakeUpstream()
    return Relay(AppConfig(), upstream=upstream), upstream


def test_no_upstream_without_subscribers() -> None:
    """Nothing is connected before any client subscribes."""
    relay, upstream = _relay()
    relay.subscriber_connected(RecordingSubscriber())
    assert upstream.connects == 0
    assert upstream.is_connected is False


def test_lifecycle() -> None:
    """First subscription connects once; last disconnect closes once; then reopens."""
    relay, upstream = _relay()
    a, b = RecordingSubscriber(), RecordingSubscriber()
    relay.subscriber_connected(a)
    relay.subscriber_connected(b)

    relay.handle_message(a, _subscribe("bus"))
    relay.handle_message(b, _subscribe("tram", ["4"]))
    relay.handle_message(a, _subscribe("metro"))
    assert upstream.connects == 1

    relay.subscriber_disconnected(a)
    assert upstream.disconnects == 0
    relay.subscriber_disconnected(b)
    assert upstream.disconnects == 1
    assert upstream.is_connected is False

    c = RecordingSubscriber()
    relay.subscriber_connected(c)
    relay.handle_message(c, _subscribe("ferry"))
    assert upstream.connects == 2


def test_unsubscribed_client_disconnect_without_upstream() -> None:
    """Leaving without ever subscribing does not touch the upstream."""
    relay, upstream = _relay()
    a = RecordingSubscriber()
    relay.subscriber_connected(a)
    relay.subscriber_disconnected(a)
    assert upstream.connects == 0
    assert upstream.disconnects == 0


def test_subscription_replaced_wholesale() -> None:
    """Each update replaces the previous subscription."""
    relay, _ = _relay()
    a = RecordingSubscriber()
    relay.subscriber_connected(a)

    relay.handle_message(a, _subscribe("bus", ["6", "10"]))
    relay.handle_message(a, _subscribe("tram"))

    assert a.subscription.vehicle_type is VehicleType.TRAM
    assert a.subscription.routes == frozenset()


def test_invalid_messages_are_ignored() -> None:
    """Bad or unknown frames are dropped and the client stays registered."""
    relay, upstream = _relay()
    a = RecordingSubscriber()
    relay.subscriber_connected(a)

    relay.handle_message(a, "{garbage")
    relay.handle_message(a, '{"msg": "ping"}')
    relay.handle_message(a, _subscribe("zeppelin"))

    assert a.subscription is None
    assert upstream.connects == 0
    assert list(relay.dispatcher) == [a]


def test_upstream_failure_reconnects_on_next_subscription() -> None:
    """After a transport failure only new subscriber demand reconnects."""
    relay, upstream = _relay()
    a = RecordingSubscriber()
    relay.subscriber_connected(a)
    relay.handle_message(a, _subscribe("bus"))

    upstream.is_connected = False  # the feed dropped
    assert upstream.connects == 1

    relay.handle_message(a, _subscribe("bus", ["6"]))
    assert upstream.connects == 2


def test_feed_to_subscribers_end_to_end() -> None:
    """Batches read from the feed reach the matching subscribers."""
    config = AppConfig(upstream=UpstreamConfig(username="u", password="p"))
    transport = FakeTransport()

    async def scenario() -> tuple[RecordingSubscriber, RecordingSubscriber]:
        relay = Relay(config)
        relay.upstream = UpstreamConnection(
            config.upstream, relay.dispatcher.handle_batch, open_connection=transport
        )
        bus_6 = RecordingSubscriber()
        idle = RecordingSubscriber()
        relay.subscriber_connected(bus_6)
        relay.subscriber_connected(idle)

        relay.handle_message(bus_6, _subscribe("bus", ["6"]))
        await settle()
        assert relay.upstream.is_connected

        transport.readers[0].feed_data(
            b"B1;Bus;0;ip;60.1;24.9;;;;;;;1006\r\n"
            b"B2;Bus;0;ip;60.2;24.9;;;;;;;1010\r\n"
        )
        await settle()

        relay.subscriber_disconnected(bus_6)
        relay.subscriber_disconnected(idle)
        assert relay.upstream.is_connected is False
        await relay.upstream.wait_closed()
        return bus_6, idle

    bus_6, idle = asyncio.run(scenario())

    assert bytes(transport.writers[0].written) == b"&u;p onroute:1&"
    assert [orjson.loads(m)["id"] for m in bus_6.received[:-1]] == ["B1"]
    assert bus_6.received[-1] == BATCH_COMPLETE
    assert idle.received == [BATCH_COMPLETE]


class FakeConnection:
    """Async-iterable stand-in for a WebSocket server connection."""

    remote_address = ("127.0.0.1", 50000)

    def __init__(self, frames: list[str], error: Exception | None = None) -> None:
        self._frames = frames
        self._error = error

    async def _iterate(self):
        for frame in self._frames:
            yield frame
        if self._error is not None:
            raise self._error

    def __aiter__(self):
        return self._iterate()


def test_handler_registers_and_cleans_up() -> None:
    """The WebSocket handler drives connect, subscribe and disconnect."""
    relay, upstream = _relay()
    connection = FakeConnection([_subscribe("tram", ["4"]), '{"msg": "nope"}'])

    asyncio.run(relay.handler(connection))

    assert upstream.connects == 1
    assert upstream.disconnects == 1
    assert len(relay.dispatcher) == 0


def test_handler_survives_abnormal_close() -> None:
    """A client dropping its connection is treated as a disconnect."""
    relay, upstream = _relay()
    error = websockets.exceptions.ConnectionClosedError(None, None)
    connection = FakeConnection([_subscribe("bus")], error=error)

    asyncio.run(relay.handler(connection))

    assert upstream.disconnects == 1
    assert len(relay.dispatcher) == 0


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


def test_serve_until_shutdown() -> None:
    """A live client subscribes; shutdown closes it, returns and drops upstream."""
    upstream = FakeUpstream()

    async def scenario() -> asyncio.Task:
        relay = Relay(
            AppConfig(server=ServerConfig(host="127.0.0.1", port=0)),
            upstream=upstream,
        )
        serving = asyncio.create_task(relay.serve())
        await _wait_for(lambda: relay.server is not None)
        port = relay.server.sockets[0].getsockname()[1]

        async with connect(f"ws://127.0.0.1:{port}") as client:
            await client.send(_subscribe("bus"))
            await _wait_for(lambda: upstream.connects == 1)

            relay.request_shutdown()
            await asyncio.wait_for(serving, timeout=5)

        assert len(relay.dispatcher) == 0
        return serving

    serving = asyncio.run(scenario())

    assert serving.done()
    assert serving.exception() is None
    assert upstream.connects == 1
    assert upstream.disconnects == 1
    assert upstream.is_connected is False
