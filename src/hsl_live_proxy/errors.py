"""Exception types raised by the proxy.

None of these are process-fatal; each is scoped to the smallest unit it
affects (one record, one upstream connection, one client message, one
subscriber).
"""


class ProxyError(Exception):
    """Base class for all proxy errors."""


class DecodeError(ProxyError):
    """A single feed record could not be decoded."""

    def __init__(self, message: str, record: str = "") -> None:
        super().__init__(message)
        self.record = record


class UpstreamTransportError(ProxyError):
    """The upstream feed connection failed or was closed by the server."""


class SubscriptionMessageError(ProxyError):
    """A client message could not be parsed or failed validation."""


class DeliveryError(ProxyError):
    """A message could not be delivered to one subscriber."""
