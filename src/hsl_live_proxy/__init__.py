"""HSL Live Proxy — relays the HSL live telemetry feed to WebSocket subscribers."""

__version__ = "1.0.0"
