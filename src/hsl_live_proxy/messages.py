"""Parse client messages and serialize outbound ones.

Inbound classification pipeline::

    raw text frame
      │
      ├─ JSON parse failure            → SubscriptionMessageError
      ├─ not an object / no ``msg``    → SubscriptionMessageError
      ├─ msg = "updateSubscription"
      │     ├─ schema mismatch         → SubscriptionMessageError
      │     └─ valid                   → UpdateSubscription
      └─ any other ``msg``             → UnrecognizedMessage

Outbound frames are either a serialized data point or the JSON string
``"batchComplete"``.
"""

from __future__ import annotations

from typing import Any

import jsonschema
from jsonschema.exceptions import best_match
import orjson

from hsl_live_proxy.errors import SubscriptionMessageError
from hsl_live_proxy.models import (
    SUBSCRIBABLE_VEHICLE_TYPES,
    ClientMessage,
    DataPoint,
    Subscription,
    UnrecognizedMessage,
    UpdateSubscription,
    VehicleType,
)

UPDATE_SUBSCRIPTION = "updateSubscription"

BATCH_COMPLETE = orjson.dumps("batchComplete").decode()

SUBSCRIPTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "vehicleType": {
            "enum": [vt.value for vt in SUBSCRIBABLE_VEHICLE_TYPES] + [None],
        },
        "routes": {
            "type": "array",
            "items": {"type": "string"},
        },
    },
}

_subscription_validator = jsonschema.Draft7Validator(SUBSCRIPTION_SCHEMA)

# Longest slice of a rejected frame quoted in error messages.
MAX_QUOTED_PAYLOAD = 200


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Classify a single frame received from a subscriber.

    Raises
    ------
    SubscriptionMessageError
        When the frame is not a JSON object with a ``msg`` discriminator, or
        an ``updateSubscription`` carries an invalid ``subscription``.
    """
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise SubscriptionMessageError(
            f"Unparsable message {_quote(raw)}: {exc}"
        ) from exc

    if not isinstance(message, dict) or not isinstance(message.get("msg"), str):
        raise SubscriptionMessageError(
            f"Message has no 'msg' discriminator: {_quote(raw)}"
        )

    msg = message["msg"]
    if msg == UPDATE_SUBSCRIPTION:
        return UpdateSubscription(_parse_subscription(message.get("subscription")))

    return UnrecognizedMessage(msg=msg, payload=message)


def _parse_subscription(raw: Any) -> Subscription:
    if raw is None:
        raw = {}

    error = best_match(_subscription_validator.iter_errors(raw))
    if error is not None:
        raise SubscriptionMessageError(f"Invalid subscription: {error.message}")

    vehicle_type = raw.get("vehicleType")
    return Subscription(
        vehicle_type=VehicleType(vehicle_type) if vehicle_type is not None else None,
        routes=frozenset(raw.get("routes", [])),
    )


def serialize_data_point(data_point: DataPoint) -> str:
    """Serialize *data_point* to the JSON text frame sent to subscribers."""
    return orjson.dumps(data_point.to_wire()).decode()


def _quote(raw: str | bytes) -> str:
    text = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    if len(text) > MAX_QUOTED_PAYLOAD:
        text = text[:MAX_QUOTED_PAYLOAD] + "..."
    return repr(text)
