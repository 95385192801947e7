"""Dataclass models for feed records, subscriptions, and client messages.

:class:`DataPoint` field order is the positional column order of the feed;
each field's ``wire`` metadata is the key it is published under.  Wire
dicts are serialized with ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Optional, Union


class VehicleType(str, enum.Enum):
    """Vehicle categories known to the feed."""

    BUS = "bus"
    TRAM = "tram"
    METRO = "metro"
    KUTSUPLUS = "kutsuplus"
    TRAIN = "train"
    FERRY = "ferry"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: Any) -> "VehicleType":
        """Map a feed ``type`` code to a vehicle type, ``UNKNOWN`` if unmapped."""
        if isinstance(code, bool) or not isinstance(code, int):
            return cls.UNKNOWN
        return _TYPE_CODES.get(code, cls.UNKNOWN)


_TYPE_CODES = {
    0: VehicleType.BUS,
    1: VehicleType.TRAM,
    2: VehicleType.METRO,
    3: VehicleType.KUTSUPLUS,
    4: VehicleType.TRAIN,
    5: VehicleType.FERRY,
}

SUBSCRIBABLE_VEHICLE_TYPES = tuple(_TYPE_CODES.values())


def _wire(key: str) -> Any:
    return field(default=None, metadata={"wire": key})


@dataclass(frozen=True)
class DataPoint:
    """One vehicle telemetry sample, decoded from a single feed record.

    Only ``id``, ``type`` and the coordinates are interpreted; every other
    column is carried as the raw string (or ``None`` when the record was
    too short to contain it).
    """

    id: str = field(metadata={"wire": "id"})
    name: Optional[str] = _wire("name")
    type: Optional[int] = _wire("type")
    ip: Optional[str] = _wire("ip")
    latitude: Optional[float] = _wire("lat")
    longitude: Optional[float] = _wire("lng")
    speed: Optional[str] = _wire("speed")
    bearing: Optional[str] = _wire("bearing")
    acceleration: Optional[str] = _wire("acceleration")
    gps_time_difference: Optional[str] = _wire("gpsTimeDifference")
    unix_epoch_gps_time: Optional[str] = _wire("UnixEpochGpsTime")
    low_floor: Optional[str] = _wire("lowfloor")
    route: Optional[str] = _wire("route")
    direction: Optional[str] = _wire("direction")
    departure: Optional[str] = _wire("departure")
    departure_time: Optional[str] = _wire("departureTime")
    departure_starts_in: Optional[str] = _wire("departureStartsIn")
    distance_from_start: Optional[str] = _wire("distanceFromStart")
    snapped_latitude: Optional[str] = _wire("snappedLat")
    snapped_longitude: Optional[str] = _wire("snappedLng")
    snapped_bearing: Optional[str] = _wire("snappedBearing")
    next_stop_index: Optional[str] = _wire("nextStopIndex")
    on_stop: Optional[str] = _wire("onStop")
    difference_from_timetable: Optional[str] = _wire("differenceFromTimetable")

    @property
    def vehicle_type(self) -> VehicleType:
        return VehicleType.from_code(self.type)

    @property
    def normalized_route(self) -> str:
        """The human-readable route label, e.g. ``1006`` → ``6``, ``1007B`` → ``7B``.

        The first character is a network prefix and is always skipped; the
        zero padding that follows it is stripped.
        """
        route = self.route
        if route is None:
            return ""
        for i in range(1, len(route)):
            if route[i] != "0":
                return route[i:].strip()
        return ""

    def to_wire(self) -> dict[str, Any]:
        """Return the published representation, omitting absent fields."""
        wire: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                wire[f.metadata["wire"]] = value
        return wire


#: Attribute names in feed column order.
COLUMNS = tuple(f.name for f in fields(DataPoint))


@dataclass(frozen=True)
class Subscription:
    """A subscriber's declared interest.

    ``vehicle_type`` of ``None`` means nothing is wanted yet.  An empty
    ``routes`` set accepts every route of the vehicle type.
    """

    vehicle_type: Optional[VehicleType] = None
    routes: frozenset[str] = frozenset()


@dataclass(frozen=True)
class UpdateSubscription:
    """Client request replacing its current subscription."""

    subscription: Subscription


@dataclass(frozen=True)
class UnrecognizedMessage:
    """A well-formed client message with an unknown ``msg`` discriminator."""

    msg: str
    payload: dict = field(default_factory=dict)


ClientMessage = Union[UpdateSubscription, UnrecognizedMessage]
