"""Decide whether a data point belongs to a subscriber's interest.

Match chain (evaluated in order)::

    1. no subscription                                 → no match
    2. data point vehicle type is UNKNOWN              → no match
    3. vehicle type ≠ subscription vehicle type        → no match
    4. subscription routes empty                       → match
    5. otherwise                                       → normalized route in routes
"""

from __future__ import annotations

from typing import Optional

from hsl_live_proxy.models import DataPoint, Subscription, VehicleType


def matches(data_point: DataPoint, subscription: Optional[Subscription]) -> bool:
    """Return ``True`` if *data_point* should be delivered for *subscription*.

    Routes are compared against :attr:`DataPoint.normalized_route`, so a
    subscription to ``"6"`` receives raw route ``"1006"``.
    """
    if subscription is None:
        return False

    vehicle_type = data_point.vehicle_type
    if vehicle_type is VehicleType.UNKNOWN:
        return False
    if vehicle_type is not subscription.vehicle_type:
        return False

    if not subscription.routes:
        return True

    return data_point.normalized_route in subscription.routes
