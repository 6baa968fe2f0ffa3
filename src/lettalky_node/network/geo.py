"""Great-circle distance between self-reported peer locations."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

EARTH_RADIUS_M = 6_371_000.0


def _coordinate(loc: Any, name: str) -> Any:
    if isinstance(loc, Mapping):
        return loc.get(name)
    return getattr(loc, name, None)


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a coordinate
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    """True if both values are finite numbers inside the WGS84 ranges."""
    if not (_is_number(latitude) and _is_number(longitude)):
        return False
    return abs(latitude) <= 90 and abs(longitude) <= 180


def distance_meters(a: Any, b: Any) -> float:
    """Haversine distance in meters between two locations.

    *a* and *b* may be :class:`~lettalky_node.network.peer.Location`
    objects or mappings with ``latitude``/``longitude`` keys. Missing or
    invalid coordinates yield ``math.inf`` so the pair falls outside any
    range filter; this function never raises.
    """
    if a is None or b is None:
        return math.inf

    lat1, lon1 = _coordinate(a, "latitude"), _coordinate(a, "longitude")
    lat2, lon2 = _coordinate(b, "latitude"), _coordinate(b, "longitude")
    if not (is_valid_coordinate(lat1, lon1) and is_valid_coordinate(lat2, lon2)):
        return math.inf

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    h = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # rounding can push h a hair outside [0, 1]
    h = min(max(h, 0.0), 1.0)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return max(0.0, EARTH_RADIUS_M * c)
