"""Peer records — what the registry knows about each registered client."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum


DEFAULT_ACCURACY_M = 1000.0
COORDINATE_DECIMALS = 6


class PeerStatus(str, Enum):
    """Presence status reported by the client itself."""

    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Location:
    """Self-reported position of a peer."""

    latitude: float
    longitude: float
    accuracy: float = DEFAULT_ACCURACY_M

    @classmethod
    def rounded(
        cls, latitude: float, longitude: float, accuracy: float | None = None,
    ) -> Location:
        """Build a location with coordinates rounded to 6 decimal places."""
        return cls(
            latitude=round(float(latitude), COORDINATE_DECIMALS),
            longitude=round(float(longitude), COORDINATE_DECIMALS),
            accuracy=accuracy or DEFAULT_ACCURACY_M,
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class PeerRecord:
    """A registered peer.

    Records are immutable values; the store swaps whole records instead of
    mutating them so readers never observe a half-applied update.
    """

    peer_id: str
    username: str
    avatar: str
    location: Location
    status: PeerStatus = PeerStatus.ONLINE
    last_seen: float = field(default_factory=time.time)
    joined_at: float = field(default_factory=time.time)
    message_count: int = 0
    connections_count: int = 0
    ip: str = ""
    user_agent: str = "Unknown"
    last_activity: str | None = None
    last_activity_time: float | None = None

    def age(self, now: float) -> float:
        """Seconds since the peer was last heard from."""
        return now - self.last_seen

    def is_stale(self, now: float, timeout: float) -> bool:
        return self.age(now) > timeout


def merge_records(existing: PeerRecord, incoming: PeerRecord) -> PeerRecord:
    """Merge a re-registration into the record it supersedes.

    Everything comes from *incoming* except the join time and the
    counters, which survive for the lifetime of the peer id.
    """
    return replace(
        incoming,
        joined_at=existing.joined_at,
        message_count=existing.message_count,
        connections_count=existing.connections_count,
    )
