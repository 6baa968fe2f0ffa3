"""Proximity discovery — registration, nearby-peer queries and liveness.

The service is the only writer of the registry. It owns every
time-based rule (staleness, activity windows) and hands callers derived
views rather than raw registry records:

  - register: validate a profile + location, enforce local username
    uniqueness, merge into the registry, sweep stale peers
  - discover: rank the live peers around a requester
  - heartbeat / set_status: keep a registered peer alive
  - sweep: the eviction pass shared by registration and the node timer
"""

from __future__ import annotations

import functools
import logging
import math
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from lettalky_node.network.errors import (
    InvalidAvatar,
    InvalidLocation,
    InvalidPeerId,
    InvalidStatus,
    MissingPeerId,
    MissingUsername,
    PeerNotFound,
    UsernameCharsInvalid,
    UsernameLengthInvalid,
    UsernameTaken,
)
from lettalky_node.network.geo import distance_meters, is_valid_coordinate
from lettalky_node.network.peer import Location, PeerRecord, PeerStatus
from lettalky_node.network.registry import RegistryStore

logger = logging.getLogger(__name__)

PEER_TIMEOUT = 8 * 60.0        # Seconds without a signal before eviction
ACTIVE_WINDOW = 60.0           # Seconds a peer counts as "active"
ONLINE_WINDOW = 30.0           # Seconds a peer is labelled "online" in results
DEFAULT_RANGE = 5000           # Meters
MAX_RANGE = 50_000             # Meters
MAX_PEERS_PER_USER = 100       # Results returned per discovery query
USERNAME_RADIUS = 1000.0       # Meters within which usernames must be unique
DISTANCE_TIE_MARGIN = 100      # Meters; smaller gaps do not affect ranking
MIN_PEER_ID_LENGTH = 10
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 20
MAX_AVATAR_LENGTH = 10

_USERNAME_RE = re.compile(r"[A-Za-z0-9\s\-_.]+")


@dataclass(frozen=True)
class RegistrationResult:
    peers_count: int
    server_time: float
    is_new: bool = True


@dataclass(frozen=True)
class NearbyPeer:
    """A peer as seen from the requester: distance plus liveness labels."""

    peer_id: str
    username: str
    avatar: str
    location: Location
    distance: int
    last_seen: float
    is_active: bool
    status: str
    joined_at: float


@dataclass(frozen=True)
class DiscoveryResult:
    peers: list[NearbyPeer] = field(default_factory=list)
    total: int = 0
    search_range: int = DEFAULT_RANGE
    timestamp: float = 0.0
    total_users: int = 0
    active_users: int = 0


@dataclass(frozen=True)
class HealthReport:
    total_users: int
    active_users: int
    total_connections: int


def parse_range(
    value: Any, default: int = DEFAULT_RANGE, cap: int = MAX_RANGE,
) -> int:
    """Interpret a requested search range in meters.

    Missing, non-numeric or non-positive values fall back to *default*;
    the result never exceeds *cap*.
    """
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        parsed = default
    if parsed <= 0:
        # a non-positive radius could only match nothing; treat it as unset
        parsed = default
    return min(parsed, cap)


def _compare_nearby(a: NearbyPeer, b: NearbyPeer) -> int:
    """Active first, then nearer (gaps over 100 m only), then newest joiner."""
    if a.is_active != b.is_active:
        return -1 if a.is_active else 1
    if abs(a.distance - b.distance) > DISTANCE_TIE_MARGIN:
        return -1 if a.distance < b.distance else 1
    if a.joined_at != b.joined_at:
        return -1 if a.joined_at > b.joined_at else 1
    return 0


class DiscoveryService:
    """Registry front end used by the HTTP transport.

    All public operations hold one lock for their whole duration, so
    uniqueness checks and nearby queries always see the registry as a
    consistent whole.
    """

    def __init__(
        self,
        store: RegistryStore | None = None,
        *,
        peer_timeout: float = PEER_TIMEOUT,
        default_range: int = DEFAULT_RANGE,
        max_range: int = MAX_RANGE,
        max_results: int = MAX_PEERS_PER_USER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else RegistryStore()
        self.peer_timeout = peer_timeout
        self.default_range = default_range
        self.max_range = max_range
        self.max_results = max_results
        self._clock = clock
        self._lock = threading.RLock()
        self._total_connections = 0

    @property
    def total_connections(self) -> int:
        """Number of first-time registrations since start-up."""
        return self._total_connections

    # ── Registration ─────────────────────────────────────────────

    def register(
        self,
        peer_id: Any,
        username: Any,
        avatar: Any,
        location: Any,
        *,
        ip: str = "",
        user_agent: str | None = None,
    ) -> RegistrationResult:
        """Register a peer or refresh an existing registration.

        Raises:
            RegistryError: one of the named validation failures, checked
                in order, or UsernameTaken if a nearby peer already uses
                the same name.
        """
        if not isinstance(peer_id, str) or len(peer_id) < MIN_PEER_ID_LENGTH:
            raise InvalidPeerId()

        if not username or not isinstance(username, str):
            raise MissingUsername()

        name = username.strip()
        if not MIN_USERNAME_LENGTH <= len(name) <= MAX_USERNAME_LENGTH:
            raise UsernameLengthInvalid(
                f"Username must be between {MIN_USERNAME_LENGTH}-"
                f"{MAX_USERNAME_LENGTH} characters"
            )
        if not _USERNAME_RE.fullmatch(name):
            raise UsernameCharsInvalid()

        loc = self._validate_location(location)

        if not avatar or not isinstance(avatar, str) or len(avatar) > MAX_AVATAR_LENGTH:
            raise InvalidAvatar()

        with self._lock:
            now = self._clock()
            if self._username_taken(name, peer_id, location, now):
                raise UsernameTaken()

            is_new = peer_id not in self.store
            self.store.upsert(PeerRecord(
                peer_id=peer_id,
                username=name,
                avatar=avatar,
                location=loc,
                status=PeerStatus.ONLINE,
                last_seen=now,
                joined_at=now,
                ip=ip,
                user_agent=user_agent or "Unknown",
            ))
            if is_new:
                self._total_connections += 1

            self._evict(now)
            count = len(self.store)

        logger.info("User registered: %s (%s...)", name, peer_id[:8])
        return RegistrationResult(peers_count=count, server_time=now, is_new=is_new)

    @staticmethod
    def _validate_location(location: Any) -> Location:
        if not isinstance(location, Mapping):
            raise InvalidLocation()
        lat = location.get("latitude")
        lon = location.get("longitude")
        if not is_valid_coordinate(lat, lon):
            raise InvalidLocation()
        accuracy = location.get("accuracy")
        if not isinstance(accuracy, (int, float)) or isinstance(accuracy, bool) \
                or not math.isfinite(accuracy) or accuracy <= 0:
            accuracy = None
        return Location.rounded(lat, lon, accuracy)

    def _username_taken(
        self, name: str, peer_id: str, location: Mapping, now: float,
    ) -> bool:
        wanted = name.lower()
        for peer in self.store.all():
            if peer.peer_id == peer_id or peer.is_stale(now, self.peer_timeout):
                continue
            if peer.username.lower() != wanted:
                continue
            if distance_meters(peer.location, location) < USERNAME_RADIUS:
                return True
        return False

    # ── Discovery ────────────────────────────────────────────────

    def discover(self, peer_id: Any, search_range: Any = None) -> DiscoveryResult:
        """Rank the live peers within *search_range* meters of *peer_id*.

        Stale peers are skipped but not removed; eviction only happens on
        registration and on the periodic sweep.
        """
        if not peer_id:
            raise MissingPeerId("peerId query parameter is required")
        if not isinstance(peer_id, str):
            raise PeerNotFound("Peer not found. Please register first.")

        with self._lock:
            requester = self.store.get(peer_id)
            if requester is None:
                raise PeerNotFound("Peer not found. Please register first.")

            effective_range = parse_range(
                search_range, self.default_range, self.max_range,
            )
            now = self._clock()
            snapshot = self.store.all()

        nearby: list[NearbyPeer] = []
        for peer in snapshot:
            if peer.peer_id == peer_id or peer.is_stale(now, self.peer_timeout):
                continue
            distance = distance_meters(requester.location, peer.location)
            if distance > effective_range:
                continue
            age = peer.age(now)
            nearby.append(NearbyPeer(
                peer_id=peer.peer_id,
                username=peer.username,
                avatar=peer.avatar,
                location=peer.location,
                distance=math.floor(distance + 0.5),
                last_seen=peer.last_seen,
                is_active=age < ACTIVE_WINDOW,
                status="online" if age < ONLINE_WINDOW else "away",
                joined_at=peer.joined_at,
            ))

        nearby.sort(key=functools.cmp_to_key(_compare_nearby))

        return DiscoveryResult(
            peers=nearby[:self.max_results],
            total=len(nearby),
            search_range=effective_range,
            timestamp=now,
            total_users=len(snapshot),
            active_users=self._count_active(snapshot, now),
        )

    # ── Liveness ─────────────────────────────────────────────────

    def heartbeat(self, peer_id: Any, activity: Any = None) -> float:
        """Mark *peer_id* as alive and online. Returns the server time."""
        if not peer_id:
            raise MissingPeerId()
        if not isinstance(peer_id, str):
            raise PeerNotFound()

        with self._lock:
            now = self._clock()
            changes: dict[str, Any] = {
                "last_seen": now,
                "status": PeerStatus.ONLINE,
            }
            if activity:
                changes["last_activity"] = str(activity)
                changes["last_activity_time"] = now
            if self.store.update(peer_id, **changes) is None:
                raise PeerNotFound()
        return now

    def set_status(self, peer_id: Any, status: Any) -> PeerStatus:
        """Store a client-chosen presence status and refresh liveness."""
        if not peer_id:
            raise MissingPeerId("peerId and status are required")
        try:
            new_status = PeerStatus(status)
        except (ValueError, TypeError):
            raise InvalidStatus(
                "Invalid status. Must be one of: "
                + ", ".join(s.value for s in PeerStatus)
            ) from None
        if not isinstance(peer_id, str):
            raise PeerNotFound()

        with self._lock:
            updated = self.store.update(
                peer_id, status=new_status, last_seen=self._clock(),
            )
        if updated is None:
            raise PeerNotFound()
        return new_status

    # ── Maintenance ──────────────────────────────────────────────

    def sweep(self) -> int:
        """Evict stale peers. Returns the number removed."""
        with self._lock:
            return self._evict(self._clock())

    def _evict(self, now: float) -> int:
        removed = self.store.evict_stale(now, self.peer_timeout)
        if removed:
            logger.info(
                "Cleaned up %d inactive peers. Active users: %d",
                removed, len(self.store),
            )
        return removed

    def health(self) -> HealthReport:
        with self._lock:
            snapshot = self.store.all()
            now = self._clock()
        return HealthReport(
            total_users=len(snapshot),
            active_users=self._count_active(snapshot, now),
            total_connections=self._total_connections,
        )

    @staticmethod
    def _count_active(peers: list[PeerRecord], now: float) -> int:
        return sum(1 for p in peers if p.age(now) < ACTIVE_WINDOW)
