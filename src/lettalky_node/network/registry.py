"""Registry store — the in-memory set of currently known peers.

A plain dict keyed by peer id, guarded by a lock. Every query is a full
scan; the expected population is small enough that no spatial index is
needed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any

from lettalky_node.network.peer import PeerRecord, merge_records

logger = logging.getLogger(__name__)


class RegistryStore:
    """Thread-safe mapping from peer id to :class:`PeerRecord`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._peers: dict[str, PeerRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        with self._lock:
            return peer_id in self._peers

    def upsert(self, record: PeerRecord) -> PeerRecord:
        """Insert *record*, or merge it into the record with the same id."""
        with self._lock:
            existing = self._peers.get(record.peer_id)
            if existing is not None:
                record = merge_records(existing, record)
            self._peers[record.peer_id] = record
            return record

    def get(self, peer_id: str) -> PeerRecord | None:
        with self._lock:
            return self._peers.get(peer_id)

    def all(self) -> list[PeerRecord]:
        """Snapshot of every record, in no particular order."""
        with self._lock:
            return list(self._peers.values())

    def update(self, peer_id: str, **changes: Any) -> PeerRecord | None:
        """Replace selected fields of an existing record.

        Returns the new record, or None if *peer_id* is unknown.
        """
        with self._lock:
            existing = self._peers.get(peer_id)
            if existing is None:
                return None
            updated = replace(existing, **changes)
            self._peers[peer_id] = updated
            return updated

    def remove(self, peer_id: str) -> bool:
        with self._lock:
            return self._peers.pop(peer_id, None) is not None

    def evict_stale(self, now: float, timeout: float) -> int:
        """Drop every record not heard from for more than *timeout* seconds.

        Returns:
            Number of records removed.
        """
        with self._lock:
            stale = [
                pid for pid, peer in self._peers.items()
                if peer.is_stale(now, timeout)
            ]
            for pid in stale:
                del self._peers[pid]
        if stale:
            logger.debug("Evicted %d stale peers", len(stale))
        return len(stale)
