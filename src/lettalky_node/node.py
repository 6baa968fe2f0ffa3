"""LetTalky node — wires the registry, discovery service and HTTP transport.

A node:
1. Holds the in-memory peer registry
2. Serves registration, discovery, heartbeat and status over HTTP
3. Periodically sweeps peers that stopped sending heartbeats
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from lettalky_node.network.discovery import (
    DEFAULT_RANGE,
    MAX_PEERS_PER_USER,
    MAX_RANGE,
    PEER_TIMEOUT,
    DiscoveryService,
)
from lettalky_node.network.ratelimit import RateLimitConfig
from lettalky_node.network.registry import RegistryStore
from lettalky_node.network.transport import MAX_BODY_SIZE, Transport

logger = logging.getLogger(__name__)


@dataclass
class NodeConfig:
    """Configuration for a registry node."""

    host: str = "0.0.0.0"
    port: int = 3000

    # Liveness
    peer_timeout: float = PEER_TIMEOUT
    sweep_interval: float = 3 * 60.0

    # Discovery
    default_range: int = DEFAULT_RANGE
    max_range: int = MAX_RANGE
    max_peers_per_query: int = MAX_PEERS_PER_USER

    # HTTP
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    max_body_size: int = MAX_BODY_SIZE
    static_dir: str = ""  # Browser client directory; not served if empty


class RegistryNode:
    """Owns the registry for the lifetime of the process.

    The registry is volatile: it starts empty and is lost on shutdown.
    """

    def __init__(self, config: NodeConfig | None = None) -> None:
        self.config = config or NodeConfig()
        self.store = RegistryStore()
        self.service = DiscoveryService(
            self.store,
            peer_timeout=self.config.peer_timeout,
            default_range=self.config.default_range,
            max_range=self.config.max_range,
            max_results=self.config.max_peers_per_query,
        )
        self.transport = Transport(
            self.service,
            host=self.config.host,
            port=self.config.port,
            rate_limits=self.config.rate_limits,
            client_max_size=self.config.max_body_size,
            static_dir=self.config.static_dir or None,
        )
        self._running = False
        self._background_tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start serving and schedule the eviction sweep."""
        self._running = True
        await self.transport.start()
        self._background_tasks.append(
            asyncio.create_task(self._sweep_loop())
        )
        logger.info(
            "Node started: port=%d, peer_timeout=%.0fs, sweep_interval=%.0fs",
            self.config.port,
            self.config.peer_timeout,
            self.config.sweep_interval,
        )

    async def stop(self) -> None:
        """Stop the node."""
        self._running = False
        for t in self._background_tasks:
            t.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        await self.transport.stop()
        logger.info(
            "Final stats: %d users, %d total connections",
            len(self.store),
            self.service.total_connections,
        )

    def sweep(self) -> int:
        """Run one maintenance pass. Returns the number of peers evicted."""
        removed = self.service.sweep()
        self.transport.cleanup_limits()
        return removed

    async def _sweep_loop(self) -> None:
        """Periodic cleanup: stale peers and idle rate-limit buckets."""
        while self._running:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Sweep failed; retrying next interval")
