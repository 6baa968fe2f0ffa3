"""CLI entry point for launching a LetTalky registry node.

Usage:
    lettalky-node
    lettalky-node --config node_config.json
    lettalky-node --port 8080 --static-dir ./public

Environment variables:
    LETTALKY_HOST:  Override bind address
    LETTALKY_PORT:  Override listening port (PORT is also honoured)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from lettalky_node.network.ratelimit import RateLimitConfig
from lettalky_node.node import NodeConfig, RegistryNode


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch a LetTalky proximity registry node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--host",
        help="Override bind address",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Override listening port",
    )
    parser.add_argument(
        "--static-dir", "-s",
        help="Directory holding the browser client to serve",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect config overrides from the environment."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    if env.get("LETTALKY_HOST"):
        overrides["host"] = env["LETTALKY_HOST"]
    port = env.get("LETTALKY_PORT") or env.get("PORT")
    if port:
        try:
            overrides["port"] = int(port)
        except ValueError:
            print(f"Error: invalid port in environment: {port!r}", file=sys.stderr)
            sys.exit(1)
    return overrides


def load_config(config_path: str | None, overrides: dict[str, Any]) -> NodeConfig:
    """Build the node configuration from an optional JSON file plus overrides."""
    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            print(f"Error: config file not found: {path}", file=sys.stderr)
            sys.exit(1)
        with open(path) as f:
            raw = json.load(f)

    # Apply overrides
    for key in ("host", "port", "static_dir"):
        if overrides.get(key):
            raw[key] = overrides[key]

    defaults = NodeConfig()
    rl = raw.get("rate_limits", {})
    return NodeConfig(
        host=raw.get("host", defaults.host),
        port=int(raw.get("port", defaults.port)),
        peer_timeout=float(raw.get("peer_timeout", defaults.peer_timeout)),
        sweep_interval=float(raw.get("sweep_interval", defaults.sweep_interval)),
        default_range=int(raw.get("default_range", defaults.default_range)),
        max_range=int(raw.get("max_range", defaults.max_range)),
        max_peers_per_query=int(
            raw.get("max_peers_per_query", defaults.max_peers_per_query)
        ),
        rate_limits=RateLimitConfig(**rl) if rl else RateLimitConfig(),
        max_body_size=int(raw.get("max_body_size", defaults.max_body_size)),
        static_dir=raw.get("static_dir", defaults.static_dir),
    )


async def run_node(node: RegistryNode) -> None:
    """Start the node and run until interrupted."""
    await node.start()

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        print("\nShutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await stop_event.wait()
    await node.stop()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    overrides = env_overrides()
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.static_dir:
        overrides["static_dir"] = args.static_dir

    config = load_config(args.config, overrides)

    print("=" * 60)
    print("  LetTalky Registry Node")
    print("=" * 60)
    if args.config:
        print(f"  Config loaded: {args.config}")
    print(f"  Listening: http://{config.host}:{config.port}")
    print(f"  Peer timeout: {config.peer_timeout:.0f}s, sweep every {config.sweep_interval:.0f}s")
    print(f"  Discovery range: {config.default_range}m (max {config.max_range}m)")
    print(f"  Static client: {config.static_dir or 'disabled'}")
    print("=" * 60 + "\n")

    asyncio.run(run_node(RegistryNode(config)))


if __name__ == "__main__":
    main()
