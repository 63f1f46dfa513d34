"""
Command line entry point.

    saferoute relay                      # run the LAN relay hub
    saferoute node --sos "Trapped"       # run a device node, optionally raising an SOS
    saferoute flush --api-url URL        # push queued alerts to the backend once
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from typing import List, Optional

from saferoute.app.core.config import settings
from saferoute.app.core.logging_config import get_logger, setup_logging
from saferoute.app.mesh.geolocation import StaticLocationProvider
from saferoute.app.mesh.models import AlertNotification, Location
from saferoute.app.mesh.node import MeshNode
from saferoute.app.mesh.storage import StateStore

logger = get_logger(__name__)


def _print_notification(notification: AlertNotification) -> None:
    alert = notification.alert
    where = (
        f"{alert.location.lat:.5f},{alert.location.lng:.5f}" if alert.location else "unknown location"
    )
    tag = " (missed)" if notification.replayed else ""
    print(f"🚨 SOS{tag} from {alert.origin_device} at {where}: {alert.message} "
          f"[hop {alert.hop_count} via {notification.channel}]", flush=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_relay(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "saferoute.app.main:app",
        host=args.host or settings.RELAY_HOST,
        port=args.port or settings.RELAY_PORT,
        log_config=None,
    )
    return 0


async def _wait_for_relay(node: MeshNode, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if node.relay_channel is not None and node.relay_channel.connected:
            return True
        await asyncio.sleep(0.1)
    return False


async def _run_node(args: argparse.Namespace) -> int:
    location = Location(args.lat, args.lng) if args.lat is not None and args.lng is not None else None
    provider = StaticLocationProvider(location) if location else StaticLocationProvider.from_settings()

    node = MeshNode(
        StateStore(args.state_file or settings.STATE_FILE),
        relay_url=args.relay_url,
        shared_store_path=args.shared_store or settings.SHARED_STORE_PATH,
        location_provider=provider,
    )
    node.engine.add_listener(_print_notification)
    await node.start()
    print(f"Device {node.device_id} (code {node.identity.connection_code}) "
          f"→ relay {node.relay_channel.url if node.relay_channel else '-'}", flush=True)

    try:
        if args.relay_url_save:
            await node.relay_channel.set_relay_url(args.relay_url_save)

        if args.sos is not None:
            if not await _wait_for_relay(node, settings.RELAY_CONNECT_TIMEOUT):
                logger.warning("Relay hub not reachable — SOS will be queued for sync")
            alert = await node.raise_sos(args.sos or None)
            print(f"SOS {alert.id} sent", flush=True)

        if args.once:
            await asyncio.sleep(args.linger)
        else:
            await asyncio.Event().wait()
    finally:
        stats = node.engine.get_queue_stats()
        await node.stop()
        print(f"{stats.total} SOS queued for sync", flush=True)
    return 0


async def _run_flush(args: argparse.Namespace) -> int:
    node = MeshNode(StateStore(args.state_file or settings.STATE_FILE), enable_relay=False)
    try:
        result = await node.flush(args.api_url, args.token)
    finally:
        await node.stop()
    print(json.dumps(result.to_dict()))
    return 0 if result.ok else 1


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="saferoute", description="SafeRoute SOS relay and device node")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Run the LAN relay hub")
    relay.add_argument("--host", help=f"Bind address (default {settings.RELAY_HOST})")
    relay.add_argument("--port", type=int, help=f"Port (default {settings.RELAY_PORT})")
    relay.set_defaults(handler=_cmd_relay)

    node = sub.add_parser("node", help="Run a device node until interrupted")
    node.add_argument("--state-file", help="Device state file (default STATE_FILE)")
    node.add_argument("--relay-url", help="Relay hub address for this run")
    node.add_argument("--relay-url-save", help="Persist a new relay hub address and reconnect")
    node.add_argument("--shared-store", help="Shared JSON file for the fallback channel")
    node.add_argument("--sos", nargs="?", const="", default=None, help="Raise an SOS once connected")
    node.add_argument("--lat", type=float)
    node.add_argument("--lng", type=float)
    node.add_argument("--once", action="store_true", help="Exit after --linger seconds")
    node.add_argument("--linger", type=float, default=2.0)
    node.set_defaults(handler=lambda a: asyncio.run(_run_node(a)))

    flush = sub.add_parser("flush", help="Push queued alerts to the backend once")
    flush.add_argument("--state-file", help="Device state file (default STATE_FILE)")
    flush.add_argument("--api-url", help=f"Backend API base (default {settings.BACKEND_API_URL})")
    flush.add_argument("--token", help="Bearer token (default BACKEND_API_TOKEN)")
    flush.set_defaults(handler=lambda a: asyncio.run(_run_flush(a)))

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.handler(args)
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
