"""Observatory command line.

Usage::

    python -m observatory [--config PATH] [--verbose] [--simulate] discover [--host HOST:PORT] [--connect]
    python -m observatory [--config PATH] [--verbose] [--simulate] serve [--host HOST] [--port PORT]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from observatory.config import ObservatoryConfig


async def _discover(config: ObservatoryConfig, simulate: bool, manual: list[str], connect: bool) -> int:
    from observatory.alpaca import get_backend
    from observatory.errors import DiscoveryError
    from observatory.hub import DeviceHub

    backend = get_backend("simulated") if simulate else None
    async with DeviceHub(config, backend=backend) as hub:
        for entry in manual:
            address, _, port = entry.rpartition(":")
            try:
                await hub.add_manual(address.strip("[]"), port)
            except DiscoveryError as exc:
                print(f"Manual server {entry}: {exc}", file=sys.stderr)
        servers = await hub.discover()
        if not servers and not hub.discovery.descriptors():
            print("No Alpaca servers found.")
            return 1

        for server in hub.discovery.descriptors():
            tag = " (manual)" if server.is_manual_entry else ""
            print(f"{server.key}  {server.server_name} — {server.manufacturer}{tag}")
            for configured in server.devices:
                print(f"    {server.device_id(configured)}  {configured.name}")

        if connect:
            for device in hub.list_devices():
                state = await hub.connect(device.id)
                detail = f"  ({device.last_error})" if device.last_error else ""
                print(f"{device.id}: {state.value}{detail}")
            for device in hub.list_devices():
                if device.is_connected:
                    await hub.disconnect(device.id)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="python -m observatory",
        description="Alpaca device discovery and synchronisation",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=os.environ.get("OBSERVATORY_CONFIG"),
        help="JSON config file (default: OBSERVATORY_CONFIG env var)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use the in-memory simulated backend instead of the network",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Run one discovery pass and list servers")
    discover.add_argument(
        "--host",
        metavar="HOST:PORT",
        action="append",
        default=[],
        help="Also query this server as a manual entry (repeatable)",
    )
    discover.add_argument("--connect", action="store_true", help="Connect every found device once")

    serve = sub.add_parser("serve", help="Run the proxy server")
    serve.add_argument("--host", default=None, help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Bind port")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    config = ObservatoryConfig.resolve(args.config)

    if args.command == "serve":
        if args.config:
            os.environ["OBSERVATORY_CONFIG"] = args.config
        if args.simulate:
            os.environ["OBSERVATORY_BACKEND"] = "simulated"
        from observatory.server import main as serve_main

        serve_main(host=args.host, port=args.port)
        return

    try:
        code = asyncio.run(_discover(config, args.simulate, args.host, args.connect))
    except KeyboardInterrupt:
        print("\n\nDiscovery cancelled.")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
