"""Alpaca UDP discovery.

A client broadcasts the probe ``alpacadiscovery1`` to port 32227; every Alpaca
server answers the sender with ``{"AlpacaPort": <http port>}``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 32227
DISCOVERY_PROBE = b"alpacadiscovery1"
BROADCAST_ADDRESS = "255.255.255.255"


def parse_reply(data: bytes) -> int | None:
    """Return the ``AlpacaPort`` announced in *data*, or ``None`` if malformed."""
    try:
        message = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(message, dict):
        return None
    port = message.get("AlpacaPort")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        return None
    return port


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.found: dict[str, tuple[str, int]] = {}

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        address = addr[0]
        port = parse_reply(data)
        if port is None:
            logger.debug("Ignoring malformed discovery reply from %s: %r", address, data[:64])
            return
        key = f"{address}:{port}"
        if key not in self.found:
            logger.debug("Discovery reply: %s", key)
        self.found[key] = (address, port)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)


class AlpacaBroadcastScanner:
    """Broadcast the discovery probe and collect replies for a scan window.

    Args:
        port:              Discovery port the probe is sent to.
        broadcast_address: Destination of the probe.
    """

    def __init__(self, port: int = DISCOVERY_PORT, broadcast_address: str = BROADCAST_ADDRESS) -> None:
        self.port = port
        self.broadcast_address = broadcast_address

    async def scan(self, timeout: float = 2.0) -> list[tuple[str, int]]:
        """Return ``(address, alpaca_port)`` for every server that replied.

        A socket that cannot be opened or a failed send yields an empty
        result; absence of servers is not an error.
        """
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                _DiscoveryProtocol,
                local_addr=("0.0.0.0", 0),
                family=socket.AF_INET,
                allow_broadcast=True,
            )
        except OSError as exc:
            logger.warning("Cannot open discovery socket: %s", exc)
            return []
        try:
            try:
                transport.sendto(DISCOVERY_PROBE, (self.broadcast_address, self.port))
            except OSError as exc:
                logger.warning("Discovery broadcast to %s:%d failed: %s",
                               self.broadcast_address, self.port, exc)
                return []
            logger.debug("Sent discovery probe to %s:%d", self.broadcast_address, self.port)
            await asyncio.sleep(timeout)
        finally:
            transport.close()
        found = list(protocol.found.values())
        logger.info("UDP discovery complete — %d server(s) replied", len(found))
        return found
