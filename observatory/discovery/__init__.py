"""observatory.discovery — Alpaca server discovery.

Exports:
    AlpacaBroadcastScanner — UDP ``alpacadiscovery1`` broadcaster
    ServerDescriptor       — immutable description of one server
    ConfiguredDevice       — one entry of a server's device listing
    DiscoveryService       — scan / manual entry / merge into the registry
"""

from __future__ import annotations

from observatory.discovery.service import (
    ConfiguredDevice,
    DiscoveryService,
    ServerDescriptor,
    parse_proxy_url,
    proxy_url,
)
from observatory.discovery.udp import AlpacaBroadcastScanner

__all__ = [
    "AlpacaBroadcastScanner",
    "ConfiguredDevice",
    "DiscoveryService",
    "ServerDescriptor",
    "parse_proxy_url",
    "proxy_url",
]
