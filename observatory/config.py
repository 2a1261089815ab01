"""Configuration for the observatory device layer."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "OBSERVATORY_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class ObservatoryConfig:
    """Runtime settings — defaults, then config.json, then ``OBSERVATORY_*`` env."""

    # Remote calls
    request_timeout: float = 10.0
    client_id: int | None = None

    # Discovery
    discovery_timeout: float = 2.0  # UDP scan window
    discovery_port: int = 32227
    broadcast_address: str = "255.255.255.255"
    discovery_hosts: list[str] = field(default_factory=list)  # "host:port"
    auto_register: bool = True

    # Endpoints are routed through this proxy prefix when set
    proxy_base: str = ""

    # Polling
    poll_interval: float = 1.0
    poll_enabled: bool = True

    # Proxy server
    server_host: str = "0.0.0.0"
    server_port: int = 8080

    @classmethod
    def load(cls, path: str | Path) -> ObservatoryConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: ObservatoryConfig | None = None,
    ) -> ObservatoryConfig:
        """Overlay ``OBSERVATORY_<FIELD>`` variables on *base* (or the defaults).

        ``OBSERVATORY_DISCOVERY_HOSTS`` is a comma-separated list.  Values that
        cannot be converted are logged and ignored.
        """
        environ = os.environ if environ is None else environ
        config = dataclasses.replace(base) if base is not None else cls()
        for f in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                value = _convert(f.name, getattr(cls(), f.name), raw)
            except ValueError as exc:
                logger.warning("Ignoring %s%s=%r: %s", ENV_PREFIX, f.name.upper(), raw, exc)
                continue
            setattr(config, f.name, value)
        return config

    @classmethod
    def resolve(cls, path: str | Path | None = None) -> ObservatoryConfig:
        """Defaults, overlaid by *path* (if given), overlaid by the environment."""
        base = cls.load(path) if path is not None else cls()
        return cls.from_env(base=base)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dataclasses.asdict(self), f, indent=2)


def _convert(name: str, default: object, raw: str) -> object:
    if name == "client_id":
        return int(raw) if raw.strip() else None
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw
