"""Alpaca transport and command dispatch.

Usage::

    from observatory.alpaca import get_backend
    backend = get_backend()               # auto from environment
    backend = get_backend("simulated")
"""

from __future__ import annotations

import os
from typing import Any

from .backend import AlpacaBackend, DispatchBackend
from .simulator import SimulatedBackend

__all__ = ["AlpacaBackend", "DispatchBackend", "SimulatedBackend", "get_backend"]

_BACKENDS = {
    "alpaca": AlpacaBackend,
    "simulated": SimulatedBackend,
}


def get_backend(backend_name: str | None = None, **kwargs: Any) -> DispatchBackend:
    """Return a dispatch backend.

    If *backend_name* is omitted, reads ``OBSERVATORY_BACKEND`` from the
    environment (default: ``"alpaca"``).  The choice is explicit; a failing
    network backend is never replaced by the simulator.
    """
    if backend_name is None:
        backend_name = os.environ.get("OBSERVATORY_BACKEND", "alpaca")

    backend_name = backend_name.lower().replace("-", "_")
    if backend_name == "simulator":
        backend_name = "simulated"
    cls = _BACKENDS.get(backend_name)
    if cls is None:
        raise ValueError(
            f"Unknown backend '{backend_name}'. "
            f"Choose from: {list(_BACKENDS)}"
        )
    if cls is SimulatedBackend:
        return cls()
    return cls(**kwargs)
