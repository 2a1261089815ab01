"""Observatory proxy server.

Exposes:
  GET  /health                          — liveness check
  GET  /discovery/devices               — current server descriptors
  POST /discovery/scan                  — run one discovery pass
  POST /discovery/manual                — add a server by address/port
  GET  /devices                         — registered devices
  ANY  /proxy/{address}/{port}/{path}   — same-origin forwarding to an Alpaca server

Start with::

    python -m observatory serve
    # or
    uvicorn observatory.server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import contextlib
import logging
import os
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from observatory.alpaca import get_backend
from observatory.config import ObservatoryConfig
from observatory.discovery.service import server_url, validate_address
from observatory.errors import DiscoveryError
from observatory.hub import DeviceHub

logger = logging.getLogger(__name__)

# Headers copied from the client request to the upstream server
_FORWARDED_HEADERS = ("accept", "content-type")

_hub: DeviceHub | None = None
_http: httpx.AsyncClient | None = None


def _get_hub() -> DeviceHub:
    global _hub
    if _hub is None:
        config = ObservatoryConfig.resolve(os.environ.get("OBSERVATORY_CONFIG"))
        name = os.environ.get("OBSERVATORY_BACKEND")
        _hub = DeviceHub(config, backend=get_backend(name) if name else None)
    return _hub


def set_hub(hub: DeviceHub | None) -> None:
    """Use *hub* for all endpoints (``None`` resets to lazy construction)."""
    global _hub
    _hub = hub


def _get_http() -> httpx.AsyncClient:
    global _http
    if _http is None:
        _http = httpx.AsyncClient(timeout=_get_hub().config.request_timeout)
    return _http


@contextlib.asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    global _http
    yield
    if _http is not None:
        await _http.aclose()
        _http = None
    if _hub is not None:
        await _hub.aclose()
        set_hub(None)


# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

app = FastAPI(title="Observatory", version="0.1.0", lifespan=_lifespan)


class ManualServerRequest(BaseModel):
    address: str
    port: int = Field(ge=1, le=65535)


# ──────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    hub = _get_hub()
    return {
        "status": "ok",
        "devices": len(hub.registry),
        "servers": len(hub.discovery.descriptors()),
        "discovering": hub.discovery.discovering,
    }


@app.get("/discovery/devices")
async def discovered_devices():
    hub = _get_hub()
    return {"devices": [d.to_dict() for d in hub.discovery.descriptors()]}


@app.post("/discovery/scan")
async def discovery_scan():
    hub = _get_hub()
    found = await hub.discover()
    return {"success": True, "servers": [d.to_dict() for d in found]}


@app.post("/discovery/manual")
async def discovery_manual(request: ManualServerRequest):
    hub = _get_hub()
    try:
        descriptor = await hub.add_manual(request.address, request.port)
    except DiscoveryError as exc:
        # Validation failures carry no endpoint; unreachable servers do.
        status = 400 if exc.endpoint is None else 502
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return descriptor.to_dict()


@app.get("/devices")
async def list_devices():
    hub = _get_hub()
    return {"devices": [d.to_dict() for d in hub.list_devices()]}


@app.api_route("/proxy/{address}/{port}/{path:path}", methods=["GET", "PUT", "POST", "DELETE"])
async def proxy(address: str, port: str, path: str, request: Request):
    try:
        address, port_number = validate_address(address, port)
    except DiscoveryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    url = f"{server_url(address, port_number)}/{path}"
    headers = {k: v for k, v in request.headers.items() if k.lower() in _FORWARDED_HEADERS}
    logger.debug("Proxying %s %s", request.method, url)
    try:
        upstream = await _get_http().request(
            request.method,
            url,
            params=list(request.query_params.multi_items()),
            content=await request.body(),
            headers=headers,
        )
    except httpx.HTTPError as exc:
        logger.warning("Proxy error for %s: %s", url, exc)
        return JSONResponse(
            {"error": "Proxy error", "message": str(exc) or type(exc).__name__},
            status_code=502,
        )
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type"),
    )


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main(host: str | None = None, port: int | None = None):
    import uvicorn
    config = ObservatoryConfig.resolve(os.environ.get("OBSERVATORY_CONFIG"))
    host = host or config.server_host
    port = port or config.server_port
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting Observatory server on %s:%d", host, port)
    uvicorn.run("observatory.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
