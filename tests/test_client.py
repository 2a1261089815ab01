"""Tests for the Alpaca HTTP client and network backend."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from observatory.alpaca.backend import AlpacaBackend
from observatory.alpaca.client import IMAGEBYTES_MIME, AlpacaClient, ManagementClient
from observatory.devices.models import Device
from observatory.errors import RemoteCallError, RemoteErrorKind

ENDPOINT = "http://10.0.0.5:11111/api/v1/camera/0"


def _ok(value=None):
    return httpx.Response(200, json={"Value": value, "ErrorNumber": 0, "ErrorMessage": ""})


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AlpacaClient(ENDPOINT, client=http, client_id=42, **kwargs), http


class TestRequests:
    @pytest.mark.asyncio
    async def test_get_uses_query_ids_and_lowercase_action(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok(12.5)

        client, http = _client(handler)
        async with http:
            assert await client.get("CCDTemperature") == 12.5
            await client.get("gain")
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/api/v1/camera/0/ccdtemperature"
        assert seen[0].url.params["ClientID"] == "42"
        assert seen[0].url.params["ClientTransactionID"] == "1"
        assert seen[1].url.params["ClientTransactionID"] == "2"

    @pytest.mark.asyncio
    async def test_put_sends_form_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok()

        client, http = _client(handler)
        async with http:
            await client.put("connected", {"Connected": True})
        form = parse_qs(seen[0].content.decode())
        assert seen[0].method == "PUT"
        assert seen[0].headers["content-type"].startswith("application/x-www-form-urlencoded")
        assert form["Connected"] == ["True"]
        assert form["ClientID"] == ["42"]
        assert "ClientTransactionID" in form


class TestErrors:
    @pytest.mark.asyncio
    async def test_device_error_number(self):
        def handler(request):
            return httpx.Response(200, json={"Value": None, "ErrorNumber": 1035, "ErrorMessage": "Not connected"})

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.get("gain")
        assert info.value.kind is RemoteErrorKind.PROTOCOL
        assert info.value.error_number == 1035
        assert str(info.value) == "Not connected"

    @pytest.mark.asyncio
    async def test_http_status(self):
        def handler(request):
            return httpx.Response(400, text="Invalid parameter")

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.put("gain", {"Gain": -1})
        assert info.value.kind is RemoteErrorKind.TRANSPORT
        assert info.value.status == 400
        assert "Invalid parameter" in str(info.value)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.get("gain")
        assert info.value.kind is RemoteErrorKind.PROTOCOL

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.get("gain")
        assert info.value.kind is RemoteErrorKind.TRANSPORT
        assert info.value.url.endswith("/gain")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.get("gain")
        assert info.value.is_timeout


class TestImageBytes:
    @pytest.mark.asyncio
    async def test_returns_raw_payload(self):
        def handler(request):
            assert request.headers["accept"] == IMAGEBYTES_MIME
            return httpx.Response(200, content=b"\x01\x02", headers={"content-type": IMAGEBYTES_MIME})

        client, http = _client(handler)
        async with http:
            assert await client.get_image_bytes() == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_json_answer_rejected(self):
        def handler(request):
            return _ok([[1, 2], [3, 4]])

        client, http = _client(handler)
        async with http:
            with pytest.raises(RemoteCallError) as info:
                await client.get_image_bytes()
        assert info.value.kind is RemoteErrorKind.PROTOCOL


class TestDeviceState:
    @pytest.mark.asyncio
    async def test_flattens_name_value_list(self):
        def handler(request):
            return _ok([{"Name": "CameraState", "Value": 2}, {"Name": "ImageReady", "Value": False}])

        client, http = _client(handler)
        async with http:
            assert await client.device_state() == {"camerastate": 2, "imageready": False}

    @pytest.mark.asyncio
    async def test_empty_state_is_none(self):
        client, http = _client(lambda request: _ok([]))
        async with http:
            assert await client.device_state() is None


class TestManagement:
    @pytest.mark.asyncio
    async def test_configured_devices_and_description(self):
        def handler(request):
            if request.url.path == "/management/v1/configureddevices":
                return _ok([{"DeviceName": "Cam", "DeviceType": "Camera", "DeviceNumber": 0, "UniqueID": "u1"}])
            if request.url.path == "/management/v1/description":
                return _ok({"ServerName": "Sim", "Manufacturer": "ACME"})
            return httpx.Response(404)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with http:
            client = ManagementClient("http://10.0.0.5:11111/", client=http)
            devices = await client.configured_devices()
            info = await client.description()
        assert devices[0]["DeviceType"] == "Camera"
        assert info["ServerName"] == "Sim"


class TestAlpacaBackend:
    @pytest.mark.asyncio
    async def test_one_client_per_endpoint(self):
        seen = []

        def handler(request):
            seen.append(str(request.url.path))
            return _ok(True)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = AlpacaBackend(timeout=1.0, client_id=7, http_client=http)
        device = Device(id="cam", type="camera", index=0, endpoint=ENDPOINT)
        async with http:
            assert backend.client_for(device) is backend.client_for(device)
            assert await backend.get(device, "connected") is True
            await backend.put(device, "connected", {"Connected": False})
            await backend.aclose()
        assert seen == ["/api/v1/camera/0/connected", "/api/v1/camera/0/connected"]
