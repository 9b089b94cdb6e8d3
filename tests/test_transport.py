# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge


import httpx
import pytest
from fake_idp import EXTERNAL_REALM, INTERNAL_REALM

from oidc_bridge.exceptions import OversizedResponseError, ProviderError
from oidc_bridge.reconciler import AddressReconciler
from oidc_bridge.transport import ProviderTransport, fetch_json, safe_json_fetch


class RecordingTransport(httpx.AsyncBaseTransport):
    def __init__(self, response: httpx.Response | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.response = response or httpx.Response(200, json={"ok": True})
        self.closed = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_external_provider_url_is_pinned_to_internal(reconciler: AddressReconciler) -> None:
    inner = RecordingTransport()
    async with httpx.AsyncClient(transport=ProviderTransport(reconciler, transport=inner)) as client:
        await client.post(f"{EXTERNAL_REALM}/token", data={"code": "abc"})

    request = inner.requests[0]
    assert str(request.url) == f"{INTERNAL_REALM}/token"
    assert request.headers["Host"] == "idp:8080"
    assert request.headers["X-Forwarded-Proto"] == "https"
    assert request.headers["X-Forwarded-Host"] == "example.com"
    assert request.headers["X-Forwarded-Port"] == "443"
    assert inner.closed


@pytest.mark.asyncio
async def test_internal_url_keeps_address_and_gets_forwarded_headers(reconciler: AddressReconciler) -> None:
    inner = RecordingTransport()
    async with httpx.AsyncClient(transport=ProviderTransport(reconciler, transport=inner)) as client:
        await client.get(f"{INTERNAL_REALM}/certs")

    assert str(inner.requests[0].url) == f"{INTERNAL_REALM}/certs"
    assert inner.requests[0].headers["X-Forwarded-Host"] == "example.com"


@pytest.mark.asyncio
async def test_unrelated_url_untouched(reconciler: AddressReconciler) -> None:
    inner = RecordingTransport()
    async with httpx.AsyncClient(transport=ProviderTransport(reconciler, transport=inner)) as client:
        await client.get("https://other.example.org/x")

    request = inner.requests[0]
    assert str(request.url) == "https://other.example.org/x"
    assert "X-Forwarded-Host" not in request.headers


@pytest.mark.asyncio
async def test_forwarded_headers_can_be_disabled(reconciler: AddressReconciler) -> None:
    inner = RecordingTransport()
    transport = ProviderTransport(reconciler, forward_headers=False, transport=inner)
    async with httpx.AsyncClient(transport=transport) as client:
        await client.get(f"{EXTERNAL_REALM}/certs")

    assert str(inner.requests[0].url) == f"{INTERNAL_REALM}/certs"
    assert "X-Forwarded-Proto" not in inner.requests[0].headers


@pytest.mark.asyncio
async def test_fetch_json_returns_error_bodies() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
    async with httpx.AsyncClient(transport=transport) as client:
        status, body = await fetch_json(client, "http://idp/token", method="POST", data={"a": "b"})

    assert status == 400
    assert body == {"error": "invalid_grant"}


@pytest.mark.asyncio
async def test_fetch_json_rejects_non_json() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>"))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ProviderError, match="Invalid JSON"):
            await fetch_json(client, "http://idp/x")


@pytest.mark.asyncio
async def test_fetch_json_size_limit_without_content_length() -> None:
    async def body():  # type: ignore[no-untyped-def]
        for _ in range(3):
            yield b"x" * 600

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(OversizedResponseError):
            await fetch_json(client, "http://idp/x", max_bytes=1000)


@pytest.mark.asyncio
async def test_safe_json_fetch_raises_on_error_status() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ProviderError, match="status 500"):
            await safe_json_fetch(client, "http://idp/x")


@pytest.mark.asyncio
async def test_safe_json_fetch_requires_object() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["a"]))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ProviderError, match="JSON object"):
            await safe_json_fetch(client, "http://idp/x")
