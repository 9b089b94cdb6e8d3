# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge

"""
HTTP transport that pins every Identity Provider call to its internal address.
"""

import json
from typing import Any

import httpx

from oidc_bridge.exceptions import OversizedResponseError, ProviderError
from oidc_bridge.reconciler import AddressReconciler
from oidc_bridge.utils.logger import logger

MAX_RESPONSE_BYTES = 1_000_000


class ProviderTransport(httpx.AsyncBaseTransport):
    """
    An async HTTP transport for server-to-server calls to the Identity Provider.

    Every request is passed through `AddressReconciler.to_internal` before it is sent,
    so a URL taken from a discovery document or derived from the external address still
    reaches the provider over the internal network. Requests that end up at the internal
    address carry X-Forwarded-* headers describing the external address.

    Args:
        reconciler: The address reconciler.
        forward_headers: Whether to attach X-Forwarded-* headers.
        transport: The transport that performs the I/O. Defaults to `httpx.AsyncHTTPTransport`.
    """

    def __init__(
        self,
        reconciler: AddressReconciler,
        forward_headers: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.forward_headers = forward_headers
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """
        Rewrites the request URL to the internal address before dispatching it.
        """
        original = str(request.url)
        target = self.reconciler.to_internal(original)

        if target != original:
            request.url = httpx.URL(target)
            # Host must follow the rewritten URL; the external host travels in X-Forwarded-Host
            request.headers["Host"] = request.url.netloc.decode("ascii")
            logger.debug(f"Provider call pinned to internal address: {request.url.host}")

        if self.forward_headers and self.reconciler.is_internal(str(request.url)):
            for name, value in self.reconciler.forwarded_headers().items():
                request.headers.setdefault(name, value)

        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        await self._transport.aclose()


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    data: dict[str, Any] | None = None,
    max_bytes: int = MAX_RESPONSE_BYTES,
) -> tuple[int, Any]:
    """
    Performs a request and reads at most `max_bytes` of a JSON body, whatever the status.

    Args:
        client: The async HTTP client.
        url: The target URL.
        method: The HTTP method.
        data: Form fields for POST requests.
        max_bytes: Maximum accepted body size.

    Returns:
        tuple[int, Any]: The status code and the decoded JSON body.

    Raises:
        OversizedResponseError: If the body exceeds `max_bytes`.
        ProviderError: If the body is not valid JSON.
        httpx.HTTPError: On transport failures and timeouts.
    """
    async with client.stream(method, url, data=data) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise OversizedResponseError(f"Response from {url} too large ({content_length} bytes)")

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                raise OversizedResponseError(f"Response from {url} exceeded {max_bytes} bytes")

        try:
            return response.status_code, json.loads(content)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Invalid JSON from {url} (status {response.status_code})") from e


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    data: dict[str, Any] | None = None,
    max_bytes: int = MAX_RESPONSE_BYTES,
) -> dict[str, Any]:
    """
    Like `fetch_json`, but treats any status >= 400 or a non-object body as an error.

    Raises:
        ProviderError: If the status signals failure or the body is not a JSON object.
        OversizedResponseError: If the body exceeds `max_bytes`.
        httpx.HTTPError: On transport failures and timeouts.
    """
    status, body = await fetch_json(client, url, method=method, data=data, max_bytes=max_bytes)
    if status >= 400:
        raise ProviderError(f"{method} {url} failed with status {status}")
    if not isinstance(body, dict):
        raise ProviderError(f"Expected a JSON object from {url}")
    return body
