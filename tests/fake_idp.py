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
In-process identity provider used by the test-suite.
"""

import time
from typing import Any
from urllib.parse import parse_qs

import anyio
import httpx
from authlib.jose import jwt

INTERNAL = "http://idp:8080"
EXTERNAL = "https://example.com"
INTERNAL_REALM = f"{INTERNAL}/realm"
EXTERNAL_REALM = f"{EXTERNAL}/realm"
CLIENT_ID = "demo-app"


class FakeProvider:
    """
    In-process identity provider served through httpx.MockTransport.

    Only answers on the internal address; any request elsewhere is recorded and gets a 404.
    Self-reports a mix of internal and external URLs in its discovery document.
    """

    def __init__(self, key: Any) -> None:
        self.key = key
        self.kid = key.as_dict()["kid"]
        self.issuer = EXTERNAL_REALM
        self.requests: list[httpx.Request] = []
        self.token_calls: list[dict[str, str]] = []
        self.codes: dict[str, str | None] = {}
        self.used_codes: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self.access_lifetime = 300
        self.token_delay = 0.0
        self.token_status: int | None = None
        self.discovery: dict[str, Any] = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{INTERNAL_REALM}/auth",
            "token_endpoint": f"{EXTERNAL_REALM}/token",
            "jwks_uri": f"{INTERNAL_REALM}/certs",
            "end_session_endpoint": f"{INTERNAL_REALM}/logout",
        }
        self._counter = 0

    def issue_code(self, code: str, nonce: str | None = None) -> None:
        self.codes[code] = nonce

    def mint(self, claims: dict[str, Any] | None = None, key: Any = None, kid: str | None = None) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "sub": "user-1",
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + self.access_lifetime,
            "preferred_username": "alice",
        }
        payload.update(claims or {})
        header = {"alg": "RS256", "kid": kid or self.kid}
        return jwt.encode(header, payload, key or self.key).decode("utf-8")

    def _tokens(self, nonce: str | None) -> dict[str, Any]:
        self._counter += 1
        refresh = f"refresh-{self._counter}"
        self.refresh_tokens.add(refresh)
        id_claims = {"nonce": nonce} if nonce else {}
        return {
            "access_token": self.mint({"typ": "Bearer"}),
            "id_token": self.mint(id_claims),
            "refresh_token": refresh,
            "token_type": "Bearer",
            "expires_in": self.access_lifetime,
            "refresh_expires_in": 1800,
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == f"{INTERNAL_REALM}/.well-known/openid-configuration":
            return httpx.Response(200, json={**self.discovery, "issuer": self.issuer})
        if url == f"{INTERNAL_REALM}/certs":
            return httpx.Response(200, json={"keys": [self.key.as_dict(is_private=False)]})
        if url == f"{INTERNAL_REALM}/token" and request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_calls.append(form)
            if self.token_delay:
                await anyio.sleep(self.token_delay)
            if self.token_status is not None:
                return httpx.Response(self.token_status, json={"error": "server_error"})
            if form.get("grant_type") == "authorization_code":
                code = form.get("code", "")
                if code not in self.codes or code in self.used_codes:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                self.used_codes.add(code)
                return httpx.Response(200, json=self._tokens(self.codes[code]))
            if form.get("grant_type") == "refresh_token":
                token = form.get("refresh_token", "")
                if token not in self.refresh_tokens:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                self.refresh_tokens.discard(token)
                return httpx.Response(200, json=self._tokens(None))
            return httpx.Response(400, json={"error": "unsupported_grant_type"})

        return httpx.Response(404, json={"error": "not_found"})
