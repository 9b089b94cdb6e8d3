# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge

from typing import Any

import httpx
import pytest
from authlib.jose import JsonWebKey
from fake_idp import CLIENT_ID, EXTERNAL, INTERNAL, FakeProvider
from pydantic import SecretStr

from oidc_bridge.config import OIDCBridgeConfig
from oidc_bridge.models import ProviderEndpoint
from oidc_bridge.reconciler import AddressReconciler
from oidc_bridge.transport import ProviderTransport


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def provider(rsa_key: Any) -> FakeProvider:
    return FakeProvider(rsa_key)


@pytest.fixture
def config() -> OIDCBridgeConfig:
    return OIDCBridgeConfig(
        realm="realm",
        realm_path_template="/{realm}",
        internal_url=INTERNAL,
        external_url=EXTERNAL,
        app_base_url=EXTERNAL,
        client_id=CLIENT_ID,
        client_secret=SecretStr("demo-app-secret"),
        cookie_secure=False,
        http_timeout=5.0,
    )


@pytest.fixture
def endpoint(config: OIDCBridgeConfig) -> ProviderEndpoint:
    return config.endpoint


@pytest.fixture
def reconciler(endpoint: ProviderEndpoint) -> AddressReconciler:
    return AddressReconciler(endpoint)


@pytest.fixture
def provider_client(provider: FakeProvider, reconciler: AddressReconciler) -> httpx.AsyncClient:
    transport = ProviderTransport(reconciler, transport=httpx.MockTransport(provider.handler))
    return httpx.AsyncClient(transport=transport, timeout=5.0)
