# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge


from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from oidc_bridge import main as main_module
from oidc_bridge.config import OIDCBridgeConfig
from oidc_bridge.main import main, server_options


def test_server_options_plain(config: OIDCBridgeConfig) -> None:
    options = server_options(config)

    assert options["host"] == "0.0.0.0"
    assert options["port"] == 3000
    assert options["proxy_headers"] is True
    assert options["log_config"] is None
    assert "ssl_certfile" not in options


def test_server_options_tls(config: OIDCBridgeConfig, tmp_path: Path) -> None:
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_text("cert")
    key.write_text("key")
    tls_config = config.model_copy(update={"tls_cert_file": cert, "tls_key_file": key})

    options = server_options(tls_config)

    assert options["ssl_certfile"] == str(cert)
    assert options["ssl_keyfile"] == str(key)


def test_main_runs_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OIDC_BRIDGE_EXTERNAL_URL", "https://example.com/keycloak")
    monkeypatch.setenv("OIDC_BRIDGE_APP_BASE_URL", "https://example.com")
    monkeypatch.setenv("OIDC_BRIDGE_PORT", "8443")
    calls: list[dict[str, Any]] = []

    with patch.object(main_module.uvicorn, "run", side_effect=lambda app, **kw: calls.append(kw)):
        main()

    assert calls[0]["port"] == 8443
    assert calls[0]["proxy_headers"] is True


def test_main_exits_on_invalid_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OIDC_BRIDGE_EXTERNAL_URL", "ftp://example.com")
    monkeypatch.setenv("OIDC_BRIDGE_APP_BASE_URL", "https://example.com")

    with patch.object(main_module.uvicorn, "run") as run, pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 1
    run.assert_not_called()
