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
Process entry point: loads the configuration and serves the application with uvicorn.
"""

import sys
from typing import Any

import uvicorn

from oidc_bridge.app import create_app
from oidc_bridge.config import OIDCBridgeConfig, load_config
from oidc_bridge.exceptions import ConfigError
from oidc_bridge.utils.logger import logger


def server_options(config: OIDCBridgeConfig) -> dict[str, Any]:
    """
    Keyword arguments for `uvicorn.run`.

    TLS is terminated locally only when a certificate and key are configured. Forwarded
    headers are trusted so the application can sit behind a reverse proxy.
    """
    options: dict[str, Any] = {
        "host": config.host,
        "port": config.port,
        "proxy_headers": True,
        "forwarded_allow_ips": "*",
        # Logging is routed through loguru by the InterceptHandler
        "log_config": None,
    }
    if config.tls_enabled:
        options["ssl_certfile"] = str(config.tls_cert_file)
        options["ssl_keyfile"] = str(config.tls_key_file)
    return options


def main() -> None:
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    scheme = "https" if config.tls_enabled else "http"
    logger.info(f"oidc-bridge listening on {scheme}://{config.host}:{config.port}")
    uvicorn.run(create_app(config), **server_options(config))


if __name__ == "__main__":
    main()
