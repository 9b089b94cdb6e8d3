# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging"]

_REDACTIONS = (
    # Compact-serialized JWTs
    (re.compile(r"eyJ[\w-]*\.[\w-]*\.[\w-]*"), "[REDACTED]"),
    # Secrets in query strings and form bodies
    (
        re.compile(r"\b(code|code_verifier|access_token|refresh_token|id_token|id_token_hint|client_secret)=[^&\s'\"]+"),
        r"\1=[REDACTED]",
    ),
)

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging messages to Loguru.
    Captures uvicorn, httpx and other stdlib-logging libraries in the same sinks.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        # Walk back to the frame that issued the stdlib call
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Injects OpenTelemetry trace_id and span_id into the log record.
    Used as a patcher for Loguru.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def redact_secrets(record: dict[str, Any]) -> None:
    """
    Masks tokens, authorization codes and client secrets in the log message.
    Used as a patcher for Loguru.
    """
    message = record["message"]
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    record["message"] = message


def _patch_record(record: dict[str, Any]) -> None:
    trace_id_injector(record)
    redact_secrets(record)


def configure_logging() -> None:
    """
    Configures the logger based on environment variables.

    OIDC_BRIDGE_LOG_LEVEL selects the level (default INFO).
    OIDC_BRIDGE_LOG_JSON=true switches the console sink to JSON on stdout.
    Call this again to reload configuration if env vars change.
    """
    log_level = os.getenv("OIDC_BRIDGE_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("OIDC_BRIDGE_LOG_JSON", "false").lower() == "true"

    try:
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    logger.configure(handlers=[], patcher=_patch_record)

    if log_json:
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        logger.add(sys.stderr, level=log_level, format=_TEXT_FORMAT)

    # File sink is always JSON; skipped on read-only filesystems
    try:
        Path("logs").mkdir(parents=True, exist_ok=True)
        logger.add(
            "logs/app.log",
            rotation="500 MB",
            retention="10 days",
            serialize=True,
            enqueue=True,
            level=log_level,
        )
    except (PermissionError, OSError):
        pass

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    numeric_level = logging.getLevelName(log_level)
    if isinstance(numeric_level, int):
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.getLogger().setLevel(logging.INFO)


# Initialize on import
configure_logging()
