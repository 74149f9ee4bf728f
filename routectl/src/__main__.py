from __future__ import annotations

import json
import logging
import os
import re

import uvicorn

from routectl.src.api import create_app
from routectl.src.config import load_settings
from routectl.src.controller import RouteController
from routectl.src.kube import build_clients, load_kube_configuration
from routectl.src.metrics import METRICS
from routectl.src.service import RouteRuleService

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    """Route every log record, uvicorn's included, through one JSON handler."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def main() -> None:
    """Entrypoint: load settings, connect to the cluster and serve the route-rule API."""
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": settings.app_version,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()

    controller = RouteController(
        core_api=core_api,
        custom_api=custom_api,
        pod_namespace=settings.pod_namespace,
        auto_fix_labels=settings.auto_fix_labels,
    )
    app = create_app(RouteRuleService(controller), version=settings.app_version)

    logger = logging.getLogger(__name__)
    logger.info(
        "Serving route-rule API on %s:%d (pod scope=%s)",
        settings.api_host,
        settings.api_port,
        settings.pod_namespace or "<all namespaces>",
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
    logger.info("Route controller stopped")


if __name__ == "__main__":
    main()
