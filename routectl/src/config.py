from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        api_host:        Interface the HTTP API binds to.
        api_port:        Port the HTTP API listens on.
        pod_namespace:   Namespace whose pods may be referenced by rules;
                         ``None`` probes pods in every namespace.
        auto_fix_labels: Repair missing or wrong convention labels on pods
                         referenced by a write.
        log_level:       Root log level name.
        app_version:     Reported in ``routectl_info`` and the OpenAPI schema.
    """

    api_host: str = "0.0.0.0"  # noqa: S104
    api_port: int = 8080
    pod_namespace: str | None = None
    auto_fix_labels: bool = True
    log_level: str = "INFO"
    app_version: str = "0.1.0"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Variables (with defaults): ``API_HOST`` (``0.0.0.0``), ``API_PORT``
    (``8080``), ``POD_NAMESPACE`` (all namespaces), ``AUTO_FIX_POD_LABELS``
    (``true``), ``LOG_LEVEL`` (``INFO``), ``APP_VERSION``.
    """
    values = env if env is not None else os.environ
    defaults = ControllerSettings()

    api_host = values.get("API_HOST", defaults.api_host).strip()
    if not api_host:
        raise ConfigError("API_HOST must be a non-empty string")

    pod_namespace = (values.get("POD_NAMESPACE") or "").strip() or None
    log_level = values.get("LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level

    return ControllerSettings(
        api_host=api_host,
        api_port=env_int("API_PORT", defaults.api_port, minimum=1, maximum=65535, env=values),
        pod_namespace=pod_namespace,
        auto_fix_labels=parse_bool(values.get("AUTO_FIX_POD_LABELS"), default=True),
        log_level=log_level,
        app_version=values.get("APP_VERSION", defaults.app_version),
    )
