"""Controller configuration, timing defaults, and environment variable overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pool_upgrade_controller.errors import ConfigurationError
from pool_upgrade_controller.models import CHANNELS
from pool_upgrade_controller.validation import validate_channel, validate_namespace


@dataclass(frozen=True)
class TimingConfig:
    """Polling intervals, deadlines, and retry budgets, in seconds."""

    resolver_interval: float = field(default_factory=lambda: float(os.environ.get("RESOLVER_INTERVAL_SECONDS", "300")))
    resolver_retry_interval: float = field(
        default_factory=lambda: float(os.environ.get("RESOLVER_RETRY_SECONDS", "30"))
    )
    cache_sync_timeout: float = field(default_factory=lambda: float(os.environ.get("CACHE_SYNC_TIMEOUT_SECONDS", "60")))
    node_retry_timeout: float = field(
        default_factory=lambda: float(os.environ.get("NODE_RETRY_TIMEOUT_SECONDS", "900"))
    )
    node_retry_unit: float = field(default_factory=lambda: float(os.environ.get("NODE_RETRY_UNIT_SECONDS", "3")))
    node_retry_jitter: float = field(default_factory=lambda: float(os.environ.get("NODE_RETRY_JITTER_SECONDS", "0.5")))
    verify_timeout: float = field(default_factory=lambda: float(os.environ.get("VERIFY_TIMEOUT_SECONDS", "600")))
    verify_poll_interval: float = field(default_factory=lambda: float(os.environ.get("VERIFY_POLL_SECONDS", "10")))
    health_check_attempts: int = field(default_factory=lambda: int(os.environ.get("HEALTH_CHECK_ATTEMPTS", "3")))
    health_check_pause: float = field(default_factory=lambda: float(os.environ.get("HEALTH_CHECK_PAUSE_SECONDS", "10")))
    paused_poll_interval: float = field(default_factory=lambda: float(os.environ.get("PAUSED_POLL_SECONDS", "60")))
    reconcile_retry_interval: float = field(
        default_factory=lambda: float(os.environ.get("RECONCILE_RETRY_SECONDS", "30"))
    )
    registry_timeout: float = field(default_factory=lambda: float(os.environ.get("REGISTRY_TIMEOUT_SECONDS", "30")))


@dataclass(frozen=True)
class ControllerConfig:
    """Process-wide settings: which pools to manage and how to reach their nodes."""

    namespace: str
    pools: tuple[str, ...]
    node_agent: str
    kubeconfig_context: str | None = None
    channels: tuple[str, ...] = CHANNELS
    registry_username: str | None = field(default_factory=lambda: os.environ.get("REGISTRY_USERNAME"))
    registry_password: str | None = field(default_factory=lambda: os.environ.get("REGISTRY_PASSWORD"))
    timings: TimingConfig = field(default_factory=TimingConfig)


_REQUIRED_FIELDS = ("namespace", "pools", "node_agent")


def _load_controller_config(path: Path) -> ControllerConfig:
    """Parse a YAML controller configuration file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        The parsed ControllerConfig.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ConfigurationError: If the file content is malformed or missing required fields.
    """
    if not path.exists():
        msg = (
            f"Controller configuration file not found: {path}. "
            "Create controller.yaml or set POOL_UPGRADER_CONFIG to point to your config file."
        )
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(path.read_text())

    if not isinstance(raw, dict) or not isinstance(raw.get("controller"), dict):
        msg = f"Controller config file {path} must contain a top-level 'controller' mapping."
        raise ConfigurationError(msg)

    entry: dict[str, Any] = raw["controller"]
    missing = [f for f in _REQUIRED_FIELDS if not entry.get(f)]
    if missing:
        msg = f"Controller config file {path} is missing required fields: {', '.join(missing)}."
        raise ConfigurationError(msg)

    pools = entry["pools"]
    if isinstance(pools, str) or not isinstance(pools, list):
        msg = f"Controller config file {path}: 'pools' must be a list of pool names."
        raise ConfigurationError(msg)

    channels = entry.get("channels") or list(CHANNELS)
    try:
        validate_namespace(str(entry["namespace"]))
        for channel in channels:
            validate_channel(str(channel))
    except ValueError as exc:
        msg = f"Controller config file {path}: {exc}"
        raise ConfigurationError(msg) from exc

    context = entry.get("kubeconfig_context")
    return ControllerConfig(
        namespace=str(entry["namespace"]),
        pools=tuple(str(p) for p in pools),
        node_agent=str(entry["node_agent"]),
        kubeconfig_context=str(context) if context else None,
        channels=tuple(str(c) for c in channels),
    )


def load_controller_config() -> ControllerConfig:
    """Load controller configuration from YAML.

    Reads the file path from the ``POOL_UPGRADER_CONFIG`` environment variable,
    defaulting to ``controller.yaml`` in the current working directory.
    """
    path = Path(os.environ.get("POOL_UPGRADER_CONFIG", "controller.yaml"))
    return _load_controller_config(path)


def get_timings() -> TimingConfig:
    """Return timing configuration with environment variable overrides applied."""
    return TimingConfig()
