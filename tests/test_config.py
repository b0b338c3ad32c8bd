"""Tests for config.py: YAML loading, required fields, timing defaults, environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from pool_upgrade_controller.config import (
    ControllerConfig,
    TimingConfig,
    _load_controller_config,
    get_timings,
    load_controller_config,
)
from pool_upgrade_controller.errors import ConfigurationError
from pool_upgrade_controller.models import CHANNELS

VALID_CONFIG = """\
controller:
  namespace: upgrades
  pools:
    - workers
    - controlplane
  node_agent: agents.talos:create
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "controller.yaml"
    path.write_text(content)
    return path


class TestLoadControllerConfig:
    def test_minimal_config(self, tmp_path: Path) -> None:
        config = _load_controller_config(_write(tmp_path, VALID_CONFIG))

        assert isinstance(config, ControllerConfig)
        assert config.namespace == "upgrades"
        assert config.pools == ("workers", "controlplane")
        assert config.node_agent == "agents.talos:create"
        assert config.kubeconfig_context is None
        assert config.channels == CHANNELS

    def test_optional_fields(self, tmp_path: Path) -> None:
        content = VALID_CONFIG + "  kubeconfig_context: staging\n  channels: [stable, beta]\n"

        config = _load_controller_config(_write(tmp_path, content))

        assert config.kubeconfig_context == "staging"
        assert config.channels == ("stable", "beta")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="POOL_UPGRADER_CONFIG"):
            _load_controller_config(tmp_path / "absent.yaml")

    @pytest.mark.parametrize("content", ["", "- a list\n", "controller: nope\n"])
    def test_missing_controller_mapping(self, tmp_path: Path, content: str) -> None:
        with pytest.raises(ConfigurationError, match="top-level 'controller' mapping"):
            _load_controller_config(_write(tmp_path, content))

    def test_missing_required_fields(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="pools, node_agent"):
            _load_controller_config(_write(tmp_path, "controller:\n  namespace: upgrades\n"))

    def test_pools_must_be_a_list(self, tmp_path: Path) -> None:
        content = "controller:\n  namespace: upgrades\n  pools: workers\n  node_agent: a:b\n"
        with pytest.raises(ConfigurationError, match="must be a list"):
            _load_controller_config(_write(tmp_path, content))

    def test_invalid_namespace(self, tmp_path: Path) -> None:
        content = VALID_CONFIG.replace("upgrades", "Upgrades_NS")
        with pytest.raises(ConfigurationError, match="Invalid namespace"):
            _load_controller_config(_write(tmp_path, content))

    def test_invalid_channel(self, tmp_path: Path) -> None:
        content = VALID_CONFIG + "  channels: [stable, nightly]\n"
        with pytest.raises(ConfigurationError, match="invalid channel: nightly"):
            _load_controller_config(_write(tmp_path, content))

    def test_path_from_environment(self, tmp_path: Path) -> None:
        path = _write(tmp_path, VALID_CONFIG)
        with patch.dict(os.environ, {"POOL_UPGRADER_CONFIG": str(path)}):
            config = load_controller_config()
        assert config.namespace == "upgrades"

    def test_registry_credentials_from_environment(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, {"REGISTRY_USERNAME": "robot", "REGISTRY_PASSWORD": "s3cret"}):
            config = _load_controller_config(_write(tmp_path, VALID_CONFIG))
        assert config.registry_username == "robot"
        assert config.registry_password == "s3cret"


class TestTimingConfig:
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            timings = get_timings()

        assert timings.resolver_interval == 300
        assert timings.resolver_retry_interval == 30
        assert timings.cache_sync_timeout == 60
        assert timings.node_retry_timeout == 900
        assert timings.node_retry_unit == 3
        assert timings.node_retry_jitter == 0.5
        assert timings.verify_timeout == 600
        assert timings.verify_poll_interval == 10
        assert timings.health_check_attempts == 3
        assert timings.health_check_pause == 10
        assert timings.paused_poll_interval == 60
        assert timings.reconcile_retry_interval == 30
        assert timings.registry_timeout == 30

    @pytest.mark.parametrize(
        "env_var,attr,value,expected",
        [
            ("RESOLVER_INTERVAL_SECONDS", "resolver_interval", "60", 60.0),
            ("CACHE_SYNC_TIMEOUT_SECONDS", "cache_sync_timeout", "5", 5.0),
            ("NODE_RETRY_TIMEOUT_SECONDS", "node_retry_timeout", "120", 120.0),
            ("VERIFY_TIMEOUT_SECONDS", "verify_timeout", "1200", 1200.0),
            ("HEALTH_CHECK_ATTEMPTS", "health_check_attempts", "5", 5),
            ("RECONCILE_RETRY_SECONDS", "reconcile_retry_interval", "15", 15.0),
        ],
    )
    def test_env_override(self, env_var: str, attr: str, value: str, expected: float) -> None:
        with patch.dict(os.environ, {env_var: value}):
            timings = get_timings()
        assert getattr(timings, attr) == expected

    def test_frozen(self) -> None:
        timings = TimingConfig()
        with pytest.raises(AttributeError):
            timings.verify_timeout = 1.0  # type: ignore[misc]
