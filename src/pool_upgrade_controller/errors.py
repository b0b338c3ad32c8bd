"""Exception types shared across the controller."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised for missing or invalid configuration. Never retried."""


class InvalidChannelError(ValueError):
    """Raised when a release channel name is not one of the known channels."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"invalid channel: {channel}")


class RegistryError(RuntimeError):
    """Raised for unexpected registry responses (non-2xx status, malformed payloads)."""


class PoolNotFoundError(LookupError):
    """Raised when the pool resource no longer exists."""


class VersionResolutionError(RuntimeError):
    """Raised when no target version can be determined for a pool."""


class RetryTimeoutError(TimeoutError):
    """Raised when a bounded retry exhausts its time budget."""


class UpgradeError(RuntimeError):
    """Fatal failure of a single node's upgrade attempt."""

    def __init__(self, node: str, message: str) -> None:
        self.node = node
        super().__init__(f"node {node!r}: {message}")


class UpgradeRunError(RuntimeError):
    """Aggregate of every per-node failure from one upgrade run."""

    def __init__(self, failures: dict[str, BaseException]) -> None:
        self.failures = failures
        detail = "; ".join(f"{node}: {err}" for node, err in failures.items())
        count = len(failures)
        super().__init__(f"{count} node upgrade{'s' if count != 1 else ''} failed: {detail}")
