"""Input validation helpers for controller and pool settings."""

from __future__ import annotations

import re

from pool_upgrade_controller.errors import InvalidChannelError
from pool_upgrade_controller.models import CHANNELS

# RFC 1123 label: lowercase alphanumeric and hyphens, 1-63 chars, starts/ends with alphanumeric
_NAMESPACE_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")

# Repository reference: optional registry host, then slash-separated lowercase path components.
_REPOSITORY_RE = re.compile(r"^([a-zA-Z0-9.\-]+(:[0-9]+)?/)?[a-z0-9]+([._\-][a-z0-9]+)*(/[a-z0-9]+([._\-][a-z0-9]+)*)*$")


def validate_namespace(namespace: str) -> None:
    """Validate a Kubernetes namespace name against RFC 1123."""
    if not _NAMESPACE_RE.match(namespace):
        msg = f"Invalid namespace: {namespace!r}. Must be a valid RFC 1123 label."
        raise ValueError(msg)


def validate_channel(channel: str) -> None:
    """Validate a release channel name."""
    if channel not in CHANNELS:
        raise InvalidChannelError(channel)


def validate_concurrency(concurrency: int) -> None:
    """Validate an upgrade concurrency level."""
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        msg = f"Invalid concurrency: {concurrency!r}. Must be a positive integer."
        raise ValueError(msg)


def validate_repository(repository: str) -> None:
    """Validate an image repository reference such as ``docker.io/autonomy/installer``."""
    if not repository:
        msg = "A repository is required."
        raise ValueError(msg)
    if not _REPOSITORY_RE.match(repository):
        msg = f"Invalid repository: {repository!r}."
        raise ValueError(msg)
