"""Channel filtering — pick one target version per release channel from registry tags."""

from __future__ import annotations

from collections.abc import Iterable

import httpx
import semver
import structlog

from pool_upgrade_controller.clients.registry import RegistryClient
from pool_upgrade_controller.errors import InvalidChannelError, RegistryError
from pool_upgrade_controller.models import (
    ALPHA,
    BETA,
    CHANNELS,
    INSTALLER_VERSION_LABEL,
    LABEL_CHANNELS,
    SEMVER_CHANNELS,
    STABLE,
)

log = structlog.get_logger()


def parse_tag(tag: str) -> semver.Version | None:
    """Parse a registry tag as a tolerant semantic version.

    A leading ``v`` is dropped and missing minor/patch components default to 0.
    Returns None for anything unparseable, and for versions with a major above 1:
    all-numeric commit SHAs parse as huge major versions and must never win.
    """
    text = tag.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        version = semver.Version.parse(text, optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None
    if version.major > 1:
        return None
    return version


def _is_candidate(channel: str, version: semver.Version) -> bool:
    if not version.prerelease:
        # Stable builds are visible on every channel.
        return True
    if channel == STABLE:
        return False
    if channel in (ALPHA, BETA):
        segments = version.prerelease.split(".")
        # "alpha.3" is the alpha release; "alpha.3-12-gabcdef0" is a build past it.
        return len(segments) >= 2 and segments[0] == channel and segments[1].isascii() and segments[1].isdigit()
    return True


def filter_semver(channel: str, tags: Iterable[str]) -> str | None:
    """Return the highest version tag visible on ``channel``, ``v``-prefixed.

    Returns None when no tag qualifies; a genuine ``v0.0.0`` tag is a result like any other.
    Ties keep the first tag seen.

    Raises:
        InvalidChannelError: If ``channel`` is not a known channel.
    """
    if channel not in CHANNELS:
        raise InvalidChannelError(channel)

    best: semver.Version | None = None
    for tag in tags:
        version = parse_tag(tag)
        if version is None or not _is_candidate(channel, version):
            continue
        if best is None or version > best:
            best = version

    if best is None:
        return None
    return f"v{best}"


async def resolve_label(registry: RegistryClient, repository: str, channel: str) -> str | None:
    """Resolve ``channel`` as an image tag and return the installer version label it carries.

    Any registry failure yields None: no update this cycle.
    """
    try:
        digest = await registry.get_manifest_digest(repository, channel)
        labels = await registry.get_config_labels(repository, digest)
    except (httpx.HTTPError, RegistryError, ValueError) as exc:
        log.warning("label_resolution_failed", channel=channel, repository=repository, error=str(exc))
        return None
    return labels.get(INSTALLER_VERSION_LABEL)


async def resolve_channel(channel: str, tags: list[str], registry: RegistryClient, repository: str) -> str | None:
    """Resolve one channel with the strategy that channel uses.

    Raises:
        InvalidChannelError: If ``channel`` is not a known channel.
    """
    if channel in LABEL_CHANNELS:
        return await resolve_label(registry, repository, channel)
    if channel in SEMVER_CHANNELS:
        return filter_semver(channel, tags)
    raise InvalidChannelError(channel)
