"""Pydantic v2 models for pool resources, nodes, and release channels."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Literal, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator

from pool_upgrade_controller.utils import parse_duration, parse_iso_timestamp

# --- Release channels ---

Channel = Literal["latest", "edge", "alpha", "beta", "stable"]
CHANNELS: tuple[str, ...] = get_args(Channel)

LATEST: Channel = "latest"
EDGE: Channel = "edge"
ALPHA: Channel = "alpha"
BETA: Channel = "beta"
STABLE: Channel = "stable"

# Channels resolved from an image configuration label rather than from tag semver.
LABEL_CHANNELS = frozenset({LATEST, EDGE})
SEMVER_CHANNELS = frozenset({ALPHA, BETA, STABLE})

FailurePolicy = Literal["Pause", "Retry"]
FAILURE_POLICIES: tuple[str, ...] = get_args(FailurePolicy)

# --- Registry and cluster constants ---

DEFAULT_REGISTRY = "https://registry-1.docker.io"
DEFAULT_REPOSITORY = "docker.io/autonomy/installer"
INSTALLER_VERSION_LABEL = "alpha.talos.dev/version"

POOL_GROUP = "upgrade.talos.dev"
POOL_VERSION = "v1alpha1"
POOL_PLURAL = "pools"
POOL_LABEL = "v1alpha1.upgrade.talos.dev/pool"

DEFAULT_CHECK_INTERVAL = 3600.0


# --- Nodes ---


class NodeRef(BaseModel):
    """A pool member node: its Kubernetes name and the address its agent listens on."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: str | None = None


class VersionInfo(BaseModel):
    """Version reported by a node's agent."""

    model_config = ConfigDict(frozen=True)

    tag: str
    sha: str = ""


# --- In-progress bookkeeping ---


def parse_in_progress(raw: str | None) -> set[str]:
    """Parse the persisted comma-joined in-progress field into a set of node names."""
    if not raw:
        return set()
    return {name.strip() for name in raw.split(",") if name.strip()}


def format_in_progress(nodes: Iterable[str]) -> str:
    """Serialize a set of node names to the persisted comma-joined form."""
    return ",".join(sorted(set(nodes)))


# --- Pool resource ---


class PoolSpec(BaseModel):
    """Desired upgrade behaviour for a pool, as written by the operator."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    channel: Channel = STABLE
    # A pinned version bypasses channel resolution entirely.
    version: str = ""
    registry: str = DEFAULT_REGISTRY
    repository: str = DEFAULT_REPOSITORY
    concurrency: int = Field(default=1, ge=1)
    failure_policy: FailurePolicy = Field(default="Retry", alias="onFailure")
    check_interval: float = Field(default=DEFAULT_CHECK_INTERVAL, alias="checkInterval", ge=0)

    @field_validator("concurrency", mode="before")
    @classmethod
    def _default_concurrency(cls, value: Any) -> Any:
        return 1 if value in (None, 0) else value

    @field_validator("check_interval", mode="before")
    @classmethod
    def _parse_check_interval(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_CHECK_INTERVAL
        return parse_duration(value)

    @field_serializer("check_interval")
    def _serialize_check_interval(self, value: float) -> str:
        return f"{value:g}s"


class PoolStatus(BaseModel):
    """Observed state of a pool. ``in_progress`` is the crash-recovery record."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    size: int = 0
    version: str = ""
    # Pools written by earlier controller releases persist the misspelled "inProgess" key.
    in_progress: set[str] = Field(
        default_factory=set,
        alias="inProgress",
        validation_alias=AliasChoices("inProgress", "inProgess", "in_progress"),
    )
    next_run: datetime | None = Field(default=None, alias="nextRun")
    paused: bool = False

    @field_validator("in_progress", mode="before")
    @classmethod
    def _parse_in_progress(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return parse_in_progress(value)
        return value

    @field_validator("next_run", mode="before")
    @classmethod
    def _parse_next_run(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = parse_iso_timestamp(value)
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value

    @field_serializer("in_progress")
    def _serialize_in_progress(self, value: set[str]) -> str:
        return format_in_progress(value)

    @field_serializer("next_run")
    def _serialize_next_run(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class Pool(BaseModel):
    """A pool custom resource: metadata needed for updates plus spec and status."""

    name: str
    namespace: str = "default"
    resource_version: str | None = None
    spec: PoolSpec = Field(default_factory=PoolSpec)
    status: PoolStatus = Field(default_factory=PoolStatus)

    @classmethod
    def from_resource(cls, obj: dict[str, Any]) -> Pool:
        """Build a Pool from the raw custom-object dict returned by the API server."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            resource_version=metadata.get("resourceVersion"),
            spec=PoolSpec.model_validate(obj.get("spec") or {}),
            status=PoolStatus.model_validate(obj.get("status") or {}),
        )

    def to_resource(self) -> dict[str, Any]:
        """Serialize back to the custom-object dict accepted by the API server."""
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": f"{POOL_GROUP}/{POOL_VERSION}",
            "kind": "Pool",
            "metadata": metadata,
            "spec": self.spec.model_dump(by_alias=True),
            "status": self.status.model_dump(by_alias=True, exclude_none=True),
        }
