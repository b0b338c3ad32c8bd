"""Docker Registry v2 API client — tags, manifests, and image configuration labels."""

from __future__ import annotations

import re
from types import TracebackType
from typing import Any

import httpx
import structlog

from pool_upgrade_controller.errors import RegistryError
from pool_upgrade_controller.models import DEFAULT_REGISTRY

log = structlog.get_logger()

MANIFEST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
)

DEFAULT_IMAGE_HOST = "docker.io"

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def _has_registry_host(repository: str) -> bool:
    first, sep, _ = repository.partition("/")
    return bool(sep) and ("." in first or ":" in first or first == "localhost")


def repository_path(repository: str) -> str:
    """Return the repository name as used in registry API paths, without any registry host."""
    if _has_registry_host(repository):
        return repository.split("/", 1)[1]
    return repository


def image_reference(repository: str, tag: str) -> str:
    """Return the fully-qualified image reference for ``repository`` at ``tag``."""
    if _has_registry_host(repository):
        return f"{repository}:{tag}"
    return f"{DEFAULT_IMAGE_HOST}/{repository}:{tag}"


class RegistryClient:
    """Async client for a Docker Registry v2 endpoint.

    Bearer tokens are requested on demand from the realm advertised in a 401
    challenge and cached per scope. Basic credentials, when given, are sent to
    the token realm only.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_REGISTRY,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = (username, password) if username and password else None
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._tokens: dict[str, str] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def _fetch_token(self, challenge: str, scope: str) -> str:
        params = dict(_CHALLENGE_PARAM_RE.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            msg = f"Registry auth challenge has no realm: {challenge!r}"
            raise RegistryError(msg)
        params.setdefault("scope", scope)

        # Credentials go to the token realm only, never to the registry itself.

        resp = await self._get_client().get(realm, params=params, auth=self._auth)
        if resp.status_code != 200:
            msg = f"Token request to {realm} failed ({resp.status_code})"
            raise RegistryError(msg)
        data = resp.json()
        token = data.get("token") or data.get("access_token")
        if not token:
            msg = f"Token response from {realm} carried no token"
            raise RegistryError(msg)
        return str(token)

    async def _get(self, url: str, scope: str, headers: dict[str, str] | None = None) -> httpx.Response:
        """GET with bearer auth, answering at most one 401 challenge."""
        request_headers = dict(headers or {})
        token = self._tokens.get(scope)
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        resp = await self._get_client().get(url, headers=request_headers)
        challenge = resp.headers.get("WWW-Authenticate", "")
        # Cached tokens expire silently; a fresh challenge replaces the cached one.
        if resp.status_code == 401 and challenge.lower().startswith("bearer"):
            token = await self._fetch_token(challenge, scope)
            self._tokens[scope] = token
            request_headers["Authorization"] = f"Bearer {token}"
            resp = await self._get_client().get(url, headers=request_headers)

        if resp.status_code != 200:
            msg = f"GET {url} failed ({resp.status_code}): {resp.text[:200]}"
            raise RegistryError(msg)
        return resp

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def list_tags(self, repository: str) -> list[str]:
        """List every tag in ``repository``, following pagination links."""
        name = repository_path(repository)
        scope = f"repository:{name}:pull"
        url: str | None = self._url(f"/v2/{name}/tags/list")

        tags: list[str] = []
        while url:
            resp = await self._get(url, scope)
            data: dict[str, Any] = resp.json()
            tags.extend(data.get("tags") or [])
            # Link: </v2/.../tags/list?n=100&last=...>; rel="next"
            next_link = resp.links.get("next", {}).get("url")
            url = self._url(next_link) if next_link else None

        log.debug("listed_registry_tags", repository=name, count=len(tags))
        return tags

    async def get_manifest_digest(self, repository: str, tag: str) -> str:
        """Return the digest of the image configuration referenced by the manifest for ``tag``."""
        name = repository_path(repository)
        resp = await self._get(
            self._url(f"/v2/{name}/manifests/{tag}"),
            f"repository:{name}:pull",
            headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)},
        )
        manifest: dict[str, Any] = resp.json()
        digest = (manifest.get("config") or {}).get("digest")
        if not digest:
            msg = f"Manifest for {name}:{tag} has no config descriptor"
            raise RegistryError(msg)
        return str(digest)

    async def get_config_labels(self, repository: str, digest: str) -> dict[str, str]:
        """Return the labels from the image configuration blob ``digest``."""
        name = repository_path(repository)
        resp = await self._get(self._url(f"/v2/{name}/blobs/{digest}"), f"repository:{name}:pull")
        config: dict[str, Any] = resp.json().get("config") or {}
        # Docker writes "Labels"; some OCI builders write "labels".
        labels = config.get("Labels") or config.get("labels") or {}
        return {str(k): str(v) for k, v in labels.items()}
