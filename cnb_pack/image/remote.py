"""Read-only registry image handle (Registry HTTP API v2).

Only what the build needs is implemented: resolving a reference to its
image config so labels and env can be read. Manifest lists are resolved to
the linux/amd64 entry. Bearer-token challenges are answered with the
credentials found in the local Docker config, or anonymously.
"""

from __future__ import annotations

import re

import httpx
from docker import auth as docker_auth

from cnb_pack.errors import ImageNotFoundError, PackError, UnsupportedOperationError
from cnb_pack.image.reference import DEFAULT_TAG, ImageReference, is_default_registry, parse_reference

_MANIFEST_TYPES = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)
_LIST_TYPES = {
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
}
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def registry_credentials(registry: str) -> tuple[str, str] | None:
    """Return (username, password) for *registry* from the Docker config, if any."""
    config = docker_auth.load_config()
    entry = docker_auth.resolve_authconfig(config, registry) or {}
    username = entry.get("username") or entry.get("Username")
    password = entry.get("password") or entry.get("Password") or entry.get("Secret")
    if username and password:
        return username, password
    return None


class RegistryClient:
    def __init__(
        self,
        ref: ImageReference,
        timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.ref = ref
        self._timeout = timeout
        self._transport = transport
        self._token: str | None = None
        if is_default_registry(ref.registry):
            self._base = "https://registry-1.docker.io"
            repo = ref.repository
            self._repository = repo if "/" in repo else f"library/{repo}"
        else:
            scheme = "http" if ref.registry.startswith(("localhost", "127.0.0.1")) else "https"
            self._base = f"{scheme}://{ref.registry}"
            self._repository = ref.repository

    def _authenticate(self, client: httpx.Client, challenge: str) -> None:
        if not challenge.lower().startswith("bearer"):
            raise PackError(f"unsupported registry auth challenge: {challenge}")
        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise PackError(f"registry challenge without realm: {challenge}")
        params.setdefault("scope", f"repository:{self._repository}:pull")
        creds = registry_credentials(self.ref.registry)
        resp = client.get(realm, params=params, auth=creds, timeout=self._timeout)
        resp.raise_for_status()
        body = resp.json()
        self._token = body.get("token") or body.get("access_token")

    def _get(self, client: httpx.Client, path: str, accept: str | None = None) -> httpx.Response:
        url = f"{self._base}/v2/{self._repository}/{path}"
        for _ in range(2):
            headers = {}
            if accept:
                headers["Accept"] = accept
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            resp = client.get(url, headers=headers, timeout=self._timeout, follow_redirects=True)
            if resp.status_code == 401 and self._token is None:
                self._authenticate(client, resp.headers.get("WWW-Authenticate", ""))
                continue
            return resp
        return resp

    def config(self) -> dict | None:
        """Return the image config blob, or None when the image does not exist."""
        reference = self.ref.digest or self.ref.tag or DEFAULT_TAG
        with httpx.Client(transport=self._transport) as client:
            resp = self._get(client, f"manifests/{reference}", accept=_MANIFEST_TYPES)
            if resp.status_code in (401, 403, 404):
                return None
            resp.raise_for_status()
            manifest = resp.json()

            media_type = manifest.get("mediaType") or resp.headers.get("Content-Type", "")
            if media_type in _LIST_TYPES or "manifests" in manifest:
                entry = next(
                    (
                        m
                        for m in manifest.get("manifests", [])
                        if (m.get("platform") or {}).get("os") == "linux"
                        and (m.get("platform") or {}).get("architecture") == "amd64"
                    ),
                    None,
                )
                if entry is None:
                    return None
                resp = self._get(client, f"manifests/{entry['digest']}", accept=_MANIFEST_TYPES)
                resp.raise_for_status()
                manifest = resp.json()

            resp = self._get(client, f"blobs/{manifest['config']['digest']}")
            resp.raise_for_status()
            return resp.json()


class RemoteImage:
    """Image handle that only reads; every mutation raises UnsupportedOperationError."""

    def __init__(self, name: str, client: RegistryClient | None = None) -> None:
        self._name = name
        self._client = client or RegistryClient(parse_reference(name))
        try:
            blob = self._client.config()
        except httpx.HTTPError as exc:
            raise PackError(f"failed to read image '{name}' from registry: {exc}") from exc
        self._config = None if blob is None else (blob.get("config") or {})

    @property
    def name(self) -> str:
        return self._name

    def found(self) -> bool:
        return self._config is not None

    def label(self, key: str) -> str:
        return ((self._config or {}).get("Labels") or {}).get(key, "")

    def env(self, key: str) -> str:
        for entry in (self._config or {}).get("Env") or []:
            k, _, v = entry.partition("=")
            if k == key:
                return v
        return ""

    def _read_only(self, op: str):
        raise UnsupportedOperationError(f"cannot {op} remote image '{self._name}'")

    def set_label(self, key: str, value: str) -> None:
        self._read_only("set a label on")

    def rename(self, name: str) -> None:
        self._read_only("rename")

    def add_layer(self, tar_path: str) -> None:
        self._read_only("add a layer to")

    def save(self) -> str:
        self._read_only("save")

    def delete(self) -> None:
        self._read_only("delete")


def fetch_remote(name: str) -> RemoteImage:
    image = RemoteImage(name)
    if not image.found():
        raise ImageNotFoundError(name, "in registry")
    return image
