"""Image reference parsing.

Registry host resolution follows the Docker client's rules (a first path
component is a registry only when it contains ``.`` or ``:`` or is
``localhost``; ``index.docker.io`` is the same host as ``docker.io``).
Repository, tag and digest syntax is checked against the distribution
reference grammar.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from docker.auth import INDEX_NAME, resolve_index_name, resolve_repository_name
from docker.errors import InvalidRepository
from docker.utils import parse_repository_tag

from cnb_pack.errors import ConfigurationError

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*"
_REPOSITORY = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")

DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    name: str  # as given by the caller
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def is_tag(self) -> bool:
        return self.digest is None

    @property
    def context(self) -> str:
        """Registry-qualified repository, without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        return self.name


def normalize_registry(registry: str) -> str:
    return resolve_index_name(registry)


def parse_reference(ref: str) -> ImageReference:
    """Parse *ref*; raise ConfigurationError when it is not a valid image reference."""
    ref = (ref or "").strip()
    if not ref:
        raise ConfigurationError("image reference must not be empty")

    repo_part, suffix = parse_repository_tag(ref)
    tag = digest = None
    if suffix is not None:
        if "@" in ref:
            digest = suffix
            if not _DIGEST.match(digest):
                raise ConfigurationError(f"invalid digest '{digest}' in image reference '{ref}'")
        else:
            tag = suffix
            if not _TAG.match(tag):
                raise ConfigurationError(f"invalid tag '{tag}' in image reference '{ref}'")

    try:
        registry, repository = resolve_repository_name(repo_part)
    except InvalidRepository as exc:
        raise ConfigurationError(f"invalid image reference '{ref}': {exc}") from exc
    if not _REPOSITORY.match(repository):
        raise ConfigurationError(f"invalid repository '{repository}' in image reference '{ref}'")

    return ImageReference(name=ref, registry=registry, repository=repository, tag=tag, digest=digest)


def parse_tag_reference(ref: str) -> ImageReference:
    """Like :func:`parse_reference` but rejects digest references."""
    parsed = parse_reference(ref)
    if not parsed.is_tag:
        raise ConfigurationError(f"'{ref}' is not a tag reference")
    return parsed


def is_default_registry(registry: str) -> bool:
    return normalize_registry(registry) == INDEX_NAME
