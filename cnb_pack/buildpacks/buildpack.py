"""Buildpack value type and directory fetcher.

A buildpack directory carries a ``buildpack.toml`` such as::

    [buildpack]
    id = "org.example.node"
    version = "1.2.3"

    [[stacks]]
    id = "io.buildpacks.stacks.bionic"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from cnb_pack.errors import ConfigurationError

BUILDPACK_TOML = "buildpack.toml"


@dataclass
class Buildpack:
    id: str
    version: str
    dir: Path
    latest: bool = False
    stacks: list[str] = field(default_factory=list)

    @property
    def escaped_id(self) -> str:
        """The id as a single path segment (``/`` replaced by ``_``)."""
        return self.id.replace("/", "_")

    def supports_stack(self, stack_id: str) -> bool:
        return stack_id in self.stacks


def is_local_buildpack(path: str) -> bool:
    return (Path(path) / BUILDPACK_TOML).exists()


def fetch_buildpack(path: str | Path) -> Buildpack:
    """Read the buildpack in directory *path*."""
    root = Path(path).resolve()
    descriptor = root / BUILDPACK_TOML
    try:
        data = tomllib.loads(descriptor.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"reading {BUILDPACK_TOML} from buildpack '{root}': {exc}") from exc

    bp = data.get("buildpack") or {}
    if not bp.get("id"):
        raise ConfigurationError(f"{descriptor} must provide buildpack id")
    if not bp.get("version"):
        raise ConfigurationError(f"{descriptor} must provide buildpack version")

    stacks = [s["id"] for s in data.get("stacks") or [] if s.get("id")]
    return Buildpack(id=bp["id"], version=bp["version"], dir=root, stacks=stacks)
