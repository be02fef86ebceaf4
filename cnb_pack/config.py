"""User configuration stored at ``$PACK_HOME/config.toml`` (default ``~/.pack``).

Example::

    default-builder-image = "packs/samples"

    [[run-images]]
    image = "packs/run"
    mirrors = ["gcr.io/packs/run"]
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

import toml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cnb_pack.errors import ConfigurationError
from cnb_pack.logging import get_logger

logger = get_logger(__name__)


class RunImageConfig(BaseModel):
    image: str
    mirrors: list[str] = Field(default_factory=list)


class Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_builder: str = Field(default="", alias="default-builder-image")
    run_images: list[RunImageConfig] = Field(default_factory=list, alias="run-images")

    def get_run_image(self, image: str) -> RunImageConfig | None:
        for run_image in self.run_images:
            if run_image.image == image:
                return run_image
        return None

    def local_mirrors(self, image: str) -> list[str]:
        entry = self.get_run_image(image)
        return list(entry.mirrors) if entry else []


def default_config_path() -> Path:
    home = os.environ.get("PACK_HOME") or os.path.join(os.path.expanduser("~"), ".pack")
    return Path(home) / "config.toml"


def load(path: Path | None = None) -> Config:
    path = Path(path) if path else default_config_path()
    if not path.exists():
        logger.debug("no config at %s; using defaults", path)
        return Config()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        return Config.model_validate(data)
    except (OSError, tomllib.TOMLDecodeError, ValidationError) as exc:
        raise ConfigurationError(f"failed to read config '{path}': {exc}") from exc


def save(config: Config, path: Path | None = None) -> Path:
    path = Path(path) if path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(by_alias=True)
    if not data["default-builder-image"]:
        del data["default-builder-image"]
    path.write_text(toml.dumps(data), encoding="utf-8")
    return path
