"""In-memory builder image: metadata, pending buildpacks, env and stack info.

A :class:`Builder` wraps one image handle. Mutations stay in memory until
:meth:`Builder.save` appends the layers and the metadata label and commits
the image. Ephemeral builders are created with :meth:`Builder.new`, which
renames the handle so the base image itself is never overwritten.
"""

from __future__ import annotations

import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from cnb_pack.builder import layers
from cnb_pack.builder.metadata import METADATA_LABEL, STACK_LABEL, decode, encode
from cnb_pack.buildpacks.buildpack import Buildpack
from cnb_pack.errors import BuilderSaveError, ConfigurationError, IncompatibleStackError
from cnb_pack.image.base import Image
from cnb_pack.logging import get_logger
from cnb_pack.types import (
    BuilderMetadata,
    BuildpackMetadata,
    GroupMetadata,
    RunImageMetadata,
    StackMetadata,
)

logger = get_logger(__name__)

USER_ENV = "CNB_USER_ID"
GROUP_ENV = "CNB_GROUP_ID"


def _int_env(image: Image, key: str) -> int:
    value = image.env(key)
    if value == "":
        raise ConfigurationError(f"image '{image.name}' missing required env var '{key}'")
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(
            f"failed to parse '{key}', value '{value}' should be an integer"
        ) from exc


class Builder:
    def __init__(
        self, image: Image, metadata: BuilderMetadata, uid: int, gid: int, stack_id: str
    ) -> None:
        self._image = image
        self._metadata = metadata
        self._uid = uid
        self._gid = gid
        self._stack_id = stack_id
        self._pending: list[Buildpack] = []
        self._env: dict[str, str] = {}

    @classmethod
    def _from_image(cls, image: Image, require_metadata: bool) -> Builder:
        uid = _int_env(image, USER_ENV)
        gid = _int_env(image, GROUP_ENV)

        stack_id = image.label(STACK_LABEL)
        if not stack_id:
            raise ConfigurationError(f"image '{image.name}' missing label '{STACK_LABEL}'")

        label = image.label(METADATA_LABEL)
        if not label and require_metadata:
            raise ConfigurationError(
                f"builder '{image.name}' missing label '{METADATA_LABEL}' -- try recreating builder"
            )
        return cls(image, decode(label), uid, gid, stack_id)

    @classmethod
    def get_builder(cls, image: Image) -> Builder:
        """Open an existing builder image; the metadata label is required."""
        return cls._from_image(image, require_metadata=True)

    @classmethod
    def new(cls, image: Image, name: str) -> Builder:
        """Start a new builder from *image*, to be saved under *name*."""
        builder = cls._from_image(image, require_metadata=False)
        image.rename(name)
        return builder

    # --- accessors ---------------------------------------------------------

    @property
    def name(self) -> str:
        return self._image.name

    @property
    def uid(self) -> int:
        return self._uid

    @property
    def gid(self) -> int:
        return self._gid

    @property
    def stack_id(self) -> str:
        return self._stack_id

    @property
    def image(self) -> Image:
        return self._image

    def get_stack_info(self) -> StackMetadata:
        return self._metadata.stack

    def get_order(self) -> list[GroupMetadata]:
        return self._metadata.groups

    def get_buildpacks(self) -> list[BuildpackMetadata]:
        return self._metadata.buildpacks

    def get_env(self) -> dict[str, str]:
        return dict(self._env)

    def get_buildpack(self, id: str, version: str) -> BuildpackMetadata | None:
        """Find a buildpack by exact version, or the latest-flagged one for ``latest``."""
        if version == "latest":
            latest = [bp for bp in self._metadata.buildpacks if bp.id == id and bp.latest]
            if len(latest) > 1:
                logger.warning("multiple buildpacks with id '%s' are marked latest", id)
            return latest[0] if latest else None
        for bp in self._metadata.buildpacks:
            if bp.id == id and bp.version == version:
                return bp
        return None

    # --- mutation ----------------------------------------------------------

    def add_buildpack(self, bp: Buildpack) -> None:
        if not bp.supports_stack(self._stack_id):
            raise IncompatibleStackError(
                f"buildpack '{bp.id}' version '{bp.version}' does not support stack '{self._stack_id}'"
            )
        self._pending.append(bp)
        self._metadata.buildpacks.append(
            BuildpackMetadata(id=bp.id, version=bp.version, latest=bp.latest)
        )

    def set_order(self, groups: Sequence[GroupMetadata]) -> None:
        self._metadata.groups = list(groups)

    def set_env(self, env: Mapping[str, str]) -> None:
        self._env = dict(env)

    def set_stack_info(self, run_image: str, mirrors: Sequence[str] = ()) -> None:
        self._metadata.stack = StackMetadata(
            run_image=RunImageMetadata(image=run_image, mirrors=list(mirrors))
        )

    # --- persistence -------------------------------------------------------

    def save(self) -> str:
        """Append env, buildpack, order and stack layers, set the label and commit.

        Returns the id of the committed image.
        """
        with tempfile.TemporaryDirectory(prefix="create-builder-scratch") as tmp:
            scratch = Path(tmp)

            try:
                self._image.add_layer(str(layers.env_layer(scratch, self._env)))
            except Exception as exc:
                raise BuilderSaveError(f"adding env layer: {exc}") from exc

            for bp in self._pending:
                try:
                    tar_path = layers.buildpack_layer(scratch, bp, self._uid, self._gid)
                    self._image.add_layer(str(tar_path))
                except Exception as exc:
                    raise BuilderSaveError(
                        f"adding layer tar for buildpack '{bp.id}:{bp.version}': {exc}"
                    ) from exc

            try:
                self._image.add_layer(str(layers.order_layer(scratch, self._metadata.groups)))
            except Exception as exc:
                raise BuilderSaveError(f"adding order.tar layer: {exc}") from exc

            stack = self._metadata.stack.run_image
            try:
                self._image.add_layer(str(layers.stack_layer(scratch, stack.image, stack.mirrors)))
            except Exception as exc:
                raise BuilderSaveError(f"adding stack.tar layer: {exc}") from exc

            try:
                self._image.set_label(METADATA_LABEL, encode(self._metadata))
            except Exception as exc:
                raise BuilderSaveError(f"failed to set metadata label: {exc}") from exc

            image_id = self._image.save()
            logger.debug("saved builder %s (%s)", self._image.name, image_id)
            return image_id
