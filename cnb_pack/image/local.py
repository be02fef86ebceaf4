"""Daemon-resident image handle backed by the Docker SDK.

Labels and env are read from the image config. Mutations are kept in
memory until :meth:`LocalImage.save`, which commits them by building a new
image on top of the original one: one ``ADD <layer>.tar /`` instruction per
added layer, the pending labels, and the current name as tag.
"""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import docker
from docker.errors import APIError, BuildError, ImageNotFound

from cnb_pack.errors import PackError
from cnb_pack.logging import get_logger

logger = get_logger(__name__)


class LocalImage:
    def __init__(self, client: docker.DockerClient, name: str) -> None:
        self._client = client
        self._name = name
        self._layers: list[Path] = []
        self._labels: dict[str, str] = {}
        self._config: dict | None = None
        self._base_id: str | None = None
        self._inspect()

    def _inspect(self) -> None:
        try:
            img = self._client.images.get(self._name)
        except ImageNotFound:
            self._config = None
            self._base_id = None
            return
        self._config = img.attrs.get("Config") or {}
        self._base_id = img.id

    @property
    def name(self) -> str:
        return self._name

    def found(self) -> bool:
        return self._config is not None

    def label(self, key: str) -> str:
        if key in self._labels:
            return self._labels[key]
        return ((self._config or {}).get("Labels") or {}).get(key, "")

    def set_label(self, key: str, value: str) -> None:
        self._labels[key] = value

    def env(self, key: str) -> str:
        for entry in (self._config or {}).get("Env") or []:
            k, _, v = entry.partition("=")
            if k == key:
                return v
        return ""

    def rename(self, name: str) -> None:
        self._name = name

    def add_layer(self, tar_path: str) -> None:
        self._layers.append(Path(tar_path))

    def _build_context(self) -> io.BytesIO:
        lines = [f"FROM {self._base_id}"]
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as ctx:
            for i, layer in enumerate(self._layers):
                arcname = f"layer-{i}.tar"
                ctx.add(str(layer), arcname=arcname)
                lines.append(f"ADD {arcname} /")
            dockerfile = ("\n".join(lines) + "\n").encode("utf-8")
            info = tarfile.TarInfo("Dockerfile")
            info.size = len(dockerfile)
            ctx.addfile(info, io.BytesIO(dockerfile))
        buf.seek(0)
        return buf

    def save(self) -> str:
        """Commit pending layers and labels under the current name; return the image id."""
        if self._base_id is None:
            raise PackError(f"cannot save image '{self._name}': base image not found")
        try:
            image, logs = self._client.images.build(
                fileobj=self._build_context(),
                custom_context=True,
                tag=self._name,
                labels=dict(self._labels) or None,
                rm=True,
                forcerm=True,
                pull=False,
            )
        except (BuildError, APIError) as exc:
            raise PackError(f"failed to save image '{self._name}': {exc}") from exc
        for entry in logs:
            if "stream" in entry:
                logger.debug("build %s: %s", self._name, entry["stream"].rstrip())
        self._layers.clear()
        self._labels = {}
        self._inspect()
        return image.id

    def delete(self) -> None:
        try:
            self._client.images.remove(self._name, force=True)
        except ImageNotFound:
            logger.debug("image %s already removed", self._name)
        except APIError as exc:
            raise PackError(f"failed to delete image '{self._name}': {exc}") from exc
