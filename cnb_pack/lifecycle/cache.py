"""Per-application layer cache image."""

from __future__ import annotations

import hashlib

import docker
from docker.errors import APIError, ImageNotFound

from cnb_pack.errors import PackError
from cnb_pack.image.reference import ImageReference


class CacheImage:
    def __init__(self, image_ref: ImageReference, docker_client: docker.DockerClient) -> None:
        self._docker = docker_client
        digest = hashlib.sha256(image_ref.context.encode("utf-8")).hexdigest()
        self._name = f"pack-cache-{digest[:12]}"

    def name(self) -> str:
        return self._name

    def clear(self) -> None:
        try:
            self._docker.images.remove(self._name, force=True)
        except ImageNotFound:
            pass
        except APIError as exc:
            raise PackError(f"failed to clear cache image '{self._name}': {exc}") from exc
