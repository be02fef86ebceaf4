"""Image fetcher: daemon images through the Docker SDK, registry images through httpx."""

from __future__ import annotations

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from cnb_pack.errors import ImageNotFoundError, PackError
from cnb_pack.image.base import Image
from cnb_pack.image.local import LocalImage
from cnb_pack.image.reference import parse_reference
from cnb_pack.image.remote import fetch_remote
from cnb_pack.logging import get_logger

logger = get_logger(__name__)


class Fetcher:
    """Resolve image names to handles.

    ``daemon=False`` always reads from the registry. With ``daemon=True`` the
    image is pulled first when ``pull`` is set, then looked up on the daemon.
    """

    def __init__(self, client: docker.DockerClient) -> None:
        self._client = client

    def fetch(self, name: str, daemon: bool, pull: bool) -> Image:
        if not daemon:
            return fetch_remote(name)

        if pull:
            self._pull(name)

        image = LocalImage(self._client, name)
        if not image.found():
            raise ImageNotFoundError(name, "on the daemon")
        return image

    def _pull(self, name: str) -> None:
        parse_reference(name)
        logger.info("pulling image %s", name)
        try:
            # The SDK splits the tag or digest off the name itself.
            self._client.images.pull(name)
        except (ImageNotFound, NotFound) as exc:
            raise ImageNotFoundError(name, "in registry") from exc
        except APIError as exc:
            raise PackError(f"failed to pull image '{name}': {exc}") from exc
