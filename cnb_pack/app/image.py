"""Run a built application image with published ports."""

from __future__ import annotations

import sys
import threading
from collections.abc import Sequence
from typing import TextIO

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from cnb_pack.errors import ConfigurationError, ImageNotFoundError, PackError
from cnb_pack.logging import PrefixWriter, get_logger

logger = get_logger(__name__)

POLL_INTERVAL = 0.2


def parse_ports(ports: Sequence[str]) -> dict[str, int]:
    """Map ``"8080"`` or ``"host:container"`` specs to Docker SDK port bindings."""
    bindings: dict[str, int] = {}
    for spec in ports:
        host, _, container = spec.rpartition(":")
        container_port, _, proto = container.partition("/")
        try:
            host_port = int(host or container_port)
            int(container_port)
        except ValueError as exc:
            raise ConfigurationError(f"invalid port specification '{spec}'") from exc
        bindings[f"{container_port}/{proto or 'tcp'}"] = host_port
    return bindings


def exposed_ports(docker_client: docker.DockerClient, name: str) -> list[str]:
    try:
        img = docker_client.images.get(name)
    except ImageNotFound as exc:
        raise ImageNotFoundError(name, "on the daemon") from exc
    exposed = (img.attrs.get("Config") or {}).get("ExposedPorts") or {}
    return sorted(exposed)


def _pump(container, writer: PrefixWriter) -> None:
    try:
        for chunk in container.logs(stream=True, follow=True):
            writer.write(chunk)
    except APIError as exc:
        logger.debug("app log stream ended: %s", exc)


def run_image(
    docker_client: docker.DockerClient,
    name: str,
    ports: Sequence[str] = (),
    cancel: threading.Event | None = None,
    out: TextIO | None = None,
) -> int:
    """Run *name* until it exits or *cancel* is set; return its exit code.

    Without explicit *ports* every port the image exposes is published on the
    same host port. The container is removed on every exit path.
    """
    out = out or sys.stdout
    cancel = cancel or threading.Event()
    bindings = parse_ports(ports) if ports else parse_ports(exposed_ports(docker_client, name))

    try:
        container = docker_client.containers.create(
            name, ports=bindings, labels={"author": "pack"}, tty=False
        )
    except APIError as exc:
        raise PackError(f"failed to create container for '{name}': {exc}") from exc

    writer = PrefixWriter(out, "app")
    try:
        container.start()
        for port, host_port in bindings.items():
            logger.info("publishing %s on host port %s", port, host_port)

        pump = threading.Thread(target=_pump, args=(container, writer), daemon=True)
        pump.start()

        while not cancel.wait(POLL_INTERVAL):
            container.reload()
            if container.status in ("exited", "dead"):
                break
        else:
            logger.info("stopping %s", name)
            container.stop()

        exit_code = container.wait().get("StatusCode", 0)
        pump.join(timeout=POLL_INTERVAL * 5)
        return exit_code
    except APIError as exc:
        raise PackError(f"failed to run '{name}': {exc}") from exc
    finally:
        writer.close()
        try:
            container.remove(force=True)
        except NotFound:
            pass
