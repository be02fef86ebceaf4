"""A single lifecycle phase: one container running one ``/lifecycle/<name>`` binary.

Phases are configured with option functions (:func:`with_args`,
:func:`with_daemon_access`, :func:`with_registry_access`) and run once.
Output is pumped by a background thread through a :class:`PrefixWriter`
while the calling thread polls the container and the cancel event.
"""

from __future__ import annotations

import base64
import json
import threading
from collections.abc import Callable
from typing import TextIO

import docker
from docker.errors import APIError, NotFound

from cnb_pack.errors import PackError, PhaseCancelledError, PhaseError
from cnb_pack.image.reference import parse_reference
from cnb_pack.image.remote import registry_credentials
from cnb_pack.logging import PrefixWriter, get_logger

logger = get_logger(__name__)

LAYERS_DIR = "/layers"
WORKSPACE_DIR = "/workspace"
DOCKER_SOCKET = "/var/run/docker.sock"
REGISTRY_AUTH_ENV = "CNB_REGISTRY_AUTH"
POLL_INTERVAL = 0.2
STOP_TIMEOUT = 10

PhaseOption = Callable[["Phase"], None]


def with_args(*args: str) -> PhaseOption:
    def apply(phase: Phase) -> None:
        phase.args.extend(args)

    return apply


def with_daemon_access() -> PhaseOption:
    def apply(phase: Phase) -> None:
        phase.user = "root"
        phase.binds.append(f"{DOCKER_SOCKET}:{DOCKER_SOCKET}")

    return apply


def registry_auth_env(*repos: str) -> str:
    """JSON mapping registry host to ``Basic <b64>`` for repos with local credentials."""
    auth: dict[str, str] = {}
    for repo in repos:
        registry = parse_reference(repo).registry
        if registry in auth:
            continue
        creds = registry_credentials(registry)
        if creds is None:
            continue
        token = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode("ascii")
        auth[registry] = f"Basic {token}"
    return json.dumps(auth, separators=(",", ":"))


def with_registry_access(*repos: str) -> PhaseOption:
    def apply(phase: Phase) -> None:
        phase.env[REGISTRY_AUTH_ENV] = registry_auth_env(*repos)
        phase.network_mode = "host"

    return apply


class Phase:
    def __init__(
        self,
        name: str,
        docker_client: docker.DockerClient,
        image: str,
        layers_volume: str,
        app_volume: str,
        out: TextIO,
        before_start: Callable[[object], None] | None = None,
    ) -> None:
        self.name = name
        self.image = image
        self.args: list[str] = []
        self.binds = [f"{layers_volume}:{LAYERS_DIR}", f"{app_volume}:{WORKSPACE_DIR}"]
        self.env: dict[str, str] = {}
        self.user: str | None = None
        self.network_mode: str | None = None
        self.container = None
        self._docker = docker_client
        self._out = out
        self._before_start = before_start
        self._used = False

    @property
    def binary(self) -> str:
        return f"/lifecycle/{self.name}"

    @property
    def command(self) -> list[str]:
        return [self.binary, *self.args]

    def run(self, cancel: threading.Event | None = None) -> None:
        """Run the phase to completion.

        Raises PhaseCancelledError when *cancel* is set before the container
        exits and PhaseError on a non-zero exit or a runtime failure.
        """
        if self._used:
            raise PhaseError(self.name, "phase has already been run")
        self._used = True
        cancel = cancel or threading.Event()

        try:
            self.container = self._docker.containers.create(
                self.image,
                command=self.command,
                volumes=self.binds,
                environment=self.env,
                user=self.user,
                network_mode=self.network_mode,
                labels={"author": "pack"},
            )
            if self._before_start is not None:
                self._before_start(self.container)
            self.container.start()
        except APIError as exc:
            raise PhaseError(self.name, f"failed to start container: {exc}") from exc

        writer = PrefixWriter(self._out, self.name)
        pump = threading.Thread(target=self._pump, args=(self.container, writer), daemon=True)
        pump.start()
        try:
            while not cancel.wait(POLL_INTERVAL):
                self.container.reload()
                if self.container.status in ("exited", "dead"):
                    break
            else:
                logger.info("cancelling phase %s", self.name)
                self._stop()
                raise PhaseCancelledError(self.name)

            result = self.container.wait()
        except APIError as exc:
            raise PhaseError(self.name, f"container failed: {exc}") from exc
        finally:
            pump.join(timeout=STOP_TIMEOUT)
            writer.close()

        exit_code = result.get("StatusCode", 0)
        if exit_code != 0:
            raise PhaseError(self.name, f"failed with status code: {exit_code}", exit_code)

    def _pump(self, container, writer: PrefixWriter) -> None:
        try:
            for chunk in container.logs(stream=True, follow=True):
                writer.write(chunk)
        except APIError as exc:
            logger.debug("log stream for %s ended: %s", self.name, exc)

    def _stop(self) -> None:
        try:
            self.container.stop(timeout=STOP_TIMEOUT)
        except APIError as exc:
            logger.debug("stopping %s: %s", self.name, exc)
        self.cleanup()

    def cleanup(self) -> None:
        """Force-remove the container; safe to call more than once."""
        if self.container is None:
            return
        container, self.container = self.container, None
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug("container for %s already removed", self.name)
        except APIError as exc:
            raise PackError(f"failed to remove container for phase '{self.name}': {exc}") from exc
