"""Phase orchestration for one build.

A :class:`Lifecycle` owns the ephemeral builder, a layers volume and an app
volume shared by every phase, and the one-shot copy of the application
source into the app volume. :meth:`Lifecycle.execute` runs detect, restore,
analyze, build, export and cache in order; :meth:`Lifecycle.cleanup`
releases the builder image and both volumes.
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TextIO

import docker
from docker.errors import APIError, NotFound

from cnb_pack.archive.tar import dir_tar_bytes
from cnb_pack.builder.builder import Builder
from cnb_pack.errors import CleanupError, PackError
from cnb_pack.image.reference import parse_reference
from cnb_pack.lifecycle.cache import CacheImage
from cnb_pack.lifecycle.phase import (
    LAYERS_DIR,
    WORKSPACE_DIR,
    Phase,
    PhaseOption,
    with_args,
    with_daemon_access,
    with_registry_access,
)
from cnb_pack.logging import get_logger
from cnb_pack.names import NameGenerator

logger = get_logger(__name__)

GROUP_PATH = f"{LAYERS_DIR}/group.toml"
PLAN_PATH = f"{LAYERS_DIR}/plan.toml"


@dataclass
class LifecycleOptions:
    app_dir: Path
    image: str
    builder: Builder
    run_image: str
    clear_cache: bool = False
    publish: bool = False


class LifecycleExecutor(Protocol):
    def execute(self, opts: LifecycleOptions, cancel: threading.Event | None = None) -> None: ...


class Lifecycle:
    def __init__(
        self,
        docker_client: docker.DockerClient,
        builder: Builder,
        app_dir: Path,
        names: NameGenerator,
        out: TextIO | None = None,
    ) -> None:
        self._docker = docker_client
        self.builder = builder
        self.app_dir = Path(app_dir)
        self.layers_volume = f"pack-layers-{names.rand_string(10)}"
        self.app_volume = f"pack-app-{names.rand_string(10)}"
        self.app_copied = False
        self._out = out or sys.stdout

    def __enter__(self) -> Lifecycle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.cleanup()
        except CleanupError:
            if exc_type is None:
                raise
            # Already logged; the in-flight error wins.

    # --- phases ------------------------------------------------------------

    def new_phase(self, name: str, *options: PhaseOption) -> Phase:
        phase = Phase(
            name,
            self._docker,
            self.builder.name,
            self.layers_volume,
            self.app_volume,
            self._out,
            before_start=self._prepare_app,
        )
        for option in options:
            option(phase)
        return phase

    def _prepare_app(self, container) -> None:
        if self.app_copied:
            return
        try:
            for volume in (self.layers_volume, self.app_volume):
                self._docker.volumes.create(name=volume, labels={"author": "pack"})
            logger.debug("copying %s into %s", self.app_dir, self.app_volume)
            data = dir_tar_bytes(
                self.app_dir, WORKSPACE_DIR.lstrip("/"), self.builder.uid, self.builder.gid
            )
            if not container.put_archive("/", data):
                raise PackError(f"failed to copy app dir '{self.app_dir}' into container")
        except APIError as exc:
            raise PackError(f"failed to prepare app volume: {exc}") from exc
        self.app_copied = True

    def _run(self, phase: Phase, cancel: threading.Event | None) -> None:
        try:
            phase.run(cancel)
        finally:
            phase.cleanup()

    def detect(self, cancel: threading.Event | None = None) -> None:
        phase = self.new_phase(
            "detector",
            with_args("-app", WORKSPACE_DIR, "-group", GROUP_PATH, "-plan", PLAN_PATH),
        )
        self._run(phase, cancel)

    def restore(self, cache_image: str, cancel: threading.Event | None = None) -> None:
        phase = self.new_phase(
            "restorer",
            with_daemon_access(),
            with_args("-image", cache_image, "-group", GROUP_PATH, "-layers", LAYERS_DIR),
        )
        self._run(phase, cancel)

    def analyze(self, image: str, publish: bool, cancel: threading.Event | None = None) -> None:
        args = ["-layers", LAYERS_DIR, "-helpers=false", "-group", GROUP_PATH, image]
        if publish:
            phase = self.new_phase("analyzer", with_registry_access(image), with_args(*args))
        else:
            phase = self.new_phase(
                "analyzer", with_daemon_access(), with_args("-daemon", *args)
            )
        self._run(phase, cancel)

    def build(self, cancel: threading.Event | None = None) -> None:
        phase = self.new_phase(
            "builder",
            with_args(
                "-layers", LAYERS_DIR, "-app", WORKSPACE_DIR, "-group", GROUP_PATH, "-plan", PLAN_PATH
            ),
        )
        self._run(phase, cancel)

    def export(
        self, image: str, run_image: str, publish: bool, cancel: threading.Event | None = None
    ) -> None:
        args = [
            "-image", run_image,
            "-layers", LAYERS_DIR,
            "-helpers=false",
            "-app", WORKSPACE_DIR,
            "-group", GROUP_PATH,
            image,
        ]
        if publish:
            phase = self.new_phase(
                "exporter", with_registry_access(image, run_image), with_args(*args)
            )
        else:
            phase = self.new_phase(
                "exporter", with_daemon_access(), with_args("-daemon", *args)
            )
        self._run(phase, cancel)

    def cache(self, cache_image: str, cancel: threading.Event | None = None) -> None:
        phase = self.new_phase(
            "cacher",
            with_daemon_access(),
            with_args("-image", cache_image, "-group", GROUP_PATH, "-layers", LAYERS_DIR),
        )
        self._run(phase, cancel)

    # --- orchestration -----------------------------------------------------

    def execute(self, opts: LifecycleOptions, cancel: threading.Event | None = None) -> None:
        cache = CacheImage(parse_reference(opts.image), self._docker)
        if opts.clear_cache:
            cache.clear()
            logger.info("Cache image '%s' cleared", cache.name())

        logger.info("DETECTING")
        self.detect(cancel)

        if opts.clear_cache:
            logger.info("Skipping 'restore' due to clearing cache")
        else:
            logger.info("RESTORING")
            self.restore(cache.name(), cancel)

        if opts.clear_cache:
            logger.info("Skipping 'analyze' due to clearing cache")
        else:
            logger.info("ANALYZING")
            self.analyze(opts.image, opts.publish, cancel)

        logger.info("BUILDING")
        self.build(cancel)

        logger.info("EXPORTING")
        self.export(opts.image, opts.run_image, opts.publish, cancel)

        logger.info("CACHING")
        self.cache(cache.name(), cancel)

    def cleanup(self) -> None:
        """Delete the builder image and both volumes; aggregate every failure."""
        errors: list[Exception] = []

        try:
            self.builder.image.delete()
        except Exception as exc:
            logger.error("failed to clean up builder image: %s", exc)
            errors.append(exc)

        for volume in (self.layers_volume, self.app_volume):
            try:
                self._docker.volumes.get(volume).remove(force=True)
            except NotFound:
                logger.debug("volume %s already removed", volume)
            except APIError as exc:
                logger.error("failed to clean up volume %s: %s", volume, exc)
                errors.append(exc)

        if errors:
            raise CleanupError(errors)


class DockerLifecycleExecutor:
    """Run a :class:`Lifecycle` against the Docker daemon."""

    def __init__(
        self,
        docker_client: docker.DockerClient,
        names: NameGenerator | None = None,
        out: TextIO | None = None,
    ) -> None:
        self._docker = docker_client
        self._names = names or NameGenerator()
        self._out = out

    def execute(self, opts: LifecycleOptions, cancel: threading.Event | None = None) -> None:
        with Lifecycle(self._docker, opts.builder, opts.app_dir, self._names, self._out) as lc:
            lc.execute(opts, cancel)
