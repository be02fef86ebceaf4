"""Build orchestration: resolve inputs, assemble the ephemeral builder, run the lifecycle."""

from __future__ import annotations

import hashlib
import os
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cnb_pack.builder.builder import Builder
from cnb_pack.builder.metadata import STACK_LABEL
from cnb_pack.buildpacks.buildpack import Buildpack, fetch_buildpack, is_local_buildpack
from cnb_pack.config import Config
from cnb_pack.errors import ConfigurationError, IncompatibleStackError, PackError
from cnb_pack.image.base import ImageFetcher
from cnb_pack.image.reference import ImageReference, parse_tag_reference
from cnb_pack.lifecycle.lifecycle import LifecycleExecutor, LifecycleOptions
from cnb_pack.logging import get_logger
from cnb_pack.names import NameGenerator
from cnb_pack.stack.mirrors import best_mirror_for_stack
from cnb_pack.types import GroupBuildpack, GroupMetadata

logger = get_logger(__name__)

AppRunner = Callable[[str, Sequence[str], threading.Event | None], int]


@dataclass
class BuildOptions:
    image: str
    app_dir: str = ""
    builder: str = ""
    run_image: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    buildpacks: list[str] = field(default_factory=list)
    publish: bool = False
    no_pull: bool = False
    clear_cache: bool = False


@dataclass
class RunOptions:
    app_dir: str = ""
    builder: str = ""
    run_image: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    buildpacks: list[str] = field(default_factory=list)
    no_pull: bool = False
    clear_cache: bool = False
    ports: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


def process_app_dir(app_dir: str) -> Path:
    path = Path(app_dir or os.getcwd()).resolve()
    if not path.exists():
        raise ConfigurationError(f"app directory '{path}' does not exist")
    if not path.is_dir():
        raise ConfigurationError(f"app path '{path}' is not a directory")
    return path


def process_tag_reference(image: str) -> ImageReference:
    if not image:
        raise ConfigurationError("image is a required parameter")
    return parse_tag_reference(image)


def parse_env_vars(env_file: str | Path | None = None, env: Sequence[str] = ()) -> dict[str, str]:
    """Merge ``KEY=VAL`` lines from *env_file* and *env*; later entries win.

    A bare ``KEY`` takes its value from the current environment. Blank lines
    in the file are ignored.
    """
    entries: list[str] = []
    if env_file:
        try:
            text = Path(env_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"failed to read env file '{env_file}': {exc}") from exc
        entries.extend(line.strip() for line in text.splitlines() if line.strip())
    entries.extend(env)

    result: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not key:
            raise ConfigurationError(f"invalid env entry '{entry}'")
        result[key] = value if sep else os.environ.get(key, "")
    return result


def app_image_name(app_dir: Path) -> str:
    digest = hashlib.sha256(str(app_dir).encode("utf-8")).hexdigest()
    return f"pack.local/run/{digest[:16]}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class Client:
    def __init__(
        self,
        config: Config,
        fetcher: ImageFetcher,
        executor: LifecycleExecutor,
        buildpack_fetcher: Callable[[str], Buildpack] = fetch_buildpack,
        names: NameGenerator | None = None,
        app_runner: AppRunner | None = None,
    ) -> None:
        self._config = config
        self._fetcher = fetcher
        self._executor = executor
        self._buildpack_fetcher = buildpack_fetcher
        self._names = names or NameGenerator()
        self._app_runner = app_runner

    def _builder_name(self, builder: str) -> str:
        name = builder or self._config.default_builder
        if not name:
            raise ConfigurationError(
                "builder is a required parameter if the client has no default builder"
            )
        return name

    def _resolve_run_image(self, run_image: str, registry: str, builder: Builder) -> str:
        if run_image:
            logger.debug("using provided run image %s", run_image)
            return run_image
        stack = builder.get_stack_info()
        local_mirrors = self._config.local_mirrors(stack.run_image.image)
        selected = best_mirror_for_stack(stack, registry, local_mirrors)
        logger.debug("selected run image %s for registry %s", selected, registry)
        return selected

    def _validate_run_image(self, name: str, publish: bool, no_pull: bool, stack_id: str) -> None:
        image = self._fetcher.fetch(name, daemon=not publish, pull=not no_pull)
        run_stack = image.label(STACK_LABEL)
        if run_stack != stack_id:
            raise IncompatibleStackError(
                f"run-image stack id '{run_stack}' does not match builder stack '{stack_id}'"
            )

    def _process_buildpacks(self, builder: Builder, buildpacks: Sequence[str]) -> GroupMetadata:
        group = GroupMetadata()
        for entry in buildpacks:
            if is_local_buildpack(entry):
                bp = self._buildpack_fetcher(entry)
                builder.add_buildpack(bp)
                group.buildpacks.append(GroupBuildpack(id=bp.id, version=bp.version))
                continue
            bp_id, sep, version = entry.partition("@")
            if not sep or not version:
                logger.debug("no version for '%s' buildpack provided, will use '%s@latest'", bp_id, bp_id)
                version = "latest"
            group.buildpacks.append(GroupBuildpack(id=bp_id, version=version))
        return group

    def build(self, opts: BuildOptions, cancel: threading.Event | None = None) -> None:
        image_ref = process_tag_reference(opts.image)
        app_dir = process_app_dir(opts.app_dir)
        builder_name = self._builder_name(opts.builder)

        raw = self._fetcher.fetch(builder_name, daemon=True, pull=not opts.no_pull)
        current = Builder.get_builder(raw)
        if not current.get_stack_info().run_image.image:
            raise ConfigurationError(f"builder '{builder_name}' missing run image metadata")

        run_image = self._resolve_run_image(opts.run_image, image_ref.registry, current)
        self._validate_run_image(run_image, opts.publish, opts.no_pull, current.stack_id)

        ephemeral = Builder.new(raw, f"pack.local/builder/{self._names.rand_string(10)}:latest")
        try:
            ephemeral.set_env(opts.env)
            group = self._process_buildpacks(ephemeral, opts.buildpacks)
            if group.buildpacks:
                ephemeral.set_order([group])
            ephemeral.save()

            self._executor.execute(
                LifecycleOptions(
                    app_dir=app_dir,
                    image=str(image_ref),
                    builder=ephemeral,
                    run_image=run_image,
                    clear_cache=opts.clear_cache,
                    publish=opts.publish,
                ),
                cancel,
            )
        finally:
            try:
                ephemeral.image.delete()
            except PackError as exc:
                logger.error("failed to delete ephemeral builder %s: %s", ephemeral.name, exc)

    def run(self, opts: RunOptions, cancel: threading.Event | None = None) -> int:
        """Build the app in *opts.app_dir* into a local image and run it."""
        if self._app_runner is None:
            raise ConfigurationError("client has no app runner configured")
        app_dir = process_app_dir(opts.app_dir)
        image_name = app_image_name(app_dir)
        logger.debug("building app image %s", image_name)

        self.build(
            BuildOptions(
                image=image_name,
                app_dir=str(app_dir),
                builder=opts.builder,
                run_image=opts.run_image,
                env=opts.env,
                buildpacks=list(opts.buildpacks),
                no_pull=opts.no_pull,
                clear_cache=opts.clear_cache,
            ),
            cancel,
        )
        return self._app_runner(image_name, opts.ports, cancel)

