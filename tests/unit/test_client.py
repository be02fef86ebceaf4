from __future__ import annotations

import random
from pathlib import Path

import pytest

from cnb_pack.builder.metadata import METADATA_LABEL, STACK_LABEL, encode
from cnb_pack.buildpacks.buildpack import Buildpack
from cnb_pack.config import Config, RunImageConfig
from cnb_pack.core import BuildOptions, Client, RunOptions
from cnb_pack.errors import ConfigurationError, ImageNotFoundError, IncompatibleStackError, PhaseError
from cnb_pack.lifecycle.lifecycle import LifecycleOptions
from cnb_pack.names import NameGenerator
from cnb_pack.types import (
    BuilderMetadata,
    GroupBuildpack,
    GroupMetadata,
    RunImageMetadata,
    StackMetadata,
)
from tests.fakes import FakeFetcher, FakeImage

STACK_ID = "io.buildpacks.stacks.bionic"


class RecordingExecutor:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[LifecycleOptions] = []
        self.error = error

    def execute(self, opts, cancel=None) -> None:
        self.calls.append(opts)
        if self.error is not None:
            raise self.error


def _builder_image(name: str = "some/builder") -> FakeImage:
    md = BuilderMetadata(
        groups=[GroupMetadata(buildpacks=[GroupBuildpack(id="builtin", version="1")])],
        stack=StackMetadata(
            run_image=RunImageMetadata(
                image="default/run",
                mirrors=["registry1.example.com/run/mirror", "registry2.example.com/run/mirror"],
            )
        ),
    )
    return FakeImage(
        name,
        labels={STACK_LABEL: STACK_ID, METADATA_LABEL: encode(md)},
        env={"CNB_USER_ID": "1000", "CNB_GROUP_ID": "1000"},
    )


def _run_image(name: str, stack: str = STACK_ID) -> FakeImage:
    return FakeImage(name, labels={STACK_LABEL: stack})


@pytest.fixture
def builder_image() -> FakeImage:
    return _builder_image()


@pytest.fixture
def fetcher(builder_image: FakeImage) -> FakeFetcher:
    return FakeFetcher(
        builder_image,
        _run_image("default/run"),
        _run_image("registry1.example.com/run/mirror"),
        _run_image("local/mirror"),
    )


def _client(fetcher, executor, config=None, **kw) -> Client:
    return Client(
        config or Config(),
        fetcher,
        executor,
        names=NameGenerator(random.Random(7)),
        **kw,
    )


def test_build_runs_lifecycle_with_ephemeral_builder(tmp_path, fetcher, builder_image) -> None:
    executor = RecordingExecutor()
    client = _client(fetcher, executor)
    client.build(
        BuildOptions(image="myorg/app", app_dir=str(tmp_path), builder="some/builder", env={"A": "1"})
    )

    assert fetcher.calls == [("some/builder", True, True), ("default/run", True, True)]
    (opts,) = executor.calls
    assert opts.image == "myorg/app"
    assert opts.run_image == "default/run"
    assert opts.app_dir == tmp_path.resolve()
    assert not opts.publish and not opts.clear_cache

    suffix = opts.builder.name.removeprefix("pack.local/builder/").removesuffix(":latest")
    assert len(suffix) == 10 and suffix.isalpha()
    assert opts.builder.get_env() == {"A": "1"}
    assert [g.buildpacks[0].id for g in opts.builder.get_order()] == ["builtin"]
    assert builder_image.saved
    assert builder_image.deleted


def test_run_image_follows_target_registry(tmp_path, fetcher) -> None:
    executor = RecordingExecutor()
    _client(fetcher, executor).build(
        BuildOptions(
            image="registry1.example.com/team/app:v1",
            app_dir=str(tmp_path),
            builder="some/builder",
            publish=True,
            no_pull=True,
        )
    )
    assert fetcher.calls[1] == ("registry1.example.com/run/mirror", False, False)
    assert executor.calls[0].run_image == "registry1.example.com/run/mirror"
    assert executor.calls[0].publish


def test_local_mirrors_from_config(tmp_path, fetcher) -> None:
    config = Config(run_images=[RunImageConfig(image="default/run", mirrors=["local/mirror"])])
    executor = RecordingExecutor()
    _client(fetcher, executor, config).build(
        BuildOptions(image="myorg/app", app_dir=str(tmp_path), builder="some/builder")
    )
    assert executor.calls[0].run_image == "local/mirror"


def test_explicit_run_image_still_checks_stack(tmp_path, fetcher) -> None:
    fetcher.images["other/run"] = _run_image("other/run", stack="other.stack")
    executor = RecordingExecutor()
    with pytest.raises(IncompatibleStackError, match="other.stack"):
        _client(fetcher, executor).build(
            BuildOptions(
                image="myorg/app", app_dir=str(tmp_path), builder="some/builder", run_image="other/run"
            )
        )
    assert executor.calls == []


def test_default_builder_from_config(tmp_path, fetcher) -> None:
    executor = RecordingExecutor()
    _client(fetcher, executor, Config(default_builder="some/builder")).build(
        BuildOptions(image="myorg/app", app_dir=str(tmp_path))
    )
    assert fetcher.calls[0][0] == "some/builder"


def test_builder_is_required_without_default(tmp_path, fetcher) -> None:
    with pytest.raises(ConfigurationError, match="builder is a required parameter"):
        _client(fetcher, RecordingExecutor()).build(
            BuildOptions(image="myorg/app", app_dir=str(tmp_path))
        )


def test_digest_image_is_rejected(tmp_path, fetcher) -> None:
    with pytest.raises(ConfigurationError, match="not a tag reference"):
        _client(fetcher, RecordingExecutor()).build(
            BuildOptions(
                image="myorg/app@sha256:" + "a" * 64, app_dir=str(tmp_path), builder="some/builder"
            )
        )


def test_missing_builder_image(tmp_path, fetcher) -> None:
    with pytest.raises(ImageNotFoundError, match="does not exist on the daemon"):
        _client(fetcher, RecordingExecutor()).build(
            BuildOptions(image="myorg/app", app_dir=str(tmp_path), builder="unknown/builder")
        )


def test_buildpacks_form_one_order_group(tmp_path, fetcher) -> None:
    local = tmp_path / "local-bp"
    local.mkdir()
    (local / "buildpack.toml").write_text("", encoding="utf-8")
    fetched: list[str] = []

    def fake_fetch(path: str) -> Buildpack:
        fetched.append(path)
        return Buildpack(id="local/bp", version="0.0.1", dir=local, stacks=[STACK_ID])

    executor = RecordingExecutor()
    client = _client(fetcher, executor, buildpack_fetcher=fake_fetch)
    client.build(
        BuildOptions(
            image="myorg/app",
            app_dir=str(tmp_path),
            builder="some/builder",
            buildpacks=["some/bp", "other@1.2", str(local)],
        )
    )

    assert fetched == [str(local)]
    builder = executor.calls[0].builder
    (group,) = builder.get_order()
    assert [(b.id, b.version) for b in group.buildpacks] == [
        ("some/bp", "latest"),
        ("other", "1.2"),
        ("local/bp", "0.0.1"),
    ]
    assert [bp.id for bp in builder.get_buildpacks()] == ["local/bp"]


def test_ephemeral_builder_deleted_when_lifecycle_fails(tmp_path, fetcher, builder_image) -> None:
    executor = RecordingExecutor(error=PhaseError("builder", "failed with status code: 1", 1))
    with pytest.raises(PhaseError):
        _client(fetcher, executor).build(
            BuildOptions(image="myorg/app", app_dir=str(tmp_path), builder="some/builder")
        )
    assert builder_image.deleted


def test_run_builds_local_image_then_runs_it(tmp_path, fetcher) -> None:
    runs: list[tuple] = []

    def runner(name, ports, cancel) -> int:
        runs.append((name, list(ports)))
        return 0

    executor = RecordingExecutor()
    client = _client(fetcher, executor, app_runner=runner)
    code = client.run(RunOptions(app_dir=str(tmp_path), builder="some/builder", ports=["8080"]))

    assert code == 0
    image = executor.calls[0].image
    assert image.startswith("pack.local/run/")
    assert runs == [(image, ["8080"])]
