"""pack CLI: build app images from source with buildpacks.

Commands:
- build <image>          build an app image with the lifecycle phases
- run                    build the app in --path and run it locally
- set-default-builder    record the builder used when --builder is omitted
"""

from __future__ import annotations

import functools
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import docker
import typer
from docker.errors import DockerException
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cnb_pack import config as config_mod
from cnb_pack.app.image import run_image
from cnb_pack.core import BuildOptions, Client, RunOptions, parse_env_vars
from cnb_pack.errors import ConfigurationError, ImageNotFoundError, PackError
from cnb_pack.image.fetcher import Fetcher
from cnb_pack.lifecycle.lifecycle import DockerLifecycleExecutor
from cnb_pack.logging import get_logger, set_verbose

app = typer.Typer(add_completion=False, help="Build apps using Cloud Native Buildpacks")
console = Console()
logger = get_logger(__name__)

SUGGESTED_BUILDERS = [
    ("Cloud Foundry", "cloudfoundry/cnb:bionic", "small base image with Java & Node.js"),
    ("Cloud Foundry", "cloudfoundry/cnb:cflinuxfs3", "larger base image with Java, Node.js & Python"),
    ("Heroku", "heroku/buildpacks", "heroku-18 base image with official Heroku buildpacks"),
]


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")) -> None:
    set_verbose(verbose)


def _docker_client() -> docker.DockerClient:
    try:
        return docker.from_env()
    except DockerException as exc:
        rprint(f"[red]Cannot connect to the Docker daemon:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _client(docker_client: docker.DockerClient) -> Client:
    return Client(
        config_mod.load(),
        Fetcher(docker_client),
        DockerLifecycleExecutor(docker_client),
        app_runner=functools.partial(run_image, docker_client),
    )


def _suggest_builders() -> None:
    table = Table(title="Suggested builders")
    table.add_column("Vendor", style="cyan")
    table.add_column("Image")
    table.add_column("Description")
    for vendor, image, description in SUGGESTED_BUILDERS:
        table.add_row(vendor, image, description)
    console.print(table)
    rprint("Set a default with [bold]pack set-default-builder <builder image>[/bold]")


@contextmanager
def _cancel_on_signal() -> Iterator[threading.Event]:
    cancel = threading.Event()

    def handler(signum, frame) -> None:
        rprint("[yellow]Cancelling…[/yellow]")
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


def _fail(exc: PackError) -> None:
    rprint(f"[red]ERROR:[/red] {escape(str(exc))}")
    raise typer.Exit(code=1) from exc


def _require_builder(builder: str | None) -> None:
    if not builder and not config_mod.load().default_builder:
        rprint("[yellow]Please select a default builder with:[/yellow]")
        _suggest_builders()
        raise typer.Exit(code=1)


@app.command()
def build(
    image: str = typer.Argument(..., help="Name of the app image to build"),
    path: str = typer.Option("", "--path", "-p", help="Path to app dir (defaults to cwd)"),
    builder: str | None = typer.Option(None, "--builder", help="Builder image"),
    run_image_: str | None = typer.Option(None, "--run-image", help="Run image (overrides builder)"),
    env: list[str] | None = typer.Option(
        None, "--env", "-e", help="KEY=VAL or KEY build-time env vars", show_default=False
    ),
    env_file: str | None = typer.Option(None, "--env-file", help="File of KEY=VAL lines"),
    buildpack: list[str] | None = typer.Option(
        None, "--buildpack", help="Buildpack id[@version] or directory", show_default=False
    ),
    publish: bool = typer.Option(False, "--publish", help="Publish to registry"),
    no_pull: bool = typer.Option(False, "--no-pull", help="Skip pulling images before use"),
    clear_cache: bool = typer.Option(False, "--clear-cache", help="Clear the image's cache"),
) -> None:
    _require_builder(builder)
    client = _client(_docker_client())
    try:
        opts = BuildOptions(
            image=image,
            app_dir=path,
            builder=builder or "",
            run_image=run_image_ or "",
            env=parse_env_vars(env_file, env or []),
            buildpacks=buildpack or [],
            publish=publish,
            no_pull=no_pull,
            clear_cache=clear_cache,
        )
        with _cancel_on_signal() as cancel:
            client.build(opts, cancel)
    except PackError as exc:
        _fail(exc)
    rprint(f"[green]Successfully built image[/green] {image}")


@app.command()
def run(
    path: str = typer.Option("", "--path", "-p", help="Path to app dir (defaults to cwd)"),
    builder: str | None = typer.Option(None, "--builder", help="Builder image"),
    run_image_: str | None = typer.Option(None, "--run-image", help="Run image (overrides builder)"),
    env: list[str] | None = typer.Option(
        None, "--env", "-e", help="KEY=VAL or KEY build-time env vars", show_default=False
    ),
    env_file: str | None = typer.Option(None, "--env-file", help="File of KEY=VAL lines"),
    buildpack: list[str] | None = typer.Option(
        None, "--buildpack", help="Buildpack id[@version] or directory", show_default=False
    ),
    no_pull: bool = typer.Option(False, "--no-pull", help="Skip pulling images before use"),
    clear_cache: bool = typer.Option(False, "--clear-cache", help="Clear the image's cache"),
    port: list[str] | None = typer.Option(
        None, "--port", help="Port to publish (PORT or HOST:CONTAINER)", show_default=False
    ),
) -> None:
    _require_builder(builder)
    client = _client(_docker_client())
    try:
        opts = RunOptions(
            app_dir=path,
            builder=builder or "",
            run_image=run_image_ or "",
            env=parse_env_vars(env_file, env or []),
            buildpacks=buildpack or [],
            no_pull=no_pull,
            clear_cache=clear_cache,
            ports=port or [],
        )
        with _cancel_on_signal() as cancel:
            exit_code = client.run(opts, cancel)
    except PackError as exc:
        _fail(exc)
    raise typer.Exit(code=exit_code)


@app.command("set-default-builder")
def set_default_builder(
    builder: str = typer.Argument(..., help="Builder image to use by default"),
) -> None:
    fetcher = Fetcher(_docker_client())
    try:
        try:
            fetcher.fetch(builder, daemon=True, pull=False)
        except ImageNotFoundError:
            fetcher.fetch(builder, daemon=False, pull=False)
    except ImageNotFoundError:
        rprint(f"[red]ERROR:[/red] builder '{builder}' not found")
        _suggest_builders()
        raise typer.Exit(code=1) from None
    except PackError as exc:
        _fail(exc)

    try:
        cfg = config_mod.load()
        cfg.default_builder = builder
        path = config_mod.save(cfg)
    except (ConfigurationError, OSError) as exc:
        rprint(f"[red]ERROR:[/red] failed to write config: {exc}")
        raise typer.Exit(code=1) from exc
    rprint(f"[green]Builder[/green] {builder} [green]is now the default builder[/green] ({path})")


if __name__ == "__main__":
    app()
