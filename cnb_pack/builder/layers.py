"""Layer tarballs appended to an ephemeral builder image.

Each function writes one ``.tar`` file into *dest_dir* and returns its path.
Paths inside the archives are absolute (``/buildpacks/...``,
``/platform/...``).
"""

from __future__ import annotations

import tarfile
from collections.abc import Mapping, Sequence
from pathlib import Path

import toml

from cnb_pack.archive.tar import add_dir, add_file, add_symlink, write_dir_to_tar
from cnb_pack.buildpacks.buildpack import Buildpack
from cnb_pack.types import GroupMetadata

BUILDPACKS_DIR = "/buildpacks"
PLATFORM_DIR = "/platform"


def env_layer(dest_dir: Path, env: Mapping[str, str]) -> Path:
    """``/platform/env/<KEY>`` files holding raw values, owned by root and read-only."""
    tar_path = Path(dest_dir) / "env.tar"
    with tarfile.open(tar_path, "w") as tw:
        add_dir(tw, PLATFORM_DIR, 0, 0, 0o555)
        add_dir(tw, f"{PLATFORM_DIR}/env", 0, 0, 0o555)
        for key in sorted(env):
            add_file(tw, f"{PLATFORM_DIR}/env/{key}", env[key].encode("utf-8"), 0, 0, 0o444)
    return tar_path


def buildpack_layer(dest_dir: Path, bp: Buildpack, uid: int, gid: int) -> Path:
    """Buildpack files re-rooted at ``/buildpacks/<escaped-id>/<version>``.

    A ``latest`` symlink next to the version directory is added when the
    buildpack is flagged latest.
    """
    tar_path = Path(dest_dir) / f"{bp.escaped_id}.{bp.version}.tar"
    base = f"{BUILDPACKS_DIR}/{bp.escaped_id}"
    with tarfile.open(tar_path, "w") as tw:
        write_dir_to_tar(tw, bp.dir, f"{base}/{bp.version}", uid, gid)
        if bp.latest:
            add_symlink(tw, f"{base}/latest", f"{base}/{bp.version}", uid, gid)
    return tar_path


def order_toml(groups: Sequence[GroupMetadata]) -> str:
    doc = {
        "groups": [
            {"buildpacks": [{"id": b.id, "version": b.version} for b in g.buildpacks]}
            for g in groups
        ]
    }
    return toml.dumps(doc)


def order_layer(dest_dir: Path, groups: Sequence[GroupMetadata]) -> Path:
    tar_path = Path(dest_dir) / "order.tar"
    with tarfile.open(tar_path, "w") as tw:
        add_file(tw, f"{BUILDPACKS_DIR}/order.toml", order_toml(groups).encode("utf-8"))
    return tar_path


def stack_toml(run_image: str, mirrors: Sequence[str]) -> str:
    return toml.dumps({"run-image": run_image, "run-image-mirrors": list(mirrors)})


def stack_layer(dest_dir: Path, run_image: str, mirrors: Sequence[str]) -> Path:
    tar_path = Path(dest_dir) / "stack.tar"
    with tarfile.open(tar_path, "w") as tw:
        add_file(tw, f"{BUILDPACKS_DIR}/stack.toml", stack_toml(run_image, mirrors).encode("utf-8"))
    return tar_path
