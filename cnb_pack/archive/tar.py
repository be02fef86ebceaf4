"""Tar helpers for image layers and container copies.

All writers produce deterministic archives:
- entries are emitted in sorted order, parents before children;
- ownership is forced to the requested uid/gid with empty user/group names;
- modification times are normalized to a fixed timestamp.
"""

from __future__ import annotations

import io
import os
import stat
import tarfile
from pathlib import Path

# 1980-01-01T00:00:01Z, the earliest time every archive consumer accepts.
NORMALIZED_MTIME = 315532801


def _entry(name: str, uid: int, gid: int, mode: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.uid = uid
    info.gid = gid
    info.uname = ""
    info.gname = ""
    info.mode = mode
    info.mtime = NORMALIZED_MTIME
    return info


def add_dir(tw: tarfile.TarFile, name: str, uid: int = 0, gid: int = 0, mode: int = 0o755) -> None:
    info = _entry(name, uid, gid, mode)
    info.type = tarfile.DIRTYPE
    tw.addfile(info)


def add_file(
    tw: tarfile.TarFile,
    name: str,
    contents: bytes,
    uid: int = 0,
    gid: int = 0,
    mode: int = 0o644,
) -> None:
    info = _entry(name, uid, gid, mode)
    info.size = len(contents)
    tw.addfile(info, io.BytesIO(contents))


def add_symlink(
    tw: tarfile.TarFile, name: str, target: str, uid: int = 0, gid: int = 0, mode: int = 0o666
) -> None:
    info = _entry(name, uid, gid, mode)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    tw.addfile(info)


def write_dir_to_tar(tw: tarfile.TarFile, src_dir: Path, base: str, uid: int, gid: int) -> None:
    """Add *src_dir* and everything below it to *tw*, re-rooted at *base*.

    Regular files, directories and symlinks are kept; other file types are
    skipped. Permission bits come from the source, ownership does not.
    """
    src_dir = Path(src_dir)
    base = base.rstrip("/")
    add_dir(tw, base, uid, gid, stat.S_IMODE(src_dir.stat().st_mode))

    for current, dirnames, filenames in os.walk(src_dir):
        dirnames.sort()
        rel_root = Path(current).relative_to(src_dir)
        for name in dirnames + sorted(filenames):
            path = Path(current) / name
            arcname = f"{base}/{(rel_root / name).as_posix()}"
            st = path.lstat()
            mode = stat.S_IMODE(st.st_mode)
            if stat.S_ISLNK(st.st_mode):
                add_symlink(tw, arcname, os.readlink(path), uid, gid, mode)
            elif stat.S_ISDIR(st.st_mode):
                add_dir(tw, arcname, uid, gid, mode)
            elif stat.S_ISREG(st.st_mode):
                add_file(tw, arcname, path.read_bytes(), uid, gid, mode)


def create_single_file_tar(tar_path: Path, name: str, contents: str) -> Path:
    with tarfile.open(tar_path, "w") as tw:
        add_file(tw, name, contents.encode("utf-8"))
    return tar_path


def dir_tar_bytes(src_dir: Path, base: str, uid: int, gid: int) -> bytes:
    """Return an in-memory tar of *src_dir* rooted at *base* (for container copies)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tw:
        write_dir_to_tar(tw, src_dir, base, uid, gid)
    return buf.getvalue()
