"""Typed contracts for image handles and fetchers.

Concrete backends: :mod:`cnb_pack.image.local` (daemon-resident images)
and :mod:`cnb_pack.image.remote` (read-only registry images). Tests use
in-memory fakes that satisfy the same protocols.
"""

from __future__ import annotations

from typing import Protocol


class Image(Protocol):
    @property
    def name(self) -> str: ...

    def found(self) -> bool: ...

    def label(self, key: str) -> str: ...

    def set_label(self, key: str, value: str) -> None: ...

    def env(self, key: str) -> str: ...

    def rename(self, name: str) -> None: ...

    def add_layer(self, tar_path: str) -> None: ...

    def save(self) -> str: ...

    def delete(self) -> None: ...


class ImageFetcher(Protocol):
    def fetch(self, name: str, daemon: bool, pull: bool) -> Image: ...
