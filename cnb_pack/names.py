"""Random suffixes for ephemeral builder images and volumes."""

from __future__ import annotations

import random
import string


class NameGenerator:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def rand_string(self, n: int = 10) -> str:
        return "".join(self._rng.choice(string.ascii_lowercase) for _ in range(n))
