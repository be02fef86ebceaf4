"""Run-image mirror selection."""

from __future__ import annotations

from collections.abc import Sequence

from cnb_pack.errors import ConfigurationError
from cnb_pack.image.reference import normalize_registry, parse_reference
from cnb_pack.logging import get_logger
from cnb_pack.types import StackMetadata

logger = get_logger(__name__)


def get_best_mirror(
    registry: str,
    run_image: str,
    mirrors: Sequence[str] = (),
    local_mirrors: Sequence[str] = (),
) -> str:
    """Pick the run image to use for a target *registry*.

    Candidates are scanned in priority order: locally configured mirrors,
    then the builder's run image, then the builder's mirrors. The first one
    hosted on *registry* wins. Without a match the first local mirror is
    used, falling back to the builder's run image.
    """
    target = normalize_registry(registry)
    for candidate in [*local_mirrors, run_image, *mirrors]:
        try:
            ref = parse_reference(candidate)
        except ConfigurationError:
            logger.debug("skipping unparsable run image candidate %r", candidate)
            continue
        if ref.registry == target:
            return candidate
    if local_mirrors:
        return local_mirrors[0]
    return run_image


def best_mirror_for_stack(
    stack: StackMetadata, registry: str, local_mirrors: Sequence[str] = ()
) -> str:
    return get_best_mirror(
        registry, stack.run_image.image, stack.run_image.mirrors, local_mirrors
    )
