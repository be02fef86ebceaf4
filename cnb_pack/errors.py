"""Exception hierarchy shared by the builder, lifecycle and client layers."""

from __future__ import annotations


class PackError(Exception):
    """Base exception for all application-specific errors."""


# --- Input / configuration --------------------------------------------------


class ConfigurationError(PackError):
    """Invalid input: bad references, missing builder, app dir, env vars or labels."""


class MetadataError(ConfigurationError):
    """Raised when the builder metadata label cannot be parsed."""


class ImageNotFoundError(PackError):
    """Raised when an image is absent from the daemon or the registry."""

    def __init__(self, name: str, where: str) -> None:
        super().__init__(f"image '{name}' does not exist {where}")
        self.name = name
        self.where = where


class IncompatibleStackError(PackError):
    """Raised when a run image or buildpack does not match the builder's stack."""


class UnsupportedOperationError(PackError):
    """Raised when a read-only image handle is asked to mutate."""


# --- Builder assembly -------------------------------------------------------


class BuilderSaveError(PackError):
    """Raised when an artifact of the ephemeral builder could not be written."""


# --- Lifecycle execution ----------------------------------------------------


class PhaseError(PackError):
    """Raised when a lifecycle phase exits non-zero or the runtime fails mid-run."""

    def __init__(self, phase: str, message: str, exit_code: int | None = None) -> None:
        super().__init__(f"phase '{phase}': {message}")
        self.phase = phase
        self.exit_code = exit_code


class PhaseCancelledError(PhaseError):
    """Raised when a phase was interrupted by the caller's cancel event."""

    def __init__(self, phase: str) -> None:
        super().__init__(phase, "cancelled")


class CleanupError(PackError):
    """Aggregates every failure seen while releasing build resources."""

    def __init__(self, errors: list[Exception]) -> None:
        lines = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"{len(errors)} cleanup error(s):\n{lines}")
        self.errors = list(errors)
