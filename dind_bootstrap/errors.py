"""
Error types shared by the bootstrap components.

Fatal conditions are raised as subclasses of BootstrapError. Best-effort
steps whose failure is tolerated return a StepOutcome instead, so the
caller can inspect it and record a warning.
"""

from dataclasses import dataclass
from typing import Optional


class BootstrapError(Exception):
    """Base class for fatal bootstrap errors."""
    pass


class ConfigError(BootstrapError):
    """Raised for invalid administrator configuration."""
    pass


class StorageError(BootstrapError):
    """Raised when no usable storage backend can be prepared."""
    pass


@dataclass
class StepOutcome:
    """Result of a best-effort step."""
    ok: bool
    step: str
    detail: Optional[str] = None

    @classmethod
    def success(cls, step: str) -> "StepOutcome":
        return cls(ok=True, step=step)

    @classmethod
    def failure(cls, step: str, detail: str) -> "StepOutcome":
        return cls(ok=False, step=step, detail=detail)
