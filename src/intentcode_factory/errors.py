from __future__ import annotations


class IntentCodeError(Exception):
    """Base class for every error raised by the build pipeline."""


class InvalidPathError(IntentCodeError, ValueError):
    """Raised when a filesystem path does not live under the expected project root."""


class GraphInvariantError(IntentCodeError, RuntimeError):
    """Raised when the graph would be left inconsistent (missing parent, duplicate key, dangling reference)."""


class ResultValidationError(IntentCodeError, ValueError):
    """Raised by stage validators when a generated result is semantically invalid.

    Always recovered inside the runner's attempt loop.
    """


class FatalBuildError(IntentCodeError, RuntimeError):
    """A condition that aborts the whole build run."""


class GenerationFailedError(FatalBuildError):
    """Every generation attempt for a unit of work failed validation."""

    def __init__(self, label: str, attempts: int, reasons: list[str]) -> None:
        self.label = label
        self.attempts = attempts
        self.reasons = list(reasons)
        last = reasons[-1] if reasons else "no reason recorded"
        super().__init__(f"{label}: generation failed after {attempts} attempts (last failure: {last})")


class DiagnosticsError(FatalBuildError):
    """The model reported error-level diagnostics for a unit of work."""

    def __init__(self, label: str, error_count: int) -> None:
        self.label = label
        self.error_count = error_count
        super().__init__(f"{label}: {error_count} error(s) reported")


class ManifestDriftError(FatalBuildError):
    """The mirrored dependency manifest file no longer matches the graph's copy."""


class BuildCancelledError(IntentCodeError):
    """The build run was cancelled at a cooperative checkpoint."""


class ProjectNotFoundError(IntentCodeError, LookupError):
    """No project with the requested name exists in the graph."""
