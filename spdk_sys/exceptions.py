"""Custom exceptions for the spdk-sys build pipeline."""

from __future__ import annotations


class SpdkSysError(Exception):
    """Base exception for all pipeline errors."""


class EnvironmentConfigError(SpdkSysError):
    """Raised when a required build input is missing or malformed."""


class FilterConflictError(SpdkSysError):
    """Raised when a declaration name belongs to more than one filter rule set."""

    def __init__(self, conflicts: list[tuple[str, str, str]]):
        self.conflicts = conflicts
        details = ", ".join(f"'{name}' in {a} and {b}" for name, a, b in conflicts)
        super().__init__(f"Conflicting declaration filter rules: {details}")


class StageError(SpdkSysError):
    """A pipeline stage failed.

    Carries the external tool's exit status (when there was one) and its
    diagnostic output, unmodified.
    """

    stage = "unknown"

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        diagnostic: str = "",
    ) -> None:
        self.returncode = returncode
        self.diagnostic = diagnostic
        super().__init__(message)


class FetchError(StageError):
    """Raised when the source checkout cannot be fetched."""

    stage = "fetch"


class ConfigureError(StageError):
    """Raised when the upstream configure script fails."""

    stage = "configure"


class BuildError(StageError):
    """Raised when the upstream build fails."""

    stage = "build"


class LinkError(StageError):
    """Raised when archive discovery or the shared-library link fails."""

    stage = "link"


class ParseError(StageError):
    """Raised when the umbrella header cannot be preprocessed or parsed."""

    stage = "bindings"
