"""External tool invocation with captured, result-style outcomes."""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import structlog

from spdk_sys.exceptions import StageError

log = structlog.get_logger("spdk_sys.process")

# Conventional shell exit statuses for "not found" and "timed out".
_RC_NOT_FOUND = 127
_RC_TIMEOUT = 124


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external command."""

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """The tool's own error output; stdout when it wrote nothing to stderr."""
        return self.stderr if self.stderr.strip() else self.stdout

    def raise_for_status(self, error_cls: type[StageError], what: str) -> ToolResult:
        if not self.ok:
            raise error_cls(
                f"{what} failed (rc={self.returncode}): {shlex.join(self.command)}",
                returncode=self.returncode,
                diagnostic=self.diagnostic,
            )
        return self


class ToolRunner(Protocol):
    """Callable that runs a command to completion and reports its outcome."""

    def __call__(self, command: Sequence[str], *, cwd: Path | None = None) -> ToolResult: ...


def run_tool(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
) -> ToolResult:
    """Run *command* synchronously, capturing its output.

    Never raises for tool failures: a missing executable or a timeout is
    reported as a non-zero ``ToolResult`` so callers decide how fatal it is.
    """
    argv = tuple(str(part) for part in command)
    log.debug("tool.run", command=shlex.join(argv), cwd=str(cwd) if cwd else None)
    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        return ToolResult(argv, _RC_NOT_FOUND, stderr=f"{argv[0]}: {e.strerror or e}")
    except subprocess.TimeoutExpired:
        return ToolResult(argv, _RC_TIMEOUT, stderr=f"{argv[0]}: timed out after {timeout}s")

    result = ToolResult(argv, proc.returncode, proc.stdout, proc.stderr)
    if not result.ok:
        log.debug("tool.failed", command=argv[0], returncode=result.returncode)
    return result
