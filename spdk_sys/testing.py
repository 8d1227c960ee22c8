"""Test doubles for spdk_sys: use in unit and pipeline tests.

Usage::

    from spdk_sys.testing import RecordingRunner

    runner = RecordingRunner()                          # every command succeeds
    runner = RecordingRunner({"make": 2})               # make exits with status 2
    runner = RecordingRunner({"bash": (1, "", "boom")}) # status and output
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Sequence, Union

from spdk_sys.process import ToolResult

Outcome = Union[int, tuple[int, str, str], Callable[[list[str], Path | None], ToolResult]]


class RecordingRunner:
    """Drop-in replacement for ``run_tool`` that records calls instead of running them.

    Parameters
    ----------
    outcomes:
        Maps an executable name (first element of the command) to an exit
        status, a ``(status, stdout, stderr)`` triple, or a callable that
        produces the ToolResult. Unlisted commands succeed with no output.
    """

    def __init__(self, outcomes: dict[str, Outcome] | None = None) -> None:
        self.outcomes = dict(outcomes or {})
        self.calls: list[tuple[list[str], Path | None]] = []

    @property
    def commands(self) -> list[list[str]]:
        """Commands received, in order."""
        return [cmd for cmd, _ in self.calls]

    def __call__(self, command: Sequence[str], *, cwd: Path | None = None) -> ToolResult:
        cmd = list(command)
        self.calls.append((cmd, cwd))
        outcome = self.outcomes.get(cmd[0], 0)
        if callable(outcome):
            return outcome(cmd, cwd)
        if isinstance(outcome, tuple):
            returncode, stdout, stderr = outcome
            return ToolResult(tuple(cmd), returncode, stdout, stderr)
        return ToolResult(tuple(cmd), outcome)
