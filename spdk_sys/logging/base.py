"""Stage log storage abstract interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import IO


class LogStore(ABC):
    """Per-stage log storage for a pipeline run."""

    @abstractmethod
    def get_writer(self, stage: str) -> IO:
        """Get an append handle for a stage log."""
        ...

    @abstractmethod
    def read_log(self, stage: str) -> str:
        """Read a stage log back, empty when the stage never logged."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Remove every stage log (called at the start of a run)."""
        ...
