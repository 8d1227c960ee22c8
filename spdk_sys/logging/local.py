"""Local file stage log storage."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import IO

from spdk_sys.logging.base import LogStore


class LocalLogStore(LogStore):
    """Stage logs as ``<base_dir>/<stage>.log`` files."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def get_writer(self, stage: str) -> IO:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return open(self.base_dir / f"{stage}.log", "a")

    def read_log(self, stage: str) -> str:
        log_file = self.base_dir / f"{stage}.log"
        if log_file.exists():
            return log_file.read_text()
        return ""

    def clear(self) -> None:
        if self.base_dir.exists():
            shutil.rmtree(self.base_dir)
