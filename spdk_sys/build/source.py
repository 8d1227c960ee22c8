"""Source provisioning — make sure the SPDK checkout and its submodules exist."""

from __future__ import annotations

from pathlib import Path

import structlog

from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import FetchError
from spdk_sys.process import ToolResult, ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.build")

# Version-control metadata whose presence means the tree is checked out.
SOURCE_MARKER = ".git"
FETCH_COMMAND = ("git", "submodule", "update", "--init", "--recursive")


class SourceProvisioner:
    """Fetch the upstream tree (and every nested submodule) when it is missing.

    A failed fetch raises ``FetchError`` unless ``tolerate_failure`` is set,
    in which case it is logged and the configure stage becomes the
    authoritative signal for an incomplete checkout.
    """

    def __init__(self, runner: ToolRunner = run_tool, *, tolerate_failure: bool = False) -> None:
        self._runner = runner
        self.tolerate_failure = tolerate_failure

    @staticmethod
    def is_present(source_root: Path) -> bool:
        return (source_root / SOURCE_MARKER).exists()

    def provision(self, env: BuildEnvironment) -> ToolResult | None:
        """Fetch the tree if needed. Returns the fetch outcome, or None when skipped."""
        if self.is_present(env.source_root):
            log.info("source.present", source_root=str(env.source_root))
            return None

        # Submodule paths are relative to the superproject holding the tree.
        workdir = env.source_root.parent
        log.info("source.fetch", source_root=str(env.source_root), cwd=str(workdir))
        result = self._runner(FETCH_COMMAND, cwd=workdir)
        if result.ok:
            return result

        if self.tolerate_failure:
            log.warning(
                "source.fetch_failed",
                returncode=result.returncode,
                diagnostic=result.diagnostic.strip()[-2000:],
            )
            return result
        result.raise_for_status(FetchError, "Source fetch")
        return result
