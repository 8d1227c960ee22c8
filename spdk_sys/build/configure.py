"""Configure step — run SPDK's configure script with a fixed feature set."""

from __future__ import annotations

import structlog

from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import ConfigureError
from spdk_sys.process import ToolResult, ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.build")

# ISA-L acceleration is left out of the aggregated library.
CONFIGURE_FLAGS: tuple[str, ...] = ("--without-isal",)


class Configurator:
    """Run ``./configure`` from the source root; any failure is fatal."""

    def __init__(
        self,
        runner: ToolRunner = run_tool,
        flags: tuple[str, ...] = CONFIGURE_FLAGS,
    ) -> None:
        self._runner = runner
        self.flags = tuple(flags)

    def command(self) -> list[str]:
        return ["bash", "./configure", *self.flags]

    def configure(self, env: BuildEnvironment) -> ToolResult:
        cmd = self.command()
        log.info("configure.start", cwd=str(env.source_root), flags=list(self.flags))
        result = self._runner(cmd, cwd=env.source_root)
        result.raise_for_status(ConfigureError, "Configure")
        log.info("configure.done")
        return result
