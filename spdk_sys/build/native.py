"""Native build — run the upstream make with architecture-specific flags."""

from __future__ import annotations

import structlog

from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import BuildError
from spdk_sys.process import ToolResult, ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.build")

# Extra make arguments per target architecture. On aarch64 the bundled DPDK
# build must target the generic platform instead of probing the build host.
ARCH_EXTRA_ARGS: dict[str, tuple[str, ...]] = {
    "aarch64": ("DPDKBUILD_FLAGS=-Dplatform=generic",),
}


class NativeBuilder:
    """Build SPDK and its bundled DPDK into static archives."""

    def __init__(
        self,
        runner: ToolRunner = run_tool,
        *,
        make: str = "make",
        clean_first: bool = False,
        arch_args: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._runner = runner
        self.make = make
        self.clean_first = clean_first
        self.arch_args = ARCH_EXTRA_ARGS if arch_args is None else arch_args

    def command(self, env: BuildEnvironment) -> list[str]:
        extra = self.arch_args.get(env.target_arch, ())
        return [self.make, *extra, f"-j{env.jobs}"]

    def build(self, env: BuildEnvironment) -> ToolResult:
        if self.clean_first:
            log.info("build.clean", cwd=str(env.source_root))
            self._runner([self.make, "clean"], cwd=env.source_root).raise_for_status(
                BuildError, "Clean"
            )

        cmd = self.command(env)
        log.info("build.start", cwd=str(env.source_root), jobs=env.jobs, arch=env.target_arch)
        result = self._runner(cmd, cwd=env.source_root)
        result.raise_for_status(BuildError, "Build")
        log.info("build.done")
        return result
