"""Build environment: the immutable inputs every pipeline stage reads."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from spdk_sys.exceptions import EnvironmentConfigError

FAT_LIBRARY_NAME = "spdk_fat"
BINDINGS_FILE = "bindings.py"
MANIFEST_FILE = "link.json"

# Environment variable names, in lookup order where there is more than one.
ENV_OUT_DIR = "OUT_DIR"
ENV_JOBS = "NUM_JOBS"
ENV_TARGET_ARCH = ("CARGO_CFG_TARGET_ARCH", "SPDK_SYS_TARGET_ARCH")
ENV_SOURCE_DIR = "SPDK_SYS_SOURCE_DIR"

DEFAULT_SOURCE_DIR = "spdk"

_ARCH_ALIASES = {
    "arm64": "aarch64",
    "armv8": "aarch64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "x86",
    "i686": "x86",
}


def normalize_arch(arch: str) -> str:
    """Map platform spellings of an architecture onto one identifier."""
    arch = arch.strip().lower()
    return _ARCH_ALIASES.get(arch, arch)


@dataclass(frozen=True)
class BuildEnvironment:
    """Snapshot of the build inputs, taken once at pipeline start."""

    out_dir: Path
    jobs: int
    target_arch: str
    source_root: Path

    def __post_init__(self) -> None:
        if self.jobs < 1:
            raise EnvironmentConfigError(f"Parallelism degree must be >= 1, got {self.jobs}")
        object.__setattr__(self, "out_dir", Path(self.out_dir))
        object.__setattr__(self, "source_root", Path(self.source_root))
        object.__setattr__(self, "target_arch", normalize_arch(self.target_arch))

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        out_dir: str | Path | None = None,
        jobs: int | None = None,
        target_arch: str | None = None,
        source_root: str | Path | None = None,
    ) -> BuildEnvironment:
        """Build the snapshot from environment variables.

        Explicit keyword arguments win over the environment. This is the only
        place in the package that reads process environment variables.
        """
        env = os.environ if environ is None else environ

        if out_dir is None:
            out_dir = env.get(ENV_OUT_DIR)
            if not out_dir:
                raise EnvironmentConfigError(f"{ENV_OUT_DIR} is not set")

        if jobs is None:
            raw_jobs = env.get(ENV_JOBS)
            if raw_jobs:
                try:
                    jobs = int(raw_jobs)
                except ValueError:
                    raise EnvironmentConfigError(
                        f"{ENV_JOBS} must be an integer, got {raw_jobs!r}"
                    ) from None
            else:
                jobs = os.cpu_count() or 1

        if target_arch is None:
            for name in ENV_TARGET_ARCH:
                if env.get(name):
                    target_arch = env[name]
                    break
            else:
                target_arch = platform.machine()

        if source_root is None:
            source_root = env.get(ENV_SOURCE_DIR) or Path.cwd() / DEFAULT_SOURCE_DIR

        return cls(
            out_dir=Path(out_dir),
            jobs=jobs,
            target_arch=target_arch,
            source_root=Path(source_root),
        )

    # Upstream layout: SPDK archives, bundled DPDK archives, installed headers.

    @property
    def main_lib_dir(self) -> Path:
        return self.source_root / "build" / "lib"

    @property
    def dependency_lib_dir(self) -> Path:
        return self.source_root / "dpdk" / "build" / "lib"

    @property
    def include_dir(self) -> Path:
        return self.source_root / "build" / "include"

    # Outputs, all beneath the build-scoped output directory.

    @property
    def library_path(self) -> Path:
        return self.out_dir / f"lib{FAT_LIBRARY_NAME}.so"

    @property
    def bindings_path(self) -> Path:
        return self.out_dir / BINDINGS_FILE

    @property
    def manifest_path(self) -> Path:
        return self.out_dir / MANIFEST_FILE

    @property
    def log_dir(self) -> Path:
        return self.out_dir / "logs"
