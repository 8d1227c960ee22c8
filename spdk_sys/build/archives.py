"""Archive aggregation — link every static archive into one shared library.

SPDK splits its implementation over many small archives that reference each
other. A plain link would drop archive members nobody has referenced yet, so
all archives are wrapped in ``--whole-archive`` and every member is kept.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import structlog

from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import LinkError
from spdk_sys.models.build import ArchiveSet
from spdk_sys.process import ToolResult, ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.build")

ARCHIVE_PREFIX = "lib"
ARCHIVE_SUFFIX = ".a"

# Unit-test mocks redefine production symbols.
EXCLUDED_ARCHIVES: frozenset[str] = frozenset({"libspdk_ut_mock.a"})

SYSTEM_LIBRARIES: tuple[str, ...] = ("aio", "numa", "uuid", "crypto")


def is_archive_name(name: str) -> bool:
    return name.startswith(ARCHIVE_PREFIX) and name.endswith(ARCHIVE_SUFFIX)


def discover_archives(
    directories: Iterable[Path],
    *,
    exclude: frozenset[str] = EXCLUDED_ARCHIVES,
) -> ArchiveSet:
    """Collect static archives one level deep in each directory, in order.

    Entries within a directory are sorted by name so the linker command line
    is identical across runs.

    Raises:
        LinkError: a directory is missing, or no archive was found at all.
    """
    selected: list[Path] = []
    excluded: list[Path] = []

    for directory in directories:
        if not directory.is_dir():
            raise LinkError(
                f"Archive directory not found: {directory} (did the native build run?)"
            )
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            if not is_archive_name(entry.name) or entry.is_dir():
                continue
            if entry.name in exclude:
                log.debug("archives.excluded", archive=entry.name)
                excluded.append(entry)
                continue
            selected.append(entry)

    if not selected:
        raise LinkError("No static archives found to aggregate")

    return ArchiveSet(paths=tuple(selected), excluded=tuple(excluded))


class ArchiveAggregator:
    """Link the SPDK and DPDK archive forests into ``libspdk_fat.so``."""

    def __init__(
        self,
        runner: ToolRunner = run_tool,
        *,
        linker: str = "cc",
        system_libraries: tuple[str, ...] = SYSTEM_LIBRARIES,
        exclude: frozenset[str] = EXCLUDED_ARCHIVES,
    ) -> None:
        self._runner = runner
        self.linker = linker
        self.system_libraries = tuple(system_libraries)
        self.exclude = exclude

    def discover(self, env: BuildEnvironment) -> ArchiveSet:
        archives = discover_archives(
            [env.main_lib_dir, env.dependency_lib_dir], exclude=self.exclude
        )
        log.info(
            "archives.discovered",
            count=len(archives),
            excluded=[p.name for p in archives.excluded],
        )
        return archives

    def command(self, archives: ArchiveSet, output: Path) -> list[str]:
        # System libraries follow the archives so --as-needed linkers keep them.
        return [
            self.linker,
            "-shared",
            "-o",
            str(output),
            "-Wl,--whole-archive",
            *[str(p) for p in archives],
            "-Wl,--no-whole-archive",
            *[f"-l{name}" for name in self.system_libraries],
        ]

    def link(self, archives: ArchiveSet, output: Path) -> ToolResult:
        output.parent.mkdir(parents=True, exist_ok=True)
        result = self._runner(self.command(archives, output), cwd=None)
        result.raise_for_status(LinkError, f"Linking {output.name}")
        return result

    def aggregate(self, env: BuildEnvironment) -> ArchiveSet:
        """Discover archives and link them into ``env.library_path``."""
        archives = self.discover(env)
        self.link(archives, env.library_path)
        log.info("archives.linked", output=str(env.library_path), archives=len(archives))
        return archives
