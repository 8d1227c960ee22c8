"""Data models for the native build and its artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from spdk_sys.links import LinkDirectiveSet


@dataclass(frozen=True)
class ArchiveSet:
    """Static archives selected for aggregation, in link order."""

    paths: tuple[Path, ...]
    excluded: tuple[Path, ...] = ()

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.paths]


@dataclass(frozen=True)
class GeneratedArtifacts:
    """Outputs of one pipeline run."""

    bindings_path: Path
    library_path: Path
    directives: LinkDirectiveSet
    manifest_path: Path | None = None
    archives: ArchiveSet = field(default_factory=lambda: ArchiveSet(paths=()))
