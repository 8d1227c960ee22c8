"""Link directives handed to the host build."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from spdk_sys.config import FAT_LIBRARY_NAME, BuildEnvironment

# Runtime dependencies of the aggregated library: async I/O, NUMA, UUID,
# crypto, the C++ runtime and TLS.
SYSTEM_LINK_LIBRARIES: tuple[str, ...] = ("aio", "numa", "uuid", "crypto", "stdc++", "ssl")


@dataclass(frozen=True)
class LinkDirective:
    """One library to link, and where to find it (None: system search path)."""

    library: str
    search_path: Path | None = None


@dataclass(frozen=True)
class RebuildTrigger:
    """A file whose change invalidates the generated artifacts."""

    path: Path
    sha256: str | None = None

    @classmethod
    def for_file(cls, path: Path) -> RebuildTrigger:
        digest = None
        if path.is_file():
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
        return cls(path=path, sha256=digest)


@dataclass(frozen=True)
class LinkDirectiveSet:
    directives: tuple[LinkDirective, ...]
    triggers: tuple[RebuildTrigger, ...] = ()

    @property
    def libraries(self) -> list[str]:
        return [d.library for d in self.directives]

    @property
    def search_paths(self) -> list[Path]:
        seen: list[Path] = []
        for d in self.directives:
            if d.search_path is not None and d.search_path not in seen:
                seen.append(d.search_path)
        return seen

    @property
    def system_libraries(self) -> list[str]:
        return [d.library for d in self.directives if d.search_path is None]

    def to_cargo(self) -> list[str]:
        """Render as ``cargo:`` build-script instructions."""
        lines = [f"cargo:rustc-link-lib={d.library}" for d in self.directives]
        lines += [f"cargo:rustc-link-search=native={p}" for p in self.search_paths]
        lines += [f"cargo:rerun-if-changed={t.path}" for t in self.triggers]
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "libraries": [
                {
                    "name": d.library,
                    "search_path": str(d.search_path) if d.search_path else None,
                }
                for d in self.directives
            ],
            "search_paths": [str(p) for p in self.search_paths],
            "rerun_if_changed": [
                {"path": str(t.path), "sha256": t.sha256} for t in self.triggers
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkDirectiveSet:
        directives = tuple(
            LinkDirective(
                library=item["name"],
                search_path=Path(item["search_path"]) if item.get("search_path") else None,
            )
            for item in data.get("libraries", [])
        )
        triggers = tuple(
            RebuildTrigger(path=Path(item["path"]), sha256=item.get("sha256"))
            for item in data.get("rerun_if_changed", [])
        )
        return cls(directives=directives, triggers=triggers)

    def write_manifest(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
        return path


def default_link_directives(
    env: BuildEnvironment,
    umbrella_header: Path,
    *,
    system_libraries: tuple[str, ...] = SYSTEM_LINK_LIBRARIES,
) -> LinkDirectiveSet:
    """The aggregated library from the output directory, then its system deps."""
    directives = [LinkDirective(FAT_LIBRARY_NAME, search_path=env.out_dir)]
    directives += [LinkDirective(name) for name in system_libraries]
    return LinkDirectiveSet(
        directives=tuple(directives),
        triggers=(RebuildTrigger.for_file(umbrella_header),),
    )
