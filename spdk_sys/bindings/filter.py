"""Declaration filter — which parsed declarations reach the bindings.

Rule sets:
    ignored_macros         dropped while parsing, exact names only
    blocklisted_items      omitted from output, any declaration kind
    blocklisted_types      omitted from output, structs/unions/enums/typedefs
    blocklisted_functions  omitted from output, functions
    opaque_types           emitted as a fixed-size blob instead of their fields

Blocklist entries are exact names or anchored regular expressions
(``IPPORT_.*``). A name may belong to one rule set only; overlapping rules
are rejected when the filter is built.
"""

from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from pathlib import Path
from typing import Any

from spdk_sys.exceptions import FilterConflictError

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

_RULE_SETS = (
    "ignored_macros",
    "blocklisted_items",
    "blocklisted_types",
    "blocklisted_functions",
    "opaque_types",
)


class DeclKind(Enum):
    MACRO = "macro"
    TYPE = "type"
    FUNCTION = "function"
    VARIABLE = "variable"
    CONSTANT = "constant"


class Disposition(Enum):
    EMIT = "emit"
    IGNORE = "ignore"
    BLOCKLIST = "blocklist"
    OPAQUE = "opaque"


def _compile(entries: frozenset[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(entry) for entry in sorted(entries))


def _matches(patterns: tuple[re.Pattern[str], ...], name: str) -> bool:
    return any(p.fullmatch(name) for p in patterns)


@dataclass(frozen=True)
class DeclarationFilter:
    ignored_macros: frozenset[str] = frozenset()
    blocklisted_items: frozenset[str] = frozenset()
    blocklisted_types: frozenset[str] = frozenset()
    blocklisted_functions: frozenset[str] = frozenset()
    opaque_types: frozenset[str] = frozenset()
    _patterns: dict[str, tuple[re.Pattern[str], ...]] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for name in _RULE_SETS:
            object.__setattr__(self, name, frozenset(getattr(self, name)))
        for name in ("ignored_macros", "opaque_types"):
            bad = sorted(e for e in getattr(self, name) if not _IDENTIFIER_RE.fullmatch(e))
            if bad:
                raise ValueError(f"{name} takes exact names only, got {bad}")
        patterns = {}
        for name in _RULE_SETS:
            try:
                patterns[name] = _compile(getattr(self, name))
            except re.error as e:
                raise ValueError(f"Invalid pattern in {name}: {e}") from None
        object.__setattr__(self, "_patterns", patterns)
        conflicts = self.conflicts()
        if conflicts:
            raise FilterConflictError(conflicts)

    def conflicts(self) -> list[tuple[str, str, str]]:
        """Names claimed by two rule sets, as (name, set_a, set_b)."""
        found: list[tuple[str, str, str]] = []
        for a, b in combinations(_RULE_SETS, 2):
            names = set()
            for entry in getattr(self, a):
                if _IDENTIFIER_RE.fullmatch(entry) and _matches(self._patterns[b], entry):
                    names.add(entry)
            for entry in getattr(self, b):
                if _IDENTIFIER_RE.fullmatch(entry) and _matches(self._patterns[a], entry):
                    names.add(entry)
            found.extend((name, a, b) for name in sorted(names))
        return found

    # ── queries ──

    def ignores_macro(self, name: str) -> bool:
        return name in self.ignored_macros

    def is_blocklisted(self, kind: DeclKind, name: str) -> bool:
        if _matches(self._patterns["blocklisted_items"], name):
            return True
        if kind is DeclKind.TYPE:
            return _matches(self._patterns["blocklisted_types"], name)
        if kind is DeclKind.FUNCTION:
            return _matches(self._patterns["blocklisted_functions"], name)
        return False

    def is_opaque(self, name: str) -> bool:
        return name in self.opaque_types

    def classify(self, kind: DeclKind, name: str) -> Disposition:
        if kind is DeclKind.MACRO and self.ignores_macro(name):
            return Disposition.IGNORE
        if self.is_blocklisted(kind, name):
            return Disposition.BLOCKLIST
        if kind is DeclKind.TYPE and self.is_opaque(name):
            return Disposition.OPAQUE
        return Disposition.EMIT

    def without_opaque(self) -> DeclarationFilter:
        return dataclasses.replace(self, opaque_types=frozenset())

    # ── serialization ──

    def to_dict(self) -> dict[str, list[str]]:
        return {name: sorted(getattr(self, name)) for name in _RULE_SETS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeclarationFilter:
        unknown = set(data) - set(_RULE_SETS)
        if unknown:
            raise ValueError(f"Unknown filter rule sets: {sorted(unknown)}")
        return cls(**{name: frozenset(data.get(name, ())) for name in _RULE_SETS})

    @classmethod
    def from_file(cls, path: str | Path) -> DeclarationFilter:
        return cls.from_dict(json.loads(Path(path).read_text()))


# Rules for the SPDK umbrella header.
SPDK_FILTER = DeclarationFilter(
    # Defined both as macros and as enumerators by <math.h>.
    ignored_macros=frozenset(
        {"FP_INFINITE", "FP_NAN", "FP_NORMAL", "FP_SUBNORMAL", "FP_ZERO"}
    ),
    blocklisted_items=frozenset({"IPPORT_.*"}),
    # Packed structures holding aligned members.
    blocklisted_types=frozenset(
        {
            "spdk_nvme_tcp_rsp",
            "spdk_nvme_tcp_cmd",
            "spdk_nvmf_fabric_prop_get_rsp",
            "spdk_nvmf_fabric_connect_rsp",
            "spdk_nvmf_fabric_connect_cmd",
            "spdk_nvmf_fabric_auth_send_cmd",
            "spdk_nvmf_fabric_auth_recv_cmd",
            "spdk_nvme_health_information_page",
            "spdk_nvme_ctrlr_data",
        }
    ),
    blocklisted_functions=frozenset({"spdk_nvme_ctrlr_get_data"}),
    # Flexible layout.
    opaque_types=frozenset({"spdk_nvme_sgl_descriptor"}),
)
