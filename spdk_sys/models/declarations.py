"""C declaration model produced by the header parser."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

# ── Types ──


@dataclass(frozen=True)
class Primitive:
    """A builtin scalar, spelled canonically (e.g. "unsigned long", "uint8_t")."""

    name: str


@dataclass(frozen=True)
class Named:
    """Reference to a struct, union, enum or typedef by name."""

    kind: str  # "struct" | "union" | "enum" | "typedef"
    name: str


@dataclass(frozen=True)
class Pointer:
    target: CType


@dataclass(frozen=True)
class Array:
    element: CType
    length: int | None  # None for flexible / unsized arrays


@dataclass(frozen=True)
class Param:
    name: str | None
    ctype: CType


@dataclass(frozen=True)
class FunctionType:
    result: CType
    params: tuple[Param, ...] = ()
    variadic: bool = False
    unprototyped: bool = False  # old-style "f()" declaration


@dataclass(frozen=True)
class Unsupported:
    """A type the parser understood syntactically but cannot model."""

    spelling: str


CType = Union[Primitive, Named, Pointer, Array, FunctionType, Unsupported]

VOID = Primitive("void")

# ── Declarations ──


@dataclass(frozen=True)
class Origin:
    path: str
    line: int
    system: bool = False


@dataclass
class Field:
    name: str
    ctype: CType
    bits: int | None = None
    anonymous: bool = False


@dataclass
class Record:
    kind: str  # "struct" | "union"
    name: str
    origin: Origin
    fields: list[Field] | None = None  # None until a definition is seen
    packed: bool = False
    aligned: bool = False
    synthetic: bool = False  # name invented for an untagged definition

    @property
    def complete(self) -> bool:
        return self.fields is not None


@dataclass
class Constant:
    name: str
    value: int
    origin: Origin
    enum: str | None = None


@dataclass
class Enum:
    name: str | None
    origin: Origin
    constants: list[Constant] = field(default_factory=list)


@dataclass
class Typedef:
    name: str
    target: CType
    origin: Origin


@dataclass
class Function:
    name: str
    ctype: FunctionType
    origin: Origin


@dataclass
class Variable:
    name: str
    ctype: CType
    origin: Origin


@dataclass
class Macro:
    name: str
    value: int | float | bytes
    origin: Origin


@dataclass
class TranslationUnit:
    """Everything declared by one umbrella header, in declaration order."""

    records: dict[str, Record] = field(default_factory=dict)
    enums: list[Enum] = field(default_factory=list)
    typedefs: dict[str, Typedef] = field(default_factory=dict)
    functions: dict[str, Function] = field(default_factory=dict)
    variables: dict[str, Variable] = field(default_factory=dict)
    constants: dict[str, Constant] = field(default_factory=dict)
    macros: dict[str, Macro] = field(default_factory=dict)

    def named_enum(self, name: str) -> Enum | None:
        for enum in self.enums:
            if enum.name == name:
                return enum
        return None
