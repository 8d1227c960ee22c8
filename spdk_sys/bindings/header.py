"""Umbrella header parsing: preprocess with the C compiler, parse with tree-sitter.

The compiler runs with ``-E -dD`` so the output keeps both the line markers
(which file, and whether it is a system header) and every ``#define`` in
place. Directives are stripped out before the C text goes to tree-sitter;
macro definitions are collected on the way, minus the ignored ones.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

import structlog
import tree_sitter_c as tsc
from tree_sitter import Language, Parser

from spdk_sys.bindings.evaluate import NotConstant, Value, evaluate
from spdk_sys.exceptions import ParseError
from spdk_sys.models.declarations import (
    VOID,
    Array,
    Constant,
    CType,
    Enum,
    Field,
    Function,
    FunctionType,
    Macro,
    Named,
    Origin,
    Param,
    Pointer,
    Primitive,
    Record,
    TranslationUnit,
    Typedef,
    Unsupported,
    Variable,
)
from spdk_sys.process import ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.bindings")

_C_LANGUAGE = Language(tsc.language())

# `# 12 "/usr/include/stdio.h" 1 3 4`
_LINE_MARKER_RE = re.compile(r'#\s*(\d+)\s+"((?:[^"\\]|\\.)*)"((?:\s+\d+)*)\s*$')
_DEFINE_RE = re.compile(r"#\s*define\s+([A-Za-z_]\w*)(\()?\s*(.*)$")
_UNDEF_RE = re.compile(r"#\s*undef\s+([A-Za-z_]\w*)")
_ATTRIBUTE_RE = re.compile(r"\b_*(packed|aligned)_*\b")

# Constructs the C grammar has no node for, neutralised by the preprocessor.
SANITIZE_DEFINES: tuple[str, ...] = (
    "-D_Static_assert(...)=",
    "-D__restrict=restrict",
    "-D__extension__=",
)

_INTEGER_WORDS = {"signed", "unsigned", "short", "long", "char", "int", "float", "double"}

_DECLARATOR_LEAVES = ("identifier", "field_identifier", "type_identifier", "primitive_type")


@dataclass(frozen=True)
class MacroDefinition:
    name: str
    body: str
    origin: Origin
    function_like: bool = False


@dataclass
class PreprocessedHeader:
    """Preprocessor output split into C text, per-line origins and macros."""

    source: str
    origins: list[Origin] = field(default_factory=list)
    macros: dict[str, MacroDefinition] = field(default_factory=dict)

    def origin_at(self, row: int) -> Origin:
        if 0 <= row < len(self.origins):
            return self.origins[row]
        return Origin("<unknown>", row + 1)


def split_preprocessed(
    text: str,
    *,
    ignore_macro: Callable[[str], bool] | None = None,
) -> PreprocessedHeader:
    """Split ``cc -E -dD`` output.

    Directive lines are blanked so tree-sitter rows keep matching ``origins``.
    Macros for which *ignore_macro* returns True are never recorded.
    """
    lines: list[str] = []
    origins: list[Origin] = []
    macros: dict[str, MacroDefinition] = {}
    path, line, system = "<stdin>", 1, False

    for raw in text.splitlines():
        stripped = raw.lstrip()
        if not stripped.startswith("#"):
            lines.append(raw)
            origins.append(Origin(path, line, system))
            line += 1
            continue

        marker = _LINE_MARKER_RE.match(stripped)
        if marker:
            path = marker.group(2).replace("\\\\", "\\")
            line = int(marker.group(1))
            flags = marker.group(3).split()
            system = "3" in flags or path.startswith("<")
            lines.append("")
            origins.append(Origin(path, line, system))
            continue

        here = Origin(path, line, system)
        define = _DEFINE_RE.match(stripped)
        undef = _UNDEF_RE.match(stripped)
        if define:
            name = define.group(1)
            if ignore_macro is None or not ignore_macro(name):
                macros.pop(name, None)
                macros[name] = MacroDefinition(
                    name=name,
                    body=define.group(3).strip(),
                    origin=here,
                    function_like=define.group(2) is not None,
                )
        elif undef:
            macros.pop(undef.group(1), None)
        lines.append("")
        origins.append(here)
        line += 1

    return PreprocessedHeader(source="\n".join(lines) + "\n", origins=origins, macros=macros)


def preprocess(
    header: Path,
    include_dirs: Sequence[Path],
    *,
    runner: ToolRunner = run_tool,
    compiler: str = "cc",
    extra_args: Sequence[str] = (),
    ignore_macro: Callable[[str], bool] | None = None,
) -> PreprocessedHeader:
    """Run the C preprocessor over *header*; any failure is a ParseError."""
    if not header.is_file():
        raise ParseError(f"Umbrella header not found: {header}")
    cmd = [
        compiler,
        "-E",
        "-dD",
        *SANITIZE_DEFINES,
        *[f"-I{d}" for d in include_dirs],
        *extra_args,
        str(header),
    ]
    result = runner(cmd, cwd=None)
    result.raise_for_status(ParseError, f"Preprocessing {header.name}")
    return split_preprocessed(result.stdout, ignore_macro=ignore_macro)


def _primitive(words: list[str]) -> CType:
    """Canonical spelling of a builtin type from its specifier words."""
    words = [w for w in words if w not in ("const", "volatile")]
    if len(words) == 1 and words[0] not in _INTEGER_WORDS:
        return Primitive("_Bool" if words[0] == "bool" else words[0])
    if "_Complex" in words or "__int128" in words:
        return Unsupported(" ".join(words))

    unsigned = "unsigned" in words
    longs = words.count("long")
    if "char" in words:
        if unsigned:
            return Primitive("unsigned char")
        return Primitive("signed char" if "signed" in words else "char")
    if "double" in words:
        return Primitive("long double" if longs else "double")
    if "float" in words:
        return Primitive("float")
    if "short" in words:
        base = "short"
    elif longs >= 2:
        base = "long long"
    elif longs == 1:
        base = "long"
    else:
        base = "int"
    return Primitive(f"unsigned {base}" if unsigned else base)


def _first_error(node):
    if node.type == "ERROR" or node.is_missing:
        return node
    for child in node.children:
        if child.has_error:
            return _first_error(child)
    return node


class HeaderParser:
    """Build a TranslationUnit from preprocessed C text."""

    def __init__(self, pre: PreprocessedHeader) -> None:
        self._pre = pre
        self._parser = Parser(_C_LANGUAGE)
        self._unit = TranslationUnit()
        self._anonymous = 0
        self._macro_cache: dict[str, Value | None] = {}

    def parse(self) -> TranslationUnit:
        tree = self._parser.parse(self._pre.source.encode())
        for node in tree.root_node.children:
            self._top_level(node)
        self._evaluate_macros()
        log.info(
            "bindings.parsed",
            records=len(self._unit.records),
            functions=len(self._unit.functions),
            typedefs=len(self._unit.typedefs),
            macros=len(self._unit.macros),
        )
        return self._unit

    # ── top level ──

    def _origin(self, node) -> Origin:
        return self._pre.origin_at(node.start_point[0])

    def _top_level(self, node) -> None:
        if node.has_error:
            bad = _first_error(node)
            origin = self._origin(bad)
            if origin.system:
                log.debug("bindings.system_header_error", path=origin.path, line=origin.line)
                return
            snippet = bad.text.decode(errors="replace").strip().splitlines()
            raise ParseError(
                f"Syntax error in {origin.path}:{origin.line}",
                diagnostic=snippet[0] if snippet else "",
            )

        if node.type == "declaration":
            self._declaration(node)
        elif node.type == "type_definition":
            self._type_definition(node)
        elif node.type in ("struct_specifier", "union_specifier", "enum_specifier"):
            # A bare `struct x {...};` is a specifier node, not a declaration.
            self._type_of(node, self._origin(node))
        elif node.type == "linkage_specification":
            body = node.child_by_field_name("body")
            if body is not None:
                for child in body.children:
                    self._top_level(child)
        # Function bodies (static inline helpers) carry no bindable symbol.

    def _declaration(self, node) -> None:
        origin = self._origin(node)
        storage = {
            c.text.decode() for c in node.children if c.type == "storage_class_specifier"
        }
        base = self._type_of(node.child_by_field_name("type"), origin)
        for declarator in node.children_by_field_name("declarator"):
            name, ctype = self._declare(base, declarator)
            if name is None or "static" in storage:
                continue
            if isinstance(ctype, FunctionType):
                self._unit.functions.setdefault(name, Function(name, ctype, origin))
            else:
                self._unit.variables.setdefault(name, Variable(name, ctype, origin))

    def _type_definition(self, node) -> None:
        origin = self._origin(node)
        declarators = node.children_by_field_name("declarator")
        hint = None
        if declarators and declarators[0].type in ("type_identifier", "primitive_type"):
            hint = declarators[0].text.decode()
        base = self._type_of(node.child_by_field_name("type"), origin, hint=hint)
        for declarator in declarators:
            name, ctype = self._declare(base, declarator)
            if name is not None:
                self._unit.typedefs[name] = Typedef(name, ctype, origin)

    # ── type specifiers ──

    def _type_of(self, node, origin: Origin, *, hint: str | None = None, scope: str = "") -> CType:
        if node is None:
            return Primitive("int")
        kind = node.type
        if kind in ("primitive_type", "sized_type_specifier"):
            return _primitive(node.text.decode().split())
        if kind == "type_identifier":
            name = node.text.decode()
            if name in ("_Bool", "bool"):
                return Primitive("_Bool")
            return Named("typedef", name)
        if kind in ("struct_specifier", "union_specifier"):
            return self._record(node, origin, hint=hint, scope=scope)
        if kind == "enum_specifier":
            return self._enum(node, origin, hint=hint)
        return Unsupported(node.text.decode())

    def _anonymous_name(self, scope: str) -> str:
        self._anonymous += 1
        return f"{scope or '_anon'}__anon{self._anonymous}"

    @staticmethod
    def _attributes(node) -> set[str]:
        """GNU attribute words on a specifier or field, without entering bodies."""
        words: set[str] = set()
        stack = [node]
        while stack:
            current = stack.pop()
            for child in current.children:
                if child.type == "field_declaration_list":
                    continue
                if child.type == "attribute_specifier":
                    words.update(m.group(1) for m in _ATTRIBUTE_RE.finditer(child.text.decode()))
                elif child.type not in ("struct_specifier", "union_specifier"):
                    stack.append(child)
        return words

    def _record(self, node, origin: Origin, *, hint: str | None, scope: str) -> CType:
        kind = "struct" if node.type == "struct_specifier" else "union"
        name_node = node.child_by_field_name("name")
        body = node.child_by_field_name("body")
        synthetic = False
        if name_node is not None:
            name = name_node.text.decode()
        elif hint:
            name = hint
        else:
            name = self._anonymous_name(scope)
            synthetic = True

        record = self._unit.records.get(name)
        if record is None:
            record = Record(kind=kind, name=name, origin=origin, synthetic=synthetic)
            self._unit.records[name] = record
        if body is None or record.complete:
            return Named(kind, name)

        attributes = self._attributes(node)
        record.origin = origin
        record.packed = "packed" in attributes
        record.aligned = "aligned" in attributes
        record.fields = self._fields(body, record, origin)
        return Named(kind, name)

    def _fields(self, body, record: Record, origin: Origin) -> list[Field]:
        fields: list[Field] = []
        for child in body.named_children:
            if child.type != "field_declaration":
                continue
            base = self._type_of(child.child_by_field_name("type"), origin, scope=record.name)
            if "aligned" in self._attributes(child):
                record.aligned = True

            bits = None
            clause = next((c for c in child.named_children if c.type == "bitfield_clause"), None)
            if clause is not None:
                width = self._constant(clause.named_children[0]) if clause.named_children else None
                if not isinstance(width, int):
                    base = Unsupported(f"bit-field width {clause.text.decode()}")
                else:
                    bits = width

            declarators = child.children_by_field_name("declarator")
            if not declarators:
                if isinstance(base, Named) and base.kind in ("struct", "union"):
                    inner = self._unit.records.get(base.name)
                    if inner is not None and inner.synthetic:
                        fields.append(Field(f"_anon{len(fields)}", base, anonymous=True))
                elif bits:
                    fields.append(Field(f"_pad{len(fields)}", base, bits=bits))
                continue

            for declarator in declarators:
                name, ctype = self._declare(base, declarator)
                if name is not None:
                    fields.append(Field(name, ctype, bits=bits))
        return fields

    def _enum(self, node, origin: Origin, *, hint: str | None) -> CType:
        name_node = node.child_by_field_name("name")
        name = name_node.text.decode() if name_node is not None else hint
        body = node.child_by_field_name("body")
        if body is None:
            return Named("enum", name) if name else Primitive("int")

        enum = Enum(name=name, origin=origin)
        self._unit.enums.append(enum)
        next_value: int | None = 0
        for child in body.named_children:
            if child.type != "enumerator":
                continue
            constant_name = child.child_by_field_name("name").text.decode()
            value_node = child.child_by_field_name("value")
            value = next_value
            if value_node is not None:
                computed = self._constant(value_node)
                value = computed if isinstance(computed, int) else None
            if value is None:
                log.debug("bindings.enumerator_skipped", name=constant_name)
                next_value = None
                continue
            constant = Constant(constant_name, value, self._origin(child), enum=name)
            enum.constants.append(constant)
            self._unit.constants[constant_name] = constant
            next_value = value + 1
        return Named("enum", name) if name else Primitive("int")

    # ── declarators ──

    def _declare(self, base: CType, node) -> tuple[str | None, CType]:
        """Apply a (possibly nested) declarator to *base*, innermost last."""
        ctype = base
        while node is not None:
            kind = node.type
            if kind in _DECLARATOR_LEAVES:
                return node.text.decode(), ctype
            if kind in ("pointer_declarator", "abstract_pointer_declarator"):
                ctype = Pointer(ctype)
                node = node.child_by_field_name("declarator")
            elif kind in ("array_declarator", "abstract_array_declarator"):
                ctype = self._array(ctype, node.child_by_field_name("size"))
                node = node.child_by_field_name("declarator")
            elif kind in ("function_declarator", "abstract_function_declarator"):
                ctype = self._function_type(ctype, node.child_by_field_name("parameters"))
                node = node.child_by_field_name("declarator")
            elif kind == "init_declarator":
                node = node.child_by_field_name("declarator")
            elif kind in (
                "parenthesized_declarator",
                "abstract_parenthesized_declarator",
                "attributed_declarator",
            ):
                node = next(
                    (
                        c
                        for c in node.named_children
                        if c.type not in ("attribute_specifier", "attribute_declaration", "comment")
                    ),
                    None,
                )
            else:
                return None, Unsupported(node.text.decode())
        return None, ctype

    def _array(self, element: CType, size_node) -> CType:
        if size_node is None or size_node.type == "*":
            return Array(element, None)
        length = self._constant(size_node)
        if not isinstance(length, int) or length < 0:
            return Unsupported(f"array size {size_node.text.decode()}")
        return Array(element, length)

    def _function_type(self, result: CType, params_node) -> FunctionType:
        if params_node is None:
            return FunctionType(result, unprototyped=True)
        declared = [c for c in params_node.named_children if c.type == "parameter_declaration"]
        variadic = any(c.type in ("variadic_parameter", "...") for c in params_node.children)
        if not declared and not variadic:
            return FunctionType(result, unprototyped=True)

        params: list[Param] = []
        for p in declared:
            ptype = self._type_of(p.child_by_field_name("type"), self._origin(p))
            declarator = p.child_by_field_name("declarator")
            name, ctype = self._declare(ptype, declarator) if declarator else (None, ptype)
            if ctype == VOID and name is None and len(declared) == 1:
                break
            # Parameters of array and function type decay to pointers.
            if isinstance(ctype, Array):
                ctype = Pointer(ctype.element)
            elif isinstance(ctype, FunctionType):
                ctype = Pointer(ctype)
            params.append(Param(name, ctype))
        return FunctionType(result, tuple(params), variadic=variadic)

    # ── constants ──

    def _lookup_constant(self, name: str) -> Value | None:
        constant = self._unit.constants.get(name)
        return constant.value if constant is not None else None

    def _constant(self, node) -> Value | None:
        try:
            return evaluate(node, self._lookup_constant)
        except NotConstant:
            return None

    def _evaluate_macros(self) -> None:
        for name, definition in self._pre.macros.items():
            if definition.origin.system or definition.function_like:
                continue
            value = self._macro_value(name, frozenset())
            if value is not None:
                self._unit.macros[name] = Macro(name, value, definition.origin)

    def _macro_value(self, name: str, active: frozenset[str]) -> Value | None:
        if name in self._macro_cache:
            return self._macro_cache[name]
        if name in active:
            return None
        definition = self._pre.macros.get(name)
        if definition is None:
            return self._lookup_constant(name)
        if definition.function_like or not definition.body:
            return None

        tree = self._parser.parse(f"int __spdk_sys_macro = ({definition.body});\n".encode())
        value = None
        declaration = tree.root_node.named_children[0] if tree.root_node.named_children else None
        init = declaration.child_by_field_name("declarator") if declaration is not None else None
        expression = init.child_by_field_name("value") if init is not None else None
        if expression is not None and not tree.root_node.has_error:
            try:
                value = evaluate(expression, lambda n: self._macro_value(n, active | {name}))
            except NotConstant:
                value = None
        self._macro_cache[name] = value
        return value
