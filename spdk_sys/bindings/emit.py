"""ctypes module emission.

Records are declared as empty classes first and receive ``_fields_`` later,
in by-value dependency order, so pointer cycles between structures resolve
the way they do in C. Everything a project declaration needs is pulled in
on demand, including types that live in system headers.
"""

from __future__ import annotations

import ctypes
import keyword
import math

import structlog

from spdk_sys.bindings.filter import DeclarationFilter, DeclKind, Disposition
from spdk_sys.config import FAT_LIBRARY_NAME
from spdk_sys.links import LinkDirectiveSet
from spdk_sys.models.declarations import (
    Array,
    CType,
    Enum,
    FunctionType,
    Named,
    Pointer,
    Primitive,
    Record,
    TranslationUnit,
    Unsupported,
)

log = structlog.get_logger("spdk_sys.bindings")

CTYPES_PRIMITIVES: dict[str, str] = {
    "char": "ctypes.c_char",
    "signed char": "ctypes.c_byte",
    "unsigned char": "ctypes.c_ubyte",
    "short": "ctypes.c_short",
    "unsigned short": "ctypes.c_ushort",
    "int": "ctypes.c_int",
    "unsigned int": "ctypes.c_uint",
    "long": "ctypes.c_long",
    "unsigned long": "ctypes.c_ulong",
    "long long": "ctypes.c_longlong",
    "unsigned long long": "ctypes.c_ulonglong",
    "float": "ctypes.c_float",
    "double": "ctypes.c_double",
    "long double": "ctypes.c_longdouble",
    "_Bool": "ctypes.c_bool",
    "size_t": "ctypes.c_size_t",
    "ssize_t": "ctypes.c_ssize_t",
    "ptrdiff_t": "ctypes.c_ssize_t",
    "intptr_t": "ctypes.c_ssize_t",
    "uintptr_t": "ctypes.c_size_t",
    "int8_t": "ctypes.c_int8",
    "int16_t": "ctypes.c_int16",
    "int32_t": "ctypes.c_int32",
    "int64_t": "ctypes.c_int64",
    "uint8_t": "ctypes.c_uint8",
    "uint16_t": "ctypes.c_uint16",
    "uint32_t": "ctypes.c_uint32",
    "uint64_t": "ctypes.c_uint64",
    "wchar_t": "ctypes.c_wchar",
    "__builtin_va_list": "ctypes.c_void_p",
}

_INTEGER_PRIMITIVES = {
    name
    for name, expr in CTYPES_PRIMITIVES.items()
    if expr not in ("ctypes.c_float", "ctypes.c_double", "ctypes.c_longdouble", "ctypes.c_void_p")
}

# Candidate blob elements, narrowest first.
_BLOB_ELEMENTS = ("c_uint8", "c_uint16", "c_uint32", "c_uint64", "c_longdouble")

# Module-level names the generated code itself uses.
_RESERVED = {"ctypes", "os", "_lib", "_load_library", "_function", "_variable"}

_LOADER = '''
def _load_library():
    for name in _DEPENDENCIES:
        path = ctypes.util.find_library(name)
        if path is None:
            raise OSError("required system library not found: lib%s" % name)
        ctypes.CDLL(path, mode=ctypes.RTLD_GLOBAL)
    for directory in _SEARCH_PATHS:
        candidate = os.path.join(directory, _LIBRARY_FILE)
        if os.path.exists(candidate):
            return ctypes.CDLL(candidate)
    raise OSError("%s not found in %s" % (_LIBRARY_FILE, ", ".join(_SEARCH_PATHS)))


_lib = _load_library()


def _function(name, restype, argtypes):
    func = getattr(_lib, name, None)
    if func is None:
        return None
    func.restype = restype
    if argtypes is not None:
        func.argtypes = argtypes
    return func


def _variable(name, ctype):
    try:
        return ctype.in_dll(_lib, name)
    except ValueError:
        return None
'''


class Unrepresentable(Exception):
    """A declaration has no ctypes equivalent under the current filter."""


def py_name(name: str) -> str:
    if keyword.iskeyword(name) or name in _RESERVED:
        return name + "_"
    return name


def _literal(value: int | float | bytes) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        return f'float("{value}")'
    return repr(value)


def _ctypes_type(expr: str) -> type:
    return getattr(ctypes, expr.removeprefix("ctypes."))


def blob_element(align: int) -> tuple[str, int]:
    """ctypes element whose size and alignment both equal *align*, and its size."""
    for name in _BLOB_ELEMENTS:
        element = getattr(ctypes, name)
        if ctypes.alignment(element) == align and ctypes.sizeof(element) == align:
            return f"ctypes.{name}", align
    raise Unrepresentable(f"no ctypes element with alignment {align}")


class RecordLayout:
    """Build live ctypes classes for records, only to measure their layout.

    Every pointer is laid out as ``c_void_p``: the pointee never changes the
    size or alignment of the record holding the pointer.
    """

    def __init__(self, unit: TranslationUnit, decl_filter: DeclarationFilter) -> None:
        self._unit = unit
        self._filter = decl_filter
        self._classes: dict[str, type] = {}
        self._active: set[str] = set()

    def measure(self, name: str) -> tuple[int, int]:
        """Size and alignment of record *name*."""
        cls = self._record(name)
        return ctypes.sizeof(cls), ctypes.alignment(cls)

    def _record(self, name: str) -> type:
        if name in self._classes:
            return self._classes[name]
        if name in self._active:
            raise Unrepresentable(f"{name} contains itself by value")
        if self._filter.is_blocklisted(DeclKind.TYPE, name):
            raise Unrepresentable(f"{name} is blocklisted")
        record = self._unit.records.get(name)
        if record is None or not record.complete:
            raise Unrepresentable(f"{name} is an incomplete type")

        self._active.add(name)
        try:
            fields = []
            for f in record.fields:
                ctype = self._type(f.ctype)
                fields.append((f.name, ctype) if f.bits is None else (f.name, ctype, f.bits))
        finally:
            self._active.discard(name)

        base = ctypes.Structure if record.kind == "struct" else ctypes.Union
        cls = type(name, (base,), {"_pack_": 1} if record.packed else {})
        try:
            cls._fields_ = fields
        except (TypeError, ValueError, AttributeError) as e:
            raise Unrepresentable(f"cannot lay out {name}: {e}") from None
        self._classes[name] = cls
        return cls

    def _type(self, ctype: CType) -> type:
        if isinstance(ctype, (Pointer, FunctionType)):
            return ctypes.c_void_p
        if isinstance(ctype, Array):
            return self._type(ctype.element) * (ctype.length or 0)
        if isinstance(ctype, Primitive):
            if ctype.name in CTYPES_PRIMITIVES:
                return _ctypes_type(CTYPES_PRIMITIVES[ctype.name])
            return self._typedef(ctype.name)
        if isinstance(ctype, Named):
            if ctype.kind in ("struct", "union"):
                return self._record(ctype.name)
            if ctype.kind == "enum":
                if self._filter.is_blocklisted(DeclKind.TYPE, ctype.name):
                    raise Unrepresentable(f"{ctype.name} is blocklisted")
                enum = self._unit.named_enum(ctype.name)
                return _ctypes_type(CtypesEmitter._enum_base(enum) if enum else "ctypes.c_int")
            return self._typedef(ctype.name)
        raise Unrepresentable(f"unsupported type {getattr(ctype, 'spelling', ctype)}")

    def _typedef(self, name: str) -> type:
        if self._filter.is_blocklisted(DeclKind.TYPE, name):
            raise Unrepresentable(f"{name} is blocklisted")
        typedef = self._unit.typedefs.get(name)
        if typedef is None:
            if name in CTYPES_PRIMITIVES:
                return _ctypes_type(CTYPES_PRIMITIVES[name])
            raise Unrepresentable(f"unknown type {name}")
        key = f"typedef:{name}"
        if key in self._active:
            raise Unrepresentable(f"recursive typedef {name}")
        self._active.add(key)
        try:
            return self._type(typedef.target)
        finally:
            self._active.discard(key)


class CtypesEmitter:
    """Render one TranslationUnit as the source of a ctypes module."""

    def __init__(
        self,
        unit: TranslationUnit,
        decl_filter: DeclarationFilter,
        *,
        directives: LinkDirectiveSet | None = None,
        header_name: str = "wrapper.h",
        library_file: str = f"lib{FAT_LIBRARY_NAME}.so",
    ) -> None:
        self._unit = unit
        self._filter = decl_filter
        self._directives = directives
        self._header_name = header_name
        self._library_file = library_file

        self._types: list[str] = []
        self._bindings: list[str] = []
        self._state: dict[str, str] = {}
        self._bound: dict[str, str] = {}
        self._pending: list[str] = []
        self._aliases: dict[str, str] = {}
        self.omitted: dict[str, str] = {}

    # ── public ──

    def emit(self) -> str:
        for record in list(self._unit.records.values()):
            if record.origin.system or record.synthetic:
                continue
            self._root(
                DeclKind.TYPE,
                record.name,
                lambda r=record: self._record_ref(r.name, by_value=r.complete),
            )
        for enum in self._unit.enums:
            if enum.name and not enum.origin.system:
                self._root(DeclKind.TYPE, enum.name, lambda e=enum: self._enum_ref(e.name))
        for typedef in list(self._unit.typedefs.values()):
            if not typedef.origin.system:
                self._root(
                    DeclKind.TYPE,
                    typedef.name,
                    lambda t=typedef: self._typedef_ref(t.name, by_value=False),
                )
        self._drain_pending()

        for function in self._unit.functions.values():
            if not function.origin.system:
                self._root(DeclKind.FUNCTION, function.name, lambda f=function: self._bind_function(f))
        for variable in self._unit.variables.values():
            if not variable.origin.system:
                self._root(DeclKind.VARIABLE, variable.name, lambda v=variable: self._bind_variable(v))
        self._drain_pending()

        constants = self._constants() + self._macros()
        return self._render(constants)

    # ── roots ──

    def _root(self, kind: DeclKind, name: str, action) -> None:
        if self._filter.classify(kind, name) is Disposition.BLOCKLIST:
            log.debug("bindings.blocklisted", name=name, kind=kind.value)
            return
        try:
            action()
        except Unrepresentable as e:
            self.omitted[name] = str(e)
            log.warning("bindings.omitted", name=name, reason=str(e))

    def _bind(self, name: str) -> str:
        py = py_name(name)
        if py in self._bound:
            raise Unrepresentable(f"name {py} already bound to a {self._bound[py]}")
        return py

    def _bind_function(self, function) -> None:
        ftype = function.ctype
        restype = "None" if self._is_void(ftype.result) else self._expr(ftype.result)
        if ftype.unprototyped:
            argtypes = "None"
        else:
            args = [self._expr(p.ctype) for p in ftype.params]
            argtypes = "[" + ", ".join(args) + "]"
        py = self._bind(function.name)
        self._bound[py] = "function"
        self._bindings.append(f"{py} = _function({function.name!r}, {restype}, {argtypes})")

    def _bind_variable(self, variable) -> None:
        expr = self._expr(variable.ctype)
        py = self._bind(variable.name)
        self._bound[py] = "variable"
        self._bindings.append(f"{py} = _variable({variable.name!r}, {expr})")

    def _constants(self) -> list[str]:
        lines = []
        for enum in self._unit.enums:
            if enum.origin.system and f"enum:{enum.name}" not in self._state:
                continue
            for constant in enum.constants:
                if self._filter.classify(DeclKind.CONSTANT, constant.name) is Disposition.BLOCKLIST:
                    continue
                py = py_name(constant.name)
                if py in self._bound:
                    log.debug("bindings.constant_shadowed", name=constant.name)
                    continue
                self._bound[py] = "constant"
                lines.append(f"{py} = {constant.value!r}")
        return lines

    def _macros(self) -> list[str]:
        lines = []
        for macro in self._unit.macros.values():
            if self._filter.classify(DeclKind.MACRO, macro.name) is not Disposition.EMIT:
                continue
            py = py_name(macro.name)
            if py in self._bound:
                log.debug("bindings.macro_shadowed", name=macro.name)
                continue
            self._bound[py] = "constant"
            lines.append(f"{py} = {_literal(macro.value)}")
        return lines

    # ── type expressions ──

    def _resolve(self, ctype: CType) -> CType:
        """Follow typedefs to the underlying type without emitting anything."""
        seen = set()
        while isinstance(ctype, Named) and ctype.kind == "typedef":
            name = ctype.name
            if name in seen:
                raise Unrepresentable(f"recursive typedef {name}")
            seen.add(name)
            if self._filter.is_blocklisted(DeclKind.TYPE, name):
                raise Unrepresentable(f"{name} is blocklisted")
            typedef = self._unit.typedefs.get(name)
            if typedef is None:
                if name in CTYPES_PRIMITIVES:
                    return Primitive(name)
                raise Unrepresentable(f"unknown type {name}")
            ctype = typedef.target
        return ctype

    def _is_void(self, ctype: CType) -> bool:
        return self._resolve(ctype) == Primitive("void")

    def _is_integer(self, ctype: CType) -> bool:
        resolved = self._resolve(ctype)
        if isinstance(resolved, Primitive):
            return resolved.name in _INTEGER_PRIMITIVES
        return isinstance(resolved, Named) and resolved.kind == "enum"

    def _expr(self, ctype: CType) -> str:
        """ctypes expression for *ctype* used by value."""
        if isinstance(ctype, Primitive):
            if ctype.name == "void":
                raise Unrepresentable("void used as a value type")
            if ctype.name in CTYPES_PRIMITIVES:
                return CTYPES_PRIMITIVES[ctype.name]
            if ctype.name in self._unit.typedefs:
                return self._typedef_ref(ctype.name)
            raise Unrepresentable(f"unsupported builtin type {ctype.name}")
        if isinstance(ctype, Named):
            if ctype.kind in ("struct", "union"):
                return self._record_ref(ctype.name, by_value=True)
            if ctype.kind == "enum":
                return self._enum_ref(ctype.name)
            return self._typedef_ref(ctype.name)
        if isinstance(ctype, Pointer):
            return self._pointer(ctype.target)
        if isinstance(ctype, Array):
            element = self._expr(ctype.element)
            if " * " in element:
                element = f"({element})"
            return f"{element} * {ctype.length or 0}"
        if isinstance(ctype, FunctionType):
            return self._function_pointer(ctype)
        assert isinstance(ctype, Unsupported)
        raise Unrepresentable(f"unsupported type {ctype.spelling}")

    def _pointer(self, target: CType) -> str:
        try:
            return self._pointer_expr(target)
        except Unrepresentable as e:
            log.debug("bindings.pointer_degraded", reason=str(e))
            return "ctypes.c_void_p"

    def _pointer_expr(self, target: CType) -> str:
        if isinstance(target, FunctionType):
            return self._function_pointer(target)
        if isinstance(target, Named) and target.kind in ("struct", "union"):
            return f"ctypes.POINTER({self._record_ref(target.name, by_value=False)})"
        if isinstance(target, Named) and target.kind == "typedef":
            resolved = self._resolve(target)
            if isinstance(resolved, FunctionType):
                return self._typedef_ref(target.name)
            if resolved == Primitive("void"):
                return "ctypes.c_void_p"
            return f"ctypes.POINTER({self._typedef_ref(target.name, by_value=False)})"
        if isinstance(target, Primitive):
            if target.name == "void":
                return "ctypes.c_void_p"
            if target.name == "char":
                return "ctypes.c_char_p"
            if target.name == "wchar_t":
                return "ctypes.c_wchar_p"
        return f"ctypes.POINTER({self._expr(target)})"

    def _function_pointer(self, ftype: FunctionType) -> str:
        if ftype.variadic:
            raise Unrepresentable("variadic callback")
        result = "None" if self._is_void(ftype.result) else self._expr(ftype.result)
        args = [self._expr(p.ctype) for p in ftype.params]
        return "ctypes.CFUNCTYPE(" + ", ".join([result, *args]) + ")"

    # ── typedefs and enums ──

    def _typedef_ref(self, name: str, *, by_value: bool = True) -> str:
        if self._filter.is_blocklisted(DeclKind.TYPE, name):
            raise Unrepresentable(f"{name} is blocklisted")
        typedef = self._unit.typedefs.get(name)
        if typedef is None:
            if name in CTYPES_PRIMITIVES:
                return CTYPES_PRIMITIVES[name]
            raise Unrepresentable(f"unknown type {name}")

        key = f"typedef:{name}"
        prior = self._state.get(key)
        if prior == "resolving":
            raise Unrepresentable(f"recursive typedef {name}")
        self._state[key] = "resolving"
        try:
            target = typedef.target
            if isinstance(target, Named) and target.kind in ("struct", "union"):
                expr = self._record_ref(target.name, by_value=by_value)
            elif isinstance(target, Named) and target.kind == "typedef":
                expr = self._typedef_ref(target.name, by_value=by_value)
            else:
                expr = self._expr(target)
        except Unrepresentable:
            if prior is None:
                del self._state[key]
            else:
                self._state[key] = prior
            raise

        self._state[key] = "done"
        if prior != "done":
            py = py_name(name)
            if py == expr:
                self._aliases[name] = expr
            elif py in self._bound:
                # struct foo and an unrelated typedef foo: keep the struct.
                log.debug("bindings.alias_skipped", name=name)
                self._aliases[name] = expr
            else:
                self._bound[py] = "type"
                self._types.append(f"{py} = {expr}")
                self._aliases[name] = py
        return self._aliases[name]

    def _enum_ref(self, name: str) -> str:
        if self._filter.is_blocklisted(DeclKind.TYPE, name):
            raise Unrepresentable(f"{name} is blocklisted")
        enum = self._unit.named_enum(name)
        if enum is None:
            return "ctypes.c_int"
        key = f"enum:{name}"
        base = self._enum_base(enum)
        py = py_name(name)
        if key not in self._state:
            self._state[key] = "done"
            if py in self._bound:
                return base
            self._bound[py] = "type"
            self._types.append(f"{py} = {base}")
        return py if self._bound.get(py) == "type" else base

    @staticmethod
    def _enum_base(enum: Enum) -> str:
        values = [c.value for c in enum.constants] or [0]
        low, high = min(values), max(values)
        if low >= -(2**31) and high < 2**31:
            return "ctypes.c_int"
        if low >= 0 and high < 2**32:
            return "ctypes.c_uint"
        if low >= -(2**63) and high < 2**63:
            return "ctypes.c_longlong"
        return "ctypes.c_ulonglong"

    # ── records ──

    def _record_ref(self, name: str, *, by_value: bool) -> str:
        if self._filter.is_blocklisted(DeclKind.TYPE, name):
            raise Unrepresentable(f"{name} is blocklisted")
        record = self._unit.records.get(name)
        if record is None:
            raise Unrepresentable(f"unknown record {name}")
        py = self._declare_class(record)
        if by_value:
            self._complete_record(record)
        elif self._state.get(name) == "declared":
            self._pending.append(name)
        return py

    def _declare_class(self, record: Record) -> str:
        py = py_name(record.name)
        if record.name in self._state:
            return py
        if py in self._bound:
            raise Unrepresentable(f"name {py} already bound to a {self._bound[py]}")
        base = "ctypes.Structure" if record.kind == "struct" else "ctypes.Union"

        if self._filter.is_opaque(record.name) and record.complete:
            layout = RecordLayout(self._unit, self._filter.without_opaque())
            size, align = layout.measure(record.name)
            element, width = blob_element(align)
            self._types.append(
                f"class {py}({base}):\n    _fields_ = [(\"_opaque_blob\", {element} * {size // width})]\n"
            )
            self._state[record.name] = "complete"
        else:
            self._types.append(f"class {py}({base}):\n    pass\n")
            self._state[record.name] = "declared"
        self._bound[py] = "type"
        return py

    def _contains_aligned(self, ctype: CType, seen: set[str]) -> bool:
        try:
            resolved = self._resolve(ctype)
        except Unrepresentable:
            return False
        while isinstance(resolved, Array):
            resolved = self._resolve(resolved.element)
        if not (isinstance(resolved, Named) and resolved.kind in ("struct", "union")):
            return False
        if resolved.name in seen:
            return False
        seen.add(resolved.name)
        inner = self._unit.records.get(resolved.name)
        if inner is None or not inner.complete:
            return False
        if inner.aligned:
            return True
        return any(self._contains_aligned(f.ctype, seen) for f in inner.fields)

    def _complete_record(self, record: Record) -> None:
        state = self._state.get(record.name)
        if state == "complete":
            return
        if state == "incomplete":
            raise Unrepresentable(f"{record.name} has no usable definition")
        if state == "completing":
            raise Unrepresentable(f"{record.name} contains itself by value")
        if not record.complete:
            self._state[record.name] = "incomplete"
            raise Unrepresentable(f"{record.name} is an incomplete type")

        self._state[record.name] = "completing"
        try:
            if record.packed and (
                record.aligned or any(self._contains_aligned(f.ctype, set()) for f in record.fields)
            ):
                raise Unrepresentable(f"packed {record.name} contains an aligned member")
            entries, anonymous = [], []
            for f in record.fields:
                expr = self._expr(f.ctype)
                if f.bits is not None:
                    if not self._is_integer(f.ctype):
                        raise Unrepresentable(f"bit-field {record.name}.{f.name} is not an integer")
                    entries.append(f"({f.name!r}, {expr}, {f.bits})")
                else:
                    entries.append(f"({f.name!r}, {expr})")
                if f.anonymous:
                    anonymous.append(f.name)
        except Unrepresentable:
            self._state[record.name] = "incomplete"
            raise

        if record.aligned and not record.packed:
            log.debug("bindings.alignment_ignored", name=record.name)
        py = py_name(record.name)
        if record.packed:
            self._types.append(f"{py}._pack_ = 1")
        if anonymous:
            self._types.append(f"{py}._anonymous_ = {tuple(anonymous)!r}")
        body = "".join(f"    {entry},\n" for entry in entries)
        self._types.append(f"{py}._fields_ = [\n{body}]\n")
        self._state[record.name] = "complete"

    def _drain_pending(self) -> None:
        """Give records seen only behind pointers their fields, where possible."""
        while self._pending:
            name = self._pending.pop(0)
            record = self._unit.records[name]
            if self._state.get(name) != "declared" or not record.complete:
                continue
            try:
                self._complete_record(record)
            except Unrepresentable as e:
                log.debug("bindings.left_opaque", name=name, reason=str(e))

    # ── output ──

    def _render(self, constants: list[str]) -> str:
        directives = self._directives
        search_paths = [str(p) for p in directives.search_paths] if directives else []
        dependencies = directives.system_libraries if directives else []
        parts = [
            f'"""ctypes bindings for {self._header_name}.\n\n'
            'Generated by spdk-sys; do not edit.\n"""\n',
            "import ctypes\nimport ctypes.util\nimport os\n",
            f"_LIBRARY_FILE = {self._library_file!r}",
            f"_SEARCH_PATHS = [os.path.dirname(os.path.abspath(__file__))] + {search_paths!r}",
            f"_DEPENDENCIES = {tuple(dependencies)!r}\n",
            "\n".join(self._types),
            "\n".join(constants) + "\n" if constants else "",
            _LOADER,
            "\n".join(self._bindings),
        ]
        return "\n".join(part for part in parts if part) + "\n"
