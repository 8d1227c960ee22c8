"""C constant-expression evaluation over tree-sitter expression nodes."""

from __future__ import annotations

import ast
import ctypes
import math
import re
from typing import Callable

Value = int | float | bytes
Lookup = Callable[[str], Value | None]

_INT_RE = re.compile(r"(0[xX][0-9a-fA-F']+|0[bB][01']+|[0-9][0-9']*)([uUlLzZ]*)")
_FLOAT_SUFFIX_RE = re.compile(r"[fFlL]$|[fF](16|32|64|128)$|[dD](32|64|128)$")

# Integer cast targets as (bits, signed), sized by the host ABI.
_INTEGER_CASTS: dict[str, tuple[int, bool]] = {
    name: (ctypes.sizeof(ct) * 8, signed)
    for name, ct, signed in (
        ("char", ctypes.c_char, True),
        ("signed char", ctypes.c_byte, True),
        ("unsigned char", ctypes.c_ubyte, False),
        ("short", ctypes.c_short, True),
        ("unsigned short", ctypes.c_ushort, False),
        ("int", ctypes.c_int, True),
        ("unsigned int", ctypes.c_uint, False),
        ("long", ctypes.c_long, True),
        ("unsigned long", ctypes.c_ulong, False),
        ("long long", ctypes.c_longlong, True),
        ("unsigned long long", ctypes.c_ulonglong, False),
        ("int8_t", ctypes.c_int8, True),
        ("int16_t", ctypes.c_int16, True),
        ("int32_t", ctypes.c_int32, True),
        ("int64_t", ctypes.c_int64, True),
        ("uint8_t", ctypes.c_uint8, False),
        ("uint16_t", ctypes.c_uint16, False),
        ("uint32_t", ctypes.c_uint32, False),
        ("uint64_t", ctypes.c_uint64, False),
        ("size_t", ctypes.c_size_t, False),
        ("ssize_t", ctypes.c_ssize_t, True),
        ("ptrdiff_t", ctypes.c_ssize_t, True),
        ("intptr_t", ctypes.c_ssize_t, True),
        ("uintptr_t", ctypes.c_size_t, False),
    )
}
_FLOAT_CASTS = frozenset({"float", "double", "long double"})
_INTEGER_WORDS = frozenset({"signed", "unsigned", "char", "short", "int", "long"})


class NotConstant(Exception):
    """The expression has no compile-time value we can compute."""


def parse_number(text: str) -> int | float:
    """Parse a C number literal, integer or floating, with any suffix."""
    # The grammar's number token may carry its sign.
    if text[:1] in ("-", "+"):
        value = parse_number(text[1:].lstrip())
        return -value if text[0] == "-" else value
    m = _INT_RE.fullmatch(text)
    if m:
        digits = m.group(1).replace("'", "")
        try:
            if digits[:2] in ("0x", "0X"):
                return int(digits[2:], 16)
            if digits[:2] in ("0b", "0B"):
                return int(digits[2:], 2)
            if len(digits) > 1 and digits[0] == "0":
                return int(digits, 8)
            return int(digits)
        except ValueError:
            raise NotConstant(f"bad integer literal: {text}") from None

    body = _FLOAT_SUFFIX_RE.sub("", text.replace("'", ""))
    try:
        if body[:2] in ("0x", "0X"):
            return float.fromhex(body)
        return float(body)
    except ValueError:
        raise NotConstant(f"not a number: {text}") from None


def decode_char(text: str) -> int:
    """Value of a C character literal such as ``'a'`` or ``'\\n'``."""
    body = re.sub(r"^(u8|u|U|L)", "", text)
    try:
        value = ast.literal_eval(body)
    except (ValueError, SyntaxError):
        raise NotConstant(f"bad character literal: {text}") from None
    if not isinstance(value, str) or len(value) != 1:
        raise NotConstant(f"multi-character literal: {text}")
    return ord(value)


def decode_string(text: str) -> bytes:
    body = re.sub(r"^(u8|u|U|L)", "", text)
    if not body.isascii():
        raise NotConstant("non-ASCII string literal")
    try:
        value = ast.literal_eval("b" + body)
    except (ValueError, SyntaxError):
        raise NotConstant(f"bad string literal: {text}") from None
    return value


def cast_target(spelling: str) -> str:
    """Canonical name of a cast's target type, e.g. ``long int`` -> ``long``."""
    if "*" in spelling:
        raise NotConstant(f"pointer cast: ({spelling})")
    words = [w for w in spelling.split() if w not in ("const", "volatile")]
    if not words or not set(words) <= _INTEGER_WORDS:
        return " ".join(words)
    unsigned = "unsigned" in words
    longs = words.count("long")
    if "char" in words:
        if unsigned:
            return "unsigned char"
        return "signed char" if "signed" in words else "char"
    if "short" in words:
        base = "short"
    elif longs >= 2:
        base = "long long"
    elif longs == 1:
        base = "long"
    else:
        base = "int"
    return f"unsigned {base}" if unsigned else base


def cast(target: str, value: Value) -> Value:
    """Convert *value* the way a C cast to *target* would.

    Integer targets truncate toward zero and wrap to the target width.
    Casts to names we cannot size (project typedefs) keep the value.
    """
    if target == "void":
        raise NotConstant("cast to void")
    if isinstance(value, bytes):
        raise NotConstant("cast of a string")
    if target in _FLOAT_CASTS:
        return float(value)
    if target in ("_Bool", "bool"):
        return int(bool(value))
    if target in _INTEGER_CASTS:
        if isinstance(value, float) and not math.isfinite(value):
            raise NotConstant(f"({target}) of a non-finite value")
        bits, signed = _INTEGER_CASTS[target]
        result = int(value) & ((1 << bits) - 1)
        if signed and result >> (bits - 1):
            result -= 1 << bits
        return result
    return value


def _c_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def _binary(op: str, a: Value, b: Value) -> Value:
    if isinstance(a, bytes) or isinstance(b, bytes):
        raise NotConstant("arithmetic on a string")
    if op in ("/", "%") and b == 0:
        raise NotConstant("division by zero")
    if isinstance(a, int) and isinstance(b, int):
        if op == "/":
            return _c_div(a, b)
        if op == "%":
            return a - b * _c_div(a, b)
        if op == "<<":
            if b < 0 or b > 512:
                raise NotConstant("shift out of range")
            return a << b
        if op == ">>":
            return a >> b
        if op == "&":
            return a & b
        if op == "|":
            return a | b
        if op == "^":
            return a ^ b
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        return a / b
    if op == "&&":
        return int(bool(a) and bool(b))
    if op == "||":
        return int(bool(a) or bool(b))
    if op == "==":
        return int(a == b)
    if op == "!=":
        return int(a != b)
    if op == "<":
        return int(a < b)
    if op == ">":
        return int(a > b)
    if op == "<=":
        return int(a <= b)
    if op == ">=":
        return int(a >= b)
    raise NotConstant(f"unsupported operator {op}")


def evaluate(node, lookup: Lookup) -> Value:
    """Evaluate a tree-sitter C expression node.

    Identifiers resolve through *lookup* (enumerators, other macros).
    Raises ``NotConstant`` for anything that is not a compile-time constant.
    """
    kind = node.type
    if node.has_error:
        raise NotConstant("syntax error")

    if kind == "number_literal":
        return parse_number(node.text.decode())
    if kind == "char_literal":
        return decode_char(node.text.decode())
    if kind == "string_literal":
        return decode_string(node.text.decode())
    if kind == "concatenated_string":
        return b"".join(
            decode_string(c.text.decode()) for c in node.named_children if c.type == "string_literal"
        )
    if kind == "true":
        return 1
    if kind in ("false", "null"):
        return 0
    if kind == "identifier":
        value = lookup(node.text.decode())
        if value is None:
            raise NotConstant(f"unknown identifier {node.text.decode()}")
        return value
    if kind == "parenthesized_expression":
        inner = [c for c in node.named_children if c.type != "comment"]
        if len(inner) != 1:
            raise NotConstant("comma expression")
        return evaluate(inner[0], lookup)
    if kind == "cast_expression":
        target = cast_target(node.child_by_field_name("type").text.decode())
        return cast(target, evaluate(node.child_by_field_name("value"), lookup))
    if kind == "unary_expression":
        op = node.child_by_field_name("operator").type
        value = evaluate(node.child_by_field_name("argument"), lookup)
        if isinstance(value, bytes):
            raise NotConstant("arithmetic on a string")
        if op == "-":
            return -value
        if op == "+":
            return value
        if op == "!":
            return int(not value)
        if op == "~" and isinstance(value, int):
            return ~value
        raise NotConstant(f"unsupported unary operator {op}")
    if kind == "binary_expression":
        op = node.child_by_field_name("operator").type
        left = evaluate(node.child_by_field_name("left"), lookup)
        right = evaluate(node.child_by_field_name("right"), lookup)
        return _binary(op, left, right)
    if kind == "conditional_expression":
        condition = evaluate(node.child_by_field_name("condition"), lookup)
        branch = "consequence" if condition else "alternative"
        return evaluate(node.child_by_field_name(branch), lookup)

    raise NotConstant(f"unsupported expression: {kind}")
