"""Tests for preprocessor output splitting and tree-sitter header parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from spdk_sys.bindings.header import HeaderParser, preprocess, split_preprocessed
from spdk_sys.exceptions import ParseError
from spdk_sys.models.declarations import (
    Array,
    FunctionType,
    Named,
    Param,
    Pointer,
    Primitive,
)
from spdk_sys.testing import RecordingRunner

PREPROCESSED = """\
# 1 "wrapper.h"
# 1 "<built-in>"
#define __STDC__ 1
# 1 "<command-line>"
# 1 "wrapper.h"
# 1 "/usr/include/stdint.h" 1 3 4
typedef unsigned char uint8_t;
typedef unsigned int uint32_t;
typedef unsigned long uint64_t;
#define FP_NAN 0
#define UINT8_MAX (255)
# 2 "wrapper.h" 2
# 1 "include/spdk/stub.h" 1
#define STUB_VERSION 3
#define STUB_NAME "stub"
#define STUB_MASK (1 << STUB_SHIFT)
#define STUB_SHIFT 4
#define STUB_FN(x) ((x) + 1)
#define STUB_GONE 1
#undef STUB_GONE
#define STUB_STATE_LAST (STUB_STATE_DONE + 1)

struct stub_pair {
    uint32_t a;
    uint64_t b;
};

struct stub_outer {
    int kind;
    union {
        int i;
        void *p;
    };
    struct {
        int x, y;
    } point;
    char name[16];
    uint8_t data[2 * 4];
    uint32_t flag : 1;
    uint32_t mode : 3;
    struct stub_outer *next;
};

struct __attribute__((packed)) stub_packed {
    uint8_t a;
    uint32_t b;
};

struct stub_handle;

typedef struct {
    int v;
} stub_value_t;

typedef void (*stub_cb)(void *ctx, int rc);

enum stub_state {
    STUB_STATE_IDLE,
    STUB_STATE_BUSY = 5,
    STUB_STATE_DONE,
};

typedef enum {
    STUB_MODE_A,
    STUB_MODE_B,
} stub_mode_t;

int stub_clean(int x);
void stub_void(void);
int stub_log(const char *fmt, ...);
struct stub_handle *stub_open(const char *name, stub_cb cb);
int stub_sum(int values[4], int count);
extern int stub_counter;
static int stub_hidden;

static inline int stub_helper(void)
{
    return 1;
}
"""


def _parse(text: str = PREPROCESSED, **kwargs):
    return HeaderParser(split_preprocessed(text, **kwargs)).parse()


def _row_of(text: str, needle: str) -> int:
    return next(i for i, line in enumerate(text.splitlines()) if needle in line)


class TestSplitPreprocessed:
    def test_rows_align_with_input(self):
        pre = split_preprocessed(PREPROCESSED)
        assert len(pre.origins) == len(PREPROCESSED.splitlines())
        assert len(pre.source.splitlines()) == len(pre.origins)

    def test_directives_blanked(self):
        pre = split_preprocessed(PREPROCESSED)
        assert "#define" not in pre.source
        assert "# 1" not in pre.source

    def test_origins(self):
        pre = split_preprocessed(PREPROCESSED)
        system = pre.origin_at(_row_of(PREPROCESSED, "typedef unsigned char uint8_t"))
        assert system.path == "/usr/include/stdint.h"
        assert system.system
        assert system.line == 1

        project = pre.origin_at(_row_of(PREPROCESSED, "struct stub_pair {"))
        assert project.path == "include/spdk/stub.h"
        assert not project.system

    def test_line_numbers_follow_markers(self):
        pre = split_preprocessed('# 10 "a.h"\nint a;\nint b;\n')
        assert pre.origin_at(1).line == 10
        assert pre.origin_at(2).line == 11

    def test_macros_collected(self):
        pre = split_preprocessed(PREPROCESSED)
        assert pre.macros["STUB_VERSION"].body == "3"
        assert pre.macros["STUB_FN"].function_like
        assert not pre.macros["STUB_MASK"].function_like
        assert pre.macros["UINT8_MAX"].origin.system

    def test_undef_removes(self):
        assert "STUB_GONE" not in split_preprocessed(PREPROCESSED).macros

    def test_ignored_macros_dropped(self):
        pre = split_preprocessed(PREPROCESSED, ignore_macro=lambda name: name == "FP_NAN")
        assert "FP_NAN" not in pre.macros
        assert "UINT8_MAX" in pre.macros

    def test_builtin_macros_are_system(self):
        pre = split_preprocessed(PREPROCESSED)
        assert pre.macros["__STDC__"].origin.system


class TestRecords:
    def test_simple_struct(self):
        record = _parse().records["stub_pair"]
        assert record.kind == "struct"
        assert [(f.name, f.ctype) for f in record.fields] == [
            ("a", Primitive("uint32_t")),
            ("b", Primitive("uint64_t")),
        ]
        assert not record.origin.system

    def test_anonymous_member(self):
        unit = _parse()
        outer = unit.records["stub_outer"]
        anon = [f for f in outer.fields if f.anonymous]
        assert len(anon) == 1
        inner = unit.records[anon[0].ctype.name]
        assert inner.kind == "union"
        assert inner.synthetic
        assert inner.name.startswith("stub_outer__anon")

    def test_untagged_member_struct(self):
        unit = _parse()
        point = next(f for f in unit.records["stub_outer"].fields if f.name == "point")
        inner = unit.records[point.ctype.name]
        assert not point.anonymous
        assert [f.name for f in inner.fields] == ["x", "y"]

    def test_arrays_and_bitfields(self):
        fields = {f.name: f for f in _parse().records["stub_outer"].fields}
        assert fields["name"].ctype == Array(Primitive("char"), 16)
        assert fields["data"].ctype == Array(Primitive("uint8_t"), 8)
        assert fields["flag"].bits == 1
        assert fields["mode"].bits == 3
        assert fields["next"].ctype == Pointer(Named("struct", "stub_outer"))

    def test_packed(self):
        unit = _parse()
        assert unit.records["stub_packed"].packed
        assert not unit.records["stub_pair"].packed

    def test_standalone_definitions_recorded(self):
        text = (
            '# 1 "include/spdk/bare.h" 1\n'
            "struct bare_s { int x; };\n"
            "union bare_u { int i; float f; };\n"
            "enum bare_e { BARE_A, BARE_B };\n"
            "enum { BARE_ANON = 4 };\n"
        )
        unit = _parse(text)
        assert unit.records["bare_s"].complete
        assert unit.records["bare_s"].kind == "struct"
        assert unit.records["bare_u"].kind == "union"
        assert unit.constants["BARE_B"].value == 1
        assert unit.constants["BARE_ANON"].value == 4

    def test_forward_declaration_incomplete(self):
        assert not _parse().records["stub_handle"].complete

    def test_typedef_names_untagged_struct(self):
        unit = _parse()
        assert unit.records["stub_value_t"].complete
        assert unit.typedefs["stub_value_t"].target == Named("struct", "stub_value_t")


class TestEnums:
    def test_implicit_values(self):
        values = {c.name: c.value for c in _parse().named_enum("stub_state").constants}
        assert values == {"STUB_STATE_IDLE": 0, "STUB_STATE_BUSY": 5, "STUB_STATE_DONE": 6}

    def test_typedef_names_untagged_enum(self):
        unit = _parse()
        assert unit.named_enum("stub_mode_t") is not None
        assert unit.constants["STUB_MODE_B"].value == 1

    def test_enumerator_in_macro(self):
        assert _parse().macros["STUB_STATE_LAST"].value == 7


class TestFunctionsAndVariables:
    def test_prototype(self):
        fn = _parse().functions["stub_clean"]
        assert fn.ctype == FunctionType(Primitive("int"), (Param("x", Primitive("int")),))

    def test_void_parameter_list(self):
        fn = _parse().functions["stub_void"]
        assert fn.ctype.params == ()
        assert not fn.ctype.unprototyped

    def test_variadic(self):
        fn = _parse().functions["stub_log"]
        assert fn.ctype.variadic
        assert fn.ctype.params == (Param("fmt", Pointer(Primitive("char"))),)

    def test_pointer_result_and_callback(self):
        unit = _parse()
        fn = unit.functions["stub_open"]
        assert fn.ctype.result == Pointer(Named("struct", "stub_handle"))
        assert fn.ctype.params[1].ctype == Named("typedef", "stub_cb")
        cb = unit.typedefs["stub_cb"].target
        assert isinstance(cb, Pointer)
        assert cb.target == FunctionType(
            Primitive("void"),
            (Param("ctx", Pointer(Primitive("void"))), Param("rc", Primitive("int"))),
        )

    def test_array_parameter_decays(self):
        fn = _parse().functions["stub_sum"]
        assert fn.ctype.params[0].ctype == Pointer(Primitive("int"))

    def test_variables(self):
        unit = _parse()
        assert unit.variables["stub_counter"].ctype == Primitive("int")
        assert "stub_hidden" not in unit.variables

    def test_inline_definitions_skipped(self):
        assert "stub_helper" not in _parse().functions


class TestMacros:
    def test_values(self):
        macros = _parse().macros
        assert macros["STUB_VERSION"].value == 3
        assert macros["STUB_NAME"].value == b"stub"
        assert macros["STUB_MASK"].value == 16

    def test_function_like_and_system_skipped(self):
        macros = _parse().macros
        assert "STUB_FN" not in macros
        assert "UINT8_MAX" not in macros
        assert "__STDC__" not in macros


class TestSyntaxErrors:
    def test_project_header_error_is_fatal(self):
        text = '# 1 "include/spdk/bad.h"\nint stub_bad(int x;\n'
        with pytest.raises(ParseError, match="bad.h"):
            _parse(text)

    def test_project_function_body_error_is_fatal(self):
        text = (
            '# 1 "include/spdk/inline.h"\n'
            "static inline int stub_inline(void) { return 1 + ; }\n"
        )
        with pytest.raises(ParseError, match="inline.h"):
            _parse(text)

    def test_system_function_body_error_tolerated(self):
        text = (
            '# 1 "/usr/include/inline.h" 1 3 4\n'
            "static inline int sys_inline(void) { return 1 + ; }\n"
            '# 1 "include/spdk/ok.h" 1\nint stub_ok(void);\n'
        )
        assert "stub_ok" in _parse(text).functions

    def test_system_header_error_tolerated(self):
        text = (
            '# 1 "/usr/include/weird.h" 1 3 4\ntypedef int sys_t sys_u;\n'
            '# 1 "include/spdk/ok.h" 1\nint stub_ok(void);\n'
        )
        assert "stub_ok" in _parse(text).functions


class TestPreprocess:
    def test_command_and_split(self, tmp_path: Path):
        header = tmp_path / "wrapper.h"
        header.write_text("#include <spdk/stub.h>\n")
        runner = RecordingRunner({"cc": (0, '# 1 "x.h"\n#define A 1\nint a;\n', "")})

        pre = preprocess(header, [tmp_path / "include"], runner=runner)

        cmd = runner.commands[0]
        assert cmd[:3] == ["cc", "-E", "-dD"]
        assert f"-I{tmp_path / 'include'}" in cmd
        assert cmd[-1] == str(header)
        assert "A" in pre.macros

    def test_failure(self, tmp_path: Path):
        header = tmp_path / "wrapper.h"
        header.write_text("#include <missing.h>\n")
        runner = RecordingRunner({"cc": (1, "", "fatal error: missing.h: No such file")})
        with pytest.raises(ParseError) as exc_info:
            preprocess(header, [], runner=runner)
        assert "missing.h" in exc_info.value.diagnostic

    def test_missing_header(self, tmp_path: Path):
        with pytest.raises(ParseError, match="not found"):
            preprocess(tmp_path / "nope.h", [], runner=RecordingRunner())
