from __future__ import annotations

import ctypes
from collections.abc import Callable
from pathlib import Path

import pytest

import build_acpica


def _bind(write_header: Callable[[str], Path], text: str) -> build_acpica.BindingSet:
    header = write_header(text)
    return build_acpica.generate_binding_set(header, header.parent)


def _body(binding_set: build_acpica.BindingSet) -> str:
    module = build_acpica.serialize_binding_set(binding_set)
    assert module.startswith(build_acpica.PREAMBLE.rstrip("\n"))
    return module[len(build_acpica.PREAMBLE.rstrip("\n")) :]


def _record(binding_set: build_acpica.BindingSet, name: str) -> build_acpica.RecordDecl:
    matches = [r for r in binding_set.records if r.name == name]
    assert len(matches) == 1, f"expected one record named {name}"
    return matches[0]


def _fields(record: build_acpica.RecordDecl) -> list[tuple[object, ...]]:
    return [
        (f.name, f.ctype) if f.bit_width is None else (f.name, f.ctype, f.bit_width)
        for f in record.fields
    ]


def test_t_01_minimal_header_yields_one_function_and_one_struct(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "struct point { int x; int y; };\nint area(struct point *p);\n",
    )

    assert [r.name for r in binding_set.structs] == ["point"]
    assert [f.name for f in binding_set.functions] == ["area"]
    assert binding_set.constants == ()
    assert binding_set.enums == ()
    assert binding_set.typedefs == ()
    assert _body(binding_set) == (
        "\n\n\n"
        "class point(ctypes.Structure):\n"
        "    pass\n"
        "\n\n"
        "point._fields_ = [\n"
        '    ("x", ctypes.c_int),\n'
        '    ("y", ctypes.c_int),\n'
        "]\n"
        "\n\n"
        "area = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.POINTER(point))\n"
    )


def test_t_02_serialized_module_is_valid_python(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "typedef unsigned int UINT32;\n"
        "typedef struct { UINT32 Length; char Signature[4]; } ACPI_TABLE_HEADER;\n"
        "UINT32 AcpiGetTable(char *Signature, ACPI_TABLE_HEADER **OutTable);\n",
    )
    namespace: dict[str, object] = {}

    exec(compile(build_acpica.serialize_binding_set(binding_set), "bindings", "exec"), namespace)

    header_type = namespace["ACPI_TABLE_HEADER"]
    assert [name for name, *_ in header_type._fields_] == ["Length", "Signature"]  # type: ignore[attr-defined]
    assert header_type.Length.offset == 0  # type: ignore[attr-defined]
    assert header_type.Signature.offset == 4  # type: ignore[attr-defined]


def test_t_03_unnamed_typedef_struct_takes_typedef_name(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "typedef unsigned int UINT32;\n"
        "typedef struct { UINT32 Length; char Signature[4]; } ACPI_TABLE_HEADER;\n"
        "typedef ACPI_TABLE_HEADER *ACPI_TABLE_HEADER_PTR;\n",
    )

    record = _record(binding_set, "ACPI_TABLE_HEADER")
    assert _fields(record) == [
        ("Length", "UINT32"),
        ("Signature", "(ctypes.c_char * 4)"),
    ]
    assert [(t.name, t.target) for t in binding_set.typedefs] == [
        ("UINT32", "ctypes.c_uint"),
        ("ACPI_TABLE_HEADER_PTR", "ctypes.POINTER(ACPI_TABLE_HEADER)"),
    ]
    assert binding_set.statement_order == (
        "typedef:UINT32",
        "layout:ACPI_TABLE_HEADER",
        "typedef:ACPI_TABLE_HEADER_PTR",
    )


def test_t_04_forward_declaration_is_opaque_until_defined(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "struct never_defined;\n"
        "struct node;\n"
        "typedef struct node NODE;\n"
        "struct node { NODE *next; struct never_defined *other; };\n",
    )

    assert _record(binding_set, "never_defined").opaque is True
    node = _record(binding_set, "node")
    assert node.opaque is False
    assert _fields(node) == [
        ("next", "ctypes.POINTER(NODE)"),
        ("other", "ctypes.POINTER(never_defined)"),
    ]
    assert "layout:never_defined" not in binding_set.statement_order
    assert binding_set.statement_order.index("typedef:NODE") < (
        binding_set.statement_order.index("layout:node")
    )


def test_t_05_enums_emit_alias_and_variants(write_header: Callable[[str], Path]) -> None:
    binding_set = _bind(
        write_header,
        "typedef enum { ACPI_A, ACPI_B = 5, ACPI_C } ACPI_KIND;\n"
        "enum acpi_named { NAMED_X = 1 };\n"
        "enum { LOOSE = 3 };\n"
        "struct holder { ACPI_KIND kind; enum acpi_named named; };\n",
    )

    assert [(e.name, e.variants) for e in binding_set.enums] == [
        ("ACPI_KIND", (("ACPI_A", 0), ("ACPI_B", 5), ("ACPI_C", 6))),
        ("acpi_named", (("NAMED_X", 1),)),
        (None, (("LOOSE", 3),)),
    ]
    assert binding_set.typedefs == ()
    assert _fields(_record(binding_set, "holder")) == [
        ("kind", "ACPI_KIND"),
        ("named", "acpi_named"),
    ]
    body = _body(binding_set)
    assert "\nACPI_B = 5\n" in body
    assert "\nLOOSE = 3\n" in body


def test_t_06_bitfields_pack_and_unions(write_header: Callable[[str], Path]) -> None:
    binding_set = _bind(
        write_header,
        "#pragma pack(1)\n"
        "struct packed { unsigned char a; unsigned int b; };\n"
        "#pragma pack()\n"
        "struct natural { unsigned char a; unsigned int b; };\n"
        "struct flags { unsigned int lo : 4; unsigned int hi : 4; };\n"
        "union value { int i; struct { short a; short b; } parts; };\n",
    )

    assert _record(binding_set, "packed").pack == 1
    assert _record(binding_set, "natural").pack is None
    assert _fields(_record(binding_set, "flags")) == [
        ("lo", "ctypes.c_uint", 4),
        ("hi", "ctypes.c_uint", 4),
    ]
    value = _record(binding_set, "value")
    assert value.kind == "union"
    assert _fields(value) == [("i", "ctypes.c_int"), ("parts", "value_parts")]
    assert _fields(_record(binding_set, "value_parts")) == [
        ("a", "ctypes.c_short"),
        ("b", "ctypes.c_short"),
    ]
    order = binding_set.statement_order
    assert order.index("layout:value_parts") < order.index("layout:value")

    body = _body(binding_set)
    assert (
        "class packed(ctypes.Structure):\n"
        '    _layout_ = "ms"\n'
        "    _pack_ = 1\n"
    ) in body
    assert "class value(ctypes.Union):\n" in body
    assert '    ("lo", ctypes.c_uint, 4),\n' in body


def test_t_07_packed_struct_loads_with_packed_size(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "#pragma pack(1)\n"
        "struct packed { unsigned char a; unsigned int b; };\n"
        "#pragma pack()\n",
    )
    namespace: dict[str, object] = {}

    exec(compile(build_acpica.serialize_binding_set(binding_set), "bindings", "exec"), namespace)

    packed = namespace["packed"]
    assert ctypes.sizeof(packed) == 5  # type: ignore[arg-type]
    assert packed.b.offset == 1  # type: ignore[attr-defined]



def test_t_08_anonymous_members_are_listed_in_anonymous(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "struct with_anon { int tag; union { int i; char c; }; };\n",
    )

    record = _record(binding_set, "with_anon")
    assert record.anonymous == ("_anon0",)
    assert _fields(record) == [("tag", "ctypes.c_int"), ("_anon0", "with_anon__anon0")]
    assert _record(binding_set, "with_anon__anon0").kind == "union"
    assert '    _anonymous_ = ("_anon0",)\n' in _body(binding_set)


def test_t_09_functions_variadic_static_and_duplicates(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "typedef int (*ACPI_HANDLER)(void *context, unsigned int event);\n"
        "int AcpiOsPrintf(const char *fmt, ...);\n"
        "static int helper(void) { return 0; }\n"
        "int AcpiInstall(ACPI_HANDLER handler);\n"
        "int AcpiInstall(ACPI_HANDLER handler);\n"
        "void AcpiTerminate(void);\n",
    )

    assert [(t.name, t.target) for t in binding_set.typedefs] == [
        (
            "ACPI_HANDLER",
            "ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_void_p, ctypes.c_uint)",
        )
    ]
    assert binding_set.functions == (
        build_acpica.FunctionDecl("AcpiOsPrintf", "ctypes.c_int", ("ctypes.c_char_p",), True),
        build_acpica.FunctionDecl("AcpiInstall", "ctypes.c_int", ("ACPI_HANDLER",), False),
        build_acpica.FunctionDecl("AcpiTerminate", "None", (), False),
    )
    body = _body(binding_set)
    assert "AcpiOsPrintf = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_char_p)  # variadic\n" in body
    assert "AcpiTerminate = ctypes.CFUNCTYPE(None)\n" in body
    assert "helper" not in body
    assert "CDLL" not in body


def test_t_10_python_keywords_are_renamed(write_header: Callable[[str], Path]) -> None:
    binding_set = _bind(write_header, "struct kw { int class; int from; };\n")

    assert _fields(_record(binding_set, "kw")) == [
        ("class_", "ctypes.c_int"),
        ("from_", "ctypes.c_int"),
    ]


def test_t_11_manifest_constants(write_header: Callable[[str], Path]) -> None:
    binding_set = _bind(
        write_header,
        "typedef unsigned char UINT8;\n"
        "#define ACPI_FLAG (UINT8) 0x10\n"
        "#define ACPI_MASK (ACPI_FLAG | 0x01) << 2\n"
        '#define ACPI_SIG "DS" "DT"\n'
        "#define ACPI_LATER ACPI_EARLY + 1\n"
        "#define ACPI_EARLY 7\n"
        "#define ACPI_CHAR 'A'\n"
        "#define ACPI_NEG -(5 / 2)\n"
        "#define ACPI_OCT 010\n"
        "#define ACPI_SUFFIX 10UL\n"
        "#define ACPI_FUNC(x) ((x) + 1)\n"
        "#define ACPI_EMPTY\n"
        "#define ACPI_PTR ((void *) 0)\n"
        "#define ACPI_ALIAS strtoul\n",
    )

    assert {c.name: c.value for c in binding_set.constants} == {
        "ACPI_FLAG": 16,
        "ACPI_MASK": 68,
        "ACPI_SIG": b"DSDT",
        "ACPI_LATER": 8,
        "ACPI_EARLY": 7,
        "ACPI_CHAR": 65,
        "ACPI_NEG": -2,
        "ACPI_OCT": 8,
        "ACPI_SUFFIX": 10,
    }


def test_t_12_integer_casts_truncate_to_cast_type(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "typedef unsigned char UINT8;\n"
        "typedef unsigned int UINT32;\n"
        "typedef int INT32;\n"
        "typedef UINT8 *PTR8;\n"
        "typedef struct { int a; } REC;\n"
        "typedef enum { LOW, HIGH } LEVEL;\n"
        "#define ACPI_UINT8_MAX (UINT8) -1\n"
        "#define ACPI_UINT32_MAX (UINT32) ~0\n"
        "#define ACPI_TRUNC (UINT8) 0x1FF\n"
        "#define ACPI_SIGNED (INT32) 0xFFFFFFFF\n"
        "#define ACPI_SCHAR (signed char) 0x80\n"
        "#define ACPI_USHORT (unsigned short) -1\n"
        "#define ACPI_BOOL (_Bool) 5\n"
        "#define ACPI_CONST (const UINT8) 0x100\n"
        "#define ACPI_NESTED (UINT8) ((UINT32) 0x1234)\n"
        "#define ACPI_PROMOTED (UINT8) 0xFF + 1\n"
        "#define ACPI_LEVEL (LEVEL) 0x100000001\n"
        "#define ACPI_PTR_CAST (PTR8) 0\n"
        "#define ACPI_REC_CAST (REC) 0\n",
    )

    assert {c.name: c.value for c in binding_set.constants} == {
        "ACPI_UINT8_MAX": 255,
        "ACPI_UINT32_MAX": 0xFFFFFFFF,
        "ACPI_TRUNC": 0xFF,
        "ACPI_SIGNED": -1,
        "ACPI_SCHAR": -128,
        "ACPI_USHORT": 0xFFFF,
        "ACPI_BOOL": 1,
        "ACPI_CONST": 0,
        "ACPI_NESTED": 0x34,
        "ACPI_PROMOTED": 0x100,
        "ACPI_LEVEL": 1,
    }


def test_t_13_parenthesized_object_macro_is_not_function_like(
    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(
        write_header,
        "#define ACPI_PAREN (1 + 2)\n"
        "#define ACPI_SPACED ( 4 )\n"
        "#define ACPI_FN(x) (x)\n"
        "#define ACPI_FN_EMPTY() 1\n",
    )

    assert {c.name: c.value for c in binding_set.constants} == {
        "ACPI_PAREN": 3,
        "ACPI_SPACED": 4,
    }


def test_t_14_unnamed_record_behind_pointer_typedef_is_bindgen_error(
    write_header: Callable[[str], Path],
) -> None:
    with pytest.raises(build_acpica.BuildError) as exc_info:
        _bind(write_header, "typedef struct { int a; } *ANON_PTR;\n")

    assert exc_info.value.stage == "BINDGEN"
    assert "unnamed record" in exc_info.value.message


def test_t_15_command_line_and_builtin_macros_are_excluded(

    write_header: Callable[[str], Path],
) -> None:
    binding_set = _bind(write_header, "#define REAL_ONE 1\n")

    names = {c.name for c in binding_set.constants}
    assert names == {"REAL_ONE"}


def test_t_16_transitive_includes_are_visible(write_header: Callable[[str], Path]) -> None:
    write_header("#define INNER_VALUE 42\nint inner_fn(void);\n", name="inner.h")

    binding_set = _bind(write_header, '#include "inner.h"\nint outer_fn(void);\n')

    assert [f.name for f in binding_set.functions] == ["inner_fn", "outer_fn"]
    assert [(c.name, c.value) for c in binding_set.constants] == [("INNER_VALUE", 42)]


def test_t_17_unresolved_include_is_bindgen_error(
    write_header: Callable[[str], Path],
) -> None:
    with pytest.raises(build_acpica.BuildError) as exc_info:
        _bind(write_header, '#include "missing.h"\n')

    assert exc_info.value.stage == "BINDGEN"
    assert "missing.h" in exc_info.value.message


def test_t_18_malformed_header_is_bindgen_error(write_header: Callable[[str], Path]) -> None:
    with pytest.raises(build_acpica.BuildError) as exc_info:
        _bind(write_header, "struct broken { int a \n")

    assert exc_info.value.stage == "BINDGEN"
    assert exc_info.value.path is not None


def test_t_19_output_is_identical_across_locations_and_has_no_paths(
    tmp_path: Path,
) -> None:
    text = (
        "#define ACPI_VERSION 0x20230628\n"
        "typedef struct { int a; } FIRST;\n"
        "struct second { FIRST f; union { int x; }; };\n"
        "int use(struct second *s);\n"
    )
    modules = []
    for location in ("one", "two/deeper"):
        header = tmp_path / location / "umbrella.h"
        header.parent.mkdir(parents=True)
        header.write_text(text, encoding="utf-8")
        binding_set = build_acpica.generate_binding_set(header, header.parent)
        modules.append(build_acpica.serialize_binding_set(binding_set))

    assert modules[0] == modules[1]
    assert str(tmp_path) not in modules[0]
    assert "unnamed" not in modules[0]


def test_t_20_order_statements_places_dependencies_first() -> None:
    records = (
        build_acpica.RecordDecl(
            "outer", "struct", (), False, requires=frozenset({"layout:inner"}), position=1
        ),
        build_acpica.RecordDecl("inner", "struct", (), False, position=2),
        build_acpica.RecordDecl("opaque", "struct", (), True),
    )
    typedefs = (
        build_acpica.TypedefDecl("ALIAS", "ctypes.c_int", position=0),
        build_acpica.TypedefDecl(
            "ARRAY", "(outer * 2)", requires=frozenset({"layout:outer"}), position=3
        ),
    )

    assert build_acpica.order_statements(records, typedefs) == (
        "typedef:ALIAS",
        "layout:inner",
        "layout:outer",
        "typedef:ARRAY",
    )


def test_t_21_order_statements_cycle_is_bindgen_error() -> None:
    records = (
        build_acpica.RecordDecl(
            "a", "struct", (), False, requires=frozenset({"layout:b"}), position=1
        ),
        build_acpica.RecordDecl(
            "b", "struct", (), False, requires=frozenset({"layout:a"}), position=2
        ),
    )

    with pytest.raises(build_acpica.BuildError) as exc_info:
        build_acpica.order_statements(records, ())

    assert exc_info.value.stage == "BINDGEN"
    assert "layout:a" in exc_info.value.message
