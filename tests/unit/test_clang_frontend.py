"""Tests for the clang JSON bridge, driven by small hand-written AST dumps."""

from __future__ import annotations

import json
import subprocess
from types import SimpleNamespace

import pytest

from transpiler import cpp_ast as ast
from transpiler.clang_frontend import (
    ClangAstConverter,
    load_ast_json,
    mangle_specialization,
    run_clang,
    unescape_c_string,
)
from transpiler.config import TranspileConfig
from transpiler.cpp_types import INT, RecordType
from transpiler.diagnostics import DiagnosticKind, DiagnosticSink, FrontendError

MAIN = "/tmp/main.cpp"
HEADER = "/usr/include/helper.h"


def _loc(col: int, line: int | None = None, file: str | None = None) -> dict:
    loc = {"col": col, "tokLen": 1}
    if line is not None:
        loc["line"] = line
    if file is not None:
        loc["file"] = file
    return loc


def _tu(*decls) -> dict:
    return {"id": "0x1", "kind": "TranslationUnitDecl", "inner": list(decls)}


def _int_type() -> dict:
    return {"qualType": "int"}


def _param(nid: str, name: str, col: int) -> dict:
    return {"id": nid, "kind": "ParmVarDecl", "loc": _loc(col), "name": name, "type": _int_type()}


def _load(nid: str, param: dict) -> dict:
    ref = {k: param[k] for k in ("id", "kind", "name", "type")}
    return {
        "id": nid,
        "kind": "ImplicitCastExpr",
        "type": _int_type(),
        "castKind": "LValueToRValue",
        "inner": [{"id": nid + "1", "kind": "DeclRefExpr", "type": _int_type(), "referencedDecl": ref}],
    }


def _add_function(file: str | None = MAIN, line: int = 1) -> dict:
    a = _param("0x11", "a", 13)
    b = _param("0x12", "b", 20)
    ret = {
        "id": "0x14",
        "kind": "ReturnStmt",
        "inner": [
            {
                "id": "0x15",
                "kind": "BinaryOperator",
                "type": _int_type(),
                "opcode": "+",
                "inner": [_load("0x16", a), _load("0x17", b)],
            }
        ],
    }
    return {
        "id": "0x10",
        "kind": "FunctionDecl",
        "loc": _loc(5, line, file),
        "name": "add",
        "type": {"qualType": "int (int, int)"},
        "inner": [a, b, {"id": "0x13", "kind": "CompoundStmt", "inner": [ret]}],
    }


def _convert(root: dict, sink: DiagnosticSink | None = None) -> ast.TranslationUnit:
    return ClangAstConverter(root, MAIN, sink).convert()


class TestLoadAstJson:
    def test_accepts_translation_unit(self):
        root = load_ast_json(json.dumps(_tu()))
        assert root["kind"] == "TranslationUnitDecl"

    def test_rejects_bad_json(self):
        with pytest.raises(FrontendError, match="unreadable"):
            load_ast_json("{not json")

    def test_rejects_other_roots(self):
        with pytest.raises(FrontendError, match="TranslationUnitDecl"):
            load_ast_json(json.dumps({"kind": "FunctionDecl"}))


class TestRunClang:
    def test_command_line(self, monkeypatch):
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["cmd"] = cmd
            return SimpleNamespace(returncode=0, stdout=json.dumps(_tu()), stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        config = TranspileConfig(include_paths=("inc",), defines=("NDEBUG",), cpp_standard="c++17")
        run_clang("a.cpp", config)
        assert seen["cmd"][1:4] == ["-Xclang", "-ast-dump=json", "-fsyntax-only"]
        assert "-std=c++17" in seen["cmd"]
        assert "-Iinc" in seen["cmd"]
        assert "-DNDEBUG" in seen["cmd"]
        assert seen["cmd"][-1] == "a.cpp"

    def test_missing_binary(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(FrontendError, match="not found"):
            run_clang("a.cpp", TranspileConfig(clang_binary="no-such-clang"))

    def test_compile_error(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            return SimpleNamespace(returncode=1, stdout="", stderr="a.cpp:1:1: error: boom\n")

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(FrontendError, match="boom"):
            run_clang("a.cpp")


class TestFunctions:
    def test_function_with_parameters_and_body(self):
        unit = _convert(_tu(_add_function()))
        assert unit.file == MAIN
        (fn,) = unit.decls
        assert isinstance(fn, ast.FunctionDecl)
        assert fn.name == "add"
        assert fn.node_id == 0x10
        assert fn.return_type == INT
        assert [p.name for p in fn.params] == ["a", "b"]
        assert fn.loc == ast.SourceLocation(file=MAIN, line=1, col=5)

    def test_expressions_are_resolved(self):
        (fn,) = _convert(_tu(_add_function())).decls
        (ret,) = fn.body.body
        assert isinstance(ret, ast.ReturnStmt)
        add = ret.value
        assert isinstance(add, ast.BinaryOperator)
        assert add.op == "+"
        load = add.lhs
        assert isinstance(load, ast.CastExpr)
        assert load.cast_kind == ast.CastKind.LVALUE_TO_RVALUE
        assert load.is_implicit
        assert load.operand.name == "a"
        assert load.operand.decl_id == 0x11

    def test_elided_file_and_line_are_inherited(self):
        (fn,) = _convert(_tu(_add_function())).decls
        assert fn.params[1].loc == ast.SourceLocation(file=MAIN, line=1, col=20)

    def test_declarations_from_other_files_are_dropped(self):
        header_fn = _add_function(file=HEADER)
        main_fn = _add_function(line=9)
        main_fn["id"] = "0x30"
        unit = _convert(_tu(header_fn, main_fn))
        assert [d.node_id for d in unit.decls] == [0x30]

    def test_main_file_is_inferred_from_the_last_declaration(self):
        root = _tu(_add_function(file=HEADER), {**_add_function(line=4), "id": "0x40"})
        assert ClangAstConverter(root).main_file == MAIN


class TestRecoverableErrors:
    def test_unknown_declaration_is_reported_and_skipped(self):
        sink = DiagnosticSink()
        odd = {"id": "0x50", "kind": "ConceptDecl", "loc": _loc(1, 20, MAIN), "name": "C"}
        unit = _convert(_tu(_add_function(), odd), sink)
        assert len(unit.decls) == 1
        (diagnostic,) = sink.items
        assert diagnostic.kind == DiagnosticKind.UNSUPPORTED_CONSTRUCT
        assert "ConceptDecl" in diagnostic.message
        assert diagnostic.declaration == "C"

    def test_unsupported_expression_skips_only_its_function(self):
        sink = DiagnosticSink()
        broken = {
            "id": "0x60",
            "kind": "FunctionDecl",
            "loc": _loc(5, 30, MAIN),
            "name": "broken",
            "type": {"qualType": "void ()"},
            "inner": [
                {
                    "id": "0x61",
                    "kind": "CompoundStmt",
                    "inner": [{"id": "0x62", "kind": "CoawaitExpr", "type": {"qualType": "void"}}],
                }
            ],
        }
        unit = _convert(_tu(broken, _add_function()), sink)
        assert [d.name for d in unit.decls] == ["add"]
        (diagnostic,) = sink.items
        assert "CoawaitExpr" in diagnostic.message
        assert diagnostic.declaration == "broken"


class TestNamespacesAndRecords:
    def test_namespace_and_using_directive(self):
        ns = {
            "id": "0x70",
            "kind": "NamespaceDecl",
            "loc": _loc(11, 1, MAIN),
            "name": "geo",
            "inner": [_add_function(line=2)],
        }
        using = {
            "id": "0x71",
            "kind": "UsingDirectiveDecl",
            "loc": _loc(1, 5),
            "nominatedNamespace": {"id": "0x70", "kind": "NamespaceDecl", "name": "geo"},
        }
        geo, directive = _convert(_tu(ns, using)).decls
        assert isinstance(geo, ast.NamespaceDecl)
        assert [d.name for d in geo.decls] == ["add"]
        assert directive.namespace == "geo"

    def test_struct_with_field_and_base(self):
        base = {
            "id": "0x80",
            "kind": "CXXRecordDecl",
            "loc": _loc(8, 1, MAIN),
            "name": "Base",
            "tagUsed": "struct",
            "completeDefinition": True,
            "inner": [
                {"id": "0x81", "kind": "FieldDecl", "loc": _loc(18), "name": "x", "type": _int_type()}
            ],
        }
        derived = {
            "id": "0x90",
            "kind": "CXXRecordDecl",
            "loc": _loc(7, 2),
            "name": "Derived",
            "tagUsed": "class",
            "completeDefinition": True,
            "bases": [{"type": {"qualType": "Base"}, "access": "public"}],
            "inner": [
                {"id": "0x91", "kind": "AccessSpecDecl", "access": "public"},
                {"id": "0x92", "kind": "FieldDecl", "loc": _loc(30), "name": "y", "type": _int_type()},
            ],
        }
        rec_base, rec_derived = _convert(_tu(base, derived)).decls
        assert [f.name for f in rec_base.fields] == ["x"]
        assert rec_derived.tag == "class"
        assert rec_derived.bases[0].type == RecordType(name="Base", decl_id=0x80)
        assert rec_derived.fields[0].access == ast.Access.PUBLIC

    def test_enum_values_continue_from_explicit_ones(self):
        enum = {
            "id": "0xa0",
            "kind": "EnumDecl",
            "loc": _loc(6, 1, MAIN),
            "name": "Color",
            "inner": [
                {"id": "0xa1", "kind": "EnumConstantDecl", "loc": _loc(14), "name": "Red"},
                {
                    "id": "0xa2",
                    "kind": "EnumConstantDecl",
                    "loc": _loc(19),
                    "name": "Green",
                    "inner": [{"id": "0xa3", "kind": "ConstantExpr", "value": "5"}],
                },
                {"id": "0xa4", "kind": "EnumConstantDecl", "loc": _loc(30), "name": "Blue"},
            ],
        }
        (color,) = _convert(_tu(enum)).decls
        assert [(e.name, e.value) for e in color.enumerators] == [("Red", 0), ("Green", 5), ("Blue", 6)]


class TestHelpers:
    def test_unescape_c_string(self):
        assert unescape_c_string('"a\\tb\\n"') == "a\tb\n"
        assert unescape_c_string('"\\x41\\101\\0"') == "AA\0"
        assert unescape_c_string('u8"hi"') == "hi"

    def test_mangle_specialization(self):
        assert mangle_specialization("ns::Box<int, char *>") == "Box_int_char_ptr"
        assert mangle_specialization("Pair<long>") == "Pair_long"
