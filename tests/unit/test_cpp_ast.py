"""Tests for the AST Model: traversal, implicit-node stripping, JSON form."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from transpiler import cpp_ast as ast
from transpiler.ast_builder import AstBuilder, record_type, std_type
from transpiler.cpp_types import (
    INT,
    ArrayType,
    PointerType,
    RecordType,
    ReferenceType,
    StdLibType,
    record_id_of,
    strip_reference,
)


def _factorial_unit() -> ast.TranslationUnit:
    b = AstBuilder()
    n = b.param("n", INT)
    fid = b.next_id()
    proto = b.function("factorial", INT, [n], node_id=fid)
    body = b.block(
        b.if_(b.binop("<=", b.load(n), b.lit(1)), b.ret(b.lit(1))),
        b.ret(b.binop("*", b.load(n), b.call(proto, b.binop("-", b.load(n), b.lit(1))))),
    )
    return b.tu(b.function("factorial", INT, [n], body, node_id=fid))


class TestNodeTraversal:
    def test_children_follow_field_order(self):
        b = AstBuilder()
        x = b.var("x", INT)
        expr = b.binop("+", b.load(x), b.lit(2))
        kinds = [c.kind for c in expr.children()]
        assert kinds == ["cast", "integer_literal"]

    def test_walk_is_preorder(self):
        unit = _factorial_unit()
        kinds = [n.kind for n in unit.walk()]
        assert kinds[0] == "translation_unit"
        assert kinds[1] == "function"
        assert kinds.count("return") == 2

    def test_builder_ids_are_unique(self):
        unit = _factorial_unit()
        ids = [n.node_id for n in unit.walk()]
        assert 0 not in ids
        assert len(ids) == len(set(ids))

    def test_nodes_are_frozen(self):
        b = AstBuilder()
        lit = b.lit(3)
        with pytest.raises(ValidationError):
            lit.value = 4


class TestStripping:
    def test_strip_parens(self):
        b = AstBuilder()
        inner = b.lit(1)
        wrapped = b.node(ast.ParenExpr, inner=b.node(ast.ParenExpr, inner=inner), type=INT)
        assert ast.strip_parens(wrapped) is inner

    def test_strip_implicit_drops_value_preserving_casts(self):
        b = AstBuilder()
        x = b.var("x", INT)
        ref = b.ref(x)
        assert ast.strip_implicit(b.rvalue(ref)) is ref

    def test_strip_implicit_keeps_converting_casts(self):
        b = AstBuilder()
        cast = b.cast(ast.CastKind.INTEGRAL_CAST, b.lit(1), INT)
        assert ast.strip_implicit(cast) is cast


class TestJsonForm:
    def test_unit_round_trips_through_json(self):
        unit = _factorial_unit()
        restored = ast.TranslationUnit.model_validate_json(unit.model_dump_json())
        assert restored == unit

    def test_discriminator_selects_node_class(self):
        data = {
            "kind": "translation_unit",
            "file": "a.cpp",
            "decls": [{"kind": "var", "node_id": 1, "name": "g", "type": {"kind": "primitive", "name": "int"}}],
        }
        unit = ast.TranslationUnit.model_validate(data)
        assert isinstance(unit.decls[0], ast.VarDecl)
        assert unit.decls[0].type == INT

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            ast.TranslationUnit.model_validate({"kind": "translation_unit", "decls": [{"kind": "bogus"}]})


class TestResolvedTypes:
    def test_spelling(self):
        assert PointerType(pointee=INT, is_const=True).spelling() == "const int *"
        assert ArrayType(element=INT, length=4).spelling() == "int[4]"
        assert std_type("std::vector", INT).spelling() == "std::vector<int>"

    def test_record_id_through_pointer_and_reference(self):
        rec = RecordType(name="Dog", decl_id=7)
        assert record_id_of(PointerType(pointee=rec)) == 7
        assert record_id_of(ReferenceType(referent=rec)) == 7
        assert record_id_of(INT) is None

    def test_strip_reference(self):
        assert strip_reference(ReferenceType(referent=INT, is_const=True)) == INT
        assert strip_reference(INT) == INT

    def test_record_type_marks_polymorphic_records(self):
        b = AstBuilder()
        speak = b.node(ast.MethodDecl, name="speak", is_virtual=True, is_pure=True)
        animal = b.node(ast.RecordDecl, name="Animal", methods=[speak])
        plain = b.node(ast.RecordDecl, name="Point")
        assert record_type(animal).polymorphic
        assert not record_type(plain).polymorphic
        assert isinstance(std_type("std::string"), StdLibType)
