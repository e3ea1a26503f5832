"""Tests for the symbol index: Rust naming, overloads and name resolution."""

from __future__ import annotations

from transpiler import cpp_ast as ast
from transpiler.ast_builder import AstBuilder
from transpiler.cpp_types import DOUBLE, INT
from transpiler.symbols import SymbolIndex, SymbolKind, sanitize_ident
from transpiler.target_ir import Path


class TestSanitize:
    def test_keywords(self):
        assert sanitize_ident("match") == "r#match"
        assert sanitize_ident("self") == "self_"
        assert sanitize_ident("count") == "count"
        assert sanitize_ident("") == "_"


class TestFunctionNames:
    def test_overloads_get_numbered_names(self):
        b = AstBuilder()
        f1 = b.function("f", INT, [b.param("x", INT)], b.block())
        f2 = b.function("f", INT, [b.param("x", DOUBLE)], b.block())
        index = SymbolIndex.build(b.tu(f1, f2))
        assert index.get(f1.node_id).rust_name == "f"
        assert index.get(f2.node_id).rust_name == "f_1"

    def test_main_is_renamed(self):
        b = AstBuilder()
        main = b.function("main", INT, [], b.block())
        index = SymbolIndex.build(b.tu(main))
        assert index.get(main.node_id).rust_name == "cpp_main"

    def test_free_operator(self):
        b = AstBuilder()
        op = b.function("operator+", INT, [b.param("a", INT), b.param("b", INT)], b.block())
        index = SymbolIndex.build(b.tu(op))
        assert index.get(op.node_id).rust_name == "op_add"

    def test_prototype_and_definition_share_a_symbol(self):
        b = AstBuilder()
        proto = b.function("g", INT)
        definition = b.function("g", INT, [], b.block(), canonical_id=proto.node_id)
        index = SymbolIndex.build(b.tu(proto, definition))
        sym = index.get(definition.node_id)
        assert sym is index.get(proto.node_id)
        assert sym.decl is definition


class TestRecordMembers:
    def test_constructor_names(self):
        b = AstBuilder()
        default = b.node(ast.ConstructorDecl, ctor_kind=ast.CtorKind.DEFAULT)
        copy = b.node(
            ast.ConstructorDecl, params=[b.param("o", INT)], ctor_kind=ast.CtorKind.COPY
        )
        two = b.node(ast.ConstructorDecl, params=[b.param("x", INT), b.param("y", INT)])
        point = b.node(ast.RecordDecl, name="Point", constructors=[default, copy, two])
        index = SymbolIndex.build(b.tu(point))
        names = {c.rust_name for c in index.constructors(point.node_id)}
        assert names == {"new", "new_copy", "new_2"}
        assert index.copy_constructor(point.node_id).decl is copy
        assert index.has_default_constructor(point.node_id)

    def test_methods_are_owned_by_their_record(self):
        b = AstBuilder()
        area = b.node(ast.MethodDecl, name="area", return_type=INT)
        shape = b.node(ast.RecordDecl, name="Shape", methods=[area])
        index = SymbolIndex.build(b.tu(shape))
        sym = index.get(area.node_id)
        assert sym.kind == SymbolKind.METHOD
        assert sym.path == Path((), ("Shape", "area"))
        assert index.method_owner(area.node_id) is shape

    def test_nested_record_is_prefixed(self):
        b = AstBuilder()
        inner = b.node(ast.RecordDecl, name="Inner")
        outer = b.node(ast.RecordDecl, name="Outer", nested=[inner])
        index = SymbolIndex.build(b.tu(outer))
        assert index.record_name(inner.node_id) == "Outer_Inner"

    def test_forward_declaration_is_not_a_record(self):
        b = AstBuilder()
        fwd = b.node(ast.RecordDecl, name="Later", is_definition=False)
        index = SymbolIndex.build(b.tu(fwd))
        assert index.record(fwd.node_id) is None


class TestGlobals:
    def test_literal_const_is_a_constant(self):
        b = AstBuilder()
        k = b.var("kMax", INT, b.lit(10), is_const=True)
        g = b.var("counter", INT, b.lit(0))
        index = SymbolIndex.build(b.tu(k, g))
        assert index.get(k.node_id).kind == SymbolKind.CONSTANT
        assert index.get(g.node_id).kind == SymbolKind.GLOBAL


class TestResolution:
    def test_qualified_and_unqualified_lookup(self):
        b = AstBuilder()
        area = b.function("area", INT, [], b.block())
        geo = b.node(ast.NamespaceDecl, name="geo", decls=[area])
        using = b.node(ast.UsingDirective, namespace="geo")
        index = SymbolIndex.build(b.tu(geo, using))
        root = index.scopes.root
        assert index.resolve_name("geo::area", root, 0).decl_id == area.node_id
        assert index.resolve_name("area", root, 1) is None
        assert index.resolve_name("area", root, 100).decl_id == area.node_id
        assert index.get(area.node_id).module == ("geo",)
