"""Tests for the emitter: type spelling, precedence, blocks, items and modules."""

from __future__ import annotations

import pytest

from transpiler.emitter import RustEmitter, emit_crate
from transpiler.target_ir import (
    UNIT,
    ArrayOf,
    Assign,
    Binary,
    Block,
    Call,
    Cast,
    DynFn,
    ExprStmt,
    FieldAccess,
    FnPtr,
    If,
    Let,
    Lit,
    Named,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    Ref,
    Return,
    RustConst,
    RustCrate,
    RustEnum,
    RustField,
    RustFunction,
    RustImpl,
    RustModule,
    RustParam,
    RustRecord,
    RustStruct,
    StructLit,
    TupleOf,
    Unary,
    Var,
    While,
)

I32 = Prim("i32")


def _emit(e) -> str:
    return RustEmitter().expr(e)


class TestTypes:
    def test_pointer_and_reference_spelling(self):
        em = RustEmitter()
        assert em.type(RawPtr(I32, mutable=False)) == "*const i32"
        assert em.type(RawPtr(I32)) == "*mut i32"
        assert em.type(Ref(I32, mutable=False)) == "&i32"
        assert em.type(Ref(I32)) == "&mut i32"

    def test_composite_spelling(self):
        em = RustEmitter()
        vec = Named(Path.external_path("Vec"), (I32,))
        assert em.type(vec) == "Vec<i32>"
        assert em.type(ArrayOf(I32, 3)) == "[i32; 3]"
        assert em.type(TupleOf((I32,))) == "(i32,)"
        assert em.type(UNIT) == "()"
        assert em.type(FnPtr((I32,), I32)) == "fn(i32) -> i32"
        assert em.type(DynFn((I32,))) == "Box<dyn FnMut(i32)>"

    def test_paths_are_relative_to_the_root_module(self):
        em = RustEmitter()
        assert em.type(Named(Path((), ("Dog",)))) == "Dog"
        assert em.type(Named(Path(("zoo",), ("Dog",)))) == "crate::zoo::Dog"


class TestPrecedence:
    def test_lower_precedence_operand_is_parenthesized(self):
        e = Binary("*", Binary("+", Var("a"), Var("b")), Var("c"))
        assert _emit(e) == "(a + b) * c"

    def test_higher_precedence_operand_is_not(self):
        e = Binary("+", Var("a"), Binary("*", Var("b"), Var("c")))
        assert _emit(e) == "a + b * c"

    def test_right_operand_of_same_level_is_parenthesized(self):
        e = Binary("-", Var("a"), Binary("-", Var("b"), Var("c")))
        assert _emit(e) == "a - (b - c)"

    def test_comparisons_do_not_chain(self):
        e = Binary("==", Binary("<", Var("a"), Var("b")), Lit("true"))
        assert _emit(e) == "(a < b) == true"

    def test_cast_before_less_than_is_wrapped(self):
        e = Binary("<", Cast(Var("i"), Prim("usize")), Var("n"))
        assert _emit(e) == "(i as usize) < n"

    def test_deref_of_field_access(self):
        assert _emit(FieldAccess(Unary("*", Var("p")), "x")) == "(*p).x"

    def test_negative_literal_binds_as_unary(self):
        assert _emit(Cast(Lit("-1"), Prim("u8"))) == "-1 as u8"

    def test_compound_assignment(self):
        assert _emit(Assign(Var("s"), Var("x"), "+=")) == "s += x"


class TestBlocks:
    def test_short_tail_only_block_is_inline(self):
        assert RustEmitter().block(Block(tail=Lit("1"))) == "{ 1 }"

    def test_empty_block(self):
        assert RustEmitter().block(Block()) == "{}"

    def test_statements_are_indented(self):
        block = Block(stmts=(Let("x", I32, Lit("1")), ExprStmt(Return(Var("x")))))
        assert RustEmitter().block(block) == "{\n    let mut x: i32 = 1;\n    return x;\n}"

    def test_unsafe_and_labelled_blocks(self):
        em = RustEmitter()
        assert em.block(Block(tail=Var("x"), unsafe=True)) == "unsafe { x }"
        loop = While(Lit("true"), Block(), label="'loop_0")
        assert _emit(loop) == "'loop_0: while true {}"

    def test_if_else_chain(self):
        e = If(Var("a"), Block(tail=Lit("1")), If(Var("b"), Block(tail=Lit("2")), Block(tail=Lit("3"))))
        assert _emit(e) == "if a { 1 } else if b { 2 } else { 3 }"

    def test_unsafe_branches_are_wrapped_in_a_plain_block(self):
        e = If(Var("a"), Block((ExprStmt(Var("x")),), unsafe=True), Block(tail=Var("y"), unsafe=True))
        assert _emit(e) == "if a {\n    unsafe {\n        x;\n    }\n} else { unsafe { y } }"

    def test_labelled_loop_body_is_wrapped(self):
        loop = While(Lit("true"), Block(tail=Var("x"), label="'cont_1"), label="'loop_0")
        assert _emit(loop) == "'loop_0: while true { 'cont_1: { x } }"

    def test_immutable_let_and_wildcard(self):
        em = RustEmitter()
        assert em.stmt(Let("y", None, Lit("2"), mutable=False)) == "let y = 2;"
        assert em.stmt(Let("_", None, Call(PathExpr(Path((), ("f",)))))) == "let _ = f();"


class TestItems:
    def test_function_signature(self):
        fn = RustFunction(
            name="add",
            params=(RustParam("a", I32, mutable=True), RustParam("b", Ref(I32, mutable=False))),
            ret=I32,
            body=Block(tail=Var("a")),
        )
        assert RustEmitter().function(fn) == "pub fn add(mut a: i32, b: &i32) -> i32 { a }"

    def test_method_receiver_and_attrs(self):
        fn = RustFunction(
            name="get",
            receiver="&self",
            ret=I32,
            body=Block(tail=FieldAccess(Var("self"), "x")),
            attrs=("#[inline]",),
        )
        assert RustEmitter().function(fn) == "#[inline]\npub fn get(&self) -> i32 { self.x }"

    def test_struct_and_impl(self):
        em = RustEmitter()
        struct = RustStruct("Point", (RustField("x", I32), RustField("y", I32)))
        assert em.struct(struct) == "#[repr(C)]\npub struct Point {\n    pub x: i32,\n    pub y: i32,\n}"
        impl = RustImpl("Point", (RustFunction("zero", ret=I32, body=Block(tail=Lit("0"))),))
        assert em.impl(impl) == "impl Point {\n    pub fn zero() -> i32 { 0 }\n}"
        assert em.impl(RustImpl("Point", (), trait="Copy")) == "impl Copy for Point {}"

    def test_enum_is_a_newtype_with_consts(self):
        enum = RustEnum("Color", I32, (("Red", Lit("0")), ("Green", Lit("1"))))
        text = RustEmitter().enum(enum)
        assert text.startswith("pub struct Color(pub i32);")
        assert "pub const Green: Color = Color(1);" in text

    def test_struct_literal_wraps_when_long(self):
        short = StructLit(Path((), ("P",)), (("x", Lit("1")),))
        assert _emit(short) == "P { x: 1 }"
        fields = tuple((f"field_{i}", Var(f"value_{i}")) for i in range(6))
        assert _emit(StructLit(Path((), ("P",)), fields)).startswith("P {\n    field_0: value_0,")

    def test_unknown_expression_raises(self):
        with pytest.raises(TypeError):
            RustEmitter().expr(object())


class TestCrate:
    def test_sections_and_nested_modules(self):
        root = RustModule(name="")
        root.functions.append(RustFunction("f", body=Block()))
        geo = root.child("geo")
        geo.functions.append(RustFunction("area", ret=I32, body=Block(tail=Lit("1"))))
        root.aliases.append(RustConst("K", I32, Lit("3")))
        text = emit_crate(RustCrate(root, header=("#![allow(dead_code)]",)))
        assert text.startswith("#![allow(dead_code)]\n\npub const K: i32 = 3;")
        assert "pub fn f() {}" in text
        assert "pub mod geo {\n    pub fn area() -> i32 { 1 }\n}" in text
        assert text.endswith("\n")

    def test_cross_module_paths_use_crate_prefix(self):
        root = RustModule(name="")
        geo = root.child("geo")
        call = Call(PathExpr(Path((), ("helper",))))
        geo.functions.append(RustFunction("f", body=Block(tail=call)))
        text = emit_crate(RustCrate(root))
        assert "crate::helper()" in text

    def test_records_come_before_functions(self):
        root = RustModule(name="")
        root.functions.append(RustFunction("f", body=Block()))
        root.records.append(RustRecord(RustStruct("A", ()), record_id=1))
        text = emit_crate(RustCrate(root))
        assert text.index("struct A") < text.index("fn f")
