"""End-to-end lowering tests: AST Model trees in, Rust source text out."""

from __future__ import annotations

import re

from transpiler import cpp_ast as ast
from transpiler.api import transpile_unit
from transpiler.ast_builder import AstBuilder, record_type, std_type
from transpiler.config import TranspileConfig
from transpiler.cpp_types import INT, ArrayType, FunctionType, OpaqueType, PointerType, RecordType, ReferenceType
from transpiler.diagnostics import DiagnosticKind


def _emit(unit: ast.TranslationUnit, **config) -> str:
    result = transpile_unit(unit, TranspileConfig(**config))
    assert result.ok, result.diagnostics
    return result.text


def _factorial(b: AstBuilder) -> tuple[ast.FunctionDecl, ast.FunctionDecl]:
    n = b.param("n", INT)
    fid = b.next_id()
    proto = b.function("factorial", INT, [n], node_id=fid)
    body = b.block(
        b.if_(b.binop("<=", b.load(n), b.lit(1)), b.ret(b.lit(1))),
        b.ret(b.binop("*", b.load(n), b.call(proto, b.binop("-", b.load(n), b.lit(1))))),
    )
    factorial = b.function("factorial", INT, [n], body, node_id=fid)
    main = b.function("main", INT, [], b.block(b.ret(b.call(proto, b.lit(5)))))
    return factorial, main


def _animal_hierarchy(b: AstBuilder):
    speak = b.node(
        ast.MethodDecl, name="speak", return_type=INT, is_virtual=True, is_pure=True, is_const=True
    )
    dtor = b.node(ast.DestructorDecl, body=b.block(), is_virtual=True)
    animal = b.node(ast.RecordDecl, name="Animal", tag="class", methods=[speak], destructor=dtor)
    bark = b.node(
        ast.MethodDecl,
        name="speak",
        return_type=INT,
        is_virtual=True,
        is_const=True,
        body=b.block(b.ret(b.lit(1))),
    )
    dog = b.node(ast.RecordDecl, name="Dog", tag="class", bases=[b.base(animal)], methods=[bark])
    a = b.param("a", ReferenceType(referent=record_type(animal), is_const=True))
    talk = b.function(
        "talk", INT, [a], b.block(b.ret(b.method_call(b.ref(a), speak, animal)))
    )
    return animal, dog, talk


def _upcast(b: AstBuilder, base: ast.RecordDecl, derived: ast.RecordDecl, const: bool = False):
    p = b.param("p", PointerType(pointee=record_type(derived), is_const=const))
    base_ptr = PointerType(pointee=record_type(base), is_const=const)
    body = b.block(b.ret(b.cast(ast.CastKind.DERIVED_TO_BASE, b.load(p), base_ptr)))
    return b.function("up", base_ptr, [p], body)


class TestFreeFunctions:
    def test_recursive_factorial(self):
        b = AstBuilder()
        text = _emit(b.tu(*_factorial(b)))
        assert "pub fn factorial(mut n: i32) -> i32 {" in text
        assert "if n <= 1 {\n        return 1;\n    }" in text
        assert "return n * factorial(n - 1);" in text

    def test_main_is_wrapped(self):
        b = AstBuilder()
        text = _emit(b.tu(*_factorial(b)))
        assert "pub fn cpp_main() -> i32 {" in text
        assert "return factorial(5);" in text
        assert "pub fn __init_globals() {}" in text
        assert "__init_globals();" in text
        assert "std::process::exit(cpp_main());" in text
        assert text.startswith("#![allow(dead_code,")

    def test_main_wrapper_can_be_disabled(self):
        b = AstBuilder()
        text = _emit(b.tu(*_factorial(b)), emit_main_wrapper=False)
        assert "std::process::exit" not in text
        assert "pub fn cpp_main() -> i32" in text

    def test_stubs_only_keeps_signatures(self):
        b = AstBuilder()
        text = _emit(b.tu(*_factorial(b)), stubs_only=True)
        assert "pub fn factorial(mut n: i32) -> i32 { unimplemented!() }" in text
        assert "return n * factorial" not in text

    def test_array_sum_loop(self):
        b = AstBuilder()
        arr_t = ArrayType(element=INT, length=3)
        init = b.node(ast.InitListExpr, inits=[b.lit(1), b.lit(2), b.lit(3)], type=arr_t)
        a = b.var("a", arr_t, init)
        s = b.var("s", INT, b.lit(0))
        i = b.var("i", INT, b.lit(0))
        element = b.node(
            ast.ArraySubscriptExpr,
            base=b.cast(ast.CastKind.ARRAY_TO_POINTER_DECAY, b.ref(a), PointerType(pointee=INT)),
            index=b.load(i),
            type=INT,
        )
        loop = b.node(
            ast.ForStmt,
            init=b.decl_stmt(i),
            cond=b.binop("<", b.load(i), b.lit(3)),
            inc=b.unop("++", b.ref(i)),
            body=b.block(b.expr_stmt(b.assign(b.ref(s), b.rvalue(element), "+="))),
        )
        sum_fn = b.function("sum", INT, [], b.block(b.decl_stmt(a), b.decl_stmt(s), loop, b.ret(b.load(s))))
        text = _emit(b.tu(sum_fn))
        assert "let mut a: [i32; 3] = [1, 2, 3];" in text
        assert "'loop_0: while i < 3 {" in text
        assert "s += a[i as usize];" in text
        assert "i += 1;" in text
        assert "return s;" in text

    def test_variadic_definition_is_skipped(self):
        b = AstBuilder()
        log = b.function("log", INT, [], b.block(b.ret(b.lit(0))), is_variadic=True)
        keep = b.function("keep", INT, [], b.block(b.ret(b.lit(2))))
        result = transpile_unit(b.tu(log, keep))
        assert result.ok
        assert "fn log" not in result.text
        assert "pub fn keep() -> i32" in result.text
        (diagnostic,) = result.diagnostics
        assert diagnostic.kind == DiagnosticKind.UNSUPPORTED_CONSTRUCT
        assert diagnostic.declaration == "log"

    def test_prototype_only_function_is_extern(self):
        b = AstBuilder()
        puts = b.function("puts", INT, [b.param("s", PointerType(pointee=INT, is_const=True))])
        text = _emit(b.tu(puts))
        assert 'extern "C" {' in text
        assert "pub fn puts(s: *const i32) -> i32;" in text


class TestRecords:
    def test_virtual_dispatch_through_reference(self):
        b = AstBuilder()
        text = _emit(b.tu(*_animal_hierarchy(b)))
        assert "pub __vptr: *const fragile_rt::VSlot," in text
        assert "pub __base_Animal: std::mem::ManuallyDrop<Animal>," in text
        assert "pub static __VTABLE_Dog_0: [fragile_rt::VSlot; 2]" in text
        assert "fragile_rt::VSlot::new(Dog::__vthunk_Dog_0_0 as *const ())" in text
        assert "pub fn talk(a: &Animal) -> i32 {" in text
        assert "fragile_rt::vcall::<unsafe fn(*mut std::ffi::c_void) -> i32>(" in text
        assert "__vptr, 0)" in text

    def test_output_is_repeatable(self):
        b = AstBuilder()
        unit = b.tu(*_animal_hierarchy(b))
        first = transpile_unit(unit)
        second = transpile_unit(unit)
        assert first.text == second.text
        assert first.diagnostics == second.diagnostics

    def test_pointer_upcast_casts_the_base_field_address(self):
        b = AstBuilder()
        animal, dog, _ = _animal_hierarchy(b)
        text = _emit(b.tu(animal, dog, _upcast(b, animal, dog)))
        assert "std::ptr::addr_of_mut!((*p).__base_Animal) as *mut Animal" in text
        assert "*(*p).__base_Animal" not in text

    def test_const_pointer_upcast(self):
        b = AstBuilder()
        animal, dog, _ = _animal_hierarchy(b)
        text = _emit(b.tu(animal, dog, _upcast(b, animal, dog, const=True)))
        assert "std::ptr::addr_of!((*p).__base_Animal) as *const Animal" in text

    def test_upcast_through_two_levels(self):
        b = AstBuilder()
        animal, dog, _ = _animal_hierarchy(b)
        puppy = b.node(ast.RecordDecl, name="Puppy", tag="class", bases=[b.base(dog)])
        text = _emit(b.tu(animal, dog, puppy, _upcast(b, animal, puppy)))
        inner = "std::ptr::addr_of_mut!((*p).__base_Dog) as *mut Dog"
        assert f"std::ptr::addr_of_mut!((*({inner})).__base_Animal) as *mut Animal" in text

    def test_subscript_read_uses_the_const_overload(self):
        b = AstBuilder()
        rid = b.next_id()
        bag_t = RecordType(name="Bag", decl_id=rid)

        def subscript(const: bool) -> ast.MethodDecl:
            element = b.node(
                ast.MemberExpr, base=b.this(bag_t), member="x", is_arrow=True, record_id=rid, type=INT
            )
            return b.node(
                ast.MethodDecl,
                name="operator[]",
                operator="[]",
                return_type=ReferenceType(referent=INT, is_const=const),
                params=[b.param("i", INT)],
                is_const=const,
                body=b.block(b.ret(element)),
            )

        writable, readable = subscript(False), subscript(True)
        bag = b.node(
            ast.RecordDecl, name="Bag", node_id=rid, fields=[b.field("x", INT)], methods=[writable, readable]
        )
        param = b.param("bag", ReferenceType(referent=bag_t))

        def at():
            return b.node(
                ast.OperatorCallExpr,
                operator="[]",
                method_id=writable.node_id,
                args=[b.ref(param), b.lit(0)],
                type=INT,
            )

        body = b.block(b.expr_stmt(b.assign(at(), b.lit(5))), b.ret(b.rvalue(at())))
        text = _emit(b.tu(bag, b.function("poke", INT, [param], body)))
        assert ".index_mut(0) = 5;" in text
        assert ".index(0)" in text

    def test_virtual_base_diamond_branches_are_plain_blocks(self):
        b = AstBuilder()
        v = b.node(ast.RecordDecl, name="V", fields=[b.field("v", INT)])
        left = b.node(ast.RecordDecl, name="L", bases=[b.base(v, virtual=True)], fields=[b.field("l", INT)])
        right = b.node(ast.RecordDecl, name="R", bases=[b.base(v, virtual=True)], fields=[b.field("r", INT)])
        d = b.node(ast.RecordDecl, name="D", bases=[b.base(left), b.base(right)], fields=[b.field("d", INT)])
        text = _emit(b.tu(v, left, right, d))
        assert text.count("pub __vstore_V:") == 3
        assert "if !self.__vstore_V.is_null() {" in text
        assert re.search(r"(\bif [^\n{]*|\belse) unsafe \{", text) is None

    def test_base_is_emitted_before_derived(self):
        b = AstBuilder()
        animal, dog, talk = _animal_hierarchy(b)
        text = _emit(b.tu(dog, animal, talk))
        assert text.index("pub struct Animal") < text.index("pub struct Dog")

    def test_generated_impls(self):
        b = AstBuilder()
        point = b.node(ast.RecordDecl, name="Point", fields=[b.field("x", INT)])
        text = _emit(b.tu(point))
        assert "#[repr(C)]\npub struct Point {\n    pub x: i32,\n}" in text
        assert "pub fn new() -> Point {" in text
        assert "impl Drop for Point {" in text
        assert "impl Clone for Point {" in text
        assert "impl Default for Point {" in text
        assert "pub fn __destroy(&mut self)" in text

    def test_unique_ptr_member_access(self):
        b = AstBuilder()
        x = b.field("x", INT)
        point = b.node(ast.RecordDecl, name="Point", fields=[x])
        ptr_t = std_type("std::unique_ptr", record_type(point))
        make = b.node(
            ast.CallExpr,
            callee=b.node(
                ast.DeclRefExpr, name="std::make_unique", type=FunctionType(result=ptr_t)
            ),
            type=ptr_t,
        )
        p = b.var("p", ptr_t, make)

        def arrow():
            target = b.node(
                ast.OperatorCallExpr,
                operator="->",
                args=[b.ref(p)],
                type=PointerType(pointee=record_type(point)),
            )
            return b.member(target, x, point, arrow=True)

        body = b.block(
            b.decl_stmt(p),
            b.expr_stmt(b.assign(arrow(), b.lit(5))),
            b.ret(b.rvalue(arrow())),
        )
        text = _emit(b.tu(point, b.function("run", INT, [], body)))
        assert "let mut p: Box<Point> = Box::new(Point::new());" in text
        assert "(*p).x = 5;" in text
        assert "return (*p).x;" in text

    def test_weak_ptr_member_access_is_reported(self):
        b = AstBuilder()
        x = b.field("x", INT)
        point = b.node(ast.RecordDecl, name="Point", fields=[x])
        w = b.param("w", std_type("std::weak_ptr", record_type(point)))
        target = b.node(
            ast.OperatorCallExpr,
            operator="->",
            args=[b.ref(w)],
            type=PointerType(pointee=record_type(point)),
        )
        peek = b.function("peek", INT, [w], b.block(b.ret(b.rvalue(b.member(target, x, point, arrow=True)))))
        result = transpile_unit(b.tu(point, peek))
        assert result.ok
        assert "fn peek" not in result.text
        assert any(
            d.declaration == "peek" and "weak_ptr without lock()" in d.message for d in result.diagnostics
        )

    def test_unmapped_field_type_degrades(self):
        b = AstBuilder()
        rec = b.node(ast.RecordDecl, name="Holder", fields=[b.field("h", OpaqueType(text="FILE"))])
        result = transpile_unit(b.tu(rec))
        assert result.ok
        assert "fragile_rt::Opaque" in result.text
        kinds = {d.kind for d in result.diagnostics}
        assert DiagnosticKind.TYPE_MAPPING_FALLBACK in kinds

    def test_by_value_cycle_fails_only_this_unit(self):
        b = AstBuilder()
        aid, bid = b.next_id(), b.next_id()
        rec_a = b.node(
            ast.RecordDecl, name="A", node_id=aid, fields=[b.field("b", RecordType(name="B", decl_id=bid))]
        )
        rec_b = b.node(
            ast.RecordDecl, name="B", node_id=bid, fields=[b.field("a", RecordType(name="A", decl_id=aid))]
        )
        result = transpile_unit(b.tu(rec_a, rec_b))
        assert result.fatal
        assert result.text is None
        assert any(d.kind == DiagnosticKind.EMISSION_ORDERING_FAILURE for d in result.diagnostics)

    def test_enum_is_a_transparent_newtype(self):
        b = AstBuilder()
        red = b.node(ast.Enumerator, name="Red", value=0)
        green = b.node(ast.Enumerator, name="Green", value=1)
        color = b.node(ast.EnumDecl, name="Color", enumerators=[red, green])
        text = _emit(b.tu(color))
        assert "#[repr(transparent)]" in text
        assert "pub struct Color(pub i32);" in text
        assert "pub const Green: Color = Color(1);" in text


class TestGlobalsAndNamespaces:
    def test_mutable_global_gets_a_slot_and_accessor(self):
        b = AstBuilder()
        counter = b.var("counter", INT, b.lit(3))
        main = b.function("main", INT, [], b.block(b.ret(b.load(counter))))
        text = _emit(b.tu(counter, main))
        assert "static __G_counter: fragile_rt::GlobalSlot<i32> = fragile_rt::GlobalSlot::new();" in text
        assert "pub fn counter() -> *mut i32" in text
        assert "__G_counter.get_or_init(" in text
        assert "let _ = counter();" in text
        assert "unsafe { *counter() }" in text

    def test_literal_const_becomes_a_rust_const(self):
        b = AstBuilder()
        k = b.var("kMax", INT, b.lit(10), is_const=True)
        text = _emit(b.tu(k))
        assert "pub const kMax: i32 = 10;" in text
        assert "__init_globals" not in text

    def test_namespace_becomes_a_module(self):
        b = AstBuilder()
        area = b.function("area", INT, [], b.block(b.ret(b.lit(1))))
        geo = b.node(ast.NamespaceDecl, name="geo", decls=[area])
        user = b.function("use_area", INT, [], b.block(b.ret(b.call(area))))
        text = _emit(b.tu(geo, user))
        assert "pub mod geo {" in text
        assert "return crate::geo::area();" in text
