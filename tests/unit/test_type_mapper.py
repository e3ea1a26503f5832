"""Tests for the Type Mapper: C++ resolved types to Rust types."""

from __future__ import annotations

from transpiler.ast_builder import AstBuilder, record_type, std_type
from transpiler import cpp_ast as ast
from transpiler.cpp_types import (
    BOOL,
    DOUBLE,
    INT,
    UNSIGNED_LONG,
    VOID,
    ArrayType,
    FunctionType,
    OpaqueType,
    PointerType,
    RecordType,
    ReferenceType,
)
from transpiler.diagnostics import DiagnosticKind, DiagnosticSink
from transpiler.symbols import SymbolIndex
from transpiler.target_ir import (
    UNIT,
    ArrayOf,
    Call,
    DynFn,
    FnPtr,
    Lit,
    Named,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    Ref,
    TupleOf,
)
from transpiler.type_mapper import C_VOID, TypeMapper, TypePosition, map_type, normalize_template

I32 = Prim("i32")


class TestPrimitives:
    def test_fixed_width_mapping(self):
        assert map_type(INT) == I32
        assert map_type(UNSIGNED_LONG) == Prim("u64")
        assert map_type(DOUBLE) == Prim("f64")
        assert map_type(BOOL) == Prim("bool")

    def test_void_is_unit(self):
        assert map_type(VOID) == UNIT


class TestPointersAndReferences:
    def test_pointer_constness(self):
        assert map_type(PointerType(pointee=INT)) == RawPtr(I32, mutable=True)
        assert map_type(PointerType(pointee=INT, is_const=True)) == RawPtr(I32, mutable=False)

    def test_void_pointer(self):
        assert map_type(PointerType(pointee=VOID)) == RawPtr(C_VOID, mutable=True)

    def test_function_pointer(self):
        fn = FunctionType(result=INT, params=[INT])
        assert map_type(PointerType(pointee=fn)) == FnPtr((I32,), I32)

    def test_reference_borrows_in_params_and_locals(self):
        ref = ReferenceType(referent=INT, is_const=True)
        assert map_type(ref, TypePosition.PARAM) == Ref(I32, mutable=False)
        assert map_type(ReferenceType(referent=INT), TypePosition.LOCAL) == Ref(I32, mutable=True)

    def test_reference_field_is_a_raw_pointer(self):
        assert map_type(ReferenceType(referent=INT), TypePosition.FIELD) == RawPtr(I32, True)


class TestAggregates:
    def test_fixed_array(self):
        assert map_type(ArrayType(element=INT, length=4)) == ArrayOf(I32, 4)

    def test_unsized_array_decays(self):
        assert map_type(ArrayType(element=INT)) == RawPtr(I32, mutable=True)

    def test_record_without_index_uses_its_cpp_path(self):
        t = RecordType(name="geo::Point", decl_id=3)
        assert map_type(t) == Named(Path(("geo",), ("Point",)))

    def test_record_with_index_uses_lowered_name(self):
        b = AstBuilder()
        point = b.node(ast.RecordDecl, name="Point", fields=[b.field("x", INT)])
        index = SymbolIndex.build(b.tu(point))
        mapped = TypeMapper(index).map_type(record_type(point))
        assert mapped == Named(index.record_path(point.node_id))


class TestStdlib:
    def test_containers(self):
        assert map_type(std_type("std::vector", INT)) == Named(Path.external_path("Vec"), (I32,))
        assert map_type(std_type("std::string")) == Named(Path.external_path("String"))
        m = map_type(std_type("std::map", INT, DOUBLE))
        assert m == Named(Path.external_path("std::collections::BTreeMap"), (I32, Prim("f64")))

    def test_smart_pointers(self):
        assert map_type(std_type("std::unique_ptr", INT)) == Named(Path.external_path("Box"), (I32,))
        arc = map_type(std_type("std::shared_ptr", INT))
        assert arc == Named(Path.external_path("std::sync::Arc"), (I32,))

    def test_pair_and_function(self):
        assert map_type(std_type("std::pair", INT, BOOL)) == TupleOf((I32, Prim("bool")))
        fn = std_type("std::function", FunctionType(result=VOID, params=[INT]))
        assert map_type(fn) == DynFn((I32,), None)

    def test_inline_namespaces_are_normalized(self):
        assert normalize_template("std::__1::vector") == "std::vector"
        assert normalize_template("vector") == "std::vector"


class TestFallback:
    def test_unknown_template_degrades_and_reports(self):
        sink = DiagnosticSink()
        mapper = TypeMapper(sink=sink)
        mapped = mapper.map_type(std_type("std::tuple", INT))
        assert mapped == Named(Path.external_path("fragile_rt::Opaque"))
        assert [d.kind for d in sink.items] == [DiagnosticKind.TYPE_MAPPING_FALLBACK]
        assert "std::tuple<int>" in sink.items[0].message

    def test_sized_opaque_becomes_byte_array(self):
        sink = DiagnosticSink()
        mapped = TypeMapper(sink=sink).map_type(OpaqueType(text="struct stat", size=144))
        assert mapped == ArrayOf(Prim("u8"), 144)
        assert len(sink) == 1

    def test_runtime_crate_name_is_configurable(self):
        mapper = TypeMapper(runtime="my_rt")
        assert mapper.map_type(OpaqueType(text="X")) == Named(Path.external_path("my_rt::Opaque"))


class TestValueProperties:
    def test_is_copy(self):
        mapper = TypeMapper()
        assert mapper.is_copy(INT)
        assert mapper.is_copy(PointerType(pointee=INT))
        assert mapper.is_copy(ReferenceType(referent=INT, is_const=True))
        assert not mapper.is_copy(std_type("std::string"))
        assert mapper.is_copy(ArrayType(element=INT, length=3))
        assert not mapper.is_copy(ArrayType(element=std_type("std::string"), length=3))

    def test_needs_drop(self):
        mapper = TypeMapper()
        assert mapper.needs_drop(std_type("std::vector", INT))
        assert not mapper.needs_drop(INT)
        assert not mapper.needs_drop(ReferenceType(referent=std_type("std::string")))

    def test_default_values(self):
        mapper = TypeMapper()
        assert mapper.default_value(INT) == Lit("0")
        assert mapper.default_value(BOOL) == Lit("false")
        assert mapper.default_value(DOUBLE) == Lit("0.0")
        assert mapper.default_value(ArrayType(element=INT, length=3)) == Lit("[0; 3]")
        null = Call(PathExpr(Path.external_path("std::ptr::null_mut")))
        assert mapper.default_value(PointerType(pointee=INT)) == null

    def test_unique_ptr_default_boxes_the_pointee_default(self):
        boxed = TypeMapper().default_value(std_type("std::unique_ptr", INT))
        assert boxed == Call(PathExpr(Path.external_path("Box::new")), (Lit("0"),))
