"""Tests for parsing clang type spellings into ResolvedType."""

from __future__ import annotations

import pytest

from transpiler.cpp_types import (
    CHAR,
    DOUBLE,
    INT,
    UNSIGNED_LONG,
    ArrayType,
    AutoParamType,
    ClosureType,
    EnumType,
    FunctionType,
    OpaqueType,
    PointerType,
    PrimitiveKind,
    RecordType,
    ReferenceType,
    StdLibType,
    primitive,
)
from transpiler.diagnostics import FrontendError
from transpiler.qualtype import QualTypeParser, TypeRegistry, is_const_qualified, tokenize


def _parse(text: str, registry: TypeRegistry | None = None, auto_index: int | None = None):
    return QualTypeParser(registry or TypeRegistry()).parse(text, auto_index)


class TestBuiltins:
    def test_multiword_integers(self):
        assert _parse("long long") == primitive(PrimitiveKind.LONG_LONG)
        assert _parse("unsigned long long") == primitive(PrimitiveKind.UNSIGNED_LONG_LONG)
        assert _parse("unsigned char") == primitive(PrimitiveKind.UNSIGNED_CHAR)
        assert _parse("char") == CHAR

    def test_library_typedefs(self):
        assert _parse("size_t") == UNSIGNED_LONG
        assert _parse("std::size_t") == UNSIGNED_LONG
        assert _parse("int32_t") == INT


class TestDeclarators:
    def test_pointer_to_const(self):
        assert _parse("const int *") == PointerType(pointee=INT, is_const=True)

    def test_const_pointer(self):
        assert _parse("int *const") == PointerType(pointee=INT, is_const=False)

    def test_const_reference_to_vector(self):
        assert _parse("const std::vector<int> &") == ReferenceType(
            referent=StdLibType(template="std::vector", args=[INT]), is_const=True
        )

    def test_rvalue_reference(self):
        assert _parse("int &&") == ReferenceType(referent=INT, is_rvalue=True)

    def test_function_pointer(self):
        assert _parse("int (*)(double)") == PointerType(
            pointee=FunctionType(result=INT, params=[DOUBLE])
        )

    def test_array(self):
        assert _parse("int [4]") == ArrayType(element=INT, length=4)

    def test_variadic_function(self):
        assert _parse("int (int, ...)") == FunctionType(result=INT, params=[INT], is_variadic=True)

    def test_void_parameter_list(self):
        assert _parse("void (void)") == FunctionType(result=primitive(PrimitiveKind.VOID))


class TestStdlib:
    def test_defaulted_allocator_is_dropped(self):
        assert _parse("std::vector<int, std::allocator<int> >") == StdLibType(
            template="std::vector", args=[INT]
        )

    def test_inline_namespace_string(self):
        text = "std::__1::basic_string<char, std::__1::char_traits<char>, std::__1::allocator<char> >"
        assert _parse(text) == StdLibType(template="std::string")

    def test_member_of_specialization_is_opaque(self):
        t = _parse("std::vector<int>::size_type")
        assert isinstance(t, OpaqueType)
        assert t.text.endswith("::size_type")


class TestNamedTypes:
    def test_record_by_unique_tail(self):
        registry = TypeRegistry()
        registry.add_record("geo::Point", 7, False)
        assert _parse("Point", registry) == RecordType(name="Point", decl_id=7)
        assert _parse("struct geo::Point", registry) == RecordType(name="geo::Point", decl_id=7)

    def test_ambiguous_tail_is_opaque(self):
        registry = TypeRegistry()
        registry.add_record("a::P", 1, False)
        registry.add_record("b::P", 2, False)
        assert _parse("P", registry) == OpaqueType(text="P")

    def test_enum(self):
        registry = TypeRegistry()
        registry.add_enum("Color", 3)
        assert _parse("Color", registry) == EnumType(name="Color", decl_id=3)

    def test_unknown_name_is_opaque(self):
        assert _parse("FILE *") == PointerType(pointee=OpaqueType(text="FILE"))

    def test_lambda_type(self):
        registry = TypeRegistry()
        spelling = "(lambda at /tmp/a.cpp:3:5)"
        registry.lambdas[spelling] = 9
        assert _parse(spelling, registry) == ClosureType(lambda_id=9)
        assert _parse("(lambda at /tmp/a.cpp:8:1)", registry) == OpaqueType(
            text="(lambda at /tmp/a.cpp:8:1)"
        )

    def test_auto_parameters(self):
        assert _parse("auto", auto_index=2) == AutoParamType(index=2)
        assert _parse("auto:1") == AutoParamType(index=0)
        assert _parse("const auto &", auto_index=1) == ReferenceType(
            referent=AutoParamType(index=1), is_const=True
        )


class TestErrors:
    def test_unknown_character(self):
        with pytest.raises(FrontendError, match="cannot parse"):
            tokenize("int @")

    def test_trailing_tokens(self):
        with pytest.raises(FrontendError, match="trailing tokens"):
            _parse("int )")

    def test_missing_type_name(self):
        with pytest.raises(FrontendError, match="missing type name"):
            _parse("*")


class TestConstQualified:
    def test_outermost_const(self):
        assert is_const_qualified("const int")
        assert not is_const_qualified("const int *")
        assert is_const_qualified("int *const")
        assert not is_const_qualified("int")
