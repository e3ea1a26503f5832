"""Resolved C++ types as delivered by the front end.

Every expression node in the AST Model carries exactly one of these.  Record
and enum types refer to their declaration by identity (``decl_id``); the
record's fields and bases live on the declaration itself, which keeps
self-referential types finite.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class PrimitiveKind(str, Enum):
    VOID = "void"
    BOOL = "bool"
    CHAR = "char"
    SIGNED_CHAR = "signed char"
    UNSIGNED_CHAR = "unsigned char"
    SHORT = "short"
    UNSIGNED_SHORT = "unsigned short"
    INT = "int"
    UNSIGNED_INT = "unsigned int"
    LONG = "long"
    UNSIGNED_LONG = "unsigned long"
    LONG_LONG = "long long"
    UNSIGNED_LONG_LONG = "unsigned long long"
    FLOAT = "float"
    DOUBLE = "double"
    LONG_DOUBLE = "long double"
    NULLPTR = "std::nullptr_t"


_INTEGRAL_KINDS = frozenset(
    {
        PrimitiveKind.BOOL,
        PrimitiveKind.CHAR,
        PrimitiveKind.SIGNED_CHAR,
        PrimitiveKind.UNSIGNED_CHAR,
        PrimitiveKind.SHORT,
        PrimitiveKind.UNSIGNED_SHORT,
        PrimitiveKind.INT,
        PrimitiveKind.UNSIGNED_INT,
        PrimitiveKind.LONG,
        PrimitiveKind.UNSIGNED_LONG,
        PrimitiveKind.LONG_LONG,
        PrimitiveKind.UNSIGNED_LONG_LONG,
    }
)

_FLOATING_KINDS = frozenset(
    {PrimitiveKind.FLOAT, PrimitiveKind.DOUBLE, PrimitiveKind.LONG_DOUBLE}
)


class _TypeBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    def spelling(self) -> str:
        raise NotImplementedError


class PrimitiveType(_TypeBase):
    kind: Literal["primitive"] = "primitive"
    name: PrimitiveKind

    def spelling(self) -> str:
        return self.name.value


class PointerType(_TypeBase):
    """``T*``; ``is_const`` marks a pointer-to-const."""

    kind: Literal["pointer"] = "pointer"
    pointee: ResolvedType
    is_const: bool = False

    def spelling(self) -> str:
        prefix = "const " if self.is_const else ""
        return f"{prefix}{self.pointee.spelling()} *"


class ReferenceType(_TypeBase):
    kind: Literal["reference"] = "reference"
    referent: ResolvedType
    is_const: bool = False
    is_rvalue: bool = False

    def spelling(self) -> str:
        prefix = "const " if self.is_const else ""
        suffix = "&&" if self.is_rvalue else "&"
        return f"{prefix}{self.referent.spelling()} {suffix}"


class ArrayType(_TypeBase):
    """``T[N]``; ``length`` is None for ``T[]``."""

    kind: Literal["array"] = "array"
    element: ResolvedType
    length: int | None = None

    def spelling(self) -> str:
        n = "" if self.length is None else str(self.length)
        return f"{self.element.spelling()}[{n}]"


class RecordType(_TypeBase):
    kind: Literal["record"] = "record"
    name: str
    decl_id: int
    polymorphic: bool = False

    def spelling(self) -> str:
        return self.name


class EnumType(_TypeBase):
    kind: Literal["enum"] = "enum"
    name: str
    decl_id: int

    def spelling(self) -> str:
        return self.name


class StdLibType(_TypeBase):
    """A standard library template specialization, e.g. ``std::vector<int>``."""

    kind: Literal["stdlib"] = "stdlib"
    template: str
    args: list[ResolvedType] = []

    def spelling(self) -> str:
        if not self.args:
            return self.template
        inner = ", ".join(a.spelling() for a in self.args)
        return f"{self.template}<{inner}>"


class FunctionType(_TypeBase):
    kind: Literal["function"] = "function"
    result: ResolvedType
    params: list[ResolvedType] = []
    is_variadic: bool = False

    def spelling(self) -> str:
        params = ", ".join(p.spelling() for p in self.params)
        if self.is_variadic:
            params = f"{params}, ..." if params else "..."
        return f"{self.result.spelling()} ({params})"


class ClosureType(_TypeBase):
    """The unnamed class of a lambda expression."""

    kind: Literal["closure"] = "closure"
    lambda_id: int

    def spelling(self) -> str:
        return f"(lambda #{self.lambda_id})"


class AutoParamType(_TypeBase):
    """Placeholder for the ``auto`` parameter ``index`` of a generic lambda."""

    kind: Literal["auto_param"] = "auto_param"
    index: int

    def spelling(self) -> str:
        return f"auto:{self.index}"


class OpaqueType(_TypeBase):
    """A type the front end could describe only by its spelling."""

    kind: Literal["opaque"] = "opaque"
    text: str
    size: int | None = None

    def spelling(self) -> str:
        return self.text


ResolvedType = Annotated[
    Union[
        PrimitiveType,
        PointerType,
        ReferenceType,
        ArrayType,
        RecordType,
        EnumType,
        StdLibType,
        FunctionType,
        ClosureType,
        AutoParamType,
        OpaqueType,
    ],
    Field(discriminator="kind"),
]

for _model in (
    PointerType,
    ReferenceType,
    ArrayType,
    StdLibType,
    FunctionType,
):
    _model.model_rebuild()


def primitive(kind: PrimitiveKind) -> PrimitiveType:
    return PrimitiveType(name=kind)


VOID = primitive(PrimitiveKind.VOID)
BOOL = primitive(PrimitiveKind.BOOL)
CHAR = primitive(PrimitiveKind.CHAR)
INT = primitive(PrimitiveKind.INT)
UNSIGNED_INT = primitive(PrimitiveKind.UNSIGNED_INT)
LONG = primitive(PrimitiveKind.LONG)
UNSIGNED_LONG = primitive(PrimitiveKind.UNSIGNED_LONG)
FLOAT = primitive(PrimitiveKind.FLOAT)
DOUBLE = primitive(PrimitiveKind.DOUBLE)
NULLPTR = primitive(PrimitiveKind.NULLPTR)


def strip_reference(t: ResolvedType) -> ResolvedType:
    return t.referent if isinstance(t, ReferenceType) else t


def is_void(t: ResolvedType) -> bool:
    return isinstance(t, PrimitiveType) and t.name == PrimitiveKind.VOID


def is_integral(t: ResolvedType) -> bool:
    return isinstance(t, PrimitiveType) and t.name in _INTEGRAL_KINDS


def is_floating(t: ResolvedType) -> bool:
    return isinstance(t, PrimitiveType) and t.name in _FLOATING_KINDS


def is_arithmetic(t: ResolvedType) -> bool:
    return is_integral(t) or is_floating(t)


def is_pointer(t: ResolvedType) -> bool:
    return isinstance(t, PointerType)


def is_stdlib(t: ResolvedType, *templates: str) -> bool:
    return isinstance(t, StdLibType) and (not templates or t.template in templates)


def record_id_of(t: ResolvedType) -> int | None:
    """Decl id of the record behind a value, reference or pointer type."""
    t = strip_reference(t)
    if isinstance(t, PointerType):
        t = t.pointee
    return t.decl_id if isinstance(t, RecordType) else None
