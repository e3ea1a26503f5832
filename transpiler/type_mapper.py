"""Type Mapper: resolved C++ types to Rust types.

``map_type`` is total.  A type with no entry in the table degrades to an
opaque byte blob (or ``fragile_rt::Opaque`` when the size is unknown) and a
``type-mapping-fallback`` diagnostic is recorded; lowering never stops here.

References are position-sensitive: parameters and locals borrow, while
fields, returns and container elements hold raw pointers because nothing
proves those references do not escape.
"""

from __future__ import annotations

import logging
from enum import Enum

from . import constants
from .cpp_ast import NO_SOURCE_LOCATION, SourceLocation
from .cpp_types import (
    ArrayType,
    AutoParamType,
    ClosureType,
    EnumType,
    FunctionType,
    OpaqueType,
    PointerType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    ReferenceType,
    ResolvedType,
    StdLibType,
)
from .diagnostics import Diagnostic, DiagnosticKind, DiagnosticSink
from .symbols import SymbolIndex
from .target_ir import (
    INFER,
    UNIT,
    ArrayOf,
    Call,
    Closure,
    ClosureParam,
    DynFn,
    FnPtr,
    Block,
    Lit,
    Macro,
    Named,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    Ref,
    RExpr,
    RustType,
    TupleOf,
)

logger = logging.getLogger(__name__)


class TypePosition(Enum):
    PARAM = "param"
    RETURN = "return"
    LOCAL = "local"
    FIELD = "field"
    ELEMENT = "element"


PRIMITIVE_MAP: dict[PrimitiveKind, str] = {
    PrimitiveKind.BOOL: "bool",
    PrimitiveKind.CHAR: "i8",
    PrimitiveKind.SIGNED_CHAR: "i8",
    PrimitiveKind.UNSIGNED_CHAR: "u8",
    PrimitiveKind.SHORT: "i16",
    PrimitiveKind.UNSIGNED_SHORT: "u16",
    PrimitiveKind.INT: "i32",
    PrimitiveKind.UNSIGNED_INT: "u32",
    PrimitiveKind.LONG: "i64",
    PrimitiveKind.UNSIGNED_LONG: "u64",
    PrimitiveKind.LONG_LONG: "i64",
    PrimitiveKind.UNSIGNED_LONG_LONG: "u64",
    PrimitiveKind.FLOAT: "f32",
    PrimitiveKind.DOUBLE: "f64",
    PrimitiveKind.LONG_DOUBLE: "f64",
}

# std template -> (Rust path, expected type-argument count)
STDLIB_MAP: dict[str, tuple[str, int]] = {
    "std::unique_ptr": ("Box", 1),
    "std::shared_ptr": ("std::sync::Arc", 1),
    "std::weak_ptr": ("std::sync::Weak", 1),
    "std::vector": ("Vec", 1),
    "std::string": ("String", 0),
    "std::basic_string": ("String", 0),
    "std::map": ("std::collections::BTreeMap", 2),
    "std::unordered_map": ("std::collections::HashMap", 2),
    "std::optional": ("Option", 1),
    "std::set": ("std::collections::BTreeSet", 1),
    "std::unordered_set": ("std::collections::HashSet", 1),
    "std::deque": ("std::collections::VecDeque", 1),
}

_INLINE_NAMESPACES = ("__1::", "__cxx11::", "__ndk1::")

C_VOID = Named(Path.external_path("std::ffi::c_void"))


def normalize_template(name: str) -> str:
    """``std::__1::vector`` -> ``std::vector``; bare names gain ``std::``."""
    for inline in _INLINE_NAMESPACES:
        name = name.replace(inline, "")
    if not name.startswith("std::"):
        name = f"std::{name}"
    return name


class TypeMapper:
    """Maps ``ResolvedType`` values to Rust types for one translation unit."""

    def __init__(
        self,
        index: SymbolIndex | None = None,
        sink: DiagnosticSink | None = None,
        runtime: str = constants.RUNTIME_CRATE,
    ):
        self.index = index
        self.sink = sink if sink is not None else DiagnosticSink()
        self.runtime = runtime
        self.auto_bindings: dict[int, ResolvedType] = {}
        self.declaration = ""
        self.location: SourceLocation = NO_SOURCE_LOCATION

    # ── mapping ──────────────────────────────────────────────────

    def map_type(
        self, t: ResolvedType, position: TypePosition = TypePosition.LOCAL
    ) -> RustType:
        if isinstance(t, PrimitiveType):
            return self._map_primitive(t)
        if isinstance(t, PointerType):
            return self._map_pointer(t)
        if isinstance(t, ReferenceType):
            inner = self.map_type(t.referent, TypePosition.ELEMENT)
            if position in (TypePosition.PARAM, TypePosition.LOCAL):
                return Ref(inner, mutable=not t.is_const)
            return RawPtr(inner, mutable=not t.is_const)
        if isinstance(t, ArrayType):
            element = self.map_type(t.element, TypePosition.ELEMENT)
            if t.length is None:
                return RawPtr(element, mutable=True)
            return ArrayOf(element, t.length)
        if isinstance(t, RecordType):
            return self._map_record(t)
        if isinstance(t, EnumType):
            sym = self.index.get(t.decl_id) if self.index else None
            if sym is None:
                return self.fallback(t.spelling(), Prim("i32"))
            return Named(sym.path)
        if isinstance(t, StdLibType):
            return self._map_stdlib(t)
        if isinstance(t, FunctionType):
            return self._map_function(t)
        if isinstance(t, ClosureType):
            return INFER
        if isinstance(t, AutoParamType):
            bound = self.auto_bindings.get(t.index)
            if bound is None:
                return self.fallback(t.spelling())
            return self.map_type(bound, position)
        if isinstance(t, OpaqueType):
            if t.size is not None:
                return self.fallback(t.text, ArrayOf(Prim("u8"), t.size))
            return self.fallback(t.text)
        return self.fallback(str(t))

    def _map_primitive(self, t: PrimitiveType) -> RustType:
        if t.name == PrimitiveKind.VOID:
            return UNIT
        if t.name == PrimitiveKind.NULLPTR:
            return RawPtr(C_VOID, mutable=True)
        return Prim(PRIMITIVE_MAP[t.name])

    def _map_pointer(self, t: PointerType) -> RustType:
        pointee = t.pointee
        if isinstance(pointee, PrimitiveType) and pointee.name == PrimitiveKind.VOID:
            return RawPtr(C_VOID, mutable=not t.is_const)
        if isinstance(pointee, FunctionType):
            return self._map_function(pointee)
        return RawPtr(self.map_type(pointee, TypePosition.ELEMENT), mutable=not t.is_const)

    def _map_function(self, t: FunctionType) -> RustType:
        params = tuple(self.map_type(p, TypePosition.PARAM) for p in t.params)
        ret = self.map_type(t.result, TypePosition.RETURN)
        return FnPtr(params, None if ret == UNIT else ret)

    def _map_record(self, t: RecordType) -> RustType:
        if self.index is None:
            return Named(Path(tuple(t.name.split("::")[:-1]), (t.name.split("::")[-1],)))
        if self.index.record(t.decl_id) is None:
            return self.fallback(t.spelling())
        return Named(self.index.record_path(t.decl_id))

    def _map_stdlib(self, t: StdLibType) -> RustType:
        template = normalize_template(t.template)
        if template == "std::pair" and len(t.args) == 2:
            return TupleOf(tuple(self.map_type(a, TypePosition.ELEMENT) for a in t.args))
        if template == "std::function" and len(t.args) == 1 and isinstance(t.args[0], FunctionType):
            sig = t.args[0]
            params = tuple(self.map_type(p, TypePosition.PARAM) for p in sig.params)
            ret = self.map_type(sig.result, TypePosition.RETURN)
            return DynFn(params, None if ret == UNIT else ret)
        entry = STDLIB_MAP.get(template)
        if entry is None:
            return self.fallback(t.spelling())
        rust_path, arity = entry
        if len(t.args) < arity:
            return self.fallback(t.spelling())
        args = tuple(self.map_type(a, TypePosition.ELEMENT) for a in t.args[:arity])
        return Named(Path.external_path(rust_path), args)

    def fallback(self, spelling: str, replacement: RustType | None = None) -> RustType:
        """Record a type-mapping fallback and return opaque storage."""
        self.sink.report(
            Diagnostic(
                kind=DiagnosticKind.TYPE_MAPPING_FALLBACK,
                message=f"no Rust mapping for '{spelling}'; using opaque storage",
                location=self.location,
                declaration=self.declaration,
            )
        )
        if replacement is not None:
            return replacement
        return Named(Path.external_path(f"{self.runtime}::{constants.RT_OPAQUE}"))

    # ── value properties ─────────────────────────────────────────

    def is_copy(self, t: ResolvedType) -> bool:
        """Whether values of ``t`` are plain bit copies in Rust."""
        if isinstance(t, (PrimitiveType, PointerType, EnumType, FunctionType)):
            return True
        if isinstance(t, ReferenceType):
            return t.is_const
        if isinstance(t, ArrayType):
            return t.length is None or self.is_copy(t.element)
        if isinstance(t, AutoParamType):
            bound = self.auto_bindings.get(t.index)
            return bound is not None and self.is_copy(bound)
        if isinstance(t, OpaqueType):
            return t.size is not None
        return False

    def needs_drop(self, t: ResolvedType) -> bool:
        """Whether a field of type ``t`` owns resources that teardown must release."""
        if isinstance(t, ReferenceType):
            return False
        return not self.is_copy(t)

    def default_value(self, t: ResolvedType) -> RExpr:
        """Expression producing the value-initialized state of ``t``."""
        if isinstance(t, PrimitiveType):
            if t.name == PrimitiveKind.BOOL:
                return Lit("false")
            if t.name in (PrimitiveKind.FLOAT, PrimitiveKind.DOUBLE, PrimitiveKind.LONG_DOUBLE):
                return Lit("0.0")
            if t.name == PrimitiveKind.NULLPTR:
                return null_pointer(True)
            if t.name == PrimitiveKind.VOID:
                return Lit("()")
            return Lit("0")
        if isinstance(t, (PointerType, ReferenceType)):
            if isinstance(t, PointerType) and isinstance(t.pointee, FunctionType):
                return _zeroed()
            mutable = not t.is_const
            return null_pointer(mutable)
        if isinstance(t, ArrayType):
            if t.length is None:
                return null_pointer(True)
            element = self.default_value(t.element)
            if self.is_copy(t.element):
                return Lit(f"[{_render_simple(element)}; {t.length}]")
            return Call(
                PathExpr(Path.external_path("std::array::from_fn")),
                (Closure((ClosureParam("_"),), Block(tail=element)),),
            )
        if isinstance(t, RecordType):
            if self.index is not None and self.index.record(t.decl_id) is not None:
                return Call(PathExpr(self.index.record_path(t.decl_id).member(constants.CTOR_DEFAULT)))
            return Call(PathExpr(Path.external_path("Default::default")))
        if isinstance(t, StdLibType):
            return self._stdlib_default(t)
        if isinstance(t, FunctionType):
            return _zeroed()
        return Call(PathExpr(Path.external_path("Default::default")))

    def _stdlib_default(self, t: StdLibType) -> RExpr:
        template = normalize_template(t.template)
        if template in ("std::unique_ptr", "std::shared_ptr") and t.args:
            ctor = "Box::new" if template == "std::unique_ptr" else "std::sync::Arc::new"
            return Call(PathExpr(Path.external_path(ctor)), (self.default_value(t.args[0]),))
        if template == "std::weak_ptr":
            return Call(PathExpr(Path.external_path("std::sync::Weak::new")))
        if template == "std::function" and t.args and isinstance(t.args[0], FunctionType):
            params = tuple(ClosureParam(f"_a{i}") for i in range(len(t.args[0].params)))
            body = Block(tail=Macro("unimplemented", (Lit('"empty std::function called"'),)))
            return Call(PathExpr(Path.external_path("Box::new")), (Closure(params, body),))
        return Call(PathExpr(Path.external_path("Default::default")))


def null_pointer(mutable: bool) -> RExpr:
    fn = "std::ptr::null_mut" if mutable else "std::ptr::null"
    return Call(PathExpr(Path.external_path(fn)))


def _zeroed() -> RExpr:
    return Block(tail=Call(PathExpr(Path.external_path("std::mem::zeroed"))), unsafe=True)


def _render_simple(expr: RExpr) -> str:
    if isinstance(expr, Lit):
        return expr.text
    if isinstance(expr, Call) and isinstance(expr.func, PathExpr) and not expr.args:
        path = expr.func.path
        return "::".join(path.module + path.item) + "()"
    return "Default::default()"


def map_type(t: ResolvedType, position: TypePosition = TypePosition.LOCAL) -> RustType:
    """Map ``t`` without unit context (records are named by their C++ path)."""
    return TypeMapper().map_type(t, position)
