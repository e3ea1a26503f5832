"""Expression lowering: AST Model expressions to target IR expressions.

``lower`` keeps the C++ value category: an lvalue lowers to a Rust place
expression, a prvalue to a value.  ``value`` additionally clones non-``Copy``
places, which is how a C++ copy reads in Rust.

Anything that needs an ``unsafe`` context (raw-pointer dereference, pointer
offsets, runtime allocation calls, global slot access) sets
``needs_unsafe``; the statement lowerer turns that into an ``unsafe`` block
around the statement's root expression.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from . import constants
from . import cpp_ast as ast
from . import stdlib
from .cpp_types import (
    AutoParamType,
    ArrayType,
    ClosureType,
    EnumType,
    FunctionType,
    PointerType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    ReferenceType,
    ResolvedType,
    StdLibType,
    is_floating,
    is_integral,
    is_pointer,
    record_id_of,
    strip_reference,
)
from .cpp_ast import strip_implicit, strip_parens
from .diagnostics import LayoutInvariantViolation, UnsupportedConstruct
from .layout import PathStep, StepKind, method_key
from .literals import byte_str
from .lowering_types import FunctionContext, LocalInfo, LocalKind, SelfMode, UnitContext
from .operators import COMPOUND_ASSIGN_OPERATORS
from .symbols import Symbol, SymbolKind, sanitize_ident
from .target_ir import (
    UNIT,
    ArrayLit,
    Assign,
    Binary,
    Block,
    Call,
    Cast,
    Closure,
    ClosureParam,
    ExprStmt,
    FieldAccess,
    FnPtr,
    If,
    Index,
    Let,
    Lit,
    Macro,
    MethodCall,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    RExpr,
    RustType,
    StructLit,
    Unary,
    Var,
)
from .type_mapper import C_VOID, TypePosition, _zeroed, null_pointer

logger = logging.getLogger(__name__)


def ext(text: str, *generics: RustType) -> PathExpr:
    return PathExpr(Path.external_path(text), generics)


def manually_drop(value: RExpr) -> RExpr:
    return Call(ext("std::mem::ManuallyDrop::new"), (value,))


def field_of(base: RExpr, name: str) -> RExpr:
    """``base.name``, writing ``(*self).x`` as ``self.x``."""
    if (
        isinstance(base, Unary)
        and base.op == "*"
        and isinstance(base.operand, Var)
        and base.operand.name == "self"
    ):
        return FieldAccess(base.operand, name)
    return FieldAccess(base, name)


class ExpressionLowerer:
    """Lowers expressions of one function body at a time."""

    def __init__(self, unit: UnitContext):
        self.unit = unit
        self.index = unit.index
        self.mapper = unit.mapper
        self.layouts = unit.layouts
        self.ctx = FunctionContext()
        self.needs_unsafe = False
        self.statements: Any = None
        self.closure_params: dict[int, list[ResolvedType]] = {}
        self._EXPR_DISPATCH: dict[str, Callable[[Any], RExpr]] = {
            "integer_literal": self._lower_integer,
            "floating_literal": self._lower_floating,
            "bool_literal": self._lower_bool,
            "string_literal": self._lower_string,
            "char_literal": self._lower_char,
            "nullptr_literal": self._lower_nullptr,
            "decl_ref": self._lower_decl_ref,
            "member": self._lower_member,
            "call": self._lower_call,
            "member_call": self._lower_member_call,
            "operator_call": self._lower_operator_call,
            "construct": self._lower_construct,
            "new": self._lower_new,
            "delete": self._lower_delete,
            "unary": self._lower_unary,
            "binary": self._lower_binary,
            "conditional": self._lower_conditional,
            "subscript": self._lower_subscript,
            "cast": self._lower_cast,
            "this": self._lower_this,
            "paren": lambda e: self.lower(e.inner),
            "init_list": self._lower_init_list,
            "sizeof": self._lower_sizeof,
            "lambda": self._lower_lambda,
            "throw": self._lower_throw,
        }

    # ── entry points ─────────────────────────────────────────────

    def lower(self, expr: Any) -> RExpr:
        handler = self._EXPR_DISPATCH.get(expr.kind)
        if handler is None:
            raise UnsupportedConstruct(f"expression kind '{expr.kind}'", expr.loc)
        return handler(expr)

    def value(self, expr: Any, movable: bool = False) -> RExpr:
        """Lower ``expr`` to an owned value, cloning non-``Copy`` places."""
        lowered = self.read(expr)
        if movable or not self.is_glvalue(expr):
            return lowered
        t = strip_reference(expr.type)
        if self.mapper.is_copy(t) or isinstance(t, ClosureType):
            return lowered
        return MethodCall(lowered, "clone")

    def read(self, expr: Any) -> RExpr:
        """Like ``lower``, for a use that never writes through the result."""
        stripped = strip_parens(expr)
        if isinstance(stripped, ast.OperatorCallExpr) and stripped.operator == "[]":
            return self._lower_operator_call(stripped, read_only=True)
        return self.lower(expr)

    def discard(self, expr: Any) -> RExpr:
        """Lower an expression whose value is not used."""
        expr = strip_parens(expr)
        if isinstance(expr, ast.BinaryOperator):
            if expr.op == "=":
                return self._assign(expr)
            if expr.op in COMPOUND_ASSIGN_OPERATORS:
                return self._compound_assign(expr)
            if expr.op == ",":
                return Block((ExprStmt(self.discard(expr.lhs)), ExprStmt(self.discard(expr.rhs))))
        if isinstance(expr, ast.UnaryOperator) and expr.op in ("++", "--"):
            return self._increment(self.lower(expr.operand), expr.operand.type, expr.op)
        if isinstance(expr, ast.ConditionalOperator):
            return If(
                self.value(expr.cond),
                Block((ExprStmt(self.discard(expr.then)),)),
                Block((ExprStmt(self.discard(expr.otherwise)),)),
            )
        if isinstance(expr, ast.CastExpr) and expr.cast_kind == ast.CastKind.TO_VOID:
            return self.discard(expr.operand)
        return self.lower(expr)

    def arg(self, expr: Any, param_type: ResolvedType) -> RExpr:
        """Lower a call argument for a parameter of ``param_type``."""
        if not isinstance(param_type, ReferenceType):
            return self.value(expr)
        if param_type.is_rvalue:
            moved = stdlib.moved_operand(strip_implicit(expr))
            if moved is not None:
                return Unary("&mut", self.take(moved))
            if self.is_glvalue(expr):
                return Unary("&mut", self.lower(expr))
            return Unary("&mut", self.value(expr))
        op = "&" if param_type.is_const else "&mut"
        if self.is_glvalue(expr):
            return Unary(op, self.lower(expr))
        return Unary(op, self.value(expr))

    def args(self, exprs: list, param_types: list[ResolvedType]) -> tuple[RExpr, ...]:
        return tuple(
            self.arg(a, param_types[i]) if i < len(param_types) else self.value(a)
            for i, a in enumerate(exprs)
        )

    def init_value(
        self, expr: Any, target: ResolvedType, position: TypePosition, movable: bool = False
    ) -> RExpr:
        """Value for initializing a variable, field or return slot of ``target``."""
        if isinstance(target, ReferenceType):
            if position in (TypePosition.PARAM, TypePosition.LOCAL):
                return self.arg(expr, target)
            if not self.is_glvalue(expr):
                raise UnsupportedConstruct(
                    "reference to a temporary outlives the full expression", expr.loc
                )
            return self.address_of(self.lower(expr), not target.is_const)
        return self.value(expr, movable=movable)

    def take(self, expr: Any) -> RExpr:
        """Move out of the place ``expr`` (the operand of ``std::move``)."""
        place = self.lower(expr)
        t = strip_reference(expr.type)
        if self.mapper.is_copy(t):
            return place
        if isinstance(t, RecordType):
            return MethodCall(place, "clone")
        if stdlib.is_template(t, "std::unique_ptr"):
            if not isinstance(place, Var):
                raise UnsupportedConstruct(
                    "move of a unique_ptr out of anything but a local variable", expr.loc
                )
            return place
        return Call(ext("std::mem::take"), (Unary("&mut", place),))

    def rust(self, t: ResolvedType, position: TypePosition = TypePosition.LOCAL) -> RustType:
        return self.mapper.map_type(t, position)

    def rt(self, name: str, *generics: RustType) -> PathExpr:
        return PathExpr(self.unit.rt(name), generics)

    def mark_unsafe(self) -> None:
        self.needs_unsafe = True

    def address_of(self, place: RExpr, mutable: bool) -> RExpr:
        return Macro("std::ptr::addr_of_mut" if mutable else "std::ptr::addr_of", (place,))

    # ── value categories ─────────────────────────────────────────

    def is_glvalue(self, expr: Any) -> bool:
        expr = strip_parens(expr)
        if isinstance(expr, ast.DeclRefExpr):
            if expr.decl_id in self.ctx.locals:
                return True
            sym = self.index.get(expr.decl_id)
            return sym is not None and sym.kind in (SymbolKind.GLOBAL, SymbolKind.STATIC_MEMBER)
        if isinstance(expr, (ast.MemberExpr, ast.ArraySubscriptExpr)):
            return True
        if isinstance(expr, ast.UnaryOperator):
            return expr.op == "*" or (expr.op in ("++", "--") and not expr.is_postfix)
        if isinstance(expr, (ast.CallExpr, ast.MemberCallExpr)):
            return isinstance(self._callee_return_type(expr), ReferenceType)
        if isinstance(expr, ast.OperatorCallExpr):
            sym = self.index.get(expr.method_id) if expr.method_id else None
            if sym is not None:
                return isinstance(sym.decl.return_type, ReferenceType)
            return expr.operator in ("[]", "*")
        if isinstance(expr, ast.CastExpr):
            if expr.cast_kind in (
                ast.CastKind.NO_OP,
                ast.CastKind.DERIVED_TO_BASE,
                ast.CastKind.BASE_TO_DERIVED,
            ) and not is_pointer(expr.type):
                return self.is_glvalue(expr.operand)
            return False
        return False

    def _callee_return_type(self, expr: Any) -> ResolvedType | None:
        if isinstance(expr, ast.MemberCallExpr):
            sym = self.index.get(expr.method_id) if expr.method_id else None
            return sym.decl.return_type if sym is not None else None
        callee = strip_implicit(expr.callee)
        if isinstance(callee, ast.DeclRefExpr):
            sym = self.index.get(callee.decl_id)
            if sym is not None and sym.kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
                return sym.decl.return_type
        return None

    # ── literals ─────────────────────────────────────────────────

    def _lower_integer(self, e: ast.IntegerLiteral) -> RExpr:
        t = self.rust(e.type)
        if isinstance(t, Prim) and t.name not in ("i32", "bool"):
            return Lit(f"{e.value}{t.name}")
        return Lit(str(e.value))

    def _lower_floating(self, e: ast.FloatingLiteral) -> RExpr:
        t = self.rust(e.type)
        name = t.name if isinstance(t, Prim) else "f64"
        text = repr(float(e.value))
        if text in ("inf", "-inf", "nan"):
            const = {"inf": "INFINITY", "-inf": "NEG_INFINITY", "nan": "NAN"}[text]
            return ext(f"{name}::{const}")
        if "." not in text and "e" not in text:
            text += ".0"
        return Lit(text + ("f32" if name == "f32" else ""))

    def _lower_bool(self, e: ast.BoolLiteral) -> RExpr:
        return Lit("true" if e.value else "false")

    def _lower_char(self, e: ast.CharLiteral) -> RExpr:
        t = self.rust(e.type)
        if 0x20 <= e.value <= 0x7E and chr(e.value) not in ("'", "\\"):
            return Cast(Lit(f"b'{chr(e.value)}'"), t)
        if e.value <= 0xFF:
            return Cast(Lit(f"{e.value}u8"), t)
        return Lit(str(e.value))

    def _lower_string(self, e: ast.StringLiteral) -> RExpr:
        to_i8 = Closure((ClosureParam("c"),), Block(tail=Cast(Var("c"), Prim("i8"))))
        return MethodCall(Unary("*", byte_str(e.value)), "map", (to_i8,))

    def string_pointer(self, e: ast.StringLiteral) -> RExpr:
        return Cast(MethodCall(byte_str(e.value), "as_ptr"), RawPtr(Prim("i8"), mutable=False))

    def _lower_nullptr(self, e: ast.NullPtrLiteral) -> RExpr:
        return null_pointer(True)

    # ── names ────────────────────────────────────────────────────

    def local_place(self, info: LocalInfo) -> RExpr:
        if info.kind == LocalKind.VALUE:
            return Var(info.name)
        if info.kind == LocalKind.POINTER:
            self.mark_unsafe()
        return Unary("*", Var(info.name))

    def _lower_decl_ref(self, e: ast.DeclRefExpr) -> RExpr:
        info = self.ctx.locals.get(e.decl_id)
        if info is not None:
            return self.local_place(info)
        sym = self.index.get(e.decl_id) if e.decl_id else None
        if sym is None:
            return self._unresolved_ref(e)
        if sym.kind in (SymbolKind.GLOBAL, SymbolKind.STATIC_MEMBER):
            self.mark_unsafe()
            return Unary("*", Call(PathExpr(sym.path)))
        if sym.kind in (
            SymbolKind.CONSTANT,
            SymbolKind.ENUMERATOR,
            SymbolKind.FUNCTION,
            SymbolKind.METHOD,
        ):
            return PathExpr(sym.path)
        raise UnsupportedConstruct(f"reference to {sym.kind.value} '{sym.name}'", e.loc)

    def _unresolved_ref(self, e: ast.DeclRefExpr) -> RExpr:
        if isinstance(e.type, FunctionType):
            name = sanitize_ident(e.name.rsplit("::", 1)[-1])
            if name not in self.unit.externs:
                logger.debug("Declaring external function %s", name)
                self.unit.externs[name] = e.type
            self.mark_unsafe()
            return PathExpr(Path((), (name,)))
        raise UnsupportedConstruct(f"reference to '{e.name}' outside this unit", e.loc)

    # ── this and members ─────────────────────────────────────────

    def self_place(self, loc: ast.SourceLocation = ast.NO_SOURCE_LOCATION) -> RExpr:
        ctx = self.ctx
        if ctx.in_init_phase:
            raise UnsupportedConstruct("use of 'this' before all members are initialized", loc)
        if ctx.self_mode == SelfMode.REF:
            return Unary("*", Var("self"))
        if ctx.self_mode == SelfMode.LOCAL:
            return Var(constants.SELF_LOCAL)
        if ctx.self_mode == SelfMode.POINTER:
            self.mark_unsafe()
            return Unary("*", Var(constants.CAPTURED_THIS))
        raise UnsupportedConstruct("'this' outside a member function", loc)

    def _lower_this(self, e: ast.ThisExpr) -> RExpr:
        ctx = self.ctx
        if ctx.in_init_phase:
            raise UnsupportedConstruct("use of 'this' before all members are initialized", e.loc)
        record_ty = self.rust(strip_reference(e.type).pointee) if is_pointer(e.type) else None
        if ctx.self_mode == SelfMode.REF and record_ty is not None:
            return Cast(Cast(Var("self"), RawPtr(record_ty, mutable=False)), RawPtr(record_ty))
        if ctx.self_mode == SelfMode.LOCAL:
            return self.address_of(Var(constants.SELF_LOCAL), True)
        if ctx.self_mode == SelfMode.POINTER:
            return Var(constants.CAPTURED_THIS)
        raise UnsupportedConstruct("'this' outside a member function", e.loc)

    def object_place(self, base: Any, is_arrow: bool) -> RExpr:
        """Place of the object a member access or method call applies to."""
        stripped = strip_implicit(base)
        if is_arrow:
            if isinstance(stripped, ast.ThisExpr):
                return self.self_place(stripped.loc)
            if isinstance(stripped, ast.OperatorCallExpr) and stripped.operator == "->":
                smart = stdlib.smart_pointer_place(self, stripped)
                if smart is not None:
                    return smart
            self.mark_unsafe()
            return Unary("*", self.value(base))
        if (
            isinstance(stripped, ast.UnaryOperator)
            and stripped.op == "*"
            and isinstance(strip_implicit(stripped.operand), ast.ThisExpr)
        ):
            return self.self_place(stripped.loc)
        return self.lower(base)

    def walk(self, place: RExpr, steps: tuple[PathStep, ...]) -> RExpr:
        for step in steps:
            if step.kind == StepKind.INDIRECT:
                self.mark_unsafe()
            access = field_of(place, step.field)
            place = access if step.kind == StepKind.MEMBER else Unary("*", access)
        return place

    def _lower_member(self, e: ast.MemberExpr) -> RExpr:
        ctx = self.ctx
        if (
            ctx.in_init_phase
            and isinstance(strip_implicit(e.base), ast.ThisExpr)
            and e.member in ctx.member_locals
        ):
            return Var(ctx.member_locals[e.member])
        record_id = record_id_of(e.base.type) or e.record_id
        if record_id is None or self.index.record(record_id) is None:
            return stdlib.member_place(self, e)
        obj = self.object_place(e.base, e.is_arrow)
        return self.member_place(obj, record_id, e.member, e.loc)

    def member_place(self, obj: RExpr, record_id: int, name: str, loc=ast.NO_SOURCE_LOCATION) -> RExpr:
        found = self.layouts.find_field(record_id, name)
        if found is None:
            static = self.static_member(record_id, name)
            if static is not None:
                self.mark_unsafe()
                return Unary("*", Call(PathExpr(static.path)))
            raise UnsupportedConstruct(
                f"no member '{name}' in '{self.index.record_name(record_id)}'", loc
            )
        place = self.walk(obj, found.steps)
        access = field_of(place, found.field.name)
        if found.field.managed:
            access = Unary("*", access)
        if isinstance(found.field.cpp_type, ReferenceType):
            self.mark_unsafe()
            access = Unary("*", access)
        return access

    def static_member(self, record_id: int, name: str) -> Symbol | None:
        """Static data member ``name`` of the record or one of its bases."""
        for sym in self.index.symbols.values():
            if sym.kind == SymbolKind.STATIC_MEMBER and sym.owner_id == record_id and sym.name == name:
                return sym
        record = self.index.record(record_id)
        for spec in record.bases if record is not None else ():
            found = self.static_member(spec.type.decl_id, name)
            if found is not None:
                return found
        return None

    # ── calls ────────────────────────────────────────────────────

    def ref_result(self, call: RExpr, return_type: ResolvedType) -> RExpr:
        """Reference-returning calls yield raw pointers; use the pointee."""
        if isinstance(return_type, ReferenceType):
            self.mark_unsafe()
            return Unary("*", call)
        return call

    def _lower_call(self, e: ast.CallExpr) -> RExpr:
        callee = strip_implicit(e.callee)
        if isinstance(callee, ast.DeclRefExpr) and callee.decl_id not in self.ctx.locals:
            sym = self.index.get(callee.decl_id) if callee.decl_id else None
            if sym is None:
                handled = stdlib.lower_call(self, callee.name, e)
                if handled is not None:
                    return handled
                func = self._unresolved_ref(callee)
                params = callee.type.params if isinstance(callee.type, FunctionType) else []
                return Call(func, self.args(e.args, params))
            if sym.kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
                decl = sym.decl
                if sym.kind == SymbolKind.FUNCTION and decl.body is None:
                    self.mark_unsafe()
                args = self.args(e.args, [p.type for p in decl.params])
                return self.ref_result(Call(PathExpr(sym.path), args), decl.return_type)
        func_type = strip_reference(e.callee.type)
        if isinstance(func_type, PointerType):
            func_type = func_type.pointee
        params = func_type.params if isinstance(func_type, FunctionType) else []
        return Call(self.lower(e.callee), self.args(e.args, params))

    def _lower_member_call(self, e: ast.MemberCallExpr) -> RExpr:
        sym = self.index.get(e.method_id) if e.method_id else None
        if sym is None or sym.kind != SymbolKind.METHOD:
            return stdlib.lower_method(self, e)
        method = sym.decl
        args = self.args(e.args, [p.type for p in method.params])
        if method.is_static:
            return self.ref_result(Call(PathExpr(sym.path), args), method.return_type)
        static_rid = record_id_of(e.object.type) or e.record_id
        obj = self.object_place(e.object, e.is_arrow)
        dynamic = not e.qualified and self.through_indirection(e.object, e.is_arrow)
        return self.method_call(obj, static_rid, sym, args, dynamic)

    def through_indirection(self, obj: Any, is_arrow: bool) -> bool:
        """Whether the object's dynamic type may differ from its static type."""
        if is_arrow:
            return True
        obj = strip_implicit(obj)
        if isinstance(obj, ast.UnaryOperator) and obj.op == "*":
            return True
        if isinstance(obj, ast.DeclRefExpr):
            info = self.ctx.locals.get(obj.decl_id)
            return info is not None and info.kind == LocalKind.BORROW
        if isinstance(obj, ast.MemberExpr):
            record_id = record_id_of(obj.base.type) or obj.record_id
            found = self.layouts.find_field(record_id, obj.member) if record_id else None
            return found is not None and isinstance(found.field.cpp_type, ReferenceType)
        if isinstance(obj, (ast.CallExpr, ast.MemberCallExpr)):
            return isinstance(self._callee_return_type(obj), ReferenceType)
        return False

    def method_call(
        self,
        obj: RExpr,
        static_rid: int,
        sym: Symbol,
        args: tuple[RExpr, ...],
        dynamic: bool,
    ) -> RExpr:
        method: ast.MethodDecl = sym.decl
        owner = sym.owner_id
        record = self.index.record(static_rid)
        final = method.is_final or (record is not None and record.is_final)
        if dynamic and not final and self._vtable_route(owner, method_key(method)) is not None:
            return self._virtual_call(obj, static_rid, owner, method, args)
        steps = self.layouts.path_to_base(static_rid, owner)
        if steps is None:
            raise LayoutInvariantViolation(
                f"'{sym.owner_name}' is not a base of record #{static_rid}"
            )
        receiver = self.walk(obj, steps)
        if receiver == Unary("*", Var("self")):
            receiver = Var("self")
        return self.ref_result(MethodCall(receiver, sym.rust_name, args), method.return_type)

    def _const_overload(self, sym: Symbol) -> Symbol:
        """The const overload next to a non-const member operator, if declared."""
        if sym.kind != SymbolKind.METHOD or sym.decl.is_const:
            return sym
        arity = len(sym.decl.params)
        for other in self.index.symbols.values():
            if (
                other.kind == SymbolKind.METHOD
                and other.owner_id == sym.owner_id
                and other.name == sym.name
                and other.decl.is_const
                and len(other.decl.params) == arity
            ):
                return other
        return sym

    def _vtable_route(self, record_id: int, key: str):
        if not self.layouts.is_polymorphic(record_id):
            return None
        for path in self.layouts.layout_of(record_id).vtables:
            for slot in path.slots:
                if slot.key == key:
                    return path, slot
        return None

    def vptr_of(self, subobject: RExpr, path) -> tuple[RExpr, RExpr]:
        """Root subobject place holding ``__vptr`` for ``path``, and the vptr."""
        steps = tuple(
            PathStep(f, StepKind.MANAGED, r) for f, r in zip(path.steps, path.step_records)
        )
        root = self.walk(subobject, steps)
        return root, field_of(root, constants.VPTR_FIELD)

    def slot_fn_type(self, params: list[ResolvedType], result: ResolvedType) -> FnPtr:
        ret = self.rust(result, TypePosition.RETURN)
        return FnPtr(
            (RawPtr(C_VOID),) + tuple(self.rust(p, TypePosition.PARAM) for p in params),
            None if ret == UNIT else ret,
            unsafe=True,
        )

    def _virtual_call(
        self,
        obj: RExpr,
        static_rid: int,
        owner: int,
        method: ast.MethodDecl,
        args: tuple[RExpr, ...],
    ) -> RExpr:
        path, slot = self._vtable_route(owner, method_key(method))
        subobject = self.walk(obj, self.layouts.path_to_base(static_rid, owner) or ())
        root, vptr = self.vptr_of(subobject, path)
        fn_type = self.slot_fn_type([p.type for p in method.params], method.return_type)
        self.mark_unsafe()
        target = Call(self.rt(constants.RT_VCALL, fn_type), (vptr, Lit(str(slot.index))))
        receiver = Cast(self.address_of(root, False), RawPtr(C_VOID))
        return self.ref_result(Call(target, (receiver,) + args), method.return_type)

    def _lower_operator_call(self, e: ast.OperatorCallExpr, read_only: bool = False) -> RExpr:
        sym = self.index.get(e.method_id) if e.method_id else None
        if read_only and sym is not None and e.operator == "[]":
            sym = self._const_overload(sym)
        if sym is not None and sym.kind == SymbolKind.METHOD and not sym.decl.is_static:
            obj_expr = e.args[0]
            args = self.args(e.args[1:], [p.type for p in sym.decl.params])
            static_rid = record_id_of(obj_expr.type)
            obj = self.object_place(obj_expr, False)
            return self.method_call(
                obj, static_rid, sym, args, self.through_indirection(obj_expr, False)
            )
        if sym is not None and sym.kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
            args = self.args(e.args, [p.type for p in sym.decl.params])
            return self.ref_result(Call(PathExpr(sym.path), args), sym.decl.return_type)
        if e.operator == "()" and e.args:
            callee_t = strip_reference(e.args[0].type)
            if isinstance(callee_t, ClosureType):
                params = self.closure_params.get(callee_t.lambda_id, [])
                return Call(self.lower(e.args[0]), self.args(e.args[1:], params))
            if stdlib.is_template(callee_t, "std::function"):
                sig = callee_t.args[0] if callee_t.args else None
                params = sig.params if isinstance(sig, FunctionType) else []
                return Call(self.lower(e.args[0]), self.args(e.args[1:], params))
        if e.operator == "=" and len(e.args) == 2 and isinstance(
            strip_reference(e.args[0].type), RecordType
        ):
            return self.assign_record(e.args[0], e.args[1])
        return stdlib.lower_operator(self, e)

    def assign_record(self, lhs: Any, rhs: Any) -> RExpr:
        """Copy or move assignment of a class object."""
        place = self.lower(lhs)
        user = self.user_assign(record_id_of(lhs.type))
        if user is not None:
            args = self.args([rhs], [p.type for p in user.decl.params])
            return MethodCall(place, user.rust_name, args)
        moved = stdlib.moved_operand(strip_implicit(rhs))
        if moved is not None:
            source = self.lower(moved)
        elif self.is_glvalue(rhs):
            source = self.lower(rhs)
        else:
            source = self.value(rhs)
        return MethodCall(place, constants.ASSIGN_METHOD, (Unary("&", source),))

    def user_assign(self, record_id: int | None) -> Symbol | None:
        """User-declared ``operator=`` taking the record itself."""
        if record_id is None:
            return None
        for sym in self.index.symbols.values():
            if sym.kind != SymbolKind.METHOD or sym.owner_id != record_id:
                continue
            decl = sym.decl
            if decl.operator == "=" and len(decl.params) == 1:
                if record_id_of(decl.params[0].type) == record_id:
                    return sym
        return None

    # ── construction and allocation ──────────────────────────────

    def _lower_construct(self, e: ast.ConstructExpr) -> RExpr:
        t = strip_reference(e.type)
        if isinstance(t, RecordType):
            return self.construct_record(t.decl_id, e.ctor_id, e.args, e.loc)
        if isinstance(t, StdLibType):
            return stdlib.construct(self, t, e.args)
        if isinstance(t, ArrayType) and not e.args:
            return self.mapper.default_value(t)
        if e.args:
            return self.value(e.args[0])
        return self.mapper.default_value(t)

    def construct_record(self, record_id: int, ctor_id: int, args: list, loc) -> RExpr:
        if self.index.record(record_id) is None:
            raise UnsupportedConstruct(f"construction of undefined record #{record_id}", loc)
        sym = self.index.get(ctor_id) if ctor_id else None
        if sym is not None and sym.kind == SymbolKind.CONSTRUCTOR:
            params = [p.type for p in sym.decl.params]
            return Call(PathExpr(sym.path), self.args(args, params))
        path = self.index.record_path(record_id)
        if not args:
            if not self.index.has_default_constructor(record_id):
                raise UnsupportedConstruct(
                    f"'{self.index.record_name(record_id)}' has no default constructor", loc
                )
            return Call(PathExpr(path.member(constants.CTOR_DEFAULT)))
        source = strip_reference(args[0].type) if len(args) == 1 else None
        if isinstance(source, RecordType) and source.decl_id == record_id:
            return self.copy_of(args[0])
        chosen = self.index.constructor_for_arity(record_id, len(args))
        if chosen is None:
            raise UnsupportedConstruct(
                f"no constructor of '{self.index.record_name(record_id)}' takes {len(args)} arguments",
                loc,
            )
        return Call(PathExpr(chosen.path), self.args(args, [p.type for p in chosen.decl.params]))

    def copy_of(self, expr: Any) -> RExpr:
        moved = stdlib.moved_operand(strip_implicit(expr))
        if moved is not None:
            return self.take(moved)
        if self.is_glvalue(expr):
            return MethodCall(self.lower(expr), "clone")
        return self.value(expr)

    def _lower_new(self, e: ast.NewExpr) -> RExpr:
        self.mark_unsafe()
        if e.array_size is not None:
            return Call(
                self.rt(constants.RT_NEW_ARRAY, self.rust(e.allocated, TypePosition.ELEMENT)),
                (self.as_usize(e.array_size),),
            )
        init = self.value(e.init) if e.init is not None else self.mapper.default_value(e.allocated)
        return Call(self.rt(constants.RT_NEW), (init,))

    def _lower_delete(self, e: ast.DeleteExpr) -> RExpr:
        self.mark_unsafe()
        pointer = self.value(e.operand)
        if e.is_array:
            return Call(self.rt(constants.RT_DELETE_ARRAY), (pointer,))
        record_id = record_id_of(e.operand.type)
        route = (
            self._vtable_route(record_id, constants.DESTRUCTOR_SLOT_KEY)
            if record_id is not None and self.index.record(record_id) is not None
            else None
        )
        if route is None:
            return Call(self.rt(constants.RT_DELETE), (pointer,))
        path, slot = route
        receiver = Var(constants.RECEIVER_LOCAL)
        root, vptr = self.vptr_of(Unary("*", receiver), path)
        fn_type = FnPtr((RawPtr(C_VOID),), None, unsafe=True)
        target = Call(self.rt(constants.RT_VCALL, fn_type), (vptr, Lit(str(slot.index))))
        call = Call(target, (Cast(self.address_of(root, False), RawPtr(C_VOID)),))
        guard = If(
            Unary("!", MethodCall(receiver, "is_null")),
            Block((ExprStmt(call),)),
        )
        return Block((Let(constants.RECEIVER_LOCAL, init=pointer), ExprStmt(guard)))

    def as_usize(self, expr: Any) -> RExpr:
        stripped = strip_implicit(expr)
        if isinstance(stripped, ast.CastExpr) and stripped.cast_kind == ast.CastKind.INTEGRAL_CAST:
            stripped = strip_implicit(stripped.operand)
        if isinstance(stripped, ast.IntegerLiteral):
            return Lit(str(stripped.value))
        return Cast(self.value(expr), Prim("usize"))

    # ── operators ────────────────────────────────────────────────

    def _lower_unary(self, e: ast.UnaryOperator) -> RExpr:
        op = e.op
        if op in ("++", "--"):
            place = self.lower(e.operand)
            step = self._increment(place, e.operand.type, op)
            if not e.is_postfix:
                return Block((ExprStmt(step),), tail=place)
            return Block(
                (Let(constants.TEMP_LOCAL, init=place), ExprStmt(step)),
                tail=Var(constants.TEMP_LOCAL),
            )
        if op == "*":
            operand = strip_implicit(e.operand)
            if isinstance(operand, ast.ThisExpr):
                return self.self_place(e.loc)
            if isinstance(strip_reference(e.operand.type), PointerType) and isinstance(
                strip_reference(e.operand.type).pointee, FunctionType
            ):
                return self.value(e.operand)
            self.mark_unsafe()
            return Unary("*", self.value(e.operand))
        if op == "&":
            operand = strip_parens(e.operand)
            if isinstance(operand, ast.DeclRefExpr):
                sym = self.index.get(operand.decl_id)
                if sym is not None and sym.kind == SymbolKind.FUNCTION:
                    return PathExpr(sym.path)
            if isinstance(operand, ast.UnaryOperator) and operand.op == "*":
                return self.value(operand.operand)
            result = strip_reference(e.type)
            mutable = not (isinstance(result, PointerType) and result.is_const)
            return self.address_of(self.lower(e.operand), mutable)
        operand = self.value(e.operand)
        if op == "-":
            t = self.rust(e.type)
            if isinstance(t, Prim) and t.name.startswith("u"):
                return MethodCall(operand, "wrapping_neg")
            return Unary("-", operand)
        if op == "+":
            return operand
        if op in ("!", "~"):
            return Unary("!", operand)
        raise UnsupportedConstruct(f"unary operator '{op}'", e.loc)

    def _increment(self, place: RExpr, t: ResolvedType, op: str) -> RExpr:
        t = strip_reference(t)
        if is_pointer(t):
            self.mark_unsafe()
            step = Lit("1") if op == "++" else Lit("-1")
            return Assign(place, MethodCall(place, "offset", (step,)))
        one = Lit("1.0") if is_floating(t) else Lit("1")
        return Assign(place, one, "+=" if op == "++" else "-=")

    def _lower_binary(self, e: ast.BinaryOperator) -> RExpr:
        op = e.op
        if op == "=" or op in COMPOUND_ASSIGN_OPERATORS:
            assignment = self._assign(e) if op == "=" else self._compound_assign(e)
            if isinstance(strip_reference(e.lhs.type), RecordType):
                return assignment
            return Block((ExprStmt(assignment),), tail=self.lower(e.lhs))
        if op == ",":
            return Block((ExprStmt(self.discard(e.lhs)),), tail=self.lower(e.rhs))
        lt = strip_reference(e.lhs.type)
        rt = strip_reference(e.rhs.type)
        if op in ("+", "-") and is_pointer(lt) and is_integral(rt):
            return self._offset(self.value(e.lhs), self.value(e.rhs), negate=op == "-")
        if op == "+" and is_integral(lt) and is_pointer(rt):
            return self._offset(self.value(e.rhs), self.value(e.lhs), negate=False)
        if op == "-" and is_pointer(lt) and is_pointer(rt):
            self.mark_unsafe()
            diff = MethodCall(self.value(e.lhs), "offset_from", (self.value(e.rhs),))
            return Cast(diff, self.rust(e.type))
        return Binary(op, self.value(e.lhs), self.value(e.rhs))

    def _offset(self, pointer: RExpr, count: RExpr, negate: bool) -> RExpr:
        self.mark_unsafe()
        n: RExpr = Cast(count, Prim("isize"))
        if negate:
            n = Unary("-", n)
        return MethodCall(pointer, "offset", (n,))

    def _assign(self, e: ast.BinaryOperator) -> RExpr:
        if isinstance(strip_reference(e.lhs.type), RecordType):
            return self.assign_record(e.lhs, e.rhs)
        return Assign(self.lower(e.lhs), self.value(e.rhs))

    def _compound_assign(self, e: ast.BinaryOperator) -> RExpr:
        place = self.lower(e.lhs)
        lt = strip_reference(e.lhs.type)
        if is_pointer(lt):
            return Assign(place, self._offset(place, self.value(e.rhs), negate=e.op == "-="))
        rhs = self.value(e.rhs)
        if e.op in ("<<=", ">>="):
            return Assign(place, rhs, e.op)
        lhs_ty = self.rust(lt)
        rhs_ty = self.rust(strip_reference(e.rhs.type))
        if lhs_ty != rhs_ty and isinstance(lhs_ty, Prim) and isinstance(rhs_ty, Prim):
            widened = Binary(e.op[:-1], Cast(place, rhs_ty), rhs)
            return Assign(place, Cast(widened, lhs_ty))
        return Assign(place, rhs, e.op)

    def _lower_conditional(self, e: ast.ConditionalOperator) -> RExpr:
        return If(
            self.value(e.cond),
            Block(tail=self.value(e.then)),
            Block(tail=self.value(e.otherwise)),
        )

    def _lower_subscript(self, e: ast.ArraySubscriptExpr) -> RExpr:
        base = strip_parens(e.base)
        if (
            isinstance(base, ast.CastExpr)
            and base.cast_kind == ast.CastKind.ARRAY_TO_POINTER_DECAY
            and isinstance(strip_reference(base.operand.type), ArrayType)
            and strip_reference(base.operand.type).length is not None
        ):
            return Index(self.lower(base.operand), self.as_usize(e.index))
        if isinstance(strip_reference(e.base.type), ArrayType):
            return Index(self.lower(e.base), self.as_usize(e.index))
        self.mark_unsafe()
        offset = MethodCall(
            self.value(e.base), "offset", (Cast(self.value(e.index), Prim("isize")),)
        )
        return Unary("*", offset)

    # ── conversions ──────────────────────────────────────────────

    def _lower_cast(self, e: ast.CastExpr) -> RExpr:
        kind = e.cast_kind
        K = ast.CastKind
        if kind in (
            K.LVALUE_TO_RVALUE,
            K.NO_OP,
            K.FUNCTION_TO_POINTER_DECAY,
            K.CONSTRUCTOR_CONVERSION,
            K.USER_DEFINED_CONVERSION,
        ):
            if kind == K.LVALUE_TO_RVALUE:
                return self.read(e.operand)
            return self.lower(e.operand)
        if kind == K.TO_VOID:
            return Block((Let("_", init=self.value(e.operand), mutable=False),))
        if kind == K.INTEGRAL_TO_BOOLEAN:
            return Binary("!=", self._integral(e.operand), Lit("0"))
        if kind == K.FLOATING_TO_BOOLEAN:
            return Binary("!=", self.value(e.operand), Lit("0.0"))
        if kind == K.POINTER_TO_BOOLEAN:
            return Unary("!", MethodCall(self.value(e.operand), "is_null"))
        if kind == K.ARRAY_TO_POINTER_DECAY:
            operand = strip_parens(e.operand)
            if isinstance(operand, ast.StringLiteral):
                return self.string_pointer(operand)
            target = strip_reference(e.type)
            const = isinstance(target, PointerType) and target.is_const
            return MethodCall(self.lower(e.operand), "as_ptr" if const else "as_mut_ptr")
        if kind == K.NULL_TO_POINTER:
            target = strip_reference(e.type)
            if isinstance(target, PointerType) and isinstance(target.pointee, FunctionType):
                return _zeroed()
            return null_pointer(not (isinstance(target, PointerType) and target.is_const))
        if kind == K.DERIVED_TO_BASE:
            return self._derived_to_base(e)
        if kind == K.BASE_TO_DERIVED:
            return self._base_to_derived(e)
        if kind == K.DYNAMIC:
            raise UnsupportedConstruct("dynamic_cast needs run-time type information", e.loc)
        return self.numeric_cast(self.value(e.operand), e.operand.type, e.type)

    def _integral(self, expr: Any) -> RExpr:
        value = self.value(expr)
        if isinstance(strip_reference(expr.type), EnumType):
            return FieldAccess(value, "0")
        return value

    def enum_underlying(self, t: EnumType) -> RustType:
        sym = self.index.get(t.decl_id)
        if sym is None:
            return Prim("i32")
        return self.rust(sym.decl.underlying)

    def numeric_cast(self, value: RExpr, source: ResolvedType, target: ResolvedType) -> RExpr:
        source = strip_reference(source)
        target = strip_reference(target)
        source_ty = self.rust(source)
        if isinstance(source, EnumType):
            value = FieldAccess(value, "0")
            source_ty = self.enum_underlying(source)
        if isinstance(target, EnumType):
            underlying = self.enum_underlying(target)
            inner = value if source_ty == underlying else Cast(value, underlying)
            return Call(PathExpr(self.index.get(target.decl_id).path), (inner,))
        target_ty = self.rust(target)
        if source_ty == target_ty:
            return value
        if isinstance(target, PrimitiveType) and target.name == PrimitiveKind.BOOL:
            return Binary("!=", value, Lit("0"))
        return Cast(value, target_ty)

    def _derived_to_base(self, e: ast.CastExpr) -> RExpr:
        derived = record_id_of(e.operand.type)
        base = record_id_of(e.type)
        steps = self.layouts.path_to_base(derived, base) if derived and base else None
        if steps is None:
            raise UnsupportedConstruct("conversion to an unrelated base class", e.loc)
        if is_pointer(strip_reference(e.type)):
            pointer = self.value(e.operand)
            if not steps:
                return pointer
            self.mark_unsafe()
            return self.base_pointer(pointer, steps, not strip_reference(e.type).is_const)
        return self.walk(self.lower(e.operand), steps)

    def base_pointer(self, pointer: RExpr, steps: tuple[PathStep, ...], mutable: bool) -> RExpr:
        """Pointer to a base subobject, taken one field address at a time.

        ``ManuallyDrop`` is ``repr(transparent)``: a managed base field starts
        at the base object itself, so its address is cast rather than deref'd.
        """
        for step in steps:
            base_ty = RawPtr(self.rust(RecordType(name="", decl_id=step.record_id)), mutable=mutable)
            access = field_of(Unary("*", pointer), step.field)
            if step.kind == StepKind.INDIRECT:
                # The field already holds the virtual base's address.
                pointer = access if mutable else Cast(access, base_ty)
            else:
                pointer = Cast(self.address_of(access, mutable), base_ty)
        return pointer

    def _base_to_derived(self, e: ast.CastExpr) -> RExpr:
        base = record_id_of(e.operand.type)
        derived = record_id_of(e.type)
        steps = self.layouts.path_to_base(derived, base) if derived and base else None
        if steps is None:
            raise UnsupportedConstruct("downcast to an unrelated class", e.loc)
        if any(s.kind == StepKind.INDIRECT for s in steps):
            raise UnsupportedConstruct("downcast from a virtual base", e.loc)
        pointer_cast = is_pointer(strip_reference(e.type))
        target_ty = RawPtr(self.rust(RecordType(name="", decl_id=derived)))
        self.mark_unsafe()
        if pointer_cast:
            pointer = self.value(e.operand)
        else:
            pointer = self.address_of(self.lower(e.operand), True)
        if steps:
            offset = self.offset_of(derived, steps)
            pointer = MethodCall(Cast(pointer, RawPtr(Prim("u8"))), "sub", (offset,))
        converted = Cast(pointer, target_ty)
        return converted if pointer_cast else Unary("*", converted)

    def offset_of(self, record_id: int, steps: tuple[PathStep, ...]) -> RExpr:
        """Byte offset of the subobject reached by ``steps`` inside ``record_id``."""
        total: RExpr | None = None
        current = record_id
        for step in steps:
            term = Macro(
                "std::mem::offset_of",
                (PathExpr(self.index.record_path(current)), Lit(step.field)),
            )
            total = term if total is None else Binary("+", total, term)
            current = step.record_id
        return total if total is not None else Lit("0")

    # ── aggregates ───────────────────────────────────────────────

    def _lower_init_list(self, e: ast.InitListExpr) -> RExpr:
        return self.init_list(strip_reference(e.type), e.inits, e.loc)

    def init_list(self, t: ResolvedType, inits: list, loc=ast.NO_SOURCE_LOCATION) -> RExpr:
        if isinstance(t, ArrayType):
            elems = [self.value(i) for i in inits]
            if t.length is not None and len(elems) < t.length:
                if not elems:
                    return self.mapper.default_value(t)
                filler = self.mapper.default_value(t.element)
                elems.extend(filler for _ in range(t.length - len(elems)))
            return ArrayLit(tuple(elems))
        if isinstance(t, RecordType):
            return self.aggregate(t.decl_id, inits, loc)
        if isinstance(t, StdLibType):
            return stdlib.init_list(self, t, inits)
        if inits:
            return self.value(inits[0])
        return self.mapper.default_value(t)

    def aggregate(self, record_id: int, inits: list, loc=ast.NO_SOURCE_LOCATION) -> RExpr:
        layout = self.layouts.layout_of(record_id)
        if layout.bases or layout.polymorphic or layout.virtual_bases:
            raise UnsupportedConstruct(
                f"aggregate initialization of '{layout.name}' with bases", loc
            )
        fields = []
        for i, f in enumerate(layout.fields):
            if i < len(inits):
                v = self.init_value(inits[i], f.cpp_type, TypePosition.FIELD)
            elif f.decl is not None and f.decl.default_init is not None:
                v = self.init_value(f.decl.default_init, f.cpp_type, TypePosition.FIELD)
            else:
                v = self.mapper.default_value(f.cpp_type)
            fields.append((f.name, manually_drop(v) if f.managed else v))
        return StructLit(self.index.record_path(record_id), tuple(fields))

    def _lower_sizeof(self, e: ast.SizeOfExpr) -> RExpr:
        size = Call(ext("std::mem::size_of", self.rust(e.operand_type, TypePosition.ELEMENT)))
        return Cast(size, self.rust(e.type))

    # ── lambdas and exceptions ───────────────────────────────────

    def _lower_lambda(self, e: ast.LambdaExpr) -> RExpr:
        bindings = self._auto_bindings(e)
        self.closure_params[e.node_id] = [
            bindings.get(p.type.index, p.type) if isinstance(p.type, AutoParamType) else p.type
            for p in e.params
        ]
        saved = self.mapper.auto_bindings
        self.mapper.auto_bindings = {**saved, **bindings}
        try:
            return self._closure(e)
        finally:
            self.mapper.auto_bindings = saved

    def _auto_bindings(self, e: ast.LambdaExpr) -> dict[int, ResolvedType]:
        auto = [
            (i, p.type.index)
            for i, p in enumerate(e.params)
            if isinstance(p.type, AutoParamType)
        ]
        if not auto:
            return {}
        distinct: list[list[ResolvedType]] = []
        for inst in e.instantiations:
            if inst not in distinct:
                distinct.append(inst)
        if len(distinct) != 1:
            raise UnsupportedConstruct(
                f"generic lambda with {len(distinct)} distinct instantiations", e.loc
            )
        chosen = distinct[0]
        return {index: chosen[i] for i, index in auto if i < len(chosen)}

    def _closure(self, e: ast.LambdaExpr) -> RExpr:
        outer = self.ctx
        inner = outer.closure_child(e.return_type)
        prelude = []
        for cap in e.captures:
            if cap.name == "this":
                prelude.append(Let(constants.CAPTURED_THIS, init=self._lower_this(
                    ast.ThisExpr(type=PointerType(pointee=RecordType(name="", decl_id=outer.record_id)))
                )))
                inner.self_mode = SelfMode.POINTER
                inner.record_id = outer.record_id
                continue
            if cap.init is not None:
                info = inner.declare(cap.decl_id, cap.name, LocalKind.VALUE, cap.captured_type)
                prelude.append(Let(info.name, init=self.value(cap.init)))
                continue
            captured = outer.locals.get(cap.decl_id)
            if captured is None:
                raise UnsupportedConstruct(f"capture of non-local '{cap.name}'", e.loc)
            place = self.local_place(captured)
            if cap.by_ref:
                info = inner.declare(cap.decl_id, cap.name, LocalKind.POINTER, captured.type)
                prelude.append(Let(info.name, init=self.address_of(place, True), mutable=False))
            else:
                info = inner.declare(cap.decl_id, cap.name, LocalKind.VALUE, captured.type)
                prelude.append(Let(info.name, init=MethodCall(place, "clone")))
        params = []
        for i, p in enumerate(e.params):
            kind = LocalKind.BORROW if isinstance(p.type, ReferenceType) else LocalKind.VALUE
            info = inner.declare(p.node_id, p.name or f"_arg{i}", kind, strip_reference(p.type))
            params.append(
                ClosureParam(info.name, self.rust(p.type, TypePosition.PARAM), mutable=kind == LocalKind.VALUE)
            )
        body = self.statements.lower_closure_body(e.body, inner)
        ret = self.rust(e.return_type, TypePosition.RETURN)
        closure = Closure(tuple(params), body, None if ret == UNIT else ret, is_move=True)
        return Block(tuple(prelude), tail=closure)

    def _lower_throw(self, e: ast.ThrowExpr) -> RExpr:
        self.mark_unsafe()
        if e.operand is None:
            if self.ctx.catch_stack:
                return Call(self.rt(constants.RT_RETHROW), (Var(self.ctx.catch_stack[-1]),))
            return Call(self.rt(constants.RT_RETHROW_CURRENT))
        return Call(self.rt(constants.RT_THROW), (self.value(e.operand),))
