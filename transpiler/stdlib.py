"""Standard library lowering: containers, smart pointers, strings and streams.

The front end does not index ``std`` declarations, so calls into the
library reach the core as unresolved names or as method/operator calls
with no ``method_id``.  Each is matched by template and member name against
the tables below and rewritten to the Rust standard library equivalent.
Anything unmatched is an ``UnsupportedConstruct``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from . import constants
from . import cpp_ast as ast
from .cpp_ast import strip_implicit, strip_parens
from .cpp_types import (
    FunctionType,
    PointerType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    ResolvedType,
    StdLibType,
    strip_reference,
)
from .diagnostics import UnsupportedConstruct
from .literals import rust_str
from .target_ir import (
    ArrayLit,
    Assign,
    Binary,
    Block,
    Call,
    Cast,
    Closure,
    ClosureParam,
    FieldAccess,
    If,
    Index,
    Infer,
    Let,
    Lit,
    Macro,
    MethodCall,
    Named,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    RExpr,
    TupleLit,
    Unary,
    Var,
)
from .type_mapper import TypePosition, normalize_template

if TYPE_CHECKING:
    from .expr_lowerer import ExpressionLowerer

logger = logging.getLogger(__name__)

SEQUENCES = ("std::vector", "std::deque")
MAPS = ("std::map", "std::unordered_map")
SETS = ("std::set", "std::unordered_set")
STRINGS = ("std::string", "std::basic_string")
SMART_POINTERS = ("std::unique_ptr", "std::shared_ptr")

_OUTPUT_STREAMS = {"std::cout": "print", "std::cerr": "eprint", "std::clog": "eprint"}
_STREAM_MANIPULATORS = {"std::endl": "\n", "std::flush": ""}


def template_of(t: ResolvedType) -> str | None:
    t = strip_reference(t)
    return normalize_template(t.template) if isinstance(t, StdLibType) else None


def is_template(t: ResolvedType, *names: str) -> bool:
    return template_of(t) in names


def _ext(text: str, *generics) -> PathExpr:
    return PathExpr(Path.external_path(text), generics)


def _usize(value: RExpr) -> RExpr:
    if isinstance(value, Lit) and value.text.isdigit():
        return value
    return Cast(value, Prim("usize"))


def _callee_name(expr: Any) -> str | None:
    expr = strip_implicit(expr)
    if isinstance(expr, ast.DeclRefExpr):
        return normalize_template(expr.name)
    return None


def moved_operand(expr: Any) -> Any | None:
    """The operand of ``std::move(x)``, or None."""
    if isinstance(expr, ast.CallExpr) and len(expr.args) == 1:
        if _callee_name(expr.callee) == "std::move":
            return expr.args[0]
    return None


def _is_char(t: ResolvedType) -> bool:
    t = strip_reference(t)
    return isinstance(t, PrimitiveType) and t.name in (
        PrimitiveKind.CHAR,
        PrimitiveKind.SIGNED_CHAR,
        PrimitiveKind.UNSIGNED_CHAR,
    )


def _is_bool(t: ResolvedType) -> bool:
    t = strip_reference(t)
    return isinstance(t, PrimitiveType) and t.name == PrimitiveKind.BOOL


def _literal_text(expr: Any) -> str | None:
    """Text of a string literal, seen through array-to-pointer decay."""
    expr = strip_parens(expr)
    if isinstance(expr, ast.CastExpr) and expr.cast_kind == ast.CastKind.ARRAY_TO_POINTER_DECAY:
        expr = strip_parens(expr.operand)
    if isinstance(expr, ast.StringLiteral):
        return expr.value
    return None


def _is_char_pointer(t: ResolvedType) -> bool:
    t = strip_reference(t)
    return isinstance(t, PointerType) and _is_char(t.pointee)


def as_char(value: RExpr) -> RExpr:
    return Cast(Cast(value, Prim("u8")), Prim("char"))


# ── free functions ───────────────────────────────────────────────


def lower_call(lowerer: ExpressionLowerer, name: str, e: ast.CallExpr) -> RExpr | None:
    """Lower a call to an unresolved ``std`` function, or return None."""
    name = normalize_template(name)
    handler = _FUNCTIONS.get(name)
    if handler is None:
        return None
    return handler(lowerer, e)


def _move(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    return lowerer.take(e.args[0])


def _forward(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    return lowerer.lower(e.args[0])


def _pointee(e: Any) -> ResolvedType:
    t = strip_reference(e.type)
    if isinstance(t, StdLibType) and t.args:
        return t.args[0]
    raise UnsupportedConstruct(f"cannot tell what '{t.spelling()}' points to", e.loc)


def _construct_value(lowerer: ExpressionLowerer, t: ResolvedType, args: list, loc) -> RExpr:
    if isinstance(t, RecordType):
        return lowerer.construct_record(t.decl_id, 0, args, loc)
    if isinstance(t, StdLibType):
        return construct(lowerer, t, args)
    if args:
        return lowerer.value(args[0])
    return lowerer.mapper.default_value(t)


def _make_unique(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    inner = _construct_value(lowerer, _pointee(e), e.args, e.loc)
    return Call(_ext("Box::new"), (inner,))


def _make_shared(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    inner = _construct_value(lowerer, _pointee(e), e.args, e.loc)
    return Call(_ext("std::sync::Arc::new"), (inner,))


def _swap(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    a, b = (Unary("&mut", lowerer.lower(arg)) for arg in e.args[:2])
    return Call(_ext("std::mem::swap"), (a, b))


def _pick(op: str) -> Callable[[ExpressionLowerer, ast.CallExpr], RExpr]:
    def pick(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
        a, b = (lowerer.value(arg) for arg in e.args[:2])
        cond = Binary(op, Var("__b"), Var("__a"))
        return Block(
            (Let("__a", init=a, mutable=False), Let("__b", init=b, mutable=False)),
            tail=If(cond, Block(tail=Var("__b")), Block(tail=Var("__a"))),
        )

    return pick


def _method_on_arg(method: str) -> Callable[[ExpressionLowerer, ast.CallExpr], RExpr]:
    def call(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
        return MethodCall(lowerer.value(e.args[0]), method, tuple(lowerer.value(a) for a in e.args[1:]))

    return call


def _to_string(lowerer: ExpressionLowerer, e: ast.CallExpr) -> RExpr:
    return MethodCall(lowerer.value(e.args[0]), "to_string")


_FUNCTIONS: dict[str, Callable[[ExpressionLowerer, ast.CallExpr], RExpr]] = {
    "std::move": _move,
    "std::forward": _forward,
    "std::make_unique": _make_unique,
    "std::make_shared": _make_shared,
    "std::swap": _swap,
    "std::min": _pick("<"),
    "std::max": _pick(">"),
    "std::abs": _method_on_arg("abs"),
    "std::sqrt": _method_on_arg("sqrt"),
    "std::floor": _method_on_arg("floor"),
    "std::ceil": _method_on_arg("ceil"),
    "std::pow": _method_on_arg("powf"),
    "std::to_string": _to_string,
}


# ── member functions ─────────────────────────────────────────────


def _object_type(e: ast.MemberCallExpr) -> ResolvedType:
    t = strip_reference(e.object.type)
    if e.is_arrow and isinstance(t, PointerType):
        t = t.pointee
    return t


def lower_method(lowerer: ExpressionLowerer, e: ast.MemberCallExpr) -> RExpr:
    t = _object_type(e)
    template = template_of(t)
    if template is None:
        raise UnsupportedConstruct(
            f"call of '{e.method}' on '{t.spelling()}' has no known target", e.loc
        )
    obj = lowerer.object_place(e.object, e.is_arrow)
    for family, table in _METHOD_TABLES:
        if template in family:
            handler = table.get(e.method)
            if handler is not None:
                return handler(lowerer, obj, t, e)
    raise UnsupportedConstruct(f"'{template}::{e.method}' has no lowering", e.loc)


Method = Callable[["ExpressionLowerer", RExpr, StdLibType, ast.MemberCallExpr], RExpr]


def _simple(method: str, usize_args: bool = False) -> Method:
    def call(lowerer, obj, t, e):
        args = tuple(lowerer.value(a) for a in e.args)
        if usize_args:
            args = tuple(_usize(a) for a in args)
        return MethodCall(obj, method, args)

    return call


def _size(lowerer, obj, t, e) -> RExpr:
    return Cast(MethodCall(obj, "len"), lowerer.rust(e.type))


def _element_value(lowerer, t: StdLibType, arg: Any) -> RExpr:
    element = t.args[0] if t.args else None
    if element is not None and is_template(element, *STRINGS):
        text = _literal_text(arg)
        if text is not None:
            return Call(_ext("String::from"), (rust_str(text),))
    moved = moved_operand(arg)
    if moved is not None:
        return lowerer.take(moved)
    return lowerer.value(arg)


def _push(method: str) -> Method:
    def call(lowerer, obj, t, e):
        return MethodCall(obj, method, (_element_value(lowerer, t, e.args[0]),))

    return call


def _emplace(method: str) -> Method:
    def call(lowerer, obj, t, e):
        element = t.args[0] if t.args else None
        if len(e.args) == 1 and not isinstance(element, RecordType):
            value = _element_value(lowerer, t, e.args[0])
        else:
            value = _construct_value(lowerer, element, e.args, e.loc)
        return MethodCall(obj, method, (value,))

    return call


def _unwrapped(method: str) -> Method:
    def call(lowerer, obj, t, e):
        return Unary("*", MethodCall(MethodCall(obj, method), "unwrap"))

    return call


def _front(lowerer, obj, t, e) -> RExpr:
    return Index(obj, Lit("0"))


def _at(lowerer, obj, t, e) -> RExpr:
    return Index(obj, lowerer.as_usize(e.args[0]))


def _resize(lowerer, obj, t, e) -> RExpr:
    n = lowerer.as_usize(e.args[0])
    if len(e.args) > 1:
        fill = lowerer.value(e.args[1])
    else:
        fill = lowerer.mapper.default_value(t.args[0]) if t.args else Lit("0")
    return MethodCall(obj, "resize", (n, fill))


def _data(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "as_mut_ptr")


def _c_str(lowerer, obj, t, e) -> RExpr:
    lowerer.mark_unsafe()
    return Call(lowerer.rt(constants.RT_CSTR), (Unary("&", obj),))


def _string_push(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "push", (as_char(lowerer.value(e.args[0])),))


def _string_append(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "push_str", (_str_operand(lowerer, e.args[0]),))


def _substr(lowerer, obj, t, e) -> RExpr:
    chars: RExpr = MethodCall(MethodCall(obj, "chars"), "skip", (lowerer.as_usize(e.args[0]),))
    if len(e.args) > 1:
        chars = MethodCall(chars, "take", (lowerer.as_usize(e.args[1]),))
    return MethodCall(chars, "collect", generics=(Named(Path.external_path("String")),))


def _contains(method: str) -> Method:
    def call(lowerer, obj, t, e):
        found = MethodCall(obj, method, (Unary("&", lowerer.value(e.args[0])),))
        return Cast(found, lowerer.rust(e.type))

    return call


def _remove(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "remove", (Unary("&", lowerer.value(e.args[0])),))


def _map_at(lowerer, obj, t, e) -> RExpr:
    key = Unary("&", lowerer.value(e.args[0]))
    return Unary("*", MethodCall(MethodCall(obj, "get_mut", (key,)), "unwrap"))


def _set_insert(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "insert", (_element_value(lowerer, t, e.args[0]),))


def _box_get(lowerer, obj, t, e) -> RExpr:
    return lowerer.address_of(Unary("*", obj), True)


def _arc_get(lowerer, obj, t, e) -> RExpr:
    target = lowerer.rust(t.args[0], TypePosition.ELEMENT) if t.args else Infer()
    return Cast(Call(_ext("std::sync::Arc::as_ptr"), (Unary("&", obj),)), RawPtr(target))


def _use_count(lowerer, obj, t, e) -> RExpr:
    count = Call(_ext("std::sync::Arc::strong_count"), (Unary("&", obj),))
    return Cast(count, lowerer.rust(e.type))


def _lock(lowerer, obj, t, e) -> RExpr:
    return MethodCall(MethodCall(obj, "upgrade"), "expect", (rust_str("expired weak_ptr"),))


def _expired(lowerer, obj, t, e) -> RExpr:
    return Binary("==", MethodCall(obj, "strong_count"), Lit("0"))


def _has_value(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "is_some")


def _value_or(lowerer, obj, t, e) -> RExpr:
    return MethodCall(MethodCall(obj, "clone"), "unwrap_or", (lowerer.value(e.args[0]),))


def _reset_optional(lowerer, obj, t, e) -> RExpr:
    return MethodCall(obj, "take")


_SEQUENCE_METHODS: dict[str, Method] = {
    "push_back": _push("push"),
    "emplace_back": _emplace("push"),
    "pop_back": _simple("pop"),
    "size": _size,
    "empty": _simple("is_empty"),
    "clear": _simple("clear"),
    "back": _unwrapped("last_mut"),
    "front": _front,
    "at": _at,
    "reserve": _simple("reserve", usize_args=True),
    "resize": _resize,
    "data": _data,
}

_DEQUE_METHODS: dict[str, Method] = {
    "push_back": _push("push_back"),
    "push_front": _push("push_front"),
    "emplace_back": _emplace("push_back"),
    "emplace_front": _emplace("push_front"),
    "pop_back": _simple("pop_back"),
    "pop_front": _simple("pop_front"),
    "size": _size,
    "empty": _simple("is_empty"),
    "clear": _simple("clear"),
    "back": _unwrapped("back_mut"),
    "front": _unwrapped("front_mut"),
    "at": _at,
}

_STRING_METHODS: dict[str, Method] = {
    "size": _size,
    "length": _size,
    "empty": _simple("is_empty"),
    "clear": _simple("clear"),
    "c_str": _c_str,
    "data": _c_str,
    "push_back": _string_push,
    "append": _string_append,
    "substr": _substr,
}

_MAP_METHODS: dict[str, Method] = {
    "size": _size,
    "empty": _simple("is_empty"),
    "clear": _simple("clear"),
    "count": _contains("contains_key"),
    "erase": _remove,
    "at": _map_at,
}

_SET_METHODS: dict[str, Method] = {
    "size": _size,
    "empty": _simple("is_empty"),
    "clear": _simple("clear"),
    "count": _contains("contains"),
    "erase": _remove,
    "insert": _set_insert,
}

_METHOD_TABLES: tuple[tuple[tuple[str, ...], dict[str, Method]], ...] = (
    (("std::vector",), _SEQUENCE_METHODS),
    (("std::deque",), _DEQUE_METHODS),
    (STRINGS, _STRING_METHODS),
    (MAPS, _MAP_METHODS),
    (SETS, _SET_METHODS),
    (("std::unique_ptr",), {"get": _box_get}),
    (("std::shared_ptr",), {"get": _arc_get, "use_count": _use_count}),
    (("std::weak_ptr",), {"lock": _lock, "expired": _expired}),
    (
        ("std::optional",),
        {
            "has_value": _has_value,
            "value": _unwrapped("as_mut"),
            "value_or": _value_or,
            "reset": _reset_optional,
        },
    ),
)


# ── smart pointers and members ───────────────────────────────────


def smart_pointer_place(lowerer: ExpressionLowerer, e: ast.OperatorCallExpr) -> RExpr | None:
    """Place of the object a ``unique_ptr``/``shared_ptr`` points to."""
    if not e.args:
        return None
    t = strip_reference(e.args[0].type)
    template = template_of(t)
    if template == "std::unique_ptr":
        return Unary("*", lowerer.lower(e.args[0]))
    if template == "std::shared_ptr":
        lowerer.mark_unsafe()
        return Unary("*", _arc_get(lowerer, lowerer.lower(e.args[0]), t, e))
    if template == "std::weak_ptr":
        raise UnsupportedConstruct("dereference of a weak_ptr without lock()", e.loc)
    return None


def member_place(lowerer: ExpressionLowerer, e: ast.MemberExpr) -> RExpr:
    t = strip_reference(e.base.type)
    if e.is_arrow and isinstance(t, PointerType):
        t = t.pointee
    if template_of(t) == "std::pair" and e.member in ("first", "second"):
        obj = lowerer.object_place(e.base, e.is_arrow)
        return FieldAccess(obj, "0" if e.member == "first" else "1")
    raise UnsupportedConstruct(f"member '{e.member}' of '{t.spelling()}'", e.loc)


# ── operators ────────────────────────────────────────────────────


def lower_operator(lowerer: ExpressionLowerer, e: ast.OperatorCallExpr) -> RExpr:
    op = e.operator
    if op == "<<":
        printed = _stream_output(lowerer, e)
        if printed is not None:
            return printed
    lhs_type = strip_reference(e.args[0].type) if e.args else None
    template = template_of(lhs_type) if lhs_type is not None else None
    if op in ("*", "->") and len(e.args) == 1:
        place = smart_pointer_place(lowerer, e)
        if place is not None:
            return place
    if op == "[]" and template is not None:
        obj = lowerer.lower(e.args[0])
        if template in MAPS:
            key = convert(lowerer, lhs_type.args[0], e.args[1]) if lhs_type.args else lowerer.value(e.args[1])
            return Unary("*", MethodCall(MethodCall(obj, "entry", (key,)), "or_default"))
        if template in STRINGS:
            byte = Index(MethodCall(obj, "as_bytes"), lowerer.as_usize(e.args[1]))
            return Cast(byte, lowerer.rust(e.type))
        return Index(obj, lowerer.as_usize(e.args[1]))
    if template in STRINGS or (len(e.args) == 2 and is_template(e.args[1].type, *STRINGS)):
        lowered = _string_operator(lowerer, e, template in STRINGS)
        if lowered is not None:
            return lowered
    if op == "=" and template is not None:
        target = lowerer.lower(e.args[0])
        return Assign(target, convert(lowerer, lhs_type, e.args[1]))
    if op in ("==", "!=", "<", ">", "<=", ">=") and len(e.args) == 2:
        return Binary(op, _operand(lowerer, e.args[0]), _operand(lowerer, e.args[1]))
    raise UnsupportedConstruct(
        f"operator '{op}' on '{lhs_type.spelling() if lhs_type else '?'}'", e.loc
    )


def _operand(lowerer: ExpressionLowerer, expr: Any) -> RExpr:
    """Comparison operand: places compare in place, without a copy."""
    text = _literal_text(expr)
    if text is not None:
        return rust_str(text)
    if lowerer.is_glvalue(expr):
        return lowerer.lower(expr)
    return lowerer.value(expr)


def _str_operand(lowerer: ExpressionLowerer, expr: Any) -> RExpr:
    """A ``&str``-compatible view of a string-ish operand."""
    text = _literal_text(expr)
    if text is not None:
        return rust_str(text)
    if _is_char_pointer(expr.type):
        lowerer.mark_unsafe()
        return Unary("&", Call(lowerer.rt(constants.RT_FROM_CSTR), (lowerer.value(expr),)))
    return Unary("&", _operand(lowerer, expr))


def _string_operator(lowerer: ExpressionLowerer, e: ast.OperatorCallExpr, lhs_is_string: bool) -> RExpr | None:
    op = e.operator
    if op == "+=" and lhs_is_string:
        target = lowerer.lower(e.args[0])
        rhs = e.args[1]
        if _is_char(rhs.type):
            return MethodCall(target, "push", (as_char(lowerer.value(rhs)),))
        return MethodCall(target, "push_str", (_str_operand(lowerer, rhs),))
    if op == "+" and len(e.args) == 2:
        parts = []
        for arg in e.args:
            if _is_char(arg.type):
                parts.append(as_char(lowerer.value(arg)))
            else:
                text = _literal_text(arg)
                parts.append(rust_str(text) if text is not None else _operand(lowerer, arg))
        return Macro("format", (rust_str("{}{}"),) + tuple(parts))
    return None


def convert(lowerer: ExpressionLowerer, target: ResolvedType, expr: Any) -> RExpr:
    """Value of ``expr`` converted for storage in a ``target`` object."""
    target = strip_reference(target)
    if is_template(target, *STRINGS):
        text = _literal_text(expr)
        if text is not None:
            return Call(_ext("String::from"), (rust_str(text),))
        if _is_char_pointer(expr.type):
            lowerer.mark_unsafe()
            return Call(lowerer.rt(constants.RT_FROM_CSTR), (lowerer.value(expr),))
    if is_template(target, "std::function"):
        inner = strip_implicit(expr)
        if isinstance(inner, ast.LambdaExpr) or isinstance(strip_reference(expr.type), FunctionType):
            return Call(_ext("Box::new"), (lowerer.value(expr),))
    moved = moved_operand(expr)
    if moved is not None:
        return lowerer.take(moved)
    return lowerer.value(expr)


def _stream_output(lowerer: ExpressionLowerer, e: ast.OperatorCallExpr) -> RExpr | None:
    """``std::cout << a << b << std::endl`` as a single ``print!``."""
    items: list[Any] = []
    node: Any = e
    while isinstance(node, ast.OperatorCallExpr) and node.operator == "<<" and len(node.args) == 2:
        items.append(node.args[1])
        node = strip_implicit(node.args[0])
    macro = _OUTPUT_STREAMS.get(_callee_name(node) or "")
    if macro is None:
        return None
    fmt: list[str] = []
    args: list[RExpr] = []
    for item in reversed(items):
        name = _callee_name(item)
        if name in _STREAM_MANIPULATORS:
            fmt.append(_STREAM_MANIPULATORS[name])
            continue
        text = _literal_text(item)
        if text is not None:
            fmt.append(text.replace("{", "{{").replace("}", "}}"))
            continue
        fmt.append("{}")
        t = strip_reference(item.type)
        if _is_char(t):
            args.append(as_char(lowerer.value(item)))
        elif _is_bool(t):
            args.append(Cast(lowerer.value(item), Prim("i32")))
        elif _is_char_pointer(t):
            lowerer.mark_unsafe()
            args.append(Call(lowerer.rt(constants.RT_FROM_CSTR), (lowerer.value(item),)))
        else:
            args.append(_operand(lowerer, item))
    return Macro(macro, (rust_str("".join(fmt)),) + tuple(args))


# ── construction ─────────────────────────────────────────────────


def construct(lowerer: ExpressionLowerer, t: StdLibType, args: list) -> RExpr:
    template = template_of(t)
    if len(args) == 1 and template_of(args[0].type) == template:
        return lowerer.copy_of(args[0])
    if not args:
        return lowerer.mapper.default_value(t)
    if template in STRINGS:
        return convert(lowerer, t, args[0])
    if template in SEQUENCES:
        count = lowerer.as_usize(args[0])
        fill = lowerer.value(args[1]) if len(args) > 1 else lowerer.mapper.default_value(t.args[0])
        repeated = MethodCall(Call(_ext("std::iter::repeat"), (fill,)), "take", (count,))
        return MethodCall(repeated, "collect", generics=(lowerer.rust(t),))
    if template in SMART_POINTERS:
        wrapper = "Box" if template == "std::unique_ptr" else "std::sync::Arc"
        source = strip_implicit(args[0])
        if isinstance(source, ast.NewExpr) and source.array_size is None:
            inner = (
                lowerer.value(source.init)
                if source.init is not None
                else lowerer.mapper.default_value(source.allocated)
            )
            return Call(_ext(f"{wrapper}::new"), (inner,))
        lowerer.mark_unsafe()
        return Call(_ext(f"{wrapper}::from_raw"), (lowerer.value(args[0]),))
    if template == "std::function":
        return convert(lowerer, t, args[0])
    if template == "std::optional":
        return Call(_ext("Some"), (convert(lowerer, t.args[0], args[0]),))
    if template == "std::pair" and len(args) == 2:
        return TupleLit(tuple(convert(lowerer, a_t, a) for a_t, a in zip(t.args, args)))
    raise UnsupportedConstruct(f"construction of '{t.spelling()}' from {len(args)} arguments")


def init_list(lowerer: ExpressionLowerer, t: StdLibType, inits: list) -> RExpr:
    template = template_of(t)
    element = t.args[0] if t.args else None
    if template in SEQUENCES or template in SETS:
        elems = tuple(convert(lowerer, element, i) if element else lowerer.value(i) for i in inits)
        if template == "std::vector":
            return Macro("vec", elems)
        return Call(PathExpr(Path.external_path(_rust_container(lowerer, t)).member("from")), (ArrayLit(elems),))
    if template in MAPS:
        pairs = []
        for init in inits:
            inner = strip_parens(init)
            if not isinstance(inner, ast.InitListExpr) or len(inner.inits) != 2:
                raise UnsupportedConstruct("map initializer entry is not a {key, value} pair", init.loc)
            key_t, value_t = (t.args + [None, None])[:2]
            pairs.append(
                TupleLit(
                    (
                        convert(lowerer, key_t, inner.inits[0]),
                        convert(lowerer, value_t, inner.inits[1]),
                    )
                )
            )
        return Call(PathExpr(Path.external_path(_rust_container(lowerer, t)).member("from")), (ArrayLit(tuple(pairs)),))
    if template == "std::pair" and len(inits) == 2:
        return TupleLit(tuple(convert(lowerer, a_t, a) for a_t, a in zip(t.args, inits)))
    if template in STRINGS and inits:
        return convert(lowerer, t, inits[0])
    if not inits:
        return lowerer.mapper.default_value(t)
    raise UnsupportedConstruct(f"brace initialization of '{t.spelling()}'")


def _rust_container(lowerer: ExpressionLowerer, t: StdLibType) -> str:
    mapped = lowerer.rust(t)
    if isinstance(mapped, Named):
        return "::".join(mapped.path.module + mapped.path.item)
    raise UnsupportedConstruct(f"no Rust container for '{t.spelling()}'")


# ── range-based for ──────────────────────────────────────────────


def range_iterable(
    lowerer: ExpressionLowerer, range_expr: Any, by_ref: bool, is_const: bool
) -> RExpr:
    """Iterator expression for ``for (var : range)``."""
    t = strip_reference(range_expr.type)
    template = template_of(t)
    place = lowerer.lower(range_expr) if lowerer.is_glvalue(range_expr) else lowerer.value(range_expr)
    if template in MAPS:
        if by_ref and not is_const:
            raise UnsupportedConstruct("iteration over a map by mutable reference", range_expr.loc)
        return _map_pairs(place)
    if template in STRINGS:
        return MethodCall(MethodCall(place, "bytes"), "map", (_byte_to_char_closure(),))
    if by_ref:
        return MethodCall(place, "iter" if is_const else "iter_mut")
    return MethodCall(MethodCall(place, "iter"), "cloned")


def _map_pairs(place: RExpr) -> RExpr:
    body = Block(
        tail=TupleLit((MethodCall(Var("k"), "clone"), MethodCall(Var("v"), "clone")))
    )
    closure = Closure((ClosureParam("(k, v)"),), body)
    return MethodCall(MethodCall(place, "iter"), "map", (closure,))


def _byte_to_char_closure() -> RExpr:
    return Closure((ClosureParam("b"),), Block(tail=Cast(Var("b"), Prim("i8"))))


