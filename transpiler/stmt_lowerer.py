"""Statement lowering: AST Model statements to target IR statements.

Control flow maps onto labelled Rust blocks: every loop gets a ``'loop_N``
label, a ``continue`` that must still run a ``for`` increment breaks out of
a ``'cont_N`` block, and ``switch`` becomes a ``'sw_N`` block of guarded
arms with an explicit fall-through flag.

``try`` bodies run inside a runtime closure.  A ``break``, ``continue`` or
``return`` that leaves the closure is returned from it as a ``Flow`` value
and replayed by the matching arm outside.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from . import constants
from . import cpp_ast as ast
from . import stdlib
from .cpp_types import (
    ArrayType,
    ReferenceType,
    StdLibType,
    is_void,
    strip_reference,
)
from .diagnostics import UnsupportedConstruct
from .expr_lowerer import ExpressionLowerer
from .lowering_types import FunctionContext, LocalKind, UnitContext
from .target_ir import (
    UNIT,
    Assign,
    Binary,
    Block,
    Break,
    Call,
    Closure,
    Continue,
    ExprStmt,
    ForIn,
    If,
    Infer,
    ItemStmt,
    Let,
    Lit,
    Loop,
    Macro,
    Match,
    MatchArm,
    MethodCall,
    Named,
    PathExpr,
    RawPtr,
    RExpr,
    Return,
    RStmt,
    RustStatic,
    Unary,
    Var,
    While,
)
from .type_mapper import TypePosition

logger = logging.getLogger(__name__)


@dataclass
class TryFrame:
    """Jumps that leave one ``try`` closure, replayed after it returns."""

    break_depth: int
    loop_depth: int
    escapes: list[RExpr] = field(default_factory=list)

    def escape(self, jump: RExpr) -> int:
        self.escapes.append(jump)
        return len(self.escapes) - 1


def ends_in_return(stmts: list[RStmt]) -> bool:
    if not stmts:
        return False
    last = stmts[-1]
    return isinstance(last, ExprStmt) and isinstance(last.expr, Return)


class StatementLowerer:
    """Lowers function, method and lambda bodies."""

    def __init__(self, unit: UnitContext, exprs: ExpressionLowerer):
        self.unit = unit
        self.exprs = exprs
        exprs.statements = self
        self._label_counter: int = 0
        self._loop_stack: list[dict[str, Any]] = []
        self._break_target_stack: list[str] = []
        self._try_stack: list[TryFrame] = []
        self._STMT_DISPATCH: dict[str, Callable[[Any], list[RStmt]]] = {
            "compound": self._lower_compound,
            "decl_stmt": self._lower_decl_stmt,
            "expr_stmt": self._lower_expr_stmt,
            "return": self._lower_return,
            "if": self._lower_if,
            "while": self._lower_while,
            "do": self._lower_do,
            "for": self._lower_for,
            "range_for": self._lower_range_for,
            "switch": self._lower_switch,
            "break": self._lower_break,
            "continue": self._lower_continue,
            "null": lambda s: [],
            "try": self._lower_try,
            "case": self._lower_stray_label,
            "default": self._lower_stray_label,
        }

    # ── helpers ──────────────────────────────────────────────────

    @property
    def ctx(self) -> FunctionContext:
        return self.exprs.ctx

    def _fresh_label(self, prefix: str) -> str:
        lbl = f"{prefix}_{self._label_counter}"
        self._label_counter += 1
        return lbl

    def guarded(self, build: Callable[[], RExpr]) -> RExpr:
        """Build a root expression, wrapped in ``unsafe`` when it needs one."""
        saved = self.exprs.needs_unsafe
        self.exprs.needs_unsafe = False
        try:
            expr = build()
            unsafe = self.exprs.needs_unsafe
        finally:
            self.exprs.needs_unsafe = saved
        if unsafe:
            return Block(tail=expr, unsafe=True)
        return expr

    def _guarded_stmt(self, build: Callable[[], RExpr]) -> RStmt:
        saved = self.exprs.needs_unsafe
        self.exprs.needs_unsafe = False
        try:
            expr = build()
            unsafe = self.exprs.needs_unsafe
        finally:
            self.exprs.needs_unsafe = saved
        if unsafe:
            return ExprStmt(Block((ExprStmt(expr),), unsafe=True))
        return ExprStmt(expr)

    def rt(self, name: str) -> PathExpr:
        return PathExpr(self.unit.rt(name))

    # ── entry points ─────────────────────────────────────────────

    @contextmanager
    def scope(self, ctx: FunctionContext) -> Iterator[None]:
        """Lower under ``ctx`` with fresh jump state."""
        saved = self._enter(ctx)
        try:
            yield
        finally:
            self._leave(saved)

    def global_initializer(self, t: Any, init: Any, declaration: str) -> RExpr:
        """Initial value of a global or static data member."""
        with self.scope(FunctionContext(declaration=declaration)):
            return self.guarded(lambda: self.initializer(t, init))

    def lower_closure_body(self, body: ast.CompoundStmt, ctx: FunctionContext) -> Block:
        saved_unsafe = self.exprs.needs_unsafe
        saved = self._enter(ctx)
        try:
            stmts = self.lower_stmts(body.body)
        finally:
            self._leave(saved)
            self.exprs.needs_unsafe = saved_unsafe
        if not is_void(ctx.return_type) and not ends_in_return(stmts):
            stmts.append(ExprStmt(Macro("unreachable")))
        return Block(tuple(stmts))

    def _enter(self, ctx: FunctionContext) -> tuple:
        saved = (self.exprs.ctx, self._loop_stack, self._break_target_stack, self._try_stack)
        self.exprs.ctx = ctx
        self._loop_stack = []
        self._break_target_stack = []
        self._try_stack = []
        return saved

    def _leave(self, saved: tuple) -> None:
        self.exprs.ctx, self._loop_stack, self._break_target_stack, self._try_stack = saved

    def lower_stmts(self, stmts: list) -> list[RStmt]:
        out: list[RStmt] = []
        for stmt in stmts:
            out.extend(self.lower_stmt(stmt))
        return out

    def lower_stmt(self, stmt: Any) -> list[RStmt]:
        handler = self._STMT_DISPATCH.get(stmt.kind)
        if handler is None:
            raise UnsupportedConstruct(f"statement kind '{stmt.kind}'", stmt.loc)
        return handler(stmt)

    def block(self, stmt: Any) -> Block:
        if isinstance(stmt, ast.CompoundStmt):
            return Block(tuple(self.lower_stmts(stmt.body)))
        return Block(tuple(self.lower_stmt(stmt)))

    # ── simple statements ────────────────────────────────────────

    def _lower_compound(self, stmt: ast.CompoundStmt) -> list[RStmt]:
        return [ExprStmt(Block(tuple(self.lower_stmts(stmt.body))))]

    def _lower_expr_stmt(self, stmt: ast.ExprStmt) -> list[RStmt]:
        def build() -> RExpr:
            lowered = self.exprs.discard(stmt.expr)
            # A reference result is a dereferenced pointer; do not read through it.
            if (
                isinstance(lowered, Unary)
                and lowered.op == "*"
                and isinstance(lowered.operand, (Call, MethodCall))
            ):
                return lowered.operand
            return lowered

        return [self._guarded_stmt(build)]

    def _lower_stray_label(self, stmt: Any) -> list[RStmt]:
        raise UnsupportedConstruct(f"'{stmt.kind}' label outside a switch body", stmt.loc)

    def _lower_decl_stmt(self, stmt: ast.DeclStmt) -> list[RStmt]:
        out: list[RStmt] = []
        for decl in stmt.decls:
            out.extend(self.lower_var(decl))
        return out

    def lower_var(self, decl: ast.VarDecl) -> list[RStmt]:
        if decl.is_static:
            return self._lower_local_static(decl)
        t = decl.type
        if isinstance(t, ReferenceType):
            init = decl.init
            if init is not None and self.exprs.is_glvalue(init):
                pointer_ty = RawPtr(self.exprs.rust(t.referent, TypePosition.ELEMENT), mutable=not t.is_const)
                value = self.guarded(
                    lambda: self.exprs.address_of(self.exprs.lower(init), not t.is_const)
                )
                info = self.ctx.declare(decl.node_id, decl.name, LocalKind.POINTER, t.referent)
                return [Let(info.name, pointer_ty, value, mutable=False)]
            # Bound to a temporary: the local owns it.
            t = t.referent
        value = self.guarded(lambda: self.initializer(t, decl.init))
        rust_ty = self.exprs.rust(t, TypePosition.LOCAL)
        info = self.ctx.declare(decl.node_id, decl.name, LocalKind.VALUE, t)
        return [Let(info.name, None if isinstance(rust_ty, Infer) else rust_ty, value)]

    def initializer(self, t: Any, init: Any) -> RExpr:
        """Value a new object of type ``t`` starts with."""
        if init is None:
            return self.exprs.mapper.default_value(t)
        if isinstance(t, StdLibType):
            return stdlib.convert(self.exprs, t, init)
        if isinstance(t, ArrayType) and isinstance(ast.strip_parens(init), ast.StringLiteral):
            return self.exprs.lower(init)
        return self.exprs.init_value(init, t, TypePosition.LOCAL)

    def _lower_local_static(self, decl: ast.VarDecl) -> list[RStmt]:
        t = strip_reference(decl.type)
        rust_ty = self.exprs.rust(t, TypePosition.FIELD)
        slot_ty = Named(self.unit.rt(constants.RT_GLOBAL_SLOT), (rust_ty,))
        slot_name = self._fresh_label(f"{constants.LOCAL_STATIC_PREFIX}{decl.name}")
        slot = RustStatic(
            name=slot_name,
            ty=slot_ty,
            init=Call(PathExpr(self.unit.rt(constants.RT_GLOBAL_SLOT).member("new"))),
        )
        init = self.guarded(lambda: self.initializer(t, decl.init))
        accessor = MethodCall(
            Var(slot_name), "get_or_init", (Closure((), Block(tail=init)),)
        )
        info = self.ctx.declare(decl.node_id, decl.name, LocalKind.POINTER, t)
        return [
            ItemStmt(slot),
            Let(info.name, RawPtr(rust_ty), accessor, mutable=False),
        ]

    # ── jumps ────────────────────────────────────────────────────

    def _escape(self, jump: RExpr, frames: list[TryFrame]) -> RExpr:
        """Route ``jump`` out through ``frames`` (outermost first)."""
        for frame in frames:
            index = frame.escape(jump)
            flow = Call(self._flow("Break"), (Lit(str(index)),))
            jump = Return(flow)
        return jump

    def _flow(self, variant: str) -> PathExpr:
        return PathExpr(self.unit.rt(constants.RT_FLOW).member(variant))

    def _lower_break(self, stmt: ast.BreakStmt) -> list[RStmt]:
        if not self._break_target_stack:
            raise UnsupportedConstruct("'break' outside a loop or switch", stmt.loc)
        target = len(self._break_target_stack) - 1
        jump = Break(self._break_target_stack[-1])
        frames = [f for f in self._try_stack if f.break_depth > target]
        return [ExprStmt(self._escape(jump, frames))]

    def _lower_continue(self, stmt: ast.ContinueStmt) -> list[RStmt]:
        if not self._loop_stack:
            raise UnsupportedConstruct("'continue' outside a loop", stmt.loc)
        target = len(self._loop_stack) - 1
        loop = self._loop_stack[-1]
        if loop["continue_block"]:
            loop["continue_used"] = True
            jump: RExpr = Break(loop["continue_label"])
        else:
            jump = Continue(loop["continue_label"])
        frames = [f for f in self._try_stack if f.loop_depth > target]
        return [ExprStmt(self._escape(jump, frames))]

    def _lower_return(self, stmt: ast.ReturnStmt) -> list[RStmt]:
        ctx = self.ctx
        out: list[RStmt] = []
        if ctx.return_label is not None:
            if stmt.value is not None:
                out.append(self._guarded_stmt(lambda: self.exprs.discard(stmt.value)))
            out.append(ExprStmt(self._escape(Break(ctx.return_label), list(self._try_stack))))
            return out
        value: RExpr | None = None
        if stmt.value is not None:
            if is_void(ctx.return_type):
                out.append(self._guarded_stmt(lambda: self.exprs.discard(stmt.value)))
            else:
                value = self.guarded(lambda: self.return_value(stmt.value))
        if self._try_stack:
            flow = Call(self._flow("Return"), (value if value is not None else Lit("()"),))
            out.append(ExprStmt(Return(flow)))
        else:
            out.append(ExprStmt(Return(value)))
        return out

    def return_value(self, expr: Any) -> RExpr:
        t = self.ctx.return_type
        if isinstance(strip_reference(t), StdLibType) and not isinstance(t, ReferenceType):
            return stdlib.convert(self.exprs, t, expr)
        return self.exprs.init_value(
            expr, t, TypePosition.RETURN, movable=self._is_own_local(expr)
        )

    def _is_own_local(self, expr: Any) -> bool:
        """A by-value local named in ``return`` is moved, not copied."""
        expr = ast.strip_parens(expr)
        if isinstance(expr, ast.CastExpr) and expr.cast_kind in (
            ast.CastKind.LVALUE_TO_RVALUE,
            ast.CastKind.NO_OP,
            ast.CastKind.CONSTRUCTOR_CONVERSION,
        ):
            return self._is_own_local(expr.operand)
        if isinstance(expr, ast.ConstructExpr) and len(expr.args) == 1:
            return self._is_own_local(expr.args[0])
        if isinstance(expr, ast.DeclRefExpr):
            info = self.ctx.locals.get(expr.decl_id)
            return info is not None and info.kind == LocalKind.VALUE
        return False

    # ── branches and loops ───────────────────────────────────────

    def _lower_if(self, stmt: ast.IfStmt) -> list[RStmt]:
        return [ExprStmt(self._if(stmt))]

    def _if(self, stmt: ast.IfStmt) -> If:
        cond = self.guarded(lambda: self.exprs.value(stmt.cond))
        then = self.block(stmt.then)
        otherwise: RExpr | None = None
        if isinstance(stmt.otherwise, ast.IfStmt):
            otherwise = self._if(stmt.otherwise)
        elif stmt.otherwise is not None:
            otherwise = self.block(stmt.otherwise)
        return If(cond, then, otherwise)

    def _push_loop(self, loop_label: str, continue_label: str, continue_block: bool) -> dict:
        frame = {
            "loop_label": loop_label,
            "continue_label": continue_label,
            "continue_block": continue_block,
            "continue_used": False,
        }
        self._loop_stack.append(frame)
        self._break_target_stack.append(loop_label)
        return frame

    def _pop_loop(self) -> None:
        self._loop_stack.pop()
        self._break_target_stack.pop()

    def _condition(self, cond: Any) -> RExpr:
        return self.guarded(lambda: self.exprs.value(cond))

    def _lower_while(self, stmt: ast.WhileStmt) -> list[RStmt]:
        label = self._fresh_label(constants.LOOP_LABEL_PREFIX)
        cond = self._condition(stmt.cond)
        self._push_loop(label, label, continue_block=False)
        try:
            body = self.block(stmt.body)
        finally:
            self._pop_loop()
        return [ExprStmt(While(cond, body, label))]

    def _continue_body(self, frame: dict, body: Block) -> list[RStmt]:
        """Body statements, inside a ``'cont`` block when ``continue`` needs one."""
        if frame["continue_used"]:
            return [ExprStmt(Block(body.stmts, label=frame["continue_label"]))]
        return list(body.stmts)

    def _lower_do(self, stmt: ast.DoStmt) -> list[RStmt]:
        label = self._fresh_label(constants.LOOP_LABEL_PREFIX)
        cont = self._fresh_label(constants.CONTINUE_LABEL_PREFIX)
        frame = self._push_loop(label, cont, continue_block=True)
        try:
            body = self.block(stmt.body)
        finally:
            self._pop_loop()
        exit_check = If(
            Unary("!", self._condition(stmt.cond)), Block((ExprStmt(Break(label)),))
        )
        stmts = self._continue_body(frame, body) + [ExprStmt(exit_check)]
        return [ExprStmt(Loop(Block(tuple(stmts)), label))]

    def _lower_for(self, stmt: ast.ForStmt) -> list[RStmt]:
        init = self.lower_stmt(stmt.init) if stmt.init is not None else []
        label = self._fresh_label(constants.LOOP_LABEL_PREFIX)
        cont = self._fresh_label(constants.CONTINUE_LABEL_PREFIX)
        has_inc = stmt.inc is not None
        frame = self._push_loop(label, cont if has_inc else label, continue_block=has_inc)
        try:
            body = self.block(stmt.body)
        finally:
            self._pop_loop()
        stmts = self._continue_body(frame, body)
        if has_inc:
            stmts.append(self._guarded_stmt(lambda: self.exprs.discard(stmt.inc)))
        loop_body = Block(tuple(stmts))
        if stmt.cond is None:
            loop: RExpr = Loop(loop_body, label)
        else:
            loop = While(self._condition(stmt.cond), loop_body, label)
        if not init:
            return [ExprStmt(loop)]
        return [ExprStmt(Block(tuple(init) + (ExprStmt(loop),)))]

    def _lower_range_for(self, stmt: ast.RangeForStmt) -> list[RStmt]:
        var = stmt.var
        var_t = var.type
        by_ref = isinstance(var_t, ReferenceType)
        is_const = by_ref and var_t.is_const
        range_t = strip_reference(stmt.range.type)
        iterable = self.guarded(
            lambda: stdlib.range_iterable(self.exprs, stmt.range, by_ref, is_const)
        )
        label = self._fresh_label(constants.LOOP_LABEL_PREFIX)
        kind = LocalKind.BORROW if by_ref else LocalKind.VALUE
        if stdlib.template_of(range_t) in stdlib.MAPS + stdlib.STRINGS:
            kind = LocalKind.VALUE
        info = self.ctx.declare(var.node_id, var.name, kind, strip_reference(var_t))
        self._push_loop(label, label, continue_block=False)
        try:
            body = self.block(stmt.body)
        finally:
            self._pop_loop()
        return [ExprStmt(ForIn(info.name, iterable, body, label, mutable=kind == LocalKind.VALUE))]

    # ── switch ───────────────────────────────────────────────────

    def _lower_switch(self, stmt: ast.SwitchStmt) -> list[RStmt]:
        label = self._fresh_label(constants.SWITCH_LABEL_PREFIX)
        groups = _switch_groups(stmt.body.body)
        scrutinee = Var(constants.SWITCH_VALUE_LOCAL)
        flag = Var(constants.SWITCH_FALLTHROUGH_LOCAL)
        out: list[RStmt] = [
            Let(
                constants.SWITCH_VALUE_LOCAL,
                init=self._condition(stmt.cond),
                mutable=False,
            ),
            Let(constants.SWITCH_FALLTHROUGH_LOCAL, init=Lit("false")),
        ]
        all_values = [self.guarded(lambda v=v: self.exprs.value(v)) for g in groups for v in g.values]
        self._break_target_stack.append(label)
        try:
            position = 0
            for group in groups:
                values = all_values[position : position + len(group.values)]
                position += len(group.values)
                if group.is_default:
                    others = _any_equal(scrutinee, all_values)
                    hit: RExpr = Unary("!", others) if others is not None else Lit("true")
                else:
                    hit = _any_equal(scrutinee, values) or Lit("false")
                body = [ExprStmt(Assign(flag, Lit("true")))] + self.lower_stmts(group.stmts)
                out.append(ExprStmt(If(Binary("||", flag, hit), Block(tuple(body)))))
        finally:
            self._break_target_stack.pop()
        return [ExprStmt(Block(tuple(out), label=label))]

    # ── exceptions ───────────────────────────────────────────────

    def _lower_try(self, stmt: ast.TryStmt) -> list[RStmt]:
        frame = TryFrame(
            break_depth=len(self._break_target_stack),
            loop_depth=len(self._loop_stack),
        )
        self._try_stack.append(frame)
        try:
            body = self.lower_stmts(stmt.body.body)
        finally:
            self._try_stack.pop()
        ret_ty = self.exprs.rust(self.ctx.return_type, TypePosition.RETURN)
        if self.ctx.return_label is not None:
            ret_ty = UNIT
        runner = Call(
            PathExpr(self.unit.rt(constants.RT_TRY_CATCH), (ret_ty,)),
            (Closure((), Block(tuple(body), tail=self._flow("Normal"))),),
        )
        flow = f"Ok({self.unit.config.runtime_crate}::{constants.RT_FLOW}"
        returned = Var(constants.RETURN_VALUE_LOCAL)
        if self.ctx.return_label is not None:
            replay_return: RExpr = Macro("unreachable")
        elif self._try_stack:
            replay_return = Return(Call(self._flow("Return"), (returned,)))
        else:
            replay_return = Return(returned)
        arms = [
            MatchArm(f"{flow}::Normal)", Block()),
            MatchArm(f"{flow}::Return({constants.RETURN_VALUE_LOCAL}))", replay_return),
        ]
        for i, jump in enumerate(frame.escapes):
            arms.append(MatchArm(f"{flow}::Break({i}))", Block((ExprStmt(jump),))))
        arms.append(MatchArm(f"{flow}::Break(_))", Macro("unreachable")))
        arms.append(MatchArm(f"Err({constants.EXCEPTION_LOCAL})", self._handlers(stmt.handlers)))
        return [ExprStmt(Match(runner, tuple(arms)))]

    def _handlers(self, handlers: list[ast.CatchStmt]) -> RExpr:
        exc = Var(constants.EXCEPTION_LOCAL)
        chain: RExpr = Block(
            (ExprStmt(Call(self.rt(constants.RT_RETHROW), (exc,))),)
        )
        for handler in reversed(handlers):
            body = self._handler_body(handler)
            if handler.caught_type is None:
                chain = body
                continue
            caught = self.exprs.rust(strip_reference(handler.caught_type), TypePosition.ELEMENT)
            test = MethodCall(exc, "matches", generics=(caught,))
            chain = If(test, body, chain)
        return Block(tail=chain)

    def _handler_body(self, handler: ast.CatchStmt) -> Block:
        ctx = self.ctx
        stmts: list[RStmt] = []
        if handler.var is not None and handler.caught_type is not None:
            caught_t = strip_reference(handler.caught_type)
            caught = self.exprs.rust(caught_t, TypePosition.ELEMENT)
            info = ctx.declare(handler.var.node_id, handler.var.name, LocalKind.VALUE, caught_t)
            stmts.append(
                Let(
                    info.name,
                    caught,
                    MethodCall(Var(constants.EXCEPTION_LOCAL), "value", generics=(caught,)),
                )
            )
        ctx.catch_stack.append(constants.EXCEPTION_LOCAL)
        try:
            stmts.extend(self.lower_stmts(handler.body.body))
        finally:
            ctx.catch_stack.pop()
        return Block(tuple(stmts))


@dataclass
class _SwitchGroup:
    values: list[Any] = field(default_factory=list)
    is_default: bool = False
    stmts: list[Any] = field(default_factory=list)


def _switch_groups(body: list) -> list[_SwitchGroup]:
    """Split a switch body at its case labels; stacked labels share a group."""
    groups: list[_SwitchGroup] = []
    for stmt in body:
        if isinstance(stmt, (ast.CaseStmt, ast.DefaultStmt)):
            group = _SwitchGroup()
            groups.append(group)
            node: Any = stmt
            while isinstance(node, (ast.CaseStmt, ast.DefaultStmt)):
                if isinstance(node, ast.CaseStmt):
                    group.values.append(node.value)
                else:
                    group.is_default = True
                node = node.sub
            if node is not None:
                group.stmts.append(node)
        elif groups:
            groups[-1].stmts.append(stmt)
    return groups


def _any_equal(scrutinee: RExpr, values: list[RExpr]) -> RExpr | None:
    test: RExpr | None = None
    for value in values:
        eq = Binary("==", scrutinee, value)
        test = eq if test is None else Binary("||", test, eq)
    return test

