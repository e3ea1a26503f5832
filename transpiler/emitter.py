"""Emitter: serializes a lowered ``RustCrate`` to Rust source text.

Makes no lowering decisions.  The only things computed here are
module-relative paths and the parentheses the operator precedence table
requires.  Each module is written as:

    use items, aliases and enums, records (dependency order), globals,
    the extern "C" block, functions, nested modules
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from .ordering import order_crate
from .target_ir import (
    ArrayLit,
    ArrayOf,
    Assign,
    Binary,
    Block,
    Break,
    Call,
    Cast,
    Closure,
    Continue,
    DynFn,
    ExprStmt,
    FieldAccess,
    FnPtr,
    ForIn,
    If,
    Index,
    Infer,
    ItemStmt,
    Let,
    Lit,
    Loop,
    Macro,
    Match,
    MethodCall,
    Named,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    Ref,
    RExpr,
    Return,
    RStmt,
    RustConst,
    RustCrate,
    RustEnum,
    RustFunction,
    RustGlobal,
    RustImpl,
    RustModule,
    RustRecord,
    RustStatic,
    RustStruct,
    RustType,
    RustTypeAlias,
    RustUse,
    StructLit,
    TupleLit,
    TupleOf,
    Unary,
    Var,
    While,
)

logger = logging.getLogger(__name__)

INDENT = "    "
INLINE_BLOCK_WIDTH = 72

# Precedence levels, loosest first
PREC_JUMP = 0
PREC_ASSIGN = 1
PREC_OR = 2
PREC_AND = 3
PREC_COMPARE = 4
PREC_BITOR = 5
PREC_BITXOR = 6
PREC_BITAND = 7
PREC_SHIFT = 8
PREC_ADD = 9
PREC_MUL = 10
PREC_CAST = 11
PREC_UNARY = 12
PREC_POSTFIX = 13
PREC_ATOM = 14

BINARY_PRECEDENCE: dict[str, int] = {
    "||": PREC_OR,
    "&&": PREC_AND,
    "==": PREC_COMPARE,
    "!=": PREC_COMPARE,
    "<": PREC_COMPARE,
    ">": PREC_COMPARE,
    "<=": PREC_COMPARE,
    ">=": PREC_COMPARE,
    "|": PREC_BITOR,
    "^": PREC_BITXOR,
    "&": PREC_BITAND,
    "<<": PREC_SHIFT,
    ">>": PREC_SHIFT,
    "+": PREC_ADD,
    "-": PREC_ADD,
    "*": PREC_MUL,
    "/": PREC_MUL,
    "%": PREC_MUL,
}

_BLOCK_LIKE = (Block, If, Loop, While, ForIn, Match)


def indent(text: str) -> str:
    return "\n".join(INDENT + line if line else line for line in text.split("\n"))


class RustEmitter:
    """Renders target IR; paths are written relative to the module being emitted."""

    def __init__(self):
        self._module: tuple[str, ...] = ()
        self._EXPR_DISPATCH: dict[type, Callable[[Any], tuple[str, int]]] = {
            Lit: self._lit,
            Var: lambda e: (e.name, PREC_ATOM),
            PathExpr: lambda e: (self.path_expr(e), PREC_ATOM),
            Call: self._call,
            MethodCall: self._method_call,
            FieldAccess: lambda e: (f"{self.expr(e.base, PREC_POSTFIX)}.{e.name}", PREC_POSTFIX),
            Index: self._index,
            Unary: self._unary,
            Binary: self._binary,
            Cast: self._cast,
            Assign: self._assign,
            Block: lambda e: (self.block(e), PREC_ATOM),
            If: lambda e: (self._if(e), PREC_ATOM),
            Loop: lambda e: (f"{_label(e.label)}loop {self.branch(e.body)}", PREC_ATOM),
            While: self._while,
            ForIn: self._for_in,
            Break: self._break,
            Continue: lambda e: ("continue" + (f" {e.label}" if e.label else ""), PREC_JUMP),
            Return: self._return,
            Closure: self._closure,
            StructLit: self._struct_lit,
            ArrayLit: lambda e: (f"[{self._list(e.elems)}]", PREC_ATOM),
            TupleLit: self._tuple_lit,
            Macro: lambda e: (f"{e.name}!({self._list(e.args)})", PREC_ATOM),
            Match: self._match,
        }

    # ── entry point ──────────────────────────────────────────────

    def emit(self, crate: RustCrate) -> str:
        """Order ``crate`` and render it; ordering failures propagate."""
        order_crate(crate)
        self._module = ()
        sections = list(crate.header)
        body = self.module_body(crate.root)
        if body:
            sections.append(body)
        text = "\n\n".join(sections) + "\n"
        logger.info("Emitted %d lines of Rust", text.count("\n"))
        return text

    # ── paths and types ──────────────────────────────────────────

    def path(self, p: Path) -> str:
        if p.external:
            return "::".join(p.module + p.item)
        if p.module == self._module:
            return "::".join(p.item)
        return "::".join(("crate",) + p.module + p.item)

    def path_expr(self, e: PathExpr) -> str:
        text = self.path(e.path)
        if e.generics:
            text += f"::<{', '.join(self.type(g) for g in e.generics)}>"
        return text

    def type(self, t: RustType | None) -> str:
        if t is None:
            return "()"
        if isinstance(t, Prim):
            return t.name
        if isinstance(t, Named):
            args = f"<{', '.join(self.type(a) for a in t.args)}>" if t.args else ""
            return self.path(t.path) + args
        if isinstance(t, RawPtr):
            return f"*{'mut' if t.mutable else 'const'} {self.type(t.inner)}"
        if isinstance(t, Ref):
            return f"&{'mut ' if t.mutable else ''}{self.type(t.inner)}"
        if isinstance(t, ArrayOf):
            return f"[{self.type(t.inner)}; {t.length}]"
        if isinstance(t, TupleOf):
            if len(t.elems) == 1:
                return f"({self.type(t.elems[0])},)"
            return f"({', '.join(self.type(e) for e in t.elems)})"
        if isinstance(t, FnPtr):
            params = ", ".join(self.type(p) for p in t.params)
            ret = f" -> {self.type(t.ret)}" if t.ret is not None else ""
            return f"{'unsafe ' if t.unsafe else ''}fn({params}){ret}"
        if isinstance(t, DynFn):
            params = ", ".join(self.type(p) for p in t.params)
            ret = f" -> {self.type(t.ret)}" if t.ret is not None else ""
            return f"Box<dyn FnMut({params}){ret}>"
        if isinstance(t, Infer):
            return "_"
        raise TypeError(f"cannot render type {t!r}")

    # ── expressions ──────────────────────────────────────────────

    def expr(self, e: RExpr, min_prec: int = PREC_JUMP) -> str:
        handler = self._EXPR_DISPATCH.get(type(e))
        if handler is None:
            raise TypeError(f"cannot render expression {e!r}")
        text, prec = handler(e)
        if prec < min_prec or (isinstance(e, _BLOCK_LIKE) and min_prec > PREC_ASSIGN):
            return f"({text})"
        return text

    def _list(self, exprs: tuple[RExpr, ...]) -> str:
        return ", ".join(self.expr(e) for e in exprs)

    def _lit(self, e: Lit) -> tuple[str, int]:
        return e.text, PREC_UNARY if e.text.startswith("-") else PREC_ATOM

    def _call(self, e: Call) -> tuple[str, int]:
        func = self.expr(e.func, PREC_POSTFIX)
        if isinstance(e.func, FieldAccess):
            # A field holding a callable, not a method.
            func = f"({func})"
        return f"{func}({self._list(e.args)})", PREC_POSTFIX

    def _method_call(self, e: MethodCall) -> tuple[str, int]:
        generics = f"::<{', '.join(self.type(g) for g in e.generics)}>" if e.generics else ""
        receiver = self.expr(e.receiver, PREC_POSTFIX)
        return f"{receiver}.{e.method}{generics}({self._list(e.args)})", PREC_POSTFIX

    def _index(self, e: Index) -> tuple[str, int]:
        return f"{self.expr(e.base, PREC_POSTFIX)}[{self.expr(e.index)}]", PREC_POSTFIX

    def _unary(self, e: Unary) -> tuple[str, int]:
        op = "&mut " if e.op == "&mut" else e.op
        return f"{op}{self.expr(e.operand, PREC_UNARY)}", PREC_UNARY

    def _binary(self, e: Binary) -> tuple[str, int]:
        prec = BINARY_PRECEDENCE[e.op]
        lhs_min = prec + 1 if prec == PREC_COMPARE else prec
        lhs = self.expr(e.lhs, lhs_min)
        if isinstance(e.lhs, Cast) and e.op in ("<", "<<"):
            # `x as T < y` would start a generic argument list.
            lhs = f"({lhs})"
        return f"{lhs} {e.op} {self.expr(e.rhs, prec + 1)}", prec

    def _cast(self, e: Cast) -> tuple[str, int]:
        return f"{self.expr(e.expr, PREC_CAST)} as {self.type(e.ty)}", PREC_CAST

    def _assign(self, e: Assign) -> tuple[str, int]:
        target = self.expr(e.target, PREC_ASSIGN + 1)
        return f"{target} {e.op} {self.expr(e.value, PREC_ASSIGN)}", PREC_ASSIGN

    def _if(self, e: If) -> str:
        text = f"if {self.expr(e.cond)} {self.branch(e.then)}"
        if e.otherwise is None:
            return text
        if isinstance(e.otherwise, If):
            return f"{text} else {self._if(e.otherwise)}"
        if isinstance(e.otherwise, Block):
            return f"{text} else {self.branch(e.otherwise)}"
        return f"{text} else {self.block(Block(tail=e.otherwise))}"

    def _while(self, e: While) -> tuple[str, int]:
        return f"{_label(e.label)}while {self.expr(e.cond)} {self.branch(e.body)}", PREC_ATOM

    def _for_in(self, e: ForIn) -> tuple[str, int]:
        var = f"mut {e.var}" if e.mutable else e.var
        text = f"{_label(e.label)}for {var} in {self.expr(e.iterable)} {self.branch(e.body)}"
        return text, PREC_ATOM

    def _break(self, e: Break) -> tuple[str, int]:
        text = "break"
        if e.label:
            text += f" {e.label}"
        if e.value is not None:
            text += f" {self.expr(e.value)}"
        return text, PREC_JUMP

    def _return(self, e: Return) -> tuple[str, int]:
        if e.value is None:
            return "return", PREC_JUMP
        return f"return {self.expr(e.value)}", PREC_JUMP

    def _closure(self, e: Closure) -> tuple[str, int]:
        params = []
        for p in e.params:
            name = f"mut {p.name}" if p.mutable else p.name
            params.append(f"{name}: {self.type(p.ty)}" if p.ty is not None else name)
        head = f"{'move ' if e.is_move else ''}|{', '.join(params)}|"
        if e.ret is not None:
            head += f" -> {self.type(e.ret)}"
        return f"{head} {self.block(e.body)}", PREC_JUMP

    def _struct_lit(self, e: StructLit) -> tuple[str, int]:
        name = self.path(e.path)
        if not e.fields:
            return f"{name} {{}}", PREC_ATOM
        fields = [f"{f}: {self.expr(v)}" for f, v in e.fields]
        inline = f"{name} {{ {', '.join(fields)} }}"
        if len(inline) <= INLINE_BLOCK_WIDTH and "\n" not in inline:
            return inline, PREC_ATOM
        body = indent(",\n".join(fields))
        return f"{name} {{\n{body},\n}}", PREC_ATOM

    def _tuple_lit(self, e: TupleLit) -> tuple[str, int]:
        if len(e.elems) == 1:
            return f"({self.expr(e.elems[0])},)", PREC_ATOM
        return f"({self._list(e.elems)})", PREC_ATOM

    def _match(self, e: Match) -> tuple[str, int]:
        arms = []
        for arm in e.arms:
            guard = f" if {self.expr(arm.guard)}" if arm.guard is not None else ""
            arms.append(f"{arm.pattern}{guard} => {self.expr(arm.body)},")
        body = indent("\n".join(arms))
        return f"match {self.expr(e.scrutinee)} {{\n{body}\n}}", PREC_ATOM

    # ── statements ───────────────────────────────────────────────

    def branch(self, b: Block) -> str:
        """Body of an ``if``/loop; those take only a plain ``{ ... }``."""
        if b.unsafe or b.label:
            return self.block(Block(tail=b))
        return self.block(b)

    def block(self, b: Block) -> str:
        prefix = _label(b.label) + ("unsafe " if b.unsafe else "")
        parts = [self.stmt(s) for s in b.stmts]
        if b.tail is not None:
            parts.append(self.expr(b.tail))
        if not parts:
            return prefix + "{}"
        if not b.stmts and "\n" not in parts[0] and len(parts[0]) <= INLINE_BLOCK_WIDTH:
            return f"{prefix}{{ {parts[0]} }}"
        body = indent("\n".join(parts))
        return f"{prefix}{{\n{body}\n}}"

    def stmt(self, s: RStmt) -> str:
        if isinstance(s, Let):
            mut = "mut " if s.mutable and s.name != "_" else ""
            text = f"let {mut}{s.name}"
            if s.ty is not None:
                text += f": {self.type(s.ty)}"
            if s.init is not None:
                text += f" = {self.expr(s.init)}"
            return text + ";"
        if isinstance(s, ExprStmt):
            return self.expr(s.expr) + ";"
        if isinstance(s, ItemStmt):
            return self.item(s.item)
        raise TypeError(f"cannot render statement {s!r}")

    # ── items ────────────────────────────────────────────────────

    def item(self, item: Any) -> str:
        if isinstance(item, RustFunction):
            return self.function(item)
        if isinstance(item, RustStatic):
            vis = f"{item.vis} " if item.vis else ""
            return f"{vis}static {item.name}: {self.type(item.ty)} = {self.expr(item.init)};"
        if isinstance(item, RustConst):
            vis = f"{item.vis} " if item.vis else ""
            return f"{vis}const {item.name}: {self.type(item.ty)} = {self.expr(item.init)};"
        if isinstance(item, RustTypeAlias):
            vis = f"{item.vis} " if item.vis else ""
            return f"{vis}type {item.name} = {self.type(item.ty)};"
        if isinstance(item, RustUse):
            vis = f"{item.vis} " if item.vis else ""
            return f"{vis}use {item.path};"
        if isinstance(item, RustEnum):
            return self.enum(item)
        if isinstance(item, RustStruct):
            return self.struct(item)
        if isinstance(item, RustImpl):
            return self.impl(item)
        raise TypeError(f"cannot render item {item!r}")

    def function(self, fn: RustFunction, declaration_only: bool = False) -> str:
        params = [fn.receiver] if fn.receiver else []
        for p in fn.params:
            params.append(f"{'mut ' if p.mutable else ''}{p.name}: {self.type(p.ty)}")
        if fn.is_variadic:
            params.append("...")
        head = [fn.vis] if fn.vis else []
        if fn.is_unsafe:
            head.append("unsafe")
        sig = f"{' '.join(head + ['fn'])} {fn.name}({', '.join(params)})"
        if fn.ret is not None:
            sig += f" -> {self.type(fn.ret)}"
        lines = list(fn.attrs)
        if declaration_only or fn.body is None:
            lines.append(sig + ";")
        else:
            lines.append(f"{sig} {self.block(fn.body)}")
        return "\n".join(lines)

    def struct(self, s: RustStruct) -> str:
        lines = list(s.attrs)
        vis = f"{s.vis} " if s.vis else ""
        if not s.fields:
            lines.append(f"{vis}struct {s.name} {{}}")
            return "\n".join(lines)
        fields = "\n".join(
            f"{f.vis + ' ' if f.vis else ''}{f.name}: {self.type(f.ty)}," for f in s.fields
        )
        lines.append(f"{vis}struct {s.name} {{\n{indent(fields)}\n}}")
        return "\n".join(lines)

    def impl(self, impl: RustImpl) -> str:
        head = f"impl {impl.trait} for {impl.self_ty}" if impl.trait else f"impl {impl.self_ty}"
        if not impl.items:
            return f"{head} {{}}"
        body = "\n\n".join(self.function(fn) for fn in impl.items)
        return f"{head} {{\n{indent(body)}\n}}"

    def enum(self, e: RustEnum) -> str:
        """A transparent newtype with one associated constant per enumerator."""
        lines = list(e.attrs)
        lines.append(f"pub struct {e.name}(pub {self.type(e.repr)});")
        if e.variants:
            consts = "\n".join(
                f"pub const {name}: {e.name} = {e.name}({self.expr(value)});"
                for name, value in e.variants
            )
            lines.append(f"impl {e.name} {{\n{indent(consts)}\n}}")
        return "\n".join(lines)

    def record(self, r: RustRecord) -> str:
        parts = [self.struct(r.struct)]
        parts.extend(self.item(s) for s in r.statics)
        parts.extend(self.impl(i) for i in r.impls)
        return "\n\n".join(parts)

    def global_(self, g: RustGlobal) -> str:
        return "\n".join(self.item(i) for i in g.items)

    def externs(self, functions: list[RustFunction]) -> str:
        body = "\n".join(self.function(fn, declaration_only=True) for fn in functions)
        return f'extern "C" {{\n{indent(body)}\n}}'

    # ── modules ──────────────────────────────────────────────────

    def module_body(self, module: RustModule) -> str:
        sections: list[str] = []
        if module.uses:
            sections.append("\n".join(self.item(u) for u in module.uses))
        sections.extend(self.item(a) for a in module.aliases)
        sections.extend(self.record(r) for r in module.records)
        sections.extend(self.global_(g) for g in module.globals)
        if module.externs:
            sections.append(self.externs(module.externs))
        sections.extend(self.function(fn) for fn in module.functions)
        sections.extend(self.child_module(m) for m in module.modules)
        return "\n\n".join(sections)

    def child_module(self, module: RustModule) -> str:
        outer = self._module
        self._module = outer + (module.name,)
        try:
            body = self.module_body(module)
        finally:
            self._module = outer
        vis = f"{module.vis} " if module.vis else ""
        if not body:
            return f"{vis}mod {module.name} {{}}"
        return f"{vis}mod {module.name} {{\n{indent(body)}\n}}"


def _label(label: str | None) -> str:
    return f"{label}: " if label else ""


def emit_crate(crate: RustCrate) -> str:
    """Render ``crate`` as the text of one Rust source file."""
    return RustEmitter().emit(crate)
