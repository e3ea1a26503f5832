"""Target IR: Rust-shaped types, expressions, statements and items.

Pure data, no business logic.  The lowerers build these; the emitter turns
them into text without making further decisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PassStyle(Enum):
    BY_VALUE = "by-value"
    BY_REFERENCE = "by-reference"
    BY_POINTER = "by-pointer"


@dataclass(frozen=True)
class Path:
    """An item path.

    ``module`` is the crate module holding the item (empty for the crate
    root) and ``item`` the item plus any associated-item segments.  External
    paths (``std``, the runtime crate) are rendered verbatim.
    """

    module: tuple[str, ...]
    item: tuple[str, ...]
    external: bool = False

    @staticmethod
    def external_path(text: str) -> Path:
        parts = tuple(text.split("::"))
        return Path(module=parts[:-1], item=parts[-1:], external=True)

    def member(self, name: str) -> Path:
        return Path(self.module, self.item + (name,), self.external)


# ── types ────────────────────────────────────────────────────────


class RustType:
    pass


@dataclass(frozen=True)
class Named(RustType):
    path: Path
    args: tuple[RustType, ...] = ()


@dataclass(frozen=True)
class Prim(RustType):
    name: str


@dataclass(frozen=True)
class RawPtr(RustType):
    inner: RustType
    mutable: bool = True


@dataclass(frozen=True)
class Ref(RustType):
    inner: RustType
    mutable: bool = True


@dataclass(frozen=True)
class ArrayOf(RustType):
    inner: RustType
    length: int


@dataclass(frozen=True)
class TupleOf(RustType):
    elems: tuple[RustType, ...] = ()


@dataclass(frozen=True)
class FnPtr(RustType):
    params: tuple[RustType, ...]
    ret: RustType | None = None
    unsafe: bool = False


@dataclass(frozen=True)
class DynFn(RustType):
    """``Box<dyn FnMut(params) -> ret>``."""

    params: tuple[RustType, ...]
    ret: RustType | None = None


@dataclass(frozen=True)
class Infer(RustType):
    pass


UNIT = TupleOf()
INFER = Infer()


# ── expressions ──────────────────────────────────────────────────


class RExpr:
    pass


@dataclass(frozen=True)
class Lit(RExpr):
    text: str


@dataclass(frozen=True)
class Var(RExpr):
    name: str


@dataclass(frozen=True)
class PathExpr(RExpr):
    path: Path
    generics: tuple[RustType, ...] = ()


@dataclass(frozen=True)
class Call(RExpr):
    func: RExpr
    args: tuple[RExpr, ...] = ()


@dataclass(frozen=True)
class MethodCall(RExpr):
    receiver: RExpr
    method: str
    args: tuple[RExpr, ...] = ()
    generics: tuple[RustType, ...] = ()


@dataclass(frozen=True)
class FieldAccess(RExpr):
    base: RExpr
    name: str


@dataclass(frozen=True)
class Index(RExpr):
    base: RExpr
    index: RExpr


@dataclass(frozen=True)
class Unary(RExpr):
    """Prefix operator: ``-``, ``!``, ``*``, ``&`` or ``&mut``."""

    op: str
    operand: RExpr


@dataclass(frozen=True)
class Binary(RExpr):
    op: str
    lhs: RExpr
    rhs: RExpr


@dataclass(frozen=True)
class Cast(RExpr):
    expr: RExpr
    ty: RustType


@dataclass(frozen=True)
class Assign(RExpr):
    target: RExpr
    value: RExpr
    op: str = "="


@dataclass(frozen=True)
class Block(RExpr):
    stmts: tuple[RStmt, ...] = ()
    tail: RExpr | None = None
    label: str | None = None
    unsafe: bool = False


@dataclass(frozen=True)
class If(RExpr):
    cond: RExpr
    then: Block
    otherwise: RExpr | None = None


@dataclass(frozen=True)
class Loop(RExpr):
    body: Block
    label: str | None = None


@dataclass(frozen=True)
class While(RExpr):
    cond: RExpr
    body: Block
    label: str | None = None


@dataclass(frozen=True)
class ForIn(RExpr):
    var: str
    iterable: RExpr
    body: Block
    label: str | None = None
    mutable: bool = False


@dataclass(frozen=True)
class Break(RExpr):
    label: str | None = None
    value: RExpr | None = None


@dataclass(frozen=True)
class Continue(RExpr):
    label: str | None = None


@dataclass(frozen=True)
class Return(RExpr):
    value: RExpr | None = None


@dataclass(frozen=True)
class ClosureParam:
    name: str
    ty: RustType | None = None
    mutable: bool = False


@dataclass(frozen=True)
class Closure(RExpr):
    params: tuple[ClosureParam, ...]
    body: Block
    ret: RustType | None = None
    is_move: bool = False


@dataclass(frozen=True)
class StructLit(RExpr):
    path: Path
    fields: tuple[tuple[str, RExpr], ...] = ()


@dataclass(frozen=True)
class ArrayLit(RExpr):
    elems: tuple[RExpr, ...] = ()


@dataclass(frozen=True)
class TupleLit(RExpr):
    elems: tuple[RExpr, ...] = ()


@dataclass(frozen=True)
class Macro(RExpr):
    name: str
    args: tuple[RExpr, ...] = ()


@dataclass(frozen=True)
class MatchArm:
    pattern: str
    body: RExpr
    guard: RExpr | None = None


@dataclass(frozen=True)
class Match(RExpr):
    scrutinee: RExpr
    arms: tuple[MatchArm, ...]


# ── statements ───────────────────────────────────────────────────


class RStmt:
    pass


@dataclass(frozen=True)
class Let(RStmt):
    name: str
    ty: RustType | None = None
    init: RExpr | None = None
    mutable: bool = True


@dataclass(frozen=True)
class ExprStmt(RStmt):
    expr: RExpr


@dataclass(frozen=True)
class ItemStmt(RStmt):
    item: object


# ── items ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RustParam:
    name: str
    ty: RustType
    mutable: bool = False
    pass_style: PassStyle = PassStyle.BY_VALUE


@dataclass(frozen=True)
class RustFunction:
    """A lowered function, method, constructor or destructor."""

    name: str
    params: tuple[RustParam, ...] = ()
    ret: RustType | None = None
    body: Block | None = None
    vis: str = "pub"
    is_unsafe: bool = False
    receiver: str | None = None
    is_variadic: bool = False
    attrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class RustField:
    name: str
    ty: RustType
    vis: str = "pub"


@dataclass(frozen=True)
class RustStruct:
    name: str
    fields: tuple[RustField, ...]
    attrs: tuple[str, ...] = ("#[repr(C)]",)
    vis: str = "pub"


@dataclass(frozen=True)
class RustImpl:
    self_ty: str
    items: tuple[RustFunction, ...]
    trait: str | None = None


@dataclass(frozen=True)
class RustStatic:
    name: str
    ty: RustType
    init: RExpr
    vis: str = ""


@dataclass(frozen=True)
class RustConst:
    name: str
    ty: RustType
    init: RExpr
    vis: str = "pub"


@dataclass(frozen=True)
class RustTypeAlias:
    name: str
    ty: RustType
    vis: str = "pub"


@dataclass(frozen=True)
class RustUse:
    path: str
    vis: str = ""


@dataclass(frozen=True)
class RustRecord:
    """A lowered class: its aggregate, impl blocks and vtable statics.

    ``deps`` names the records this one contains by value; ``order`` is the
    record's position in the source.
    """

    struct: RustStruct
    impls: tuple[RustImpl, ...] = ()
    statics: tuple[RustStatic, ...] = ()
    record_id: int = 0
    deps: tuple[int, ...] = ()
    order: int = 0


@dataclass(frozen=True)
class RustEnum:
    """A C++ enum as a transparent integer newtype with associated consts."""

    name: str
    repr: RustType
    variants: tuple[tuple[str, RExpr], ...]
    attrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class RustGlobal:
    """Initialize-once slot plus its accessor, or a plain constant."""

    name: str
    items: tuple[object, ...]
    order: int = 0


@dataclass
class RustModule:
    name: str
    vis: str = "pub"
    uses: list[RustUse] = field(default_factory=list)
    aliases: list[object] = field(default_factory=list)
    records: list[RustRecord] = field(default_factory=list)
    globals: list[RustGlobal] = field(default_factory=list)
    externs: list[RustFunction] = field(default_factory=list)
    functions: list[RustFunction] = field(default_factory=list)
    modules: list[RustModule] = field(default_factory=list)

    def child(self, name: str, vis: str = "pub") -> RustModule:
        for m in self.modules:
            if m.name == name:
                return m
        module = RustModule(name=name, vis=vis)
        self.modules.append(module)
        return module


@dataclass
class RustCrate:
    root: RustModule
    header: tuple[str, ...] = ()
