"""AST Model: resolved C++ declarations, statements and expressions.

The front end hands the core one ``TranslationUnit`` per source file.  Nodes
are immutable once built and carry a stable ``node_id``; cross references
(calls, member accesses, record types) name their target by that id, so the
core never performs name or overload resolution of its own.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from .cpp_types import INT, VOID, RecordType, ResolvedType


class SourceLocation(BaseModel):
    """Position of a node in the original C++ source."""

    model_config = ConfigDict(frozen=True)

    file: str = ""
    line: int = 0
    col: int = 0

    def is_unknown(self) -> bool:
        return self.line == 0 and self.col == 0

    def __str__(self) -> str:
        if self.is_unknown():
            return "<unknown>"
        prefix = f"{self.file}:" if self.file else ""
        return f"{prefix}{self.line}:{self.col}"


NO_SOURCE_LOCATION = SourceLocation()


class Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: int = 0
    loc: SourceLocation = NO_SOURCE_LOCATION

    def children(self) -> Iterator[Node]:
        """Yield the direct child nodes in field order."""
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, Node):
                yield value
            elif isinstance(value, list):
                yield from (item for item in value if isinstance(item, Node))

    def walk(self) -> Iterator[Node]:
        """Pre-order traversal of this node and all descendants."""
        yield self
        for child in self.children():
            yield from child.walk()


class Access(str, Enum):
    PUBLIC = "public"
    PROTECTED = "protected"
    PRIVATE = "private"


class CtorKind(str, Enum):
    DEFAULT = "default"
    COPY = "copy"
    MOVE = "move"
    OTHER = "other"


class CastKind(str, Enum):
    LVALUE_TO_RVALUE = "LValueToRValue"
    NO_OP = "NoOp"
    INTEGRAL_CAST = "IntegralCast"
    INTEGRAL_TO_FLOATING = "IntegralToFloating"
    FLOATING_TO_INTEGRAL = "FloatingToIntegral"
    FLOATING_CAST = "FloatingCast"
    INTEGRAL_TO_BOOLEAN = "IntegralToBoolean"
    FLOATING_TO_BOOLEAN = "FloatingToBoolean"
    POINTER_TO_BOOLEAN = "PointerToBoolean"
    ARRAY_TO_POINTER_DECAY = "ArrayToPointerDecay"
    FUNCTION_TO_POINTER_DECAY = "FunctionToPointerDecay"
    NULL_TO_POINTER = "NullToPointer"
    DERIVED_TO_BASE = "DerivedToBase"
    BASE_TO_DERIVED = "BaseToDerived"
    DYNAMIC = "Dynamic"
    BITCAST = "BitCast"
    INTEGRAL_TO_POINTER = "IntegralToPointer"
    POINTER_TO_INTEGRAL = "PointerToIntegral"
    CONSTRUCTOR_CONVERSION = "ConstructorConversion"
    USER_DEFINED_CONVERSION = "UserDefinedConversion"
    TO_VOID = "ToVoid"


# ── expressions ──────────────────────────────────────────────────


class ExprBase(Node):
    type: ResolvedType = VOID


class IntegerLiteral(ExprBase):
    kind: Literal["integer_literal"] = "integer_literal"
    value: int


class FloatingLiteral(ExprBase):
    kind: Literal["floating_literal"] = "floating_literal"
    value: float


class BoolLiteral(ExprBase):
    kind: Literal["bool_literal"] = "bool_literal"
    value: bool


class StringLiteral(ExprBase):
    kind: Literal["string_literal"] = "string_literal"
    value: str


class CharLiteral(ExprBase):
    kind: Literal["char_literal"] = "char_literal"
    value: int


class NullPtrLiteral(ExprBase):
    kind: Literal["nullptr_literal"] = "nullptr_literal"


class DeclRefExpr(ExprBase):
    """Reference to a variable, parameter, function or enumerator.

    ``name`` is qualified for namespace-scope entities the core cannot find
    by ``decl_id`` (library functions such as ``std::move``).
    """

    kind: Literal["decl_ref"] = "decl_ref"
    name: str
    decl_id: int = 0


class MemberExpr(ExprBase):
    """Field access ``base.member`` / ``base->member``."""

    kind: Literal["member"] = "member"
    base: Expr
    member: str
    is_arrow: bool = False
    record_id: int = 0


class CallExpr(ExprBase):
    kind: Literal["call"] = "call"
    callee: Expr
    args: list[Expr] = []


class MemberCallExpr(ExprBase):
    """Method call; ``qualified`` marks ``obj.Base::f()`` style calls."""

    kind: Literal["member_call"] = "member_call"
    object: Expr
    method: str
    method_id: int = 0
    record_id: int = 0
    args: list[Expr] = []
    is_arrow: bool = False
    qualified: bool = False


class OperatorCallExpr(ExprBase):
    """Overloaded operator use; for member operators ``args[0]`` is the object."""

    kind: Literal["operator_call"] = "operator_call"
    operator: str
    args: list[Expr] = []
    method_id: int = 0
    is_member: bool = True
    is_postfix: bool = False


class ConstructExpr(ExprBase):
    """Object construction; ``ctor_id`` 0 means an implicit constructor."""

    kind: Literal["construct"] = "construct"
    ctor_id: int = 0
    args: list[Expr] = []


class NewExpr(ExprBase):
    kind: Literal["new"] = "new"
    allocated: ResolvedType
    init: Expr | None = None
    array_size: Expr | None = None


class DeleteExpr(ExprBase):
    kind: Literal["delete"] = "delete"
    operand: Expr
    is_array: bool = False


class UnaryOperator(ExprBase):
    kind: Literal["unary"] = "unary"
    op: str
    operand: Expr
    is_postfix: bool = False


class BinaryOperator(ExprBase):
    """Binary, assignment, compound assignment and comma operators."""

    kind: Literal["binary"] = "binary"
    op: str
    lhs: Expr
    rhs: Expr


class ConditionalOperator(ExprBase):
    kind: Literal["conditional"] = "conditional"
    cond: Expr
    then: Expr
    otherwise: Expr


class ArraySubscriptExpr(ExprBase):
    kind: Literal["subscript"] = "subscript"
    base: Expr
    index: Expr


class CastExpr(ExprBase):
    """Implicit or explicit conversion; ``path`` lists traversed bases."""

    kind: Literal["cast"] = "cast"
    cast_kind: CastKind
    operand: Expr
    is_implicit: bool = True
    path: list[RecordType] = []


class ThisExpr(ExprBase):
    kind: Literal["this"] = "this"
    is_implicit: bool = False


class ParenExpr(ExprBase):
    kind: Literal["paren"] = "paren"
    inner: Expr


class InitListExpr(ExprBase):
    kind: Literal["init_list"] = "init_list"
    inits: list[Expr] = []


class SizeOfExpr(ExprBase):
    kind: Literal["sizeof"] = "sizeof"
    operand_type: ResolvedType


class LambdaCapture(Node):
    name: str
    decl_id: int = 0
    by_ref: bool = False
    init: Expr | None = None
    captured_type: ResolvedType = VOID


class LambdaExpr(ExprBase):
    """A lambda; ``instantiations`` lists the concrete parameter type lists
    the front end observed for a generic lambda's call sites."""

    kind: Literal["lambda"] = "lambda"
    captures: list[LambdaCapture] = []
    params: list[ParamDecl] = []
    return_type: ResolvedType = VOID
    body: CompoundStmt
    instantiations: list[list[ResolvedType]] = []
    is_mutable: bool = False


class ThrowExpr(ExprBase):
    kind: Literal["throw"] = "throw"
    operand: Expr | None = None


# ── statements ───────────────────────────────────────────────────


class CompoundStmt(Node):
    kind: Literal["compound"] = "compound"
    body: list[Stmt] = []


class DeclStmt(Node):
    kind: Literal["decl_stmt"] = "decl_stmt"
    decls: list[VarDecl] = []


class ExprStmt(Node):
    kind: Literal["expr_stmt"] = "expr_stmt"
    expr: Expr


class ReturnStmt(Node):
    kind: Literal["return"] = "return"
    value: Expr | None = None


class IfStmt(Node):
    kind: Literal["if"] = "if"
    cond: Expr
    then: Stmt
    otherwise: Stmt | None = None


class WhileStmt(Node):
    kind: Literal["while"] = "while"
    cond: Expr
    body: Stmt


class DoStmt(Node):
    kind: Literal["do"] = "do"
    body: Stmt
    cond: Expr


class ForStmt(Node):
    kind: Literal["for"] = "for"
    init: Stmt | None = None
    cond: Expr | None = None
    inc: Expr | None = None
    body: Stmt


class RangeForStmt(Node):
    kind: Literal["range_for"] = "range_for"
    var: VarDecl
    range: Expr
    body: Stmt


class SwitchStmt(Node):
    kind: Literal["switch"] = "switch"
    cond: Expr
    body: CompoundStmt


class CaseStmt(Node):
    kind: Literal["case"] = "case"
    value: Expr
    sub: Stmt | None = None


class DefaultStmt(Node):
    kind: Literal["default"] = "default"
    sub: Stmt | None = None


class BreakStmt(Node):
    kind: Literal["break"] = "break"


class ContinueStmt(Node):
    kind: Literal["continue"] = "continue"


class NullStmt(Node):
    kind: Literal["null"] = "null"


class CatchStmt(Node):
    """``catch (T var)``; ``caught_type`` None is ``catch (...)``."""

    kind: Literal["catch"] = "catch"
    caught_type: ResolvedType | None = None
    var: VarDecl | None = None
    body: CompoundStmt


class TryStmt(Node):
    kind: Literal["try"] = "try"
    body: CompoundStmt
    handlers: list[CatchStmt] = []


# ── declarations ─────────────────────────────────────────────────


class VarDecl(Node):
    """Variable; ``canonical_id`` links an out-of-line definition to the
    in-class declaration of a static data member."""

    kind: Literal["var"] = "var"
    name: str
    type: ResolvedType
    init: Expr | None = None
    is_static: bool = False
    is_const: bool = False
    is_constexpr: bool = False
    is_extern: bool = False
    canonical_id: int = 0


class ParamDecl(Node):
    kind: Literal["param"] = "param"
    name: str
    type: ResolvedType
    default: Expr | None = None


class FunctionDecl(Node):
    """Free function.  A prototype and its definition share ``canonical_id``."""

    kind: Literal["function"] = "function"
    name: str
    return_type: ResolvedType = VOID
    params: list[ParamDecl] = []
    body: CompoundStmt | None = None
    is_variadic: bool = False
    is_inline: bool = False
    canonical_id: int = 0


class MethodDecl(Node):
    kind: Literal["method"] = "method"
    name: str
    return_type: ResolvedType = VOID
    params: list[ParamDecl] = []
    body: CompoundStmt | None = None
    is_virtual: bool = False
    is_pure: bool = False
    is_const: bool = False
    is_static: bool = False
    is_final: bool = False
    operator: str | None = None
    is_postfix: bool = False
    access: Access = Access.PUBLIC


class CtorInitializer(Node):
    """One mem-initializer: exactly one of ``member`` / ``base`` is set.

    A ``base`` naming the record itself is a delegating constructor call.
    """

    member: str | None = None
    base: RecordType | None = None
    init: Expr


class ConstructorDecl(Node):
    kind: Literal["constructor"] = "constructor"
    params: list[ParamDecl] = []
    initializers: list[CtorInitializer] = []
    body: CompoundStmt | None = None
    ctor_kind: CtorKind = CtorKind.OTHER
    is_explicit: bool = False
    access: Access = Access.PUBLIC


class DestructorDecl(Node):
    kind: Literal["destructor"] = "destructor"
    body: CompoundStmt | None = None
    is_virtual: bool = False


class BaseSpecifier(Node):
    type: RecordType
    is_virtual: bool = False
    access: Access = Access.PUBLIC


class FieldDecl(Node):
    name: str
    type: ResolvedType
    default_init: Expr | None = None
    access: Access = Access.PUBLIC


class RecordDecl(Node):
    kind: Literal["record"] = "record"
    name: str
    tag: Literal["struct", "class", "union"] = "struct"
    bases: list[BaseSpecifier] = []
    fields: list[FieldDecl] = []
    methods: list[MethodDecl] = []
    constructors: list[ConstructorDecl] = []
    destructor: DestructorDecl | None = None
    static_members: list[VarDecl] = []
    nested: list[Decl] = []
    is_final: bool = False
    is_definition: bool = True


class Enumerator(Node):
    name: str
    value: int


class EnumDecl(Node):
    kind: Literal["enum"] = "enum"
    name: str
    enumerators: list[Enumerator] = []
    underlying: ResolvedType = INT
    is_scoped: bool = False


class TypeAliasDecl(Node):
    kind: Literal["type_alias"] = "type_alias"
    name: str
    target: ResolvedType


class UsingDirective(Node):
    """``using namespace N;`` with ``namespace`` fully qualified."""

    kind: Literal["using_directive"] = "using_directive"
    namespace: str


class UsingDecl(Node):
    """``using N::name;``"""

    kind: Literal["using_decl"] = "using_decl"
    qualified_name: str
    target_id: int = 0


class NamespaceDecl(Node):
    """Namespace; the empty name denotes an anonymous namespace."""

    kind: Literal["namespace"] = "namespace"
    name: str = ""
    decls: list[Decl] = []
    is_inline: bool = False


class TranslationUnit(Node):
    kind: Literal["translation_unit"] = "translation_unit"
    file: str = ""
    decls: list[Decl] = []


Expr = Annotated[
    Union[
        IntegerLiteral,
        FloatingLiteral,
        BoolLiteral,
        StringLiteral,
        CharLiteral,
        NullPtrLiteral,
        DeclRefExpr,
        MemberExpr,
        CallExpr,
        MemberCallExpr,
        OperatorCallExpr,
        ConstructExpr,
        NewExpr,
        DeleteExpr,
        UnaryOperator,
        BinaryOperator,
        ConditionalOperator,
        ArraySubscriptExpr,
        CastExpr,
        ThisExpr,
        ParenExpr,
        InitListExpr,
        SizeOfExpr,
        LambdaExpr,
        ThrowExpr,
    ],
    Field(discriminator="kind"),
]

Stmt = Annotated[
    Union[
        CompoundStmt,
        DeclStmt,
        ExprStmt,
        ReturnStmt,
        IfStmt,
        WhileStmt,
        DoStmt,
        ForStmt,
        RangeForStmt,
        SwitchStmt,
        CaseStmt,
        DefaultStmt,
        BreakStmt,
        ContinueStmt,
        NullStmt,
        TryStmt,
    ],
    Field(discriminator="kind"),
]

Decl = Annotated[
    Union[
        NamespaceDecl,
        UsingDirective,
        UsingDecl,
        VarDecl,
        FunctionDecl,
        RecordDecl,
        EnumDecl,
        TypeAliasDecl,
    ],
    Field(discriminator="kind"),
]


def _rebuild_models() -> None:
    for model in list(globals().values()):
        if isinstance(model, type) and issubclass(model, Node):
            model.model_rebuild()


_rebuild_models()


def strip_parens(expr: Node) -> Node:
    while isinstance(expr, ParenExpr):
        expr = expr.inner
    return expr


_TRANSPARENT_CASTS = frozenset(
    {CastKind.LVALUE_TO_RVALUE, CastKind.NO_OP, CastKind.FUNCTION_TO_POINTER_DECAY}
)


def strip_implicit(expr: Node) -> Node:
    """Drop parentheses and conversions that do not change the value."""
    while True:
        expr = strip_parens(expr)
        if isinstance(expr, CastExpr) and expr.cast_kind in _TRANSPARENT_CASTS:
            expr = expr.operand
            continue
        return expr
