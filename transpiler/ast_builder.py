"""Programmatic construction of AST Model trees with fresh node ids."""

from __future__ import annotations

from typing import Any

from . import cpp_ast as ast
from .cpp_types import (
    BOOL,
    CHAR,
    DOUBLE,
    INT,
    VOID,
    ArrayType,
    FunctionType,
    PointerType,
    RecordType,
    ReferenceType,
    ResolvedType,
    StdLibType,
)

_Declared = ast.VarDecl | ast.ParamDecl | ast.FunctionDecl


class AstBuilder:
    """Allocates node ids and offers shorthand constructors for nodes.

    Ids start at 1; 0 means "no reference" throughout the AST Model.
    """

    def __init__(self, start: int = 1):
        self._next_id = start

    def next_id(self) -> int:
        nid = self._next_id
        self._next_id += 1
        return nid

    def node(self, cls: type[ast.Node], **fields: Any) -> Any:
        fields.setdefault("node_id", self.next_id())
        return cls(**fields)

    # ── literals and references ──────────────────────────────────

    def lit(self, value: int | float | bool | str, type: ResolvedType | None = None):
        if isinstance(value, bool):
            return self.node(ast.BoolLiteral, value=value, type=type or BOOL)
        if isinstance(value, int):
            return self.node(ast.IntegerLiteral, value=value, type=type or INT)
        if isinstance(value, float):
            return self.node(ast.FloatingLiteral, value=value, type=type or DOUBLE)
        return self.node(
            ast.StringLiteral,
            value=value,
            type=type or ArrayType(element=CHAR, length=len(value.encode("utf-8")) + 1),
        )

    def ref(self, decl: _Declared) -> ast.DeclRefExpr:
        if isinstance(decl, ast.FunctionDecl):
            ftype = FunctionType(
                result=decl.return_type, params=[p.type for p in decl.params]
            )
            return self.node(
                ast.DeclRefExpr, name=decl.name, decl_id=decl.node_id, type=ftype
            )
        t = decl.type
        if isinstance(t, ReferenceType):
            t = t.referent
        return self.node(ast.DeclRefExpr, name=decl.name, decl_id=decl.node_id, type=t)

    def rvalue(self, expr: Any) -> ast.CastExpr:
        return self.cast(ast.CastKind.LVALUE_TO_RVALUE, expr, expr.type)

    def load(self, decl: _Declared) -> ast.CastExpr:
        return self.rvalue(self.ref(decl))

    def cast(self, kind: ast.CastKind, operand: Any, type: ResolvedType, **kw: Any):
        return self.node(ast.CastExpr, cast_kind=kind, operand=operand, type=type, **kw)

    def this(self, record: RecordType, implicit: bool = True) -> ast.ThisExpr:
        return self.node(ast.ThisExpr, type=PointerType(pointee=record), is_implicit=implicit)

    # ── operators ────────────────────────────────────────────────

    def binop(self, op: str, lhs: Any, rhs: Any, type: ResolvedType | None = None):
        if type is None:
            type = BOOL if op in ("==", "!=", "<", ">", "<=", ">=", "&&", "||") else lhs.type
        return self.node(ast.BinaryOperator, op=op, lhs=lhs, rhs=rhs, type=type)

    def assign(self, lhs: Any, rhs: Any, op: str = "="):
        return self.node(ast.BinaryOperator, op=op, lhs=lhs, rhs=rhs, type=lhs.type)

    def unop(self, op: str, operand: Any, type: ResolvedType | None = None, postfix=False):
        return self.node(
            ast.UnaryOperator,
            op=op,
            operand=operand,
            type=type or operand.type,
            is_postfix=postfix,
        )

    def call(self, fn: ast.FunctionDecl, *args: Any) -> ast.CallExpr:
        return self.node(
            ast.CallExpr, callee=self.ref(fn), args=list(args), type=fn.return_type
        )

    def member(self, base: Any, field: ast.FieldDecl, record: ast.RecordDecl, arrow=False):
        return self.node(
            ast.MemberExpr,
            base=base,
            member=field.name,
            is_arrow=arrow,
            record_id=record.node_id,
            type=field.type,
        )

    def method_call(
        self,
        obj: Any,
        method: ast.MethodDecl,
        record: ast.RecordDecl,
        *args: Any,
        arrow: bool = False,
        qualified: bool = False,
    ) -> ast.MemberCallExpr:
        return self.node(
            ast.MemberCallExpr,
            object=obj,
            method=method.name,
            method_id=method.node_id,
            record_id=record.node_id,
            args=list(args),
            is_arrow=arrow,
            qualified=qualified,
            type=method.return_type,
        )

    def construct(self, type: ResolvedType, *args: Any, ctor: Any = None):
        ctor_id = ctor.node_id if ctor is not None else 0
        return self.node(ast.ConstructExpr, ctor_id=ctor_id, args=list(args), type=type)

    # ── statements ───────────────────────────────────────────────

    def block(self, *stmts: Any) -> ast.CompoundStmt:
        return self.node(ast.CompoundStmt, body=list(stmts))

    def expr_stmt(self, expr: Any) -> ast.ExprStmt:
        return self.node(ast.ExprStmt, expr=expr)

    def ret(self, value: Any = None) -> ast.ReturnStmt:
        return self.node(ast.ReturnStmt, value=value)

    def decl_stmt(self, *decls: ast.VarDecl) -> ast.DeclStmt:
        return self.node(ast.DeclStmt, decls=list(decls))

    def if_(self, cond: Any, then: Any, otherwise: Any = None) -> ast.IfStmt:
        return self.node(ast.IfStmt, cond=cond, then=then, otherwise=otherwise)

    # ── declarations ─────────────────────────────────────────────

    def var(self, name: str, type: ResolvedType, init: Any = None, **kw: Any) -> ast.VarDecl:
        return self.node(ast.VarDecl, name=name, type=type, init=init, **kw)

    def param(self, name: str, type: ResolvedType) -> ast.ParamDecl:
        return self.node(ast.ParamDecl, name=name, type=type)

    def function(
        self,
        name: str,
        return_type: ResolvedType = VOID,
        params: list[ast.ParamDecl] | None = None,
        body: ast.CompoundStmt | None = None,
        **kw: Any,
    ) -> ast.FunctionDecl:
        return self.node(
            ast.FunctionDecl,
            name=name,
            return_type=return_type,
            params=params or [],
            body=body,
            **kw,
        )

    def field(self, name: str, type: ResolvedType, default_init: Any = None) -> ast.FieldDecl:
        return self.node(ast.FieldDecl, name=name, type=type, default_init=default_init)

    def base(self, record: ast.RecordDecl, virtual: bool = False) -> ast.BaseSpecifier:
        return self.node(ast.BaseSpecifier, type=record_type(record), is_virtual=virtual)

    def tu(self, *decls: Any, file: str = "input.cpp") -> ast.TranslationUnit:
        return self.node(ast.TranslationUnit, file=file, decls=list(decls))


def record_type(record: ast.RecordDecl, qualified_name: str | None = None) -> RecordType:
    polymorphic = any(m.is_virtual for m in record.methods) or bool(
        record.destructor and record.destructor.is_virtual
    )
    return RecordType(
        name=qualified_name or record.name,
        decl_id=record.node_id,
        polymorphic=polymorphic,
    )


def std_type(template: str, *args: ResolvedType) -> StdLibType:
    return StdLibType(template=template, args=list(args))
