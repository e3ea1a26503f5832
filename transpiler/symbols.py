"""Symbol index and Rust naming for one translation unit.

A single pre-pass over the unit assigns every declaration a ``Symbol``:
its module, its unique Rust name (overloads become ``f``, ``f_1``, ...;
constructors ``new``, ``new_copy``, ``new_move``, ``new_<arity>``) and its
owner for members.  Lowerers look symbols up by declaration id only.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any

from . import constants
from . import cpp_ast as ast
from .operators import operator_method_name
from .scopes import Scope, ScopeChain
from .target_ir import Path

logger = logging.getLogger(__name__)


class SymbolKind(Enum):
    RECORD = "record"
    ENUM = "enum"
    ENUMERATOR = "enumerator"
    ALIAS = "alias"
    FUNCTION = "function"
    METHOD = "method"
    CONSTRUCTOR = "constructor"
    DESTRUCTOR = "destructor"
    GLOBAL = "global"
    CONSTANT = "constant"
    STATIC_MEMBER = "static_member"


@dataclass
class Symbol:
    decl_id: int
    kind: SymbolKind
    name: str
    rust_name: str
    module: tuple[str, ...]
    decl: Any
    owner_id: int = 0
    owner_name: str = ""
    order: int = 0

    @property
    def path(self) -> Path:
        if self.owner_name:
            return Path(self.module, (self.owner_name, self.rust_name))
        return Path(self.module, (self.rust_name,))

    @property
    def qualified_name(self) -> str:
        return "::".join(self.module + ((self.owner_name,) if self.owner_name else ()) + (self.name,))


def sanitize_ident(name: str) -> str:
    """Make a C++ identifier usable as a Rust identifier."""
    if not name:
        return "_"
    if name in constants.RUST_RESERVED_PLAIN:
        return f"{name}_"
    if name in constants.RUST_KEYWORDS:
        return f"r#{name}"
    return name


class NameRegistry:
    """Hands out unique names per naming scope."""

    def __init__(self):
        self._taken: dict[tuple, set[str]] = defaultdict(set)

    def claim(self, scope: tuple, base: str) -> str:
        taken = self._taken[scope]
        name, n = base, 1
        while name in taken:
            name = f"{base}_{n}"
            n += 1
        taken.add(name)
        return name

    def is_taken(self, scope: tuple, name: str) -> bool:
        return name in self._taken[scope]


def constructor_base_name(ctor: ast.ConstructorDecl) -> str:
    if ctor.ctor_kind == ast.CtorKind.COPY:
        return constants.CTOR_COPY
    if ctor.ctor_kind == ast.CtorKind.MOVE:
        return constants.CTOR_MOVE
    if not ctor.params:
        return constants.CTOR_DEFAULT
    return f"{constants.CTOR_DEFAULT}_{len(ctor.params)}"


class SymbolIndex:
    """Declaration id -> Symbol, plus the unit's scope chain."""

    def __init__(self):
        self.symbols: dict[int, Symbol] = {}
        self.records: dict[int, ast.RecordDecl] = {}
        self.record_scopes: dict[int, Scope] = {}
        self.scopes = ScopeChain()
        self.decl_scopes: dict[int, Scope] = {}
        self.positions: dict[int, int] = {}
        self._names = NameRegistry()
        self._order = 0

    # ── queries ──────────────────────────────────────────────────

    def get(self, decl_id: int) -> Symbol | None:
        return self.symbols.get(decl_id)

    def __contains__(self, decl_id: int) -> bool:
        return decl_id in self.symbols

    def record(self, decl_id: int) -> ast.RecordDecl | None:
        return self.records.get(decl_id)

    def record_name(self, decl_id: int) -> str:
        return self.symbols[decl_id].rust_name

    def record_path(self, decl_id: int) -> Path:
        return self.symbols[decl_id].path

    def field(self, record_id: int, name: str) -> ast.FieldDecl | None:
        record = self.records.get(record_id)
        if record is None:
            return None
        return next((f for f in record.fields if f.name == name), None)

    def method_owner(self, method_id: int) -> ast.RecordDecl | None:
        sym = self.symbols.get(method_id)
        return self.records.get(sym.owner_id) if sym else None

    def constructors(self, record_id: int) -> list[Symbol]:
        return [
            s
            for s in self.symbols.values()
            if s.kind == SymbolKind.CONSTRUCTOR and s.owner_id == record_id
        ]

    def constructor_for_arity(self, record_id: int, arity: int) -> Symbol | None:
        """Best-effort constructor choice for library-internal construction."""
        candidates = [s for s in self.constructors(record_id) if len(s.decl.params) == arity]
        return candidates[0] if candidates else None

    def has_default_constructor(self, record_id: int) -> bool:
        record = self.records[record_id]
        if not record.constructors:
            return True
        return any(not c.params for c in record.constructors)

    def copy_constructor(self, record_id: int) -> Symbol | None:
        return next(
            (
                s
                for s in self.constructors(record_id)
                if s.decl.ctor_kind == ast.CtorKind.COPY
            ),
            None,
        )

    def scope_of(self, decl_id: int) -> Scope:
        return self.decl_scopes.get(decl_id, self.scopes.root)

    def resolve_name(self, name: str, scope: Scope, position: int) -> Symbol | None:
        """Resolve an unqualified or qualified name seen at ``position``."""
        namespace, _, last = name.rpartition("::")
        if namespace:
            target = self.scopes.find_namespace(namespace, scope)
            if target is None:
                return None
            found = self.scopes.resolve(last, target, 1 << 30)
        else:
            found = self.scopes.resolve(last, scope, position)
        return self.symbols.get(found) if found is not None else None

    # ── construction ─────────────────────────────────────────────

    @classmethod
    def build(cls, unit: ast.TranslationUnit) -> SymbolIndex:
        index = cls()
        index._index_decls(unit.decls, index.scopes.root)
        logger.info(
            "Indexed %d symbols (%d records) in %s",
            len(index.symbols),
            len(index.records),
            unit.file or "<unit>",
        )
        return index

    def _next_order(self) -> int:
        self._order += 1
        return self._order

    def _add(
        self,
        decl: Any,
        kind: SymbolKind,
        name: str,
        rust_name: str,
        scope: Scope,
        owner: Symbol | None = None,
    ) -> Symbol:
        sym = Symbol(
            decl_id=decl.node_id,
            kind=kind,
            name=name,
            rust_name=rust_name,
            module=scope.path,
            decl=decl,
            owner_id=owner.decl_id if owner else 0,
            owner_name=owner.rust_name if owner else "",
            order=self._next_order(),
        )
        self.symbols[decl.node_id] = sym
        self.decl_scopes[decl.node_id] = scope
        return sym

    def _index_decls(self, decls: list, scope: Scope) -> None:
        for decl in decls:
            position = self.scopes.next_position()
            self.positions[decl.node_id] = position
            handler = getattr(self, f"_index_{decl.kind}", None)
            if handler is not None:
                handler(decl, scope, position)

    def _index_namespace(self, decl: ast.NamespaceDecl, scope: Scope, position: int) -> None:
        inner = self.scopes.enter(scope, decl.name, position)
        self._index_decls(decl.decls, inner)

    def _index_using_directive(self, decl: ast.UsingDirective, scope: Scope, position: int) -> None:
        self.scopes.add_using_directive(scope, decl.namespace, position)

    def _index_using_decl(self, decl: ast.UsingDecl, scope: Scope, position: int) -> None:
        self.scopes.add_using_decl(scope, decl.qualified_name, decl.target_id, position)

    def _index_var(self, decl: ast.VarDecl, scope: Scope, position: int) -> None:
        canonical = self.symbols.get(decl.canonical_id) if decl.canonical_id else None
        if canonical is not None:
            # Out-of-line definition of a static data member or a redeclaration.
            if decl.init is not None:
                canonical.decl = canonical.decl.model_copy(update={"init": decl.init})
            self.symbols[decl.node_id] = canonical
            return
        literal_const = (decl.is_const or decl.is_constexpr) and _is_literal(decl.init)
        kind = SymbolKind.CONSTANT if literal_const else SymbolKind.GLOBAL
        rust_name = self._names.claim(("value", scope.path), sanitize_ident(decl.name))
        self._add(decl, kind, decl.name, rust_name, scope)
        self.scopes.declare(scope, decl.name, decl.node_id, position)

    def _index_function(self, decl: ast.FunctionDecl, scope: Scope, position: int) -> None:
        canonical = self.symbols.get(decl.canonical_id) if decl.canonical_id else None
        if canonical is not None:
            if decl.body is not None:
                canonical.decl = decl
            self.symbols[decl.node_id] = canonical
            return
        if decl.name == "main" and not scope.path:
            base = constants.CPP_MAIN_FN
        elif _is_operator_name(decl.name):
            base = "op_" + operator_method_name(decl.name[len("operator"):].strip(), len(decl.params))
        else:
            base = sanitize_ident(decl.name)
        rust_name = self._names.claim(("value", scope.path), base)
        self._add(decl, SymbolKind.FUNCTION, decl.name, rust_name, scope)
        self.scopes.declare(scope, decl.name, decl.node_id, position)

    def _index_type_alias(self, decl: ast.TypeAliasDecl, scope: Scope, position: int) -> None:
        rust_name = self._names.claim(("type", scope.path), sanitize_ident(decl.name))
        self._add(decl, SymbolKind.ALIAS, decl.name, rust_name, scope)
        self.scopes.declare(scope, decl.name, decl.node_id, position)

    def _index_enum(self, decl: ast.EnumDecl, scope: Scope, position: int, prefix: str = "") -> None:
        base = prefix + sanitize_ident(decl.name)
        rust_name = self._names.claim(("type", scope.path), base)
        self._names.claim(("value", scope.path), rust_name)
        owner = self._add(decl, SymbolKind.ENUM, decl.name, rust_name, scope)
        self.scopes.declare(scope, decl.name, decl.node_id, position)
        for enumerator in decl.enumerators:
            self._add(
                enumerator,
                SymbolKind.ENUMERATOR,
                enumerator.name,
                sanitize_ident(enumerator.name),
                scope,
                owner=owner,
            )
            if not decl.is_scoped:
                self.scopes.declare(scope, enumerator.name, enumerator.node_id, position)

    def _index_record(self, decl: ast.RecordDecl, scope: Scope, position: int, prefix: str = "") -> None:
        existing = self.symbols.get(decl.node_id)
        if existing is not None or not decl.is_definition:
            if not decl.is_definition:
                self.scopes.declare(scope, decl.name, decl.node_id, position)
            return
        rust_name = self._names.claim(("type", scope.path), prefix + sanitize_ident(decl.name))
        owner = self._add(decl, SymbolKind.RECORD, decl.name, rust_name, scope)
        self.records[decl.node_id] = decl
        self.record_scopes[decl.node_id] = scope
        self.scopes.declare(scope, decl.name, decl.node_id, position)
        member_scope = ("member", decl.node_id)
        # Generated members keep their names.
        for reserved in (
            constants.DESTROY_METHOD,
            constants.ASSIGN_METHOD,
            constants.BIND_VBASES_METHOD,
            constants.INIT_VTABLES_METHOD,
        ):
            self._names.claim(member_scope, reserved)
        if not decl.constructors:
            self._names.claim(member_scope, constants.CTOR_DEFAULT)
        for ctor in decl.constructors:
            name = self._names.claim(member_scope, constructor_base_name(ctor))
            self._add(ctor, SymbolKind.CONSTRUCTOR, decl.name, name, scope, owner=owner)
        if decl.destructor is not None:
            self._add(
                decl.destructor,
                SymbolKind.DESTRUCTOR,
                f"~{decl.name}",
                constants.DESTROY_METHOD,
                scope,
                owner=owner,
            )
        for method in decl.methods:
            if method.operator is not None:
                arity = len(method.params) + (0 if method.is_static else 1)
                base = operator_method_name(
                    method.operator, arity, method.is_const, method.is_postfix
                )
            else:
                base = sanitize_ident(method.name)
            name = self._names.claim(member_scope, base)
            self._add(method, SymbolKind.METHOD, method.name, name, scope, owner=owner)
        for static in decl.static_members:
            name = self._names.claim(member_scope, sanitize_ident(static.name))
            self._add(static, SymbolKind.STATIC_MEMBER, static.name, name, scope, owner=owner)
        nested_prefix = f"{rust_name}_"
        for nested in decl.nested:
            self.positions[nested.node_id] = position
            if isinstance(nested, ast.RecordDecl):
                self._index_record(nested, scope, position, prefix=nested_prefix)
            elif isinstance(nested, ast.EnumDecl):
                self._index_enum(nested, scope, position, prefix=nested_prefix)
            elif isinstance(nested, ast.TypeAliasDecl):
                self._index_type_alias(nested, scope, position)


def _is_literal(expr: Any) -> bool:
    while isinstance(expr, (ast.CastExpr, ast.ParenExpr)):
        expr = expr.operand if isinstance(expr, ast.CastExpr) else expr.inner
    if isinstance(expr, ast.UnaryOperator) and expr.op == "-":
        return _is_literal(expr.operand)
    return isinstance(
        expr,
        (ast.IntegerLiteral, ast.FloatingLiteral, ast.BoolLiteral, ast.CharLiteral),
    )


def _is_operator_name(name: str) -> bool:
    return name.startswith("operator") and not (name[8:9].isalnum() or name[8:9] == "_")
