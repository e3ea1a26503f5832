"""Namespace scope chain with position-aware ``using`` visibility.

Each namespace (reopenings merged) is one ``Scope`` that maps to one Rust
module.  ``using namespace N;`` and ``using N::x;`` are recorded as edges on
the scope where they appear, tagged with their source position: they are
visible in that scope and its descendants, only after that position, and a
name declared directly in a scope always beats a ``using``-imported one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from . import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsingEdge:
    position: int
    target: tuple[str, ...]
    name: str | None = None
    target_id: int = 0

    @property
    def is_directive(self) -> bool:
        return self.name is None


@dataclass(eq=False)
class Scope:
    name: str
    module_name: str
    parent: Scope | None = None
    children: dict[str, Scope] = field(default_factory=dict)
    names: dict[str, list[tuple[int, int]]] = field(default_factory=dict)
    usings: list[UsingEdge] = field(default_factory=list)
    openings: list[int] = field(default_factory=list)
    anonymous: bool = False

    @property
    def path(self) -> tuple[str, ...]:
        if self.parent is None:
            return ()
        return self.parent.path + (self.module_name,)

    def ancestors(self) -> list[Scope]:
        """This scope followed by its enclosing scopes up to the root."""
        chain: list[Scope] = []
        scope: Scope | None = self
        while scope is not None:
            chain.append(scope)
            scope = scope.parent
        return chain

    def __repr__(self) -> str:
        return f"Scope({'::'.join(self.path) or '<root>'})"


class ScopeChain:
    """The namespace tree of one translation unit."""

    def __init__(self):
        self.root = Scope(name="", module_name="")
        self.root.openings.append(0)
        self._anon_counter = 0
        self._position = 0

    def next_position(self) -> int:
        self._position += 1
        return self._position

    def enter(self, parent: Scope, name: str, position: int) -> Scope:
        """Open (or reopen) namespace ``name`` inside ``parent``.

        All anonymous namespaces of one parent are the same namespace; the
        parent sees their members through an implicit using-directive.
        """
        key = name or "<anonymous>"
        scope = parent.children.get(key)
        if scope is None:
            if name:
                module_name = name if name not in constants.RUST_KEYWORDS else f"{name}_"
            else:
                module_name = f"{constants.ANON_MODULE_PREFIX}{self._anon_counter}"
                self._anon_counter += 1
            scope = Scope(name=name, module_name=module_name, parent=parent, anonymous=not name)
            parent.children[key] = scope
            if not name:
                parent.usings.append(UsingEdge(position=position, target=scope.path))
            logger.debug("Opened namespace scope %s", scope)
        scope.openings.append(position)
        return scope

    def declare(self, scope: Scope, name: str, decl_id: int, position: int) -> None:
        scope.names.setdefault(name, []).append((position, decl_id))

    def add_using_directive(self, scope: Scope, namespace: str, position: int) -> UsingEdge | None:
        target = self.find_namespace(namespace, scope)
        if target is None:
            logger.debug("using namespace %s: namespace not in this unit", namespace)
            return None
        edge = UsingEdge(position=position, target=target.path)
        scope.usings.append(edge)
        return edge

    def add_using_decl(
        self, scope: Scope, qualified_name: str, target_id: int, position: int
    ) -> UsingEdge | None:
        namespace, _, name = qualified_name.rpartition("::")
        target = self.find_namespace(namespace, scope) if namespace else self.root
        if target is None:
            return None
        edge = UsingEdge(position=position, target=target.path, name=name, target_id=target_id)
        scope.usings.append(edge)
        return edge

    def find_namespace(self, qualified: str, start: Scope) -> Scope | None:
        """Look up a (possibly qualified) namespace name from ``start`` outward."""
        parts = [p for p in qualified.split("::") if p]
        if qualified.startswith("::"):
            return self._descend(self.root, parts)
        for scope in start.ancestors():
            found = self._descend(scope, parts)
            if found is not None:
                return found
        return None

    def scope_at(self, path: tuple[str, ...]) -> Scope:
        scope = self.root
        for module_name in path:
            scope = next(s for s in scope.children.values() if s.module_name == module_name)
        return scope

    def resolve(self, name: str, scope: Scope, position: int) -> int | None:
        """Unqualified lookup of ``name`` as seen at ``position`` in ``scope``."""
        for current in scope.ancestors():
            local = self._declared_before(current, name, position)
            if local is not None:
                return local
            imported = self._imported(current, name, position)
            if imported is not None:
                return imported
        return None

    def uses_for(self, scope: Scope) -> list[UsingEdge]:
        """Using edges the module for ``scope`` must import.

        An edge from an enclosing scope applies only when part of ``scope``
        is opened after it.
        """
        edges = list(scope.usings)
        last_opening = max(scope.openings) if scope.openings else 0
        for ancestor in scope.ancestors()[1:]:
            edges.extend(
                e
                for e in ancestor.usings
                if e.position < last_opening and e.target != scope.path
            )
        return sorted(edges, key=lambda e: e.position)

    # ── helpers ──────────────────────────────────────────────────

    def _descend(self, scope: Scope, parts: list[str]) -> Scope | None:
        for part in parts:
            child = scope.children.get(part)
            if child is None:
                return None
            scope = child
        return scope

    def _declared_before(self, scope: Scope, name: str, position: int) -> int | None:
        entries = [decl_id for pos, decl_id in scope.names.get(name, []) if pos < position]
        return entries[0] if entries else None

    def _imported(
        self, scope: Scope, name: str, position: int, seen: set[int] | None = None
    ) -> int | None:
        seen = set() if seen is None else seen
        if id(scope) in seen:
            return None
        seen.add(id(scope))
        for edge in scope.usings:
            if edge.position >= position:
                continue
            if edge.is_directive:
                target = self.scope_at(edge.target)
                found = self._declared_before(target, name, position)
                if found is None:
                    found = self._imported(target, name, position, seen)
                if found is not None:
                    return found
            elif edge.name == name:
                return edge.target_id
        return None
