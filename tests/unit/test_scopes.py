"""Tests for the namespace scope chain and position-aware using visibility."""

from __future__ import annotations

from transpiler.scopes import ScopeChain


class TestNamespaces:
    def test_reopening_returns_the_same_scope(self):
        chain = ScopeChain()
        first = chain.enter(chain.root, "geo", 1)
        again = chain.enter(chain.root, "geo", 5)
        assert first is again
        assert first.openings == [1, 5]
        assert first.path == ("geo",)

    def test_keyword_namespace_gets_a_module_suffix(self):
        chain = ScopeChain()
        assert chain.enter(chain.root, "type", 1).path == ("type_",)

    def test_anonymous_namespace_is_imported_by_its_parent(self):
        chain = ScopeChain()
        anon = chain.enter(chain.root, "", 1)
        assert anon.anonymous
        assert anon.module_name == "__anon_0"
        chain.declare(anon, "helper", 42, 2)
        assert chain.resolve("helper", chain.root, 3) == 42

    def test_find_namespace_searches_outward(self):
        chain = ScopeChain()
        a = chain.enter(chain.root, "a", 1)
        b = chain.enter(a, "b", 2)
        c = chain.enter(chain.root, "c", 3)
        assert chain.find_namespace("a::b", c) is b
        assert chain.find_namespace("b", a) is b
        assert chain.find_namespace("b", c) is None
        assert chain.find_namespace("::a", b) is a


class TestResolve:
    def test_names_are_visible_only_after_their_declaration(self):
        chain = ScopeChain()
        chain.declare(chain.root, "f", 10, 5)
        assert chain.resolve("f", chain.root, 4) is None
        assert chain.resolve("f", chain.root, 6) == 10

    def test_enclosing_scope_names_are_visible(self):
        chain = ScopeChain()
        chain.declare(chain.root, "g", 7, 1)
        inner = chain.enter(chain.root, "n", 2)
        assert chain.resolve("g", inner, 3) == 7

    def test_using_directive_applies_only_after_its_position(self):
        chain = ScopeChain()
        geo = chain.enter(chain.root, "geo", 1)
        chain.declare(geo, "area", 11, 2)
        chain.add_using_directive(chain.root, "geo", 10)
        assert chain.resolve("area", chain.root, 5) is None
        assert chain.resolve("area", chain.root, 11) == 11

    def test_own_declaration_beats_using_import(self):
        chain = ScopeChain()
        geo = chain.enter(chain.root, "geo", 1)
        chain.declare(geo, "area", 11, 2)
        chain.add_using_directive(chain.root, "geo", 3)
        chain.declare(chain.root, "area", 22, 4)
        assert chain.resolve("area", chain.root, 9) == 22

    def test_using_declaration_imports_one_name(self):
        chain = ScopeChain()
        geo = chain.enter(chain.root, "geo", 1)
        chain.declare(geo, "area", 11, 2)
        chain.declare(geo, "volume", 12, 2)
        chain.add_using_decl(chain.root, "geo::area", 11, 3)
        assert chain.resolve("area", chain.root, 4) == 11
        assert chain.resolve("volume", chain.root, 4) is None

    def test_using_of_unknown_namespace_is_ignored(self):
        chain = ScopeChain()
        assert chain.add_using_directive(chain.root, "std", 1) is None


class TestUsesFor:
    def test_enclosing_edge_applies_to_later_openings(self):
        chain = ScopeChain()
        util = chain.enter(chain.root, "util", 1)
        chain.add_using_directive(chain.root, "util", 2)
        app = chain.enter(chain.root, "app", 3)
        assert [e.target for e in chain.uses_for(app)] == [util.path]

    def test_enclosing_edge_after_the_last_opening_is_not_imported(self):
        chain = ScopeChain()
        chain.enter(chain.root, "util", 1)
        app = chain.enter(chain.root, "app", 2)
        chain.add_using_directive(chain.root, "util", 3)
        assert chain.uses_for(app) == []
