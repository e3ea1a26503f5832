"""Tests for class layouts, virtual bases, vtable slots and member lookup."""

from __future__ import annotations

import pytest

from transpiler import cpp_ast as ast
from transpiler.ast_builder import AstBuilder
from transpiler.cpp_types import INT, VOID, RecordType
from transpiler.diagnostics import LayoutInvariantViolation, UnsupportedConstruct
from transpiler.layout import FieldRole, LayoutBuilder, StepKind, method_key
from transpiler.symbols import SymbolIndex
from transpiler.type_mapper import TypeMapper


def _builder(*decls) -> LayoutBuilder:
    b = AstBuilder(start=1000)
    index = SymbolIndex.build(b.tu(*decls))
    return LayoutBuilder(index, TypeMapper(index))


def _field_names(layouts: LayoutBuilder, record: ast.RecordDecl) -> list[str]:
    return [f.name for f in layouts.layout_of(record.node_id).ordered_fields()]


def _animal_and_dog(b: AstBuilder) -> tuple[ast.RecordDecl, ast.RecordDecl]:
    speak = b.node(ast.MethodDecl, name="speak", return_type=INT, is_virtual=True, is_pure=True, is_const=True)
    dtor = b.node(ast.DestructorDecl, body=b.block(), is_virtual=True)
    animal = b.node(ast.RecordDecl, name="Animal", methods=[speak], destructor=dtor)
    bark = b.node(
        ast.MethodDecl, name="speak", return_type=INT, is_virtual=True, is_const=True,
        body=b.block(b.ret(b.lit(1))),
    )
    dog = b.node(ast.RecordDecl, name="Dog", bases=[b.base(animal)], methods=[bark])
    return animal, dog


class TestPlainRecords:
    def test_fields_in_declaration_order(self):
        b = AstBuilder()
        point = b.node(ast.RecordDecl, name="Point", fields=[b.field("x", INT), b.field("y", INT)])
        layouts = _builder(point)
        layout = layouts.layout_of(point.node_id)
        assert _field_names(layouts, point) == ["x", "y"]
        assert not layout.polymorphic
        assert layout.vtable is None
        assert layout.fields[0].role == FieldRole.MEMBER
        assert not layout.fields[0].managed

    def test_layouts_are_cached(self):
        b = AstBuilder()
        point = b.node(ast.RecordDecl, name="Point", fields=[b.field("x", INT)])
        layouts = _builder(point)
        assert layouts.layout_of(point.node_id) is layouts.layout_of(point.node_id)

    def test_union_is_unsupported(self):
        b = AstBuilder()
        u = b.node(ast.RecordDecl, name="U", tag="union", fields=[b.field("i", INT)])
        with pytest.raises(UnsupportedConstruct, match="union"):
            _builder(u).layout_of(u.node_id)


class TestPolymorphism:
    def test_root_of_hierarchy_owns_the_vptr(self):
        b = AstBuilder()
        animal, dog = _animal_and_dog(b)
        layouts = _builder(animal, dog)
        layout = layouts.layout_of(animal.node_id)
        assert _field_names(layouts, animal) == ["__vptr"]
        assert [s.key for s in layout.vtable.slots] == ["speak() const", "~"]
        assert layout.vtable.slots[0].is_pure

    def test_derived_record_shares_the_primary_base_vptr(self):
        b = AstBuilder()
        animal, dog = _animal_and_dog(b)
        layouts = _builder(animal, dog)
        layout = layouts.layout_of(dog.node_id)
        assert _field_names(layouts, dog) == ["__base_Animal"]
        assert not layout.has_own_vptr
        assert layout.primary_base.record_id == animal.node_id
        speak = layout.vtable.slot_for("speak() const")
        assert speak.impl_id == dog.node_id
        assert not speak.is_pure
        assert layout.vtable.slot_for("~").impl_id == dog.node_id

    def test_vtable_statics_are_named_per_subobject(self):
        b = AstBuilder()
        animal, dog = _animal_and_dog(b)
        layouts = _builder(animal, dog)
        (path,) = layouts.layout_of(dog.node_id).vtables
        assert path.static_name == "__VTABLE_Dog_0"
        assert path.steps == ("__base_Animal",)
        assert [s.field for s in layouts.vptr_steps(dog.node_id)] == ["__base_Animal"]

    def test_secondary_base_override_does_not_extend_primary_table(self):
        b = AstBuilder()
        f = b.node(ast.MethodDecl, name="f", is_virtual=True, body=b.block())
        a = b.node(ast.RecordDecl, name="A", methods=[f])
        g = b.node(ast.MethodDecl, name="g", is_virtual=True, body=b.block())
        bb = b.node(ast.RecordDecl, name="B", methods=[g])
        g_override = b.node(ast.MethodDecl, name="g", is_virtual=True, body=b.block())
        c = b.node(ast.RecordDecl, name="C", bases=[b.base(a), b.base(bb)], methods=[g_override])
        layouts = _builder(a, bb, c)
        layout = layouts.layout_of(c.node_id)
        assert [s.key for s in layout.vtable.slots] == ["f()"]
        assert len(layout.vtables) == 2
        second = layout.vtables[1]
        assert second.steps == ("__base_B",)
        assert second.slots[0].impl_id == c.node_id
        assert second.static_name == "__VTABLE_C_1"

    def test_method_key(self):
        b = AstBuilder()
        m = b.node(ast.MethodDecl, name="area", params=[b.param("scale", INT)], is_const=True)
        assert method_key(m) == "area(int) const"
        op = b.node(ast.MethodDecl, name="operator==", operator="==", return_type=VOID)
        assert method_key(op) == "operator==()"


class TestVirtualBases:
    def _diamond(self, b: AstBuilder):
        v = b.node(ast.RecordDecl, name="V", fields=[b.field("v", INT)])
        left = b.node(ast.RecordDecl, name="L", bases=[b.base(v, virtual=True)], fields=[b.field("l", INT)])
        right = b.node(ast.RecordDecl, name="R", bases=[b.base(v, virtual=True)], fields=[b.field("r", INT)])
        d = b.node(ast.RecordDecl, name="D", bases=[b.base(left), b.base(right)], fields=[b.field("d", INT)])
        return v, left, right, d

    def test_shared_virtual_base_is_stored_once(self):
        b = AstBuilder()
        v, left, right, d = self._diamond(b)
        layouts = _builder(v, left, right, d)
        assert _field_names(layouts, left) == ["__vbase_V", "__vstore_V", "l"]
        assert _field_names(layouts, d) == ["__base_L", "__base_R", "__vbase_V", "__vstore_V", "d"]

    def test_field_lookup_through_virtual_base(self):
        b = AstBuilder()
        v, left, right, d = self._diamond(b)
        layouts = _builder(v, left, right, d)
        found = layouts.find_field(d.node_id, "v")
        assert [s.field for s in found.steps] == ["__base_L", "__vbase_V"]
        assert [s.kind for s in found.steps] == [StepKind.MANAGED, StepKind.INDIRECT]
        assert found.owner_id == v.node_id
        assert layouts.find_field(d.node_id, "missing") is None

    def test_path_to_base(self):
        b = AstBuilder()
        v, left, right, d = self._diamond(b)
        layouts = _builder(v, left, right, d)
        assert [s.field for s in layouts.path_to_base(d.node_id, right.node_id)] == ["__base_R"]
        assert layouts.path_to_base(d.node_id, d.node_id) == ()

    def test_polymorphic_virtual_base_is_unsupported(self):
        b = AstBuilder()
        f = b.node(ast.MethodDecl, name="f", is_virtual=True, body=b.block())
        v = b.node(ast.RecordDecl, name="V", methods=[f])
        w = b.node(ast.RecordDecl, name="W", bases=[b.base(v, virtual=True)])
        with pytest.raises(UnsupportedConstruct, match="polymorphic virtual base"):
            _builder(v, w).layout_of(w.node_id)


class TestInvariants:
    def test_self_inheritance_is_fatal(self):
        b = AstBuilder()
        rid = b.next_id()
        selfish = b.node(
            ast.RecordDecl,
            name="Loop",
            node_id=rid,
            bases=[b.node(ast.BaseSpecifier, type=RecordType(name="Loop", decl_id=rid))],
        )
        with pytest.raises(LayoutInvariantViolation, match="inherits from itself"):
            _builder(selfish).layout_of(rid)
