"""Class layout and vtable computation.

A ``ClassLayout`` is computed once per record and drives both member access
and emission of the aggregate:

    [__vptr] [__base_B1, __base_B2, ...] [__vbase_V ..., __vstore_V ...] [own fields]

Non-virtual bases become adjacent subobject fields in base-list order.
Virtual bases are deduplicated by record identity across the whole
hierarchy: the most-derived object owns exactly one heap-allocated copy
(``__vstore_V``) and every subobject reaches it through a recorded pointer
(``__vbase_V``).

Vtables follow the usual single-table-per-subobject scheme: a polymorphic
root declares ``__vptr``; a derived class extends its primary base's table
(overrides keep their slot index, new virtuals are appended) and gets one
table per polymorphic subobject.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from . import constants
from . import cpp_ast as ast
from .cpp_types import ResolvedType
from .diagnostics import LayoutInvariantViolation, UnsupportedConstruct
from .symbols import NameRegistry, SymbolIndex, sanitize_ident
from .target_ir import RustType
from .type_mapper import TypeMapper, TypePosition

logger = logging.getLogger(__name__)


class FieldRole(Enum):
    VPTR = "vptr"
    BASE = "base"
    VBASE_PTR = "vbase_ptr"
    VBASE_STORE = "vbase_store"
    MEMBER = "member"


class StepKind(Enum):
    MEMBER = "member"
    MANAGED = "managed"
    INDIRECT = "indirect"


@dataclass(frozen=True)
class LayoutField:
    name: str
    role: FieldRole
    rust_type: RustType | None = None
    managed: bool = False
    cpp_name: str = ""
    cpp_type: ResolvedType | None = None
    record_id: int = 0
    decl: ast.FieldDecl | None = None


@dataclass(frozen=True)
class BaseSubobject:
    record_id: int
    field: str
    layout: ClassLayout
    is_primary: bool = False


@dataclass(frozen=True)
class VirtualBase:
    record_id: int
    accessor: str
    storage: str


@dataclass(frozen=True)
class PathStep:
    field: str
    kind: StepKind
    record_id: int = 0


@dataclass(frozen=True)
class FieldLookup:
    steps: tuple[PathStep, ...]
    field: LayoutField
    owner_id: int


@dataclass(frozen=True)
class VtableSlot:
    index: int
    key: str
    name: str
    origin_id: int
    impl_id: int
    method_id: int = 0
    is_destructor: bool = False
    is_pure: bool = False


@dataclass(frozen=True)
class VtableDescriptor:
    """Primary vtable of a record: slot order shared by its whole hierarchy."""

    record_id: int
    slots: tuple[VtableSlot, ...]

    def slot_for(self, key: str) -> VtableSlot | None:
        return next((s for s in self.slots if s.key == key), None)

    def __len__(self) -> int:
        return len(self.slots)


@dataclass(frozen=True)
class VtablePath:
    """One vptr-bearing subobject of a record and the table installed there."""

    index: int
    steps: tuple[str, ...]
    step_records: tuple[int, ...]
    root_id: int
    layout_id: int
    slots: tuple[VtableSlot, ...]
    static_name: str


@dataclass(frozen=True)
class ClassLayout:
    record_id: int
    name: str
    bases: tuple[BaseSubobject, ...]
    fields: tuple[LayoutField, ...]
    virtual_bases: tuple[VirtualBase, ...] = ()
    has_own_vptr: bool = False
    polymorphic: bool = False
    vtable: VtableDescriptor | None = None
    vtables: tuple[VtablePath, ...] = ()

    def ordered_fields(self) -> list[LayoutField]:
        """Every field of the aggregate in declaration order."""
        out: list[LayoutField] = []
        if self.has_own_vptr:
            out.append(LayoutField(constants.VPTR_FIELD, FieldRole.VPTR))
        out.extend(
            LayoutField(b.field, FieldRole.BASE, managed=True, record_id=b.record_id)
            for b in self.bases
        )
        out.extend(
            LayoutField(v.accessor, FieldRole.VBASE_PTR, record_id=v.record_id)
            for v in self.virtual_bases
        )
        out.extend(
            LayoutField(v.storage, FieldRole.VBASE_STORE, record_id=v.record_id)
            for v in self.virtual_bases
        )
        out.extend(self.fields)
        return out

    def base(self, record_id: int) -> BaseSubobject | None:
        return next((b for b in self.bases if b.record_id == record_id), None)

    def virtual_base(self, record_id: int) -> VirtualBase | None:
        return next((v for v in self.virtual_bases if v.record_id == record_id), None)

    @property
    def primary_base(self) -> BaseSubobject | None:
        return next((b for b in self.bases if b.is_primary), None)


def method_key(method: ast.MethodDecl) -> str:
    """Signature key identifying a virtual slot across a hierarchy."""
    name = f"operator{method.operator}" if method.operator else method.name
    params = ", ".join(p.type.spelling() for p in method.params)
    suffix = " const" if method.is_const else ""
    return f"{name}({params}){suffix}"


class LayoutBuilder:
    """Computes and caches ``ClassLayout`` values for one translation unit."""

    def __init__(self, index: SymbolIndex, mapper: TypeMapper):
        self.index = index
        self.mapper = mapper
        self._cache: dict[int, ClassLayout] = {}
        self._slots: dict[int, tuple[VtableSlot, ...]] = {}
        self._in_progress: set[int] = set()

    # ── record queries ───────────────────────────────────────────

    def _record(self, record_id: int) -> ast.RecordDecl:
        record = self.index.record(record_id)
        if record is None:
            raise UnsupportedConstruct(f"record #{record_id} has no definition in this unit")
        return record

    def is_polymorphic(self, record_id: int, _seen: frozenset[int] = frozenset()) -> bool:
        if record_id in _seen:
            raise LayoutInvariantViolation(f"record #{record_id} inherits from itself")
        record = self._record(record_id)
        if any(m.is_virtual for m in record.methods):
            return True
        if record.destructor is not None and record.destructor.is_virtual:
            return True
        seen = _seen | {record_id}
        return any(self.is_polymorphic(b.type.decl_id, seen) for b in record.bases)

    def primary_base_id(self, record_id: int) -> int | None:
        """First non-virtual polymorphic base in base-list order."""
        for spec in self._record(record_id).bases:
            if not spec.is_virtual and self.is_polymorphic(spec.type.decl_id):
                return spec.type.decl_id
        return None

    def all_virtual_bases(self, record_id: int) -> list[int]:
        """Virtual bases of the hierarchy, once each, in construction order."""
        result: list[int] = []

        def visit(rid: int, path: frozenset[int]) -> None:
            if rid in path:
                raise LayoutInvariantViolation(f"record #{rid} inherits from itself")
            for spec in self._record(rid).bases:
                base_id = spec.type.decl_id
                visit(base_id, path | {rid})
                if spec.is_virtual and base_id not in result:
                    result.append(base_id)

        visit(record_id, frozenset())
        return result

    def declares(self, record_id: int, key: str) -> ast.MethodDecl | None:
        record = self._record(record_id)
        return next(
            (m for m in record.methods if not m.is_static and method_key(m) == key),
            None,
        )

    # ── layout ───────────────────────────────────────────────────

    def layout_of(self, record_id: int) -> ClassLayout:
        cached = self._cache.get(record_id)
        if cached is not None:
            return cached
        if record_id in self._in_progress:
            raise LayoutInvariantViolation(
                f"record #{record_id} inherits from itself"
            )
        self._in_progress.add(record_id)
        try:
            layout = self._compute(record_id)
        finally:
            self._in_progress.discard(record_id)
        self.verify(layout)
        self._cache[record_id] = layout
        logger.debug(
            "Layout %s: %s",
            layout.name,
            [f.name for f in layout.ordered_fields()],
        )
        return layout

    def _compute(self, record_id: int) -> ClassLayout:
        record = self._record(record_id)
        name = self.index.record_name(record_id)
        if record.tag == "union":
            raise UnsupportedConstruct(f"union '{record.name}' has no lowering", record.loc)
        names = NameRegistry()
        primary_id = self.primary_base_id(record_id)

        bases: list[BaseSubobject] = []
        for spec in record.bases:
            if spec.is_virtual:
                continue
            base_id = spec.type.decl_id
            field_name = names.claim(
                (), f"{constants.BASE_FIELD_PREFIX}{self.index.record_name(base_id)}"
            )
            bases.append(
                BaseSubobject(
                    record_id=base_id,
                    field=field_name,
                    layout=self.layout_of(base_id),
                    is_primary=base_id == primary_id
                    and not any(b.is_primary for b in bases),
                )
            )

        virtual_bases: list[VirtualBase] = []
        for vb_id in self.all_virtual_bases(record_id):
            vb_name = self.index.record_name(vb_id)
            if self.is_polymorphic(vb_id):
                raise UnsupportedConstruct(
                    f"polymorphic virtual base '{vb_name}' of '{record.name}' is not supported",
                    record.loc,
                )
            self.layout_of(vb_id)
            virtual_bases.append(
                VirtualBase(
                    record_id=vb_id,
                    accessor=names.claim((), f"{constants.VBASE_PTR_PREFIX}{vb_name}"),
                    storage=names.claim((), f"{constants.VBASE_STORE_PREFIX}{vb_name}"),
                )
            )

        fields: list[LayoutField] = []
        for f in record.fields:
            self.mapper.declaration = record.name
            self.mapper.location = f.loc
            fields.append(
                LayoutField(
                    name=names.claim((), sanitize_ident(f.name)),
                    role=FieldRole.MEMBER,
                    rust_type=self.mapper.map_type(f.type, TypePosition.FIELD),
                    managed=self.mapper.needs_drop(f.type),
                    cpp_name=f.name,
                    cpp_type=f.type,
                    decl=f,
                )
            )

        polymorphic = self.is_polymorphic(record_id)
        layout = ClassLayout(
            record_id=record_id,
            name=name,
            bases=tuple(bases),
            fields=tuple(fields),
            virtual_bases=tuple(virtual_bases),
            has_own_vptr=polymorphic and primary_id is None,
            polymorphic=polymorphic,
        )
        if not polymorphic:
            return layout
        slots = self.primary_slots(record_id)
        return replace(
            layout,
            vtable=VtableDescriptor(record_id=record_id, slots=slots),
            vtables=self._vtable_paths(layout),
        )

    def verify(self, layout: ClassLayout) -> None:
        """Check the invariants every later stage relies on."""
        ids = [v.record_id for v in layout.virtual_bases]
        if len(ids) != len(set(ids)):
            raise LayoutInvariantViolation(
                f"virtual base appears more than once in '{layout.name}' after deduplication"
            )
        for base in layout.bases:
            for vb in base.layout.virtual_bases:
                if vb.record_id not in ids:
                    raise LayoutInvariantViolation(
                        f"virtual base #{vb.record_id} of '{base.layout.name}' "
                        f"has no storage in '{layout.name}'"
                    )
        names = [f.name for f in layout.ordered_fields()]
        if len(names) != len(set(names)):
            raise LayoutInvariantViolation(f"duplicate field names in '{layout.name}'")
        if layout.polymorphic and not layout.vtables:
            raise LayoutInvariantViolation(f"polymorphic '{layout.name}' has no vtable")

    # ── vtables ──────────────────────────────────────────────────

    def inherited_keys(self, record_id: int) -> set[str]:
        keys: set[str] = set()
        for spec in self._record(record_id).bases:
            base_id = spec.type.decl_id
            if self.is_polymorphic(base_id):
                keys.update(s.key for s in self.primary_slots(base_id))
                keys.update(self.inherited_keys(base_id))
        return keys

    def primary_slots(self, record_id: int) -> tuple[VtableSlot, ...]:
        cached = self._slots.get(record_id)
        if cached is not None:
            return cached
        record = self._record(record_id)
        primary_id = self.primary_base_id(record_id)
        slots = list(self.primary_slots(primary_id)) if primary_id is not None else []
        inherited = self.inherited_keys(record_id)
        secondary: set[str] = set()
        for spec in record.bases:
            base_id = spec.type.decl_id
            if base_id != primary_id and self.is_polymorphic(base_id):
                secondary.update(s.key for s in self.primary_slots(base_id))
                secondary.update(self.inherited_keys(base_id))

        def place(key: str, name: str, method_id: int, is_pure: bool, is_dtor: bool) -> None:
            for i, slot in enumerate(slots):
                if slot.key == key:
                    slots[i] = replace(
                        slot, impl_id=record_id, method_id=method_id, is_pure=is_pure
                    )
                    return
            if key in secondary:
                return
            slots.append(
                VtableSlot(
                    index=len(slots),
                    key=key,
                    name=name,
                    origin_id=record_id,
                    impl_id=record_id,
                    method_id=method_id,
                    is_destructor=is_dtor,
                    is_pure=is_pure,
                )
            )

        for method in record.methods:
            if method.is_static:
                continue
            key = method_key(method)
            if method.is_virtual or key in inherited:
                place(key, method.name, method.node_id, method.is_pure, False)
        dtor_virtual = record.destructor is not None and record.destructor.is_virtual
        if dtor_virtual or constants.DESTRUCTOR_SLOT_KEY in inherited:
            place(constants.DESTRUCTOR_SLOT_KEY, f"~{record.name}", 0, False, True)

        result = tuple(slots)
        self._slots[record_id] = result
        return result

    def _vtable_paths(self, layout: ClassLayout) -> tuple[VtablePath, ...]:
        raw: list[tuple[tuple[str, ...], tuple[int, ...], int, int]] = []
        if layout.has_own_vptr:
            raw.append(((), (), layout.record_id, layout.record_id))
        for base in layout.bases:
            for j, vp in enumerate(base.layout.vtables):
                layout_id = layout.record_id if (base.is_primary and j == 0) else vp.layout_id
                raw.append(
                    (
                        (base.field,) + vp.steps,
                        (base.record_id,) + vp.step_records,
                        vp.root_id,
                        layout_id,
                    )
                )
        paths = []
        for k, (steps, step_records, root_id, layout_id) in enumerate(raw):
            chain = (layout.record_id,) + step_records
            slots = tuple(
                self._final_overrider(slot, chain, layout_id, layout.record_id)
                for slot in self.primary_slots(layout_id)
            )
            paths.append(
                VtablePath(
                    index=k,
                    steps=steps,
                    step_records=step_records,
                    root_id=root_id,
                    layout_id=layout_id,
                    slots=slots,
                    static_name=f"{constants.VTABLE_STATIC_PREFIX}{layout.name}_{k}",
                )
            )
        return tuple(paths)

    def _final_overrider(
        self, slot: VtableSlot, chain: tuple[int, ...], layout_id: int, most_derived: int
    ) -> VtableSlot:
        if slot.is_destructor:
            return replace(slot, impl_id=most_derived, method_id=0)
        for rid in chain:
            if rid == layout_id:
                break
            method = self.declares(rid, slot.key)
            if method is not None:
                return replace(
                    slot, impl_id=rid, method_id=method.node_id, is_pure=method.is_pure
                )
        return slot

    def impl_steps(self, record_id: int, path: VtablePath, impl_id: int) -> tuple[PathStep, ...]:
        """Base steps from ``record_id`` to the subobject implementing a slot."""
        chain = (record_id,) + path.step_records
        if impl_id in chain:
            depth = chain.index(impl_id)
            return tuple(
                PathStep(field, StepKind.MANAGED, rid)
                for field, rid in zip(path.steps[:depth], path.step_records[:depth])
            )
        steps = [
            PathStep(field, StepKind.MANAGED, rid)
            for field, rid in zip(path.steps, path.step_records)
        ]
        current = chain[-1]
        while current != impl_id:
            base = self.layout_of(current).primary_base
            if base is None:
                raise LayoutInvariantViolation(
                    f"slot implementation #{impl_id} unreachable from #{record_id}"
                )
            steps.append(PathStep(base.field, StepKind.MANAGED, base.record_id))
            current = base.record_id
        return tuple(steps)

    def vptr_steps(self, record_id: int) -> tuple[PathStep, ...]:
        """Steps to the subobject holding the primary ``__vptr`` of a record."""
        layout = self.layout_of(record_id)
        if not layout.vtables:
            raise LayoutInvariantViolation(f"'{layout.name}' has no vtable")
        primary = layout.vtables[0]
        return tuple(
            PathStep(field, StepKind.MANAGED, rid)
            for field, rid in zip(primary.steps, primary.step_records)
        )

    # ── member lookup ────────────────────────────────────────────

    def find_field(self, record_id: int, name: str) -> FieldLookup | None:
        """Own fields first, then each base in declaration order."""
        layout = self.layout_of(record_id)
        for f in layout.fields:
            if f.cpp_name == name:
                return FieldLookup(steps=(), field=f, owner_id=record_id)
        for step in self._base_steps(record_id):
            found = self.find_field(step.record_id, name)
            if found is not None:
                return FieldLookup(
                    steps=(step,) + found.steps, field=found.field, owner_id=found.owner_id
                )
        return None

    def path_to_base(self, record_id: int, base_id: int) -> tuple[PathStep, ...] | None:
        if record_id == base_id:
            return ()
        for step in self._base_steps(record_id):
            if step.record_id == base_id:
                return (step,)
            found = self.path_to_base(step.record_id, base_id)
            if found is not None:
                return (step,) + found
        return None

    def _base_steps(self, record_id: int) -> list[PathStep]:
        layout = self.layout_of(record_id)
        steps: list[PathStep] = []
        for spec in self._record(record_id).bases:
            base_id = spec.type.decl_id
            if spec.is_virtual:
                vb = layout.virtual_base(base_id)
                steps.append(PathStep(vb.accessor, StepKind.INDIRECT, base_id))
            else:
                base = layout.base(base_id)
                steps.append(PathStep(base.field, StepKind.MANAGED, base_id))
        return steps
