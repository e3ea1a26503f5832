"""Declaration lowering: namespaces, classes, functions and globals.

Walks one translation unit top to bottom and builds the ``RustModule`` tree.
Each record becomes a ``#[repr(C)]`` aggregate laid out by ``LayoutBuilder``
plus one inherent impl (constructors, ``__destroy``, methods, vtable thunks,
static-member accessors) and ``Drop``/``Clone``/``Default`` impls.

A recoverable ``UnsupportedConstruct`` skips only the declaration it was
raised in: a method, constructor, function, global or whole record.  Fatal
errors propagate to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from . import constants
from . import cpp_ast as ast
from .config import TranspileConfig
from .cpp_ast import strip_implicit
from .cpp_types import (
    ArrayType,
    PointerType,
    RecordType,
    ReferenceType,
    ResolvedType,
    StdLibType,
    is_void,
    strip_reference,
)
from .diagnostics import DiagnosticSink, UnsupportedConstruct
from .expr_lowerer import ExpressionLowerer, field_of, manually_drop
from .literals import rust_str
from .layout import ClassLayout, FieldRole, LayoutBuilder, LayoutField, PathStep, StepKind, VtablePath, VtableSlot
from .lowering_types import FunctionContext, LocalKind, SelfMode, UnitContext
from .stdlib import template_of
from .stmt_lowerer import StatementLowerer, ends_in_return
from .symbols import Symbol, SymbolIndex, SymbolKind
from .target_ir import (
    UNIT,
    ArrayLit,
    ArrayOf,
    Assign,
    Block,
    Call,
    Cast,
    Closure,
    ExprStmt,
    FieldAccess,
    If,
    Let,
    Lit,
    Macro,
    MethodCall,
    Named,
    PassStyle,
    Path,
    PathExpr,
    Prim,
    RawPtr,
    Ref,
    RExpr,
    RStmt,
    RustConst,
    RustCrate,
    RustEnum,
    RustField,
    RustFunction,
    RustGlobal,
    RustImpl,
    RustModule,
    RustParam,
    RustRecord,
    RustStatic,
    RustStruct,
    RustType,
    RustTypeAlias,
    RustUse,
    StructLit,
    Unary,
    Var,
)
from .type_mapper import C_VOID, TypeMapper, TypePosition, null_pointer

logger = logging.getLogger(__name__)

ENUM_ATTRS: tuple[str, ...] = (
    "#[repr(transparent)]",
    "#[derive(Clone, Copy, PartialEq, Eq, PartialOrd, Ord, Hash, Debug, Default)]",
)

_BY_VALUE_WRAPPERS = ("std::optional", "std::pair")

SELF = Var("self")


def _self_field(name: str) -> FieldAccess:
    return FieldAccess(SELF, name)


def _pass_style(t: ResolvedType) -> PassStyle:
    if isinstance(t, ReferenceType):
        return PassStyle.BY_REFERENCE
    if isinstance(t, PointerType):
        return PassStyle.BY_POINTER
    return PassStyle.BY_VALUE


def _local_suffix(name: str) -> str:
    return name.removeprefix("r#")


class DeclarationLowerer:
    """Lowers every declaration of one translation unit into a ``RustCrate``."""

    def __init__(
        self,
        unit: ast.TranslationUnit,
        config: TranspileConfig | None = None,
        sink: DiagnosticSink | None = None,
    ):
        self.unit = unit
        self.config = config or TranspileConfig()
        self.sink = sink if sink is not None else DiagnosticSink()
        self.index = SymbolIndex.build(unit)
        self.mapper = TypeMapper(self.index, self.sink, self.config.runtime_crate)
        self.layouts = LayoutBuilder(self.index, self.mapper)
        self.context = UnitContext(
            index=self.index,
            mapper=self.mapper,
            layouts=self.layouts,
            sink=self.sink,
            config=self.config,
        )
        self.exprs = ExpressionLowerer(self.context)
        self.statements = StatementLowerer(self.context, self.exprs)
        self.crate = RustCrate(
            root=RustModule(name="crate"),
            header=(f"#![allow({', '.join(constants.CRATE_ALLOWS)})]",),
        )
        self._scope = self.index.scopes.root
        self._globals: list[tuple[int, Path]] = []
        self._DECL_DISPATCH: dict[str, Callable[[Any], None]] = {
            "namespace": self._lower_namespace,
            "using_directive": lambda d: None,
            "using_decl": lambda d: None,
            "var": self._lower_global,
            "function": self._lower_function,
            "record": self._lower_record,
            "enum": self._lower_enum,
            "type_alias": self._lower_alias,
        }

    # ── entry point ──────────────────────────────────────────────

    def lower(self) -> RustCrate:
        logger.info("Lowering declarations of %s", self.unit.file or "<unit>")
        self._lower_decls(self.unit.decls)
        self._emit_uses(self.index.scopes.root)
        self._finish_root()
        logger.info(
            "Lowered %s with %d diagnostics", self.unit.file or "<unit>", len(self.sink)
        )
        return self.crate

    # ── helpers ──────────────────────────────────────────────────

    def _attempt(self, name: str, loc: ast.SourceLocation, build: Callable[[], Any]) -> Any:
        """Run ``build``; on an unsupported construct report it and return None."""
        self.mapper.declaration = name
        self.mapper.location = loc
        try:
            return build()
        except UnsupportedConstruct as exc:
            diagnostic = exc.to_diagnostic(name)
            if diagnostic.location.is_unknown():
                diagnostic = diagnostic.model_copy(update={"location": loc})
            self.sink.report(diagnostic)
            logger.warning("Skipping %s", name)
            self.exprs.needs_unsafe = False
            return None

    def _module(self, path: tuple[str, ...]) -> RustModule:
        module = self.crate.root
        scope = self.index.scopes.root
        for module_name in path:
            scope = next(s for s in scope.children.values() if s.module_name == module_name)
            module = module.child(module_name, vis="" if scope.anonymous else "pub")
        return module

    def rust(self, t: ResolvedType, position: TypePosition = TypePosition.LOCAL) -> RustType:
        return self.mapper.map_type(t, position)

    def _ret(self, t: ResolvedType) -> RustType | None:
        ret = self.rust(t, TypePosition.RETURN)
        return None if ret == UNIT else ret

    def _rt(self, name: str) -> Path:
        return self.context.rt(name)

    def _record_type(self, record_id: int) -> Named:
        return Named(self.index.record_path(record_id))

    def _params(self, params: list[ast.ParamDecl], ctx: FunctionContext) -> tuple[RustParam, ...]:
        out = []
        for i, p in enumerate(params):
            by_ref = isinstance(p.type, ReferenceType)
            kind = LocalKind.BORROW if by_ref else LocalKind.VALUE
            info = ctx.declare(p.node_id, p.name or f"_arg{i}", kind, strip_reference(p.type))
            out.append(
                RustParam(
                    info.name,
                    self.rust(p.type, TypePosition.PARAM),
                    mutable=not by_ref,
                    pass_style=_pass_style(p.type),
                )
            )
        return tuple(out)

    def _body(self, body: ast.CompoundStmt, return_type: ResolvedType, is_main: bool = False) -> Block:
        """Lowered body; must run inside ``statements.scope``."""
        if self.config.stubs_only:
            return Block(tail=Macro("unimplemented"))
        stmts = self.statements.lower_stmts(body.body)
        if is_main and not ends_in_return(stmts):
            return Block(tuple(stmts), tail=Lit("0"))
        if not is_void(return_type) and not ends_in_return(stmts):
            stmts.append(ExprStmt(Macro("unreachable")))
        return Block(tuple(stmts))

    # ── namespaces ───────────────────────────────────────────────

    def _lower_decls(self, decls: list) -> None:
        for decl in decls:
            handler = self._DECL_DISPATCH.get(decl.kind)
            if handler is None:
                logger.debug("No lowering for declaration kind %s", decl.kind)
                continue
            handler(decl)

    def _lower_namespace(self, decl: ast.NamespaceDecl) -> None:
        outer = self._scope
        self._scope = outer.children[decl.name or "<anonymous>"]
        try:
            self._module(self._scope.path)
            self._lower_decls(decl.decls)
        finally:
            self._scope = outer

    def _emit_uses(self, scope) -> None:
        module = self._module(scope.path)
        taken = _item_names(module)
        seen: set[str] = set()
        for edge in self.index.scopes.uses_for(scope):
            if edge.is_directive:
                if not edge.target or edge.target == scope.path:
                    continue
                text = "crate::" + "::".join(edge.target) + "::*"
            else:
                sym = self.index.get(edge.target_id)
                if sym is None or sym.owner_name or sym.module == scope.path:
                    continue
                if sym.rust_name in taken:
                    continue
                text = "crate::" + "::".join(sym.module + (sym.rust_name,))
                taken.add(sym.rust_name)
            if text not in seen:
                seen.add(text)
                module.uses.append(RustUse(text))
        for child in scope.children.values():
            self._emit_uses(child)

    # ── simple declarations ──────────────────────────────────────

    def _lower_alias(self, decl: ast.TypeAliasDecl) -> None:
        sym = self.index.get(decl.node_id)
        if sym is None:
            return

        def build() -> None:
            alias = RustTypeAlias(sym.rust_name, self.rust(decl.target, TypePosition.FIELD))
            self._module(sym.module).aliases.append(alias)

        self._attempt(sym.qualified_name, decl.loc, build)

    def _lower_enum(self, decl: ast.EnumDecl) -> None:
        sym = self.index.get(decl.node_id)
        if sym is None:
            return

        def build() -> None:
            variants = tuple(
                (self.index.get(e.node_id).rust_name, Lit(str(e.value)))
                for e in decl.enumerators
            )
            enum = RustEnum(sym.rust_name, self.rust(decl.underlying), variants, ENUM_ATTRS)
            self._module(sym.module).aliases.append(enum)

        self._attempt(sym.qualified_name, decl.loc, build)

    def _lower_function(self, decl: ast.FunctionDecl) -> None:
        sym = self.index.get(decl.node_id)
        # Redeclarations share one symbol; lower only the declaration it kept.
        if sym is None or sym.decl is not decl:
            return
        module = self._module(sym.module)
        if decl.body is None:
            module.externs.append(self._extern(sym.rust_name, decl))
            return
        fn = self._attempt(sym.qualified_name, decl.loc, lambda: self._function(decl, sym))
        if fn is not None:
            module.functions.append(fn)

    def _function(self, decl: ast.FunctionDecl, sym: Symbol) -> RustFunction:
        logger.debug("Lowering function %s", sym.qualified_name)
        if decl.is_variadic:
            raise UnsupportedConstruct("definition of a C variadic function", decl.loc)
        is_main = sym.rust_name == constants.CPP_MAIN_FN and not sym.module
        ctx = FunctionContext(declaration=sym.qualified_name, return_type=decl.return_type)
        with self.statements.scope(ctx):
            params = self._params(decl.params, ctx)
            body = self._body(decl.body, decl.return_type, is_main)
        return RustFunction(
            sym.rust_name,
            params,
            self._ret(decl.return_type),
            body,
        )

    def _extern(self, name: str, decl: ast.FunctionDecl) -> RustFunction:
        params = tuple(
            RustParam(p.name or f"_a{i}", self.rust(p.type, TypePosition.PARAM))
            for i, p in enumerate(decl.params)
        )
        return RustFunction(
            name, params, self._ret(decl.return_type), is_variadic=decl.is_variadic
        )

    # ── globals ──────────────────────────────────────────────────

    def _lower_global(self, decl: ast.VarDecl) -> None:
        sym = self.index.get(decl.node_id)
        # Out-of-line definitions of static members are lowered with their class.
        if sym is None or sym.decl_id != decl.node_id or sym.kind == SymbolKind.STATIC_MEMBER:
            return
        module = self._module(sym.module)

        def build() -> RustGlobal:
            var: ast.VarDecl = sym.decl
            if sym.kind == SymbolKind.CONSTANT:
                ty = self.rust(var.type)
                init = self.statements.global_initializer(var.type, var.init, sym.qualified_name)
                const = RustConst(sym.rust_name, ty, init)
                return RustGlobal(sym.rust_name, (const,), sym.order)
            slot_name = f"{constants.GLOBAL_SLOT_PREFIX}{_local_suffix(sym.rust_name)}"
            items = self._global_slot(var, slot_name, sym, Path(sym.module, (slot_name,)))
            self._globals.append((sym.order, sym.path))
            return RustGlobal(sym.rust_name, items, sym.order)

        lowered = self._attempt(sym.qualified_name, decl.loc, build)
        if lowered is not None:
            module.globals.append(lowered)

    def _global_slot(
        self, var: ast.VarDecl, slot_name: str, sym: Symbol, slot_path: Path
    ) -> tuple[RustStatic, RustFunction]:
        """Initialize-once slot and its accessor for a global or static member."""
        if isinstance(var.type, ReferenceType):
            raise UnsupportedConstruct(f"global reference '{var.name}'", var.loc)
        storage = self.rust(var.type, TypePosition.FIELD)
        slot_type = self._rt(constants.RT_GLOBAL_SLOT)
        slot = RustStatic(
            slot_name,
            Named(slot_type, (storage,)),
            Call(PathExpr(slot_type.member("new"))),
        )
        init = self.statements.global_initializer(var.type, var.init, sym.qualified_name)
        get = MethodCall(PathExpr(slot_path), "get_or_init", (Closure((), Block(tail=init)),))
        accessor = RustFunction(sym.rust_name, (), RawPtr(storage), Block(tail=get))
        return slot, accessor

    # ── records ──────────────────────────────────────────────────

    def _lower_record(self, decl: ast.RecordDecl) -> None:
        if not decl.is_definition:
            return
        sym = self.index.get(decl.node_id)
        if sym is None or sym.decl is not decl:
            return
        record = self._attempt(sym.qualified_name, decl.loc, lambda: self._record(decl, sym))
        if record is not None:
            self._module(sym.module).records.append(record)
        self._lower_decls(decl.nested)

    def _record(self, decl: ast.RecordDecl, sym: Symbol) -> RustRecord:
        logger.debug("Lowering record %s", sym.qualified_name)
        rid = decl.node_id
        layout = self.layouts.layout_of(rid)
        struct = RustStruct(
            sym.rust_name,
            tuple(RustField(f.name, self._field_type(f)) for f in layout.ordered_fields()),
        )
        items: list[RustFunction] = []
        items.extend(self._constructors(decl, sym, layout))
        items.append(self._destroy(decl, sym, layout))
        items.append(self._assign(sym, layout))
        if layout.virtual_bases:
            items.append(self._bind_vbases(layout))
        if layout.polymorphic:
            items.append(self._init_vtables(sym, layout))
        for method in decl.methods:
            msym = self.index.get(method.node_id)
            name = f"{sym.qualified_name}::{method.name}"
            fn = self._attempt(name, method.loc, lambda m=method, s=msym: self._method(m, s, rid))
            if fn is not None:
                items.append(fn)
        statics: list[RustStatic] = []
        if layout.polymorphic:
            thunks, tables = self._vtables(sym, layout)
            items.extend(thunks)
            statics.extend(tables)
        for static in decl.static_members:
            ssym = self.index.get(static.node_id)
            if ssym is None or ssym.kind != SymbolKind.STATIC_MEMBER:
                continue
            lowered = self._attempt(
                ssym.qualified_name, static.loc, lambda s=ssym: self._static_member(sym, s)
            )
            if lowered is not None:
                statics.append(lowered[0])
                items.append(lowered[1])
        impls = [
            RustImpl(sym.rust_name, tuple(items)),
            self._drop_impl(sym),
            self._clone_impl(sym, layout),
        ]
        if self.index.has_default_constructor(rid):
            impls.append(self._default_impl(decl, sym))
        return RustRecord(
            struct=struct,
            impls=tuple(impls),
            statics=tuple(statics),
            record_id=rid,
            deps=tuple(self._record_deps(decl, layout)),
            order=sym.order,
        )

    def _field_type(self, f: LayoutField) -> RustType:
        if f.role == FieldRole.VPTR:
            return RawPtr(Named(self._rt(constants.RT_VSLOT)), mutable=False)
        if f.role == FieldRole.BASE:
            return _manually_drop_type(self._record_type(f.record_id))
        if f.role in (FieldRole.VBASE_PTR, FieldRole.VBASE_STORE):
            return RawPtr(self._record_type(f.record_id))
        return _manually_drop_type(f.rust_type) if f.managed else f.rust_type

    def _record_deps(self, decl: ast.RecordDecl, layout: ClassLayout) -> list[int]:
        """Records this one contains by value."""
        deps = [b.record_id for b in layout.bases]
        for f in layout.fields:
            deps.extend(d for d in _value_deps(f.cpp_type) if d not in deps)
        return deps

    # ── constructors ─────────────────────────────────────────────

    def _constructors(
        self, decl: ast.RecordDecl, sym: Symbol, layout: ClassLayout
    ) -> list[RustFunction]:
        ctors: list[tuple[ast.ConstructorDecl, str]] = [
            (c, self.index.get(c.node_id).rust_name) for c in decl.constructors
        ]
        if not ctors:
            ctors = [(ast.ConstructorDecl(ctor_kind=ast.CtorKind.DEFAULT), constants.CTOR_DEFAULT)]
        out = []
        name = f"{sym.qualified_name}::{decl.name}"
        for ctor, rust_name in ctors:
            variants = [False, True] if layout.virtual_bases else [False]
            for as_base in variants:
                fn = self._attempt(
                    name,
                    ctor.loc,
                    lambda c=ctor, n=rust_name, b=as_base: self._constructor(decl, sym, layout, c, n, b),
                )
                if fn is not None:
                    out.append(fn)
        return out

    def _constructor(
        self,
        decl: ast.RecordDecl,
        sym: Symbol,
        layout: ClassLayout,
        ctor: ast.ConstructorDecl,
        rust_name: str,
        as_base: bool,
    ) -> RustFunction:
        """Complete-object constructor, or with ``as_base`` the variant used for a
        base subobject, which receives the virtual bases instead of owning them."""
        rid = decl.node_id
        ctx = FunctionContext(
            declaration=f"{sym.qualified_name}::{decl.name}",
            record_id=rid,
            self_mode=SelfMode.LOCAL,
            is_ctor=True,
            in_init_phase=True,
            return_label=constants.BODY_LABEL,
        )
        name = f"{constants.BASE_CTOR_PREFIX}{rust_name}" if as_base else rust_name
        with self.statements.scope(ctx):
            params = list(self._params(ctor.params, ctx))
            if self.config.stubs_only:
                body = Block(tail=Macro("unimplemented"))
            else:
                stmts: list[RStmt] = []
                vb_vars: dict[int, str] = {}
                for vb in layout.virtual_bases:
                    vname = self.index.record_name(vb.record_id)
                    if as_base:
                        local = f"{constants.VBASE_PTR_LOCAL_PREFIX}{vname}"
                        params.append(RustParam(local, RawPtr(self._record_type(vb.record_id))))
                    else:
                        local = f"{constants.VBASE_LOCAL_PREFIX}{vname}"
                        stmts.append(self._construct_vbase(ctor, vb.record_id, local))
                    vb_vars[vb.record_id] = local
                delegate = _base_initializer(ctor, rid)
                if delegate is not None:
                    if layout.virtual_bases:
                        raise UnsupportedConstruct(
                            "delegating constructor of a class with virtual bases", ctor.loc
                        )
                    value = self.statements.guarded(lambda: self.exprs.value(delegate))
                    stmts.append(Let(constants.SELF_LOCAL, init=value))
                else:
                    stmts.extend(self._init_phase(ctor, layout, vb_vars, as_base))
                ctx.in_init_phase = False
                if layout.polymorphic:
                    stmts.append(
                        ExprStmt(MethodCall(Var(constants.SELF_LOCAL), constants.INIT_VTABLES_METHOD))
                    )
                if ctor.body is not None and ctor.body.body:
                    user = self.statements.lower_stmts(ctor.body.body)
                    stmts.append(ExprStmt(Block(tuple(user), label=constants.BODY_LABEL)))
                body = Block(tuple(stmts), tail=Var(constants.SELF_LOCAL))
        return RustFunction(
            name, tuple(params), self._record_type(rid), body, vis="pub"
        )

    def _construct_vbase(self, ctor: ast.ConstructorDecl, vb_id: int, local: str) -> Let:
        init = _base_initializer(ctor, vb_id)
        vname = self.index.record_name(vb_id)

        def build() -> RExpr:
            if init is not None:
                return self.exprs.value(init)
            return self.mapper.default_value(RecordType(name=vname, decl_id=vb_id))

        value = self.statements.guarded(build)
        alloc = Block(tail=Call(PathExpr(self._rt(constants.RT_NEW)), (value,)), unsafe=True)
        return Let(local, RawPtr(self._record_type(vb_id)), alloc, mutable=False)

    def _init_phase(
        self,
        ctor: ast.ConstructorDecl,
        layout: ClassLayout,
        vb_vars: dict[int, str],
        as_base: bool,
    ) -> list[RStmt]:
        """Bases in base-list order, then members in declaration order, then the
        aggregate itself."""
        stmts: list[RStmt] = []
        ctx = self.statements.ctx
        base_vars: dict[int, str] = {}
        for base in layout.bases:
            local = f"{constants.BASE_LOCAL_PREFIX}{self.index.record_name(base.record_id)}"
            init = _base_initializer(ctor, base.record_id)
            value = self.statements.guarded(
                lambda b=base, i=init: self._base_value(b.record_id, b.layout, i, vb_vars)
            )
            stmts.append(Let(local, init=value))
            base_vars[base.record_id] = local
        member_vars: dict[str, str] = {}
        for f in layout.fields:
            local = f"{constants.MEMBER_LOCAL_PREFIX}{_local_suffix(f.name)}"
            init = _member_initializer(ctor, f.cpp_name)
            value = self.statements.guarded(lambda f=f, i=init: self._member_value(f, i))
            stmts.append(Let(local, f.rust_type, value))
            member_vars[f.name] = local
            ctx.member_locals[f.cpp_name] = local
        fields: list[tuple[str, RExpr]] = []
        for f in layout.ordered_fields():
            if f.role == FieldRole.VPTR:
                value: RExpr = null_pointer(False)
            elif f.role == FieldRole.BASE:
                value = manually_drop(Var(base_vars[f.record_id]))
            elif f.role == FieldRole.VBASE_PTR:
                value = Var(vb_vars[f.record_id])
            elif f.role == FieldRole.VBASE_STORE:
                value = null_pointer(True) if as_base else Var(vb_vars[f.record_id])
            else:
                value = Var(member_vars[f.name])
                if f.managed:
                    value = manually_drop(value)
            fields.append((f.name, value))
        stmts.append(
            Let(constants.SELF_LOCAL, init=StructLit(self.index.record_path(layout.record_id), tuple(fields)))
        )
        return stmts

    def _base_value(
        self, base_id: int, base_layout: ClassLayout, init: Any, vb_vars: dict[int, str]
    ) -> RExpr:
        pointers = tuple(Var(vb_vars[v.record_id]) for v in base_layout.virtual_bases)
        if not pointers:
            if init is None:
                return self.mapper.default_value(RecordType(name=base_layout.name, decl_id=base_id))
            return self.exprs.value(init)
        construct = strip_implicit(init) if init is not None else None
        ctor_sym = None
        if isinstance(construct, ast.ConstructExpr) and construct.ctor_id:
            ctor_sym = self.index.get(construct.ctor_id)
        implicit_default = (
            isinstance(construct, ast.ConstructExpr) and ctor_sym is None and not construct.args
        )
        if (
            construct is None
            or implicit_default
            or (ctor_sym is not None and ctor_sym.kind == SymbolKind.CONSTRUCTOR)
        ):
            if ctor_sym is None:
                ctor_name, args = constants.CTOR_DEFAULT, ()
            else:
                ctor_name = ctor_sym.rust_name
                args = self.exprs.args(construct.args, [p.type for p in ctor_sym.decl.params])
            path = self.index.record_path(base_id).member(f"{constants.BASE_CTOR_PREFIX}{ctor_name}")
            return Call(PathExpr(path), args + pointers)
        # Copied base subobject: rebind its virtual bases to ours.
        copied = Var(constants.CLONE_LOCAL)
        return Block(
            (
                Let(constants.CLONE_LOCAL, init=self.exprs.value(init)),
                ExprStmt(MethodCall(copied, constants.BIND_VBASES_METHOD, pointers)),
            ),
            tail=copied,
        )

    def _member_value(self, f: LayoutField, init: Any) -> RExpr:
        if init is None and f.decl is not None:
            init = f.decl.default_init
        t = f.cpp_type
        if isinstance(t, ReferenceType):
            if init is None:
                raise UnsupportedConstruct(f"reference member '{f.cpp_name}' is never bound")
            return self.exprs.init_value(init, t, TypePosition.FIELD)
        return self.statements.initializer(t, init)

    # ── generated members ────────────────────────────────────────

    def _destroy(self, decl: ast.RecordDecl, sym: Symbol, layout: ClassLayout) -> RustFunction:
        """User body, then own fields in reverse, bases in reverse, virtual bases."""
        stmts: list[RStmt] = []
        if layout.polymorphic:
            # Virtual calls made during destruction see this class's overrides.
            stmts.append(ExprStmt(MethodCall(SELF, constants.INIT_VTABLES_METHOD)))
        dtor = decl.destructor
        if dtor is not None and dtor.body is not None and dtor.body.body and not self.config.stubs_only:
            ctx = FunctionContext(
                declaration=f"{sym.qualified_name}::~{decl.name}",
                record_id=decl.node_id,
                self_mode=SelfMode.REF,
                return_label=constants.BODY_LABEL,
            )

            def build() -> list[RStmt]:
                with self.statements.scope(ctx):
                    return self.statements.lower_stmts(dtor.body.body)

            user = self._attempt(ctx.declaration, dtor.loc, build)
            if user:
                stmts.append(ExprStmt(Block(tuple(user), label=constants.BODY_LABEL)))
        teardown: list[RStmt] = []
        drop = PathExpr(Path.external_path("std::mem::ManuallyDrop::drop"))
        for f in reversed(layout.fields):
            if f.managed:
                teardown.append(ExprStmt(Call(drop, (Unary("&mut", _self_field(f.name)),))))
        for base in reversed(layout.bases):
            teardown.append(ExprStmt(Call(drop, (Unary("&mut", _self_field(base.field)),))))
        for vb in reversed(layout.virtual_bases):
            store = _self_field(vb.storage)
            release = Call(PathExpr(self._rt(constants.RT_DELETE)), (store,))
            teardown.append(
                ExprStmt(If(Unary("!", MethodCall(store, "is_null")), Block((ExprStmt(release),))))
            )
        if teardown:
            stmts.append(ExprStmt(Block(tuple(teardown), unsafe=True)))
        return RustFunction(
            constants.DESTROY_METHOD, (), None, Block(tuple(stmts)), receiver="&mut self"
        )

    def _assign(self, sym: Symbol, layout: ClassLayout) -> RustFunction:
        """Member-wise copy assignment used when the class declares no ``operator=``."""
        other = Var("other")
        stmts: list[RStmt] = []
        for base in layout.bases:
            stmts.append(
                ExprStmt(
                    self._assign_record(
                        _self_field(base.field), FieldAccess(other, base.field), base.record_id
                    )
                )
            )
        for vb in layout.virtual_bases:
            copy = self._assign_record(
                Unary("*", _self_field(vb.accessor)),
                Unary("*", FieldAccess(other, vb.accessor)),
                vb.record_id,
                wrapped=False,
            )
            owned = Unary("!", MethodCall(_self_field(vb.storage), "is_null"))
            stmts.append(ExprStmt(If(owned, Block((ExprStmt(copy),), unsafe=True))))
        for f in layout.fields:
            dst = _self_field(f.name)
            src = FieldAccess(other, f.name)
            if isinstance(f.cpp_type, RecordType):
                stmts.append(ExprStmt(self._assign_record(dst, src, f.cpp_type.decl_id)))
            elif f.managed:
                stmts.append(ExprStmt(Assign(Unary("*", dst), MethodCall(Unary("*", src), "clone"))))
            else:
                stmts.append(ExprStmt(Assign(dst, src)))
        param = RustParam("other", Ref(Named(self.index.record_path(layout.record_id)), mutable=False))
        return RustFunction(
            constants.ASSIGN_METHOD, (param,), None, Block(tuple(stmts)), receiver="&mut self"
        )

    def _assign_record(self, dst: RExpr, src: RExpr, record_id: int, wrapped: bool = True) -> RExpr:
        """Assign one record subobject; ``wrapped`` marks a ManuallyDrop source."""
        user = self.exprs.user_assign(record_id)
        if user is None:
            return MethodCall(dst, constants.ASSIGN_METHOD, (Unary("&", src),))
        if isinstance(user.decl.params[0].type, ReferenceType):
            return MethodCall(dst, user.rust_name, (Unary("&", src),))
        copied = MethodCall(Unary("*", src) if wrapped else src, "clone")
        return MethodCall(dst, user.rust_name, (copied,))

    def _bind_vbases(self, layout: ClassLayout) -> RustFunction:
        """Point every virtual-base accessor of the hierarchy at the given storage."""
        params = []
        stmts: list[RStmt] = []
        names: dict[int, str] = {}
        for vb in layout.virtual_bases:
            name = f"{constants.VBASE_PTR_LOCAL_PREFIX}{self.index.record_name(vb.record_id)}"
            names[vb.record_id] = name
            params.append(RustParam(name, RawPtr(self._record_type(vb.record_id))))
            stmts.append(ExprStmt(Assign(_self_field(vb.accessor), Var(name))))
        for base in layout.bases:
            if base.layout.virtual_bases:
                args = tuple(Var(names[v.record_id]) for v in base.layout.virtual_bases)
                stmts.append(
                    ExprStmt(MethodCall(_self_field(base.field), constants.BIND_VBASES_METHOD, args))
                )
        return RustFunction(
            constants.BIND_VBASES_METHOD,
            tuple(params),
            None,
            Block(tuple(stmts)),
            receiver="&mut self",
        )

    def _init_vtables(self, sym: Symbol, layout: ClassLayout) -> RustFunction:
        stmts: list[RStmt] = []
        for path in layout.vtables:
            root = self.exprs.walk(Unary("*", SELF), _managed_steps(path))
            table = PathExpr(Path(sym.module, (path.static_name,)))
            vptr = field_of(root, constants.VPTR_FIELD)
            stmts.append(ExprStmt(Assign(vptr, MethodCall(table, "as_ptr"))))
        self.exprs.needs_unsafe = False
        return RustFunction(
            constants.INIT_VTABLES_METHOD, (), None, Block(tuple(stmts)), receiver="&mut self"
        )

    def _method(self, method: ast.MethodDecl, msym: Symbol, record_id: int) -> RustFunction:
        ctx = FunctionContext(
            declaration=msym.qualified_name,
            record_id=record_id,
            self_mode=SelfMode.NONE if method.is_static else SelfMode.REF,
            return_type=method.return_type,
        )
        receiver = None
        if not method.is_static:
            receiver = "&self" if method.is_const else "&mut self"
        with self.statements.scope(ctx):
            params = self._params(method.params, ctx)
            if method.body is not None:
                body = self._body(method.body, method.return_type)
            elif method.is_pure:
                body = Block(tail=Call(PathExpr(self._rt(constants.RT_PURE_VIRTUAL))))
            else:
                logger.debug("%s has no definition in this unit", msym.qualified_name)
                message = rust_str(f"{msym.qualified_name} is not defined in this unit")
                body = Block(tail=Macro("unimplemented", (message,)))
        return RustFunction(
            msym.rust_name, params, self._ret(method.return_type), body, receiver=receiver
        )

    def _static_member(self, owner: Symbol, ssym: Symbol) -> tuple[RustStatic, RustFunction]:
        slot_name = (
            f"{constants.GLOBAL_SLOT_PREFIX}{owner.rust_name}_{_local_suffix(ssym.rust_name)}"
        )
        slot, accessor = self._global_slot(ssym.decl, slot_name, ssym, Path(owner.module, (slot_name,)))
        self._globals.append((ssym.order, ssym.path))
        return slot, accessor

    # ── vtables ──────────────────────────────────────────────────

    def _vtables(
        self, sym: Symbol, layout: ClassLayout
    ) -> tuple[list[RustFunction], list[RustStatic]]:
        """One thunk per slot and one static table per vptr-bearing subobject."""
        vslot = self._rt(constants.RT_VSLOT)
        thunks: list[RustFunction] = []
        tables: list[RustStatic] = []
        record_path = self.index.record_path(layout.record_id)
        for path in layout.vtables:
            entries: list[RExpr] = []
            for slot in path.slots:
                name = f"{constants.VTHUNK_PREFIX}{sym.rust_name}_{path.index}_{slot.index}"
                thunks.append(self._thunk(name, layout, path, slot))
                pointer = Cast(PathExpr(record_path.member(name)), RawPtr(UNIT, mutable=False))
                entries.append(Call(PathExpr(vslot.member("new")), (pointer,)))
            tables.append(
                RustStatic(
                    path.static_name,
                    ArrayOf(Named(vslot), len(entries)),
                    ArrayLit(tuple(entries)),
                    vis="pub",
                )
            )
        self.exprs.needs_unsafe = False
        return thunks, tables

    def _thunk(
        self, name: str, layout: ClassLayout, path: VtablePath, slot: VtableSlot
    ) -> RustFunction:
        """Adapts the vptr-holding subobject pointer to the implementing class."""
        rid = layout.record_id
        method_sym = self.index.get(slot.method_id) if slot.method_id else None
        method: ast.MethodDecl | None = method_sym.decl if method_sym is not None else None
        params = [RustParam("this", RawPtr(C_VOID))]
        args: list[RExpr] = []
        for i, p in enumerate(method.params if method is not None else []):
            params.append(RustParam(f"_a{i}", self.rust(p.type, TypePosition.PARAM)))
            args.append(Var(f"_a{i}"))
        ret = self._ret(method.return_type) if method is not None else None
        self_ty = RawPtr(self._record_type(rid))
        pointer: RExpr = Cast(Var("this"), RawPtr(Prim("u8")))
        steps = _managed_steps(path)
        if steps:
            pointer = MethodCall(pointer, "sub", (self.exprs.offset_of(rid, steps),))
        this = Var(constants.THIS_PTR_LOCAL)
        stmts = (Let(constants.THIS_PTR_LOCAL, self_ty, Cast(pointer, self_ty), mutable=False),)
        if slot.is_destructor:
            tail: RExpr = Call(PathExpr(self._rt(constants.RT_DELETE)), (this,))
        elif slot.is_pure or method is None or (method.body is None and method.is_pure):
            tail = Call(PathExpr(self._rt(constants.RT_PURE_VIRTUAL)))
        else:
            receiver = self.exprs.walk(
                Unary("*", this), self.layouts.impl_steps(rid, path, slot.impl_id)
            )
            tail = MethodCall(receiver, method_sym.rust_name, tuple(args))
        return RustFunction(
            name, tuple(params), ret, Block(stmts, tail), vis="pub", is_unsafe=True
        )

    # ── trait impls ──────────────────────────────────────────────

    def _drop_impl(self, sym: Symbol) -> RustImpl:
        drop = RustFunction(
            "drop",
            (),
            None,
            Block((ExprStmt(MethodCall(SELF, constants.DESTROY_METHOD)),)),
            vis="",
            receiver="&mut self",
        )
        return RustImpl(sym.rust_name, (drop,), trait="Drop")

    def _clone_impl(self, sym: Symbol, layout: ClassLayout) -> RustImpl:
        rid = layout.record_id
        record_ty = self._record_type(rid)
        copy = self.index.copy_constructor(rid)
        if copy is not None:
            param_t = copy.decl.params[0].type
            source: RExpr = SELF
            if isinstance(param_t, ReferenceType) and not param_t.is_const:
                writable = Cast(Cast(SELF, RawPtr(record_ty, mutable=False)), RawPtr(record_ty))
                source = Block(tail=Unary("&mut", Unary("*", writable)), unsafe=True)
            body = Block(tail=Call(PathExpr(copy.path), (source,)))
        else:
            body = self._memberwise_clone(layout)
        clone = RustFunction("clone", (), record_ty, body, vis="", receiver="&self")
        return RustImpl(sym.rust_name, (clone,), trait="Clone")

    def _memberwise_clone(self, layout: ClassLayout) -> Block:
        fields: list[tuple[str, RExpr]] = []
        for f in layout.ordered_fields():
            own = _self_field(f.name)
            if f.role == FieldRole.BASE or (f.role == FieldRole.MEMBER and f.managed):
                value: RExpr = manually_drop(MethodCall(Unary("*", own), "clone"))
            elif f.role == FieldRole.VBASE_STORE:
                copied = Call(
                    PathExpr(self._rt(constants.RT_NEW)), (MethodCall(Unary("*", own), "clone"),)
                )
                value = If(
                    MethodCall(own, "is_null"),
                    Block(tail=null_pointer(True)),
                    Block(tail=copied, unsafe=True),
                )
            else:
                value = own
            fields.append((f.name, value))
        result = Var(constants.CLONE_LOCAL)
        stmts: list[RStmt] = [
            Let(constants.CLONE_LOCAL, init=StructLit(self.index.record_path(layout.record_id), tuple(fields)))
        ]
        if layout.virtual_bases:
            stores = tuple(FieldAccess(result, v.storage) for v in layout.virtual_bases)
            owned = Unary("!", MethodCall(stores[0], "is_null"))
            rebind = MethodCall(result, constants.BIND_VBASES_METHOD, stores)
            stmts.append(ExprStmt(If(owned, Block((ExprStmt(rebind),)))))
        if layout.polymorphic:
            stmts.append(ExprStmt(MethodCall(result, constants.INIT_VTABLES_METHOD)))
        return Block(tuple(stmts), tail=result)

    def _default_impl(self, decl: ast.RecordDecl, sym: Symbol) -> RustImpl:
        name = constants.CTOR_DEFAULT
        for ctor in decl.constructors:
            if not ctor.params:
                name = self.index.get(ctor.node_id).rust_name
                break
        default = RustFunction(
            "default",
            (),
            self._record_type(decl.node_id),
            Block(tail=Call(PathExpr(sym.path.member(name)))),
            vis="",
        )
        return RustImpl(sym.rust_name, (default,), trait="Default")

    # ── crate root ───────────────────────────────────────────────

    def _finish_root(self) -> None:
        root = self.crate.root
        declared = {f.name for f in root.externs} | {f.name for f in root.functions}
        for name, ftype in self.context.externs.items():
            if name in declared:
                continue
            params = tuple(
                RustParam(f"_a{i}", self.rust(p, TypePosition.PARAM))
                for i, p in enumerate(ftype.params)
            )
            root.externs.append(
                RustFunction(name, params, self._ret(ftype.result), is_variadic=ftype.is_variadic)
            )
        main = self._cpp_main()
        if not self._globals and main is None:
            return
        init_calls = tuple(
            Let("_", init=Call(PathExpr(path)), mutable=False)
            for _, path in sorted(self._globals, key=lambda g: g[0])
        )
        root.functions.append(RustFunction(constants.INIT_GLOBALS_FN, (), None, Block(init_calls)))
        if main is None or not self.config.emit_main_wrapper:
            return
        args: tuple[RExpr, ...] = ()
        if main.decl.params:
            args = (Lit("0"), null_pointer(True))[: len(main.decl.params)]
        status = Call(PathExpr(main.path), args)
        body = Block(
            (
                ExprStmt(Call(PathExpr(Path((), (constants.INIT_GLOBALS_FN,))))),
                ExprStmt(Call(PathExpr(Path.external_path("std::process::exit")), (status,))),
            )
        )
        root.functions.append(RustFunction("main", (), None, body))

    def _cpp_main(self) -> Symbol | None:
        for sym in self.index.symbols.values():
            if (
                sym.kind == SymbolKind.FUNCTION
                and sym.rust_name == constants.CPP_MAIN_FN
                and not sym.module
                and sym.decl.body is not None
            ):
                return sym
        return None


def _manually_drop_type(inner: RustType) -> RustType:
    return Named(Path.external_path("std::mem::ManuallyDrop"), (inner,))


def _managed_steps(path: VtablePath) -> tuple[PathStep, ...]:
    return tuple(
        PathStep(f, StepKind.MANAGED, r) for f, r in zip(path.steps, path.step_records)
    )


def _base_initializer(ctor: ast.ConstructorDecl, record_id: int) -> Any:
    return next(
        (
            i.init
            for i in ctor.initializers
            if i.base is not None and i.base.decl_id == record_id
        ),
        None,
    )


def _member_initializer(ctor: ast.ConstructorDecl, name: str) -> Any:
    return next((i.init for i in ctor.initializers if i.member == name), None)


def _value_deps(t: ResolvedType) -> list[int]:
    """Records a value of ``t`` stores inline."""
    if isinstance(t, RecordType):
        return [t.decl_id]
    if isinstance(t, ArrayType) and t.length is not None:
        return _value_deps(t.element)
    if isinstance(t, StdLibType) and template_of(t) in _BY_VALUE_WRAPPERS:
        return [d for a in t.args for d in _value_deps(a)]
    return []


def _item_names(module: RustModule) -> set[str]:
    names = {r.struct.name for r in module.records}
    names.update(g.name for g in module.globals)
    names.update(f.name for f in module.functions)
    names.update(f.name for f in module.externs)
    names.update(getattr(a, "name", "") for a in module.aliases)
    names.update(m.name for m in module.modules)
    return names


def lower_translation_unit(
    unit: ast.TranslationUnit,
    config: TranspileConfig | None = None,
    sink: DiagnosticSink | None = None,
) -> RustCrate:
    """Lower ``unit`` with fresh per-unit state."""
    return DeclarationLowerer(unit, config, sink).lower()
