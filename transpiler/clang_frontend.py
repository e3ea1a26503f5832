"""Clang front-end bridge: ``clang++ -ast-dump=json`` -> AST Model.

Clang does all of the semantic work (name lookup, overload resolution,
template instantiation, implicit conversions).  This module only reads its
resolved JSON dump and re-shapes it into ``cpp_ast`` nodes:

- a pre-pass indexes every node by id, qualifies names through enclosing
  namespaces, registers records, enums and lambda types for the type parser,
  and pairs out-of-line member definitions with their in-class declarations;
- the conversion pass walks declarations in the main file only, dispatching
  on clang's ``kind`` strings.

A construct the AST Model cannot express raises ``UnsupportedConstruct``;
the enclosing declaration is skipped and reported, the rest of the unit
converts normally.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from typing import Any, Callable

from . import cpp_ast as ast
from .config import TranspileConfig
from .cpp_types import (
    BOOL,
    INT,
    VOID,
    ClosureType,
    FunctionType,
    PointerType,
    RecordType,
    ReferenceType,
    ResolvedType,
    OpaqueType,
    is_floating,
    is_integral,
    strip_reference,
)
from .diagnostics import DiagnosticSink, FrontendError, UnsupportedConstruct
from .qualtype import QualTypeParser, TypeRegistry, is_const_qualified

logger = logging.getLogger(__name__)

Raw = dict[str, Any]

_CAST_KINDS: dict[str, ast.CastKind] = {
    **{k.value: k for k in ast.CastKind},
    "UncheckedDerivedToBase": ast.CastKind.DERIVED_TO_BASE,
    "BooleanToSignedIntegral": ast.CastKind.INTEGRAL_CAST,
    "MemberPointerToBoolean": ast.CastKind.POINTER_TO_BOOLEAN,
}

_CAST_NODES = frozenset(
    {
        "ImplicitCastExpr",
        "CStyleCastExpr",
        "CXXStaticCastExpr",
        "CXXFunctionalCastExpr",
        "CXXReinterpretCastExpr",
        "CXXConstCastExpr",
        "CXXDynamicCastExpr",
    }
)

# Wrappers that carry no meaning of their own once clang has resolved the tree
_TRANSPARENT_EXPRS = frozenset(
    {
        "ExprWithCleanups",
        "MaterializeTemporaryExpr",
        "CXXBindTemporaryExpr",
        "ConstantExpr",
        "SubstNonTypeTemplateParmExpr",
        "CXXStdInitializerListExpr",
        "FullExpr",
    }
)

_RECORD_KINDS = frozenset({"CXXRecordDecl", "ClassTemplateSpecializationDecl"})
_SPECIAL_MEMBER_KINDS = frozenset({"CXXMethodDecl", "CXXConstructorDecl", "CXXDestructorDecl"})


def run_clang(source: str, config: TranspileConfig | None = None) -> Raw:
    """Run clang on ``source`` and return the parsed JSON dump."""
    config = config or TranspileConfig()
    cmd = [
        config.clang_binary,
        "-Xclang",
        "-ast-dump=json",
        "-fsyntax-only",
        f"-std={config.cpp_standard}",
        *(f"-I{p}" for p in config.include_paths),
        *(f"-D{d}" for d in config.defines),
        source,
    ]
    logger.info("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as exc:
        raise FrontendError(f"clang binary '{config.clang_binary}' not found") from exc
    if proc.returncode != 0:
        raise FrontendError(f"clang failed on {source}:\n{proc.stderr.strip()}")
    return load_ast_json(proc.stdout)


def load_ast_json(text: str) -> Raw:
    try:
        root = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FrontendError(f"unreadable clang AST dump: {exc}") from exc
    if not isinstance(root, dict) or root.get("kind") != "TranslationUnitDecl":
        raise FrontendError("clang AST dump does not start with a TranslationUnitDecl")
    return root


def parse_source(
    source: str, config: TranspileConfig | None = None, sink: DiagnosticSink | None = None
) -> ast.TranslationUnit:
    """Front end entry point: C++ file -> ``TranslationUnit``."""
    return ClangAstConverter(run_clang(source, config), source, sink).convert()


def _node_id(raw: Raw) -> int:
    value = raw.get("id", "0")
    return int(value, 16) if isinstance(value, str) else int(value)


def _inner(raw: Raw) -> list[Raw]:
    return [n for n in raw.get("inner", []) if isinstance(n, dict)]


def _present(raw: Raw | None) -> bool:
    return bool(raw) and "kind" in raw


def _type_text(type_obj: Raw | None) -> str:
    if not type_obj:
        return "void"
    desugared = type_obj.get("desugaredQualType", "")
    # Dependent types desugar to ``type-parameter-0-0``.
    if desugared and "type-parameter" not in desugared:
        return desugared
    return type_obj.get("qualType", "void")


def _is_expr_kind(kind: str) -> bool:
    return kind.endswith(("Expr", "Literal", "Operator")) or kind in _TRANSPARENT_EXPRS


class ClangAstConverter:
    """Converts one clang JSON dump into a ``TranslationUnit``."""

    def __init__(self, root: Raw, main_file: str | None = None, sink: DiagnosticSink | None = None):
        self.root = root
        self.sink = sink if sink is not None else DiagnosticSink()
        self.registry = TypeRegistry()
        self.types = QualTypeParser(self.registry)
        self._nodes: dict[int, Raw] = {}
        self._qualified: dict[int, str] = {}
        self._previous: dict[int, int] = {}
        self._owner: dict[int, int] = {}
        self._definitions: dict[int, Raw] = {}
        self._record_defs: dict[str, int] = {}
        self._ctor_types: dict[tuple[int, str], int] = {}
        self._access: ast.Access = ast.Access.PUBLIC
        self._track_locations()
        self.main_file = main_file or self._infer_main_file()
        self._index(root, (), 0)

        self._DECL_DISPATCH: dict[str, Callable[[Raw], list]] = {
            "NamespaceDecl": self._namespace,
            "LinkageSpecDecl": lambda n: self._decls(_inner(n)),
            "UsingDirectiveDecl": self._using_directive,
            "UsingDecl": self._using_decl,
            "VarDecl": lambda n: [self._var(n)],
            "FunctionDecl": self._function,
            "FunctionTemplateDecl": self._function_template,
            "CXXRecordDecl": self._record_decl,
            "ClassTemplateDecl": self._class_template,
            "ClassTemplateSpecializationDecl": self._record_decl,
            "EnumDecl": lambda n: [self._enum(n)],
            "TypedefDecl": lambda n: [self._alias(n)],
            "TypeAliasDecl": lambda n: [self._alias(n)],
            "StaticAssertDecl": lambda n: [],
            "EmptyDecl": lambda n: [],
        }
        self._STMT_DISPATCH: dict[str, Callable[[Raw], Any]] = {
            "CompoundStmt": self._compound,
            "DeclStmt": self._decl_stmt,
            "ReturnStmt": self._return,
            "IfStmt": self._if,
            "WhileStmt": self._while,
            "DoStmt": self._do,
            "ForStmt": self._for,
            "CXXForRangeStmt": self._range_for,
            "SwitchStmt": self._switch,
            "CaseStmt": self._case,
            "DefaultStmt": self._default,
            "BreakStmt": lambda n: ast.BreakStmt(node_id=_node_id(n), loc=self._loc(n)),
            "ContinueStmt": lambda n: ast.ContinueStmt(node_id=_node_id(n), loc=self._loc(n)),
            "NullStmt": lambda n: ast.NullStmt(node_id=_node_id(n), loc=self._loc(n)),
            "CXXTryStmt": self._try,
            "AttributedStmt": lambda n: self.stmt(_inner(n)[-1]),
        }
        self._EXPR_DISPATCH: dict[str, Callable[[Raw], Any]] = {
            "IntegerLiteral": self._integer,
            "FloatingLiteral": lambda n: ast.FloatingLiteral(
                **self._expr_base(n), value=float(n["value"])
            ),
            "CXXBoolLiteralExpr": lambda n: ast.BoolLiteral(**self._expr_base(n), value=n["value"]),
            "StringLiteral": lambda n: ast.StringLiteral(
                **self._expr_base(n), value=unescape_c_string(n["value"])
            ),
            "CharacterLiteral": lambda n: ast.CharLiteral(**self._expr_base(n), value=n["value"]),
            "CXXNullPtrLiteralExpr": lambda n: ast.NullPtrLiteral(**self._expr_base(n)),
            "GNUNullExpr": lambda n: ast.NullPtrLiteral(**self._expr_base(n)),
            "DeclRefExpr": self._decl_ref,
            "MemberExpr": self._member,
            "CallExpr": self._call,
            "CXXMemberCallExpr": self._member_call,
            "CXXOperatorCallExpr": self._operator_call,
            "CXXConstructExpr": self._construct,
            "CXXTemporaryObjectExpr": self._construct,
            "CXXNewExpr": self._new,
            "CXXDeleteExpr": lambda n: ast.DeleteExpr(
                **self._expr_base(n),
                operand=self.expr(_inner(n)[0]),
                is_array=bool(n.get("isArrayAsWritten") or n.get("isArray")),
            ),
            "UnaryOperator": self._unary,
            "BinaryOperator": self._binary,
            "CompoundAssignOperator": self._binary,
            "ConditionalOperator": self._conditional,
            "ArraySubscriptExpr": lambda n: ast.ArraySubscriptExpr(
                **self._expr_base(n),
                base=self.expr(_inner(n)[0]),
                index=self.expr(_inner(n)[1]),
            ),
            "CXXThisExpr": lambda n: ast.ThisExpr(
                **self._expr_base(n), is_implicit=bool(n.get("implicit"))
            ),
            "ParenExpr": lambda n: ast.ParenExpr(**self._expr_base(n), inner=self.expr(_inner(n)[0])),
            "InitListExpr": lambda n: ast.InitListExpr(
                **self._expr_base(n), inits=[self.expr(i) for i in _inner(n)]
            ),
            "UnaryExprOrTypeTraitExpr": self._sizeof,
            "LambdaExpr": self._lambda,
            "CXXThrowExpr": lambda n: ast.ThrowExpr(
                **self._expr_base(n),
                operand=self.expr(_inner(n)[0]) if _inner(n) else None,
            ),
            "CXXScalarValueInitExpr": self._value_init,
            "ImplicitValueInitExpr": self._value_init,
        }

    # ── pre-pass ─────────────────────────────────────────────────

    def _track_locations(self) -> None:
        """Resolve clang's elided ``file``/``line`` fields in document order."""
        state = {"file": "", "line": 0}

        def visit(obj: Any) -> None:
            if isinstance(obj, list):
                for item in obj:
                    visit(item)
                return
            if not isinstance(obj, dict):
                return
            if "col" in obj and "tokLen" in obj:
                state["file"] = obj.get("file", state["file"])
                state["line"] = obj.get("line", state["line"])
                obj["_resolved"] = (state["file"], state["line"], obj["col"])
                return
            for key, value in obj.items():
                if key != "includedFrom":
                    visit(value)

        visit(self.root)

    def _infer_main_file(self) -> str:
        main = ""
        for decl in _inner(self.root):
            loc = self._resolved(decl)
            if loc is not None and loc[0]:
                main = loc[0]
        return main

    @staticmethod
    def _resolved(raw: Raw) -> tuple[str, int, int] | None:
        loc = raw.get("loc") or {}
        loc = loc.get("expansionLoc", loc)
        return loc.get("_resolved")

    def _index(self, raw: Raw, scope: tuple[str, ...], record_id: int) -> None:
        kind = raw.get("kind", "")
        nid = _node_id(raw)
        if nid:
            self._nodes[nid] = raw
        if "previousDecl" in raw:
            self._previous[nid] = int(raw["previousDecl"], 16)
        name = raw.get("name", "")
        if name and kind.endswith("Decl"):
            self._qualified[nid] = "::".join(scope + (name,))
        child_scope, child_record = scope, record_id
        if kind == "NamespaceDecl" and not raw.get("isInline"):
            child_scope = scope + (name or "(anonymous)",)
        elif kind in _RECORD_KINDS and not raw.get("isImplicit"):
            local = self._record_spelling(raw)
            spelled = "::".join(scope + (local,))
            child_scope = scope + (local,)
            if local and (raw.get("completeDefinition") or spelled not in self._record_defs):
                polymorphic = bool(raw.get("definitionData", {}).get("isPolymorphic"))
                self.registry.add_record(spelled, nid, polymorphic)
                self._record_defs[spelled] = nid
            child_record = nid
        elif kind == "EnumDecl" and name:
            self.registry.add_enum("::".join(scope + (name,)), nid)
        elif kind == "LambdaExpr":
            self.registry.lambdas[raw.get("type", {}).get("qualType", "")] = nid
        if kind in _SPECIAL_MEMBER_KINDS and record_id:
            self._owner[nid] = record_id
            if kind == "CXXConstructorDecl" and not raw.get("isImplicit"):
                self._ctor_types[(record_id, raw.get("type", {}).get("qualType", ""))] = nid
        elif kind in _SPECIAL_MEMBER_KINDS and "previousDecl" in raw and "inner" in raw:
            # Out-of-line member definition at namespace scope.
            self._definitions[self.canonical(nid)] = raw
        for child in _inner(raw):
            self._index(child, child_scope, child_record if kind != "LambdaExpr" else 0)

    def _record_spelling(self, raw: Raw) -> str:
        name = raw.get("name", "")
        if raw.get("kind") == "ClassTemplateSpecializationDecl":
            args = [_type_text(a.get("type")) for a in raw.get("templateArgs", []) if "type" in a]
            args += [str(a["value"]) for a in raw.get("templateArgs", []) if "value" in a]
            name = f"{name}<{', '.join(args)}>"
        return name

    def canonical(self, decl_id: int) -> int:
        seen = set()
        while decl_id in self._previous and decl_id not in seen:
            seen.add(decl_id)
            decl_id = self._previous[decl_id]
        return decl_id

    def _record_id(self, decl_id: int) -> int:
        """Definition id for any declaration of a record."""
        raw = self._nodes.get(decl_id)
        if raw is None:
            return decl_id
        qualified = self._qualified.get(decl_id, "")
        return self._record_defs.get(qualified, decl_id)

    def _in_main_file(self, raw: Raw) -> bool:
        loc = self._resolved(raw)
        return loc is not None and loc[0] == self.main_file

    # ── shared helpers ───────────────────────────────────────────

    def _loc(self, raw: Raw) -> ast.SourceLocation:
        loc = self._resolved(raw)
        if loc is None:
            begin = raw.get("range", {}).get("begin", {})
            loc = begin.get("expansionLoc", begin).get("_resolved")
        if loc is None:
            return ast.NO_SOURCE_LOCATION
        return ast.SourceLocation(file=loc[0], line=loc[1], col=loc[2])

    def type(self, type_obj: Raw | None, auto_index: int | None = None) -> ResolvedType:
        text = _type_text(type_obj)
        try:
            return self.types.parse(text, auto_index)
        except FrontendError as exc:
            logger.warning("Keeping type '%s' opaque: %s", text, exc)
            return OpaqueType(text=text)

    def _expr_base(self, raw: Raw) -> dict[str, Any]:
        return {"node_id": _node_id(raw), "loc": self._loc(raw), "type": self.type(raw.get("type"))}

    def _unsupported(self, raw: Raw, what: str) -> UnsupportedConstruct:
        return UnsupportedConstruct(what, self._loc(raw))

    # ── declarations ─────────────────────────────────────────────

    def convert(self) -> ast.TranslationUnit:
        decls = self._decls(_inner(self.root), top_level=True)
        logger.info("Converted %d top-level declarations from %s", len(decls), self.main_file)
        return ast.TranslationUnit(file=self.main_file, decls=decls)

    def _decls(self, raws: list[Raw], top_level: bool = False) -> list:
        result = []
        for raw in raws:
            if raw.get("isImplicit") or (top_level and not self._in_main_file(raw)):
                continue
            handler = self._DECL_DISPATCH.get(raw.get("kind", ""))
            if handler is None:
                if raw.get("kind") in _SPECIAL_MEMBER_KINDS:
                    continue
                self._report(self._unsupported(raw, f"declaration kind '{raw.get('kind')}'"), raw)
                continue
            try:
                result.extend(handler(raw))
            except UnsupportedConstruct as exc:
                self._report(exc, raw)
        return result

    def _report(self, exc: UnsupportedConstruct, raw: Raw) -> None:
        name = self._qualified.get(_node_id(raw), raw.get("name", ""))
        self.sink.report(exc.to_diagnostic(name))

    def _namespace(self, raw: Raw) -> list:
        return [
            ast.NamespaceDecl(
                node_id=_node_id(raw),
                loc=self._loc(raw),
                name=raw.get("name", ""),
                decls=self._decls(_inner(raw)),
                is_inline=bool(raw.get("isInline")),
            )
        ]

    def _using_directive(self, raw: Raw) -> list:
        target = raw.get("nominatedNamespace", {})
        name = self._qualified.get(_node_id(target), target.get("name", ""))
        return [ast.UsingDirective(node_id=_node_id(raw), loc=self._loc(raw), namespace=name)]

    def _using_decl(self, raw: Raw) -> list:
        target_id = 0
        for shadow in _inner(raw):
            if "target" in shadow:
                target_id = self.canonical(_node_id(shadow["target"]))
        if target_id not in self._nodes or not self._declared_in_unit(target_id):
            target_id = 0
        return [
            ast.UsingDecl(
                node_id=_node_id(raw),
                loc=self._loc(raw),
                qualified_name=raw.get("name", ""),
                target_id=target_id,
            )
        ]

    def _var(self, raw: Raw) -> ast.VarDecl:
        init = None
        if "init" in raw:
            exprs = [n for n in _inner(raw) if _is_expr_kind(n.get("kind", ""))]
            if exprs:
                init = self.expr(exprs[0])
        nid = _node_id(raw)
        canonical = self.canonical(nid)
        text = raw.get("type", {}).get("qualType", "")
        return ast.VarDecl(
            node_id=nid,
            loc=self._loc(raw),
            name=raw.get("name", ""),
            type=self.type(raw.get("type")),
            init=init,
            is_static=raw.get("storageClass") == "static",
            is_const=is_const_qualified(text) if text else False,
            is_constexpr=bool(raw.get("constexpr")),
            is_extern=raw.get("storageClass") == "extern",
            canonical_id=canonical if canonical != nid else 0,
        )

    def _params(self, raw: Raw, drop_postfix_dummy: bool = False) -> list[ast.ParamDecl]:
        params = []
        autos = 0
        for p in _inner(raw):
            if p.get("kind") != "ParmVarDecl":
                continue
            text = _type_text(p.get("type"))
            auto_index = None
            if text.startswith("auto") or "auto" in text.split():
                auto_index = autos
                autos += 1
            default = None
            if "init" in p:
                exprs = [n for n in _inner(p) if _is_expr_kind(n.get("kind", ""))]
                default = self.expr(exprs[0]) if exprs else None
            params.append(
                ast.ParamDecl(
                    node_id=_node_id(p),
                    loc=self._loc(p),
                    name=p.get("name", ""),
                    type=self.type(p.get("type"), auto_index),
                    default=default,
                )
            )
        if drop_postfix_dummy and params:
            params = params[:-1]
        return params

    def _body(self, raw: Raw) -> ast.CompoundStmt | None:
        for child in _inner(raw):
            if child.get("kind") == "CompoundStmt":
                return self._compound(child)
        if raw.get("explicitlyDefaulted") == "default":
            return ast.CompoundStmt(node_id=0, loc=self._loc(raw))
        return None

    def _result_type(self, raw: Raw) -> ResolvedType:
        ftype = self.type(raw.get("type"))
        if isinstance(ftype, FunctionType):
            return ftype.result
        return VOID

    def _function(self, raw: Raw) -> list:
        nid = _node_id(raw)
        canonical = self.canonical(nid)
        return [
            ast.FunctionDecl(
                node_id=nid,
                loc=self._loc(raw),
                name=raw.get("name", ""),
                return_type=self._result_type(raw),
                params=self._params(raw),
                body=self._body(raw),
                is_variadic=bool(raw.get("variadic")),
                is_inline=bool(raw.get("inline")),
                canonical_id=canonical if canonical != nid else 0,
            )
        ]

    def _function_template(self, raw: Raw) -> list:
        """Instantiated specializations only; the pattern is dependent."""
        functions = [n for n in _inner(raw) if n.get("kind") == "FunctionDecl"]
        result = []
        for spec in functions[1:]:
            result.extend(self._function(spec))
        return result

    def _class_template(self, raw: Raw) -> list:
        result = []
        for spec in _inner(raw):
            if spec.get("kind") == "ClassTemplateSpecializationDecl":
                result.extend(self._record_decl(spec))
        return result

    def _alias(self, raw: Raw) -> ast.TypeAliasDecl:
        return ast.TypeAliasDecl(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            name=raw.get("name", ""),
            target=self.type(raw.get("type")),
        )

    def _enum(self, raw: Raw) -> ast.EnumDecl:
        enumerators = []
        next_value = 0
        for e in _inner(raw):
            if e.get("kind") != "EnumConstantDecl":
                continue
            explicit = _constant_value(e)
            value = explicit if explicit is not None else next_value
            enumerators.append(
                ast.Enumerator(node_id=_node_id(e), loc=self._loc(e), name=e["name"], value=value)
            )
            next_value = value + 1
        underlying = raw.get("fixedUnderlyingType")
        return ast.EnumDecl(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            name=raw.get("name", ""),
            enumerators=enumerators,
            underlying=self.type(underlying) if underlying else INT,
            is_scoped=bool(raw.get("scopedEnumTag")),
        )

    # ── records ──────────────────────────────────────────────────

    def _record_decl(self, raw: Raw) -> list:
        nid = _node_id(raw)
        if not raw.get("completeDefinition") and self._record_id(nid) != nid:
            return []
        return [self._record(raw)]

    def _record(self, raw: Raw) -> ast.RecordDecl:
        nid = _node_id(raw)
        tag = raw.get("tagUsed", "struct")
        name = raw.get("name", "")
        if raw.get("kind") == "ClassTemplateSpecializationDecl":
            name = mangle_specialization(self._qualified_spelling(nid))
        bases = []
        for b in raw.get("bases", []):
            base_t = self.type(b.get("type"))
            if not isinstance(base_t, RecordType):
                raise self._unsupported(raw, f"base of unknown type '{_type_text(b.get('type'))}'")
            bases.append(
                ast.BaseSpecifier(
                    type=base_t,
                    is_virtual=bool(b.get("isVirtual")),
                    access=ast.Access(b.get("access", "public")),
                )
            )
        members: dict[str, list] = {
            "fields": [],
            "methods": [],
            "constructors": [],
            "static_members": [],
            "nested": [],
        }
        destructor = None
        is_final = False
        saved = self._access
        self._access = ast.Access.PRIVATE if tag == "class" else ast.Access.PUBLIC
        try:
            for child in _inner(raw):
                kind = child.get("kind", "")
                if kind == "AccessSpecDecl":
                    self._access = ast.Access(child["access"])
                    continue
                if kind == "FinalAttr":
                    is_final = True
                    continue
                if child.get("isImplicit") or child.get("explicitlyDeleted"):
                    continue
                try:
                    if kind == "CXXDestructorDecl":
                        destructor = self._destructor(child)
                    else:
                        self._class_member(child, members)
                except UnsupportedConstruct as exc:
                    self._report(exc, child)
        finally:
            self._access = saved
        return ast.RecordDecl(
            node_id=nid,
            loc=self._loc(raw),
            name=name,
            tag=tag,
            bases=bases,
            destructor=destructor,
            is_final=is_final,
            is_definition=bool(raw.get("completeDefinition")),
            **members,
        )

    def _qualified_spelling(self, nid: int) -> str:
        for spelled, decl_id in self._record_defs.items():
            if decl_id == nid:
                return spelled
        return self._qualified.get(nid, "")

    def _class_member(self, raw: Raw, members: dict[str, list]) -> None:
        kind = raw.get("kind", "")
        if kind == "FieldDecl":
            default = None
            exprs = [n for n in _inner(raw) if _is_expr_kind(n.get("kind", ""))]
            if exprs:
                default = self.expr(exprs[0])
            members["fields"].append(
                ast.FieldDecl(
                    node_id=_node_id(raw),
                    loc=self._loc(raw),
                    name=raw.get("name", ""),
                    type=self.type(raw.get("type")),
                    default_init=default,
                    access=self._access,
                )
            )
        elif kind == "CXXMethodDecl":
            method = self._method(raw)
            if method is not None:
                members["methods"].append(method)
        elif kind == "FunctionTemplateDecl":
            for spec in [n for n in _inner(raw) if n.get("kind") == "CXXMethodDecl"][1:]:
                method = self._method(spec)
                if method is not None:
                    members["methods"].append(method)
        elif kind == "CXXConstructorDecl":
            ctor = self._constructor(raw)
            if ctor is not None:
                members["constructors"].append(ctor)
        elif kind == "VarDecl":
            members["static_members"].append(self._var(raw).model_copy(update={"is_static": True}))
        elif kind in ("CXXRecordDecl", "EnumDecl", "TypedefDecl", "TypeAliasDecl", "ClassTemplateDecl"):
            members["nested"].extend(self._DECL_DISPATCH[kind](raw))
        elif kind.endswith("Attr") or kind in ("StaticAssertDecl", "FriendDecl", "UsingDecl"):
            return
        else:
            raise self._unsupported(raw, f"class member kind '{kind}'")

    def _definition(self, raw: Raw) -> Raw:
        """The node holding the body: ``raw`` itself or its out-of-line definition."""
        if any(c.get("kind") == "CompoundStmt" for c in _inner(raw)):
            return raw
        return self._definitions.get(_node_id(raw), raw)

    def _method(self, raw: Raw) -> ast.MethodDecl | None:
        if raw.get("explicitlyDefaulted") and raw.get("name") == "operator=":
            return None
        name = raw.get("name", "")
        operator = None
        if name.startswith("operator") and not (name[8:9].isalnum() or name[8:9] == "_"):
            operator = name[len("operator"):].strip()
        type_text = raw.get("type", {}).get("qualType", "")
        defn = self._definition(raw)
        postfix = operator in ("++", "--") and len(self._params(raw)) == 1
        attrs = {c.get("kind") for c in _inner(raw)}
        return ast.MethodDecl(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            name=name,
            return_type=self._result_type(raw),
            params=self._params(defn, drop_postfix_dummy=postfix),
            body=self._body(defn),
            is_virtual=bool(raw.get("virtual")) or bool(attrs & {"OverrideAttr", "FinalAttr"}),
            is_pure=bool(raw.get("pure")),
            is_const=type_text.rstrip().endswith(" const") or ") const" in type_text,
            is_static=raw.get("storageClass") == "static",
            is_final="FinalAttr" in attrs,
            operator=operator,
            is_postfix=postfix,
            access=self._access,
        )

    def _constructor(self, raw: Raw) -> ast.ConstructorDecl | None:
        nid = _node_id(raw)
        record_id = self._owner.get(nid, 0)
        defn = self._definition(raw)
        params = self._params(defn)
        ctor_kind = _ctor_kind(params, record_id)
        if raw.get("explicitlyDefaulted") and ctor_kind in (ast.CtorKind.COPY, ast.CtorKind.MOVE):
            # Same as the implicit one.
            return None
        initializers = []
        for init in _inner(defn):
            if init.get("kind") != "CXXCtorInitializer":
                continue
            exprs = _inner(init)
            if not exprs or exprs[0].get("kind") == "CXXDefaultInitExpr":
                continue
            value = self.expr(exprs[0])
            if "anyInit" in init:
                initializers.append(
                    ast.CtorInitializer(member=init["anyInit"].get("name", ""), init=value)
                )
            else:
                spec = init.get("baseInit") or init.get("delegatingInit")
                base_t = self.type(spec)
                if not isinstance(base_t, RecordType):
                    raise self._unsupported(init, "initializer of a non-class base")
                initializers.append(ast.CtorInitializer(base=base_t, init=value))
        return ast.ConstructorDecl(
            node_id=nid,
            loc=self._loc(raw),
            params=params,
            initializers=initializers,
            body=self._body(defn),
            ctor_kind=ctor_kind,
            is_explicit=bool(raw.get("explicit")),
            access=self._access,
        )

    def _destructor(self, raw: Raw) -> ast.DestructorDecl:
        attrs = {c.get("kind") for c in _inner(raw)}
        return ast.DestructorDecl(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            body=self._body(self._definition(raw)),
            is_virtual=bool(raw.get("virtual")) or "OverrideAttr" in attrs,
        )

    # ── statements ───────────────────────────────────────────────

    def stmt(self, raw: Raw) -> Any:
        kind = raw.get("kind", "")
        handler = self._STMT_DISPATCH.get(kind)
        if handler is not None:
            return handler(raw)
        if _is_expr_kind(kind):
            return ast.ExprStmt(node_id=_node_id(raw), loc=self._loc(raw), expr=self.expr(raw))
        raise self._unsupported(raw, f"statement kind '{kind}'")

    def _opt_stmt(self, raw: Raw | None) -> Any:
        return self.stmt(raw) if _present(raw) else None

    def _opt_expr(self, raw: Raw | None) -> Any:
        return self.expr(raw) if _present(raw) else None

    def _compound(self, raw: Raw) -> ast.CompoundStmt:
        return ast.CompoundStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            body=[self.stmt(s) for s in _inner(raw)],
        )

    def _decl_stmt(self, raw: Raw) -> ast.DeclStmt:
        decls = []
        for d in _inner(raw):
            if d.get("kind") != "VarDecl":
                raise self._unsupported(d, f"local declaration kind '{d.get('kind')}'")
            decls.append(self._var(d))
        return ast.DeclStmt(node_id=_node_id(raw), loc=self._loc(raw), decls=decls)

    def _return(self, raw: Raw) -> ast.ReturnStmt:
        inner = _inner(raw)
        return ast.ReturnStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            value=self.expr(inner[0]) if inner else None,
        )

    def _with_prelude(self, raw: Raw, prelude: list, stmt: Any) -> Any:
        """``if (init; cond)`` and condition variables become a scoped block."""
        if not prelude:
            return stmt
        return ast.CompoundStmt(node_id=0, loc=self._loc(raw), body=prelude + [stmt])

    def _split_header(self, raw: Raw, tail: int) -> tuple[list, list[Raw]]:
        """Split ``inner`` into init/condition-variable statements and the rest."""
        inner = raw.get("inner", [])
        prelude = [self.stmt(n) for n in inner[: len(inner) - tail] if _present(n)]
        return prelude, inner[len(inner) - tail:]

    def _if(self, raw: Raw) -> Any:
        tail = 3 if raw.get("hasElse") else 2
        prelude, (cond, then, *rest) = self._split_header(raw, tail)
        stmt = ast.IfStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            cond=self.expr(cond),
            then=self.stmt(then),
            otherwise=self.stmt(rest[0]) if rest else None,
        )
        return self._with_prelude(raw, prelude, stmt)

    def _while(self, raw: Raw) -> Any:
        prelude, (cond, body) = self._split_header(raw, 2)
        if prelude:
            raise self._unsupported(raw, "while loop with a condition variable")
        return ast.WhileStmt(
            node_id=_node_id(raw), loc=self._loc(raw), cond=self.expr(cond), body=self.stmt(body)
        )

    def _do(self, raw: Raw) -> ast.DoStmt:
        body, cond = _inner(raw)
        return ast.DoStmt(
            node_id=_node_id(raw), loc=self._loc(raw), body=self.stmt(body), cond=self.expr(cond)
        )

    def _for(self, raw: Raw) -> ast.ForStmt:
        init, cond_var, cond, inc, body = raw.get("inner", [{}] * 5)
        if _present(cond_var):
            raise self._unsupported(raw, "for loop with a condition variable")
        return ast.ForStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            init=self._opt_stmt(init),
            cond=self._opt_expr(cond),
            inc=self._opt_expr(inc),
            body=self.stmt(body),
        )

    def _range_for(self, raw: Raw) -> Any:
        inner = raw.get("inner", [])
        init, range_stmt, loop_var, body = inner[0], inner[1], inner[6], inner[7]
        range_var = _inner(range_stmt)[0]
        range_init = [n for n in _inner(range_var) if _is_expr_kind(n.get("kind", ""))][0]
        var = self._var(_inner(loop_var)[0]).model_copy(update={"init": None})
        stmt = ast.RangeForStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            var=var,
            range=self.expr(range_init),
            body=self.stmt(body),
        )
        return self._with_prelude(raw, [self.stmt(init)] if _present(init) else [], stmt)

    def _switch(self, raw: Raw) -> Any:
        prelude, (cond, body) = self._split_header(raw, 2)
        body_stmt = self.stmt(body)
        if not isinstance(body_stmt, ast.CompoundStmt):
            body_stmt = ast.CompoundStmt(node_id=0, loc=self._loc(body), body=[body_stmt])
        stmt = ast.SwitchStmt(
            node_id=_node_id(raw), loc=self._loc(raw), cond=self.expr(cond), body=body_stmt
        )
        return self._with_prelude(raw, prelude, stmt)

    def _case(self, raw: Raw) -> ast.CaseStmt:
        inner = _inner(raw)
        return ast.CaseStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            value=self.expr(inner[0]),
            sub=self.stmt(inner[-1]) if len(inner) > 1 else None,
        )

    def _default(self, raw: Raw) -> ast.DefaultStmt:
        inner = _inner(raw)
        return ast.DefaultStmt(
            node_id=_node_id(raw),
            loc=self._loc(raw),
            sub=self.stmt(inner[0]) if inner else None,
        )

    def _try(self, raw: Raw) -> ast.TryStmt:
        body, *handlers = _inner(raw)
        catches = []
        for h in handlers:
            var_raw = next((n for n in _inner(h) if n.get("kind") == "VarDecl"), None)
            block = next(n for n in _inner(h) if n.get("kind") == "CompoundStmt")
            var = self._var(var_raw) if var_raw is not None and var_raw.get("name") else None
            catches.append(
                ast.CatchStmt(
                    node_id=_node_id(h),
                    loc=self._loc(h),
                    caught_type=self.type(var_raw.get("type")) if var_raw is not None else None,
                    var=var,
                    body=self._compound(block),
                )
            )
        return ast.TryStmt(
            node_id=_node_id(raw), loc=self._loc(raw), body=self._compound(body), handlers=catches
        )

    # ── expressions ──────────────────────────────────────────────

    def expr(self, raw: Raw) -> Any:
        kind = raw.get("kind", "")
        if kind in _TRANSPARENT_EXPRS:
            return self.expr(_inner(raw)[0])
        if kind in _CAST_NODES:
            return self._cast(raw)
        handler = self._EXPR_DISPATCH.get(kind)
        if handler is None:
            raise self._unsupported(raw, f"expression kind '{kind}'")
        return handler(raw)

    def _integer(self, raw: Raw) -> ast.IntegerLiteral:
        return ast.IntegerLiteral(**self._expr_base(raw), value=int(raw["value"]))

    def _cast(self, raw: Raw) -> Any:
        cast_kind = _CAST_KINDS.get(raw.get("castKind", ""))
        if cast_kind is None:
            raise self._unsupported(raw, f"conversion '{raw.get('castKind')}'")
        path = []
        for step in raw.get("path", []):
            found = self.registry.lookup(self.registry.records, step.get("name", ""))
            if found is not None:
                path.append(RecordType(name=step["name"], decl_id=found[0], polymorphic=found[1]))
        return ast.CastExpr(
            **self._expr_base(raw),
            cast_kind=cast_kind,
            operand=self.expr(_inner(raw)[0]),
            is_implicit=raw.get("kind") == "ImplicitCastExpr",
            path=path,
        )

    def _ref_id(self, ref: Raw) -> int:
        """Canonical id of a referenced declaration; 0 for declarations outside the unit."""
        decl_id = self.canonical(_node_id(ref))
        raw = self._nodes.get(decl_id)
        if raw is None or not self._declared_in_unit(decl_id):
            return 0
        return decl_id

    def _declared_in_unit(self, decl_id: int) -> bool:
        raw = self._nodes.get(decl_id)
        return raw is not None and self._in_main_file(raw)

    def _decl_ref(self, raw: Raw) -> ast.DeclRefExpr:
        ref = raw.get("referencedDecl", {})
        decl_id = self._ref_id(ref)
        name = ref.get("name", "")
        if ref.get("kind") not in ("VarDecl", "ParmVarDecl") or decl_id == 0:
            name = self._qualified.get(self.canonical(_node_id(ref)), name)
        return ast.DeclRefExpr(**self._expr_base(raw), name=name, decl_id=decl_id)

    def _member(self, raw: Raw) -> Any:
        if raw.get("kind") == "MemberExpr" and "referencedMemberDecl" in raw:
            target = self._nodes.get(int(raw["referencedMemberDecl"], 16), {})
            if target.get("kind") in _SPECIAL_MEMBER_KINDS:
                raise self._unsupported(raw, "bound member function outside a call")
        base = self.expr(_inner(raw)[0])
        record_id = record_of(base.type)
        return ast.MemberExpr(
            **self._expr_base(raw),
            base=base,
            member=raw.get("name", ""),
            is_arrow=bool(raw.get("isArrow")),
            record_id=record_id or 0,
        )

    def _args(self, raws: list[Raw], callee_id: int) -> list:
        """Call arguments with defaulted ones taken from the callee's parameters."""
        args = []
        callee = self._nodes.get(callee_id) if callee_id else None
        for i, a in enumerate(raws):
            if a.get("kind") != "CXXDefaultArgExpr":
                args.append(self.expr(a))
                continue
            params = [p for p in _inner(callee or {}) if p.get("kind") == "ParmVarDecl"]
            default = _inner(params[i]) if i < len(params) else []
            if not default:
                raise self._unsupported(a, "default argument of an unknown callee")
            args.append(self.expr(default[0]))
        return args

    def _callee_decl(self, raw: Raw) -> int:
        while raw.get("kind") in _CAST_NODES or raw.get("kind") == "ParenExpr":
            raw = _inner(raw)[0]
        if raw.get("kind") == "DeclRefExpr":
            return self.canonical(_node_id(raw.get("referencedDecl", {})))
        if raw.get("kind") == "MemberExpr" and "referencedMemberDecl" in raw:
            return self.canonical(int(raw["referencedMemberDecl"], 16))
        return 0

    def _call(self, raw: Raw) -> ast.CallExpr:
        callee, *args = _inner(raw)
        return ast.CallExpr(
            **self._expr_base(raw),
            callee=self.expr(callee),
            args=self._args(args, self._callee_decl(callee)),
        )

    def _member_call(self, raw: Raw) -> ast.MemberCallExpr:
        callee, *args = _inner(raw)
        if callee.get("kind") != "MemberExpr":
            raise self._unsupported(raw, "call through a pointer to member")
        method_id = self.canonical(int(callee["referencedMemberDecl"], 16))
        obj = self.expr(_inner(callee)[0])
        in_unit = self._declared_in_unit(method_id) and method_id in self._owner
        return ast.MemberCallExpr(
            **self._expr_base(raw),
            object=obj,
            method=callee.get("name", ""),
            method_id=method_id if in_unit else 0,
            record_id=self._owner.get(method_id, 0) if in_unit else 0,
            args=self._args(args, method_id),
            is_arrow=bool(callee.get("isArrow")),
            qualified=bool(callee.get("hasQualifier") or callee.get("qualifier")),
        )

    def _operator_call(self, raw: Raw) -> ast.OperatorCallExpr:
        callee, *args = _inner(raw)
        decl_id = self._callee_decl(callee)
        target = self._nodes.get(decl_id, {})
        name = target.get("name") or _find_ref_name(callee)
        operator = name[len("operator"):].strip() if name.startswith("operator") else name
        postfix = operator in ("++", "--") and len(args) == 2
        if postfix:
            args = args[:1]
        in_unit = decl_id and self._declared_in_unit(decl_id)
        return ast.OperatorCallExpr(
            **self._expr_base(raw),
            operator=operator,
            args=self._args(args, decl_id),
            method_id=decl_id if in_unit else 0,
            is_member=target.get("kind") == "CXXMethodDecl",
            is_postfix=postfix,
        )

    def _construct(self, raw: Raw) -> Any:
        inner = _inner(raw)
        if raw.get("elidable") and len(inner) == 1:
            return self.expr(inner[0])
        t = self.type(raw.get("type"))
        ctor_id = 0
        if isinstance(t, RecordType):
            ctor_type = raw.get("ctorType", {}).get("qualType", "")
            ctor_id = self._ctor_types.get((t.decl_id, ctor_type), 0)
        return ast.ConstructExpr(
            **self._expr_base(raw), ctor_id=ctor_id, args=self._args(inner, ctor_id)
        )

    def _new(self, raw: Raw) -> ast.NewExpr:
        if raw.get("isPlacement"):
            raise self._unsupported(raw, "placement new")
        t = self.type(raw.get("type"))
        allocated = t.pointee if isinstance(t, PointerType) else t
        inner = _inner(raw)
        size = None
        if raw.get("isArray") and inner:
            size, inner = self.expr(inner[0]), inner[1:]
        return ast.NewExpr(
            **self._expr_base(raw),
            allocated=allocated,
            init=self.expr(inner[0]) if inner else None,
            array_size=size,
        )

    def _unary(self, raw: Raw) -> ast.UnaryOperator:
        op = raw.get("opcode", "")
        if op in ("__extension__", "__real", "__imag", "co_await"):
            raise self._unsupported(raw, f"unary operator '{op}'")
        return ast.UnaryOperator(
            **self._expr_base(raw),
            op=op,
            operand=self.expr(_inner(raw)[0]),
            is_postfix=bool(raw.get("isPostfix")),
        )

    def _binary(self, raw: Raw) -> ast.BinaryOperator:
        lhs, rhs = _inner(raw)
        return ast.BinaryOperator(
            **self._expr_base(raw), op=raw.get("opcode", ""), lhs=self.expr(lhs), rhs=self.expr(rhs)
        )

    def _conditional(self, raw: Raw) -> ast.ConditionalOperator:
        cond, then, otherwise = _inner(raw)
        return ast.ConditionalOperator(
            **self._expr_base(raw),
            cond=self.expr(cond),
            then=self.expr(then),
            otherwise=self.expr(otherwise),
        )

    def _sizeof(self, raw: Raw) -> ast.SizeOfExpr:
        if raw.get("name") != "sizeof":
            raise self._unsupported(raw, f"'{raw.get('name')}' expression")
        if "argType" in raw:
            operand_type = self.type(raw["argType"])
        else:
            operand_type = strip_reference(self.expr(_inner(raw)[0]).type)
        return ast.SizeOfExpr(**self._expr_base(raw), operand_type=operand_type)

    def _value_init(self, raw: Raw) -> Any:
        base = self._expr_base(raw)
        t = base["type"]
        if t == BOOL:
            return ast.BoolLiteral(**base, value=False)
        if is_integral(t):
            return ast.IntegerLiteral(**base, value=0)
        if is_floating(t):
            return ast.FloatingLiteral(**base, value=0.0)
        if isinstance(t, PointerType):
            return ast.NullPtrLiteral(**base)
        if isinstance(t, RecordType):
            return ast.ConstructExpr(**base)
        raise self._unsupported(raw, f"value initialization of '{t.spelling()}'")

    def _lambda(self, raw: Raw) -> ast.LambdaExpr:
        nid = _node_id(raw)
        inner = _inner(raw)
        closure = inner[0]
        body = inner[-1]
        call, instantiations = _call_operator(closure)
        if call is None:
            raise self._unsupported(raw, "lambda without a call operator")
        field_types = [
            self.type(f.get("type")) for f in _inner(closure) if f.get("kind") == "FieldDecl"
        ]
        captures = []
        for i, init in enumerate(inner[1:-1]):
            captures.append(self._capture(init, field_types[i] if i < len(field_types) else None))
        return ast.LambdaExpr(
            node_id=nid,
            loc=self._loc(raw),
            type=ClosureType(lambda_id=nid),
            captures=captures,
            params=self._params(call),
            return_type=self._result_type(instantiations[0] if instantiations else call),
            body=self._compound(body),
            instantiations=[[p.type for p in self._params(s)] for s in instantiations],
            is_mutable="const" not in call.get("type", {}).get("qualType", "").rsplit(")", 1)[-1],
        )

    def _capture(self, init: Raw, field_type: ResolvedType | None) -> ast.LambdaCapture:
        target = init
        while target.get("kind") in _CAST_NODES | _TRANSPARENT_EXPRS | {"ParenExpr"} or (
            target.get("kind") == "CXXConstructExpr" and len(_inner(target)) == 1
        ):
            target = _inner(target)[0]
        if target.get("kind") == "CXXThisExpr":
            return ast.LambdaCapture(node_id=_node_id(init), loc=self._loc(init), name="this")
        if target.get("kind") != "DeclRefExpr":
            raise self._unsupported(init, "lambda init-capture")
        ref = target.get("referencedDecl", {})
        return ast.LambdaCapture(
            node_id=_node_id(init),
            loc=self._loc(init),
            name=ref.get("name", ""),
            decl_id=_node_id(ref),
            by_ref=isinstance(field_type, ReferenceType),
            captured_type=self.type(ref.get("type")),
        )


# ── module helpers ───────────────────────────────────────────────


def record_of(t: ResolvedType) -> int | None:
    t = strip_reference(t)
    if isinstance(t, PointerType):
        t = t.pointee
    return t.decl_id if isinstance(t, RecordType) else None


def _ctor_kind(params: list[ast.ParamDecl], record_id: int) -> ast.CtorKind:
    if not params:
        return ast.CtorKind.DEFAULT
    if len(params) == 1 and isinstance(params[0].type, ReferenceType):
        referent = params[0].type.referent
        if isinstance(referent, RecordType) and referent.decl_id == record_id:
            return ast.CtorKind.MOVE if params[0].type.is_rvalue else ast.CtorKind.COPY
    return ast.CtorKind.OTHER


def _constant_value(raw: Raw) -> int | None:
    for child in _inner(raw):
        if "value" in child and child.get("kind") in ("ConstantExpr", "IntegerLiteral"):
            return int(child["value"])
        found = _constant_value(child)
        if found is not None:
            return found
    return None


def _call_operator(closure: Raw) -> tuple[Raw | None, list[Raw]]:
    for member in _inner(closure):
        if member.get("kind") == "CXXMethodDecl" and member.get("name") == "operator()":
            return member, []
        if member.get("kind") == "FunctionTemplateDecl" and member.get("name") == "operator()":
            methods = [m for m in _inner(member) if m.get("kind") == "CXXMethodDecl"]
            if methods:
                return methods[0], methods[1:]
    return None, []


def _find_ref_name(raw: Raw) -> str:
    while raw.get("kind") in _CAST_NODES:
        raw = _inner(raw)[0]
    return raw.get("referencedDecl", {}).get("name", "")


def mangle_specialization(spelled: str) -> str:
    """``ns::Box<int, char *>`` -> ``Box_int_char_ptr``."""
    head, _, args = spelled.partition("<")
    args = args.replace("*", " ptr ").replace("&", " ref ")
    words = re.findall(r"\w+", args)
    name = head.rsplit("::", 1)[-1]
    return "_".join([name] + words)


_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    '"': '"',
    "'": "'",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "?": "?",
}


def unescape_c_string(literal: str) -> str:
    """Decode a string literal as clang prints it (quoted, C escapes)."""
    start = literal.index('"')
    body = literal[start + 1 : literal.rindex('"')]
    out = []
    i = 0
    while i < len(body):
        c = body[i]
        if c != "\\":
            out.append(c)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt == "x":
            j = i + 2
            while j < len(body) and body[j] in "0123456789abcdefABCDEF":
                j += 1
            out.append(chr(int(body[i + 2 : j], 16)))
            i = j
        elif nxt in "01234567":
            j = i + 1
            while j < len(body) and j < i + 4 and body[j] in "01234567":
                j += 1
            out.append(chr(int(body[i + 1 : j], 8)))
            i = j
        else:
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
    return "".join(out)
