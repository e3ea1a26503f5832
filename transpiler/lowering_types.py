"""Lowering state shared by the declaration, statement and expression lowerers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from . import constants
from .config import TranspileConfig
from .cpp_types import VOID, FunctionType, ResolvedType
from .diagnostics import DiagnosticSink
from .layout import LayoutBuilder
from .symbols import SymbolIndex, sanitize_ident
from .target_ir import Path
from .type_mapper import TypeMapper


class LocalKind(Enum):
    VALUE = "value"
    BORROW = "borrow"
    POINTER = "pointer"


class SelfMode(Enum):
    NONE = "none"
    REF = "ref"
    LOCAL = "local"
    POINTER = "pointer"


@dataclass
class LocalInfo:
    name: str
    kind: LocalKind
    type: ResolvedType


@dataclass
class UnitContext:
    """Per-translation-unit collaborators, created fresh for every unit."""

    index: SymbolIndex
    mapper: TypeMapper
    layouts: LayoutBuilder
    sink: DiagnosticSink
    config: TranspileConfig
    externs: dict[str, FunctionType] = field(default_factory=dict)

    def rt(self, name: str) -> Path:
        return Path.external_path(f"{self.config.runtime_crate}::{name}")


@dataclass
class FunctionContext:
    """What the body of one function, method, constructor or lambda can see."""

    declaration: str = ""
    record_id: int = 0
    self_mode: SelfMode = SelfMode.NONE
    return_type: ResolvedType = VOID
    is_ctor: bool = False
    in_init_phase: bool = False
    return_label: str | None = None
    locals: dict[int, LocalInfo] = field(default_factory=dict)
    member_locals: dict[str, str] = field(default_factory=dict)
    catch_stack: list[str] = field(default_factory=list)

    def declare(self, decl_id: int, name: str, kind: LocalKind, type: ResolvedType) -> LocalInfo:
        info = LocalInfo(name=_local_ident(name), kind=kind, type=type)
        self.locals[decl_id] = info
        return info

    def closure_child(self, return_type: ResolvedType) -> FunctionContext:
        """Context for a lambda body; captures are declared by the caller."""
        return FunctionContext(
            declaration=self.declaration,
            record_id=self.record_id,
            self_mode=SelfMode.NONE,
            return_type=return_type,
        )


def _local_ident(name: str) -> str:
    if name == constants.SELF_LOCAL:
        return f"{name}_"
    return sanitize_ident(name) if name else "_"
