"""Composable API functions for the C++ -> Rust pipeline.

Each function corresponds to a CLI workflow (transpile, --ast-json,
--dump-layouts) but is callable programmatically without argparse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path as FsPath
from typing import Iterable

from . import constants
from . import cpp_ast as ast
from .clang_frontend import parse_source
from .config import TranspileConfig
from .decl_lowerer import DeclarationLowerer, lower_translation_unit
from .diagnostics import (
    Diagnostic,
    DiagnosticSink,
    FatalTranspileError,
    FrontendError,
    UnsupportedConstruct,
)
from .emitter import RustEmitter, emit_crate
from .layout import ClassLayout, FieldRole, LayoutField
from .target_ir import RustCrate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslationResult:
    """Outcome of one translation unit.

    ``text`` is None when the unit failed fatally; ``error`` carries a
    front-end failure that happened before lowering started.
    """

    file: str
    text: str | None
    diagnostics: tuple[Diagnostic, ...] = field(default_factory=tuple)
    fatal: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.fatal and self.text is not None


def lower_unit(
    unit: ast.TranslationUnit,
    config: TranspileConfig | None = None,
    sink: DiagnosticSink | None = None,
) -> RustCrate:
    """Lower a translation unit to target IR.

    Args:
        unit: The resolved AST of one source file.
        config: Lowering options; defaults to ``TranspileConfig()``.
        sink: Collects recoverable diagnostics; a fresh one when omitted.

    Returns:
        The lowered crate, not yet ordered or rendered.
    """
    return lower_translation_unit(unit, config, sink)


def transpile_unit(
    unit: ast.TranslationUnit,
    config: TranspileConfig | None = None,
    sink: DiagnosticSink | None = None,
) -> TranslationResult:
    """Lower and emit one unit; fatal errors fail this unit only."""
    sink = sink if sink is not None else DiagnosticSink()
    logger.info("Transpiling %s", unit.file or "<unit>")
    try:
        crate = lower_unit(unit, config, sink)
        text = emit_crate(crate)
    except FatalTranspileError as exc:
        sink.report(exc.to_diagnostic(unit.file))
        return TranslationResult(unit.file, None, tuple(sink.items), fatal=True)
    if sink.has_fatal:
        return TranslationResult(unit.file, None, tuple(sink.items), fatal=True)
    return TranslationResult(unit.file, text, tuple(sink.items))


def load_unit(path: str, ast_json: bool = False, config: TranspileConfig | None = None,
              sink: DiagnosticSink | None = None) -> ast.TranslationUnit:
    """Read ``path`` as AST Model JSON, or run the clang front end on it."""
    if ast_json:
        unit = ast.TranslationUnit.model_validate_json(FsPath(path).read_text(encoding="utf-8"))
        return unit if unit.file else unit.model_copy(update={"file": path})
    return parse_source(path, config, sink)


def transpile_file(
    path: str, config: TranspileConfig | None = None, ast_json: bool = False
) -> TranslationResult:
    """Front end + lowering + emission for one file.

    Raises:
        FrontendError: clang is missing, failed, or produced unreadable output.
    """
    sink = DiagnosticSink()
    unit = load_unit(path, ast_json, config, sink)
    return transpile_unit(unit, config, sink)


def transpile_files(
    paths: Iterable[str], config: TranspileConfig | None = None, ast_json: bool = False
) -> list[TranslationResult]:
    """Transpile each file independently; one failing file never affects another."""
    results = []
    for path in paths:
        try:
            results.append(transpile_file(path, config, ast_json))
        except (FrontendError, OSError, ValueError) as exc:
            logger.error("Front end failed for %s: %s", path, exc)
            results.append(TranslationResult(path, None, fatal=True, error=str(exc)))
    return results


def dump_layouts(unit: ast.TranslationUnit, config: TranspileConfig | None = None) -> str:
    """Human-readable class layouts and vtables of every record in ``unit``."""
    lowerer = DeclarationLowerer(unit, config)
    emitter = RustEmitter()
    blocks = []
    for record_id, record in lowerer.index.records.items():
        if not record.is_definition:
            continue
        try:
            layout = lowerer.layouts.layout_of(record_id)
        except UnsupportedConstruct as exc:
            blocks.append(f"{record.name}: no layout ({exc.message})")
            continue
        blocks.append(_render_layout(layout, emitter, lowerer.index.records))
    return "\n\n".join(blocks) + ("\n" if blocks else "")


def _field_type(f: LayoutField, emitter: RustEmitter, records: dict[int, ast.RecordDecl]) -> str:
    if f.rust_type is not None:
        return emitter.type(f.rust_type)
    if f.role == FieldRole.VPTR:
        return f"*const {constants.RUNTIME_CRATE}::{constants.RT_VSLOT}"
    record = records.get(f.record_id)
    if record is None:
        return "-"
    if f.role == FieldRole.VBASE_PTR:
        return f"*mut {record.name}"
    return record.name


def _render_layout(
    layout: ClassLayout, emitter: RustEmitter, records: dict[int, ast.RecordDecl]
) -> str:
    lines = [f"{layout.name}{' (polymorphic)' if layout.polymorphic else ''}"]
    for i, f in enumerate(layout.ordered_fields()):
        ty = _field_type(f, emitter, records)
        managed = " managed" if f.managed else ""
        lines.append(f"  [{i}] {f.name}: {ty} ({f.role.value}{managed})")
    if layout.vtable is not None:
        for slot in layout.vtable.slots:
            pure = " pure" if slot.is_pure else ""
            owner = records[slot.impl_id].name if slot.impl_id in records else "?"
            lines.append(f"  slot {slot.index}: {slot.key} -> {owner}{pure}")
    return "\n".join(lines)
