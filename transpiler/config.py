"""Transpilation configuration (pure data, no business logic)."""

from __future__ import annotations

from dataclasses import dataclass, field

from . import constants


@dataclass(frozen=True)
class TranspileConfig:
    """Groups lowering and front-end configuration."""

    stubs_only: bool = False
    runtime_crate: str = constants.RUNTIME_CRATE
    emit_main_wrapper: bool = True
    clang_binary: str = constants.DEFAULT_CLANG_BINARY
    cpp_standard: str = constants.DEFAULT_CPP_STANDARD
    include_paths: tuple[str, ...] = field(default_factory=tuple)
    defines: tuple[str, ...] = field(default_factory=tuple)
