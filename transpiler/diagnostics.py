"""Diagnostic records and the lowering error taxonomy.

Recoverable problems (``UnsupportedConstruct``, type-mapping fallbacks) are
collected into a ``DiagnosticSink`` and lowering carries on.  Fatal problems
(``LayoutInvariantViolation``, ``EmissionOrderingFailure``) abort the current
translation unit only.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict

from .cpp_ast import NO_SOURCE_LOCATION, SourceLocation

logger = logging.getLogger(__name__)


class DiagnosticKind(str, Enum):
    UNSUPPORTED_CONSTRUCT = "unsupported-construct"
    TYPE_MAPPING_FALLBACK = "type-mapping-fallback"
    LAYOUT_INVARIANT_VIOLATION = "layout-invariant-violation"
    EMISSION_ORDERING_FAILURE = "emission-ordering-failure"


FATAL_KINDS = frozenset(
    {
        DiagnosticKind.LAYOUT_INVARIANT_VIOLATION,
        DiagnosticKind.EMISSION_ORDERING_FAILURE,
    }
)


class Diagnostic(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: DiagnosticKind
    message: str
    location: SourceLocation = NO_SOURCE_LOCATION
    declaration: str = ""

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    def __str__(self) -> str:
        where = "" if self.location.is_unknown() else f"{self.location}: "
        decl = f" [in {self.declaration}]" if self.declaration else ""
        return f"{where}{self.kind.value}: {self.message}{decl}"


class DiagnosticSink:
    """Ordered, de-duplicated collection of diagnostics for one unit."""

    def __init__(self):
        self._items: list[Diagnostic] = []
        self._seen: set[tuple] = set()

    def report(self, diagnostic: Diagnostic) -> None:
        key = (
            diagnostic.kind,
            diagnostic.message,
            str(diagnostic.location),
            diagnostic.declaration,
        )
        if key in self._seen:
            return
        self._seen.add(key)
        self._items.append(diagnostic)
        log = logger.error if diagnostic.fatal else logger.warning
        log("%s", diagnostic)

    def extend(self, diagnostics: list[Diagnostic]) -> None:
        for d in diagnostics:
            self.report(d)

    @property
    def items(self) -> list[Diagnostic]:
        return list(self._items)

    @property
    def has_fatal(self) -> bool:
        return any(d.fatal for d in self._items)

    def __len__(self) -> int:
        return len(self._items)


class TranspileError(Exception):
    """Base class for errors raised while lowering a translation unit."""

    kind: DiagnosticKind = DiagnosticKind.UNSUPPORTED_CONSTRUCT

    def __init__(self, message: str, location: SourceLocation = NO_SOURCE_LOCATION):
        super().__init__(message)
        self.message = message
        self.location = location

    def to_diagnostic(self, declaration: str = "") -> Diagnostic:
        return Diagnostic(
            kind=self.kind,
            message=self.message,
            location=self.location,
            declaration=declaration,
        )


class UnsupportedConstruct(TranspileError):
    """A C++ shape with no lowering; the enclosing declaration is skipped."""

    kind = DiagnosticKind.UNSUPPORTED_CONSTRUCT


class FatalTranspileError(TranspileError):
    """Aborts emission of the current translation unit."""


class LayoutInvariantViolation(FatalTranspileError):
    kind = DiagnosticKind.LAYOUT_INVARIANT_VIOLATION


class EmissionOrderingFailure(FatalTranspileError):
    kind = DiagnosticKind.EMISSION_ORDERING_FAILURE


class FrontendError(Exception):
    """The external C++ front end failed or produced unreadable output."""
