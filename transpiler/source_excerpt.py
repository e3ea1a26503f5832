"""Source excerpts for diagnostics.

Given a diagnostic's line, finds the innermost C++ declaration around it in
the tree-sitter parse of the original file, so the CLI can show the code a
skipped declaration came from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import tree_sitter_language_pack as tslp
from tree_sitter import Node, Parser

from . import constants
from .diagnostics import Diagnostic

logger = logging.getLogger(__name__)

DECLARATION_NODE_TYPES = frozenset(
    {
        "function_definition",
        "class_specifier",
        "struct_specifier",
        "union_specifier",
        "enum_specifier",
        "field_declaration",
        "declaration",
        "alias_declaration",
        "type_definition",
        "template_declaration",
    }
)

MAX_EXCERPT_LINES = 12


@dataclass(frozen=True)
class Excerpt:
    """Lines ``start_line..end_line`` (1-based, inclusive) of one declaration."""

    kind: str
    start_line: int
    end_line: int
    lines: tuple[str, ...]

    def render(self, highlight: int | None = None) -> str:
        width = len(str(self.end_line))
        out = []
        for offset, text in enumerate(self.lines):
            number = self.start_line + offset
            marker = ">" if number == highlight else " "
            out.append(f"{marker} {number:>{width}} | {text}")
        if self.start_line + len(self.lines) - 1 < self.end_line:
            out.append(f"  {'':>{width}} | ...")
        return "\n".join(out)


def enclosing_declaration(root: Node, line: int) -> Node | None:
    """Innermost declaration node whose rows cover 1-based ``line``."""
    row = line - 1
    found = None
    node = root
    while True:
        child = next(
            (c for c in node.children if c.start_point[0] <= row <= c.end_point[0]),
            None,
        )
        if child is None:
            return found
        if child.type in DECLARATION_NODE_TYPES:
            found = child
        node = child


class SourceExcerpter:
    """Parses each source once and cuts excerpts out of it on demand."""

    def __init__(self, parser: Parser | None = None):
        self._parser = parser
        self._trees: dict[str, tuple[Node, list[str]]] = {}

    def _tree(self, path: str, source: str | None = None) -> tuple[Node, list[str]]:
        if path not in self._trees:
            if source is None:
                with open(path, encoding="utf-8") as f:
                    source = f.read()
            if self._parser is None:
                self._parser = tslp.get_parser(constants.CPP_LANGUAGE)
            tree = self._parser.parse(source.encode("utf-8"))
            self._trees[path] = (tree.root_node, source.splitlines())
        return self._trees[path]

    def excerpt(self, path: str, line: int, source: str | None = None) -> Excerpt | None:
        root, lines = self._tree(path, source)
        node = enclosing_declaration(root, line)
        if node is None:
            return None
        start, end = node.start_point[0], node.end_point[0]
        shown = lines[start : min(end + 1, start + MAX_EXCERPT_LINES)]
        logger.debug("Excerpt for %s:%d is a %s at rows %d-%d", path, line, node.type, start, end)
        return Excerpt(node.type, start + 1, end + 1, tuple(shown))

    def for_diagnostic(self, diagnostic: Diagnostic) -> str | None:
        loc = diagnostic.location
        if loc.is_unknown() or not loc.file:
            return None
        try:
            found = self.excerpt(loc.file, loc.line)
        except OSError as exc:
            logger.warning("Cannot read %s for an excerpt: %s", loc.file, exc)
            return None
        return found.render(highlight=loc.line) if found is not None else None
