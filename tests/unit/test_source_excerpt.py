"""Tests for tree-sitter source excerpts shown next to diagnostics."""

from __future__ import annotations

import tree_sitter_language_pack as tslp

from transpiler.cpp_ast import SourceLocation
from transpiler.diagnostics import Diagnostic, DiagnosticKind
from transpiler.source_excerpt import Excerpt, SourceExcerpter

SOURCE = """\
int add(int a, int b) {
    return a + b;
}

struct Point {
    int x;
    int y;
};
"""


def _diagnostic(file: str, line: int) -> Diagnostic:
    return Diagnostic(
        kind=DiagnosticKind.UNSUPPORTED_CONSTRUCT,
        message="something odd",
        location=SourceLocation(file=file, line=line, col=5),
    )


class TestExcerpt:
    def test_function_body_line_gives_the_whole_function(self):
        found = SourceExcerpter().excerpt("mem.cpp", 2, source=SOURCE)
        assert found.kind == "function_definition"
        assert (found.start_line, found.end_line) == (1, 3)
        assert found.lines[1] == "    return a + b;"

    def test_innermost_declaration_wins(self):
        found = SourceExcerpter().excerpt("mem.cpp", 6, source=SOURCE)
        assert found.kind == "field_declaration"
        assert found.lines == ("    int x;",)

    def test_blank_line_has_no_declaration(self):
        assert SourceExcerpter().excerpt("mem.cpp", 4, source=SOURCE) is None

    def test_reads_the_file_when_no_source_is_given(self, tmp_path):
        path = tmp_path / "point.cpp"
        path.write_text(SOURCE, encoding="utf-8")
        found = SourceExcerpter().excerpt(str(path), 7)
        assert found.lines == ("    int y;",)


class TestRender:
    def test_highlighted_line(self):
        excerpt = Excerpt("declaration", 9, 10, ("int a;", "int b;"))
        assert excerpt.render(highlight=10) == "   9 | int a;\n> 10 | int b;"

    def test_truncated_excerpt_ends_with_ellipsis(self):
        excerpt = Excerpt("function_definition", 1, 20, tuple(f"line {i}" for i in range(12)))
        rendered = excerpt.render().splitlines()
        assert len(rendered) == 13
        assert rendered[-1].endswith("| ...")


class TestForDiagnostic:
    def test_excerpt_for_known_location(self):
        excerpter = SourceExcerpter()
        excerpter.excerpt("mem.cpp", 1, source=SOURCE)
        text = excerpter.for_diagnostic(_diagnostic("mem.cpp", 2))
        assert "> 2 |     return a + b;" in text

    def test_unknown_location(self):
        diagnostic = Diagnostic(kind=DiagnosticKind.UNSUPPORTED_CONSTRUCT, message="x")
        assert SourceExcerpter().for_diagnostic(diagnostic) is None

    def test_unreadable_file(self, tmp_path):
        missing = str(tmp_path / "gone.cpp")
        assert SourceExcerpter().for_diagnostic(_diagnostic(missing, 1)) is None

    def test_injected_parser_is_used(self):
        parser = tslp.get_parser("cpp")
        found = SourceExcerpter(parser).excerpt("mem.cpp", 2, source=SOURCE)
        assert found.kind == "function_definition"
