"""Statement lowering: loops, switch and try/catch as labelled Rust blocks."""

from __future__ import annotations

from transpiler import cpp_ast as ast
from transpiler.api import transpile_unit
from transpiler.ast_builder import AstBuilder
from transpiler.cpp_types import INT
from transpiler.diagnostics import DiagnosticKind


def _emit(unit: ast.TranslationUnit) -> str:
    result = transpile_unit(unit)
    assert result.ok, result.diagnostics
    return result.text


def _classify(b: AstBuilder) -> ast.FunctionDecl:
    x = b.param("x", INT)
    body = b.block(
        b.node(
            ast.CaseStmt,
            value=b.lit(1),
            sub=b.node(ast.CaseStmt, value=b.lit(2), sub=b.ret(b.lit(10))),
        ),
        b.node(ast.CaseStmt, value=b.lit(3), sub=b.expr_stmt(b.assign(b.ref(x), b.lit(5)))),
        b.node(ast.BreakStmt),
        b.node(ast.DefaultStmt, sub=b.ret(b.lit(0))),
    )
    switch = b.node(ast.SwitchStmt, cond=b.load(x), body=body)
    return b.function("classify", INT, [x], b.block(switch, b.ret(b.load(x))))


class TestSwitch:
    def test_scrutinee_and_fallthrough_flag(self):
        b = AstBuilder()
        text = _emit(b.tu(_classify(b)))
        assert "let __sw = x;" in text
        assert "let mut __ft = false;" in text
        assert "'sw_0: {" in text

    def test_stacked_labels_share_a_group(self):
        b = AstBuilder()
        text = _emit(b.tu(_classify(b)))
        assert "if __ft || (__sw == 1 || __sw == 2) {" in text
        assert "if __ft || __sw == 3 {" in text
        assert "__ft = true;" in text
        assert "return 10;" in text

    def test_break_leaves_the_switch_block(self):
        b = AstBuilder()
        text = _emit(b.tu(_classify(b)))
        assert "x = 5;" in text
        assert "break 'sw_0;" in text

    def test_default_matches_no_other_value(self):
        b = AstBuilder()
        text = _emit(b.tu(_classify(b)))
        assert "if __ft || !(__sw == 1 || __sw == 2 || __sw == 3) {" in text
        assert text.index("__sw == 3 {") < text.index("!(__sw == 1")

    def test_case_label_outside_a_switch_skips_the_function(self):
        b = AstBuilder()
        stray = b.node(ast.CaseStmt, value=b.lit(1), sub=b.ret(b.lit(1)))
        fn = b.function("stray", INT, [], b.block(stray, b.ret(b.lit(0))))
        result = transpile_unit(b.tu(fn))
        assert result.ok
        assert "fn stray" not in result.text
        (diagnostic,) = result.diagnostics
        assert diagnostic.kind == DiagnosticKind.UNSUPPORTED_CONSTRUCT
        assert "label outside a switch body" in diagnostic.message


class TestLoops:
    def test_for_continue_still_runs_the_increment(self):
        b = AstBuilder()
        n = b.var("n", INT, b.lit(0))
        i = b.var("i", INT, b.lit(0))
        loop = b.node(
            ast.ForStmt,
            init=b.decl_stmt(i),
            cond=b.binop("<", b.load(i), b.lit(10)),
            inc=b.unop("++", b.ref(i), postfix=True),
            body=b.block(
                b.if_(b.binop("==", b.load(i), b.lit(3)), b.node(ast.ContinueStmt)),
                b.expr_stmt(b.assign(b.ref(n), b.load(i), "+=")),
            ),
        )
        fn = b.function("total", INT, [], b.block(b.decl_stmt(n), loop, b.ret(b.load(n))))
        text = _emit(b.tu(fn))
        assert "let mut i: i32 = 0;" in text
        assert "'loop_0: while i < 10 {" in text
        assert "'cont_1: {" in text
        assert "break 'cont_1;" in text
        assert "n += i;" in text
        assert text.index("'cont_1: {") < text.index("i += 1;")

    def test_for_without_continue_has_no_continue_block(self):
        b = AstBuilder()
        i = b.var("i", INT, b.lit(0))
        loop = b.node(
            ast.ForStmt,
            init=b.decl_stmt(i),
            cond=b.binop("<", b.load(i), b.lit(4)),
            inc=b.unop("++", b.ref(i)),
            body=b.block(),
        )
        fn = b.function("spin", INT, [], b.block(loop, b.ret(b.lit(0))))
        text = _emit(b.tu(fn))
        assert "'loop_0: while i < 4 {" in text
        assert "'cont_1" not in text

    def test_while_break_and_continue(self):
        b = AstBuilder()
        n = b.param("n", INT)
        body = b.block(
            b.expr_stmt(b.assign(b.ref(n), b.lit(1), "-=")),
            b.if_(b.binop("==", b.load(n), b.lit(5)), b.node(ast.ContinueStmt)),
            b.if_(b.binop("==", b.load(n), b.lit(2)), b.node(ast.BreakStmt)),
        )
        loop = b.node(ast.WhileStmt, cond=b.binop(">", b.load(n), b.lit(0)), body=body)
        fn = b.function("countdown", INT, [n], b.block(loop, b.ret(b.load(n))))
        text = _emit(b.tu(fn))
        assert "'loop_0: while n > 0 {" in text
        assert "n -= 1;" in text
        assert "continue 'loop_0;" in text
        assert "break 'loop_0;" in text

    def test_do_while_checks_after_the_body(self):
        b = AstBuilder()
        n = b.param("n", INT)
        loop = b.node(
            ast.DoStmt,
            body=b.block(b.expr_stmt(b.assign(b.ref(n), b.lit(1), "+="))),
            cond=b.binop("<", b.load(n), b.lit(3)),
        )
        fn = b.function("bump", INT, [n], b.block(loop, b.ret(b.load(n))))
        text = _emit(b.tu(fn))
        assert "'loop_0: loop {" in text
        assert "if !(n < 3) {" in text
        assert text.index("n += 1;") < text.index("if !(n < 3)")
        assert "break 'loop_0;" in text

    def test_break_outside_a_loop_skips_the_function(self):
        b = AstBuilder()
        fn = b.function("broken", INT, [], b.block(b.node(ast.BreakStmt), b.ret(b.lit(0))))
        keep = b.function("keep", INT, [], b.block(b.ret(b.lit(1))))
        result = transpile_unit(b.tu(fn, keep))
        assert result.ok
        assert "fn broken" not in result.text
        assert "pub fn keep() -> i32" in result.text
        (diagnostic,) = result.diagnostics
        assert diagnostic.message == "'break' outside a loop or switch"
        assert diagnostic.declaration == "broken"


class TestTryCatch:
    def _guarded(self, b: AstBuilder) -> ast.FunctionDecl:
        e = b.var("e", INT)
        handler = b.node(
            ast.CatchStmt, caught_type=INT, var=e, body=b.block(b.ret(b.load(e)))
        )
        try_stmt = b.node(ast.TryStmt, body=b.block(b.ret(b.lit(1))), handlers=[handler])
        return b.function("guarded", INT, [], b.block(try_stmt))

    def test_body_runs_in_the_runtime_closure(self):
        b = AstBuilder()
        text = _emit(b.tu(self._guarded(b)))
        assert "match fragile_rt::try_catch::<i32>(|| {" in text
        assert "return fragile_rt::Flow::Return(1);" in text
        assert "Ok(fragile_rt::Flow::Normal) => {}," in text
        assert "Ok(fragile_rt::Flow::Return(__v)) => return __v," in text

    def test_typed_handler_binds_the_exception_value(self):
        b = AstBuilder()
        text = _emit(b.tu(self._guarded(b)))
        assert "if __exc.matches::<i32>() {" in text
        assert "let mut e: i32 = __exc.value::<i32>();" in text
        assert "return e;" in text

    def test_unmatched_exception_is_rethrown(self):
        b = AstBuilder()
        text = _emit(b.tu(self._guarded(b)))
        assert "fragile_rt::rethrow(__exc);" in text

    def test_catch_all_replaces_the_rethrow(self):
        b = AstBuilder()
        handler = b.node(ast.CatchStmt, body=b.block(b.ret(b.lit(2))))
        try_stmt = b.node(ast.TryStmt, body=b.block(b.ret(b.lit(1))), handlers=[handler])
        fn = b.function("anything", INT, [], b.block(try_stmt))
        text = _emit(b.tu(fn))
        assert "rethrow" not in text
        assert "matches" not in text

    def test_body_that_completes_normally_yields_the_normal_flow(self):
        b = AstBuilder()
        x = b.var("x", INT, b.lit(0))
        e = b.var("e", INT)
        handler = b.node(
            ast.CatchStmt,
            caught_type=INT,
            var=e,
            body=b.block(b.expr_stmt(b.assign(b.ref(x), b.lit(2)))),
        )
        try_stmt = b.node(
            ast.TryStmt,
            body=b.block(b.expr_stmt(b.assign(b.ref(x), b.lit(1)))),
            handlers=[handler],
        )
        fn = b.function("settle", INT, [], b.block(b.decl_stmt(x), try_stmt, b.ret(b.load(x))))
        text = _emit(b.tu(fn))
        assert "x = 1;\n" in text
        assert "fragile_rt::Flow::Normal\n" in text
        assert "fragile_rt::Flow::Normal;" not in text
        assert "return x;" in text
