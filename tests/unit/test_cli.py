"""Tests for the fragile-transpile command line."""

from __future__ import annotations

from transpiler.ast_builder import AstBuilder
from transpiler.cli import EXIT_FAILED, EXIT_OK, EXIT_USAGE, build_arg_parser, config_from_args, main, output_path
from transpiler.cpp_types import INT


def _write_unit(tmp_path, name: str, fn_name: str = "answer"):
    b = AstBuilder()
    fn = b.function(fn_name, INT, [], b.block(b.ret(b.lit(42))))
    path = tmp_path / name
    path.write_text(b.tu(fn, file="").model_dump_json(), encoding="utf-8")
    return path


class TestArguments:
    def test_defaults(self):
        args = build_arg_parser().parse_args(["a.cpp"])
        config = config_from_args(args)
        assert args.output is None
        assert config.cpp_standard == "c++17"
        assert config.clang_binary == "clang++"
        assert not config.stubs_only

    def test_repeated_include_and_define(self):
        args = build_arg_parser().parse_args(
            ["a.cpp", "-I", "inc", "-I", "lib", "-D", "NDEBUG", "--std", "c++20", "--stubs-only"]
        )
        config = config_from_args(args)
        assert config.include_paths == ("inc", "lib")
        assert config.defines == ("NDEBUG",)
        assert config.cpp_standard == "c++20"
        assert config.stubs_only


class TestOutputPath:
    def test_single_source_writes_the_named_file(self, tmp_path):
        out = tmp_path / "out.rs"
        assert output_path(str(out), "src/a.cpp", many=False) == out

    def test_existing_directory(self, tmp_path):
        assert output_path(str(tmp_path), "src/a.cpp", many=False) == tmp_path / "a.rs"

    def test_many_sources_go_into_the_directory(self, tmp_path):
        assert output_path(str(tmp_path / "gen"), "b.cpp", many=True) == tmp_path / "gen" / "b.rs"


class TestMain:
    def test_transpiles_ast_json(self, tmp_path):
        source = _write_unit(tmp_path, "prog.json")
        out = tmp_path / "prog.rs"
        assert main([str(source), "--ast-json", "-o", str(out)]) == EXIT_OK
        text = out.read_text(encoding="utf-8")
        assert "pub fn answer() -> i32 {" in text

    def test_several_sources_into_a_directory(self, tmp_path):
        first = _write_unit(tmp_path, "one.json", "one")
        second = _write_unit(tmp_path, "two.json", "two")
        out = tmp_path / "gen"
        assert main([str(first), str(second), "--ast-json", "-o", str(out)]) == EXIT_OK
        assert "pub fn one()" in (out / "one.rs").read_text(encoding="utf-8")
        assert "pub fn two()" in (out / "two.rs").read_text(encoding="utf-8")

    def test_output_is_required(self, tmp_path, capsys):
        source = _write_unit(tmp_path, "prog.json")
        assert main([str(source), "--ast-json"]) == EXIT_USAGE
        assert "-o OUT is required" in capsys.readouterr().err

    def test_failing_unit_does_not_stop_the_others(self, tmp_path, capsys):
        good = _write_unit(tmp_path, "good.json")
        missing = tmp_path / "missing.json"
        out = tmp_path / "gen"
        assert main([str(missing), str(good), "--ast-json", "-o", str(out)]) == EXIT_FAILED
        assert (out / "good.rs").exists()
        assert not (out / "missing.rs").exists()
        assert "missing.json: error:" in capsys.readouterr().err

    def test_dump_layouts(self, tmp_path, capsys):
        source = _write_unit(tmp_path, "prog.json")
        assert main([str(source), "--ast-json", "--dump-layouts"]) == EXIT_OK
        assert capsys.readouterr().out.startswith(f"// {source}")
