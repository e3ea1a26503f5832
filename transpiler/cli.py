"""Command-line entry point: ``fragile-transpile``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path as FsPath

from . import constants
from .api import TranslationResult, dump_layouts, load_unit, transpile_files
from .config import TranspileConfig
from .diagnostics import FrontendError
from .source_excerpt import SourceExcerpter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fragile-transpile",
        description="Translate C++ translation units into Rust source",
    )
    parser.add_argument("sources", nargs="+", help="C++ sources (or AST JSON with --ast-json)")
    parser.add_argument("-o", "--output", default=None,
                        help="Output .rs file (single source) or directory")
    parser.add_argument("-I", dest="include_paths", action="append", default=[],
                        metavar="DIR", help="Add an include directory for clang")
    parser.add_argument("-D", dest="defines", action="append", default=[],
                        metavar="NAME", help="Define a preprocessor macro for clang")
    parser.add_argument("--std", default=constants.DEFAULT_CPP_STANDARD,
                        help=f"C++ language standard (default: {constants.DEFAULT_CPP_STANDARD})")
    parser.add_argument("--clang", default=constants.DEFAULT_CLANG_BINARY,
                        help="clang executable to run")
    parser.add_argument("--stubs-only", action="store_true",
                        help="Emit declarations with placeholder bodies")
    parser.add_argument("--ast-json", action="store_true",
                        help="Sources are saved AST Model JSON instead of C++")
    parser.add_argument("--show-source", action="store_true",
                        help="Print the C++ declaration behind each diagnostic")
    parser.add_argument("--dump-layouts", action="store_true",
                        help="Print class layouts and vtables instead of transpiling")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> TranspileConfig:
    return TranspileConfig(
        stubs_only=args.stubs_only,
        clang_binary=args.clang,
        cpp_standard=args.std,
        include_paths=tuple(args.include_paths),
        defines=tuple(args.defines),
    )


def output_path(output: str, source: str, many: bool) -> FsPath:
    """Where the Rust text for ``source`` goes.

    A single source writes to ``output`` itself unless it names an existing
    directory; several sources always write ``<stem>.rs`` inside ``output``.
    """
    out = FsPath(output)
    if many or out.is_dir():
        return out / (FsPath(source).stem + ".rs")
    return out


def report(result: TranslationResult, excerpter: SourceExcerpter | None) -> None:
    if result.error is not None:
        print(f"{result.file}: error: {result.error}", file=sys.stderr)
    for diagnostic in result.diagnostics:
        print(str(diagnostic), file=sys.stderr)
        if excerpter is None:
            continue
        excerpt = excerpter.for_diagnostic(diagnostic)
        if excerpt:
            print(excerpt, file=sys.stderr)


def write_result(result: TranslationResult, path: FsPath) -> None:
    os.makedirs(path.parent, exist_ok=True)
    path.write_text(result.text or "", encoding="utf-8")
    logger.info("Wrote %s", path)


def _dump(args: argparse.Namespace, config: TranspileConfig) -> int:
    status = EXIT_OK
    for source in args.sources:
        try:
            unit = load_unit(source, args.ast_json, config)
        except (FrontendError, OSError, ValueError) as exc:
            print(f"{source}: error: {exc}", file=sys.stderr)
            status = EXIT_FAILED
            continue
        print(f"// {source}")
        print(dump_layouts(unit, config), end="")
    return status


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = config_from_args(args)

    if args.dump_layouts:
        return _dump(args, config)
    if args.output is None:
        parser.print_usage(sys.stderr)
        print("fragile-transpile: error: -o OUT is required", file=sys.stderr)
        return EXIT_USAGE

    excerpter = SourceExcerpter() if args.show_source and not args.ast_json else None
    many = len(args.sources) > 1
    failed = 0
    for result in transpile_files(args.sources, config, ast_json=args.ast_json):
        report(result, excerpter)
        if not result.ok:
            failed += 1
            continue
        write_result(result, output_path(args.output, result.file, many))

    if failed:
        logger.error("%d of %d unit(s) failed", failed, len(args.sources))
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
