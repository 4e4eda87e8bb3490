import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import TextIO, cast

from dtpp.defines import Define, DefineTable, macro_table_lines
from dtpp.diag import Diagnostic, DiagnosticsSet, PreprocessorError, Severity
from dtpp.expression import evaluate, evaluate_expression
from dtpp.linemap import Line, MacroInstance
from dtpp.options import PreprocessOptions
from dtpp.preprocessor import PreprocessResult, preprocess, preprocess_path, preprocess_sync
from dtpp.resolver import FileSystemResolver, IncludeFile, MappingResolver

__all__ = [
    "Define",
    "DefineTable",
    "Diagnostic",
    "DiagnosticsSet",
    "FileSystemResolver",
    "IncludeFile",
    "Line",
    "MacroInstance",
    "MappingResolver",
    "PreprocessOptions",
    "PreprocessResult",
    "PreprocessorError",
    "Severity",
    "evaluate",
    "evaluate_expression",
    "main",
    "preprocess",
    "preprocess_path",
    "preprocess_sync",
]


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dtpp", description="Preprocess devicetree sources and C headers."
    )
    parser.add_argument("input", help="path to a source file, or - to read from stdin")
    parser.add_argument("-I", dest="include_dirs", action="append", default=[], help="include path")
    parser.add_argument("-D", dest="defines", action="append", default=[], help="define macro")
    parser.add_argument("-U", dest="undefs", action="append", default=[], help="undefine macro")
    parser.add_argument(
        "--no-builtins",
        dest="builtins",
        action="store_false",
        help="do not predefine __FILE__, __LINE__ and __COUNTER__",
    )
    parser.add_argument(
        "--diag-format",
        choices=("human", "json"),
        default="human",
        help="diagnostic output format",
    )
    parser.add_argument(
        "--dump-lines",
        action="store_true",
        help="print each output line with its source location and substitutions",
    )
    parser.add_argument(
        "--dump-macro-table",
        action="store_true",
        help="print final macro table",
    )
    parser.add_argument(
        "--dump-includes",
        action="store_true",
        help="print resolved includes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def _print_diagnostic(diagnostic: Diagnostic, diag_format: str) -> None:
    if diag_format == "json":
        print(json.dumps(diagnostic.to_json(), separators=(",", ":")), file=sys.stderr)
    else:
        print(f"{diagnostic} [{diagnostic.severity.value}]", file=sys.stderr)


def _format_line(line: Line) -> str:
    macros = ", ".join(f"{macro.define.name}@{macro.start}" for macro in line.macros)
    suffix = f" [{macros}]" if macros else ""
    return f"{line.filename}:{line.number}: {line.text}{suffix}"


def main(argv: Sequence[str] | None = None, *, stdin: TextIO | None = None) -> int:
    parser = _build_arg_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])
    except SystemExit as error:
        return cast(int, error.code)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    try:
        options = PreprocessOptions(
            include_dirs=tuple(args.include_dirs),
            defines=tuple(args.defines),
            undefs=tuple(args.undefs),
            builtins=args.builtins,
            diag_format=args.diag_format,
        )
    except ValueError as error:
        print(f"dtpp: error: {error}", file=sys.stderr)
        return 2
    diagnostics = DiagnosticsSet()
    try:
        result = asyncio.run(
            preprocess_path(args.input, options, diagnostics=diagnostics, stdin=stdin)
        )
    except (OSError, UnicodeError) as error:
        print(f"dtpp: I/O error: {error}", file=sys.stderr)
        return 1
    for diagnostic in diagnostics:
        _print_diagnostic(diagnostic, args.diag_format)
    if args.dump_lines:
        for line in result.lines:
            print(_format_line(line))
    if args.dump_includes:
        for statement in result.include_statements:
            print(
                f"{statement.filename}:{statement.line}: "
                f"#include {statement.target} -> {statement.resolved}"
            )
    if args.dump_macro_table:
        for line in macro_table_lines(result.defines):
            print(line)
    if not (args.dump_lines or args.dump_includes or args.dump_macro_table):
        for line in result.lines:
            print(line.text)
    return 1 if diagnostics.errors else 0
