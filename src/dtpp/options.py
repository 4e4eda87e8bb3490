from dataclasses import dataclass
from typing import Literal

from dtpp.defines import DefineError, DefineTable, builtin_defines, parse_cli_define

DiagFormat = Literal["human", "json"]


@dataclass(frozen=True)
class PreprocessOptions:
    include_dirs: tuple[str, ...] = ()
    defines: tuple[str, ...] = ()
    undefs: tuple[str, ...] = ()
    builtins: bool = True
    diag_format: DiagFormat = "human"

    def __post_init__(self) -> None:
        if self.diag_format not in {"human", "json"}:
            raise ValueError(f"Unsupported diagnostic format: {self.diag_format}")
        for define in self.defines:
            try:
                parse_cli_define(define)
            except DefineError as error:
                raise ValueError(f"Invalid macro definition: {define}") from error
        for name in self.undefs:
            if not name.isidentifier():
                raise ValueError(f"Invalid macro name: {name}")


def normalize_options(options: PreprocessOptions | None) -> PreprocessOptions:
    return PreprocessOptions() if options is None else options


def build_define_table(options: PreprocessOptions | None = None) -> DefineTable:
    """Seed a table from ``-D``/``-U`` style options, applied in that order."""
    options = normalize_options(options)
    table = DefineTable(builtin_defines() if options.builtins else ())
    for define in options.defines:
        table.define(parse_cli_define(define))
    for name in options.undefs:
        table.undef(name)
    return table
