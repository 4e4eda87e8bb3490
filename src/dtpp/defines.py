import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum, auto

from dtpp.diag import PP_INVALID_MACRO, PreprocessorError
from dtpp.lexer import Token, TokenKind, render_tokens, strip_whitespace, tokenize

_IDENT_RE = re.compile(r"[A-Za-z_]\w*")
_VA_ARGS = "__VA_ARGS__"


class MacroKind(Enum):
    OBJECT_LIKE = auto()
    FUNCTION_LIKE = auto()
    BUILTIN = auto()


class DefineError(PreprocessorError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code=PP_INVALID_MACRO)


@dataclass(frozen=True)
class Define:
    name: str
    body: tuple[Token, ...] = ()
    parameters: tuple[str, ...] | None = None
    is_variadic: bool = False
    variadic_name: str = _VA_ARGS
    kind: MacroKind = MacroKind.OBJECT_LIKE
    filename: str | None = field(default=None, compare=False)
    line: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.kind is MacroKind.OBJECT_LIKE and self.parameters is not None:
            object.__setattr__(self, "kind", MacroKind.FUNCTION_LIKE)

    @property
    def is_function_like(self) -> bool:
        return self.kind is MacroKind.FUNCTION_LIKE

    @property
    def value(self) -> str:
        return render_tokens(list(self.body))

    def same_as(self, other: "Define") -> bool:
        return (
            self.kind is other.kind
            and self.parameters == other.parameters
            and self.is_variadic == other.is_variadic
            and self.variadic_name == other.variadic_name
            and _body_signature(self.body) == _body_signature(other.body)
        )

    def signature(self) -> str:
        if self.parameters is None:
            return self.name
        params = list(self.parameters)
        if self.is_variadic and self.variadic_name == _VA_ARGS:
            params.append("...")
        elif self.is_variadic:
            params[-1] = f"{params[-1]}..."
        return f"{self.name}({','.join(params)})"


def _body_signature(body: tuple[Token, ...]) -> tuple[tuple[TokenKind, str], ...]:
    return tuple(
        (token.kind, " " if token.kind is TokenKind.WHITESPACE else token.text) for token in body
    )


class DefineTable:
    """Macro definitions owned by one preprocessing run."""

    def __init__(self, defines: Iterable[Define] = ()) -> None:
        self._defines: dict[str, Define] = {}
        for define in defines:
            self._defines[define.name] = define

    def define(self, macro: Define) -> Define | None:
        """Insert ``macro``; returns the previous definition if it differed."""
        existing = self._defines.get(macro.name)
        self._defines[macro.name] = macro
        if existing is None or existing.same_as(macro):
            return None
        return existing

    def undef(self, name: str) -> Define | None:
        return self._defines.pop(name, None)

    def lookup(self, name: str) -> Define | None:
        return self._defines.get(name)

    def copy(self) -> "DefineTable":
        return DefineTable(self._defines.values())

    def names(self) -> tuple[str, ...]:
        return tuple(self._defines)

    def __contains__(self, name: object) -> bool:
        return name in self._defines

    def __iter__(self) -> Iterator[Define]:
        return iter(list(self._defines.values()))

    def __len__(self) -> int:
        return len(self._defines)

    def __repr__(self) -> str:
        return f"DefineTable({sorted(self._defines)!r})"


def parse_define(
    body: str, *, filename: str | None = None, line: int | None = None
) -> Define:
    """Parse the operand of a ``#define`` directive."""
    define_body = body.lstrip()
    name_match = _IDENT_RE.match(define_body)
    if name_match is None:
        raise DefineError("Invalid define syntax")
    name = name_match.group(0)
    tail = define_body[name_match.end() :]
    if not tail.startswith("("):
        return Define(name, _body_tokens(tail), filename=filename, line=line)
    close_index = tail.find(")")
    if close_index < 0:
        raise DefineError(f"Missing ')' in parameter list of macro {name}")
    parameters, is_variadic, variadic_name = _parse_macro_parameters(tail[1:close_index].strip())
    return Define(
        name,
        _body_tokens(tail[close_index + 1 :]),
        parameters=parameters,
        is_variadic=is_variadic,
        variadic_name=variadic_name,
        filename=filename,
        line=line,
    )


def _parse_macro_parameters(text: str) -> tuple[tuple[str, ...], bool, str]:
    if not text:
        return (), False, _VA_ARGS
    items = [item.strip() for item in text.split(",")]
    params: list[str] = []
    for index, item in enumerate(items):
        is_last = index == len(items) - 1
        if item == "...":
            if not is_last:
                raise DefineError("Variadic parameter must be the last parameter")
            return tuple(params), True, _VA_ARGS
        if item.endswith("...") and is_last:
            named = item[:-3].rstrip()
            if _IDENT_RE.fullmatch(named) is None or named in params:
                raise DefineError(f"Invalid macro parameter: {item}")
            params.append(named)
            return tuple(params), True, named
        if _IDENT_RE.fullmatch(item) is None:
            raise DefineError(f"Invalid macro parameter: {item or '<empty>'}")
        if item in params:
            raise DefineError(f"Duplicate macro parameter: {item}")
        params.append(item)
    return tuple(params), False, _VA_ARGS


def _body_tokens(text: str) -> tuple[Token, ...]:
    return tuple(strip_whitespace(tokenize(text.strip())))


def parse_cli_define(define: str) -> Define:
    """Parse a ``-D`` style ``NAME[=VALUE]`` or ``NAME(params)=VALUE`` definition."""
    if "=" in define:
        head, replacement = define.split("=", 1)
    else:
        head, replacement = define, "1"
    if _IDENT_RE.fullmatch(head.split("(", 1)[0]) is None:
        raise DefineError(f"Invalid macro definition: {define}")
    return parse_define(f"{head} {replacement}")


def builtin_defines() -> tuple[Define, ...]:
    return tuple(
        Define(name, kind=MacroKind.BUILTIN) for name in ("__FILE__", "__LINE__", "__COUNTER__")
    )


def macro_table_lines(table: DefineTable) -> list[str]:
    lines: list[str] = []
    for define in sorted(table, key=lambda item: item.name):
        if define.kind is MacroKind.BUILTIN:
            continue
        lines.append(f"{define.signature()}={define.value}")
    return lines
