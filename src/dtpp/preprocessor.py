import asyncio
import logging
import re
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TextIO

from dtpp.conditional import ConditionalStack, DirectiveError
from dtpp.defines import Define, DefineTable, parse_define
from dtpp.diag import (
    LEX_UNTERMINATED,
    PP_INCLUDE_CYCLE,
    PP_MACRO_REDEFINED,
    PP_UNKNOWN_DIRECTIVE,
    PP_UNTERMINATED_CONDITIONAL,
    PP_USER_ERROR,
    Diagnostic,
    DiagnosticsSet,
    PreprocessorError,
    Severity,
)
from dtpp.expander import MacroExpander
from dtpp.expression import ExpressionError, evaluate_expression
from dtpp.lexer import (
    Lexer,
    TokenKind,
    ends_with_continuation,
    join_continuation,
    mask_comments,
    split_lines,
    strip_whitespace,
    tokenize,
)
from dtpp.linemap import Line
from dtpp.options import PreprocessOptions, build_define_table, normalize_options
from dtpp.resolver import FileSystemResolver, IncludeResolver, read_source

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"[A-Za-z_]\w*")
_INCLUDE_RE = re.compile(r"^(?:\"(?P<quote>[^\"\n]+)\"|<(?P<angle>[^>\n]+)>)$")
_DIRECTIVE_RE = re.compile(r"^\s*#\s*(?P<name>[A-Za-z_]\w*)?(?P<body>.*)$", re.DOTALL)
# Devicetree properties such as "#address-cells = <1>;" are not directives.
_PROPERTY_RE = re.compile(r"^\s*#[A-Za-z_][\w,.+?#-]*\s*[=;]")
_CONDITIONAL_DIRECTIVES = frozenset({"if", "ifdef", "ifndef", "elif", "else", "endif"})

MAX_INCLUDE_DEPTH = 200


@dataclass(frozen=True)
class IncludeStatement:
    filename: str
    line: int
    column: int
    target: str
    resolved: str


@dataclass(frozen=True)
class PreprocessResult:
    lines: tuple[Line, ...]
    defines: DefineTable
    includes: tuple[str, ...]
    include_statements: tuple[IncludeStatement, ...]
    diagnostics: DiagnosticsSet

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)


@dataclass(frozen=True)
class _Chunk:
    text: str
    filename: str
    number: int


@dataclass(frozen=True)
class _EndOfFile:
    filename: str
    number: int


@dataclass
class _FileContext:
    filename: str
    conditionals: ConditionalStack = field(default_factory=ConditionalStack)
    in_comment: bool = False
    comment_line: int | None = None


async def preprocess(
    text: str,
    filename: str = "<input>",
    *,
    defines: DefineTable | Iterable[Define] | None = None,
    resolver: IncludeResolver | None = None,
    diagnostics: DiagnosticsSet | None = None,
) -> PreprocessResult:
    """Preprocess ``text`` and return its output lines.

    ``defines`` seeds the macro table; a ``DefineTable`` is copied so the
    caller's table is never modified.  Diagnostics are appended to
    ``diagnostics``, which is also returned on the result.
    """
    if isinstance(defines, DefineTable):
        table = defines.copy()
    else:
        table = DefineTable(defines or ())
    processor = _Preprocessor(
        table,
        FileSystemResolver() if resolver is None else resolver,
        DiagnosticsSet() if diagnostics is None else diagnostics,
    )
    started = time.perf_counter()
    result = await processor.run(text, filename)
    logger.debug(
        "preprocessed %s: %d lines, %d includes, %d diagnostics in %.2f ms",
        filename,
        len(result.lines),
        len(result.includes),
        len(result.diagnostics),
        (time.perf_counter() - started) * 1000,
    )
    return result


def preprocess_sync(
    text: str,
    filename: str = "<input>",
    *,
    defines: DefineTable | Iterable[Define] | None = None,
    resolver: IncludeResolver | None = None,
    diagnostics: DiagnosticsSet | None = None,
) -> PreprocessResult:
    return asyncio.run(
        preprocess(text, filename, defines=defines, resolver=resolver, diagnostics=diagnostics)
    )


async def preprocess_path(
    path: str,
    options: PreprocessOptions | None = None,
    *,
    diagnostics: DiagnosticsSet | None = None,
    stdin: TextIO | None = None,
) -> PreprocessResult:
    options = normalize_options(options)
    filename, text = await asyncio.to_thread(read_source, path, stdin=stdin)
    return await preprocess(
        text,
        filename,
        defines=build_define_table(options),
        resolver=FileSystemResolver(options.include_dirs),
        diagnostics=diagnostics,
    )


class _Preprocessor:
    def __init__(
        self, defines: DefineTable, resolver: IncludeResolver, diagnostics: DiagnosticsSet
    ) -> None:
        self.defines = defines
        self.resolver = resolver
        self.diagnostics = diagnostics
        self.expander = MacroExpander(defines)
        self.lines: list[Line] = []
        self.includes: list[str] = []
        self.include_statements: list[IncludeStatement] = []
        self._pragma_once_files: set[str] = set()
        self._contexts: list[_FileContext] = []
        self._pending: deque[_Chunk | _EndOfFile] = deque()

    async def run(self, text: str, filename: str) -> PreprocessResult:
        self._open(filename, text)
        while self._pending:
            chunk = self._pending.popleft()
            if isinstance(chunk, _EndOfFile):
                self._close(chunk)
                continue
            await self._process_chunk(chunk)
        return PreprocessResult(
            tuple(self.lines),
            self.defines,
            tuple(self.includes),
            tuple(self.include_statements),
            self.diagnostics,
        )

    def _open(self, filename: str, text: str) -> None:
        logger.debug("processing %s", filename)
        self._contexts.append(_FileContext(filename))
        lines = split_lines(text)
        chunks: list[_Chunk | _EndOfFile] = [
            _Chunk(line, filename, number) for number, line in enumerate(lines, start=1)
        ]
        chunks.append(_EndOfFile(filename, len(lines)))
        self._pending.extendleft(reversed(chunks))

    def _close(self, end: _EndOfFile) -> None:
        context = self._contexts.pop()
        for frame in context.conditionals.unterminated():
            self._report(
                end.filename,
                "Unterminated conditional block",
                frame.line,
                1,
                PP_UNTERMINATED_CONDITIONAL,
            )
        if context.in_comment:
            self._report(
                end.filename,
                "Unterminated block comment",
                context.comment_line,
                1,
                LEX_UNTERMINATED,
                stage="lex",
            )
        logger.debug("finished %s", end.filename)

    async def _process_chunk(self, chunk: _Chunk) -> None:
        context = self._contexts[-1]
        raw_lines = [chunk.text]
        masked_lines = [self._mask(chunk, context)]
        while (
            ends_with_continuation(masked_lines[-1])
            and self._pending
            and isinstance(self._pending[0], _Chunk)
        ):
            following = self._pending.popleft()
            raw_lines.append(following.text)
            masked_lines.append(self._mask(following, context))
        masked = join_continuation(masked_lines)
        if _parse_directive(masked_lines[0]) is None:
            if context.conditionals.active and masked.strip():
                if len(raw_lines) > 1:
                    chunk = _Chunk(_splice(raw_lines, masked_lines), chunk.filename, chunk.number)
                self._emit(chunk, masked)
            return
        directive = _parse_directive(masked)
        assert directive is not None
        name, body = directive
        await self._directive(name, body, chunk, context)

    def _mask(self, chunk: _Chunk, context: _FileContext) -> str:
        was_in_comment = context.in_comment
        masked, context.in_comment = mask_comments(chunk.text, context.in_comment)
        if context.in_comment and not was_in_comment:
            context.comment_line = chunk.number
        return masked

    def _emit(self, chunk: _Chunk, masked: str) -> None:
        self._locate(chunk)
        lexer = Lexer(masked)
        tokens = lexer.tokenize()
        for error in lexer.errors:
            self._report_error(error, chunk, stage="lex", in_line=True)
        _, macros = self.expander.expand_line(masked, raw=chunk.text, tokens=tokens)
        self._drain_expander(chunk, in_line=True)
        self.lines.append(Line.build(chunk.text, chunk.number, chunk.filename, macros, base=masked))

    async def _directive(self, name: str, body: str, chunk: _Chunk, context: _FileContext) -> None:
        if name in _CONDITIONAL_DIRECTIVES:
            try:
                self._conditional(name, body, chunk, context.conditionals)
            except PreprocessorError as error:
                self._report_error(error, chunk)
            return
        if not context.conditionals.active:
            return
        try:
            if name == "define":
                self._define(body, chunk)
            elif name == "undef":
                self.defines.undef(_require_macro_name(body, name))
            elif name == "include":
                await self._include(body, chunk)
            elif name == "pragma":
                self._pragma(body, chunk)
            elif name == "error":
                raise PreprocessorError(body.strip() or "#error", code=PP_USER_ERROR)
            elif name == "warning":
                raise PreprocessorError(
                    body.strip() or "#warning", code=PP_USER_ERROR, severity=Severity.WARNING
                )
            elif not name:
                if body.strip():
                    raise DirectiveError("Invalid preprocessing directive")
            else:
                raise DirectiveError(
                    f"Unknown preprocessor directive: #{name}", code=PP_UNKNOWN_DIRECTIVE
                )
        except PreprocessorError as error:
            self._report_error(error, chunk)

    def _conditional(
        self, name: str, body: str, chunk: _Chunk, stack: ConditionalStack
    ) -> None:
        if name in {"ifdef", "ifndef"}:
            try:
                macro_name = _require_macro_name(body, name)
            except DirectiveError:
                stack.push_if(False, line=chunk.number)
                raise
            if name == "ifdef":
                stack.push_ifdef(macro_name in self.defines, line=chunk.number)
            else:
                stack.push_ifndef(macro_name in self.defines, line=chunk.number)
        elif name == "if":
            condition = stack.active and self._condition(body, chunk)
            stack.push_if(condition, line=chunk.number)
        elif name == "elif":
            stack.elif_(lambda: self._condition(body, chunk))
        elif name == "else":
            stack.else_()
        else:
            stack.endif()

    def _condition(self, body: str, chunk: _Chunk) -> bool:
        if not body.strip():
            self._report_error(DirectiveError("Conditional directive without an expression"), chunk)
            return False
        self._locate(chunk)
        try:
            value = evaluate_expression(body, self.defines, expander=self.expander)
        except ExpressionError as error:
            self._report_error(error, chunk)
            return False
        finally:
            self._drain_expander(chunk)
        return bool(value)

    def _define(self, body: str, chunk: _Chunk) -> None:
        macro = parse_define(body, filename=chunk.filename, line=chunk.number)
        previous = self.defines.define(macro)
        if previous is None:
            return
        message = f"Macro {macro.name} redefined"
        if previous.filename is not None and previous.line is not None:
            message += f" (previous definition at {previous.filename}:{previous.line})"
        raise PreprocessorError(message, code=PP_MACRO_REDEFINED, severity=Severity.WARNING)

    def _pragma(self, body: str, chunk: _Chunk) -> None:
        pragma = body.strip()
        if pragma == "once":
            self._pragma_once_files.add(chunk.filename)
            return
        raise PreprocessorError(
            f"Unsupported #pragma {pragma}".rstrip(),
            code=PP_UNKNOWN_DIRECTIVE,
            severity=Severity.WARNING,
        )

    async def _include(self, body: str, chunk: _Chunk) -> None:
        target, angled = self._include_target(body, chunk)
        include = await self.resolver(target, angled=angled, includer=chunk.filename)
        if include.filename in self._pragma_once_files:
            logger.debug("skipping %s: #pragma once", include.filename)
            return
        if any(context.filename == include.filename for context in self._contexts):
            raise PreprocessorError(
                f"Circular include detected: {include.filename}", code=PP_INCLUDE_CYCLE
            )
        if len(self._contexts) >= MAX_INCLUDE_DEPTH:
            raise PreprocessorError("#include nested too deeply", code=PP_INCLUDE_CYCLE)
        column = len(chunk.text) - len(chunk.text.lstrip()) + 1
        self.includes.append(include.filename)
        self.include_statements.append(
            IncludeStatement(chunk.filename, chunk.number, column, target, include.filename)
        )
        self._open(include.filename, include.text)

    def _include_target(self, body: str, chunk: _Chunk) -> tuple[str, bool]:
        operand = body.strip()
        direct = _INCLUDE_RE.match(operand)
        if direct is not None:
            quoted_name = direct.group("quote")
            angle_name = direct.group("angle")
            include_name = quoted_name if quoted_name is not None else angle_name
            assert include_name is not None
            return include_name, angle_name is not None
        self._locate(chunk)
        tokens = strip_whitespace(self.expander.expand_tokens(tokenize(operand)))
        self._drain_expander(chunk)
        if (
            len(tokens) == 1
            and tokens[0].kind is TokenKind.STRING_LITERAL
            and tokens[0].text.startswith('"')
        ):
            return tokens[0].text[1:-1], False
        if (
            len(tokens) >= 3
            and tokens[0].kind is TokenKind.PUNCTUATOR
            and tokens[-1].kind is TokenKind.PUNCTUATOR
            and tokens[0].text == "<"
            and tokens[-1].text == ">"
        ):
            return "".join(token.text for token in tokens[1:-1]), True
        raise DirectiveError('#include expects "FILENAME" or <FILENAME>')

    def _locate(self, chunk: _Chunk) -> None:
        self.expander.filename = chunk.filename
        self.expander.line = chunk.number

    def _drain_expander(self, chunk: _Chunk, *, in_line: bool = False) -> None:
        for error in self.expander.errors:
            self._report_error(error, chunk, in_line=in_line)
        self.expander.errors.clear()

    def _report_error(
        self, error: PreprocessorError, chunk: _Chunk, *, stage: str = "pp", in_line: bool = False
    ) -> None:
        column = error.offset + 1 if in_line and error.offset is not None else 1
        self._report(
            chunk.filename, error.message, chunk.number, column, error.code, error.severity, stage
        )

    def _report(
        self,
        filename: str,
        message: str,
        line: int | None,
        column: int | None,
        code: str,
        severity: Severity = Severity.ERROR,
        stage: str = "pp",
    ) -> None:
        self.diagnostics.push(
            Diagnostic(stage, filename, message, line, column, code, severity)
        )


def _parse_directive(line: str) -> tuple[str, str] | None:
    if not line.lstrip().startswith("#") or _PROPERTY_RE.match(line) is not None:
        return None
    match = _DIRECTIVE_RE.match(line)
    if match is None:
        return None
    return match.group("name") or "", match.group("body")


def _splice(raw_lines: list[str], masked_lines: list[str]) -> str:
    # Cut at the backslash found in the masked text.
    parts = [
        raw[: masked.rstrip().rfind("\\")] for raw, masked in zip(raw_lines[:-1], masked_lines[:-1])
    ]
    parts.append(raw_lines[-1])
    return "".join(parts)


def _require_macro_name(body: str, directive: str) -> str:
    operand = body.strip()
    if not operand:
        raise DirectiveError(f"Macro name missing in #{directive}")
    match = _IDENT_RE.match(operand)
    if match is None:
        raise DirectiveError(f"Macro names must be identifiers in #{directive}")
    return match.group(0)
