import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import cast

from dtpp.diag import LEX_UNTERMINATED, PreprocessorError

PUNCTUATORS: tuple[str, ...] = (
    "...",
    ">>=",
    "<<=",
    "->",
    "++",
    "--",
    "&&",
    "||",
    "<=",
    ">=",
    "==",
    "!=",
    "+=",
    "-=",
    "*=",
    "/=",
    "%=",
    "&=",
    "|=",
    "^=",
    "<<",
    ">>",
    "##",
    "[",
    "]",
    "(",
    ")",
    "{",
    "}",
    ".",
    "&",
    "*",
    "+",
    "-",
    "~",
    "!",
    "/",
    "%",
    "<",
    ">",
    "^",
    "|",
    "?",
    ":",
    ";",
    "=",
    ",",
    "#",
)

PUNCTUATORS_SORTED: tuple[str, ...] = cast(
    tuple[str, ...], tuple(sorted(PUNCTUATORS, key=len, reverse=True))
)

_WHITESPACE = " \t\v\f\r\n"
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


class TokenKind(Enum):
    IDENT = auto()
    NUMBER = auto()
    CHAR_CONST = auto()
    STRING_LITERAL = auto()
    PUNCTUATOR = auto()
    WHITESPACE = auto()


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    offset: int = 0

    @property
    def end(self) -> int:
        return self.offset + len(self.text)


class LexerError(PreprocessorError):
    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message, offset, code=LEX_UNTERMINATED)


def split_lines(source: str) -> list[str]:
    if not source:
        return []
    lines = _LINE_SPLIT_RE.split(source)
    if lines[-1] == "":
        lines.pop()
    return lines


def join_continuation(lines: list[str]) -> str:
    parts: list[str] = []
    for line in lines[:-1]:
        parts.append(line[: line.rstrip().rfind("\\")])
    parts.append(lines[-1] if lines else "")
    return "".join(parts)


def ends_with_continuation(line: str) -> bool:
    return line.rstrip().endswith("\\")


def tokenize(text: str) -> list[Token]:
    return Lexer(text).tokenize()


def mask_comments(text: str, in_comment: bool = False) -> tuple[str, bool]:
    out = list(text)
    index = 0
    length = len(text)
    while index < length:
        if in_comment:
            end = text.find("*/", index)
            stop = length if end < 0 else end + 2
            for blank in range(index, stop):
                out[blank] = " "
            index = stop
            in_comment = end < 0
            continue
        ch = text[index]
        if ch in {'"', "'"}:
            index = _skip_quoted(text, index)
            continue
        if ch == "/" and text.startswith("//", index):
            for blank in range(index, length):
                out[blank] = " "
            break
        if ch == "/" and text.startswith("/*", index):
            out[index] = out[index + 1] = " "
            index += 2
            in_comment = True
            continue
        index += 1
    return "".join(out), in_comment


def _skip_quoted(text: str, start: int) -> int:
    quote = text[start]
    index = start + 1
    while index < len(text):
        ch = text[index]
        if ch == "\\":
            index += 2
            continue
        if ch == quote:
            return index + 1
        index += 1
    return len(text)


class Lexer:
    def __init__(self, source: str, *, strict: bool = False) -> None:
        self._source = source
        self._length = len(source)
        self._index = 0
        self._strict = strict
        self.errors: list[LexerError] = []

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        while not self._eof():
            start = self._index
            whitespace = self._read_whitespace_and_comments()
            if whitespace:
                tokens.append(Token(TokenKind.WHITESPACE, whitespace, start))
                continue
            literal = self._maybe_read_literal()
            if literal is not None:
                kind, lexeme = literal
                tokens.append(Token(kind, lexeme, start))
                continue
            if self._is_number_start():
                tokens.append(Token(TokenKind.NUMBER, self._read_pp_number(), start))
                continue
            if self._is_identifier_start():
                tokens.append(Token(TokenKind.IDENT, self._read_identifier(), start))
                continue
            tokens.append(Token(TokenKind.PUNCTUATOR, self._read_punctuator(), start))
        return tokens

    def _peek(self, offset: int = 0) -> str:
        index = self._index + offset
        if index >= self._length:
            return ""
        return self._source[index]

    def _advance(self) -> str:
        if self._index >= self._length:
            return ""
        ch = self._source[self._index]
        self._index += 1
        return ch

    def _eof(self) -> bool:
        return self._index >= self._length

    def _read_whitespace_and_comments(self) -> str:
        # Each comment collapses to a single space; plain whitespace is kept verbatim.
        chunks: list[str] = []
        while not self._eof():
            ch = self._peek()
            if ch in _WHITESPACE:
                chunks.append(self._advance())
                continue
            if ch == "/" and self._peek(1) == "/":
                end = self._source.find("\n", self._index)
                self._index = self._length if end < 0 else end
                chunks.append(" ")
                continue
            if ch == "/" and self._peek(1) == "*":
                start = self._index
                end = self._source.find("*/", start + 2)
                if end < 0:
                    self._index = self._length
                    self._error("Unterminated block comment", start)
                else:
                    self._index = end + 2
                chunks.append(" ")
                continue
            break
        return "".join(chunks)

    def _is_identifier_start(self) -> bool:
        ch = self._peek()
        return ch == "_" or ch.isalpha()

    def _read_identifier(self) -> str:
        start = self._index
        self._advance()
        while not self._eof():
            ch = self._peek()
            if ch == "_" or ch.isalnum():
                self._advance()
                continue
            break
        return self._source[start : self._index]

    def _maybe_read_literal(self) -> tuple[TokenKind, str] | None:
        start = self._index
        ch = self._peek()
        if ch in {'"', "'"}:
            if ch == '"':
                return TokenKind.STRING_LITERAL, self._read_quoted(start, '"', "string literal")
            return TokenKind.CHAR_CONST, self._read_quoted(start, "'", "character constant")
        if ch == "u" and self._peek(1) == "8" and self._peek(2) == '"':
            self._advance()
            self._advance()
            return TokenKind.STRING_LITERAL, self._read_quoted(start, '"', "string literal")
        if ch in {"u", "U", "L"} and self._peek(1) in {'"', "'"}:
            self._advance()
            if self._peek() == '"':
                return TokenKind.STRING_LITERAL, self._read_quoted(start, '"', "string literal")
            return TokenKind.CHAR_CONST, self._read_quoted(start, "'", "character constant")
        return None

    def _read_quoted(self, start: int, quote: str, what: str) -> str:
        self._advance()
        while not self._eof():
            ch = self._advance()
            if ch == quote:
                return self._source[start : self._index]
            if ch == "\\":
                # Escapes are kept verbatim, only skipped over.
                self._advance()
        self._error(f"Unterminated {what}", start)
        return self._source[start : self._index]

    def _is_number_start(self) -> bool:
        ch = self._peek()
        if ch.isdigit():
            return True
        return ch == "." and self._peek(1).isdigit()

    def _read_pp_number(self) -> str:
        start = self._index
        self._advance()
        while not self._eof():
            ch = self._peek()
            next_ch = self._peek(1)
            if ch in {"e", "E", "p", "P"} and next_ch in {"+", "-"}:
                self._advance()
                self._advance()
                continue
            if ch.isdigit() or ch == "." or ch == "_" or ch.isalpha():
                self._advance()
                continue
            break
        return self._source[start : self._index]

    def _read_punctuator(self) -> str:
        for punct in PUNCTUATORS_SORTED:
            if self._source.startswith(punct, self._index):
                self._index += len(punct)
                return punct
        return self._advance()

    def _error(self, message: str, offset: int) -> None:
        error = LexerError(message, offset)
        if self._strict:
            raise error
        self.errors.append(error)


def lex_single(text: str) -> Token | None:
    try:
        tokens = Lexer(text, strict=True).tokenize()
    except LexerError:
        return None
    if len(tokens) != 1 or tokens[0].kind is TokenKind.WHITESPACE:
        return None
    return tokens[0]


def render_tokens(tokens: list[Token]) -> str:
    return "".join(token.text for token in tokens)


def strip_whitespace(tokens: list[Token]) -> list[Token]:
    start = 0
    end = len(tokens)
    while start < end and tokens[start].kind is TokenKind.WHITESPACE:
        start += 1
    while end > start and tokens[end - 1].kind is TokenKind.WHITESPACE:
        end -= 1
    return tokens[start:end]
