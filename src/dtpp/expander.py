from bisect import bisect_right
from collections import deque
from dataclasses import dataclass

from dtpp.defines import Define, DefineTable, MacroKind
from dtpp.diag import PP_EXPANSION_LIMIT, PP_INVALID_MACRO, PP_INVALID_PASTE, PreprocessorError
from dtpp.lexer import Token, TokenKind, lex_single, tokenize
from dtpp.linemap import MacroInstance, replace

MAX_EXPANSION_DEPTH = 64
MAX_EXPANSIONS = 4096

_VA_ARGS = "__VA_ARGS__"


class MacroError(PreprocessorError):
    def __init__(self, message: str, offset: int | None, *, code: str = PP_INVALID_MACRO) -> None:
        super().__init__(message, offset, code=code)


@dataclass(frozen=True)
class _Item:
    token: Token
    hideset: frozenset[str] = frozenset()
    span: tuple[int, int] | None = None
    produced: bool = False

    @property
    def text(self) -> str:
        return self.token.text


@dataclass
class _Call:
    consumed: list[_Item]
    args: list[list[_Item]]
    commas: list[_Item]
    closed: bool


_PLACEMARKER = Token(TokenKind.WHITESPACE, "")
_PASTE = _Item(Token(TokenKind.PUNCTUATOR, "##"))
_SPACE = Token(TokenKind.WHITESPACE, " ")


class MacroExpander:
    def __init__(self, defines: DefineTable, *, filename: str = "<input>") -> None:
        self.defines = defines
        self.filename = filename
        self.line = 1
        self.counter = 0
        self.errors: list[MacroError] = []
        self._raw: list[Token] = []
        self._budget = MAX_EXPANSIONS

    def expand_line(
        self, text: str, *, raw: str | None = None, tokens: list[Token] | None = None
    ) -> tuple[str, list[MacroInstance]]:
        """Expand ``text``; returns the expanded text and its top-level substitutions.

        ``raw`` is the text the substitutions should quote, and must be aligned
        with ``text`` (the same line before comments were blanked out).
        """
        if tokens is None:
            tokens = tokenize(text)
        raw_text = text if raw is None else raw
        if not any(self._candidate(_Item(token)) is not None for token in tokens):
            return text, []
        self._begin(tokens)
        events: list[tuple[int, int, int, Define]] = []
        out = self._expand(self._raw_items(), 0, events)
        instances = self._instances(raw_text, out, events)
        return replace(text, instances), instances

    def expand_tokens(self, tokens: list[Token]) -> list[Token]:
        self._begin(tokens)
        return [item.token for item in self._expand(self._raw_items(), 0, None)]

    def _begin(self, tokens: list[Token]) -> None:
        self._raw = list(tokens)
        self._budget = MAX_EXPANSIONS

    def _raw_items(self) -> list[_Item]:
        return [_Item(token, span=(index, index)) for index, token in enumerate(self._raw)]

    def _candidate(self, item: _Item) -> Define | None:
        token = item.token
        if token.kind is not TokenKind.IDENT or token.text in item.hideset:
            return None
        return self.defines.lookup(token.text)

    def _expand(
        self,
        items: list[_Item],
        depth: int,
        events: list[tuple[int, int, int, Define]] | None,
    ) -> list[_Item]:
        if depth > MAX_EXPANSION_DEPTH:
            self._report(
                "Macro arguments nested too deeply",
                items[0].span if items else None,
                PP_EXPANSION_LIMIT,
            )
            return items
        pending = deque(items)
        out: list[_Item] = []
        while pending:
            item = pending.popleft()
            define = self._candidate(item)
            if define is None:
                out.append(item)
                continue
            if self._budget <= 0:
                if self._budget == 0:
                    self._report("Macro expansion limit exceeded", item.span, PP_EXPANSION_LIMIT)
                    self._budget -= 1
                out.append(item)
                continue
            consumed = [item]
            hideset = item.hideset | {define.name}
            if define.kind is MacroKind.BUILTIN:
                replacement = [_Item(self._builtin(define, item.token))]
            elif define.kind is MacroKind.OBJECT_LIKE:
                replacement = self._substitute(define, None, item.span, depth)
            else:
                call = self._collect_arguments(pending)
                if call is None:
                    out.append(item)
                    continue
                if not call.closed:
                    self._report(
                        f"Unterminated argument list invoking macro {define.name}", item.span
                    )
                    out.append(item)
                    continue
                for _ in call.consumed:
                    pending.popleft()
                bound = self._bind_arguments(define, call, item)
                if bound is None:
                    out.append(item)
                    out.extend(call.consumed)
                    continue
                consumed.extend(call.consumed)
                hideset = (item.hideset & call.consumed[-1].hideset) | {define.name}
                replacement = self._substitute(define, bound, _union_spans(consumed), depth)
            self._budget -= 1
            span = _union_spans(consumed)
            if events is not None and span is not None:
                events.append((span[0], len(events), span[1], define))
            pending.extendleft(
                reversed(
                    [_Item(entry.token, entry.hideset | hideset, span, True) for entry in replacement]
                )
            )
        return out

    def _collect_arguments(self, pending: deque[_Item]) -> _Call | None:
        consumed: list[_Item] = []
        args: list[list[_Item]] = []
        commas: list[_Item] = []
        current: list[_Item] = []
        depth = 0
        for item in pending:
            consumed.append(item)
            if depth == 0:
                if item.token.kind is TokenKind.WHITESPACE:
                    continue
                if not _is_punct(item.token, "("):
                    return None
                depth = 1
                continue
            if _is_punct(item.token, "("):
                depth += 1
            elif _is_punct(item.token, ")"):
                depth -= 1
                if depth == 0:
                    args.append(current)
                    return _Call(consumed, args, commas, True)
            elif _is_punct(item.token, ",") and depth == 1:
                args.append(current)
                commas.append(item)
                current = []
                continue
            current.append(item)
        if depth == 0:
            return None
        return _Call(consumed, args, commas, False)

    def _bind_arguments(
        self, define: Define, call: _Call, name: _Item
    ) -> dict[str, list[_Item]] | None:
        params = define.parameters or ()
        named_variadic = define.is_variadic and define.variadic_name != _VA_ARGS
        fixed = params[:-1] if named_variadic else params
        args = call.args
        if not fixed and len(args) == 1 and not _trim(args[0]):
            args = []
        if len(args) < len(fixed) or (not define.is_variadic and len(args) > len(fixed)):
            self._report(
                f"Macro {define.name} requires {len(fixed)} argument"
                f"{'' if len(fixed) == 1 else 's'}, but {len(args)} given",
                name.span,
            )
            return None
        bound = {param: _trim(args[index]) for index, param in enumerate(fixed)}
        if define.is_variadic:
            rest: list[_Item] = []
            for index in range(len(fixed), len(args)):
                if index > len(fixed):
                    rest.append(call.commas[index - 1])
                rest.extend(args[index])
            bound[_VA_ARGS] = _trim(rest)
            bound[define.variadic_name] = bound[_VA_ARGS]
        return bound

    def _substitute(
        self,
        define: Define,
        bound: dict[str, list[_Item]] | None,
        span: tuple[int, int] | None,
        depth: int,
    ) -> list[_Item]:
        body = define.body
        expanded_args: dict[str, list[_Item]] = {}
        result: list[_Item] = []
        index = 0
        while index < len(body):
            token = body[index]
            prev_index = _significant(body, index, -1)
            next_index = _significant(body, index, 1)
            prev_token = body[prev_index] if prev_index is not None else None
            next_token = body[next_index] if next_index is not None else None
            if token.kind is TokenKind.WHITESPACE:
                if not (_is_punct(prev_token, "##") or _is_punct(next_token, "##")):
                    result.append(_Item(token))
                index += 1
                continue
            if _is_punct(token, "##"):
                result.append(_PASTE)
                index += 1
                continue
            if bound is not None:
                if (
                    _is_punct(token, "#")
                    and next_token is not None
                    and next_index is not None
                    and next_token.kind is TokenKind.IDENT
                    and next_token.text in bound
                ):
                    literal = Token(TokenKind.STRING_LITERAL, _stringize(bound[next_token.text]))
                    result.append(_Item(literal))
                    index = next_index + 1
                    continue
                va_index = _significant(body, next_index, 1) if next_index is not None else None
                if (
                    _is_punct(token, ",")
                    and _is_punct(next_token, "##")
                    and va_index is not None
                    and body[va_index].text in {define.variadic_name, _VA_ARGS}
                    and body[va_index].text in bound
                ):
                    # GNU extension: ", ## __VA_ARGS__" drops the comma when nothing is passed.
                    rest = bound[body[va_index].text]
                    if rest:
                        result.extend([_Item(token), _Item(_SPACE), *rest])
                    index = va_index + 1
                    continue
                if token.kind is TokenKind.IDENT and token.text in bound:
                    if _is_punct(prev_token, "##") or _is_punct(next_token, "##"):
                        result.extend(bound[token.text] or [_Item(_PLACEMARKER)])
                    else:
                        if token.text not in expanded_args:
                            expanded_args[token.text] = self._expand(
                                list(bound[token.text]), depth + 1, None
                            )
                        result.extend(expanded_args[token.text])
                    index += 1
                    continue
            result.append(_Item(token))
            index += 1
        return self._paste_all(result, span)

    def _paste_all(self, entries: list[_Item], span: tuple[int, int] | None) -> list[_Item]:
        out: list[_Item] = []
        paste = False
        for entry in entries:
            if entry is _PASTE:
                if not out or paste:
                    self._report("'##' cannot appear at either end of a macro expansion", span)
                    continue
                paste = True
                continue
            if paste:
                paste = False
                out.extend(self._paste_pair(out.pop(), entry, span))
                continue
            out.append(entry)
        if paste:
            self._report("'##' cannot appear at either end of a macro expansion", span)
        return [item for item in out if item.text]

    def _paste_pair(
        self, left: _Item, right: _Item, span: tuple[int, int] | None
    ) -> list[_Item]:
        if not left.text:
            return [right]
        if not right.text:
            return [left]
        pasted = lex_single(left.text + right.text)
        if pasted is None:
            self._report(
                f'Pasting "{left.text}" and "{right.text}" does not give a valid '
                "preprocessing token",
                span,
                PP_INVALID_PASTE,
            )
            return [left, right]
        return [_Item(pasted, left.hideset & right.hideset)]

    def _builtin(self, define: Define, token: Token) -> Token:
        if define.name == "__LINE__":
            return Token(TokenKind.NUMBER, str(self.line), token.offset)
        if define.name == "__COUNTER__":
            value = self.counter
            self.counter += 1
            return Token(TokenKind.NUMBER, str(value), token.offset)
        if define.name == "__FILE__":
            return Token(TokenKind.STRING_LITERAL, _quote_string_literal(self.filename), token.offset)
        return token

    def _instances(
        self,
        raw: str,
        out: list[_Item],
        events: list[tuple[int, int, int, Define]],
    ) -> list[MacroInstance]:
        groups: list[list] = []
        for lo, _, hi, define in sorted(events):
            if groups and lo <= groups[-1][1]:
                groups[-1][1] = max(groups[-1][1], hi)
            else:
                groups.append([lo, hi, define, []])
        starts = [group[0] for group in groups]
        for item in out:
            if not item.produced or item.span is None:
                continue
            group = groups[bisect_right(starts, item.span[0]) - 1]
            group[3].append(item.text)
        instances: list[MacroInstance] = []
        for lo, hi, define, inserts in groups:
            start = self._raw[lo].offset
            end = self._raw[hi].end
            instances.append(MacroInstance(define, raw[start:end], "".join(inserts).strip(), start))
        return instances

    def _report(
        self, message: str, span: tuple[int, int] | None, code: str = PP_INVALID_MACRO
    ) -> None:
        offset = None
        if span is not None and span[0] < len(self._raw):
            offset = self._raw[span[0]].offset
        self.errors.append(MacroError(message, offset, code=code))


def _is_punct(token: Token | None, text: str) -> bool:
    return token is not None and token.kind is TokenKind.PUNCTUATOR and token.text == text


def _significant(body: tuple[Token, ...], index: int, step: int) -> int | None:
    index += step
    while 0 <= index < len(body):
        if body[index].kind is not TokenKind.WHITESPACE:
            return index
        index += step
    return None


def _trim(items: list[_Item]) -> list[_Item]:
    start = 0
    end = len(items)
    while start < end and items[start].token.kind is TokenKind.WHITESPACE:
        start += 1
    while end > start and items[end - 1].token.kind is TokenKind.WHITESPACE:
        end -= 1
    return items[start:end]


def _union_spans(items: list[_Item]) -> tuple[int, int] | None:
    spans = [item.span for item in items if item.span is not None]
    if not spans:
        return None
    return min(span[0] for span in spans), max(span[1] for span in spans)


def _stringize(items: list[_Item]) -> str:
    parts: list[str] = []
    space = False
    for item in items:
        token = item.token
        if token.kind is TokenKind.WHITESPACE:
            space = space or bool(token.text)
            continue
        if space and parts:
            parts.append(" ")
        space = False
        text = token.text
        if token.kind in {TokenKind.STRING_LITERAL, TokenKind.CHAR_CONST}:
            text = text.replace("\\", "\\\\").replace('"', '\\"')
        parts.append(text)
    return '"' + "".join(parts) + '"'


def _quote_string_literal(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
