import re
from collections.abc import Callable, Sequence

from dtpp.defines import DefineTable
from dtpp.diag import PP_INVALID_IF_EXPR, PreprocessorError
from dtpp.expander import MacroExpander
from dtpp.lexer import Token, TokenKind, tokenize

_PP_INT_RE = re.compile(
    r"^(?:0[xX][0-9A-Fa-f]+|0[bB][01]+|[0-9]+)(?:[uU](?:ll|LL|[lL])?|(?:ll|LL|[lL])[uU]?)?$"
)
_PP_FLOAT_RE = re.compile(r"^(?:[0-9]+\.[0-9]*|\.[0-9]+|[0-9]+)(?:[eE][+-]?[0-9]+)?[fFlL]?$")
_OCTAL_ESCAPE_RE = re.compile(r"[0-7]{1,3}")
_SIMPLE_ESCAPES = {
    "a": 7,
    "b": 8,
    "f": 12,
    "n": 10,
    "r": 13,
    "t": 9,
    "v": 11,
    "\\": 92,
    "'": 39,
    '"': 34,
    "?": 63,
}
_BINARY_LEVELS: tuple[tuple[str, ...], ...] = (
    ("|",),
    ("^",),
    ("&",),
    ("==", "!="),
    ("<", "<=", ">", ">="),
    ("<<", ">>"),
    ("+", "-"),
    ("*", "/", "%"),
)
_INTEGER_ONLY = frozenset({"|", "^", "&", "<<", ">>", "%"})
_SHIFT_WIDTH = 64

Value = int | float | bool


class ExpressionError(PreprocessorError):
    def __init__(self, message: str, offset: int | None = None) -> None:
        super().__init__(message, offset, code=PP_INVALID_IF_EXPR)


def evaluate(text: str, defines: DefineTable | None = None) -> Value | None:
    """Evaluate a constant expression, returning None when it is undefined."""
    try:
        return evaluate_expression(text, defines)
    except ExpressionError:
        return None


def evaluate_expression(
    expression: str | Sequence[Token],
    defines: DefineTable | None = None,
    *,
    expander: MacroExpander | None = None,
) -> Value:
    if defines is None:
        defines = expander.defines if expander is not None else DefineTable()
    tokens = tokenize(expression) if isinstance(expression, str) else list(expression)
    tokens = _replace_defined(tokens, defines)
    if any(token.kind is TokenKind.IDENT and token.text in defines for token in tokens):
        if expander is None:
            expander = MacroExpander(defines)
        tokens = expander.expand_tokens(tokens)
    return _Parser([token for token in tokens if token.kind is not TokenKind.WHITESPACE]).parse()


def _replace_defined(tokens: list[Token], defines: DefineTable) -> list[Token]:
    out: list[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.kind is TokenKind.IDENT and token.text == "defined":
            name, index = _defined_operand(tokens, index + 1)
            if name is None:
                raise ExpressionError("Macro name expected after 'defined'", token.offset)
            out.append(Token(TokenKind.NUMBER, "1" if name in defines else "0", token.offset))
            continue
        out.append(token)
        index += 1
    return out


def _defined_operand(tokens: list[Token], index: int) -> tuple[str | None, int]:
    index = _skip_whitespace(tokens, index)
    if index < len(tokens) and tokens[index].kind is TokenKind.IDENT:
        return tokens[index].text, index + 1
    if index >= len(tokens) or tokens[index].text != "(":
        return None, index
    index = _skip_whitespace(tokens, index + 1)
    if index >= len(tokens) or tokens[index].kind is not TokenKind.IDENT:
        return None, index
    name = tokens[index].text
    index = _skip_whitespace(tokens, index + 1)
    if index >= len(tokens) or tokens[index].text != ")":
        return None, index
    return name, index + 1


def _skip_whitespace(tokens: list[Token], index: int) -> int:
    while index < len(tokens) and tokens[index].kind is TokenKind.WHITESPACE:
        index += 1
    return index


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._index = 0
        # Non-zero while parsing an operand whose value is discarded.
        self._skip = 0

    def parse(self) -> Value:
        if not self._tokens:
            raise ExpressionError("Empty expression")
        value = self._ternary()
        if self._index < len(self._tokens):
            token = self._tokens[self._index]
            raise ExpressionError(f"Unexpected token '{token.text}'", token.offset)
        return value

    def _peek(self) -> Token | None:
        if self._index >= len(self._tokens):
            return None
        return self._tokens[self._index]

    def _accept(self, *operators: str) -> Token | None:
        token = self._peek()
        if token is None or token.kind is not TokenKind.PUNCTUATOR or token.text not in operators:
            return None
        self._index += 1
        return token

    def _expect(self, operator: str) -> None:
        if self._accept(operator) is not None:
            return
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Expected '{operator}' before end of expression")
        raise ExpressionError(f"Expected '{operator}', got '{token.text}'", token.offset)

    def _guarded(self, parse: Callable[[], Value], skipped: bool) -> Value:
        if skipped:
            self._skip += 1
        try:
            return parse()
        finally:
            if skipped:
                self._skip -= 1

    def _ternary(self) -> Value:
        condition = self._logical_or()
        if self._accept("?") is None:
            return condition
        take = bool(condition)
        then_value = self._guarded(self._ternary, not take)
        self._expect(":")
        else_value = self._guarded(self._ternary, take)
        return then_value if take else else_value

    def _logical_or(self) -> Value:
        value = self._logical_and()
        while self._accept("||") is not None:
            left = bool(value)
            right = self._guarded(self._logical_and, left)
            value = left or bool(right)
        return value

    def _logical_and(self) -> Value:
        value = self._binary(0)
        while self._accept("&&") is not None:
            left = bool(value)
            right = self._guarded(lambda: self._binary(0), not left)
            value = left and bool(right)
        return value

    def _binary(self, level: int) -> Value:
        if level == len(_BINARY_LEVELS):
            return self._unary()
        value = self._binary(level + 1)
        while True:
            operator = self._accept(*_BINARY_LEVELS[level])
            if operator is None:
                return value
            right = self._binary(level + 1)
            value = self._apply(operator, value, right)

    def _apply(self, operator: Token, left: Value, right: Value) -> Value:
        op = operator.text
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        a = _arithmetic(left)
        b = _arithmetic(right)
        if op in _INTEGER_ONLY and (isinstance(a, float) or isinstance(b, float)):
            raise ExpressionError(f"Invalid operands to binary '{op}'", operator.offset)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op in {"/", "%"}:
            if b == 0:
                if self._skip:
                    return 0
                raise ExpressionError("Division by zero", operator.offset)
            if op == "%":
                return a - b * _truncating_div(a, b)
            return _truncating_div(a, b)
        if op in {"<<", ">>"}:
            if b < 0:
                if self._skip:
                    return 0
                raise ExpressionError("Negative shift count", operator.offset)
            if b >= _SHIFT_WIDTH:
                if self._skip:
                    return 0
                raise ExpressionError("Shift count too large", operator.offset)
            return a << b if op == "<<" else a >> b
        if op == "&":
            return a & b
        if op == "|":
            return a | b
        return a ^ b

    def _unary(self) -> Value:
        operator = self._accept("!", "~", "-", "+")
        if operator is None:
            return self._primary()
        value = self._unary()
        if operator.text == "!":
            return not value
        number = _arithmetic(value)
        if operator.text == "-":
            return -number
        if operator.text == "+":
            return number
        if isinstance(number, float):
            raise ExpressionError("Invalid operand to unary '~'", operator.offset)
        return ~number

    def _primary(self) -> Value:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression")
        self._index += 1
        if token.kind is TokenKind.PUNCTUATOR and token.text == "(":
            value = self._ternary()
            self._expect(")")
            return value
        if token.kind is TokenKind.NUMBER:
            return _parse_number(token)
        if token.kind is TokenKind.CHAR_CONST:
            return _parse_char(token)
        if token.kind is TokenKind.IDENT:
            raise ExpressionError(f"Unresolved identifier '{token.text}'", token.offset)
        raise ExpressionError(f"Unexpected token '{token.text}'", token.offset)


def _arithmetic(value: Value) -> int | float:
    if isinstance(value, bool):
        return int(value)
    return value


def _truncating_div(a: int | float, b: int | float) -> int | float:
    if isinstance(a, float) or isinstance(b, float):
        return a / b
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


def _parse_number(token: Token) -> int | float:
    text = token.text
    if _PP_INT_RE.fullmatch(text) is not None:
        digits = text.rstrip("uUlL")
        if digits.startswith(("0x", "0X")):
            return int(digits[2:], 16)
        if digits.startswith(("0b", "0B")):
            return int(digits[2:], 2)
        if digits.startswith("0") and len(digits) > 1:
            if any(ch not in "01234567" for ch in digits):
                raise ExpressionError(f"Invalid octal constant '{text}'", token.offset)
            return int(digits, 8)
        return int(digits, 10)
    if _PP_FLOAT_RE.fullmatch(text) is not None:
        return float(text.rstrip("fFlL"))
    raise ExpressionError(f"Invalid number '{text}'", token.offset)


def _parse_char(token: Token) -> int:
    text = token.text
    quote = text.index("'")
    body = text[quote + 1 : -1] if text.endswith("'") and len(text) > quote + 1 else ""
    if not body:
        raise ExpressionError(f"Invalid character constant {text}", token.offset)
    if not body.startswith("\\"):
        value = 0
        for ch in body:
            value = (value << 8) | ord(ch)
        return value
    escape = body[1:]
    if not escape:
        raise ExpressionError(f"Invalid character constant {text}", token.offset)
    octal = _OCTAL_ESCAPE_RE.match(escape)
    if octal is not None:
        return int(octal.group(0), 8)
    if escape[0] == "x":
        try:
            return int(escape[1:], 16)
        except ValueError as error:
            raise ExpressionError(f"Invalid character constant {text}", token.offset) from error
    if escape[0] in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[escape[0]]
    return ord(escape[0])
