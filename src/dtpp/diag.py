import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"
    HINT = "hint"


@dataclass(frozen=True)
class Diagnostic:
    stage: str
    filename: str
    message: str
    line: int | None = None
    column: int | None = None
    code: str | None = None
    severity: Severity = Severity.ERROR
    end_column: int | None = None

    def __str__(self) -> str:
        if self.line is None or self.column is None:
            return f"{self.filename}: {self.stage}: {self.message}"
        return f"{self.filename}:{self.line}:{self.column}: {self.stage}: {self.message}"

    def to_json(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "filename": self.filename,
            "line": self.line,
            "column": self.column,
            "end_column": self.end_column,
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
        }


class DiagnosticsSet:
    """Append-only collection of diagnostics, grouped by file identifier.

    The preprocessor only ever appends to the set; presentation is left to the
    caller.  Appends are serialized so the same set can be shared by
    preprocessing runs on several threads.
    """

    def __init__(self, diagnostics: Iterable[Diagnostic] = ()) -> None:
        self._lock = threading.Lock()
        self._by_file: dict[str, list[Diagnostic]] = {}
        for diagnostic in diagnostics:
            self.push(diagnostic)

    def push(self, diagnostic: Diagnostic) -> Diagnostic:
        with self._lock:
            self._by_file.setdefault(diagnostic.filename, []).append(diagnostic)
        return diagnostic

    def merge(self, other: "DiagnosticsSet") -> None:
        for diagnostic in other:
            self.push(diagnostic)

    def for_file(self, filename: str) -> tuple[Diagnostic, ...]:
        return tuple(self._by_file.get(filename, ()))

    @property
    def files(self) -> tuple[str, ...]:
        return tuple(self._by_file)

    @property
    def errors(self) -> tuple[Diagnostic, ...]:
        return tuple(d for d in self if d.severity is Severity.ERROR)

    def __len__(self) -> int:
        return sum(len(diags) for diags in self._by_file.values())

    def __iter__(self) -> Iterator[Diagnostic]:
        for diags in list(self._by_file.values()):
            yield from list(diags)

    def __repr__(self) -> str:
        return f"DiagnosticsSet({list(self)!r})"


PP_UNKNOWN_DIRECTIVE = "DTPP-PP-0101"
PP_INCLUDE_NOT_FOUND = "DTPP-PP-0102"
PP_INVALID_IF_EXPR = "DTPP-PP-0103"
PP_INVALID_DIRECTIVE = "DTPP-PP-0104"
PP_UNTERMINATED_CONDITIONAL = "DTPP-PP-0105"
PP_USER_ERROR = "DTPP-PP-0106"
PP_INVALID_MACRO = "DTPP-PP-0201"
PP_MACRO_REDEFINED = "DTPP-PP-0202"
PP_INVALID_PASTE = "DTPP-PP-0203"
PP_EXPANSION_LIMIT = "DTPP-PP-0204"
PP_INCLUDE_READ_ERROR = "DTPP-PP-0301"
PP_INCLUDE_CYCLE = "DTPP-PP-0302"
LEX_UNTERMINATED = "DTPP-LEX-0001"


class PreprocessorError(ValueError):
    def __init__(
        self,
        message: str,
        offset: int | None = None,
        *,
        code: str = PP_INVALID_DIRECTIVE,
        severity: Severity = Severity.ERROR,
    ) -> None:
        super().__init__(message if offset is None else f"{message} at offset {offset}")
        self.message = message
        self.offset = offset
        self.code = code
        self.severity = severity
