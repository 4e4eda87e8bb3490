from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from dtpp.diag import PP_INVALID_DIRECTIVE, PreprocessorError


class DirectiveError(PreprocessorError):
    def __init__(self, message: str, offset: int | None = None, *, code: str = PP_INVALID_DIRECTIVE) -> None:
        super().__init__(message, offset, code=code)


class ConditionalKind(Enum):
    IF = "if"
    IFDEF = "ifdef"
    IFNDEF = "ifndef"


@dataclass
class ConditionalFrame:
    kind: ConditionalKind
    condition: bool
    branch_taken: bool
    parent_active: bool
    saw_else: bool = False
    line: int | None = None

    @property
    def active(self) -> bool:
        return self.parent_active and self.condition


class ConditionalStack:
    """Nesting state of ``#if``/``#ifdef``/``#ifndef`` blocks in one file."""

    def __init__(self) -> None:
        self._frames: list[ConditionalFrame] = []

    @property
    def active(self) -> bool:
        return not self._frames or self._frames[-1].active

    @property
    def depth(self) -> int:
        return len(self._frames)

    def push_if(self, condition: bool, *, line: int | None = None) -> ConditionalFrame:
        return self._push(ConditionalKind.IF, condition, line)

    def push_ifdef(self, defined: bool, *, line: int | None = None) -> ConditionalFrame:
        return self._push(ConditionalKind.IFDEF, defined, line)

    def push_ifndef(self, defined: bool, *, line: int | None = None) -> ConditionalFrame:
        return self._push(ConditionalKind.IFNDEF, not defined, line)

    def _push(self, kind: ConditionalKind, condition: bool, line: int | None) -> ConditionalFrame:
        parent_active = self.active
        condition = parent_active and condition
        frame = ConditionalFrame(kind, condition, condition, parent_active, line=line)
        self._frames.append(frame)
        return frame

    def elif_(self, evaluate: Callable[[], bool]) -> ConditionalFrame:
        """Switch to an ``#elif`` branch.

        ``evaluate`` is only called when no earlier branch of the chain was
        taken and the enclosing block is active.
        """
        frame = self._top("elif")
        if frame.saw_else:
            raise DirectiveError("#elif after #else")
        if not frame.parent_active or frame.branch_taken:
            frame.condition = False
            return frame
        frame.condition = evaluate()
        frame.branch_taken = frame.condition
        return frame

    def else_(self) -> ConditionalFrame:
        frame = self._top("else")
        if frame.saw_else:
            raise DirectiveError("Duplicate #else")
        frame.saw_else = True
        frame.condition = not frame.branch_taken
        frame.branch_taken = True
        return frame

    def endif(self) -> ConditionalFrame:
        self._top("endif")
        return self._frames.pop()

    def _top(self, name: str) -> ConditionalFrame:
        if not self._frames:
            raise DirectiveError(f"#{name} without #if")
        return self._frames[-1]

    def unterminated(self) -> list[ConditionalFrame]:
        """Pop and return every open frame, innermost last."""
        frames = self._frames
        self._frames = []
        return frames
