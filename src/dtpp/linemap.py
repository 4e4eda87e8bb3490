from collections.abc import Sequence
from dataclasses import dataclass, field

from dtpp.defines import Define


@dataclass(frozen=True)
class MacroInstance:
    define: Define
    raw: str
    insert: str
    start: int

    @property
    def end(self) -> int:
        return self.start + len(self.raw)


def replace(text: str, macros: Sequence[MacroInstance]) -> str:
    # Back to front so earlier offsets stay valid.
    for macro in sorted(macros, key=lambda item: item.start, reverse=True):
        text = text[: macro.start] + macro.insert + text[macro.end :]
    return text


@dataclass(frozen=True)
class Line:
    """One output line together with the substitutions that produced it.

    ``number`` is the 1-based line number of ``raw`` in ``filename``.
    Offsets into ``text`` are translated back to offsets into ``raw`` with
    :meth:`raw_pos`.
    """

    raw: str
    text: str
    number: int
    filename: str
    macros: tuple[MacroInstance, ...] = field(default=())

    @classmethod
    def build(
        cls,
        raw: str,
        number: int,
        filename: str,
        macros: Sequence[MacroInstance] = (),
        *,
        base: str | None = None,
    ) -> "Line":
        ordered = tuple(sorted(macros, key=lambda item: item.start))
        text = replace(raw if base is None else base, ordered).rstrip()
        return cls(raw, text, number, filename, ordered)

    def __len__(self) -> int:
        return len(self.text)

    def raw_pos(self, offset: int, prefer_start: bool = True) -> int:
        """Map an offset in the expanded text to an offset in the raw text.

        Offsets strictly inside a substitution are ambiguous; they resolve to
        the start of the raw invocation when ``prefer_start`` is set and to
        its end otherwise.
        """
        offset = max(0, offset)
        delta = 0
        for macro in self.macros:
            expanded_start = macro.start + delta
            if offset <= expanded_start:
                break
            expanded_end = expanded_start + len(macro.insert)
            if offset < expanded_end:
                return macro.start if prefer_start else macro.end
            delta += len(macro.insert) - len(macro.raw)
        return min(offset - delta, len(self.raw))

    def remap(self, start: int, end: int) -> tuple[int, int]:
        return self.raw_pos(start, True), self.raw_pos(end, False)

    def macro_at(self, offset: int) -> MacroInstance | None:
        for macro in self.macros:
            if macro.start <= offset < macro.end:
                return macro
        return None

    def contains(self, filename: str, number: int) -> bool:
        return self.filename == filename and self.number == number
