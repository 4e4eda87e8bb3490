import asyncio
import logging
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TextIO

from dtpp.diag import PP_INCLUDE_NOT_FOUND, PP_INCLUDE_READ_ERROR, PreprocessorError, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncludeFile:
    filename: str
    text: str


def format_include_reference(target: str, angled: bool) -> str:
    if angled:
        return f"<{target}>"
    return f'"{target}"'


class IncludeNotFoundError(PreprocessorError):
    def __init__(self, target: str, *, angled: bool = False) -> None:
        super().__init__(
            f"Include not found: {format_include_reference(target, angled)}",
            code=PP_INCLUDE_NOT_FOUND,
            severity=Severity.WARNING,
        )
        self.target = target
        self.angled = angled


class IncludeReadError(PreprocessorError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code=PP_INCLUDE_READ_ERROR)


class IncludeResolver(Protocol):
    async def __call__(self, target: str, *, angled: bool, includer: str) -> IncludeFile: ...


class MappingResolver:
    """Resolve includes from an in-memory ``{target: text}`` mapping."""

    def __init__(self, files: Mapping[str, str]) -> None:
        self._files = dict(files)

    async def __call__(self, target: str, *, angled: bool, includer: str) -> IncludeFile:
        text = self._files.get(target)
        if text is None:
            raise IncludeNotFoundError(target, angled=angled)
        return IncludeFile(target, text)


class FileSystemResolver:
    """Resolve includes against the includer's directory and a search path.

    Quoted includes look next to the including file first; both forms then
    walk ``include_dirs`` in order.
    """

    def __init__(self, include_dirs: Iterable[str] = ()) -> None:
        self.include_dirs = tuple(include_dirs)

    def search_roots(self, *, angled: bool, includer: str) -> list[Path]:
        roots: list[Path] = []
        if not angled and includer and not includer.startswith("<"):
            roots.append(Path(includer).parent)
        roots.extend(Path(path) for path in self.include_dirs)
        return roots

    def find(self, target: str, *, angled: bool, includer: str) -> Path | None:
        for root in self.search_roots(angled=angled, includer=includer):
            candidate = root / target
            if candidate.is_file():
                return candidate.resolve()
        return None

    async def __call__(self, target: str, *, angled: bool, includer: str) -> IncludeFile:
        path = await asyncio.to_thread(self.find, target, angled=angled, includer=includer)
        if path is None:
            raise IncludeNotFoundError(target, angled=angled)
        logger.debug("resolved %s from %s to %s", format_include_reference(target, angled), includer, path)
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeError) as error:
            raise IncludeReadError(f"Unable to read include: {target}: {error}") from error
        return IncludeFile(str(path), text)


def read_source(path: str, *, stdin: TextIO | None = None) -> tuple[str, str]:
    if path == "-":
        stream = sys.stdin if stdin is None else stdin
        return "<stdin>", stream.read()
    resolved = Path(path)
    return str(resolved), resolved.read_text(encoding="utf-8")
