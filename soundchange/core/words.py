"""
Word representation.

A word is an ordered, mutable sequence of symbols. Symbols are opaque
strings; a symbol may be several characters long (e.g. 'th', 'ts') but is a
single unit once the word is segmented. Word edges are implicit anchors:
patterns can test for them with `#`, but they are never stored.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union
import unicodedata


def segment(
    text: str,
    graphs: Iterable[str] = (),
    separator: Optional[str] = None,
) -> List[str]:
    """
    Split raw text into symbols.

    Multi-character graphemes listed in `graphs` are matched longest first.
    Any other character becomes its own symbol, together with the combining
    marks that follow it. `separator` breaks up an accidental polygraph
    ("ts'h" with graphs ['ts', 'sh'] gives ts, h) and is dropped.

    Example:
        segment("atshu", ["sh", "ts", "tsh"])   # ['a', 'tsh', 'u']
    """
    polygraphs = sorted({g for g in graphs if len(g) > 1}, key=len, reverse=True)
    symbols: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        if separator and text.startswith(separator, i):
            i += len(separator)
            continue
        for graph in polygraphs:
            if text.startswith(graph, i):
                symbols.append(graph)
                i += len(graph)
                break
        else:
            j = i + 1
            while j < n and unicodedata.combining(text[j]):
                j += 1
            symbols.append(text[i:j])
            i = j
    return symbols


@dataclass(frozen=True)
class WordState:
    """
    Immutable snapshot of a word.

    Attributes:
        symbols: The word's symbols
    """
    symbols: Tuple[str, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self) -> Iterator[str]:
        return iter(self.symbols)

    def __getitem__(self, index):
        return self.symbols[index]

    def __str__(self) -> str:
        return "".join(self.symbols)

    def to_word(self) -> "Word":
        """Create a mutable copy."""
        return Word(self.symbols)


class Word:
    """
    Mutable word: the unit the engine rewrites.

    Example:
        word = Word.from_string("apa")
        word.replace(1, 2, ["b"])
        str(word)  # 'aba'
    """

    def __init__(self, symbols: Union[Iterable[str], None] = None):
        self._symbols: List[str] = list(symbols) if symbols is not None else []

    @classmethod
    def from_string(
        cls,
        text: str,
        graphs: Iterable[str] = (),
        separator: Optional[str] = None,
    ) -> "Word":
        """Segment `text` into a word."""
        return cls(segment(text, graphs, separator))

    @classmethod
    def coerce(cls, value: Union["Word", WordState, str, Sequence[str]], graphs: Iterable[str] = ()) -> "Word":
        """Build a fresh Word from any accepted input form."""
        if isinstance(value, Word):
            return value.copy()
        if isinstance(value, WordState):
            return value.to_word()
        if isinstance(value, str):
            return cls.from_string(value, graphs)
        return cls(value)

    @property
    def symbols(self) -> List[str]:
        return self._symbols

    def __len__(self) -> int:
        return len(self._symbols)

    def __getitem__(self, index):
        return self._symbols[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._symbols)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Word):
            return self._symbols == other._symbols
        if isinstance(other, WordState):
            return tuple(self._symbols) == other.symbols
        return NotImplemented

    __hash__ = None  # mutable

    def replace(self, start: int, end: int, symbols: Sequence[str]) -> None:
        """Replace symbols[start:end] in place."""
        self._symbols[start:end] = list(symbols)

    def snapshot(self) -> WordState:
        """Capture the current form."""
        return WordState(tuple(self._symbols))

    def copy(self) -> "Word":
        return Word(self._symbols)

    def __str__(self) -> str:
        return "".join(self._symbols)

    def __repr__(self) -> str:
        return f"Word({' '.join(self._symbols)!r})"
