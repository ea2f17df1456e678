"""
Pattern IR.

Patterns are immutable trees of elements produced once by the compiler and
shared read-only by every application:

    Literal      one symbol
    CategoryRef  one member of a category, optionally correlation-tagged
    Wildcard     exactly one symbol                         *
    Gap          any run of symbols, possibly empty         **
    OptionalGroup  sub-pattern zero or one time             (...)
    Repeat       previous element repeated                  {n} {*} {+}
    Boundary     word edge, zero width                      #
    Null         nothing                                    []
    TargetRef    the matched target (or its reverse)        %  <
    Ditto        a copy of the preceding symbol             "
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple, Union

from .categories import Category


@dataclass(frozen=True)
class Literal:
    symbol: str

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True)
class CategoryRef:
    """
    Reference to a category.

    Attributes:
        category: Resolved category, or None if the name was undefined
        name: Source name ('' for inline categories)
        slot: Correlation slot shared with other elements of the rule
        explicit: True if the slot comes from a `^n` tag
    """
    category: Optional[Category]
    name: str = ""
    slot: Optional[str] = None
    explicit: bool = False

    @property
    def defined(self) -> bool:
        return self.category is not None

    def __str__(self) -> str:
        if self.name:
            body = f"[{self.name}]"
        elif self.category is not None:
            body = "[" + ",".join("".join(map(str, m)) for m in self.category.members) + "]"
        else:
            body = "[?]"
        if self.explicit and self.slot:
            body += self.slot
        return body


@dataclass(frozen=True)
class Wildcard:
    def __str__(self) -> str:
        return "*"


@dataclass(frozen=True)
class Gap:
    lazy: bool = False

    def __str__(self) -> str:
        return "**?" if self.lazy else "**"


@dataclass(frozen=True)
class Boundary:
    def __str__(self) -> str:
        return "#"


@dataclass(frozen=True)
class Null:
    def __str__(self) -> str:
        return "[]"


@dataclass(frozen=True)
class TargetRef:
    reversed: bool = False

    def __str__(self) -> str:
        return "<" if self.reversed else "%"


@dataclass(frozen=True)
class Ditto:
    def __str__(self) -> str:
        return '"'


@dataclass(frozen=True)
class OptionalGroup:
    pattern: "Pattern"
    lazy: bool = False

    def __str__(self) -> str:
        return f"({self.pattern})" + ("?" if self.lazy else "")


@dataclass(frozen=True)
class Repeat:
    """`element` repeated between `min` and `max` times (max None = unbounded)."""
    element: "Element"
    min: int = 0
    max: Optional[int] = None
    lazy: bool = False

    def __str__(self) -> str:
        if self.max is not None and self.min == self.max:
            count = str(self.min)
        elif self.min == 0:
            count = "*"
        else:
            count = "+"
        if self.lazy:
            count += "?"
        return f"{self.element}{{{count}}}"


Element = Union[
    Literal, CategoryRef, Wildcard, Gap, Boundary, Null,
    TargetRef, Ditto, OptionalGroup, Repeat,
]


@dataclass(frozen=True)
class Pattern:
    elements: Tuple[Element, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self) -> Iterator[Element]:
        return iter(self.elements)

    def __bool__(self) -> bool:
        return bool(self.elements)

    def __str__(self) -> str:
        return "".join(str(e) for e in self.elements)


EMPTY = Pattern()


def walk(pattern: Pattern) -> Iterator[Element]:
    """Depth-first iteration over every element, including nested ones."""
    stack = list(reversed(pattern.elements))
    while stack:
        element = stack.pop()
        yield element
        if isinstance(element, OptionalGroup):
            stack.extend(reversed(element.pattern.elements))
        elif isinstance(element, Repeat):
            stack.append(element.element)


def categories(pattern: Pattern) -> Iterator[CategoryRef]:
    """Category references in depth-first order."""
    for element in walk(pattern):
        if isinstance(element, CategoryRef):
            yield element


def nullable(element: Element) -> bool:
    """Can this element match without consuming a symbol?"""
    if isinstance(element, (Gap, Boundary, Null, OptionalGroup)):
        return True
    if isinstance(element, Repeat):
        return element.min == 0 or nullable(element.element)
    if isinstance(element, TargetRef):
        return True
    if isinstance(element, CategoryRef) and element.category is not None:
        return any(len(m) == 0 or not isinstance(m[0], str) for m in element.category.members)
    return False


EMITTABLE = (Literal, CategoryRef, Null, TargetRef, Ditto)
