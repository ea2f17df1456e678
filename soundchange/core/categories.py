"""
Category table for sound change rules.

A category is a named, ordered collection of members. Order matters: the
position of a member is what correlation carries from a target to a
replacement, e.g.

    T = p, t, k
    D = b, d, g
    [T] > [D] / V_V        # p→b, t→d, k→g

Categories are stored in an append-only arena. Redefining a name appends a
new vector and points the name at it; rules compiled earlier keep the vector
they were compiled against.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .diagnostics import UndefinedCategory


class _Boundary:
    """Sentinel for the word-edge member of a category (written `#`)."""
    _instance: Optional["_Boundary"] = None

    def __new__(cls) -> "_Boundary":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "#"

    def __reduce__(self):
        return (_Boundary, ())


BOUNDARY = _Boundary()

Member = Tuple[Union[str, _Boundary], ...]


def as_member(value: Union[str, Sequence[str], _Boundary]) -> Member:
    """Normalise a single symbol or symbol sequence into a member tuple."""
    if value is BOUNDARY:
        return (BOUNDARY,)
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class Category:
    """
    Immutable ordered set of members.

    Attributes:
        name: Category name ('' for inline categories)
        members: Ordered member tuples (each a tuple of symbols)
        index: Stable arena slot (-1 for inline categories)
    """
    name: str
    members: Tuple[Member, ...]
    index: int = -1

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[Member]:
        return iter(self.members)

    def __getitem__(self, i: int) -> Member:
        return self.members[i]

    def __contains__(self, value: object) -> bool:
        if isinstance(value, str):
            value = (value,)
        return value in self.members

    def find(self, member: Member) -> int:
        """Index of member, or -1."""
        try:
            return self.members.index(member)
        except ValueError:
            return -1

    @property
    def is_inline(self) -> bool:
        return self.index < 0

    def __repr__(self) -> str:
        items = ", ".join("".join(map(str, m)) for m in self.members)
        label = self.name or "inline"
        return f"Category({label}: [{items}])"


class CategoryTable:
    """
    Registry of named categories.

    Example:
        table = CategoryTable()
        table.define("T", ["p", "t", "k"])
        table.define("D", ["b", "d", "g"])
        table.resolve("T").members   # (('p',), ('t',), ('k',))
    """

    def __init__(self, categories: Optional[Dict[str, Iterable]] = None):
        self._arena: List[Category] = []
        self._names: Dict[str, int] = {}
        self._frozen = False
        if categories:
            for name, members in categories.items():
                self.define(name, members)

    def define(self, name: str, members: Iterable) -> Category:
        """Register a category, replacing any earlier one with that name."""
        if self._frozen:
            raise TypeError("category table is frozen")
        if isinstance(members, Category):
            members = members.members
        cat = Category(
            name=name,
            members=tuple(as_member(m) for m in members),
            index=len(self._arena),
        )
        self._arena.append(cat)
        self._names[name] = cat.index
        return cat

    def add(self, name: str, members: Iterable) -> Category:
        """Append members to a category (`+=`). Undefined names are created."""
        existing = self._existing(name)
        new = [as_member(m) for m in members]
        return self.define(name, list(existing) + new)

    def subtract(self, name: str, members: Iterable) -> Category:
        """Remove members from a category (`-=`)."""
        removed = {as_member(m) for m in members}
        existing = self._existing(name)
        return self.define(name, [m for m in existing if m not in removed])

    def _existing(self, name: str) -> Tuple[Member, ...]:
        if name in self._names:
            return self._arena[self._names[name]].members
        return ()

    def resolve(self, name: str) -> Category:
        """Look up a category by name. Raises UndefinedCategory."""
        try:
            return self._arena[self._names[name]]
        except KeyError:
            raise UndefinedCategory(name) from None

    def get(self, index: int) -> Category:
        """Look up a category by arena index."""
        return self._arena[index]

    def symbols(self, name: str) -> List[str]:
        """Flatten a category's members into one symbol list (no boundaries)."""
        return [s for member in self.resolve(name) for s in member if isinstance(s, str)]

    def freeze(self) -> "CategoryTable":
        """Return an immutable copy of this table."""
        table = self.copy()
        table._frozen = True
        return table

    def copy(self) -> "CategoryTable":
        """Return a mutable copy sharing the (immutable) category vectors."""
        table = CategoryTable()
        table._arena = list(self._arena)
        table._names = dict(self._names)
        return table

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def names(self) -> List[str]:
        return list(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[Category]:
        for index in self._names.values():
            yield self._arena[index]

    def __repr__(self) -> str:
        return f"CategoryTable({len(self._names)} categories)"
