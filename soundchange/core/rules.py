"""
Rule IR for sound changes.

A rule rewrites a target into a replacement wherever an environment holds
and no exception does:

    T > D / V_V ! _#
    │   │   │     └─ exception: vetoes a site that matches
    │   │   └─ environment: left _ right context
    │   └─ replacement
    └─ target

Rules may carry several branches (`a, e > o, i`), tried in order at each
site, and several predicates (`a > b / _c > d`), the later ones acting as an
"otherwise" for sites where the earlier environments fail.

Flags compose freely, so they are a bitset plus a few parameters rather than
a hierarchy of rule types.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Flag, auto
from typing import FrozenSet, Optional, Tuple, Union

from .diagnostics import Diagnostic
from .patterns import EMPTY, Pattern


class RuleFlag(Flag):
    """Boolean rule flags."""
    NONE = 0
    PERSISTENT = auto()  # re-scan until a pass changes nothing
    RTL = auto()         # scan right-to-left
    OPTIONAL = auto()    # belongs to a class the caller may switch off
    IGNORE = auto()      # never run


@dataclass(frozen=True)
class Flags:
    """
    Flag set of a rule or block.

    Attributes:
        bits: Boolean flags
        max_passes: Pass bound for PERSISTENT (None = engine default)
        optional_class: Class name used to switch OPTIONAL rules off
        ditto: 1 = run only if the previous rule changed the word,
               -1 = only if it did not, 0 = always
        stop: 1 = stop the ruleset if this rule changed the word,
              -1 = if it did not, 0 = never
        persist: Number of rules (including this one) after which the
                 rule is re-run
    """
    bits: RuleFlag = RuleFlag.NONE
    max_passes: Optional[int] = None
    optional_class: str = "optional"
    ditto: int = 0
    stop: int = 0
    persist: int = 1

    def has(self, flag: RuleFlag) -> bool:
        return bool(self.bits & flag)

    @property
    def persistent(self) -> bool:
        return self.has(RuleFlag.PERSISTENT)

    @property
    def rtl(self) -> bool:
        return self.has(RuleFlag.RTL)

    @property
    def optional(self) -> bool:
        return self.has(RuleFlag.OPTIONAL)

    @property
    def ignore(self) -> bool:
        return self.has(RuleFlag.IGNORE)

    def __str__(self) -> str:
        parts = []
        if self.persistent:
            parts.append("repeat" if self.max_passes is None else f"repeat:{self.max_passes}")
        if self.rtl:
            parts.append("rtl")
        if self.optional:
            parts.append(f"optional:{self.optional_class}")
        if self.ignore:
            parts.append("ignore")
        for name in ("ditto", "stop"):
            value = getattr(self, name)
            if value:
                parts.append(name if value > 0 else f"!{name}")
        if self.persist > 1:
            parts.append(f"persist:{self.persist}")
        return "; ".join(parts)


DEFAULT_FLAGS = Flags()


@dataclass(frozen=True)
class LocalEnvironment:
    """Context around the target: `left _ right`."""
    left: Pattern = EMPTY
    right: Pattern = EMPTY

    def __str__(self) -> str:
        return f"{self.left}_{self.right}"


@dataclass(frozen=True)
class GlobalEnvironment:
    """A pattern that must occur somewhere in the word (or at given match indices)."""
    pattern: Pattern = EMPTY
    indices: Optional[Tuple[int, ...]] = None

    def __str__(self) -> str:
        if self.indices is None:
            return str(self.pattern)
        return f"{self.pattern}@" + "|".join(str(i) for i in self.indices)


Environment = Union[LocalEnvironment, GlobalEnvironment]
# Environments joined with `&`: all must hold
EnvironmentGroup = Tuple[Environment, ...]


@dataclass(frozen=True)
class Predicate:
    """
    Replacement(s) with the conditions under which they apply.

    Attributes:
        replacements: One replacement per branch (or a single shared one)
        environments: Alternatives; empty means unconditional
        exceptions: Alternatives; any match vetoes the site
    """
    replacements: Tuple[Pattern, ...]
    environments: Tuple[EnvironmentGroup, ...] = ()
    exceptions: Tuple[EnvironmentGroup, ...] = ()

    def replacement_for(self, branch: int) -> Pattern:
        if not self.replacements:
            return EMPTY
        return self.replacements[branch % len(self.replacements)]


@dataclass(frozen=True)
class Branch:
    """One target alternative. `indices` selects which of its matches may change."""
    target: Pattern
    indices: Optional[Tuple[int, ...]] = None

    def __str__(self) -> str:
        if self.indices is None:
            return str(self.target)
        return f"{self.target}@" + "|".join(str(i) for i in self.indices)


@dataclass(frozen=True)
class Rule:
    """
    Compiled sound change rule. Immutable and shareable between threads.

    Example:
        rule = compile_rule("[T] > [D] / [V]_[V]", table)
        rule.branches[0].target     # Pattern([T])
        rule.flags.persistent       # False
    """
    branches: Tuple[Branch, ...]
    predicates: Tuple[Predicate, ...]
    flags: Flags = DEFAULT_FLAGS
    source: str = ""
    line: int = 0
    index: int = 0
    diagnostics: Tuple[Diagnostic, ...] = field(default_factory=tuple)
    # (predicate, branch, slot) pairings disabled by a category length mismatch
    mismatched: FrozenSet[Tuple[int, int, str]] = frozenset()

    @property
    def name(self) -> str:
        return self.source or f"rule #{self.index}"

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"Rule({self.name!r})"


@dataclass(frozen=True)
class Block:
    """A group of rules run as a unit (from `!block`)."""
    rules: Tuple[Union[Rule, "Block"], ...]
    flags: Flags = DEFAULT_FLAGS
    source: str = ""
    line: int = 0
    index: int = 0

    @property
    def name(self) -> str:
        return self.source or f"block #{self.index}"

    def __len__(self) -> int:
        return len(self.rules)

    def __repr__(self) -> str:
        return f"Block({self.name!r}, {len(self.rules)} rules)"
