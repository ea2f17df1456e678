"""
Pattern matcher.

Each Pattern is translated once into a short instruction program, which a
backtracking VM runs against a word. The VM keeps its choice points on an
explicit stack instead of recursing, so memory is bounded by the stack and
a step budget can abandon pathological matches on long words.

Instructions:
    LIT s       consume symbol s
    ANY         consume any one symbol
    CAT ref     consume one member of a category, binding its index
    SPLIT x y   try x, backtrack to y
    JMP x       continue at x
    BOUND       succeed at a word edge (zero width)
    TARGET r    consume the current target span (reversed if r)
    DITTO       consume a copy of the preceding symbol
    FAIL        never matches (undefined category)
    MATCH       accept

Tie-break at a fixed start: longest match wins; among equally long matches
the one found first (greedy alternatives before lazy ones) wins.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .categories import BOUNDARY, Member
from .diagnostics import MatchBudgetExceeded
from .patterns import (
    Boundary, CategoryRef, Ditto, Element, Gap, Literal, Null,
    OptionalGroup, Pattern, Repeat, TargetRef, Wildcard, nullable,
)
from .rules import EnvironmentGroup, GlobalEnvironment, LocalEnvironment

DEFAULT_BUDGET = 100_000

LIT, ANY, CAT, SPLIT, JMP, BOUND, TARGET, DITTO, FAIL, MATCH = range(10)
_OP_NAMES = ["LIT", "ANY", "CAT", "SPLIT", "JMP", "BOUND", "TARGET", "DITTO", "FAIL", "MATCH"]

Instruction = Tuple  # (opcode, arg1, arg2)
Bindings = Mapping[str, int]


@dataclass(frozen=True)
class Match:
    """
    A successful match.

    Attributes:
        start: First matched position
        end: Position after the last matched symbol
        bindings: Correlation slot -> member index
    """
    start: int
    end: int
    bindings: Dict[str, int] = field(default_factory=dict)

    @property
    def span(self) -> Tuple[int, int]:
        return (self.start, self.end)

    def __len__(self) -> int:
        return self.end - self.start


# ===== Program construction =====

class _Assembler:
    """Builds an instruction list with patchable jump targets."""

    def __init__(self):
        self.code: List[list] = []

    def emit(self, op: int, a=None, b=None) -> int:
        self.code.append([op, a, b])
        return len(self.code) - 1

    @property
    def here(self) -> int:
        return len(self.code)

    def split(self) -> int:
        """Emit a SPLIT whose targets are patched by `close_split`."""
        return self.emit(SPLIT, None, None)

    def close_split(self, at: int, body: int, skip: int, lazy: bool) -> None:
        if lazy:
            self.code[at][1], self.code[at][2] = skip, body
        else:
            self.code[at][1], self.code[at][2] = body, skip

    def element(self, element: Element) -> None:
        if isinstance(element, Literal):
            self.emit(LIT, element.symbol)
        elif isinstance(element, CategoryRef):
            if element.category is None:
                self.emit(FAIL)
            else:
                self.emit(CAT, element, _member_order(element.category.members))
        elif isinstance(element, Wildcard):
            self.emit(ANY)
        elif isinstance(element, Gap):
            self.star(Wildcard(), element.lazy)
        elif isinstance(element, Boundary):
            self.emit(BOUND)
        elif isinstance(element, Null):
            pass
        elif isinstance(element, TargetRef):
            self.emit(TARGET, element.reversed)
        elif isinstance(element, Ditto):
            self.emit(DITTO)
        elif isinstance(element, OptionalGroup):
            at = self.split()
            body = self.here
            self.pattern(element.pattern)
            self.close_split(at, body, self.here, element.lazy)
        elif isinstance(element, Repeat):
            self.repeat(element)
        else:
            raise TypeError(f"unknown pattern element {element!r}")

    def pattern(self, pattern: Pattern) -> None:
        for element in pattern.elements:
            self.element(element)

    def star(self, element: Element, lazy: bool) -> None:
        # A nullable body could loop forever without consuming anything
        if nullable(element):
            self.optional(element, lazy)
            return
        loop = self.split()
        body = self.here
        self.element(element)
        self.emit(JMP, loop)
        self.close_split(loop, body, self.here, lazy)

    def optional(self, element: Element, lazy: bool) -> None:
        at = self.split()
        body = self.here
        self.element(element)
        self.close_split(at, body, self.here, lazy)

    def repeat(self, rep: Repeat) -> None:
        for _ in range(rep.min):
            self.element(rep.element)
        if rep.max is None:
            self.star(rep.element, rep.lazy)
            return
        pending = []
        for _ in range(rep.max - rep.min):
            pending.append(self.split())
            self.element(rep.element)
        end = self.here
        for at in pending:
            self.close_split(at, at + 1, end, rep.lazy)


def _member_order(members: Sequence[Member]) -> Tuple[Tuple[int, Member], ...]:
    """Members longest first, declaration order among equals."""
    indexed = list(enumerate(members))
    indexed.sort(key=lambda im: -len(im[1]))
    return tuple(indexed)


def compile_program(pattern: Pattern) -> Tuple[Instruction, ...]:
    """Translate a pattern into VM instructions."""
    asm = _Assembler()
    asm.pattern(pattern)
    asm.emit(MATCH)
    return tuple(tuple(ins) for ins in asm.code)


def program_for(pattern: Pattern) -> Tuple[Instruction, ...]:
    """Cached program for a pattern (stored on the pattern itself)."""
    program = pattern.__dict__.get("_program")
    if program is None:
        program = compile_program(pattern)
        object.__setattr__(pattern, "_program", program)
    return program


def disassemble(pattern: Pattern) -> List[str]:
    """Readable listing of a pattern's program, for debugging."""
    lines = []
    for pc, (op, a, b) in enumerate(program_for(pattern)):
        args = " ".join(str(x) for x in (a, b) if x is not None and op != CAT)
        if op == CAT:
            args = str(a)
        lines.append(f"{pc:3d} {_OP_NAMES[op]} {args}".rstrip())
    return lines


# ===== VM =====

def _at_edge(pos: int, n: int, edge: Optional[str]) -> bool:
    """Word edge test for `#`: "start", "end", or either edge when None."""
    if edge == "start":
        return pos == 0
    if edge == "end":
        return pos == n
    return pos == 0 or pos == n


def _member_end(
    member: Member, word: Sequence[str], pos: int, limit: int, edge: Optional[str] = None,
) -> int:
    """End position if member matches at pos, else -1."""
    n = len(word)
    for symbol in member:
        if symbol is BOUNDARY:
            if not _at_edge(pos, n, edge):
                return -1
        elif pos < limit and word[pos] == symbol:
            pos += 1
        else:
            return -1
    return pos


def match(
    pattern: Pattern,
    word: Sequence[str],
    start: int,
    *,
    end: Optional[int] = None,
    limit: Optional[int] = None,
    bindings: Optional[Bindings] = None,
    target: Sequence[str] = (),
    longest: bool = True,
    budget: int = DEFAULT_BUDGET,
    edge: Optional[str] = None,
) -> Optional[Match]:
    """
    Match `pattern` against `word` beginning exactly at `start`.

    Args:
        pattern: Compiled pattern
        word: Symbol sequence
        start: Position the match must begin at
        end: If given, only matches ending exactly here are accepted
        limit: Symbols at or beyond this position may not be consumed
        bindings: Correlation bindings already in force
        target: Symbols of the current target span (for % and <)
        longest: Explore all paths and keep the longest; otherwise
                 return the first success
        budget: Maximum VM steps before MatchBudgetExceeded
        edge: Word edge `#` may match: "start" for left environments,
              "end" for right environments, either edge if None

    Returns:
        Match or None
    """
    program = program_for(pattern)
    n = len(word)
    if limit is None or limit > n:
        limit = n
    if start < 0 or start > limit:
        return None
    target = tuple(target)
    best: Optional[Match] = None
    stack: List[Tuple[int, int, Bindings]] = [(0, start, bindings or {})]
    steps = 0

    while stack:
        pc, pos, binds = stack.pop()
        while True:
            steps += 1
            if steps > budget:
                raise MatchBudgetExceeded(steps)
            op, a, b = program[pc]

            if op == LIT:
                if pos < limit and word[pos] == a:
                    pos += 1
                    pc += 1
                    continue
                break

            if op == ANY:
                if pos < limit:
                    pos += 1
                    pc += 1
                    continue
                break

            if op == CAT:
                ref: CategoryRef = a
                bound = binds.get(ref.slot) if ref.explicit else None
                options = []
                for index, member in b:
                    if bound is not None and index != bound:
                        continue
                    stop = _member_end(member, word, pos, limit, edge)
                    if stop >= 0:
                        options.append((index, stop))
                if not options:
                    break
                # Push alternatives in reverse so the preferred one runs next
                for index, stop in reversed(options[1:]):
                    stack.append((pc + 1, stop, _bind(binds, ref.slot, index)))
                index, stop = options[0]
                binds = _bind(binds, ref.slot, index)
                pos = stop
                pc += 1
                continue

            if op == SPLIT:
                stack.append((b, pos, binds))
                pc = a
                continue

            if op == JMP:
                pc = a
                continue

            if op == BOUND:
                if _at_edge(pos, n, edge):
                    pc += 1
                    continue
                break

            if op == TARGET:
                seq = target[::-1] if a else target
                stop = pos + len(seq)
                if stop <= limit and tuple(word[pos:stop]) == seq:
                    pos = stop
                    pc += 1
                    continue
                break

            if op == DITTO:
                if 0 < pos < limit and word[pos] == word[pos - 1]:
                    pos += 1
                    pc += 1
                    continue
                break

            if op == FAIL:
                break

            # MATCH
            if end is not None and pos != end:
                break
            found = Match(start, pos, dict(binds))
            if not longest:
                return found
            if best is None or pos > best.end:
                best = found
                if pos == limit:
                    return best
            break

    return best


def _bind(binds: Bindings, slot: Optional[str], index: int) -> Bindings:
    if slot is None or binds.get(slot) == index:
        return binds
    new = dict(binds)
    new[slot] = index
    return new


def find_all(
    pattern: Pattern,
    word: Sequence[str],
    *,
    budget: int = DEFAULT_BUDGET,
) -> List[Match]:
    """The longest match at every start position, left to right."""
    matches = []
    for pos in range(len(word) + 1):
        m = match(pattern, word, pos, budget=budget)
        if m is not None:
            matches.append(m)
    return matches


def select(matches: List[Match], indices: Iterable[int]) -> List[Match]:
    """Pick matches by (already zero-based, possibly negative) index."""
    chosen = []
    for i in indices:
        if -len(matches) <= i < len(matches):
            chosen.append(matches[i])
    return chosen


# ===== Environments =====

def match_local(
    env: LocalEnvironment,
    word: Sequence[str],
    start: int,
    end: int,
    *,
    bindings: Bindings,
    target: Sequence[str],
    budget: int = DEFAULT_BUDGET,
) -> Optional[Bindings]:
    """Check `left _ right` around the span [start, end)."""
    lefts: List[Bindings] = []
    if env.left:
        for s in range(start, -1, -1):
            m = match(env.left, word, s, end=start, limit=start, bindings=bindings,
                      target=target, longest=False, budget=budget, edge="start")
            if m is not None:
                lefts.append(m.bindings)
        if not lefts:
            return None
    else:
        lefts.append(bindings)

    for binds in lefts:
        if not env.right:
            return binds
        m = match(env.right, word, end, bindings=binds, target=target,
                  longest=False, budget=budget, edge="end")
        if m is not None:
            return m.bindings
    return None


def match_global(
    env: GlobalEnvironment,
    word: Sequence[str],
    *,
    bindings: Bindings,
    target: Sequence[str],
    budget: int = DEFAULT_BUDGET,
) -> Optional[Bindings]:
    """Check that a pattern occurs in the word (at selected match indices if given)."""
    if not env.pattern:
        return bindings
    if env.indices is None:
        for pos in range(len(word) + 1):
            m = match(env.pattern, word, pos, bindings=bindings, target=target,
                      longest=False, budget=budget)
            if m is not None:
                return m.bindings
        return None
    found = []
    for pos in range(len(word) + 1):
        m = match(env.pattern, word, pos, bindings=bindings, target=target, budget=budget)
        if m is not None:
            found.append(m)
    chosen = select(found, env.indices)
    return chosen[0].bindings if chosen else None


def match_group(
    group: EnvironmentGroup,
    word: Sequence[str],
    start: int,
    end: int,
    *,
    bindings: Bindings,
    target: Sequence[str],
    budget: int = DEFAULT_BUDGET,
) -> Optional[Bindings]:
    """All environments of an `&` group must hold; bindings flow left to right."""
    binds: Optional[Bindings] = bindings
    for env in group:
        if isinstance(env, LocalEnvironment):
            binds = match_local(env, word, start, end, bindings=binds,
                                target=target, budget=budget)
        else:
            binds = match_global(env, word, bindings=binds, target=target, budget=budget)
        if binds is None:
            return None
    return binds


def match_any(
    groups: Sequence[EnvironmentGroup],
    word: Sequence[str],
    start: int,
    end: int,
    *,
    bindings: Bindings,
    target: Sequence[str],
    budget: int = DEFAULT_BUDGET,
) -> Optional[Bindings]:
    """First group (in order) that holds, or None."""
    for group in groups:
        binds = match_group(group, word, start, end, bindings=bindings,
                            target=target, budget=budget)
        if binds is not None:
            return binds
    return None
