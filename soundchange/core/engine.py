"""
Rule application engine.

Applies one rule to one word:

    SCANNING → MATCHING → EXCEPTION_CHECK → {APPLY, SKIP} → ADVANCE → SCANNING
                                                              ...
                                                              DONE

Key properties:
- Deterministic scan, left-to-right by default, right-to-left with `rtl`
- Non-overlapping: after a change the cursor moves past the replacement
- Persistent rules re-scan the word until a pass changes nothing, bounded
  by a maximum pass count; hitting the bound marks the result TRUNCATED
- A pass that reproduces an earlier form of the word stops the loop (CYCLE)
- Semantic problems skip the site, never the run
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple
import logging

from .categories import BOUNDARY
from .diagnostics import (
    Diagnostic, DiagnosticKind, InvariantViolation, MatchBudgetExceeded, SiteSkipped,
)
from .matcher import DEFAULT_BUDGET, Match, find_all, match, match_any, select
from .patterns import CategoryRef, Ditto, Literal, Null, Pattern, TargetRef
from .rules import Predicate, Rule
from .words import Word, WordState

logger = logging.getLogger(__name__)

MAX_PASSES = 1000  # Default bound for persistent rules
UNSETTLED = (DiagnosticKind.TRUNCATED, DiagnosticKind.CYCLE)


class EngineState(Enum):
    SCANNING = "scanning"
    MATCHING = "matching"
    EXCEPTION_CHECK = "exception_check"
    APPLY = "apply"
    SKIP = "skip"
    ADVANCE = "advance"
    DONE = "done"


@dataclass(frozen=True)
class ChangeRecord:
    """
    One actual modification of a word by a rule.

    Attributes:
        rule: The rule that made the change
        span: (start, end) of the matched target in `before`
        before: Word before the change
        after: Word after the change
        diagnostics: Conditions attached to this rule run (e.g. TRUNCATED)
        pass_number: Pass of a persistent rule that made the change (1-based)
    """
    rule: Rule
    span: Tuple[int, int]
    before: WordState
    after: WordState
    diagnostics: Tuple[Diagnostic, ...] = ()
    pass_number: int = 1

    @property
    def truncated(self) -> bool:
        return any(d.kind is DiagnosticKind.TRUNCATED for d in self.diagnostics)

    @property
    def unsettled(self) -> bool:
        """True if a persistent run ended by its bound or by a cycle."""
        return any(d.kind in UNSETTLED for d in self.diagnostics)

    def __str__(self) -> str:
        return f"{self.before} → {self.after}  ({self.rule.name})"


@dataclass
class Site:
    """A candidate application found while MATCHING."""
    branch: int
    match: Match
    predicate: Predicate
    predicate_index: int
    bindings: Dict[str, int]


@dataclass
class RuleOutcome:
    """Result of running one rule over one word."""
    rule: Rule
    changes: List[ChangeRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    passes: int = 0
    stop_reason: str = "done"
    sites_examined: int = 0
    sites_vetoed: int = 0
    sites_skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "truncated"


class RuleEngine:
    """
    Runs the scan/match/replace/advance loop of a single rule.

    Example:
        engine = RuleEngine(max_passes=50)
        word = Word.from_string("apa")
        outcome = engine.apply(rule, word)   # word is modified in place
        outcome.changes[0].after             # WordState('aba')
    """

    def __init__(
        self,
        max_passes: int = MAX_PASSES,
        max_match_steps: int = DEFAULT_BUDGET,
        detect_cycles: bool = True,
        strict: bool = True,
    ):
        """
        Initialize engine.

        Args:
            max_passes: Pass bound for persistent rules without their own bound
            max_match_steps: VM step budget per match attempt
            detect_cycles: Stop persistent rules that revisit a word form
            strict: Check engine invariants and raise InvariantViolation
        """
        self.max_passes = max_passes
        self.max_match_steps = max_match_steps
        self.detect_cycles = detect_cycles
        self.strict = strict

    @classmethod
    def from_params(cls, params) -> "RuleEngine":
        """Build from an EngineParams-like object."""
        return cls(
            max_passes=params.max_passes,
            max_match_steps=params.max_match_steps,
            detect_cycles=params.detect_cycles,
            strict=params.strict,
        )

    # ===== Pass loop =====

    def apply(self, rule: Rule, word: Word) -> RuleOutcome:
        """
        Apply `rule` to `word` in place.

        Returns:
            RuleOutcome with one ChangeRecord per changed site
        """
        outcome = RuleOutcome(rule=rule)
        if not rule.flags.persistent:
            outcome.passes = 1
            self._pass(rule, word, outcome, pass_number=1)
            return outcome

        bound = rule.flags.max_passes or self.max_passes
        seen: Set[WordState] = {word.snapshot()} if self.detect_cycles else set()
        passes = 0

        while True:
            passes += 1
            if self.strict and passes > bound:
                raise InvariantViolation(f"pass counter {passes} exceeded bound {bound}")
            outcome.passes = passes
            changed = self._pass(rule, word, outcome, pass_number=passes)
            if not changed:
                outcome.stop_reason = "stable"
                break
            if self.detect_cycles:
                state = word.snapshot()
                if state in seen:
                    outcome.stop_reason = "cycle"
                    self._attach(outcome, Diagnostic(
                        DiagnosticKind.CYCLE,
                        f"word returned to an earlier form {str(state)!r} after {passes} passes",
                        line=rule.line, rule=rule.name,
                    ))
                    break
                seen.add(state)
            if passes >= bound:
                if self._would_change(rule, word):
                    outcome.stop_reason = "truncated"
                    self._attach(outcome, Diagnostic(
                        DiagnosticKind.TRUNCATED,
                        f"stopped after {bound} passes with sites still applicable",
                        line=rule.line, rule=rule.name,
                    ))
                else:
                    outcome.stop_reason = "stable"
                break

        logger.debug(f"`{rule}` finished after {passes} passes ({outcome.stop_reason})")
        return outcome

    def _would_change(self, rule: Rule, word: Word) -> bool:
        """Probe: would one more pass change the word?"""
        probe = RuleOutcome(rule=rule)
        return self._pass(rule, word.copy(), probe, pass_number=0)

    def _attach(self, outcome: RuleOutcome, diagnostic: Diagnostic) -> None:
        """Attach a run-level diagnostic to the outcome and all of its records."""
        outcome.diagnostics.append(diagnostic)
        outcome.changes = [
            replace(record, diagnostics=record.diagnostics + (diagnostic,))
            for record in outcome.changes
        ]

    # ===== Single pass (state machine) =====

    def _pass(self, rule: Rule, word: Word, outcome: RuleOutcome, pass_number: int) -> bool:
        """Run one scan over the word. Returns True if anything changed."""
        rtl = rule.flags.rtl
        allowed = self._allowed_starts(rule, word, outcome)
        cursor = len(word) if rtl else 0
        limit = len(word)  # right-to-left: start of the previous site
        delta = 0  # length change left of the cursor (left-to-right only)
        changed = False
        site: Optional[Site] = None
        skip_diagnostic: Optional[Diagnostic] = None
        state = EngineState.SCANNING

        while state is not EngineState.DONE:
            if state is EngineState.SCANNING:
                if cursor < 0 or cursor > len(word):
                    state = EngineState.DONE
                else:
                    state = EngineState.MATCHING

            elif state is EngineState.MATCHING:
                outcome.sites_examined += 1
                try:
                    site = self._find_site(rule, word, cursor, limit, allowed, delta)
                except MatchBudgetExceeded as e:
                    site = None
                    skip_diagnostic = Diagnostic(
                        DiagnosticKind.MATCH_BUDGET, str(e), line=rule.line, rule=rule.name)
                    state = EngineState.SKIP
                    continue
                state = EngineState.EXCEPTION_CHECK if site is not None else EngineState.ADVANCE

            elif state is EngineState.EXCEPTION_CHECK:
                try:
                    vetoed = self._vetoed(site, word)
                except MatchBudgetExceeded as e:
                    skip_diagnostic = Diagnostic(
                        DiagnosticKind.MATCH_BUDGET, str(e), line=rule.line, rule=rule.name)
                    state = EngineState.SKIP
                    continue
                if vetoed:
                    logger.debug(f"`{rule}`: exception vetoes site at {site.match.start}")
                    outcome.sites_vetoed += 1
                    state = EngineState.SKIP
                else:
                    state = EngineState.APPLY

            elif state is EngineState.APPLY:
                m = site.match
                try:
                    replacement = self._build(rule, site, word)
                except SiteSkipped as e:
                    skip_diagnostic = e.diagnostic
                    state = EngineState.SKIP
                    continue
                before_symbols = word[m.start:m.end]
                if replacement != list(before_symbols):
                    before = word.snapshot()
                    self._check_site(word, m, replacement)
                    word.replace(m.start, m.end, replacement)
                    record = ChangeRecord(
                        rule=rule,
                        span=m.span,
                        before=before,
                        after=word.snapshot(),
                        pass_number=pass_number,
                    )
                    if pass_number:
                        outcome.changes.append(record)
                        logger.info(f"`{before}` -> `{rule}` -> `{record.after}`")
                    changed = True
                width = len(replacement)
                if rtl:
                    limit = m.start
                    cursor = m.start - 1
                else:
                    delta += width - len(m)
                    limit = len(word)
                    cursor = m.start + width + (1 if len(m) == 0 else 0)
                site = None
                state = EngineState.SCANNING

            elif state is EngineState.SKIP:
                if skip_diagnostic is not None:
                    outcome.sites_skipped += 1
                    if pass_number and skip_diagnostic not in outcome.diagnostics:
                        outcome.diagnostics.append(skip_diagnostic)
                    logger.debug(f"`{rule}`: site at {cursor} skipped ({skip_diagnostic.kind.value})")
                if site is not None:
                    m = site.match
                    if rtl:
                        limit = m.start
                        cursor = m.start - 1
                    else:
                        cursor = max(m.end, m.start + 1)
                else:
                    cursor += -1 if rtl else 1
                site = None
                skip_diagnostic = None
                state = EngineState.SCANNING

            elif state is EngineState.ADVANCE:
                cursor += -1 if rtl else 1
                state = EngineState.SCANNING

        return changed

    # ===== Matching =====

    def _allowed_starts(self, rule: Rule, word: Word, outcome: RuleOutcome) -> Dict[int, Set[int]]:
        """Start positions selected by `@` indices, per branch, at pass start."""
        allowed = {}
        for b, branch in enumerate(rule.branches):
            if branch.indices is None:
                continue
            try:
                matches = find_all(branch.target, word.symbols, budget=self.max_match_steps)
            except MatchBudgetExceeded:
                matches = []
            allowed[b] = {m.start for m in select(matches, branch.indices)}
        return allowed

    def _find_site(
        self,
        rule: Rule,
        word: Word,
        cursor: int,
        limit: int,
        allowed: Dict[int, Set[int]],
        delta: int,
    ) -> Optional[Site]:
        """First branch (in declaration order) whose target and environment hold at cursor."""
        symbols = word.symbols
        for b, branch in enumerate(rule.branches):
            if b in allowed and cursor - delta not in allowed[b]:
                continue
            m = match(branch.target, symbols, cursor, limit=limit, budget=self.max_match_steps)
            if m is None:
                continue
            target = symbols[m.start:m.end]
            for p, predicate in enumerate(rule.predicates):
                if not predicate.environments:
                    binds = m.bindings
                else:
                    binds = match_any(predicate.environments, symbols, m.start, m.end,
                                      bindings=m.bindings, target=target,
                                      budget=self.max_match_steps)
                if binds is not None:
                    return Site(b, m, predicate, p, dict(binds))
        return None

    def _vetoed(self, site: Site, word: Word) -> bool:
        if not site.predicate.exceptions:
            return False
        m = site.match
        symbols = word.symbols
        return match_any(site.predicate.exceptions, symbols, m.start, m.end,
                         bindings=site.bindings, target=symbols[m.start:m.end],
                         budget=self.max_match_steps) is not None

    # ===== Replacement =====

    def _build(self, rule: Rule, site: Site, word: Word) -> List[str]:
        """Symbols that replace the matched span."""
        pattern: Pattern = site.predicate.replacement_for(site.branch)
        m = site.match
        target = word[m.start:m.end]
        out: List[str] = []
        for element in pattern.elements:
            if isinstance(element, Literal):
                out.append(element.symbol)
            elif isinstance(element, Null):
                pass
            elif isinstance(element, TargetRef):
                out.extend(reversed(target) if element.reversed else target)
            elif isinstance(element, Ditto):
                if out:
                    out.append(out[-1])
                elif m.start > 0:
                    out.append(word[m.start - 1])
            elif isinstance(element, CategoryRef):
                out.extend(self._correlate(rule, site, element))
            else:
                raise SiteSkipped(self._diagnostic(
                    rule, DiagnosticKind.INVALID_REPLACEMENT,
                    f"{element} cannot be written into a word"))
        return out

    def _correlate(self, rule: Rule, site: Site, element: CategoryRef) -> Sequence[str]:
        cat = element.category
        if cat is None:
            raise SiteSkipped(self._diagnostic(
                rule, DiagnosticKind.UNDEFINED_CATEGORY,
                f"category {element.name!r} is not defined"))
        index = site.bindings.get(element.slot) if element.slot else None
        if index is None:
            if len(cat) != 1:
                raise SiteSkipped(self._diagnostic(
                    rule, DiagnosticKind.UNCORRELATED_CATEGORY,
                    f"{element} has no category to take its member from"))
            index = 0
        elif (site.predicate_index, site.branch, element.slot) in rule.mismatched or index >= len(cat):
            raise SiteSkipped(self._diagnostic(
                rule, DiagnosticKind.CORRELATION_MISMATCH,
                f"{element} does not have as many members as the category it is paired with"))
        return [s for s in cat[index] if s is not BOUNDARY]

    @staticmethod
    def _diagnostic(rule: Rule, kind: DiagnosticKind, message: str) -> Diagnostic:
        return Diagnostic(kind, message, line=rule.line, rule=rule.name)

    def _check_site(self, word: Word, m: Match, replacement: List[str]) -> None:
        if not self.strict:
            return
        if not 0 <= m.start <= m.end <= len(word):
            raise InvariantViolation(f"span {m.span} outside word of length {len(word)}")
        for symbol in replacement:
            if not isinstance(symbol, str):
                raise InvariantViolation(f"replacement would write {symbol!r} into the word")
