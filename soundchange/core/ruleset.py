"""
Ruleset driver.

Applies a compiled ruleset to words:

    word₀ → rule₁ → word₁ → rule₂ → ... → wordₙ

Each rule sees the output of the previous one. Every change made along the
way is recorded, so the trace of a word is the full derivation. Words of a
lexicon are independent of each other and may be processed in parallel;
results always come back in input order.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
import logging
import time

from ..config import SoundChangeConfig
from .categories import CategoryTable
from .diagnostics import Diagnostic, DiagnosticKind
from .engine import UNSETTLED, ChangeRecord, RuleEngine
from .rules import Block, Flags, Rule
from .words import Word, WordState

logger = logging.getLogger(__name__)

Item = Union[Rule, Block]
WordLike = Union[Word, WordState, str, Sequence[str]]


@dataclass(frozen=True)
class Ruleset:
    """
    Compiled, immutable ruleset. Safe to share between threads.

    Attributes:
        rules: Rules and blocks in execution order
        categories: Frozen category table the rules were compiled against
        graphs: Multi-character graphemes used to segment input strings
        diagnostics: Non-fatal problems found while compiling
        source: Rule text the ruleset was compiled from
    """
    rules: Tuple[Item, ...] = ()
    categories: CategoryTable = field(default_factory=lambda: CategoryTable().freeze())
    graphs: Tuple[str, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()
    source: str = ""

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Item]:
        return iter(self.rules)

    def iter_rules(self) -> Iterator[Rule]:
        """All rules, with blocks flattened."""
        stack = list(reversed(self.rules))
        while stack:
            item = stack.pop()
            if isinstance(item, Block):
                stack.extend(reversed(item.rules))
            else:
                yield item

    def apply(self, word: WordLike, config=None) -> "ApplyResult":
        return apply(self, word, config)

    def apply_lexicon(self, words: Iterable[WordLike], config=None, abort=None) -> "LexiconResult":
        return apply_lexicon(self, words, config, abort)


@dataclass
class ApplyStats:
    """Statistics from applying a ruleset to one word."""
    rules_run: int = 0
    rules_skipped: int = 0
    changes: int = 0
    changes_by_rule: Dict[str, int] = field(default_factory=dict)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def elapsed_time(self) -> float:
        return self.end_time - self.start_time


@dataclass
class ApplyResult:
    """
    Result of applying a ruleset to one word.

    Unpacks as `(word, trace)`:
        word, trace = apply(ruleset, "apa")
    """
    word: WordState
    trace: List[ChangeRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    input: WordState = field(default_factory=WordState)
    stats: ApplyStats = field(default_factory=ApplyStats)
    stopped: bool = False

    def __iter__(self):
        return iter((self.word, self.trace))

    @property
    def text(self) -> str:
        return str(self.word)

    @property
    def changed(self) -> bool:
        return self.word != self.input

    @property
    def truncated(self) -> bool:
        return any(d.kind is DiagnosticKind.TRUNCATED for d in self.diagnostics)

    @property
    def unsettled(self) -> bool:
        """True if a persistent run ended by its bound or by a cycle."""
        return any(d.kind in UNSETTLED for d in self.diagnostics)


@dataclass
class LexiconResult:
    """
    Ordered results of a lexicon run.

    `results[i]` belongs to the i-th input word; it is None if the run was
    aborted before that word started.
    """
    results: List[Optional[ApplyResult]] = field(default_factory=list)
    aborted: bool = False

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[Optional[ApplyResult]]:
        return iter(self.results)

    def __getitem__(self, index) -> Optional[ApplyResult]:
        return self.results[index]

    @property
    def words(self) -> List[Optional[str]]:
        return [r.text if r is not None else None for r in self.results]


@dataclass
class _Run:
    """Mutable state of one word's run through the ruleset."""
    word: Word
    trace: List[ChangeRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    stats: ApplyStats = field(default_factory=ApplyStats)
    stopped: bool = False


class Driver:
    """
    Runs a ruleset's items over a word, honouring the sequencing flags
    (ignore, optional, ditto, stop, persist) and persistent blocks.
    """

    def __init__(self, config=None):
        self.config = config or SoundChangeConfig()
        self.engine = RuleEngine.from_params(self.config.engine)

    def run(self, ruleset: Ruleset, word: Word) -> _Run:
        run = _Run(word=word)
        run.stats.start_time = time.time()
        self._run_items(ruleset.rules, run)
        run.stats.end_time = time.time()
        return run

    def _enabled(self, flags: Flags) -> bool:
        if flags.ignore:
            return False
        if flags.optional and not self.config.optional.allows(flags.optional_class):
            return False
        return True

    def _run_items(self, items: Sequence[Item], run: _Run) -> bool:
        """Run items in order. Returns True if the word changed."""
        any_changed = False
        previous: Optional[bool] = None
        persisting: List[List] = []  # [item, remaining re-runs]

        for item in items:
            flags = item.flags
            if not self._enabled(flags) or (flags.ditto == 1 and not previous) \
                    or (flags.ditto == -1 and previous):
                run.stats.rules_skipped += 1
                previous = False
                continue

            changed = self._run_item(item, run)
            previous = changed
            any_changed |= changed

            for entry in persisting:
                any_changed |= self._run_item(entry[0], run)
                entry[1] -= 1
            persisting = [entry for entry in persisting if entry[1] > 0]
            if flags.persist > 1:
                persisting.append([item, flags.persist - 1])

            if (flags.stop == 1 and changed) or (flags.stop == -1 and not changed):
                logger.debug(f"`{item.name}` stops the ruleset")
                run.stopped = True
            if run.stopped:
                break

        return any_changed

    def _run_item(self, item: Item, run: _Run) -> bool:
        if isinstance(item, Block):
            return self._run_block(item, run)

        outcome = self.engine.apply(item, run.word)
        run.stats.rules_run += 1
        run.trace.extend(outcome.changes)
        for diagnostic in outcome.diagnostics:
            if diagnostic.kind is DiagnosticKind.TRUNCATED:
                logger.warning(f"`{item.name}`: {diagnostic.message}")
            run.diagnostics.append(diagnostic)
        if outcome.changes:
            run.stats.changes += len(outcome.changes)
            run.stats.changes_by_rule[item.name] = \
                run.stats.changes_by_rule.get(item.name, 0) + len(outcome.changes)
        return outcome.changed

    def _run_block(self, block: Block, run: _Run) -> bool:
        if not block.flags.persistent:
            return self._run_items(block.rules, run)

        bound = block.flags.max_passes or self.engine.max_passes
        seen = {run.word.snapshot()}
        first_record = len(run.trace)
        changed = False
        for _ in range(bound):
            if not self._run_items(block.rules, run) or run.stopped:
                return changed or len(run.trace) > first_record
            changed = True
            state = run.word.snapshot()
            if self.engine.detect_cycles and state in seen:
                self._mark(block, run, first_record, DiagnosticKind.CYCLE,
                           f"word returned to an earlier form {str(state)!r}")
                return True
            seen.add(state)

        probe = _Run(word=run.word.copy())
        if self._run_items(block.rules, probe):
            self._mark(block, run, first_record, DiagnosticKind.TRUNCATED,
                       f"stopped after {bound} passes with rules still applicable")
        return changed

    def _mark(self, block: Block, run: _Run, first: int, kind: DiagnosticKind, message: str) -> None:
        """Attach a block-level diagnostic to the block's records."""
        diagnostic = Diagnostic(kind, message, line=block.line, rule=block.name)
        logger.warning(f"`{block.name}`: {message}")
        run.diagnostics.append(diagnostic)
        for i in range(first, len(run.trace)):
            record = run.trace[i]
            if diagnostic not in record.diagnostics:
                run.trace[i] = replace(record, diagnostics=record.diagnostics + (diagnostic,))


def _coerce(ruleset: Ruleset, word: WordLike, config) -> Word:
    if isinstance(word, str):
        separator = config.compiler.separator if config is not None else None
        return Word.from_string(word, ruleset.graphs, separator)
    return Word.coerce(word, ruleset.graphs)


def apply(ruleset: Ruleset, word: WordLike, config=None) -> ApplyResult:
    """
    Apply every rule of `ruleset` to `word` in order.

    Args:
        ruleset: Compiled ruleset
        word: Word, WordState, string (segmented with the ruleset's graphs)
              or sequence of symbols
        config: SoundChangeConfig (defaults if None)

    Returns:
        ApplyResult, unpackable as (word, trace)
    """
    start = _coerce(ruleset, word, config)
    initial = start.snapshot()
    run = Driver(config).run(ruleset, start)
    return ApplyResult(
        word=run.word.snapshot(),
        trace=run.trace,
        diagnostics=run.diagnostics,
        input=initial,
        stats=run.stats,
        stopped=run.stopped,
    )


def apply_lexicon(
    ruleset: Ruleset,
    words: Iterable[WordLike],
    config=None,
    abort=None,
) -> LexiconResult:
    """
    Apply `ruleset` to each word independently.

    Args:
        ruleset: Compiled ruleset
        words: Input words
        config: SoundChangeConfig; `batch.workers > 1` runs words in a thread pool
        abort: Object with `is_set()` (e.g. threading.Event). Checked before
               each word starts; words not yet started when it is set get None.

    Returns:
        LexiconResult in input order
    """
    words = list(words)
    driver = Driver(config)
    workers = driver.config.batch.workers

    def run_one(word: WordLike) -> Optional[ApplyResult]:
        if abort is not None and abort.is_set():
            return None
        start = _coerce(ruleset, word, driver.config)
        initial = start.snapshot()
        run = driver.run(ruleset, start)
        return ApplyResult(
            word=run.word.snapshot(),
            trace=run.trace,
            diagnostics=run.diagnostics,
            input=initial,
            stats=run.stats,
            stopped=run.stopped,
        )

    if workers > 1 and len(words) > 1:
        logger.debug(f"Applying {len(ruleset)} rules to {len(words)} words with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(run_one, words))
    else:
        results = []
        for word in words:
            results.append(run_one(word))

    aborted = abort is not None and abort.is_set() and any(r is None for r in results)
    if aborted:
        logger.info(f"Lexicon run aborted after {sum(r is not None for r in results)} of {len(words)} words")
    return LexiconResult(results=results, aborted=aborted)
