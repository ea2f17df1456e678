"""
Tests for the rule engine and the ruleset driver.
"""

import threading

import pytest

from soundchange import (
    CategoryTable, DiagnosticKind, InvariantViolation, Word, apply, apply_lexicon,
    compile, compile_rule, evolve,
)
from soundchange.config import (
    BatchParams, EngineParams, OptionalParams, SoundChangeConfig,
    batch_config, reproducible_config,
)
from soundchange.core.engine import RuleEngine
from soundchange.core.matcher import Match


CATEGORIES = """
V = a, e, i, o, u
P = p, t, k
B = b, d, g
"""


def run(source, word, config=None):
    """Compile and apply, returning the output string."""
    return apply(compile(source), word, config).text


def kinds(diagnostics):
    return {d.kind for d in diagnostics}


class TestRuleEngine:
    """Tests for RuleEngine class."""

    def setup_method(self):
        self.table = CategoryTable({"V": "aeiou", "P": "ptk", "B": "bdg"})
        self.engine = RuleEngine()

    def test_single_change(self):
        """Test one site is rewritten in place with a change record."""
        rule = compile_rule("[P] > [B] / [V]_[V]", self.table)
        word = Word.from_string("apa")
        outcome = self.engine.apply(rule, word)
        assert str(word) == "aba"
        assert len(outcome.changes) == 1
        record = outcome.changes[0]
        assert record.span == (1, 2)
        assert str(record.before) == "apa"
        assert str(record.after) == "aba"
        assert record.rule is rule

    def test_no_match_no_records(self):
        """Test a rule that never matches leaves the word alone."""
        rule = compile_rule("x > y", self.table)
        word = Word.from_string("apa")
        outcome = self.engine.apply(rule, word)
        assert str(word) == "apa"
        assert not outcome.changed

    def test_identity_is_not_a_change(self):
        """Test a replacement equal to the target records nothing."""
        rule = compile_rule("[V] > [V]", self.table)
        outcome = self.engine.apply(rule, Word.from_string("apa"))
        assert outcome.changes == []

    def test_no_self_retrigger(self):
        """Test a non-persistent rule does not re-match its own output."""
        rule = compile_rule("a > aa", self.table)
        word = Word.from_string("a")
        self.engine.apply(rule, word)
        assert str(word) == "aa"

    def test_all_sites_changed_left_to_right(self):
        """Test every non-overlapping site is rewritten in one pass."""
        rule = compile_rule("aa > b", self.table)
        word = Word.from_string("aaaaa")
        self.engine.apply(rule, word)
        assert str(word) == "bba"

    def test_rtl(self):
        """Test right-to-left scanning picks sites from the end."""
        word = Word.from_string("aaa")
        self.engine.apply(compile_rule("aa > b", self.table), word)
        assert str(word) == "ba"
        word = Word.from_string("aaa")
        self.engine.apply(compile_rule("aa > b rtl", self.table), word)
        assert str(word) == "ab"

    def test_exception_vetoes_site(self):
        """Test an exception wins over a matching environment."""
        rule = compile_rule("a > e / _[P] ! _t", self.table)
        word = Word.from_string("apat")
        self.engine.apply(rule, word)
        assert str(word) == "epat"

    def test_first_branch_wins(self):
        """Test branches are tried in declaration order at each site."""
        rule = compile_rule("ab, a > x, y", self.table)
        word = Word.from_string("aba")
        self.engine.apply(rule, word)
        assert str(word) == "xy"

    def test_otherwise_predicate(self):
        """Test the second predicate applies where the first environment fails."""
        rule = compile_rule("a > e / _i > o", self.table)
        word = Word.from_string("aia")
        self.engine.apply(rule, word)
        assert str(word) == "eio"

    def test_target_indices(self):
        """Test @ indices select which matches change."""
        word = Word.from_string("banana")
        self.engine.apply(compile_rule("a@2 > o", self.table), word)
        assert str(word) == "banona"
        word = Word.from_string("banana")
        self.engine.apply(compile_rule("a@-1 > o", self.table), word)
        assert str(word) == "banano"

    def test_indices_after_length_change(self):
        """Test selected matches are found again after earlier insertions."""
        word = Word.from_string("banana")
        self.engine.apply(compile_rule("a@1|3 > aa", self.table), word)
        assert str(word) == "baananaa"

    def test_lengthening_reaches_word_end(self):
        """Test sites pushed right by longer replacements are still rewritten."""
        word = Word.from_string("aa")
        self.engine.apply(compile_rule("a > bb", self.table), word)
        assert str(word) == "bbbb"
        word = Word.from_string("xaxaa")
        outcome = self.engine.apply(compile_rule("a > bb", self.table), word)
        assert str(word) == "xbbxbbbb"
        assert [record.span for record in outcome.changes] == [(1, 2), (4, 5), (6, 7)]

    def test_lengthening_rtl(self):
        """Test a longer replacement scanning right to left."""
        word = Word.from_string("aba")
        self.engine.apply(compile_rule("a > cc rtl", self.table), word)
        assert str(word) == "ccbcc"

    def test_epenthesis(self):
        """Test insertion at a word edge."""
        word = Word.from_string("st")
        self.engine.apply(compile_rule("+ e / #_s", self.table), word)
        assert str(word) == "est"

    def test_paragoge(self):
        """Test `_#` inserts at the end of the word only."""
        word = Word.from_string("ab")
        self.engine.apply(compile_rule("+ e / _#", self.table), word)
        assert str(word) == "abe"

    def test_prothesis(self):
        """Test `#_` inserts at the start of the word only."""
        word = Word.from_string("ab")
        outcome = self.engine.apply(compile_rule("+ e / #_", self.table), word)
        assert str(word) == "eab"
        assert len(outcome.changes) == 1
        assert str(word).endswith("ab")

    def test_epenthesis_does_not_repeat(self):
        """Test an insertion does not fire again at the same place."""
        word = Word.from_string("ab")
        self.engine.apply(compile_rule("[] > x / a_", self.table), word)
        assert str(word) == "axb"

    def test_deletion(self):
        """Test deletion of every matching symbol."""
        word = Word.from_string("ahah")
        self.engine.apply(compile_rule("- h", self.table), word)
        assert str(word) == "aa"

    def test_target_reference(self):
        """Test % in an environment matches a copy of the target."""
        word = Word.from_string("aa")
        self.engine.apply(compile_rule("a > e / %_", self.table), word)
        assert str(word) == "ae"

    def test_metathesis(self):
        """Test < writes the target reversed."""
        word = Word.from_string("ask")
        self.engine.apply(compile_rule("sk > <", self.table), word)
        assert str(word) == "aks"

    def test_gemination(self):
        """Test \" repeats the symbol before it."""
        word = Word.from_string("ata")
        self.engine.apply(compile_rule('t > t" / [V]_[V]', self.table), word)
        assert str(word) == "atta"

    def test_explicit_correlation_from_environment(self):
        """Test a tag bound in the environment is used by the replacement."""
        rule = compile_rule("x > [V]^1 / [V]^1_", self.table)
        word = Word.from_string("ox")
        self.engine.apply(rule, word)
        assert str(word) == "oo"

    def test_persistent_until_stable(self):
        """Test a persistent rule repeats until nothing changes."""
        rule = compile_rule("b > a / _a repeat", self.table)
        word = Word.from_string("bbba")
        outcome = self.engine.apply(rule, word)
        assert str(word) == "aaaa"
        assert outcome.stop_reason == "stable"
        assert outcome.passes == 4

    def test_persistent_truncated(self):
        """Test a never-settling persistent rule stops at its bound."""
        rule = compile_rule("x > xx repeat:5", self.table)
        word = Word.from_string("x")
        outcome = self.engine.apply(rule, word)
        assert len(word) == 32
        assert outcome.passes == 5
        assert outcome.truncated
        assert all(record.truncated for record in outcome.changes)
        assert DiagnosticKind.TRUNCATED in kinds(outcome.diagnostics)

    def test_engine_default_bound(self):
        """Test the engine bound applies when the rule gives none."""
        rule = compile_rule("x > xx repeat", self.table)
        word = Word.from_string("x")
        outcome = RuleEngine(max_passes=3).apply(rule, word)
        assert outcome.passes == 3
        assert outcome.truncated

    def test_cycle_detected(self):
        """Test a rule that returns the word to an earlier form stops."""
        rule = compile_rule("a, b > b, a repeat", self.table)
        word = Word.from_string("ab")
        outcome = self.engine.apply(rule, word)
        assert outcome.stop_reason == "cycle"
        assert DiagnosticKind.CYCLE in kinds(outcome.diagnostics)
        assert outcome.passes == 2

    def test_cycle_is_unsettled(self):
        """Test an oscillating rule is reported unsettled but not truncated."""
        result = apply(compile("a, b > b, a repeat"), "ab")
        assert result.text == "ab"
        assert not result.truncated
        assert result.unsettled
        assert all(record.unsettled and not record.truncated for record in result.trace)

    def test_correlation_mismatch_skips_site(self):
        """Test a mismatched pairing skips the site but not the run."""
        rule = compile_rule("[V] > [B]", self.table)
        word = Word.from_string("pa")
        outcome = self.engine.apply(rule, word)
        assert str(word) == "pa"
        assert DiagnosticKind.CORRELATION_MISMATCH in kinds(outcome.diagnostics)

    def test_undefined_replacement_category_skips_site(self):
        """Test an undefined replacement category skips the site."""
        rule = compile_rule("a > [X]", self.table)
        word = Word.from_string("a")
        outcome = self.engine.apply(rule, word)
        assert str(word) == "a"
        assert DiagnosticKind.UNDEFINED_CATEGORY in kinds(outcome.diagnostics)

    def test_uncorrelated_category_skips_site(self):
        """Test a replacement category with nothing to pair with."""
        rule = compile_rule("x > [B]", self.table)
        outcome = self.engine.apply(rule, Word.from_string("x"))
        assert DiagnosticKind.UNCORRELATED_CATEGORY in kinds(outcome.diagnostics)

    def test_match_budget_skips_site(self):
        """Test an exhausted step budget skips the site with a diagnostic."""
        rule = compile_rule("a**b > x", self.table)
        word = Word.from_string("a" * 40)
        outcome = RuleEngine(max_match_steps=20).apply(rule, word)
        assert str(word) == "a" * 40
        assert DiagnosticKind.MATCH_BUDGET in kinds(outcome.diagnostics)

    def test_strict_invariants(self):
        """Test strict mode fails loudly on an impossible site, lax mode does not."""
        word = Word.from_string("a")
        with pytest.raises(InvariantViolation):
            RuleEngine()._check_site(word, Match(0, 3), ["b"])
        with pytest.raises(InvariantViolation):
            RuleEngine()._check_site(word, Match(0, 1), [None])
        RuleEngine(strict=False)._check_site(word, Match(0, 3), ["b"])


class TestApply:
    """Tests for the ruleset driver on single words."""

    def test_empty_ruleset(self):
        """Test an empty ruleset returns the word unchanged with an empty trace."""
        word, trace = apply(compile(""), "apa")
        assert str(word) == "apa"
        assert trace == []

    def test_voicing(self):
        """Test intervocalic voicing with correlated categories."""
        word, trace = apply(compile(CATEGORIES + "[P] > [B] / [V]_[V]"), "apa")
        assert str(word) == "aba"
        assert len(trace) == 1

    def test_rules_run_in_order(self):
        """Test each rule sees the output of the previous one."""
        result = apply(compile("a > e\ne > i"), "a")
        assert result.text == "i"
        assert [str(r.after) for r in result.trace] == ["e", "i"]
        assert result.changed

    def test_graphs_segment_input(self):
        """Test string input is segmented with the ruleset's graphs."""
        assert run("graphs = th\nh > x", "thin") == "thin"
        assert run("h > x", "thin") == "txin"

    def test_ignore(self):
        """Test ignored rules never run."""
        assert run("a > b ignore", "a") == "a"

    def test_optional_rules(self):
        """Test optional rules follow the configuration."""
        source = "a > b optional\nc > d optional:late"
        assert run(source, "ac") == "bd"
        assert run(source, "ac", reproducible_config()) == "ac"
        config = SoundChangeConfig(optional=OptionalParams(disabled_classes=("late",)))
        assert run(source, "ac", config) == "bc"

    def test_ditto(self):
        """Test ditto runs only after a change by the previous rule."""
        source = "x > y\na > b ditto"
        assert run(source, "a") == "a"
        assert run(source, "xa") == "yb"
        assert run("x > y\na > b !ditto", "a") == "b"

    def test_stop(self):
        """Test stop ends the ruleset when its rule changed the word."""
        result = apply(compile("a > b stop\nb > c"), "a")
        assert result.text == "b"
        assert result.stopped
        assert run("a > b stop\nb > c", "b") == "c"

    def test_persist(self):
        """Test persist re-runs a rule after the following ones."""
        assert run("a > b\nc > a\nd > a", "cd") == "aa"
        assert run("a > b persist:3\nc > a\nd > a", "cd") == "bb"

    def test_defined_rule_runs_where_inserted(self):
        """Test !def stores a rule that only !rule runs."""
        assert run("!def: v\np > b", "apa") == "apa"
        assert run("!def: v\np > b\n!rule: v", "apa") == "aba"

    def test_persistent_block(self):
        """Test a persistent block repeats its rules until stable."""
        assert run("!block\nb > a / _a", "bbba") == "bbaa"
        assert run("!block repeat\nb > a / _a", "bbba") == "aaaa"

    def test_block_truncated(self):
        """Test a block that never settles is marked truncated."""
        result = apply(compile("!block repeat:3\nx > xx"), "x")
        assert result.text == "x" * 8
        assert result.truncated
        assert all(r.truncated for r in result.trace)

    def test_diagnostics_do_not_abort(self):
        """Test a skipped site does not stop later rules."""
        result = apply(compile(CATEGORIES + "[V] > [B]\np > f"), "pa")
        assert result.text == "fa"
        assert DiagnosticKind.CORRELATION_MISMATCH in kinds(result.diagnostics)

    def test_deterministic(self):
        """Test two compilations of one source give identical words and traces."""
        source = CATEGORIES + "[P] > [B] / [V]_[V]\n[V] > e / _#\n+ a / _#"

        def trace(result):
            return [(r.rule.source, r.span, r.before, r.after) for r in result.trace]

        first = apply(compile(source), "apatak")
        second = apply(compile(source), "apatak")
        assert first.word == second.word
        assert trace(first) == trace(second)
        assert first.text == "abadaka"

    def test_unbounded_wildcard_repeat(self):
        """Test `{**}` repeats an element any number of times."""
        assert run(CATEGORIES + "i > e / _[V]{**}a", "ieea") == "eeea"
        assert run(CATEGORIES + "i > e / _[V]{**?}a", "ia") == "ea"

    def test_accepts_symbol_sequences(self):
        """Test a pre-segmented word is used as is."""
        word, _ = apply(compile("th > f"), ["t", "h", "a"])
        assert str(word) == "fa"

    def test_stats(self):
        """Test per-rule change counts."""
        result = apply(compile("a > e"), "aba")
        assert result.stats.changes == 2
        assert result.stats.changes_by_rule == {"a > e": 2}


class TestApplyLexicon:
    """Tests for lexicon batches."""

    def test_order_kept(self):
        """Test results come back in input order."""
        ruleset = compile(CATEGORIES + "[P] > [B] / [V]_[V]")
        words = ["apa", "ata", "aka", "opo"] * 5
        result = apply_lexicon(ruleset, words, batch_config(workers=4))
        assert result.words == ["aba", "ada", "aga", "obo"] * 5
        assert not result.aborted

    def test_parallel_matches_sequential(self):
        """Test worker count does not change results."""
        ruleset = compile(CATEGORIES + "[P] > [B] / [V]_[V]\nb > v / _#")
        words = ["apab", "tatab", "kikob"]
        sequential = apply_lexicon(ruleset, words)
        parallel = apply_lexicon(ruleset, words, SoundChangeConfig(batch=BatchParams(workers=3)))
        assert sequential.words == parallel.words

    def test_abort_before_start(self):
        """Test words not started when aborted have no result."""
        abort = threading.Event()
        abort.set()
        result = apply_lexicon(compile("a > b"), ["a", "a"], abort=abort)
        assert result.aborted
        assert result.results == [None, None]

    def test_abort_midway(self):
        """Test an abort raised during the run stops the remaining words."""

        class AbortAfter:
            def __init__(self, n):
                self.calls = 0
                self.n = n

            def is_set(self):
                self.calls += 1
                return self.calls > self.n

        result = apply_lexicon(compile("a > b"), ["a", "a", "a"], abort=AbortAfter(2))
        assert result.words == ["b", "b", None]
        assert result.aborted

    def test_evolve(self):
        """Test the compile-and-apply shortcut."""
        assert evolve("[T] > [D] / a_a", ["apa", "ata"], {"T": "ptk", "D": "bdg"}) == ["aba", "ada"]

    def test_engine_params_from_config(self):
        """Test engine parameters flow from the configuration."""
        config = SoundChangeConfig(engine=EngineParams(max_passes=2))
        result = apply(compile("x > xx repeat"), "x", config)
        assert result.text == "xxxx"
        assert result.truncated
