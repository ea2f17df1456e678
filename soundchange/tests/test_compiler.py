"""
Tests for compiler module.
"""

import pytest

from soundchange import CategoryTable, CompileError, DiagnosticKind, compile, compile_rule
from soundchange.core.patterns import CategoryRef, Gap, Literal, Null, OptionalGroup, Repeat
from soundchange.core.rules import Block, GlobalEnvironment, LocalEnvironment, RuleFlag
from soundchange.compiler.lexer import LineKind, TokenType, classify, split_lines, tokenize
from soundchange.compiler.parser import PERSIST_ALL, is_flag_list, parse_flags


CATEGORIES = """
V = a, e, i, o, u
T = p, t, k
D = b, d, g
"""


def kinds(diagnostics):
    return {d.kind for d in diagnostics}


class TestLexer:
    """Tests for line classification and tokens."""

    def test_classify(self):
        """Test each line kind is recognised."""
        assert classify("") is LineKind.BLANK
        assert classify("V = a, e") is LineKind.CATEGORY
        assert classify("V += o") is LineKind.CATEGORY
        assert classify("!block: 2") is LineKind.METARULE
        assert classify("a > b / _c") is LineKind.RULE

    def test_comments_and_columns(self):
        """Test comments are removed and the text column is kept."""
        lines = split_lines("  a > b // note\n\n")
        assert lines[0].text == "a > b"
        assert lines[0].column == 2
        assert lines[1].kind is LineKind.BLANK

    def test_tokens(self):
        """Test control characters and text runs."""
        types = [t.type for t in tokenize("[V]**?_#")]
        assert types == [
            TokenType.LBRACKET, TokenType.TEXT, TokenType.RBRACKET,
            TokenType.DSTAR, TokenType.QUESTION, TokenType.UNDERSCORE,
            TokenType.HASH, TokenType.EOF,
        ]

    def test_escape(self):
        """Test a backslash makes the next character literal."""
        tokens = tokenize("\\_a")
        assert tokens[0].type is TokenType.ESCAPE
        assert tokens[0].value == "_"


class TestFlags:
    """Tests for flag parsing."""

    def test_repeat_with_bound(self):
        """Test repeat:n sets PERSISTENT and the pass bound."""
        flags, _ = parse_flags("repeat:5")
        assert flags.persistent
        assert flags.max_passes == 5

    def test_persistent_alias(self):
        """Test persistent is an alias of repeat."""
        flags, _ = parse_flags("persistent")
        assert flags.has(RuleFlag.PERSISTENT)
        assert flags.max_passes is None

    def test_combined(self):
        """Test several flags separated by ';'."""
        flags, _ = parse_flags("rtl; optional:late; !ditto; stop; persist:3")
        assert flags.rtl
        assert flags.optional
        assert flags.optional_class == "late"
        assert flags.ditto == -1
        assert flags.stop == 1
        assert flags.persist == 3

    def test_persist_without_count(self):
        """Test persist with no count covers the rest of the sequence."""
        flags, _ = parse_flags("persist")
        assert flags.persist == PERSIST_ALL

    def test_chance_is_deterministic_optional(self):
        """Test chance compiles to an optional class with a diagnostic."""
        flags, diagnostics = parse_flags("chance:30")
        assert flags.optional
        assert flags.optional_class == "chance"
        assert kinds(diagnostics) == {DiagnosticKind.NONDETERMINISTIC_FLAG}

    @pytest.mark.parametrize("text", ["frob", "repeat:0", "repeat:1001", "rtl:2", "!rtl", "repeat:x", "rtl;"])
    def test_malformed(self, text):
        """Test malformed flags are compile errors."""
        with pytest.raises(CompileError):
            parse_flags(text)
        assert not is_flag_list(text)


class TestRuleParsing:
    """Tests for single rules."""

    def setup_method(self):
        self.table = CategoryTable({"V": "aeiou", "T": "ptk", "D": "bdg"})

    def test_simple_rule(self):
        """Test target, replacement and local environment."""
        rule = compile_rule("[T] > [D] / [V]_[V]", self.table)
        assert len(rule.branches) == 1
        target = rule.branches[0].target.elements[0]
        assert isinstance(target, CategoryRef)
        assert target.slot == "~0"
        replacement = rule.predicates[0].replacements[0].elements[0]
        assert replacement.slot == "~0"
        env = rule.predicates[0].environments[0][0]
        assert isinstance(env, LocalEnvironment)
        assert not rule.diagnostics

    def test_operators_without_spaces(self):
        """Test operators need no surrounding whitespace."""
        rule = compile_rule("a>b/_c!d_", self.table)
        predicate = rule.predicates[0]
        assert predicate.environments[0][0].right.elements == (Literal("c"),)
        assert predicate.exceptions[0][0].left.elements == (Literal("d"),)

    def test_flags_after_whitespace(self):
        """Test trailing text after whitespace is the flag list."""
        rule = compile_rule("a > b / _c repeat:3; rtl", self.table)
        assert rule.flags.persistent
        assert rule.flags.rtl
        assert rule.flags.max_passes == 3

    def test_bang_exception_vs_flag(self):
        """Test ' !' opens an exception unless a flag list follows."""
        exception = compile_rule("a > b !_c", self.table)
        assert exception.predicates[0].exceptions
        flagged = compile_rule("a > b !ditto", self.table)
        assert flagged.flags.ditto == -1
        assert not flagged.predicates[0].exceptions

    def test_branches_and_indices(self):
        """Test several targets and @ indices (1-based, negative from the end)."""
        rule = compile_rule("a@1|-1, e@2 > o, i", self.table)
        assert rule.branches[0].indices == (0, -1)
        assert rule.branches[1].indices == (1,)
        assert len(rule.predicates[0].replacements) == 2

    def test_otherwise_chain(self):
        """Test '>' may be repeated to give fallback predicates."""
        rule = compile_rule("a > b / _c > d", self.table)
        assert len(rule.predicates) == 2
        assert rule.predicates[1].environments == ()

    def test_epenthesis_and_deletion(self):
        """Test '+' and '-' shorthand."""
        insert = compile_rule("+ e / #_s", self.table)
        assert insert.branches[0].target.elements == (Null(),)
        delete = compile_rule("- h / _#", self.table)
        assert delete.predicates[0].replacements[0].elements == (Null(),)

    def test_global_environment_and_group(self):
        """Test '&' groups and global environments with indices."""
        rule = compile_rule("a > b / _c & n@1", self.table)
        group = rule.predicates[0].environments[0]
        assert isinstance(group[0], LocalEnvironment)
        assert isinstance(group[1], GlobalEnvironment)
        assert group[1].indices == (0,)

    def test_pattern_elements(self):
        """Test gaps, optional groups and repeats."""
        rule = compile_rule("a(b)?c{+}** > x", self.table)
        elements = rule.branches[0].target.elements
        assert isinstance(elements[1], OptionalGroup)
        assert elements[1].lazy
        assert isinstance(elements[2], Repeat)
        assert elements[2].min == 1
        assert isinstance(elements[3], Gap)

    def test_unbounded_wildcard_repeat(self):
        """Test `{**}` and `{**?}` repeat the previous element without bound."""
        rule = compile_rule("i > e / _[V]{**}a", self.table)
        repeat = rule.predicates[0].environments[0][0].right.elements[0]
        assert isinstance(repeat, Repeat)
        assert (repeat.min, repeat.max, repeat.lazy) == (0, None, False)
        lazy = compile_rule("i > e / _[V]{**?}a", self.table)
        assert lazy.predicates[0].environments[0][0].right.elements[0].lazy

    def test_inline_category(self):
        """Test an inline category with a nested named one."""
        rule = compile_rule("[x, [T], #] > y", self.table)
        ref = rule.branches[0].target.elements[0]
        assert len(ref.category) == 5

    def test_undefined_category_diagnostic(self):
        """Test undefined categories compile with a diagnostic."""
        rule = compile_rule("[X] > a", self.table)
        assert DiagnosticKind.UNDEFINED_CATEGORY in kinds(rule.diagnostics)
        assert rule.branches[0].target.elements[0].category is None

    def test_correlation_mismatch_diagnostic(self):
        """Test paired categories of different lengths are reported and disabled."""
        rule = compile_rule("[V] > [D]", self.table)
        assert DiagnosticKind.CORRELATION_MISMATCH in kinds(rule.diagnostics)
        assert (0, 0, "~0") in rule.mismatched

    def test_branch_mismatch_diagnostic(self):
        """Test replacement count neither 1 nor the target count."""
        rule = compile_rule("a, e, i > o, u", self.table)
        assert DiagnosticKind.BRANCH_MISMATCH in kinds(rule.diagnostics)

    def test_invalid_replacement_diagnostic(self):
        """Test a wildcard cannot be written into a word."""
        rule = compile_rule("a > *", self.table)
        assert DiagnosticKind.INVALID_REPLACEMENT in kinds(rule.diagnostics)


class TestCompileErrors:
    """Tests for fatal, positioned errors."""

    @pytest.mark.parametrize("text", [
        "[V > a",
        "a > b)",
        "a >",
        "> b",
        "a > b /",
        "a > b / _c_d",
        "a > b@1",
        "a@x > b",
        "{2}a > b",
        "a > b frob",
        "a b",
    ])
    def test_malformed_rule(self, text):
        """Test malformed rules raise CompileError."""
        with pytest.raises(CompileError):
            compile(text)

    def test_position(self):
        """Test the error names the line and column."""
        with pytest.raises(CompileError) as info:
            compile("V = a, e\n\n  a > b / _c_d")
        error = info.value
        assert error.line == 3
        assert error.column == 12
        assert str(error).startswith("Line 3, Col 12:")

    def test_unknown_metarule(self):
        """Test unknown metarules are fatal."""
        with pytest.raises(CompileError):
            compile("!frobnicate")

    def test_empty_category_member(self):
        """Test an empty member in a category line."""
        with pytest.raises(CompileError):
            compile("V = a,,e")


class TestRuleset:
    """Tests for whole-source compilation."""

    def test_empty_source(self):
        """Test an empty source compiles to an empty ruleset."""
        ruleset = compile("")
        assert len(ruleset) == 0
        assert ruleset.categories.frozen

    def test_categories_and_rules(self):
        """Test category lines feed later rules."""
        ruleset = compile(CATEGORIES + "[T] > [D] / [V]_[V]\n")
        assert len(ruleset) == 1
        assert "V" in ruleset.categories
        assert not ruleset.diagnostics

    def test_initial_categories(self):
        """Test categories passed by the caller."""
        ruleset = compile("[T] > [D]", {"T": "ptk", "D": "bdg"})
        assert not ruleset.diagnostics

    def test_last_definition_wins(self):
        """Test a rule sees the category as defined when it was compiled."""
        ruleset = compile("C = a\nC > x\nC = b\nC > y".replace("C >", "[C] >"))
        first, second = ruleset.rules
        assert first.branches[0].target.elements[0].category.members == (("a",),)
        assert second.branches[0].target.elements[0].category.members == (("b",),)

    def test_category_edits(self):
        """Test += and -= lines."""
        ruleset = compile("V = a, e\nV += i, o\nV -= e")
        assert ruleset.categories.symbols("V") == ["a", "i", "o"]

    def test_graphs(self):
        """Test the graphs category drives segmentation."""
        ruleset = compile("graphs = th\nth > f")
        assert ruleset.graphs == ("th",)
        assert ruleset.rules[0].branches[0].target.elements == (Literal("th"),)

    def test_def_and_rule(self):
        """Test stored rules run only where inserted."""
        ruleset = compile("!def: voice\np > b\n!rule: voice")
        assert len(ruleset) == 1
        assert ruleset.rules[0].source == "p > b"

    def test_undefined_rule(self):
        """Test inserting an unknown rule is a diagnostic."""
        ruleset = compile("!rule: nope")
        assert len(ruleset) == 0
        assert DiagnosticKind.UNDEFINED_RULE in kinds(ruleset.diagnostics)

    def test_blocks(self):
        """Test !block groups the following rules."""
        ruleset = compile("a > b\n!block: 2 repeat\nb > c\nc > d\ne > f")
        assert len(ruleset) == 3
        block = ruleset.rules[1]
        assert isinstance(block, Block)
        assert len(block) == 2
        assert block.flags.persistent
        assert len(list(ruleset.iter_rules())) == 4

    def test_block_too_long(self):
        """Test a block larger than the remaining rules."""
        with pytest.raises(CompileError):
            compile("!block: 3\na > b")

    def test_diagnostics_collected(self):
        """Test rule diagnostics are gathered on the ruleset."""
        ruleset = compile("[X] > a\na > b chance")
        assert kinds(ruleset.diagnostics) == {
            DiagnosticKind.UNDEFINED_CATEGORY,
            DiagnosticKind.NONDETERMINISTIC_FLAG,
        }
