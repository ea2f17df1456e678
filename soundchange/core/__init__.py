"""
Core module for the sound change engine.

Contains:
- CategoryTable: Named, ordered symbol categories
- Word: Mutable symbol sequence the rules rewrite
- Pattern: Immutable pattern IR
- Rule / Block: Compiled rules and rule groups
- matcher: Backtracking pattern VM
- RuleEngine: Applies one rule to one word
- Ruleset: Compiled ruleset and the driver over words and lexicons
"""

from .categories import BOUNDARY, Category, CategoryTable
from .diagnostics import (
    CompileError, Diagnostic, DiagnosticKind, InvariantViolation,
    MatchBudgetExceeded, SoundChangeError, UndefinedCategory,
)
from .words import Word, WordState, segment
from .patterns import Pattern
from .rules import Block, Branch, Flags, Predicate, Rule, RuleFlag
from .matcher import Match, match, find_all
from .engine import ChangeRecord, EngineState, RuleEngine, RuleOutcome
from .ruleset import (
    ApplyResult, ApplyStats, Driver, LexiconResult, Ruleset,
    apply, apply_lexicon,
)

__all__ = [
    "BOUNDARY",
    "Category",
    "CategoryTable",
    # Errors and diagnostics
    "CompileError",
    "Diagnostic",
    "DiagnosticKind",
    "InvariantViolation",
    "MatchBudgetExceeded",
    "SoundChangeError",
    "UndefinedCategory",
    # Words
    "Word",
    "WordState",
    "segment",
    # Rule IR
    "Pattern",
    "Block",
    "Branch",
    "Flags",
    "Predicate",
    "Rule",
    "RuleFlag",
    # Matching and application
    "Match",
    "match",
    "find_all",
    "ChangeRecord",
    "EngineState",
    "RuleEngine",
    "RuleOutcome",
    # Driver
    "ApplyResult",
    "ApplyStats",
    "Driver",
    "LexiconResult",
    "Ruleset",
    "apply",
    "apply_lexicon",
]
