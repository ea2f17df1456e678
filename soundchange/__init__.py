"""
Sound Change Engine

Applies ordered phonological sound change rules to words and lexicons.

    V = a, e, i, o, u
    T = p, t, k
    D = b, d, g
    [T] > [D] / [V]_[V]

Main components:
- core: Categories, words, pattern matcher, rule engine, ruleset driver
- compiler: Rule text → immutable Ruleset
- config: Engine, batch, optional-rule and logging parameters
"""

__version__ = "0.1.0"
__author__ = "Sound Change Team"

from .core import (
    CategoryTable, ChangeRecord, CompileError, Diagnostic, DiagnosticKind,
    InvariantViolation, Word, WordState, Ruleset, ApplyResult, LexiconResult,
    apply, apply_lexicon,
)
from .compiler import compile, compile_rule, evolve
from .config import SoundChangeConfig

__all__ = [
    "CategoryTable",
    "ChangeRecord",
    "CompileError",
    "Diagnostic",
    "DiagnosticKind",
    "InvariantViolation",
    "Word",
    "WordState",
    "Ruleset",
    "ApplyResult",
    "LexiconResult",
    "apply",
    "apply_lexicon",
    "compile",
    "compile_rule",
    "evolve",
    "SoundChangeConfig",
]
