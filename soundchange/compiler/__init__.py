"""
Rule compiler: source text → Ruleset.

Contains:
- lexer: Line classification and tokenizer
- parser: Patterns, rules and flags → IR
- compiler: Categories, metarules, blocks → Ruleset
"""

from .compiler import RulesetCompiler, compile, compile_rule, evolve
from .parser import parse_flags, parse_rule

__all__ = [
    "RulesetCompiler",
    "compile",
    "compile_rule",
    "evolve",
    "parse_flags",
    "parse_rule",
]
