"""
Errors and diagnostics for the sound change engine.

Two kinds of trouble are distinguished:

- Fatal errors (exceptions): malformed rule text raises CompileError and the
  whole compilation fails. InvariantViolation marks an engine defect and is
  only raised when strict checking is enabled.
- Non-fatal diagnostics: semantically questionable but parseable rules
  (undefined categories, correlation mismatches, ...) compile fine and carry
  a Diagnostic. At apply time the affected site is skipped and the run
  continues.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SoundChangeError(Exception):
    """Base class for all sound change errors."""


class CompileError(SoundChangeError):
    """Malformed rule source text.

    Attributes:
        message: What went wrong
        line: 1-based source line
        column: 0-based column within the line
    """

    def __init__(self, message: str, line: int = 0, column: int = 0):
        super().__init__(f"Line {line}, Col {column}: {message}")
        self.message = message
        self.line = line
        self.column = column


class UndefinedCategory(SoundChangeError, KeyError):
    """A category name was resolved but never defined."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"category {self.name!r} is not defined"


class MatchBudgetExceeded(SoundChangeError):
    """The matcher used more steps than the configured budget."""

    def __init__(self, steps: int):
        super().__init__(f"match abandoned after {steps} steps")
        self.steps = steps


class InvariantViolation(SoundChangeError, AssertionError):
    """An engine invariant was broken. This is a bug, not a rule problem."""


class DiagnosticKind(Enum):
    """Kinds of non-fatal conditions."""
    UNDEFINED_CATEGORY = "undefined_category"
    CORRELATION_MISMATCH = "correlation_mismatch"
    UNCORRELATED_CATEGORY = "uncorrelated_category"
    BRANCH_MISMATCH = "branch_mismatch"
    INVALID_REPLACEMENT = "invalid_replacement"
    UNDEFINED_RULE = "undefined_rule"
    NONDETERMINISTIC_FLAG = "nondeterministic_flag"
    MATCH_BUDGET = "match_budget"
    TRUNCATED = "truncated"
    CYCLE = "cycle"


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal condition attached to a rule, a ruleset or a change."""
    kind: DiagnosticKind
    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    rule: Optional[str] = None

    def __str__(self) -> str:
        where = f"line {self.line}: " if self.line is not None else ""
        return f"{where}{self.kind.value}: {self.message}"


class SiteSkipped(SoundChangeError):
    """Raised inside the engine when a single site cannot be applied."""

    def __init__(self, diagnostic: Diagnostic):
        super().__init__(str(diagnostic))
        self.diagnostic = diagnostic
