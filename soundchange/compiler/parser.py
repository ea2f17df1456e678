"""
Parser for patterns, rules and flags.

Grammar (whitespace around operators is free):

    rule        := targets ( ">" replacements [ "/" envs ] [ "!" envs ] )+
                 | "+" replacements [ "/" envs ] [ "!" envs ]
                 | "-" targets [ "/" envs ] [ "!" envs ]
    targets     := pattern [ "@" indices ] ( "," pattern [ "@" indices ] )*
    envs        := group ( "," group )*
    group       := env ( "&" env )*
    env         := pattern "_" pattern | pattern [ "@" indices ]
    indices     := int ( "|" int )*
    flags       := flag ( ";" flag )*
    flag        := name [ ":" arg ] | "!" name

Produces the IR in core.patterns / core.rules. Malformed text raises
CompileError; semantic problems become Diagnostics on the rule.
"""

from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.categories import BOUNDARY, Category, CategoryTable, Member
from ..core.diagnostics import CompileError, Diagnostic, DiagnosticKind, UndefinedCategory
from ..core.patterns import (
    Boundary, CategoryRef, Ditto, Element, EMITTABLE, Gap, Literal, Null,
    OptionalGroup, Pattern, Repeat, TargetRef, Wildcard, categories,
)
from ..core.rules import (
    Branch, Flags, GlobalEnvironment, LocalEnvironment, Predicate, Rule, RuleFlag,
)
from ..core.words import segment
from .lexer import Token, TokenType, check_balanced, split_flags, tokenize

T = TokenType

MAX_PASSES_LIMIT = 1000
PERSIST_ALL = 1_000_000  # `persist` without a count: rest of the sequence

TARGET_STOPS = {T.COMMA, T.AT, T.GT, T.SLASH, T.BANG}
REPLACEMENT_STOPS = {T.COMMA, T.AT, T.GT, T.SLASH, T.BANG}
ENV_STOPS = {T.UNDERSCORE, T.COMMA, T.AMP, T.AT, T.GT, T.SLASH, T.BANG}

INDEX = re.compile(r"-?\d+")
NAME = re.compile(r"\w+")

EPENTHESIS_TARGET = Pattern((Null(),))
DELETION_REPLACEMENT = Pattern((Null(),))


# ============================================================================
# Flags
# ============================================================================

FLAG_NAMES = {
    "repeat", "persistent", "rtl", "optional", "chance",
    "ignore", "ditto", "stop", "persist",
}
NEGATABLE = {"ditto", "stop"}
NO_ARGUMENT = {"rtl", "ignore", "ditto", "stop"}


def _number(arg: str, low: int, high: int, name: str, line: int, col: int) -> int:
    if not re.fullmatch(r"\d+", arg):
        raise CompileError(f"flag {name!r} needs a whole number, got {arg!r}", line, col)
    value = int(arg)
    if not low <= value <= high:
        raise CompileError(f"flag {name!r} must be between {low} and {high}, got {value}", line, col)
    return value


def parse_flags(text: str, line: int = 0, column: int = 0) -> Tuple[Flags, List[Diagnostic]]:
    """
    Parse a `;`-separated flag list.

    Returns:
        (Flags, diagnostics)

    Raises:
        CompileError: unknown flag, bad argument or out of range number
    """
    bits = RuleFlag.NONE
    values: Dict[str, object] = {}
    diagnostics: List[Diagnostic] = []
    offset = 0

    for part in text.split(";"):
        col = column + offset + (len(part) - len(part.lstrip()))
        offset += len(part) + 1
        item = part.strip()
        if not item:
            raise CompileError("empty flag", line, col)

        negated = item.startswith("!")
        if negated:
            item = item[1:].strip()
        name, sep, arg = item.partition(":")
        name, arg = name.strip(), arg.strip()

        if name not in FLAG_NAMES:
            raise CompileError(f"unknown flag {name!r}", line, col)
        if negated and name not in NEGATABLE:
            raise CompileError(f"flag {name!r} cannot be negated", line, col)
        if sep and not arg:
            raise CompileError(f"flag {name!r} is missing its argument", line, col)
        if arg and name in NO_ARGUMENT:
            raise CompileError(f"flag {name!r} takes no argument", line, col)

        if name in ("repeat", "persistent"):
            bits |= RuleFlag.PERSISTENT
            if arg:
                values["max_passes"] = _number(arg, 1, MAX_PASSES_LIMIT, name, line, col)
        elif name == "rtl":
            bits |= RuleFlag.RTL
        elif name == "optional":
            bits |= RuleFlag.OPTIONAL
            if arg:
                if not NAME.fullmatch(arg):
                    raise CompileError(f"bad optional class {arg!r}", line, col)
                values["optional_class"] = arg
        elif name == "chance":
            if arg:
                _number(arg, 0, 100, name, line, col)
            bits |= RuleFlag.OPTIONAL
            values["optional_class"] = "chance"
            diagnostics.append(Diagnostic(
                DiagnosticKind.NONDETERMINISTIC_FLAG,
                "'chance' is applied deterministically as optional class 'chance'",
                line=line, column=col,
            ))
        elif name == "ignore":
            bits |= RuleFlag.IGNORE
        elif name in ("ditto", "stop"):
            values[name] = -1 if negated else 1
        elif name == "persist":
            values["persist"] = _number(arg, 1, PERSIST_ALL, name, line, col) if arg else PERSIST_ALL

    return Flags(bits=bits, **values), diagnostics


def is_flag_list(text: str) -> bool:
    try:
        parse_flags(text)
    except CompileError:
        return False
    return True


# ============================================================================
# Patterns
# ============================================================================

class PatternParser:
    """
    Recursive descent over a token stream.

    Example:
        parser = PatternParser(tokenize("[V]_#"), table)
        left = parser.pattern(ENV_STOPS)
    """

    def __init__(
        self,
        tokens: List[Token],
        table: CategoryTable,
        graphs: Sequence[str] = (),
        line: int = 0,
        source: str = "",
    ):
        self.tokens = tokens
        self.pos = 0
        self.table = table
        self.graphs = tuple(graphs)
        self.line = line
        self.source = source
        self.diagnostics: List[Diagnostic] = []

    # --- token helpers ---

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.peek()
        if tok.type is not T.EOF:
            self.pos += 1
        return tok

    def at(self, *types: TokenType) -> bool:
        return self.peek().type in types

    def expect(self, kind: TokenType, what: str) -> Token:
        if not self.at(kind):
            raise self.error(f"expected {what}")
        return self.advance()

    def error(self, message: str, token: Optional[Token] = None) -> CompileError:
        token = token or self.peek()
        if token.type is T.EOF and "end of rule" not in message:
            message += " at end of rule"
        return CompileError(message, token.line or self.line, token.col)

    def diagnose(self, kind: DiagnosticKind, message: str, token: Optional[Token] = None) -> None:
        token = token or self.peek()
        self.diagnostics.append(Diagnostic(
            kind, message, line=self.line, column=token.col, rule=self.source or None))

    # --- patterns ---

    def pattern(self, stops: Iterable[TokenType]) -> Pattern:
        stops = set(stops) | {T.EOF}
        elements: List[Element] = []
        while not self.at(*stops):
            if self.at(T.LBRACE):
                if not elements:
                    raise self.error("'{' has nothing to repeat")
                elements[-1] = self.repeat(elements[-1])
                continue
            elements.extend(self.element())
        return Pattern(tuple(elements))

    def element(self) -> List[Element]:
        tok = self.peek()
        kind = tok.type

        if kind is T.TEXT:
            self.advance()
            return [Literal(s) for s in segment(tok.value, self.graphs)]
        if kind is T.ESCAPE:
            self.advance()
            return [Literal(tok.value)]
        if kind is T.LBRACKET:
            return [self.category()]
        if kind in (T.STAR, T.DSTAR):
            self.advance()
            lazy = self._lazy()
            return [Gap(lazy) if kind is T.DSTAR else Wildcard()]
        if kind is T.LPAREN:
            self.advance()
            inner = self.pattern({T.RPAREN})
            self.expect(T.RPAREN, "')'")
            if not inner:
                raise self.error("empty optional group", tok)
            return [OptionalGroup(inner, self._lazy())]
        if kind is T.HASH:
            self.advance()
            return [Boundary()]
        if kind is T.PERCENT:
            self.advance()
            return [TargetRef()]
        if kind is T.LT:
            self.advance()
            return [TargetRef(reversed=True)]
        if kind is T.DITTO:
            self.advance()
            return [Ditto()]
        raise self.error(f"unexpected {tok.value!r}" if tok.value else "unexpected end of rule")

    def _lazy(self) -> bool:
        if self.at(T.QUESTION):
            self.advance()
            return True
        return False

    def repeat(self, element: Element) -> Repeat:
        self.expect(T.LBRACE, "'{'")
        tok = self.peek()
        if tok.type is T.TEXT and tok.value.isdigit():
            self.advance()
            count = int(tok.value)
            if count < 1:
                raise self.error("repeat count must be at least 1", tok)
            low, high = count, count
        elif tok.type is T.STAR or tok.type is T.DSTAR:
            self.advance()
            low, high = 0, None
        elif tok.type is T.PLUS:
            self.advance()
            low, high = 1, None
        else:
            raise self.error("expected a number, '*', '**' or '+' inside '{}'")
        lazy = self._lazy()
        self.expect(T.RBRACE, "'}'")
        return Repeat(element, low, high, lazy)

    def category(self) -> Element:
        open_tok = self.expect(T.LBRACKET, "'['")
        if self.at(T.RBRACKET):
            self.advance()
            return Null()

        tok = self.peek()
        if tok.type is T.TEXT and self.peek(1).type is T.RBRACKET and NAME.fullmatch(tok.value):
            self.advance()
            self.advance()
            ref = self.named(tok.value, tok)
        else:
            members = self.members()
            self.expect(T.RBRACKET, "']'")
            ref = CategoryRef(Category("", tuple(members)))

        if self.at(T.CARET):
            self.advance()
            tag = self.peek()
            if tag.type is not T.TEXT or not tag.value.isdigit():
                raise self.error("expected a number after '^'", tag)
            self.advance()
            ref = replace(ref, slot=f"^{int(tag.value)}", explicit=True)
        return ref

    def named(self, name: str, tok: Token) -> CategoryRef:
        try:
            return CategoryRef(self.table.resolve(name), name=name)
        except UndefinedCategory as e:
            self.diagnose(DiagnosticKind.UNDEFINED_CATEGORY, str(e), tok)
            return CategoryRef(None, name=name)

    def members(self) -> List[Member]:
        """Inline category members, up to the closing ']'."""
        members: List[Member] = []
        while True:
            start = self.peek()
            item: List = []
            while not self.at(T.COMMA, T.RBRACKET, T.EOF):
                tok = self.peek()
                if tok.type is T.TEXT:
                    self.advance()
                    item.extend(segment(tok.value, self.graphs))
                elif tok.type is T.ESCAPE:
                    self.advance()
                    item.append(tok.value)
                elif tok.type is T.HASH:
                    self.advance()
                    item.append(BOUNDARY)
                elif tok.type is T.LBRACKET:
                    self.advance()
                    name = self.expect(T.TEXT, "a category name")
                    self.expect(T.RBRACKET, "']'")
                    if item:
                        raise self.error("a nested category must be a member on its own", name)
                    try:
                        members.extend(self.table.resolve(name.value).members)
                    except UndefinedCategory as e:
                        self.diagnose(DiagnosticKind.UNDEFINED_CATEGORY, str(e), name)
                    item = None
                    break
                else:
                    raise self.error(f"unexpected {tok.value!r} in category")
            if item is not None:
                if not item:
                    raise self.error("empty category member", start)
                members.append(tuple(item))
            if not self.at(T.COMMA):
                return members
            self.advance()

    def indices(self) -> Tuple[int, ...]:
        """`@1|-1` → zero-based indices (1 and 0 both mean the first match)."""
        self.expect(T.AT, "'@'")
        values = [self._index()]
        while self.at(T.PIPE):
            self.advance()
            values.append(self._index())
        return tuple(values)

    def _index(self) -> int:
        tok = self.peek()
        if tok.type is not T.TEXT or not INDEX.fullmatch(tok.value):
            raise self.error("malformed match index", tok)
        self.advance()
        value = int(tok.value)
        return value - 1 if value > 0 else value


# ============================================================================
# Rules
# ============================================================================

class RuleParser(PatternParser):
    """Parses the body of a rule (everything before the flags)."""

    def body(self, mode: str) -> Tuple[List[Branch], List[Predicate]]:
        if mode == "+":
            branches = [Branch(EPENTHESIS_TARGET)]
            predicates = [self.clauses(self.replacements())]
        elif mode == "-":
            branches = self.targets()
            predicates = [self.clauses([DELETION_REPLACEMENT])]
        else:
            branches = self.targets()
            if not self.at(T.GT):
                raise self.error("expected '>'")
            predicates = []
            while self.at(T.GT):
                self.advance()
                predicates.append(self.clauses(self.replacements()))
        if not self.at(T.EOF):
            raise self.error(f"unexpected {self.peek().value!r}")
        return branches, predicates

    def targets(self) -> List[Branch]:
        branches = [self.branch()]
        while self.at(T.COMMA):
            self.advance()
            branches.append(self.branch())
        return branches

    def branch(self) -> Branch:
        tok = self.peek()
        pattern = self.pattern(TARGET_STOPS)
        if not pattern:
            raise self.error("empty target; write [] to insert", tok)
        indices = self.indices() if self.at(T.AT) else None
        return Branch(pattern, indices)

    def replacements(self) -> List[Pattern]:
        reps = [self.replacement()]
        while self.at(T.COMMA):
            self.advance()
            reps.append(self.replacement())
        return reps

    def replacement(self) -> Pattern:
        tok = self.peek()
        pattern = self.pattern(REPLACEMENT_STOPS)
        if not pattern:
            raise self.error("empty replacement; write [] to delete", tok)
        if self.at(T.AT):
            raise self.error("a replacement cannot have match indices")
        for element in pattern.elements:
            if not isinstance(element, EMITTABLE):
                self.diagnose(DiagnosticKind.INVALID_REPLACEMENT,
                              f"{element} cannot be written into a word", tok)
        return pattern

    def clauses(self, replacements: List[Pattern]) -> Predicate:
        environments: List = []
        exceptions: List = []
        if self.at(T.SLASH):
            self.advance()
            environments = self.environments()
        if self.at(T.BANG):
            self.advance()
            exceptions = self.environments()
        return Predicate(tuple(replacements), tuple(environments), tuple(exceptions))

    def environments(self) -> List[Tuple]:
        groups = [self.group()]
        while self.at(T.COMMA):
            self.advance()
            groups.append(self.group())
        return groups

    def group(self) -> Tuple:
        envs = [self.environment()]
        while self.at(T.AMP):
            self.advance()
            envs.append(self.environment())
        return tuple(envs)

    def environment(self):
        tok = self.peek()
        left = self.pattern(ENV_STOPS)
        if self.at(T.UNDERSCORE):
            self.advance()
            right = self.pattern(ENV_STOPS)
            if self.at(T.UNDERSCORE):
                raise self.error("an environment can only have one '_'")
            if self.at(T.AT):
                raise self.error("a local environment cannot have match indices")
            return LocalEnvironment(left, right)
        if not left:
            raise self.error("empty environment", tok)
        indices = self.indices() if self.at(T.AT) else None
        return GlobalEnvironment(left, indices)


# ============================================================================
# Correlation
# ============================================================================

def _map_categories(pattern: Pattern, fn) -> Pattern:
    """Rebuild a pattern with every CategoryRef passed through fn (depth-first)."""
    def visit(element):
        if isinstance(element, CategoryRef):
            return fn(element)
        if isinstance(element, OptionalGroup):
            return replace(element, pattern=Pattern(tuple(visit(e) for e in element.pattern.elements)))
        if isinstance(element, Repeat):
            return replace(element, element=visit(element.element))
        return element
    return Pattern(tuple(visit(e) for e in pattern.elements))


def assign_slots(pattern: Pattern) -> Pattern:
    """Give untagged categories implicit slots ~0, ~1, ... in depth-first order."""
    counter = itertools.count()

    def slot(ref: CategoryRef) -> CategoryRef:
        if ref.explicit:
            return ref
        return replace(ref, slot=f"~{next(counter)}")

    return _map_categories(pattern, slot)


def _slot_sources(branch: Branch, predicate: Predicate) -> Dict[str, CategoryRef]:
    """Category that binds each slot for a (branch, predicate) pair."""
    sources: Dict[str, CategoryRef] = {}
    for ref in categories(branch.target):
        if ref.slot is not None:
            sources.setdefault(ref.slot, ref)
    for group in predicate.environments:
        for env in group:
            patterns = (env.left, env.right) if isinstance(env, LocalEnvironment) else (env.pattern,)
            for p in patterns:
                for ref in categories(p):
                    if ref.explicit:
                        sources.setdefault(ref.slot, ref)
    return sources


def check_correlation(
    branches: Sequence[Branch],
    predicates: Sequence[Predicate],
    diagnose,
) -> frozenset:
    """
    Find replacement categories whose paired category has a different length.

    Returns:
        frozenset of (predicate, branch, slot) pairings to disable
    """
    mismatched = set()
    for p, predicate in enumerate(predicates):
        for b, branch in enumerate(branches):
            sources = _slot_sources(branch, predicate)
            for ref in categories(predicate.replacement_for(b)):
                if ref.category is None:
                    continue
                source = sources.get(ref.slot) if ref.slot else None
                if source is None:
                    if len(ref.category) != 1:
                        diagnose(DiagnosticKind.UNCORRELATED_CATEGORY,
                                 f"{ref} in the replacement has nothing to correlate with")
                    continue
                if source.category is not None and len(source.category) != len(ref.category):
                    mismatched.add((p, b, ref.slot))
                    diagnose(DiagnosticKind.CORRELATION_MISMATCH,
                             f"{source} has {len(source.category)} members but {ref} "
                             f"has {len(ref.category)}")
    return frozenset(mismatched)


def parse_rule(
    text: str,
    table: CategoryTable,
    *,
    graphs: Sequence[str] = (),
    line: int = 0,
    column: int = 0,
    index: int = 0,
    flags: Optional[Flags] = None,
) -> Rule:
    """
    Parse one rule line into a Rule.

    Args:
        text: Rule text (comment already removed)
        table: Categories visible to the rule
        graphs: Multi-character graphemes for segmenting literal text
        line: Source line, for errors and diagnostics
        column: Column of text[0] in the source line
        index: Position of the rule in its ruleset
        flags: Flags to use instead of any written on the line

    Raises:
        CompileError: malformed rule text
    """
    text = text.strip()
    if not text:
        raise CompileError("empty rule", line, column)
    check_balanced(text, line, column)

    mode = ""
    body_start = 0
    if text[0] in "+-":
        mode = text[0]
        body_start = 1

    diagnostics: List[Diagnostic] = []
    flag_at = split_flags(text[body_start:], is_flag_list)
    if flag_at is not None:
        flag_at += body_start
        parsed_flags, flag_diagnostics = parse_flags(text[flag_at:], line, column + flag_at)
        diagnostics.extend(replace(d, rule=text) for d in flag_diagnostics)
        body = text[body_start:flag_at]
    else:
        parsed_flags = Flags()
        body = text[body_start:]

    parser = RuleParser(tokenize(body, line, column + body_start), table, graphs, line, text)
    branches, predicates = parser.body(mode)
    diagnostics.extend(parser.diagnostics)

    branches = [replace(b, target=assign_slots(b.target)) for b in branches]
    predicates = [
        replace(p, replacements=tuple(assign_slots(r) for r in p.replacements))
        for p in predicates
    ]

    for predicate in predicates:
        count = len(predicate.replacements)
        if count not in (1, len(branches)):
            diagnostics.append(Diagnostic(
                DiagnosticKind.BRANCH_MISMATCH,
                f"{len(branches)} targets but {count} replacements; replacements are reused in turn",
                line=line, column=column, rule=text,
            ))

    correlation: List[Diagnostic] = []

    def diagnose(kind: DiagnosticKind, message: str) -> None:
        correlation.append(Diagnostic(kind, message, line=line, column=column, rule=text))

    mismatched = check_correlation(branches, predicates, diagnose)
    for diagnostic in correlation:
        if diagnostic not in diagnostics:
            diagnostics.append(diagnostic)

    return Rule(
        branches=tuple(branches),
        predicates=tuple(predicates),
        flags=flags if flags is not None else parsed_flags,
        source=text,
        line=line,
        index=index,
        diagnostics=tuple(diagnostics),
        mismatched=mismatched,
    )
