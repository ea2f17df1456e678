"""
Ruleset compiler.

Compilation phases:
1. Line splitting → comments removed, each line classified
2. Category lines → CategoryTable edits (last definition wins)
3. Metarules → stored rules, rule insertion, block markers
4. Rule lines → Rule IR (parser.parse_rule)
5. Block assembly → nested Blocks
6. Freeze → immutable Ruleset

Example source:
    V = a, e, i, o, u
    T = p, t, k
    D = b, d, g

    [T] > [D] / [V]_[V]
    !block: 2 repeat
    a > e / _i
    e > i / _#
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..core.categories import BOUNDARY, CategoryTable, Member
from ..core.diagnostics import CompileError, Diagnostic, DiagnosticKind, UndefinedCategory
from ..core.rules import Block, Flags, Rule
from ..core.ruleset import Item, Ruleset, apply_lexicon
from ..core.words import segment
from .lexer import CATEGORY_LINE, LineKind, SourceLine, split_lines, split_top
from .parser import parse_flags, parse_rule

logger = logging.getLogger(__name__)

METARULE = re.compile(r"^!(\w+)\s*(?::\s*([^\s;]+))?\s*(.*)$")
GRAPHS = "graphs"

Categories = Union[CategoryTable, Mapping[str, Iterable], None]


@dataclass
class _BlockMarker:
    position: int            # index into the item list
    size: Optional[int]      # None = all remaining items
    flags: Flags
    line: int
    source: str


class RulesetCompiler:
    """
    Compiles rule source text into a Ruleset.

    Example:
        compiler = RulesetCompiler(graphs=["th"])
        ruleset = compiler.compile(source)
    """

    def __init__(self, categories: Categories = None, graphs: Sequence[str] = ()):
        if isinstance(categories, CategoryTable):
            self.table = categories.copy()
        else:
            self.table = CategoryTable(categories)
        self.graphs = tuple(graphs)
        self.items: List[Item] = []
        self.diagnostics: List[Diagnostic] = []
        self.definitions: Dict[str, Rule] = {}
        self.markers: List[_BlockMarker] = []
        self._pending_definition: Optional[str] = None
        self._rule_count = 0

    def compile(self, source: str) -> Ruleset:
        """
        Compile source text.

        Raises:
            CompileError: first malformed line (nothing is returned)
        """
        for line in split_lines(source):
            if line.kind is LineKind.BLANK:
                continue
            if line.kind is LineKind.CATEGORY:
                self.category_line(line)
            elif line.kind is LineKind.METARULE:
                self.metarule(line)
            else:
                self.rule_line(line)

        if self._pending_definition is not None:
            raise CompileError(f"'!def: {self._pending_definition}' is not followed by a rule",
                               0, 0)

        rules = self.assemble_blocks()
        for diagnostic in self.diagnostics:
            logger.warning(f"{diagnostic}")
        logger.debug(f"Compiled {self._rule_count} rules, {len(self.table)} categories")
        return Ruleset(
            rules=tuple(rules),
            categories=self.table.freeze(),
            graphs=self.graphs,
            diagnostics=tuple(self.diagnostics),
            source=source,
        )

    # ===== Categories =====

    def category_line(self, line: SourceLine) -> None:
        m = CATEGORY_LINE.match(line.text)
        name, op, body = m.group(1), m.group(2), m.group(3)
        column = line.column + m.start(3)
        members = self.category_members(body, line.number, column)

        if name == GRAPHS:
            raw = [p.strip() for p in split_top(body, ",") if p.strip()]
            if op == "=":
                self.graphs = tuple(raw)
            elif op == "+=":
                self.graphs = self.graphs + tuple(g for g in raw if g not in self.graphs)
            else:
                self.graphs = tuple(g for g in self.graphs if g not in raw)
            members = [(g,) for g in raw]

        if op == "=":
            self.table.define(name, members)
        else:
            if name not in self.table:
                self.diagnostics.append(Diagnostic(
                    DiagnosticKind.UNDEFINED_CATEGORY,
                    f"category {name!r} is not defined before '{op}'",
                    line=line.number, column=line.column,
                ))
            if op == "+=":
                self.table.add(name, members)
            else:
                self.table.subtract(name, members)

    def category_members(self, body: str, line: int, column: int) -> List[Member]:
        """Members of a category definition: text, `#` or `[Other]`."""
        members: List[Member] = []
        if not body.strip():
            raise CompileError("category has no members", line, column)
        offset = 0
        for part in split_top(body, ","):
            col = column + offset + (len(part) - len(part.lstrip()))
            offset += len(part) + 1
            item = part.strip()
            if not item:
                raise CompileError("empty category member", line, col)
            if item == "#":
                members.append((BOUNDARY,))
            elif item.startswith("[") and item.endswith("]"):
                name = item[1:-1].strip()
                try:
                    members.extend(self.table.resolve(name).members)
                except UndefinedCategory as e:
                    self.diagnostics.append(Diagnostic(
                        DiagnosticKind.UNDEFINED_CATEGORY, str(e), line=line, column=col))
            elif any(c in item for c in "[]"):
                raise CompileError(f"malformed category member {item!r}", line, col)
            else:
                members.append(tuple(segment(item.replace("\\", ""), self.graphs)))
        return members

    # ===== Metarules =====

    def metarule(self, line: SourceLine) -> None:
        m = METARULE.match(line.text)
        if m is None:
            raise CompileError(f"malformed metarule {line.text!r}", line.number, line.column)
        name, arg, rest = m.group(1), m.group(2), m.group(3).strip()

        if name == "def":
            if not arg or rest:
                raise CompileError("'!def' needs exactly one rule name", line.number, line.column)
            self._pending_definition = arg
        elif name == "rule":
            if not arg or rest:
                raise CompileError("'!rule' needs exactly one rule name", line.number, line.column)
            rule = self.definitions.get(arg)
            if rule is None:
                self.diagnostics.append(Diagnostic(
                    DiagnosticKind.UNDEFINED_RULE, f"no rule named {arg!r}",
                    line=line.number, column=line.column,
                ))
                return
            self.items.append(rule)
        elif name == "block":
            size = None
            if arg is not None:
                if not arg.isdigit() or int(arg) < 1:
                    raise CompileError(f"block size must be a positive number, got {arg!r}",
                                       line.number, line.column)
                size = int(arg)
            flags = Flags()
            if rest:
                flags, flag_diagnostics = parse_flags(rest, line.number, line.column + m.start(3))
                self.diagnostics.extend(flag_diagnostics)
            self.markers.append(_BlockMarker(len(self.items), size, flags, line.number, line.text))
        else:
            raise CompileError(f"unknown metarule '!{name}'", line.number, line.column)

    # ===== Rules =====

    def rule_line(self, line: SourceLine) -> None:
        rule = parse_rule(
            line.text,
            self.table,
            graphs=self.graphs,
            line=line.number,
            column=line.column,
            index=self._rule_count,
        )
        self.diagnostics.extend(rule.diagnostics)
        if self._pending_definition is not None:
            self.definitions[self._pending_definition] = rule
            self._pending_definition = None
            return
        self._rule_count += 1
        self.items.append(rule)

    def assemble_blocks(self) -> List[Item]:
        """Collapse block markers, innermost (last) first."""
        items = list(self.items)
        for marker in reversed(self.markers):
            end = len(items) if marker.size is None else marker.position + marker.size
            if end > len(items):
                raise CompileError(
                    f"block of {marker.size} rules but only {len(items) - marker.position} follow",
                    marker.line, 0)
            block = Block(
                rules=tuple(items[marker.position:end]),
                flags=marker.flags,
                source=marker.source,
                line=marker.line,
                index=marker.position,
            )
            items[marker.position:end] = [block]
        return items


def compile(
    text: str,
    categories: Categories = None,
    *,
    graphs: Sequence[str] = (),
    config=None,
) -> Ruleset:
    """
    Compile rule text into an immutable Ruleset.

    Args:
        text: Rule source (category definitions, metarules and rules)
        categories: Initial categories (CategoryTable or name -> members)
        graphs: Multi-character graphemes; defaults to config.compiler.graphs
        config: SoundChangeConfig

    Raises:
        CompileError: with line and column of the first malformed line
    """
    if not graphs and config is not None:
        graphs = config.compiler.graphs
    return RulesetCompiler(categories, graphs).compile(text)


def compile_rule(
    text: str,
    categories: Categories = None,
    *,
    graphs: Sequence[str] = (),
) -> Rule:
    """Compile a single rule line."""
    table = categories.copy() if isinstance(categories, CategoryTable) else CategoryTable(categories)
    return parse_rule(text, table, graphs=graphs, line=1)


def evolve(
    source: str,
    words: Iterable[str],
    categories: Categories = None,
    config=None,
) -> List[Optional[str]]:
    """
    Compile `source` and apply it to every word.

    Example:
        evolve("[T] > [D] / a_a", ["apa", "ata"], {"T": "ptk", "D": "bdg"})
        # ['aba', 'ada']
    """
    ruleset = compile(source, categories, config=config)
    return apply_lexicon(ruleset, words, config).words
