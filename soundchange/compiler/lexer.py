"""
Lexical analysis of sound change rule text.

Two levels:
1. Lines → SourceLine (comments stripped, kind classified)
2. Rule/pattern text → Token stream

Control characters:
    [ ] ( ) { }     brackets
    * ** ?          wildcard, gap, lazy marker
    # % < " ^       boundary, target, reversed target, ditto, tag
    > / ! & , _     rule operators
    @ |             match indices
    \\              escape: the next character is literal
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

from ..core.diagnostics import CompileError


# ============================================================================
# Lines
# ============================================================================

class LineKind(Enum):
    BLANK = auto()
    CATEGORY = auto()
    METARULE = auto()
    RULE = auto()


CATEGORY_LINE = re.compile(r"^(\w+)\s*(\+=|-=|=)\s*(.*)$")


@dataclass
class SourceLine:
    number: int      # 1-based
    text: str        # comment and surrounding whitespace removed
    column: int      # column of text[0] in the raw line
    kind: LineKind


def strip_comment(raw: str) -> str:
    """Drop a `//` comment, ignoring an escaped slash."""
    i = 0
    while i < len(raw):
        if raw[i] == "\\":
            i += 2
            continue
        if raw.startswith("//", i):
            return raw[:i]
        i += 1
    return raw


def classify(text: str) -> LineKind:
    if not text:
        return LineKind.BLANK
    if text.startswith("!"):
        return LineKind.METARULE
    if CATEGORY_LINE.match(text):
        return LineKind.CATEGORY
    return LineKind.RULE


def split_lines(source: str) -> List[SourceLine]:
    """Split source into classified lines."""
    lines = []
    for number, raw in enumerate(source.splitlines(), 1):
        code = strip_comment(raw)
        text = code.strip()
        column = len(code) - len(code.lstrip())
        lines.append(SourceLine(number, text, column, classify(text)))
    return lines


# ============================================================================
# Tokens
# ============================================================================

class TokenType(Enum):
    TEXT = auto()        # run of ordinary characters
    ESCAPE = auto()      # \c
    LBRACKET = auto()    # [
    RBRACKET = auto()    # ]
    LPAREN = auto()      # (
    RPAREN = auto()      # )
    LBRACE = auto()      # {
    RBRACE = auto()      # }
    STAR = auto()        # *
    DSTAR = auto()       # **
    QUESTION = auto()    # ?
    PLUS = auto()        # + (inside braces only)
    HASH = auto()        # #
    PERCENT = auto()     # %
    LT = auto()          # <
    DITTO = auto()       # "
    CARET = auto()       # ^
    COMMA = auto()       # ,
    AT = auto()          # @
    PIPE = auto()        # |
    UNDERSCORE = auto()  # _
    AMP = auto()         # &
    GT = auto()          # >
    SLASH = auto()       # /
    BANG = auto()        # !
    EOF = auto()


SINGLE = {
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    "?": TokenType.QUESTION,
    "#": TokenType.HASH,
    "%": TokenType.PERCENT,
    "<": TokenType.LT,
    '"': TokenType.DITTO,
    "^": TokenType.CARET,
    ",": TokenType.COMMA,
    "@": TokenType.AT,
    "|": TokenType.PIPE,
    "_": TokenType.UNDERSCORE,
    "&": TokenType.AMP,
    ">": TokenType.GT,
    "/": TokenType.SLASH,
    "!": TokenType.BANG,
}

CONTROL = set(SINGLE) | {"*", "\\"}

# Characters after which whitespace never ends the rule body
OPERATORS = set(">/!&,_|@")


@dataclass
class Token:
    type: TokenType
    value: str
    line: int
    col: int

    def __repr__(self) -> str:
        return f"<{self.type.name}:{self.value!r}>"


def tokenize(text: str, line: int = 0, column: int = 0) -> List[Token]:
    """
    Tokenize rule body or pattern text.

    Whitespace separates tokens and is otherwise dropped. `column` is the
    position of text[0] in the source line, so token columns point into the
    original line.
    """
    tokens: List[Token] = []
    i = 0
    n = len(text)
    brace_depth = 0

    while i < n:
        c = text[i]
        col = column + i

        if c.isspace():
            i += 1
            continue

        if c == "\\":
            if i + 1 >= n:
                raise CompileError("dangling escape '\\'", line, col)
            tokens.append(Token(TokenType.ESCAPE, text[i + 1], line, col))
            i += 2
            continue

        if c == "*":
            if text.startswith("**", i):
                tokens.append(Token(TokenType.DSTAR, "**", line, col))
                i += 2
            else:
                tokens.append(Token(TokenType.STAR, "*", line, col))
                i += 1
            continue

        if c == "+" and brace_depth:
            tokens.append(Token(TokenType.PLUS, "+", line, col))
            i += 1
            continue

        if c in SINGLE:
            kind = SINGLE[c]
            if kind is TokenType.LBRACE:
                brace_depth += 1
            elif kind is TokenType.RBRACE:
                brace_depth = max(0, brace_depth - 1)
            tokens.append(Token(kind, c, line, col))
            i += 1
            continue

        start = i
        while i < n and text[i] not in CONTROL and not text[i].isspace():
            if text[i] == "+" and brace_depth:
                break
            i += 1
        tokens.append(Token(TokenType.TEXT, text[start:i], line, col))

    tokens.append(Token(TokenType.EOF, "", line, column + n))
    return tokens


# ============================================================================
# Rule line fields
# ============================================================================

def _depth_scan(text: str):
    """Yield (index, char, depth) skipping escaped characters."""
    depth = 0
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c in "[({":
            depth += 1
        elif c in "])}":
            depth -= 1
        yield i, c, depth
        i += 1


def split_flags(text: str, looks_like_flags) -> Optional[int]:
    """
    Find where the flag field of a rule line starts.

    Flags begin at the first top-level whitespace gap that is neither
    preceded nor followed by an operator. A gap followed by `!` starts the
    flags only if the rest of the line parses as a flag list
    (`looks_like_flags(rest)`); otherwise the `!` opens an exception.

    Returns:
        Index of the first flag character, or None
    """
    gap_start = None
    for i, c, depth in _depth_scan(text):
        if c.isspace():
            if gap_start is None and depth == 0:
                gap_start = i
            continue
        if gap_start is not None and depth == 0 and gap_start > 0:
            before = text[gap_start - 1]
            escaped = gap_start >= 2 and text[gap_start - 2] == "\\"
            if escaped or before not in OPERATORS:
                if c == "!":
                    if looks_like_flags(text[i:]):
                        return i
                elif c not in OPERATORS:
                    return i
        gap_start = None
    return None


def split_top(text: str, separator: str) -> List[str]:
    """Split on `separator` outside brackets."""
    parts = []
    start = 0
    for i, c, depth in _depth_scan(text):
        if c == separator and depth == 0:
            parts.append(text[start:i])
            start = i + 1
    parts.append(text[start:])
    return parts


def check_balanced(text: str, line: int, column: int) -> None:
    """Raise CompileError on unbalanced brackets."""
    pairs = {"]": "[", ")": "(", "}": "{"}
    stack = []
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c in "[({":
            stack.append((c, i))
        elif c in pairs:
            if not stack or stack[-1][0] != pairs[c]:
                raise CompileError(f"unbalanced '{c}'", line, column + i)
            stack.pop()
        i += 1
    if stack:
        c, i = stack[-1]
        raise CompileError(f"unclosed '{c}'", line, column + i)
