"""Token stream shared by the parser and the cursor-context analyzer.

The parser tokenizes in strict mode, where unknown operator runs and
unterminated strings raise :class:`OpqlSyntaxError`. The analyzer tokenizes
in tolerant mode, which never raises and keeps half-typed input as tokens.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from opql.errors import OpqlSyntaxError


class TokenKind(str, Enum):
    IDENT = "ident"
    KEYWORD = "keyword"
    STRING = "string"
    NUMBER = "number"
    OPERATOR = "operator"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    STAR = "star"
    EOF = "eof"


KEYWORDS = frozenset(
    {
        "FIND", "COUNT", "AGGREGATE", "UPDATE", "EXPLAIN", "VERBOSE",
        "FROM", "AS", "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "OUTER", "ON",
        "WHERE", "AND", "OR", "NOT", "IN", "IS", "NULL", "EMPTY",
        "BETWEEN", "LIKE", "MATCH", "CONTAINS",
        "WAS", "CHANGED", "TO", "BY", "DURING", "BEFORE", "AFTER",
        "ORDER", "GROUP", "HAVING", "ASC", "DESC", "LIMIT", "OFFSET",
        "SET", "TRUE", "FALSE",
    }
)

OPERATOR_CHARS = frozenset("=!<>~")

# Accepted operator runs and their canonical spelling.
OPERATORS: dict[str, str] = {
    "=": "=",
    "==": "=",
    "!=": "!=",
    "<>": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
    "~": "~",
    "!~": "!~",
}

_PUNCTUATION = {"(": TokenKind.LPAREN, ")": TokenKind.RPAREN, ",": TokenKind.COMMA}
_QUOTES = "'\""
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_IDENT_RE = re.compile(r"^[\w@$.:\-/*+#%]+$")


@dataclass(frozen=True)
class Token:
    """A lexical token with its source offsets (``end`` is exclusive)."""

    kind: TokenKind
    text: str
    value: Any
    start: int
    end: int

    def is_keyword(self, *words: str) -> bool:
        return self.kind is TokenKind.KEYWORD and (not words or self.value in words)


def _is_word_char(ch: str) -> bool:
    return not (ch.isspace() or ch in _PUNCTUATION or ch in OPERATOR_CHARS or ch in _QUOTES)


def _scan_string(text: str, start: int) -> tuple[str, int, bool]:
    """Scan a quoted literal starting at ``start``; returns (value, end, closed)."""
    quote = text[start]
    chars: list[str] = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            chars.append(text[i + 1])
            i += 2
            continue
        if ch == quote:
            return "".join(chars), i + 1, True
        chars.append(ch)
        i += 1
    return "".join(chars), len(text), False


def _word_token(word: str, start: int, end: int, strict: bool) -> Token:
    if word == "*":
        return Token(TokenKind.STAR, word, word, start, end)
    if _NUMBER_RE.match(word):
        number: int | float = float(word) if "." in word else int(word)
        return Token(TokenKind.NUMBER, word, number, start, end)
    upper = word.upper()
    if upper in KEYWORDS:
        return Token(TokenKind.KEYWORD, word, upper, start, end)
    if strict and not _IDENT_RE.match(word):
        raise OpqlSyntaxError(f"Unexpected characters in '{word}'", start, word)
    return Token(TokenKind.IDENT, word, word, start, end)


def tokenize(text: str, *, strict: bool = True) -> list[Token]:
    """Split ``text`` into tokens, always ending with an EOF token."""
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[ch], ch, ch, i, i + 1))
            i += 1
            continue
        if ch in OPERATOR_CHARS:
            j = i
            while j < n and text[j] in OPERATOR_CHARS:
                j += 1
            run = text[i:j]
            if run not in OPERATORS and strict:
                raise OpqlSyntaxError(f"Unknown operator '{run}'", i, run)
            tokens.append(Token(TokenKind.OPERATOR, run, OPERATORS.get(run, run), i, j))
            i = j
            continue
        if ch in _QUOTES:
            value, j, closed = _scan_string(text, i)
            if not closed and strict:
                raise OpqlSyntaxError("Unterminated string literal", i, text[i:])
            tokens.append(Token(TokenKind.STRING, text[i:j], value, i, j))
            i = j
            continue
        j = i
        while j < n and _is_word_char(text[j]):
            j += 1
        tokens.append(_word_token(text[i:j], i, j, strict))
        i = j
    tokens.append(Token(TokenKind.EOF, "", None, n, n))
    return tokens
