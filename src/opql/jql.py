"""Compile Jira Query Language (JQL) into OPQL.

``compile_jql("project = ALPHA AND status WAS Done ORDER BY created DESC")``
returns ``FIND tasks WHERE project_id = 'ALPHA' AND status WAS 'Done' ORDER BY
created_at DESC`` together with the parsed statement. Jira field and function
names are mapped onto the OPQL registry; unknown names are snake-cased and
left for binding to reject.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

import structlog

from opql.errors import JqlSyntaxError
from opql.parser import parse
from opql.statements import STATEMENT_KEYWORDS, Statement
from opql.values import ensure_utc, quote_literal

logger = structlog.get_logger(__name__)

JQL_KEYWORDS = frozenset(
    {
        "AND", "OR", "NOT", "ORDER", "BY", "ASC", "DESC", "IN", "IS", "EMPTY",
        "NULL", "TRUE", "FALSE", "WAS", "CHANGED", "FROM", "TO", "AFTER",
        "BEFORE", "DURING", "ON",
    }
)

FIELD_TRANSLATIONS: dict[str, str] = {
    "status": "status",
    "state": "status",
    "issuetype": "type",
    "issue type": "type",
    "type": "type",
    "key": "id",
    "issuekey": "id",
    "project": "project_id",
    "projectkey": "project_id",
    "priority": "priority",
    "assignee": "assignees",
    "owner": "assignees",
    "reporter": "reporter",
    "creator": "reporter",
    "summary": "title",
    "description": "snippet",
    "text": "searchable",
    "created": "created_at",
    "createddate": "created_at",
    "updated": "updated_at",
    "updateddate": "updated_at",
    "duedate": "due_date",
    "due": "due_date",
    "labels": "labels",
    "label": "labels",
    "storypoints": "estimate",
    "story points": "estimate",
}

FUNCTION_TRANSLATIONS: dict[str, str] = {
    "currentuser": "me",
    "now": "now",
    "startofday": "today",
    "startofweek": "startOfWeek",
    "endofweek": "endOfWeek",
    "startofmonth": "startOfMonth",
    "endofmonth": "endOfMonth",
}

_DURATION_UNITS: dict[str, timedelta] = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "mo": timedelta(days=30),
    "y": timedelta(days=365),
}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
  | (?P<duration>[-+]?\d+(?i:mo|[smhdwy])\b)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>!=|!~|<=|>=|[=<>~])
  | (?P<punct>[(),])
  | (?P<word>[A-Za-z_]\w*(?:\[\d+\])?)
    """,
    re.VERBOSE,
)
_CUSTOM_FIELD_RE = re.compile(r"^cf\[(\d+)\]$")
_LIKELY_JQL_RE = re.compile(r"ORDER\s+BY|status|issuetype|cf\[\d+\]|\bWAS\b|\bCHANGED\b", re.I)

# Precedence of generated expressions; atoms never need parentheses.
_OR, _AND, _NOT, _ATOM = 1, 2, 3, 4


class _Token(NamedTuple):
    kind: str
    value: str
    text: str
    start: int


class _Node(NamedTuple):
    text: str
    precedence: int = _ATOM


@dataclass(frozen=True)
class JqlCompilation:
    """OPQL generated from JQL, with the statement it parses to."""

    opql: str
    statement: Statement
    original: str


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", r"\1", body)


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            ch = text[pos]
            if ch in "'\"":
                raise JqlSyntaxError("Unterminated string literal in JQL", pos, text[pos:])
            raise JqlSyntaxError(f"Unexpected character '{ch}' in JQL", pos, ch)
        kind = match.lastgroup or ""
        raw = match.group()
        if kind == "string":
            tokens.append(_Token("string", _unescape(raw[1:-1]), raw, pos))
        elif kind == "word" and raw.upper() in JQL_KEYWORDS:
            tokens.append(_Token("keyword", raw.upper(), raw, pos))
        elif kind != "ws":
            tokens.append(_Token(kind, raw, raw, pos))
        pos = match.end()
    return tokens


def _snake_case(value: str) -> str:
    value = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", value.strip())
    return re.sub(r"[-\s]+", "_", value).lower()


def translate_field(name: str) -> str:
    """Map a Jira field name (``assignee``, ``cf[10010]``...) to an OPQL field."""
    key = " ".join(name.split()).lower()
    if key in FIELD_TRANSLATIONS:
        return FIELD_TRANSLATIONS[key]
    custom = _CUSTOM_FIELD_RE.match(key)
    if custom:
        return f"custom.cf_{custom.group(1)}"
    return _snake_case(name)


def translate_function(name: str) -> str:
    return FUNCTION_TRANSLATIONS.get(name.lower(), name)


def _combine(op: str, left: _Node, right: _Node) -> _Node:
    precedence = _OR if op == "OR" else _AND
    return _Node(f"{_wrap(left, precedence)} {op} {_wrap(right, precedence)}", precedence)


def _wrap(node: _Node, precedence: int) -> str:
    return f"({node.text})" if node.precedence < precedence else node.text


def _negate(node: _Node) -> _Node:
    return _Node(f"NOT {_wrap(node, _NOT)}", _NOT)


class _Compiler:
    def __init__(self, text: str, now: datetime) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.now = now

    # --- token helpers ---

    def peek(self, offset: int = 0) -> _Token | None:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def advance(self) -> _Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def at_keyword(self, *words: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind == "keyword" and tok.value in words

    def accept_keyword(self, *words: str) -> str | None:
        if self.at_keyword(*words):
            return self.advance().value
        return None

    def accept(self, kind: str, value: str | None = None) -> bool:
        tok = self.peek()
        if tok is not None and tok.kind == kind and (value is None or tok.value == value):
            self.pos += 1
            return True
        return False

    def expect(self, kind: str, value: str, description: str) -> None:
        if not self.accept(kind, value):
            raise self.error(f"Expected {description} in JQL")

    def error(self, message: str) -> JqlSyntaxError:
        tok = self.peek()
        if tok is None:
            return JqlSyntaxError(message, len(self.text), None)
        return JqlSyntaxError(message, tok.start, tok.text)

    # --- grammar ---

    def query(self) -> tuple[_Node | None, list[str]]:
        where = None
        if self.peek() is not None and not self.at_keyword("ORDER"):
            where = self.or_expr()
        order: list[str] = []
        if self.accept_keyword("ORDER"):
            if not self.accept_keyword("BY"):
                raise self.error("Expected BY after ORDER in JQL")
            order.append(self.order_item())
            while self.accept("punct", ","):
                order.append(self.order_item())
        if self.peek() is not None:
            raise self.error(f"Unexpected '{self.peek().text}' at end of JQL query")
        return where, order

    def order_item(self) -> str:
        field = self.field_name()
        direction = self.accept_keyword("ASC", "DESC") or "ASC"
        return f"{field} {direction}"

    def or_expr(self) -> _Node:
        node = self.and_expr()
        while self.accept_keyword("OR"):
            node = _combine("OR", node, self.and_expr())
        return node

    def and_expr(self) -> _Node:
        node = self.not_expr()
        while self.accept_keyword("AND"):
            node = _combine("AND", node, self.not_expr())
        return node

    def not_expr(self) -> _Node:
        if self.accept_keyword("NOT"):
            return _negate(self.not_expr())
        if self.accept("punct", "("):
            inner = self.or_expr()
            self.expect("punct", ")", "')'")
            return _Node(f"({inner.text})")
        return self.clause()

    def field_name(self) -> str:
        tok = self.peek()
        if tok is None or tok.kind not in ("word", "string", "keyword"):
            raise self.error("Expected field name in JQL")
        self.advance()
        return translate_field(tok.value if tok.kind == "string" else tok.text)

    def clause(self) -> _Node:
        field = self.field_name()
        if self.accept_keyword("IS"):
            negated = self.accept_keyword("NOT") is not None
            word = self.accept_keyword("EMPTY", "NULL")
            if word is None:
                raise self.error("Expected EMPTY or NULL after IS in JQL")
            return _Node(f"{field} IS {'NOT ' if negated else ''}{word}")
        if self.accept_keyword("WAS"):
            return self.was(field)
        if self.accept_keyword("CHANGED"):
            return _Node(f"{field} CHANGED{self.history_qualifiers(('FROM', 'TO', 'BY'))}")
        if self.accept_keyword("IN"):
            return _Node(f"{field} IN {self.value_list()}")
        if self.accept_keyword("NOT"):
            if not self.accept_keyword("IN"):
                raise self.error("Expected IN after NOT in JQL")
            return _Node(f"{field} NOT IN {self.value_list()}")

        tok = self.peek()
        if tok is None or tok.kind != "op":
            raise self.error(f"Expected comparator after field '{field}' in JQL")
        self.advance()
        op = tok.value
        if op in ("=", "!=") and self.at_keyword("EMPTY"):
            self.advance()
            return _Node(f"{field} IS {'NOT ' if op == '!=' else ''}EMPTY")
        value = self.value()
        if op == "~":
            return _Node(f"{field} CONTAINS {value}")
        if op == "!~":
            return _Node(f"{field} NOT CONTAINS {value}")
        return _Node(f"{field} {op} {value}")

    def was(self, field: str) -> _Node:
        parts = [field, "WAS"]
        if self.accept_keyword("NOT"):
            parts.append("NOT")
        if self.accept_keyword("IN"):
            parts.append(f"IN {self.value_list()}")
        elif self.at_keyword("EMPTY"):
            parts.append(self.advance().value)
        else:
            parts.append(self.value())
        return _Node(" ".join(parts) + self.history_qualifiers(("BY",)))

    def history_qualifiers(self, value_words: tuple[str, ...]) -> str:
        out: list[str] = []
        seen: set[str] = set()
        while True:
            tok = self.peek()
            word = self.accept_keyword(*value_words, "AFTER", "BEFORE", "ON", "DURING")
            if word is None:
                break
            if word in seen:
                raise JqlSyntaxError(f"Duplicate {word} clause in JQL", tok.start, tok.text)
            seen.add(word)
            if word == "DURING":
                self.expect("punct", "(", "'(' after DURING")
                start = self.value()
                self.expect("punct", ",", "',' between DURING bounds")
                end = self.value()
                self.expect("punct", ")", "')' after DURING bounds")
                out.append(f"DURING ({start}, {end})")
            else:
                out.append(f"{word} {self.value()}")
        return "".join(f" {part}" for part in out)

    def value_list(self) -> str:
        self.expect("punct", "(", "'(' to open a value list")
        values: list[str] = []
        if not self.accept("punct", ")"):
            values.append(self.value())
            while self.accept("punct", ","):
                values.append(self.value())
            self.expect("punct", ")", "')' to close a value list")
        return f"({', '.join(values)})"

    def value(self) -> str:
        tok = self.peek()
        if tok is None:
            raise self.error("Expected value in JQL predicate")
        if tok.kind == "string":
            self.advance()
            return quote_literal(tok.value)
        if tok.kind == "number":
            self.advance()
            return tok.value
        if tok.kind == "duration":
            self.advance()
            return quote_literal(self.relative_time(tok.value))
        if tok.kind == "keyword" and tok.value in ("NULL", "TRUE", "FALSE"):
            self.advance()
            return tok.value if tok.value == "NULL" else tok.value.lower()
        if tok.kind in ("word", "keyword"):
            self.advance()
            nxt = self.peek()
            if nxt is not None and nxt.kind == "punct" and nxt.value == "(":
                return self.function(tok.text)
            return quote_literal(tok.text)
        raise self.error(f"Unsupported value '{tok.text}' in JQL")

    def function(self, name: str) -> str:
        self.advance()
        args: list[str] = []
        if not self.accept("punct", ")"):
            args.append(self.value())
            while self.accept("punct", ","):
                args.append(self.value())
            self.expect("punct", ")", f"')' to close {name}(")
        return f"{translate_function(name)}({', '.join(args)})"

    def relative_time(self, literal: str) -> str:
        """``-7d`` is seven days before ``now``; ``2w`` two weeks after it."""
        match = re.fullmatch(r"([-+]?)(\d+)(mo|[smhdwy])", literal.lower())
        sign, amount, unit = match.groups()
        delta = int(amount) * _DURATION_UNITS[unit]
        moment = self.now - delta if sign == "-" else self.now + delta
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def is_likely_jql(text: str) -> bool:
    """Heuristic used by search boxes: not OPQL, but mentions JQL-only syntax."""
    stripped = text.strip()
    if not stripped:
        return False
    words = stripped.split(None, 1)
    if words[0].upper() in STATEMENT_KEYWORDS:
        return False
    return _LIKELY_JQL_RE.search(stripped) is not None


def compile_jql(
    text: str, *, source: str = "tasks", now: datetime | None = None
) -> JqlCompilation:
    """Translate JQL ``text`` into an OPQL ``FIND`` over ``source``.

    Relative durations (``-7d``, ``2w``, ``1mo``) resolve against ``now`` to
    absolute UTC timestamps.

    Raises:
        JqlSyntaxError: If the JQL is malformed.
        OpqlSyntaxError: If the translation does not parse as OPQL (for
            example a field that maps onto an OPQL keyword).
    """
    original = text.strip()
    compiler = _Compiler(original, ensure_utc(now or datetime.now(timezone.utc)))
    where, order = compiler.query()

    parts = [f"FIND {source}"]
    if where is not None:
        parts.append(f"WHERE {where.text}")
    if order:
        parts.append(f"ORDER BY {', '.join(order)}")
    opql = " ".join(parts)
    statement = parse(opql)
    logger.debug("jql_compiled", jql=original, opql=opql)
    return JqlCompilation(opql=opql, statement=statement, original=original)
