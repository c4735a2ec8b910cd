"""Cursor-context analysis for OPQL autocomplete.

``analyze(text, cursor)`` works out what the grammar expects at the caret
(an entity, a field, an operator, a value, or a logical/postfix keyword)
without parsing the query. It is total: any text and any cursor offset
produce a context.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field as dc_field
from typing import Any

from opql.lexer import Token, TokenKind, tokenize
from opql.statements import AGGREGATE_FUNCTIONS

# Internal ``expecting`` values mapped to the public grammar state.
_STATE_BY_EXPECTING = {
    "entity": "entity",
    "field": "field",
    "operator": "operator",
    "value": "value",
    "logical": "postfix",
}

_STATEMENT_WORDS = ("FIND", "COUNT", "AGGREGATE", "UPDATE")
_VALUE_OPERATOR_WORDS = ("LIKE", "MATCH", "CONTAINS", "BEFORE", "AFTER", "ON")
_HISTORY_QUALIFIERS = ("FROM", "TO", "BY", "AFTER", "BEFORE", "ON")
_FIELD_LIST_CLAUSES = ("order", "group", "set", "aggregate")
_PUNCTUATION = (TokenKind.LPAREN, TokenKind.RPAREN, TokenKind.COMMA)


@dataclass(frozen=True)
class CursorContext:
    token: str
    prefix: str
    state: str
    previous_token: str | None
    preceding_keyword: str | None
    entity: str | None
    field: str | None
    operator: str | None
    expecting: str
    in_list: bool
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Walk:
    expecting: str = "entity"
    clause: str = "statement"
    started: bool = False
    entity: str | None = None
    field: str | None = None
    operator: str | None = None
    preceding_keyword: str | None = None
    depth: int = 0
    list_depth: int | None = None
    list_pending: bool = False
    call_pending: str | None = None
    between_pending: bool = False
    history: bool = False
    negated: bool = False
    groups: list[str] = dc_field(default_factory=list)

    @property
    def in_list(self) -> bool:
        return self.list_depth is not None and self.depth >= self.list_depth

    def reset_predicate(self) -> None:
        self.expecting = "field"
        self.field = None
        self.operator = None
        self.history = False
        self.negated = False
        self.between_pending = False

    def set_operator(self, op: str) -> None:
        self.operator = f"NOT {op}" if self.negated else op
        self.negated = False

    def keyword(self, word: str) -> None:
        if word == "COUNT" and self.started:
            self.word(word)
            return
        self.preceding_keyword = word
        if word in _STATEMENT_WORDS:
            self.started = True
            self.clause = "aggregate" if word == "AGGREGATE" else "statement"
            self.expecting = "field" if word == "AGGREGATE" else "entity"
        elif word in ("EXPLAIN", "VERBOSE"):
            self.expecting = "entity"
        elif word == "FROM" and self.history:
            self.expecting = "value"
        elif word in ("FROM", "JOIN"):
            self.clause = "join" if word == "JOIN" else "source"
            self.expecting = "entity"
        elif word in ("INNER", "LEFT", "RIGHT", "FULL", "OUTER"):
            self.expecting = "logical"
        elif word == "AS":
            self.expecting = "alias"
        elif word == "ON" and self.clause == "join":
            self.clause = "where"
            self.reset_predicate()
        elif word in ("WHERE", "HAVING"):
            self.clause = "where"
            self.reset_predicate()
        elif word == "AND":
            if self.between_pending:
                self.between_pending = False
                self.expecting = "value"
            elif self.in_list:
                self.expecting = "value"
            else:
                self.reset_predicate()
        elif word == "OR":
            self.reset_predicate()
        elif word == "NOT":
            if self.expecting == "operator":
                self.negated = True
            elif self.operator in ("IS", "WAS"):
                self.operator = f"{self.operator} NOT"
                self.expecting = "value"
        elif word == "IN":
            if self.history and self.operator and self.operator.startswith("WAS"):
                self.operator = f"{self.operator} IN"
            else:
                self.set_operator("IN")
            self.expecting = "value"
            self.list_pending = True
        elif word in ("IS", "BETWEEN"):
            self.set_operator(word)
            self.between_pending = word == "BETWEEN"
            self.expecting = "value"
        elif word == "DURING":
            if not self.history:
                self.set_operator("DURING")
            self.list_pending = True
            self.expecting = "value"
        elif word == "WAS":
            self.set_operator("WAS")
            self.history = True
            self.expecting = "value"
        elif word == "CHANGED":
            self.set_operator("CHANGED")
            self.history = True
            self.expecting = "logical"
        elif self.history and word in _HISTORY_QUALIFIERS:
            self.expecting = "value"
        elif word in _VALUE_OPERATOR_WORDS:
            self.set_operator(word)
            self.expecting = "value"
        elif word in ("ORDER", "GROUP"):
            self.clause = word.lower()
            self.expecting = "by"
        elif word == "BY" and self.clause in ("order", "group"):
            self.field = None
            self.operator = None
            self.expecting = "field"
        elif word in ("ASC", "DESC"):
            self.expecting = "logical"
        elif word in ("LIMIT", "OFFSET"):
            self.clause = "paging"
            self.expecting = "value"
        elif word == "SET":
            self.clause = "set"
            self.reset_predicate()
        elif word in ("NULL", "EMPTY", "TRUE", "FALSE"):
            self.word(word)

    def word(self, text: str) -> None:
        if self.expecting == "entity":
            self.entity = text
            self.expecting = "logical"
        elif self.expecting == "field":
            self.field = text
            self.operator = None
            if text.upper() in AGGREGATE_FUNCTIONS:
                self.call_pending = text
            if self.clause in ("order", "group", "aggregate"):
                self.expecting = "logical"
            else:
                self.expecting = "operator"
        elif self.expecting in ("alias", "value", "operator"):
            self.expecting = "logical"

    def operator_run(self, text: str) -> None:
        if self.expecting in ("operator", "logical") or self.clause == "set":
            self.set_operator(text)
            self.expecting = "value"

    def open_paren(self) -> None:
        self.depth += 1
        if self.list_pending:
            self.list_pending = False
            self.list_depth = self.depth
            self.groups.append("list")
            self.expecting = "value"
        elif self.call_pending is not None:
            self.groups.append("aggregate")
            self.expecting = "field"
        elif self.expecting == "value":
            self.groups.append("call")
        else:
            self.groups.append("group")
            if self.clause == "where":
                self.reset_predicate()
            else:
                self.expecting = "field"

    def close_paren(self) -> None:
        self.depth = max(0, self.depth - 1)
        kind = self.groups.pop() if self.groups else "group"
        if kind == "list":
            self.list_depth = None
        self.list_pending = False
        if kind == "aggregate" and self.call_pending is not None:
            inner = self.field if self.field and self.field != self.call_pending else "*"
            self.field = f"{self.call_pending.lower()}({inner})"
            self.call_pending = None
            if self.clause not in ("order", "group", "aggregate"):
                self.expecting = "operator"
                return
        self.expecting = "logical"

    def comma(self) -> None:
        if self.in_list or (self.groups and self.groups[-1] == "call"):
            self.expecting = "value"
        elif self.operator and "IN" in self.operator.split() and self.clause == "where":
            self.expecting = "value"
        elif self.clause in _FIELD_LIST_CLAUSES:
            self.field = None
            self.operator = None
            self.expecting = "field"
        else:
            self.reset_predicate()

    def feed(self, tok: Token) -> None:
        if tok.kind is TokenKind.KEYWORD:
            self.keyword(tok.value)
        elif tok.kind is TokenKind.OPERATOR:
            self.operator_run(tok.value)
        elif tok.kind is TokenKind.LPAREN:
            self.open_paren()
        elif tok.kind is TokenKind.RPAREN:
            self.close_paren()
        elif tok.kind is TokenKind.COMMA:
            self.comma()
        else:
            self.word(tok.text)


def analyze(text: str | None, cursor: int | None = None) -> CursorContext:
    """Infer the grammatical context at ``cursor`` (defaults to end of text).

    The token under the caret is reported as ``token``/``prefix`` and is not
    fed to the state machine, so a half-typed field still yields
    ``state == "field"``. Punctuation ending exactly at the caret is fed.
    """
    text = text or ""
    if cursor is None:
        cursor = len(text)
    cursor = max(0, min(cursor, len(text)))

    tokens = [t for t in tokenize(text, strict=False) if t.kind is not TokenKind.EOF]
    walked: list[Token] = []
    current: Token | None = None
    for tok in tokens:
        if tok.end < cursor or (tok.end == cursor and tok.kind in _PUNCTUATION):
            walked.append(tok)
        elif tok.start < cursor <= tok.end:
            current = tok
            break
        else:
            break

    walk = _Walk()
    for tok in walked:
        walk.feed(tok)

    return CursorContext(
        token=current.text if current else "",
        prefix=text[current.start:cursor] if current else "",
        state=_STATE_BY_EXPECTING.get(walk.expecting, "root"),
        previous_token=walked[-1].text if walked else None,
        preceding_keyword=walk.preceding_keyword,
        entity=walk.entity,
        field=walk.field,
        operator=walk.operator,
        expecting=walk.expecting,
        in_list=walk.in_list,
        depth=walk.depth,
    )
