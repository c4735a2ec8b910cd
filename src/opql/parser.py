"""Recursive-descent parser turning OPQL text into :mod:`opql.statements`.

Grammar (keywords are case-insensitive)::

    FIND target [FROM source [[AS] alias]] join* [WHERE pred]
         [ORDER BY field [ASC|DESC] {, ...}] [LIMIT n] [OFFSET n]
    COUNT [(*) | target] ...same clauses as FIND
    AGGREGATE fn(*|field) [AS name] {, ...} FROM source [[AS] alias] join*
         [WHERE pred] [GROUP BY field {, field}] [HAVING pred] [ORDER BY ...] [LIMIT n] [OFFSET n]
    UPDATE entity [[AS] alias] SET field = value {, ...} [WHERE pred] ...
    EXPLAIN [VERBOSE] statement

    join := [INNER | LEFT [OUTER] | RIGHT [OUTER] | FULL [OUTER]] JOIN entity [[AS] alias] ON pred
    pred := pred OR pred | pred AND pred | NOT pred | ( pred ) | condition

NOT binds tighter than AND, which binds tighter than OR.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from opql.errors import OpqlSyntaxError
from opql.filters import (
    ABSENT,
    ComparisonExpression,
    FieldRef,
    FilterExpression,
    FunctionCall,
    HistoryExpression,
    LogicalExpression,
    TimeWindow,
)
from opql.lexer import Token, TokenKind, tokenize
from opql.statements import (
    AGGREGATE_FUNCTIONS,
    STATEMENT_KEYWORDS,
    Aggregate,
    AggregateStatement,
    Assignment,
    CountStatement,
    ExplainStatement,
    FindStatement,
    JoinClause,
    OrderBy,
    Statement,
    UpdateStatement,
)

_NEGATABLE = ("IN", "LIKE", "MATCH", "CONTAINS", "BETWEEN")
_TEXT_OPS = ("LIKE", "MATCH", "CONTAINS")
_TEMPORAL_OPS = ("BEFORE", "AFTER", "ON")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating query text without executing it."""

    valid: bool
    error: str | None = None
    position: int | None = None
    caret: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "error": self.error,
            "position": self.position,
            "caret": self.caret,
        }


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text, strict=True)
        self.pos = 0
        self.qualifiers: set[str] = set()

    # --- token helpers ---

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind is not TokenKind.EOF:
            self.pos += 1
        return tok

    def accept_keyword(self, *words: str) -> Token | None:
        if self.peek().is_keyword(*words):
            return self.advance()
        return None

    def expect_keyword(self, word: str, context: str = "") -> Token:
        tok = self.peek()
        if not tok.is_keyword(word):
            suffix = f" {context}" if context else ""
            raise self.error(f"Expected {word}{suffix}", tok)
        return self.advance()

    def expect(self, kind: TokenKind, description: str) -> Token:
        tok = self.peek()
        if tok.kind is not kind:
            raise self.error(f"Expected {description}", tok)
        return self.advance()

    def error(self, message: str, tok: Token | None = None) -> OpqlSyntaxError:
        tok = tok or self.peek()
        if tok.kind is TokenKind.EOF:
            return OpqlSyntaxError(f"{message} but reached end of query", tok.start, None)
        return OpqlSyntaxError(f"{message}, found '{tok.text}'", tok.start, tok.text)

    # --- statements ---

    def parse(self) -> Statement:
        stmt = self.statement()
        tok = self.peek()
        if tok.kind is TokenKind.RPAREN:
            raise OpqlSyntaxError("Unbalanced parentheses: unexpected ')'", tok.start, tok.text)
        if tok.kind is not TokenKind.EOF:
            raise OpqlSyntaxError(f"Unexpected token '{tok.text}'", tok.start, tok.text)
        return stmt

    def statement(self) -> Statement:
        tok = self.peek()
        if tok.kind is TokenKind.EOF:
            raise OpqlSyntaxError("Empty query", tok.start, None)
        if not tok.is_keyword(*STATEMENT_KEYWORDS):
            raise OpqlSyntaxError(
                f"Unknown statement keyword '{tok.text}'; expected one of "
                + ", ".join(STATEMENT_KEYWORDS),
                tok.start,
                tok.text,
            )
        self.advance()
        if tok.value == "FIND":
            return self.find()
        if tok.value == "COUNT":
            return self.count()
        if tok.value == "AGGREGATE":
            return self.aggregate()
        if tok.value == "UPDATE":
            return self.update()
        return self.explain()

    def find(self) -> FindStatement:
        target = self.entity_name("entity after FIND")
        source, alias = self.source_clause(target)
        return FindStatement(target=target, source=source, alias=alias, **self.clauses())

    def count(self) -> CountStatement:
        target = "*"
        if self.peek().kind is TokenKind.LPAREN:
            self.advance()
            self.expect(TokenKind.STAR, "'*' in COUNT(*)")
            self.expect(TokenKind.RPAREN, "')' to close COUNT(*)")
        elif self.peek().kind in (TokenKind.IDENT, TokenKind.STAR):
            target = self.entity_name("entity after COUNT")
        self.qualifiers.add(target)
        source, alias = self.source_clause(target)
        return CountStatement(target=target, source=source, alias=alias, **self.clauses())

    def aggregate(self) -> AggregateStatement:
        aggregates = [self.aggregate_call()]
        while self.peek().kind is TokenKind.COMMA:
            self.advance()
            aggregates.append(self.aggregate_call())
        self.expect_keyword("FROM", "after aggregate list")
        source = self.entity_name("entity after FROM")
        alias = self.alias()
        self.qualifiers.update(n for n in (source, alias) if n)
        clauses = self.clauses(allow_group=True)
        return AggregateStatement(
            target=source,
            source=source,
            alias=alias,
            aggregates=tuple(aggregates),
            **clauses,
        )

    def update(self) -> UpdateStatement:
        target = self.entity_name("entity after UPDATE")
        alias = self.alias()
        self.qualifiers.update(n for n in (target, alias) if n)
        self.expect_keyword("SET", "after UPDATE entity")
        assignments = [self.assignment()]
        while self.peek().kind is TokenKind.COMMA:
            self.advance()
            assignments.append(self.assignment())
        return UpdateStatement(
            target=target, alias=alias, assignments=tuple(assignments), **self.clauses()
        )

    def explain(self) -> ExplainStatement:
        verbose = self.accept_keyword("VERBOSE") is not None
        tok = self.peek()
        inner = self.statement()
        if isinstance(inner, ExplainStatement):
            raise OpqlSyntaxError("EXPLAIN cannot be nested", tok.start, tok.text)
        return ExplainStatement(target=inner.target, statement=inner, verbose=verbose)

    # --- clause helpers ---

    def entity_name(self, description: str) -> str:
        tok = self.peek()
        if tok.kind is TokenKind.STAR:
            self.advance()
            return "*"
        return self.expect(TokenKind.IDENT, description).text

    def alias(self) -> str | None:
        if self.accept_keyword("AS"):
            return self.expect(TokenKind.IDENT, "alias after AS").text
        if self.peek().kind is TokenKind.IDENT:
            return self.advance().text
        return None

    def source_clause(self, target: str) -> tuple[str | None, str | None]:
        self.qualifiers.add(target)
        if not self.accept_keyword("FROM"):
            return None, None
        source = self.entity_name("entity after FROM")
        alias = self.alias()
        self.qualifiers.update(n for n in (source, alias) if n)
        return source, alias

    def clauses(self, *, allow_group: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {}
        joins = []
        while self.peek().is_keyword("JOIN", "INNER", "LEFT", "RIGHT", "FULL"):
            joins.append(self.join())
        out["joins"] = tuple(joins)
        if self.accept_keyword("WHERE"):
            out["where"] = self.predicate()
        if self.peek().is_keyword("GROUP"):
            if not allow_group:
                raise self.error("GROUP BY is only valid in AGGREGATE statements")
            self.advance()
            self.expect_keyword("BY", "after GROUP")
            fields = [self.field_name()]
            while self.peek().kind is TokenKind.COMMA:
                self.advance()
                fields.append(self.field_name())
            out["group_by"] = tuple(fields)
        if self.peek().is_keyword("HAVING"):
            if not allow_group:
                raise self.error("HAVING is only valid in AGGREGATE statements")
            self.advance()
            out["having"] = self.predicate()
        if self.accept_keyword("ORDER"):
            self.expect_keyword("BY", "after ORDER")
            orders = [self.order_item()]
            while self.peek().kind is TokenKind.COMMA:
                self.advance()
                orders.append(self.order_item())
            out["order_by"] = tuple(orders)
        if self.accept_keyword("LIMIT"):
            out["limit"] = self.non_negative_int("LIMIT")
        if self.accept_keyword("OFFSET"):
            out["offset"] = self.non_negative_int("OFFSET")
        return out

    def join(self) -> JoinClause:
        kind = "INNER"
        tok = self.advance()
        if tok.value in ("LEFT", "RIGHT", "FULL"):
            kind = tok.value
            self.accept_keyword("OUTER")
            self.expect_keyword("JOIN", f"after {kind}")
        elif tok.value == "INNER":
            self.expect_keyword("JOIN", "after INNER")
        entity = self.entity_name("entity after JOIN")
        alias = self.alias() or entity
        self.qualifiers.add(alias)
        self.expect_keyword("ON", "in JOIN clause")
        return JoinClause(kind=kind, entity=entity, alias=alias, condition=self.predicate())

    def order_item(self) -> OrderBy:
        name = self.field_name()
        descending = False
        direction = self.accept_keyword("ASC", "DESC")
        if direction is not None:
            descending = direction.value == "DESC"
        return OrderBy(field=name, descending=descending)

    def non_negative_int(self, clause: str) -> int:
        tok = self.peek()
        if tok.kind is not TokenKind.NUMBER or not isinstance(tok.value, int) or tok.value < 0:
            raise self.error(f"{clause} must be a non-negative integer", tok)
        self.advance()
        return tok.value

    def aggregate_call(self) -> Aggregate:
        tok = self.peek()
        name = str(tok.value).upper() if tok.kind in (TokenKind.KEYWORD, TokenKind.IDENT) else ""
        if name not in AGGREGATE_FUNCTIONS:
            raise self.error("Expected aggregate function (COUNT, SUM, AVG, MIN, MAX)", tok)
        self.advance()
        self.expect(TokenKind.LPAREN, f"'(' after {name}")
        field: str | None = None
        if self.peek().kind is TokenKind.STAR:
            self.advance()
        else:
            field = self.field_name()
        self.expect(TokenKind.RPAREN, f"')' to close {name}(")
        alias = f"{name.lower()}({field or '*'})"
        if self.accept_keyword("AS"):
            alias = self.expect(TokenKind.IDENT, "name after AS").text
        return Aggregate(function=name, field=field, alias=alias)

    def assignment(self) -> Assignment:
        name = self.field_name()
        tok = self.peek()
        if tok.kind is not TokenKind.OPERATOR or tok.value != "=":
            raise self.error(f"Expected '=' after '{name}' in SET", tok)
        self.advance()
        return Assignment(field=name, value=self.value())

    def field_name(self) -> str:
        tok = self.peek()
        if (
            tok.kind in (TokenKind.KEYWORD, TokenKind.IDENT)
            and str(tok.value).upper() in AGGREGATE_FUNCTIONS
            and self.peek(1).kind is TokenKind.LPAREN
        ):
            return self.aggregate_call_ref()
        if tok.kind is not TokenKind.IDENT:
            raise self.error("Expected field name", tok)
        self.advance()
        return tok.text

    def aggregate_call_ref(self) -> str:
        name = str(self.advance().value).lower()
        self.expect(TokenKind.LPAREN, "'('")
        if self.peek().kind is TokenKind.STAR:
            self.advance()
            arg = "*"
        else:
            arg = self.expect(TokenKind.IDENT, "field name").text
        self.expect(TokenKind.RPAREN, "')'")
        return f"{name}({arg})"

    # --- predicates ---

    def predicate(self) -> FilterExpression:
        return self.or_expr()

    def or_expr(self) -> FilterExpression:
        children = [self.and_expr()]
        while self.accept_keyword("OR"):
            children.append(self.and_expr())
        if len(children) == 1:
            return children[0]
        return LogicalExpression(op="OR", children=tuple(children))

    def and_expr(self) -> FilterExpression:
        children = [self.not_expr()]
        while self.accept_keyword("AND"):
            children.append(self.not_expr())
        if len(children) == 1:
            return children[0]
        return LogicalExpression(op="AND", children=tuple(children))

    def not_expr(self) -> FilterExpression:
        if self.accept_keyword("NOT"):
            return LogicalExpression(op="NOT", children=(self.not_expr(),))
        return self.primary()

    def primary(self) -> FilterExpression:
        tok = self.peek()
        if tok.kind is TokenKind.LPAREN:
            self.advance()
            inner = self.or_expr()
            if self.peek().kind is not TokenKind.RPAREN:
                raise self.error("Unbalanced parentheses: expected ')'")
            self.advance()
            return inner
        return self.condition()

    def condition(self) -> FilterExpression:
        if self.peek().kind is TokenKind.EOF:
            raise self.error("Missing condition")
        name = self.field_name()
        tok = self.peek()

        if tok.kind is TokenKind.OPERATOR:
            self.advance()
            return ComparisonExpression(name, tok.value, self.value(f"after '{tok.text}'"))

        if not tok.is_keyword():
            raise self.error(f"Expected operator after field '{name}'", tok)
        word = tok.value
        self.advance()

        if word == "NOT":
            negated = self.accept_keyword(*_NEGATABLE)
            if negated is None:
                raise self.error("Expected IN, LIKE, MATCH, CONTAINS or BETWEEN after NOT")
            return self.operator_condition(name, negated.value, negate=True)
        if word == "IS":
            negate = self.accept_keyword("NOT") is not None
            if self.accept_keyword("NULL"):
                return ComparisonExpression(name, "IS NOT NULL" if negate else "IS NULL")
            if self.accept_keyword("EMPTY"):
                return ComparisonExpression(name, "IS NOT EMPTY" if negate else "IS EMPTY")
            return ComparisonExpression(name, "!=" if negate else "=", self.value("after IS"))
        if word in _NEGATABLE:
            return self.operator_condition(name, word, negate=False)
        if word in _TEMPORAL_OPS:
            return ComparisonExpression(name, word, self.value(f"after {word}"))
        if word == "DURING":
            return ComparisonExpression(name, "DURING", self.window())
        if word == "WAS":
            return self.was(name)
        if word == "CHANGED":
            return self.changed(name)
        raise OpqlSyntaxError(
            f"Expected operator after field '{name}', found '{tok.text}'", tok.start, tok.text
        )

    def operator_condition(self, name: str, word: str, *, negate: bool) -> ComparisonExpression:
        op = f"NOT {word}" if negate else word
        if word == "IN":
            return ComparisonExpression(name, op, self.value_list())
        if word == "BETWEEN":
            low = self.value("after BETWEEN")
            self.expect_keyword("AND", "between BETWEEN bounds")
            high = self.value("after BETWEEN ... AND")
            return ComparisonExpression(name, op, (low, high))
        return ComparisonExpression(name, op, self.value(f"after {word}"))

    def was(self, name: str) -> HistoryExpression:
        verb = "WAS NOT" if self.accept_keyword("NOT") else "WAS"
        if self.accept_keyword("IN"):
            op, value = "IN", self.value_list()
        elif self.accept_keyword("EMPTY"):
            op, value = "IS EMPTY", None
        elif self.peek().is_keyword("NULL"):
            self.advance()
            op, value = "IS NULL", None
        else:
            op, value = "=", self.value(f"after {verb}")
        quals = self.history_qualifiers(allowed=("BY", "DURING", "AFTER", "BEFORE", "ON"))
        return HistoryExpression(
            name, verb, value, op=op, by=quals.get("BY", ABSENT), window=quals.get("window")
        )

    def changed(self, name: str) -> HistoryExpression:
        quals = self.history_qualifiers(
            allowed=("FROM", "TO", "BY", "DURING", "AFTER", "BEFORE", "ON")
        )
        return HistoryExpression(
            name,
            "CHANGED",
            from_value=quals.get("FROM", ABSENT),
            to_value=quals.get("TO", ABSENT),
            by=quals.get("BY", ABSENT),
            window=quals.get("window"),
        )

    def history_qualifiers(self, allowed: tuple[str, ...]) -> dict[str, Any]:
        quals: dict[str, Any] = {}
        start: Any = None
        end: Any = None
        seen: set[str] = set()
        while self.peek().is_keyword(*allowed):
            tok = self.advance()
            word = tok.value
            if word in seen:
                raise OpqlSyntaxError(f"Duplicate {word} clause", tok.start, tok.text)
            seen.add(word)
            if word == "DURING":
                window = self.window()
                start, end = window.start, window.end
            elif word == "AFTER":
                start = self.value("after AFTER")
            elif word == "BEFORE":
                end = self.value("after BEFORE")
            elif word == "ON":
                start = end = self.value("after ON")
            else:
                quals[word] = self.value(f"after {word}")
        if start is not None or end is not None:
            quals["window"] = TimeWindow(start, end)
        return quals

    def window(self) -> TimeWindow:
        self.expect(TokenKind.LPAREN, "'(' after DURING")
        start = self.value("as window start")
        tok = self.peek()
        if tok.kind is TokenKind.COMMA or tok.is_keyword("AND", "TO"):
            self.advance()
        else:
            raise self.error("Expected ',' between window bounds", tok)
        end = self.value("as window end")
        if self.peek().kind is not TokenKind.RPAREN:
            raise self.error("Unbalanced parentheses: expected ')' after window")
        self.advance()
        return TimeWindow(start, end)

    # --- values ---

    def value_list(self) -> tuple[Any, ...]:
        if self.peek().kind is not TokenKind.LPAREN:
            return (self.value("after IN"),)
        self.advance()
        values = [self.value("in list")]
        while self.peek().kind is TokenKind.COMMA:
            self.advance()
            values.append(self.value("in list"))
        if self.peek().kind is not TokenKind.RPAREN:
            raise self.error("Unbalanced parentheses: expected ')' to close list")
        self.advance()
        return tuple(values)

    def value(self, context: str = "") -> Any:
        tok = self.peek()
        missing = f"Missing value {context}".rstrip()
        if tok.kind is TokenKind.STRING:
            self.advance()
            return tok.value
        if tok.kind is TokenKind.NUMBER:
            self.advance()
            return tok.value
        if tok.is_keyword("TRUE", "FALSE"):
            self.advance()
            return tok.value == "TRUE"
        if tok.is_keyword("NULL"):
            self.advance()
            return None
        if tok.kind is TokenKind.IDENT:
            self.advance()
            if self.peek().kind is TokenKind.LPAREN:
                return self.function_call(tok.text)
            head, dot, tail = tok.text.partition(".")
            if dot and tail and head in self.qualifiers:
                return FieldRef(head, tail)
            return tok.text
        raise self.error(missing, tok)

    def function_call(self, name: str) -> FunctionCall:
        self.advance()
        args: list[Any] = []
        if self.peek().kind is not TokenKind.RPAREN:
            args.append(self.value(f"in {name}()"))
            while self.peek().kind is TokenKind.COMMA:
                self.advance()
                args.append(self.value(f"in {name}()"))
        if self.peek().kind is not TokenKind.RPAREN:
            raise self.error(f"Unbalanced parentheses: expected ')' to close {name}(")
        self.advance()
        return FunctionCall(name=name, args=tuple(args))


def parse(text: str) -> Statement:
    """Parse OPQL text into a statement.

    Raises:
        OpqlSyntaxError: On malformed input, with the offending position.
    """
    return _Parser(text).parse()


def caret_line(text: str, position: int) -> str:
    """Return the line containing ``position`` with a ``^`` marker beneath it."""
    line_start = text.rfind("\n", 0, position) + 1
    line_end = text.find("\n", position)
    if line_end == -1:
        line_end = len(text)
    return f"{text[line_start:line_end]}\n{' ' * (position - line_start)}^"


def validate(text: str) -> ValidationResult:
    """Check that ``text`` parses, returning the error and caret when it does not."""
    try:
        parse(text)
    except OpqlSyntaxError as exc:
        return ValidationResult(
            valid=False,
            error=exc.message,
            position=exc.position,
            caret=caret_line(text, exc.position),
        )
    return ValidationResult(valid=True)
