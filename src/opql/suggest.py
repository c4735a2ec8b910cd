"""Autocomplete suggestions for OPQL query text.

:class:`Suggester` turns the cursor context from :func:`opql.cursor.analyze`
into ranked candidates: statement keywords, entity types, fields, operators
that fit the field's type, values observed in rows the principal may read,
and value functions. A typed prefix starting with ``@``, ``#`` or ``proj:``
switches to people, labels or projects. Misspelled tokens also get up to
three "did you mean" corrections scored by edit distance and Soundex.

Values come from the masked view of each row, so a masked field never
contributes suggestions.
"""

from __future__ import annotations

import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field as dc_field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from opql.config import OpqlConfig
from opql.cursor import CursorContext, analyze
from opql.errors import UnknownFieldError, ValidationError
from opql.permissions import VisibleRow, visible_rows
from opql.repository import SearchRepository
from opql.schema import BUILTIN_TYPES, FieldRegistry
from opql.types import Principal
from opql.values import ensure_utc, quote_literal, to_datetime

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT = 12
MAX_CORRECTIONS = 3
CORRECTION_THRESHOLD = 0.45
RECENCY_WINDOW = timedelta(days=14)

# Typed prefix -> trigger name; the prefix is stripped before matching.
TRIGGERS: dict[str, str] = {"@": "mention", "#": "label", "proj:": "project"}
# Field a trigger candidate filters on when inserted as a whole predicate.
TRIGGER_FIELDS = {"mention": "assignees", "label": "labels", "project": "project_id"}

USER_FIELDS = frozenset({"assignees", "reporter", "owner", "author"})

_SOUNDEX_CODES = {
    letter: digit
    for digit, letters in (
        ("1", "BFPV"), ("2", "CGJKQSXZ"), ("3", "DT"), ("4", "L"), ("5", "MN"), ("6", "R"),
    )
    for letter in letters
}

_STATEMENTS = {
    "FIND": ("Find", "Search for matching items", 0.8),
    "COUNT": ("Count", "Count matching items", 0.7),
    "AGGREGATE": ("Aggregate", "Group and summarise items", 0.62),
    "UPDATE": ("Update", "Preview a bulk update", 0.58),
    "EXPLAIN": ("Explain", "Show how a query runs", 0.55),
}

_ENTITY_INFO = {
    "task": ("Task", "Work items across projects", 1.0),
    "project": ("Project", "Initiatives and roadmaps", 0.9),
    "doc": ("Doc", "Knowledge base pages", 0.85),
    "comment": ("Comment", "Feedback conversations", 0.72),
    "person": ("Person", "People directory entries", 0.68),
}

_NUMERIC = ("number", "date")
_TEXTUAL = ("string", "array", "user")
_DATES = ("date",)

# (operator, label, description, field types it applies to; None = any)
_OPERATORS: tuple[tuple[str, str, str, tuple[str, ...] | None], ...] = (
    ("=", "Equals", "Field equals value", None),
    ("!=", "Not equal", "Field does not equal value", None),
    ("IN", "In list", "Match any listed value", None),
    ("NOT IN", "Not in list", "Exclude listed values", None),
    ("IS", "Is", "Null, empty or a value", None),
    (">", "Greater than", "Field greater than value", _NUMERIC),
    ("<", "Less than", "Field less than value", _NUMERIC),
    (">=", "Greater or equal", "Field greater or equal to value", _NUMERIC),
    ("<=", "Less or equal", "Field less or equal to value", _NUMERIC),
    ("BETWEEN", "Between", "Value within range", _NUMERIC),
    ("CONTAINS", "Contains", "Text contains fragment", _TEXTUAL),
    ("LIKE", "Like", "Wildcard pattern with % and _", _TEXTUAL),
    ("MATCH", "Matches", "Every word prefixes a field word", _TEXTUAL),
    ("BEFORE", "Before", "Date before moment", _DATES),
    ("AFTER", "After", "Date after moment", _DATES),
    ("ON", "On", "Date on day", _DATES),
    ("DURING", "During", "Date within a window", _DATES),
    ("WAS", "Was", "Held the value at some point", None),
    ("WAS NOT", "Was not", "Held another value at some point", None),
    ("CHANGED", "Changed", "Value changed", None),
)

_CLAUSE_KEYWORDS = (
    ("WHERE", "Filter items", 0.8),
    ("JOIN", "Join related items", 0.55),
    ("ORDER BY", "Sort results", 0.6),
    ("LIMIT", "Cap the number of results", 0.55),
)
_PREDICATE_KEYWORDS = (
    ("AND", "Both conditions hold", 0.75),
    ("OR", "Either condition holds", 0.7),
    ("ORDER BY", "Sort results", 0.6),
    ("LIMIT", "Cap the number of results", 0.55),
)
_SORT_KEYWORDS = (
    ("ASC", "Ascending", 0.7),
    ("DESC", "Descending", 0.7),
    ("LIMIT", "Cap the number of results", 0.55),
    ("OFFSET", "Skip results", 0.5),
)

_USER_FUNCTIONS = (("me()", "Me", "The current user"),)
_DATE_FUNCTIONS = (
    ("now()", "Now", "The current moment"),
    ("today()", "Today", "Start of today"),
    ("yesterday()", "Yesterday", "Start of yesterday"),
    ("tomorrow()", "Tomorrow", "Start of tomorrow"),
    ("startOfWeek()", "Start of week", "Monday of this week"),
    ("endOfWeek()", "End of week", "End of this week"),
    ("startOfMonth()", "Start of month", "First day of this month"),
    ("endOfMonth()", "End of month", "End of this month"),
)


def soundex(word: str) -> str:
    """Four-character Soundex code; vowels separate repeated codes."""
    if not word:
        return ""
    upper = word.upper()
    code = upper[0]
    previous = _SOUNDEX_CODES.get(upper[0], "")
    for ch in upper[1:]:
        if len(code) == 4:
            break
        digit = _SOUNDEX_CODES.get(ch, "")
        if digit == previous:
            continue
        if digit:
            code += digit
        previous = digit
    return code.ljust(4, "0")


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a or not b:
        return len(a) or len(b)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1.0 for equal strings (ignoring case), falling with edit distance."""
    if not a or not b:
        return 0.0
    distance = levenshtein(a.casefold(), b.casefold())
    return 1 - distance / max(len(a), len(b))


@dataclass
class Candidate:
    id: str
    kind: str
    value: str
    label: str
    description: str | None = None
    field: str | None = None
    trigger: str | None = None
    synonyms: tuple[str, ...] = ()
    weight: float = 0.5
    insert: str | None = None

    @property
    def insert_text(self) -> str:
        return self.value if self.insert is None else self.insert


@dataclass(frozen=True)
class SuggestionHistoryEntry:
    """A past pick: recent and frequent candidates rank higher."""

    kind: str
    id: str
    last_used: datetime | str | None = None
    frequency: int = 0


@dataclass(frozen=True)
class SuggestionItem:
    id: str
    kind: str
    value: str
    label: str
    description: str | None
    insert_text: str
    score: float


@dataclass(frozen=True)
class Completion:
    """Inline completion for the best candidate.

    ``insert_text`` replaces ``text[start:end]``; ``ghost_suffix`` is what to
    show after the caret when the candidate extends what was typed.
    """

    id: str
    kind: str
    label: str
    insert_text: str
    start: int
    end: int
    next_cursor: int
    ghost_suffix: str


@dataclass(frozen=True)
class Correction:
    id: str
    text: str
    reason: str
    replacement: str
    before: str
    after: str


@dataclass
class SuggestionResponse:
    token: str
    start: int
    end: int
    state: str
    triggered_by: str | None = None
    items: list[SuggestionItem] = dc_field(default_factory=list)
    completion: Completion | None = None
    corrections: list[Correction] = dc_field(default_factory=list)

    def values(self) -> list[str]:
        return [item.value for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def detect_trigger(prefix: str) -> str | None:
    for marker, trigger in TRIGGERS.items():
        if prefix.startswith(marker):
            return trigger
    return None


def _title(name: str) -> str:
    return name.replace("_", " ").replace(".", " ").title()


def _keyword(word: str, description: str, weight: float) -> Candidate:
    return Candidate(f"keyword:{word.lower()}", "keyword", word, word, description, weight=weight)


def _observed(
    rows: Iterable[VisibleRow], fields: Iterable[str] | None = None
) -> dict[str, dict[str, tuple[str, int]]]:
    """Field -> casefolded value -> (first spelling, occurrences), skipping masked fields."""
    wanted = None if fields is None else set(fields)
    observed: dict[str, dict[str, tuple[str, int]]] = {}
    for visible in rows:
        for name, raw in visible.row.values.items():
            if raw is None or name in visible.masked_fields:
                continue
            if wanted is not None and name not in wanted:
                continue
            for item in raw if isinstance(raw, list) else [raw]:
                if isinstance(item, dict):
                    item = item.get("id")
                if not isinstance(item, str) or not item.strip():
                    continue
                spelling = item.strip()
                bucket = observed.setdefault(name, {})
                first, count = bucket.get(spelling.casefold(), (spelling, 0))
                bucket[spelling.casefold()] = (first, count + 1)
    return observed


def score_candidate(
    candidate: Candidate,
    typed: str,
    *,
    field: str | None = None,
    boosted_types: Sequence[str] = (),
    usage: SuggestionHistoryEntry | None = None,
    now: datetime | None = None,
) -> float:
    """Base weight plus prefix, fuzzy, context and usage boosts."""
    score = candidate.weight
    if typed:
        needle = typed.casefold()
        if candidate.value.casefold().startswith(needle):
            score += 0.4
        if candidate.label.casefold().startswith(needle):
            score += 0.35
        if any(s.casefold().startswith(needle) for s in candidate.synonyms):
            score += 0.25
        score += min(similarity(candidate.value, typed) * 0.3, 0.3)
        if soundex(candidate.value) == soundex(typed):
            score += 0.2
    if candidate.kind == "entity" and candidate.value in boosted_types:
        score += 0.2
    if field is not None and candidate.field == field:
        score += 0.2
    if usage is not None:
        last_used = to_datetime(usage.last_used)
        if last_used is not None and now is not None:
            age = (now - last_used) / RECENCY_WINDOW
            score += max(0.0, min(1.0, 1 - age)) * 0.2
        score += min(usage.frequency / 20, 0.2)
    return score


def corrections_for(
    text: str,
    start: int,
    end: int,
    typed: str,
    candidates: Iterable[Candidate],
    field: str | None = None,
) -> list[Correction]:
    """Up to three "did you mean" replacements for the token at ``[start, end)``."""
    normalized = typed.strip().casefold()
    if not normalized:
        return []
    target = soundex(normalized)
    found: list[tuple[float, Candidate, str]] = []
    seen: set[str] = set()
    for candidate in candidates:
        value = candidate.insert_text.casefold()
        if not value or normalized in (value, candidate.value.casefold()) or candidate.id in seen:
            continue
        value_similarity = similarity(normalized, candidate.value)
        label_similarity = similarity(normalized, candidate.label)
        synonym_similarity = max((similarity(normalized, s) for s in candidate.synonyms), default=0.0)
        sounds_like = soundex(candidate.value) == target or any(
            soundex(s) == target for s in candidate.synonyms
        )
        score = value_similarity * 0.55 + label_similarity * 0.25 + synonym_similarity * 0.2
        if sounds_like:
            score += 0.12
        if field is not None and candidate.field == field:
            score += 0.1
        if score < CORRECTION_THRESHOLD:
            continue
        if synonym_similarity > 0.75:
            reason = f"Synonym for {candidate.label}"
        elif sounds_like:
            reason = f"Sounds like {candidate.label}"
        elif label_similarity > value_similarity:
            reason = f"Similar to {candidate.label}"
        else:
            reason = "Spelling"
        seen.add(candidate.id)
        found.append((score, candidate, reason))

    found.sort(key=lambda entry: -entry[0])
    return [
        Correction(
            id=f"correction:{candidate.id}:{index}",
            text=candidate.label,
            reason=reason,
            replacement=candidate.insert_text,
            before=text[:start],
            after=text[end:],
        )
        for index, (_, candidate, reason) in enumerate(found[:MAX_CORRECTIONS])
    ]


class Suggester:
    """Builds suggestions from the registry and the rows a principal can read."""

    def __init__(
        self,
        repository: SearchRepository,
        *,
        registry: FieldRegistry | None = None,
        config: OpqlConfig | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry or FieldRegistry()
        self.config = config or OpqlConfig()

    def suggest(
        self,
        text: str | None,
        cursor: int | None = None,
        *,
        principal: Principal | None = None,
        workspace_id: str | None = None,
        types: Iterable[str] | None = None,
        limit: int = DEFAULT_LIMIT,
        history: Iterable[SuggestionHistoryEntry] = (),
        now: datetime | None = None,
    ) -> SuggestionResponse:
        """Rank candidates for the token at ``cursor`` (default: end of text).

        Raises:
            ValidationError: If ``types`` names an unknown entity.
        """
        text = unicodedata.normalize("NFKC", text or "")
        cursor = len(text) if cursor is None else max(0, min(cursor, len(text)))
        now = ensure_utc(now or datetime.now(timezone.utc))
        principal = principal or Principal(workspace_id=workspace_id)
        boosted = self.registry.resolve_types(types) if types else ()

        ctx = analyze(text, cursor)
        start = cursor - len(ctx.prefix)
        end = max(cursor, start + len(ctx.token))
        trigger = detect_trigger(ctx.prefix)
        scope = self._scope(ctx.entity)
        current_field = self._canonical(ctx.field, scope)

        if trigger is not None:
            marker = next(m for m, t in TRIGGERS.items() if t == trigger)
            typed = ctx.prefix[len(marker):]
            candidates = self._trigger_candidates(trigger, principal, workspace_id)
        else:
            typed = ctx.prefix.lstrip("'\"")
            candidates = self._candidates(ctx, scope, current_field, principal, workspace_id)

        usage = {(entry.kind, entry.id): entry for entry in history}
        scored = [
            (
                score_candidate(
                    candidate,
                    typed,
                    field=current_field,
                    boosted_types=boosted,
                    usage=usage.get((candidate.kind, candidate.id)),
                    now=now,
                ),
                candidate,
            )
            for candidate in candidates
        ]
        # stable: equal scores keep catalog order
        scored.sort(key=lambda pair: -pair[0])
        scored = scored[: max(limit, 0)]

        response = SuggestionResponse(
            token=ctx.prefix or ctx.token,
            start=start,
            end=end,
            state=ctx.state,
            triggered_by=trigger,
            items=[
                SuggestionItem(
                    id=c.id,
                    kind=c.kind,
                    value=c.value,
                    label=c.label,
                    description=c.description,
                    insert_text=self._insertion(c, ctx),
                    score=round(score, 4),
                )
                for score, c in scored
            ],
            corrections=corrections_for(text, start, end, typed, candidates, current_field),
        )
        if scored:
            response.completion = self._completion(scored[0][1], ctx, start, end)
        logger.debug(
            "opql_suggestions_built",
            state=ctx.state,
            trigger=trigger,
            candidates=len(candidates),
            returned=len(response.items),
        )
        return response

    # --- context ---

    def _scope(self, entity: str | None) -> tuple[str, ...]:
        if entity is None:
            return self.registry.entity_types
        try:
            return self.registry.resolve_source(entity)
        except ValidationError:
            return self.registry.entity_types

    def _canonical(self, name: str | None, scope: tuple[str, ...]) -> str | None:
        if name is None:
            return None
        try:
            return self.registry.canonical_field(name, scope)
        except UnknownFieldError:
            return name.casefold()

    def _field_type(self, name: str | None, scope: tuple[str, ...]) -> str | None:
        if name is None:
            return None
        if name in USER_FIELDS:
            return "user"
        return self.registry.field_type(name, scope)

    def _rows(
        self, principal: Principal, workspace_id: str | None, entity_types: tuple[str, ...] | None
    ) -> list[VisibleRow]:
        return visible_rows(
            self.repository.rows(workspace_id),
            principal,
            workspace_id=workspace_id,
            entity_types=entity_types,
            placeholder=self.config.mask_placeholder,
            aliases=self.registry.alias_map(),
        )

    # --- catalogs ---

    def _candidates(
        self,
        ctx: CursorContext,
        scope: tuple[str, ...],
        current_field: str | None,
        principal: Principal,
        workspace_id: str | None,
    ) -> list[Candidate]:
        if ctx.expecting == "by":
            return [_keyword("BY", "Continue ORDER BY or GROUP BY", 0.8)]
        if ctx.state == "entity" and ctx.preceding_keyword in (None, "EXPLAIN", "VERBOSE"):
            return [
                _keyword(word, description, weight)
                for word, (_, description, weight) in _STATEMENTS.items()
            ]
        if ctx.state == "entity":
            return self._entities()
        if ctx.state == "field":
            return self._fields(scope)
        if ctx.state == "operator":
            return self._operators(self._field_type(current_field, scope))
        if ctx.state == "value":
            return self._values(current_field, scope, principal, workspace_id)
        if ctx.state == "postfix":
            if ctx.preceding_keyword == "BY" and ctx.operator is None:
                keywords = _SORT_KEYWORDS
            elif ctx.field is not None or ctx.operator is not None:
                keywords = _PREDICATE_KEYWORDS
            else:
                keywords = _CLAUSE_KEYWORDS
            return [_keyword(word, description, weight) for word, description, weight in keywords]
        return []

    def _entities(self) -> list[Candidate]:
        out = []
        for name in self.registry.entity_types:
            label, description, weight = _ENTITY_INFO.get(
                name, (_title(name), f"Search {name} entities", 0.6)
            )
            definition = self.registry.definition(name)
            out.append(
                Candidate(
                    f"entity:{name}",
                    "entity",
                    name,
                    label,
                    description,
                    synonyms=definition.synonyms if definition else (),
                    weight=weight,
                )
            )
        out.append(
            Candidate(
                "entity:items", "entity", "ITEMS", "All items", "Every entity type", weight=0.6
            )
        )
        return out

    def _fields(self, scope: tuple[str, ...]) -> list[Candidate]:
        out: dict[str, Candidate] = {}
        for entity_type in scope:
            definition = self.registry.definition(entity_type)
            for spec in definition.fields if definition else ():
                if spec.name not in out:
                    out[spec.name] = Candidate(
                        f"field:{spec.name}",
                        "field",
                        spec.name,
                        _title(spec.name),
                        f"{spec.type} field",
                        field=spec.name,
                        synonyms=self.registry.aliases_for(spec.name),
                        weight=0.65,
                    )
        for name in ("id", "type"):
            out.setdefault(
                name,
                Candidate(
                    f"field:{name}", "field", name, _title(name),
                    f"{BUILTIN_TYPES[name]} field", field=name, weight=0.55,
                ),
            )
        return list(out.values())

    def _operators(self, field_type: str | None) -> list[Candidate]:
        return [
            Candidate(
                f"operator:{op.lower().replace(' ', '-')}",
                "operator",
                op,
                label,
                description,
                weight=0.55,
            )
            for op, label, description, applies in _OPERATORS
            if field_type is None or applies is None or field_type in applies
        ]

    def _values(
        self, name: str | None, scope: tuple[str, ...], principal: Principal, workspace_id: str | None
    ) -> list[Candidate]:
        if name is None:
            return []
        field_type = self._field_type(name, scope)
        out: list[Candidate] = []
        if field_type == "boolean":
            out.extend(
                Candidate(f"value:{name}:{v}", "value", v, v, field=name, weight=0.6)
                for v in ("true", "false")
            )
        elif field_type != "date":
            observed = _observed(self._rows(principal, workspace_id, scope), [name]).get(name, {})
            for key, (spelling, count) in observed.items():
                out.append(
                    Candidate(
                        f"value:{name}:{key}",
                        "value",
                        spelling,
                        spelling,
                        f"Seen {count} time{'' if count == 1 else 's'}",
                        field=name,
                        weight=0.5 + min(0.2, count / 12),
                        insert=quote_literal(spelling),
                    )
                )
        functions: tuple[tuple[str, str, str], ...] = ()
        if field_type == "user":
            functions = _USER_FUNCTIONS
        elif field_type == "date":
            functions = _DATE_FUNCTIONS
        out.extend(
            Candidate(f"function:{value}", "function", value, label, description, weight=0.6)
            for value, label, description in functions
        )
        return out

    def _trigger_candidates(
        self, trigger: str, principal: Principal, workspace_id: str | None
    ) -> list[Candidate]:
        rows = self._rows(principal, workspace_id, None)
        target = TRIGGER_FIELDS[trigger]
        if trigger == "project":
            return [
                Candidate(
                    f"project:{v.entity_id}",
                    "project",
                    v.entity_id,
                    str(v.row.values.get("name") or v.entity_id),
                    v.row.values.get("title"),
                    field=target,
                    trigger=trigger,
                    synonyms=tuple(str(v.row.values[k]) for k in ("key",) if v.row.values.get(k)),
                    weight=0.7,
                    insert=quote_literal(v.entity_id),
                )
                for v in rows
                if v.row.entity_type == "project"
            ]
        if trigger == "label":
            return [
                Candidate(
                    f"label:{key}", "label", spelling, spelling, "Label",
                    field=target, trigger=trigger, weight=0.65, insert=quote_literal(spelling),
                )
                for key, (spelling, _) in _observed(rows, ["labels"]).get("labels", {}).items()
            ]
        names: dict[str, str] = {}
        for visible in rows:
            for name in sorted(USER_FIELDS & (visible.row.values.keys() - visible.masked_fields)):
                raw = visible.row.values[name]
                for item in raw if isinstance(raw, list) else [raw]:
                    if isinstance(item, dict) and item.get("id"):
                        names.setdefault(str(item["id"]), str(item.get("name") or item["id"]))
                    elif isinstance(item, str) and item:
                        names.setdefault(item, item)
        return [
            Candidate(
                f"mention:{user_id}",
                "user",
                user_id,
                display,
                user_id,
                field=target,
                trigger=trigger,
                synonyms=(user_id.partition(":")[2] or user_id,),
                weight=0.8,
                insert=quote_literal(user_id),
            )
            for user_id, display in sorted(names.items())
        ]

    # --- insertion ---

    def _insertion(self, candidate: Candidate, ctx: CursorContext) -> str:
        if candidate.trigger is not None and ctx.state != "value":
            return f"{candidate.field} = {candidate.insert_text}"
        return candidate.insert_text

    def _completion(self, candidate: Candidate, ctx: CursorContext, start: int, end: int) -> Completion:
        base = self._insertion(candidate, ctx)
        insert_text = f"{base} "
        if not ctx.prefix:
            ghost = insert_text
        elif base.casefold().startswith(ctx.prefix.casefold()):
            ghost = f"{base[len(ctx.prefix):]} "
        else:
            ghost = ""
        return Completion(
            id=candidate.id,
            kind=candidate.kind,
            label=candidate.label,
            insert_text=insert_text,
            start=start,
            end=end,
            next_cursor=start + len(insert_text),
            ghost_suffix=ghost,
        )
