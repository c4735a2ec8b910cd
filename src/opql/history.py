"""Field history: segment reconstruction and WAS / WAS NOT / CHANGED evaluation.

A field's history is a list of contiguous :class:`Segment` runs derived from
the entity's initial state and its append-only change-event log. The fold
in :func:`build_segments` closes the open segment at each touching event and
opens the next, so N touching events always yield N + 1 segments with only
the last one open (``end is None``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import reduce
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from opql.filters import ABSENT, HistoryExpression, TimeWindow
from opql.values import as_list, ensure_utc, is_empty, to_datetime, upper_bound, values_equal


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class FieldChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    field: str
    from_value: Any = Field(default=None, alias="from")
    to_value: Any = Field(default=None, alias="to")


class ChangeEvent(BaseModel):
    """One entry of an entity's change log."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    at: UtcDatetime
    actor: str | None = None
    changes: tuple[FieldChange, ...] = ()

    def change_for(self, names: frozenset[str]) -> FieldChange | None:
        for change in self.changes:
            if change.field in names:
                return change
        return None


class InitialState(BaseModel):
    """The earliest known state of an entity (typically its creation)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    at: UtcDatetime | None = None
    actor: str | None = None
    values: dict[str, Any] = Field(default_factory=dict)


class Segment(BaseModel):
    """A time-bounded run of one field value; ``end is None`` means current."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    field: str
    value: Any = None
    start: UtcDatetime | None = None
    end: UtcDatetime | None = None
    actor: str | None = None
    changed_at: UtcDatetime | None = Field(default=None, alias="changedAt")


class EntityHistory(BaseModel):
    """History attached to a row.

    ``segments`` holds pre-derived segments (as recorded in offline
    snapshots); when present for a field they are used as-is.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    initial: InitialState | None = None
    events: tuple[ChangeEvent, ...] = ()
    segments: dict[str, tuple[Segment, ...]] = Field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    """A boundary between two consecutive segments."""

    field: str
    from_value: Any
    to_value: Any
    actor: str | None
    changed_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "from": self.from_value,
            "to": self.to_value,
            "actor": self.actor,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


@dataclass(frozen=True)
class HistoryMatch:
    """Evidence for one history predicate: every matching segment or transition."""

    field: str
    verb: str
    segments: tuple[Segment, ...] = ()
    transitions: tuple[Transition, ...] = ()

    @property
    def matched(self) -> bool:
        return bool(self.segments or self.transitions)


def build_segments(
    field: str,
    history: EntityHistory | None,
    current: Any = None,
    aliases: tuple[str, ...] = (),
) -> tuple[Segment, ...]:
    """Reconstruct the segment list of ``field``.

    The first segment holds the initial value: ``history.initial.values``
    when it records the field, else the ``from`` of the first touching
    event, else ``current`` (a field that never changed).
    """
    if history is not None and history.segments.get(field):
        return tuple(history.segments[field])

    names = frozenset((field, *aliases))
    initial = history.initial if history is not None else None
    events = history.events if history is not None else ()
    touching = [
        (event, change)
        for event in sorted(events, key=lambda e: e.at)
        for change in [event.change_for(names)]
        if change is not None
    ]

    initial_value = current
    if initial is not None and any(name in initial.values for name in names):
        initial_value = next(initial.values[name] for name in (field, *aliases) if name in initial.values)
    elif touching:
        initial_value = touching[0][1].from_value

    first = Segment(
        field=field,
        value=initial_value,
        start=initial.at if initial is not None else None,
        actor=initial.actor if initial is not None else None,
    )

    def step(segments: tuple[Segment, ...], item: tuple[ChangeEvent, FieldChange]) -> tuple[Segment, ...]:
        event, change = item
        closed = segments[-1].model_copy(update={"end": event.at})
        opened = Segment(
            field=field,
            value=change.to_value,
            start=event.at,
            actor=event.actor,
            changed_at=event.at,
        )
        return (*segments[:-1], closed, opened)

    return reduce(step, touching, (first,))


def transitions(segments: tuple[Segment, ...]) -> tuple[Transition, ...]:
    return tuple(
        Transition(
            field=after.field,
            from_value=before.value,
            to_value=after.value,
            actor=after.actor,
            changed_at=after.changed_at or after.start,
        )
        for before, after in zip(segments, segments[1:])
    )


def window_bounds(window: TimeWindow | None) -> tuple[datetime | None, datetime | None]:
    """Resolve a closed window to datetimes; date-only ends cover the whole day."""
    if window is None:
        return None, None
    return to_datetime(window.start), upper_bound(window.end)


def _overlaps(segment: Segment, start: datetime | None, end: datetime | None, now: datetime) -> bool:
    if end is not None and segment.start is not None and segment.start > end:
        return False
    if start is None:
        return True
    if segment.end is None:
        return now >= start
    return segment.end >= start


def _within(moment: datetime | None, start: datetime | None, end: datetime | None) -> bool:
    if moment is None:
        return start is None and end is None
    if start is not None and moment < start:
        return False
    return end is None or moment <= end


def _holds(value: Any, predicate: HistoryExpression) -> bool:
    if predicate.op == "IS NULL":
        return value is None
    if predicate.op == "IS EMPTY":
        return is_empty(value)
    expected = as_list(predicate.value) if predicate.op == "IN" else [predicate.value]
    return any(values_equal(v, e) for v in as_list(value) or [None] for e in expected)


def _value_matches(value: Any, expected: Any) -> bool:
    return any(values_equal(v, expected) for v in as_list(value) or [None])


def evaluate(
    predicate: HistoryExpression,
    segments: tuple[Segment, ...],
    now: datetime | None = None,
) -> HistoryMatch:
    """Evaluate a history predicate, returning all matching evidence.

    ``WAS NOT x`` matches every overlapping segment whose value differs from
    ``x``; it is not the negation of ``WAS x``.
    """
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    start, end = window_bounds(predicate.window)

    if predicate.verb == "CHANGED":
        hits = tuple(
            t
            for t in transitions(segments)
            if (predicate.from_value is ABSENT or _value_matches(t.from_value, predicate.from_value))
            and (predicate.to_value is ABSENT or _value_matches(t.to_value, predicate.to_value))
            and (predicate.by is ABSENT or values_equal(t.actor, predicate.by))
            and _within(t.changed_at, start, end)
        )
        return HistoryMatch(field=predicate.field, verb=predicate.verb, transitions=hits)

    overlapping = [s for s in segments if _overlaps(s, start, end, now)]
    if predicate.by is not ABSENT:
        overlapping = [s for s in overlapping if values_equal(s.actor, predicate.by)]
    if predicate.verb == "WAS NOT":
        found = tuple(s for s in overlapping if not _holds(s.value, predicate))
    else:
        found = tuple(s for s in overlapping if _holds(s.value, predicate))
    return HistoryMatch(field=predicate.field, verb=predicate.verb, segments=found)
