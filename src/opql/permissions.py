"""Workspace isolation, row visibility and field masking.

Nothing here raises: a row the principal may not see is dropped and a field
it may not read is replaced by the mask placeholder, so callers cannot tell
hidden data from missing data.
"""

from __future__ import annotations

from dataclasses import dataclass

from opql.history import EntityHistory
from opql.types import Principal, RepositoryRow


@dataclass(frozen=True)
class VisibleRow:
    """A row as the principal is allowed to see it."""

    row: RepositoryRow
    masked_fields: frozenset[str] = frozenset()

    @property
    def entity_id(self) -> str:
        return self.row.entity_id


def in_workspace(row: RepositoryRow, workspace_id: str | None, principal: Principal) -> bool:
    """Hard workspace isolation.

    With ``workspace_id`` set, only rows of that workspace pass, and only when
    the principal belongs to it (a principal without a workspace is not
    restricted further).
    """
    if workspace_id is None:
        return principal.workspace_id is None or row.workspace_id in (None, principal.workspace_id)
    if principal.workspace_id is not None and principal.workspace_id != workspace_id:
        return False
    return row.workspace_id == workspace_id


def is_visible(row: RepositoryRow, principal: Principal) -> bool:
    if row.permissions is None:
        return True
    return principal.holds(row.permissions.required)


def _redact_history(history: EntityHistory | None, fields: frozenset[str]) -> EntityHistory | None:
    if history is None or not fields:
        return history
    events = tuple(
        event.model_copy(update={"changes": tuple(c for c in event.changes if c.field not in fields)})
        for event in history.events
    )
    initial = history.initial
    if initial is not None:
        initial = initial.model_copy(
            update={"values": {k: v for k, v in initial.values.items() if k not in fields}}
        )
    segments = {k: v for k, v in history.segments.items() if k not in fields}
    return history.model_copy(update={"events": events, "initial": initial, "segments": segments})


def mask_row(
    row: RepositoryRow,
    principal: Principal,
    placeholder: str,
    aliases: dict[str, tuple[str, ...]] | None = None,
) -> VisibleRow:
    """Apply field masks the principal does not satisfy.

    Masked values are replaced with the mask (or ``placeholder``) and their
    history is redacted. ``aliases`` maps a field to alternate spellings used
    in change events so those are redacted too.
    """
    if row.permissions is None or principal.allow_all or not row.permissions.field_masks:
        return VisibleRow(row)
    masked: set[str] = set()
    values = dict(row.values)
    for field, mask in row.permissions.field_masks.items():
        if principal.holds(mask.required):
            continue
        masked.add(field)
        if field in values:
            values[field] = mask.mask if mask.mask is not None else placeholder
    if not masked:
        return VisibleRow(row)
    redacted = set(masked)
    for field in masked:
        redacted.update((aliases or {}).get(field, ()))
    history = _redact_history(row.history, frozenset(redacted))
    return VisibleRow(
        row.model_copy(update={"values": values, "history": history}),
        masked_fields=frozenset(masked),
    )


def visible_rows(
    rows: list[RepositoryRow],
    principal: Principal,
    *,
    workspace_id: str | None,
    entity_types: tuple[str, ...] | None,
    placeholder: str,
    aliases: dict[str, tuple[str, ...]] | None = None,
) -> list[VisibleRow]:
    """Filter by workspace, entity type and row permissions, then mask fields."""
    out: list[VisibleRow] = []
    for row in rows:
        if entity_types is not None and row.entity_type not in entity_types:
            continue
        if not in_workspace(row, workspace_id, principal):
            continue
        if not is_visible(row, principal):
            continue
        out.append(mask_row(row, principal, placeholder, aliases))
    return out
