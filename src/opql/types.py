"""Row, principal and permission models."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from opql.history import EntityHistory

# Keys of a flat search result that are not entity values.
_RESERVED_KEYS = frozenset(
    {
        "id", "entity_id", "entityId", "type", "entity_type", "entityType",
        "workspace_id", "workspaceId", "score", "history", "permissions",
    }
)


class FieldMask(BaseModel):
    """Field-level right: without every ``required`` permission the value is masked."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    required: tuple[str, ...] = ()
    mask: str | None = None


class RowPermissions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    required: tuple[str, ...] = ()
    field_masks: dict[str, FieldMask] = Field(default_factory=dict, alias="fieldMasks")


class Principal(BaseModel):
    """The caller a query runs on behalf of."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    principal_id: str | None = Field(default=None, alias="principalId")
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    roles: tuple[str, ...] = ()
    permissions: frozenset[str] = frozenset()
    allow_all: bool = Field(default=False, alias="allowAll")

    def holds(self, required: tuple[str, ...]) -> bool:
        return self.allow_all or all(p in self.permissions for p in required)


class RepositoryRow(BaseModel):
    """A searchable entity as stored by a repository."""

    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(alias="entityId")
    entity_type: str = Field(alias="entityType")
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    score: float = 0.0
    values: dict[str, Any] = Field(default_factory=dict)
    history: EntityHistory | None = None
    permissions: RowPermissions | None = None

    @classmethod
    def from_search_result(
        cls, item: Mapping[str, Any], workspace_id: str | None = None
    ) -> RepositoryRow:
        """Build a row from a flat search-result item (``id``, ``type``, field values...)."""
        if "values" in item and ("entity_id" in item or "entityId" in item):
            return cls.model_validate(dict(item))
        return cls(
            entity_id=str(item.get("id") or item.get("entity_id") or item.get("entityId")),
            entity_type=str(item.get("type") or item.get("entity_type") or item.get("entityType")),
            workspace_id=item.get("workspace_id") or item.get("workspaceId") or workspace_id,
            score=float(item.get("score") or 0.0),
            values={k: v for k, v in item.items() if k not in _RESERVED_KEYS},
            history=item.get("history"),
            permissions=item.get("permissions"),
        )

    def to_search_result(self) -> dict[str, Any]:
        """Flatten back into a search-result item."""
        out: dict[str, Any] = {
            "id": self.entity_id,
            "type": self.entity_type,
            "workspace_id": self.workspace_id,
            "score": self.score,
        }
        out.update(self.values)
        if self.history is not None:
            out["history"] = self.history.model_dump(mode="json", by_alias=True)
        if self.permissions is not None:
            out["permissions"] = self.permissions.model_dump(mode="json", by_alias=True)
        return out


class ResultRow(BaseModel):
    """A permission-filtered, masked row returned to callers."""

    entity_id: str
    entity_type: str
    workspace_id: str | None = None
    score: float = 0.0
    values: dict[str, Any] = Field(default_factory=dict)
    masked_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
