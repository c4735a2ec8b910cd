"""Row sources for the query engine."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import structlog

from opql.errors import StorageBackendError
from opql.types import RepositoryRow

logger = structlog.get_logger(__name__)


class SearchRepository(Protocol):
    """Anything that can list candidate rows for a workspace."""

    def rows(self, workspace_id: str | None = None) -> list[RepositoryRow]: ...


class InMemorySearchRepository:
    """Rows held in memory, keyed by ``(workspace_id, entity_id)``."""

    def __init__(self, rows: Iterable[RepositoryRow] = ()) -> None:
        self._rows: dict[tuple[str | None, str], RepositoryRow] = {}
        self.extend(rows)

    def add(self, row: RepositoryRow) -> None:
        self._rows[(row.workspace_id, row.entity_id)] = row

    def extend(self, rows: Iterable[RepositoryRow]) -> None:
        for row in rows:
            self.add(row)

    def rows(self, workspace_id: str | None = None) -> list[RepositoryRow]:
        if workspace_id is None:
            return list(self._rows.values())
        return [row for (ws, _), row in self._rows.items() if ws == workspace_id]

    def __len__(self) -> int:
        return len(self._rows)

    @classmethod
    def from_jsonl(cls, path: str | Path) -> InMemorySearchRepository:
        return cls(load_rows(path))


def load_rows(path: str | Path) -> list[RepositoryRow]:
    """Load rows from a JSON Lines file.

    Each line is either a repository row (``entity_id``, ``values``...) or a
    flat search-result item (``id``, ``type``, field values...).
    """
    rows: list[RepositoryRow] = []
    try:
        with open(path, encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise StorageBackendError("load_rows", f"{path}:{line_no}: {exc}") from exc
                rows.append(RepositoryRow.from_search_result(data))
    except OSError as exc:
        raise StorageBackendError("load_rows", str(exc)) from exc
    logger.info("opql_rows_loaded", path=str(path), count=len(rows))
    return rows
