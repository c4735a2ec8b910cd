"""Search surfaces over the query engine.

Global search and the board, report and dashboard previews are thin
wrappers around one execution path, so the same query and type filter
yield the same ordered entity ids everywhere.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from opql.engine import QueryEngine, QueryRequest, QueryResult
from opql.types import Principal

logger = structlog.get_logger(__name__)


class SearchService:
    def __init__(self, engine: QueryEngine) -> None:
        self.engine = engine

    def search(
        self,
        query: str,
        principal: Principal,
        types: Iterable[str] | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        workspace_id: str | None = None,
    ) -> QueryResult:
        """Ranked, paginated rows for free text or OPQL."""
        return self._run("search", query, principal, types, limit, cursor, workspace_id)

    def preview_board_query(
        self,
        query: str,
        principal: Principal,
        types: Iterable[str] | None = None,
        limit: int | None = None,
        workspace_id: str | None = None,
    ) -> QueryResult:
        return self._run("board", query, principal, types, limit, None, workspace_id)

    def preview_report_query(
        self,
        query: str,
        principal: Principal,
        types: Iterable[str] | None = None,
        limit: int | None = None,
        workspace_id: str | None = None,
    ) -> QueryResult:
        return self._run("report", query, principal, types, limit, None, workspace_id)

    def preview_dashboard_query(
        self,
        query: str,
        principal: Principal,
        types: Iterable[str] | None = None,
        limit: int | None = None,
        workspace_id: str | None = None,
    ) -> QueryResult:
        return self._run("dashboard", query, principal, types, limit, None, workspace_id)

    def _run(
        self,
        surface: str,
        query: str,
        principal: Principal,
        types: Iterable[str] | None,
        limit: int | None,
        cursor: str | None,
        workspace_id: str | None,
    ) -> QueryResult:
        request = QueryRequest(
            principal=principal,
            workspace_id=workspace_id if workspace_id is not None else principal.workspace_id,
            query=query,
            types=tuple(types) if types is not None else None,
            limit=limit,
            cursor=cursor,
        )
        result = self.engine.execute(request)
        logger.debug("opql_surface_query", surface=surface, total=result.total)
        return result
