"""Local replica of recorded OPQL responses.

Snapshots of online responses are stored in SQLite and queried with the same
binding, permission filtering, masking and predicate evaluation as the
online engine, so an offline answer never shows rows or values the online
one would hide.
"""

from __future__ import annotations

import dataclasses
import json
import sqlite3
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from opql.config import OpqlConfig
from opql.engine import order_rows, statement_window
from opql.errors import StorageBackendError
from opql.evaluator import SelectedRow, select_rows
from opql.filters import ComparisonExpression, FieldRef, FilterExpression, LogicalExpression
from opql.offline.planner import OfflineQueryPlan, plan_offline_query
from opql.ordering import decode_cursor, paginate
from opql.ranking import BM25Ranker
from opql.schema import FieldRegistry
from opql.statements import (
    AggregateStatement,
    CountStatement,
    FindStatement,
    Statement,
    UpdateStatement,
)
from opql.types import Principal, RepositoryRow
from opql.values import display_text, ensure_utc

logger = structlog.get_logger(__name__)


class OfflineSnapshot(BaseModel):
    """One recorded online response: the query and the items it returned."""

    model_config = ConfigDict(populate_by_name=True)

    query: str
    project_id: str | None = Field(default=None, alias="projectId")
    types: tuple[str, ...] = ()
    items: list[dict[str, Any]] = Field(default_factory=list)
    partial: bool = False
    next_cursor: str | None = Field(default=None, alias="nextCursor")
    cursor: str | None = None
    workspace_id: str | None = Field(default=None, alias="workspaceId")


@dataclass
class OfflineQueryResult:
    supported: bool
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    unsupported: list[str] = field(default_factory=list)
    total: int = 0

    def ids(self) -> list[str]:
        return [item["id"] for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "supported": self.supported,
            "items": self.items,
            "next_cursor": self.next_cursor,
            "unsupported": list(self.unsupported),
            "total": self.total,
        }


def query_key(text: str) -> str:
    """Normalised form under which a query's response order is stored."""
    return " ".join(text.split()).casefold()


def _strip_join_refs(expr: FilterExpression | None, aliases: set[str]) -> FilterExpression | None:
    """Drop comparisons that reference a join alias; the replica holds no joined rows."""
    if expr is None:
        return None
    if isinstance(expr, LogicalExpression):
        children = [c for c in (_strip_join_refs(c, aliases) for c in expr.children) if c is not None]
        if not children:
            return None
        if expr.op == "NOT":
            return LogicalExpression("NOT", tuple(children))
        if len(children) == 1:
            return children[0]
        return LogicalExpression(expr.op, tuple(children))
    head, dot, _ = expr.field.partition(".")
    if dot and head in aliases:
        return None
    if isinstance(expr, ComparisonExpression) and isinstance(expr.value, FieldRef):
        if expr.value.alias in aliases:
            return None
    return expr


def offline_statement(statement: Statement) -> Statement:
    """The row-selecting part of ``statement`` the replica can execute."""
    aliases = {join.alias for join in statement.joins}
    where = _strip_join_refs(statement.where, aliases)
    if isinstance(statement, (AggregateStatement, CountStatement, UpdateStatement)):
        return FindStatement(
            target=statement.target,
            source=statement.source,
            alias=statement.alias,
            where=where,
            order_by=() if isinstance(statement, AggregateStatement) else statement.order_by,
        )
    return dataclasses.replace(statement, joins=(), where=where)


class OfflineIndex:
    """SQLite-backed store of snapshot items and their recorded order."""

    def __init__(
        self,
        db_path: str,
        *,
        registry: FieldRegistry | None = None,
        config: OpqlConfig | None = None,
    ) -> None:
        self.db_path = db_path
        self.registry = registry or FieldRegistry()
        self.config = config or OpqlConfig()
        self._ranker = BM25Ranker(self.config.bm25_method)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as e:
            raise StorageBackendError("open", str(e)) from e

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS offline_rows (
                entity_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                workspace_id TEXT,
                item_json TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS offline_orders (
                query_key TEXT PRIMARY KEY,
                entity_ids_json TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            );
        """)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # --- writes ---

    def record_opql_response(self, snapshot: OfflineSnapshot | Mapping[str, Any]) -> int:
        """Upsert the snapshot's items and remember their order for its query.

        A snapshot carrying a ``cursor`` is a continuation page: its ids are
        appended to the stored order instead of replacing it. Returns the
        number of items written.
        """
        if not isinstance(snapshot, OfflineSnapshot):
            snapshot = OfflineSnapshot.model_validate(dict(snapshot))
        rows = [RepositoryRow.from_search_result(item, snapshot.workspace_id) for item in snapshot.items]
        recorded_at = datetime.now(timezone.utc).isoformat()
        key = query_key(snapshot.query)
        with self._lock:
            try:
                for row in rows:
                    self._conn.execute(
                        "INSERT INTO offline_rows "
                        "(entity_id, entity_type, workspace_id, item_json, recorded_at) "
                        "VALUES (?, ?, ?, ?, ?) "
                        "ON CONFLICT(entity_id) DO UPDATE SET "
                        "entity_type = excluded.entity_type, "
                        "workspace_id = excluded.workspace_id, "
                        "item_json = excluded.item_json, "
                        "recorded_at = excluded.recorded_at",
                        (
                            row.entity_id,
                            row.entity_type,
                            row.workspace_id,
                            json.dumps(row.to_search_result(), default=str),
                            recorded_at,
                        ),
                    )
                ids = [row.entity_id for row in rows]
                if snapshot.cursor:
                    previous = self._stored_order(key)
                    ids = previous + [i for i in ids if i not in previous]
                self._conn.execute(
                    "INSERT INTO offline_orders (query_key, entity_ids_json, recorded_at) "
                    "VALUES (?, ?, ?) "
                    "ON CONFLICT(query_key) DO UPDATE SET "
                    "entity_ids_json = excluded.entity_ids_json, "
                    "recorded_at = excluded.recorded_at",
                    (key, json.dumps(ids), recorded_at),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageBackendError("record_opql_response", str(e)) from e
        logger.info(
            "offline_snapshot_recorded",
            query=snapshot.query,
            items=len(rows),
            partial=snapshot.partial,
        )
        return len(rows)

    def clear(self) -> None:
        with self._lock:
            try:
                self._conn.execute("DELETE FROM offline_rows")
                self._conn.execute("DELETE FROM offline_orders")
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageBackendError("clear", str(e)) from e
        logger.info("offline_index_cleared", db_path=self.db_path)

    # --- reads ---

    def _stored_order(self, key: str) -> list[str]:
        row = self._conn.execute(
            "SELECT entity_ids_json FROM offline_orders WHERE query_key = ?", (key,)
        ).fetchone()
        return json.loads(row[0]) if row is not None else []

    def _rows(self, workspace_id: str | None) -> list[RepositoryRow]:
        if workspace_id is None:
            cur = self._conn.execute("SELECT item_json FROM offline_rows ORDER BY entity_id")
        else:
            cur = self._conn.execute(
                "SELECT item_json FROM offline_rows WHERE workspace_id = ? ORDER BY entity_id",
                (workspace_id,),
            )
        return [RepositoryRow.from_search_result(json.loads(r[0])) for r in cur.fetchall()]

    def _snapshot(self, workspace_id: str | None, key: str) -> tuple[list[RepositoryRow], list[str]]:
        """Rows and stored order read in one transaction, between writes."""
        with self._lock:
            try:
                self._conn.execute("BEGIN")
                try:
                    return self._rows(workspace_id), self._stored_order(key)
                finally:
                    self._conn.commit()
            except sqlite3.Error as e:
                raise StorageBackendError("read_snapshot", str(e)) from e

    def stored_order(self, query: str) -> list[str]:
        try:
            with self._lock:
                return self._stored_order(query_key(query))
        except sqlite3.Error as e:
            raise StorageBackendError("stored_order", str(e)) from e

    def rows(self, workspace_id: str | None = None) -> list[RepositoryRow]:
        try:
            with self._lock:
                return self._rows(workspace_id)
        except sqlite3.Error as e:
            raise StorageBackendError("rows", str(e)) from e

    def get(self, entity_id: str) -> dict[str, Any] | None:
        """Return the stored item for ``entity_id`` unmasked, or ``None``."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT item_json FROM offline_rows WHERE entity_id = ?", (entity_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageBackendError("get", str(e)) from e
        return json.loads(row[0]) if row is not None else None

    def count(self) -> int:
        try:
            with self._lock:
                row = self._conn.execute("SELECT COUNT(*) FROM offline_rows").fetchone()
        except sqlite3.Error as e:
            raise StorageBackendError("count", str(e)) from e
        return int(row[0])

    # --- queries ---

    def plan(self, query: str) -> OfflineQueryPlan:
        return plan_offline_query(query)

    def execute_offline_query(
        self,
        query: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        permissions: Iterable[str] = (),
        workspace_id: str | None = None,
        principal_id: str | None = None,
        allow_all: bool = False,
        now: datetime | None = None,
    ) -> OfflineQueryResult:
        """Answer ``query`` from recorded snapshots.

        Raises:
            OpqlSyntaxError: If ``query`` does not parse.
            ValidationError: If it references unknown entities or fields.
            InvalidCursorError: If ``cursor`` is malformed.
        """
        plan = plan_offline_query(query)
        now = ensure_utc(now or datetime.now(timezone.utc))
        offset = decode_cursor(cursor)
        principal = Principal(
            principal_id=principal_id,
            workspace_id=workspace_id,
            permissions=frozenset(permissions),
            allow_all=allow_all,
        )
        bound = self.registry.bind(offline_statement(plan.statement))
        rows, stored = self._snapshot(workspace_id, query_key(query))
        selected, _ = select_rows(
            rows,
            bound,
            principal,
            registry=self.registry,
            workspace_id=workspace_id,
            placeholder=self.config.mask_placeholder,
            now=now,
        )
        stmt = bound.statement
        ordered = self._order(stmt, selected, plan, stored, now)
        window = statement_window(ordered, stmt)
        page, next_cursor = paginate(window, offset, self.config.page_size(limit or stmt.limit))
        result = OfflineQueryResult(
            supported=plan.supported,
            items=[s.visible.row.to_search_result() for s in page],
            next_cursor=next_cursor,
            unsupported=list(plan.unsupported),
            total=len(window),
        )
        logger.info(
            "offline_query_executed",
            supported=result.supported,
            total=result.total,
            returned=len(result.items),
            unsupported=result.unsupported,
        )
        return result

    def _order(
        self,
        stmt: Statement,
        selected: list[SelectedRow],
        plan: OfflineQueryPlan,
        stored: list[str],
        now: datetime,
    ) -> list[SelectedRow]:
        """ORDER BY, else the recorded order, else BM25 on the terms, else score."""
        if stmt.order_by:
            return order_rows(selected, stmt.order_by, self.registry, now)
        if stored:
            position = {entity_id: i for i, entity_id in enumerate(stored)}
            by_score = order_rows(selected, (), self.registry, now)
            return sorted(by_score, key=lambda s: position.get(s.entity_id, len(position)))
        if plan.filters.terms:
            documents = [
                " ".join(
                    display_text(s.visible.row.values.get(f)) for f in self.config.ranking_fields
                )
                for s in selected
            ]
            scores = self._ranker.score(documents, " ".join(plan.filters.terms))
            ranked = sorted(
                zip(scores, selected),
                key=lambda pair: (-pair[0], -pair[1].visible.row.score, pair[1].entity_id),
            )
            return [s for _, s in ranked]
        return order_rows(selected, (), self.registry, now)
