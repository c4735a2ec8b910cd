"""Offline replica: query planning and the local SQLite index."""

from opql.offline.index import OfflineIndex, OfflineQueryResult, OfflineSnapshot
from opql.offline.planner import OfflineFilters, OfflineQueryPlan, plan_offline_query

__all__ = [
    "OfflineFilters",
    "OfflineIndex",
    "OfflineQueryPlan",
    "OfflineQueryResult",
    "OfflineSnapshot",
    "plan_offline_query",
]
