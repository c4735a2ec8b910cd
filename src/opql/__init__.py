"""OPQL: query language, history predicates and permission-aware search."""

__version__ = "0.4.0"

from opql.config import OpqlConfig
from opql.cursor import CursorContext, analyze
from opql.engine import QueryEngine, QueryRequest, QueryResult
from opql.errors import (
    InvalidCursorError,
    JqlSyntaxError,
    OpqlError,
    OpqlSyntaxError,
    StorageBackendError,
    UnknownFieldError,
    UnsupportedStatementError,
    ValidationError,
)
from opql.filters import FieldProxy
from opql.history import ChangeEvent, EntityHistory, Segment, Transition, build_segments, evaluate
from opql.jql import JqlCompilation, compile_jql, is_likely_jql
from opql.offline import OfflineIndex, OfflineQueryPlan, OfflineSnapshot, plan_offline_query
from opql.parser import ValidationResult, parse, validate
from opql.repository import InMemorySearchRepository, SearchRepository, load_rows
from opql.schema import EntityDefinition, FieldRegistry, FieldSpec
from opql.service import SearchService
from opql.suggest import SuggestionHistoryEntry, SuggestionResponse, Suggester
from opql.types import Principal, RepositoryRow, ResultRow

__all__ = [
    "__version__",
    "parse",
    "validate",
    "analyze",
    "CursorContext",
    "ValidationResult",
    "FieldProxy",
    "ChangeEvent",
    "EntityHistory",
    "Segment",
    "Transition",
    "build_segments",
    "evaluate",
    "FieldRegistry",
    "EntityDefinition",
    "FieldSpec",
    "Principal",
    "RepositoryRow",
    "ResultRow",
    "SearchRepository",
    "InMemorySearchRepository",
    "load_rows",
    "QueryEngine",
    "QueryRequest",
    "QueryResult",
    "SearchService",
    "Suggester",
    "SuggestionHistoryEntry",
    "SuggestionResponse",
    "compile_jql",
    "is_likely_jql",
    "JqlCompilation",
    "OfflineIndex",
    "OfflineQueryPlan",
    "OfflineSnapshot",
    "plan_offline_query",
    "OpqlConfig",
    "OpqlError",
    "OpqlSyntaxError",
    "JqlSyntaxError",
    "ValidationError",
    "UnknownFieldError",
    "UnsupportedStatementError",
    "InvalidCursorError",
    "StorageBackendError",
]
