"""Structured error types for OPQL."""

from __future__ import annotations

from collections.abc import Iterable


class OpqlError(Exception):
    """Base error for all OPQL errors."""


class OpqlSyntaxError(OpqlError):
    """Raised when query text cannot be parsed.

    ``position`` is the character offset of the offending token in the query
    text and ``token`` its raw text (``None`` at end of input).
    """

    def __init__(self, message: str, position: int, token: str | None = None) -> None:
        self.message = message
        self.position = position
        self.token = token
        super().__init__(f"{message} (at position {position})")


class ValidationError(OpqlError):
    """Raised when a parsed statement does not fit the field registry."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnknownFieldError(ValidationError):
    """Raised when a predicate references a field no target entity defines."""

    def __init__(self, field: str, entity_types: Iterable[str]) -> None:
        self.field = field
        self.entity_types = tuple(entity_types)
        super().__init__(f"Unknown field '{field}' for {', '.join(self.entity_types) or 'query'}")


class UnsupportedStatementError(OpqlError):
    """Raised when a statement uses a construct the engine cannot execute."""


class InvalidCursorError(OpqlError):
    """Raised when a paging cursor is not an ``offset:<n>`` token."""

    def __init__(self, cursor: str) -> None:
        self.cursor = cursor
        super().__init__(f"Invalid cursor '{cursor}'; expected 'offset:<n>'")


class StorageBackendError(OpqlError):
    """Raised when offline index storage operations fail."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage backend error during {operation}: {detail}")


class JqlSyntaxError(OpqlSyntaxError):
    """Raised when JQL text cannot be compiled to OPQL.

    ``position`` is an offset into the JQL text, not the generated OPQL.
    """
