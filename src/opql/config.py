"""Configuration for the OPQL engine."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass
class OpqlConfig:
    """Configuration for query execution and the offline index."""

    default_limit: int = 25
    max_limit: int = 500
    mask_placeholder: str = "*** masked ***"
    bm25_method: str = "lucene"
    ranking_fields: tuple[str, ...] = ("title", "snippet")
    offline_db_path: str = "opql-offline.db"
    log_level: str = "WARNING"
    log_format: str = "console"

    def page_size(self, requested: int | None) -> int:
        """Clamp a requested page size to ``[1, max_limit]``."""
        if requested is None or requested <= 0:
            return self.default_limit
        return min(requested, self.max_limit)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OpqlConfig:
        """Build a config from ``OPQL_*`` environment variables."""
        env = os.environ if environ is None else environ
        config = cls()
        if "OPQL_DEFAULT_LIMIT" in env:
            config.default_limit = int(env["OPQL_DEFAULT_LIMIT"])
        if "OPQL_MAX_LIMIT" in env:
            config.max_limit = int(env["OPQL_MAX_LIMIT"])
        if "OPQL_MASK_PLACEHOLDER" in env:
            config.mask_placeholder = env["OPQL_MASK_PLACEHOLDER"]
        if "OPQL_BM25_METHOD" in env:
            config.bm25_method = env["OPQL_BM25_METHOD"]
        if "OPQL_OFFLINE_DB" in env:
            config.offline_db_path = env["OPQL_OFFLINE_DB"]
        if "OPQL_LOG_LEVEL" in env:
            config.log_level = env["OPQL_LOG_LEVEL"].upper()
        if "OPQL_LOG_FORMAT" in env:
            config.log_format = env["OPQL_LOG_FORMAT"].lower()
        return config
