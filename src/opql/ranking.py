"""BM25 relevance over row text fields using bm25s."""

from __future__ import annotations

from collections.abc import Sequence

import bm25s
import structlog

from opql.values import text_tokens

logger = structlog.get_logger(__name__)


class BM25Ranker:
    """Scores a small in-memory corpus against a query.

    The index is rebuilt per call; corpora here are a page of cached rows,
    not a document store.
    """

    def __init__(self, method: str = "lucene") -> None:
        self.method = method

    def score(self, documents: Sequence[str], query: str) -> list[float]:
        """Return one BM25 score per document (0.0 when nothing matches)."""
        corpus = [text_tokens(doc) for doc in documents]
        vocabulary = {token for tokens in corpus for token in tokens}
        query_tokens = list(dict.fromkeys(t for t in text_tokens(query) if t in vocabulary))
        if not query_tokens:
            logger.debug("bm25_no_query_tokens", query=query, documents=len(documents))
            return [0.0] * len(documents)

        retriever = bm25s.BM25(method=self.method)
        retriever.index(corpus, show_progress=False)
        scores = retriever.get_scores(query_tokens)
        logger.debug("bm25_scored", documents=len(documents), query_tokens=len(query_tokens))
        return [float(s) for s in scores]
