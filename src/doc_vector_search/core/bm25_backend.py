"""BM25 backend for keyword search over chunks using rank_bm25.

Lexical scoring is BM25 with a proximity bonus: for every ordered pair of
adjacent query tokens that also appears adjacently in a chunk, the chunk's
score is boosted by ``1 + proximity_weight * matched_pairs / total_pairs``.

Only chunks containing at least one query token are candidates, so a chunk
without any query term never scores.

The index is rebuilt from the chunk list on demand; ``HybridIndex`` owns it
and invalidates it whenever records change.
"""

import re
from collections.abc import Callable
from typing import Any

import numpy as np
from loguru import logger
from rank_bm25 import BM25Plus

from ..config.defaults import DEFAULT_PROXIMITY_WEIGHT
from .exceptions import DatabaseError
from .models import Chunk

TOKEN_RE = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    """Lowercase and split on anything that is not a word character."""
    return TOKEN_RE.findall(text.lower())


class BM25Backend:
    """BM25 keyword search over index chunks.

    BM25Plus is used rather than BM25Okapi: Okapi's IDF drops to zero (or
    below) for a term present in half the corpus, which would make an exact
    keyword match score nothing in small collections.

    Example:
        backend = BM25Backend(proximity_weight=0.5)
        backend.build_index(chunks)
        results = backend.search("carbon accounting", limit=10)
        # Returns: [(chunk_index, raw_score), ...]
    """

    def __init__(self, proximity_weight: float = DEFAULT_PROXIMITY_WEIGHT) -> None:
        """Initialize BM25 backend.

        Args:
            proximity_weight: Weight of the adjacent-pair bonus (0 disables)
        """
        self.proximity_weight = proximity_weight
        self._bm25: BM25Plus | None = None
        self._chunk_ids: list[str] = []
        self._token_sets: list[frozenset[str]] = []
        self._bigrams: list[frozenset[tuple[str, str]]] = []

    def build_index(
        self,
        chunks: list[Chunk],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> None:
        """Build the BM25 index from chunks.

        Args:
            chunks: Chunks in a fixed order; search returns positions into it
            progress_callback: Optional callable invoked every 500 chunks and
                once at completion with (current, total)

        Raises:
            DatabaseError: If index building fails
        """
        self.invalidate()
        if not chunks:
            logger.debug("No chunks provided for BM25 indexing")
            return

        try:
            corpus: list[list[str]] = []
            for idx, chunk in enumerate(chunks):
                tokens = tokenize(chunk.text)
                corpus.append(tokens)
                self._chunk_ids.append(chunk.chunk_id)
                self._token_sets.append(frozenset(tokens))
                self._bigrams.append(frozenset(zip(tokens, tokens[1:])))

                if progress_callback and (idx + 1) % 500 == 0:
                    progress_callback(idx + 1, len(chunks))

            if progress_callback:
                progress_callback(len(chunks), len(chunks))

            # BM25Plus divides by the average length; guard an all-empty corpus
            if not any(corpus):
                logger.debug("All chunks are empty after tokenization")
                self.invalidate()
                return

            self._bm25 = BM25Plus(corpus)
            logger.debug(
                f"Built BM25 index with {len(corpus)} chunks "
                f"(avg {sum(len(c) for c in corpus) // len(corpus)} tokens per chunk)"
            )
        except (ValueError, ZeroDivisionError) as e:
            self.invalidate()
            logger.error(f"Failed to build BM25 index: {e}")
            raise DatabaseError(f"BM25 index building failed: {e}") from e

    def search(self, query: str, limit: int | None = None) -> list[tuple[int, float]]:
        """Score chunks against a query.

        Args:
            query: Search query string
            limit: Maximum results (all matching chunks when None)

        Returns:
            List of (chunk position, raw score) sorted by score descending.
            Only chunks sharing at least one token with the query appear.
        """
        if self._bm25 is None:
            return []

        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        query_set = set(query_tokens)
        candidates = [
            idx for idx, tokens in enumerate(self._token_sets) if tokens & query_set
        ]
        if not candidates:
            return []

        scores = np.asarray(self._bm25.get_batch_scores(query_tokens, candidates))
        query_pairs = list(zip(query_tokens, query_tokens[1:]))

        results: list[tuple[int, float]] = []
        for idx, score in zip(candidates, scores, strict=True):
            score = float(score) * self._proximity_factor(idx, query_pairs)
            if score > 0.0:
                results.append((idx, score))

        results.sort(key=lambda item: item[1], reverse=True)
        if limit is not None:
            results = results[:limit]

        logger.debug(
            f"BM25 search for '{query}' returned {len(results)} results "
            f"(top score: {results[0][1]:.3f})"
            if results
            else f"BM25 search for '{query}' returned no results"
        )
        return results

    def _proximity_factor(self, idx: int, query_pairs: list[tuple[str, str]]) -> float:
        if not query_pairs or self.proximity_weight <= 0:
            return 1.0
        matched = sum(1 for pair in query_pairs if pair in self._bigrams[idx])
        return 1.0 + self.proximity_weight * matched / len(query_pairs)

    def invalidate(self) -> None:
        """Drop the built index."""
        self._bm25 = None
        self._chunk_ids = []
        self._token_sets = []
        self._bigrams = []

    def is_built(self) -> bool:
        """Check if the BM25 index is built and ready."""
        return self._bm25 is not None and len(self._chunk_ids) > 0

    def get_stats(self) -> dict[str, Any]:
        """Get BM25 index statistics."""
        if not self.is_built():
            return {"built": False, "chunk_count": 0}

        return {
            "built": True,
            "chunk_count": len(self._chunk_ids),
            "avg_doc_length": float(self._bm25.avgdl),
            "proximity_weight": self.proximity_weight,
        }
