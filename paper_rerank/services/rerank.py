"""Rerank service: reorder externally supplied candidates by vector similarity"""

import asyncio
import logging
import math
import time

from paper_rerank.config import config
from paper_rerank.errors import InvalidInputError, UpstreamTimeoutError
from paper_rerank.models.candidate import Candidate, RerankedCandidate
from paper_rerank.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float | None:
    """Cosine similarity in [-1, 1]; None when either vector has zero length"""
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return None
    return dot / norm


class RerankService:
    """Handle rerank requests against the embedding cache"""

    def __init__(self, vector_store: VectorStore):
        self.vector_store = vector_store
        self.max_candidates = config.rerank_max_candidates

    def validate(
        self, query: str, candidates: list[Candidate], query_embedding: list[float] | None
    ) -> None:
        if not query or not query.strip():
            raise InvalidInputError("Query is required")
        if len(candidates) > self.max_candidates:
            raise InvalidInputError(
                f"Maximum {self.max_candidates} results allowed, got {len(candidates)}"
            )
        if query_embedding is not None and len(query_embedding) != self.vector_store.dimension:
            raise InvalidInputError(
                f"Query embedding dimension mismatch: expected {self.vector_store.dimension}, "
                f"got {len(query_embedding)}"
            )

    async def rerank(
        self,
        query: str,
        candidates: list[Candidate],
        query_embedding: list[float] | None = None,
        timeout: float | None = None,
    ) -> list[RerankedCandidate]:
        """
        Rerank candidates[1:] by similarity to the query, keeping candidates[0] first

        Args:
            query: The user query
            candidates: Ordered candidates from the upstream search
            query_embedding: Optional precomputed query vector (skips the query lookup)
            timeout: Optional deadline for the whole pipeline in seconds

        Returns:
            list[RerankedCandidate]: [first candidate] + remainder sorted by descending
            score; candidates that could not be scored follow in their original order
        """
        self.validate(query, candidates, query_embedding)

        if len(candidates) <= 1:
            return [RerankedCandidate(candidate=c) for c in candidates]

        start_time = time.time()
        try:
            async with asyncio.timeout(timeout):
                scored = await self._score_remainder(query, candidates[1:], query_embedding)
        except TimeoutError as e:
            raise UpstreamTimeoutError(f"Rerank exceeded {timeout}s deadline") from e

        # sorted() is stable, so equal scores keep their original relative order
        ranked = sorted(
            (item for item in scored if item.score is not None),
            key=lambda item: item.score,
            reverse=True,
        )
        unscorable = [item for item in scored if item.score is None]

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Reranked {len(candidates)} candidates in {elapsed_ms:.1f}ms "
            f"({len(unscorable)} unscorable)"
        )

        return [RerankedCandidate(candidate=candidates[0])] + ranked + unscorable

    async def _score_remainder(
        self,
        query: str,
        remainder: list[Candidate],
        query_embedding: list[float] | None,
    ) -> list[RerankedCandidate]:
        if query_embedding is None:
            query_embedding = await self.vector_store.get_or_compute_query_embedding(query)

        vectors = await self.vector_store.get_or_compute_result_embeddings(
            [(c.item_id, c.embedding_text()) for c in remainder]
        )

        scored: list[RerankedCandidate] = []
        for candidate in remainder:
            vector = vectors.get(candidate.item_id)
            score = cosine_similarity(query_embedding, vector) if vector is not None else None
            scored.append(RerankedCandidate(candidate=candidate, score=score))
        return scored
