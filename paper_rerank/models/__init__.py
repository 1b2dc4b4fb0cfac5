"""Data models for the rerank service"""

from paper_rerank.models.candidate import Candidate, RerankedCandidate, RerankRequest
from paper_rerank.models.embedding import QueryEmbeddingEntry, ResultEmbeddingEntry
from paper_rerank.models.proxy import ProxyResponse

__all__ = [
    "Candidate",
    "RerankedCandidate",
    "RerankRequest",
    "QueryEmbeddingEntry",
    "ResultEmbeddingEntry",
    "ProxyResponse",
]
