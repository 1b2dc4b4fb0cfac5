"""Embedding cache entry models"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from paper_rerank.config import config


def _check_dimension(v: list[float]) -> list[float]:
    if len(v) != config.embedding_dimension:
        raise ValueError(
            f"Embedding must have {config.embedding_dimension} dimensions, got {len(v)}"
        )
    return v


class QueryEmbeddingEntry(BaseModel):
    """Cached embedding of a normalized query"""

    query_hash: str = Field(
        min_length=64, max_length=64, description="SHA256 of the normalized query text"
    )
    query_text: str | None = Field(default=None, description="Original query (debugging aid)")
    embedding: list[float] = Field(description="Query vector")
    model_version: str = Field(description="Embedding model that produced the vector")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the embedding was cached",
    )

    @field_validator("embedding")
    @classmethod
    def validate_dimension(cls, v: list[float]) -> list[float]:
        """Validate embedding has the configured dimension"""
        return _check_dimension(v)


class ResultEmbeddingEntry(BaseModel):
    """Cached embedding of a single search result item"""

    item_id: str = Field(min_length=1, description="External item identifier")
    embedding: list[float] = Field(description="Result vector")
    model_version: str = Field(description="Embedding model that produced the vector")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the embedding was cached",
    )

    @field_validator("embedding")
    @classmethod
    def validate_dimension(cls, v: list[float]) -> list[float]:
        """Validate embedding has the configured dimension"""
        return _check_dimension(v)
