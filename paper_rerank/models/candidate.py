"""Search candidate and reranked result models"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Candidate(BaseModel):
    """Externally supplied search hit; fields beyond the known ones pass through untouched"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    item_id: str = Field(alias="id", min_length=1, description="External item identifier")
    title: str = Field(default="", description="Item title")
    summary: str = Field(default="", description="Item summary or abstract")
    published_at: str | None = Field(
        default=None, alias="publishedAt", description="Publication date as supplied upstream"
    )
    rank_hint: int | None = Field(
        default=None, description="Position assigned by the upstream candidate search"
    )

    @field_validator("title", "summary", mode="before")
    @classmethod
    def null_text_as_empty(cls, v: Any) -> Any:
        # Upstream search hits may carry null title or summary
        return "" if v is None else v

    def embedding_text(self) -> str:
        """Text used to compute this candidate's result embedding"""
        parts = [part.strip() for part in (self.title, self.summary) if part and part.strip()]
        return ". ".join(parts)

    def to_payload(self) -> dict[str, Any]:
        """
        Serialize back to the wire shape it arrived in.

        Known fields the caller never sent are omitted; everything that was
        sent, null values included, is emitted again.
        """
        return self.model_dump(by_alias=True, exclude_unset=True)


class RerankedCandidate(BaseModel):
    """Candidate annotated with its similarity to the query"""

    candidate: Candidate = Field(description="The original candidate")
    score: float | None = Field(
        default=None,
        description="Similarity to the query (None for the preserved first slot or unscorable items)",
    )

    @property
    def item_id(self) -> str:
        return self.candidate.item_id

    def to_payload(self) -> dict[str, Any]:
        payload = self.candidate.to_payload()
        payload["score"] = self.score
        return payload


class RerankRequest(BaseModel):
    """Body of a rerank request"""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(description="The user query")
    results: list[Candidate] = Field(
        default_factory=list, description="Ordered candidates from the upstream search"
    )
    query_embedding: list[float] | None = Field(
        default=None,
        alias="queryEmbedding",
        description="Optional precomputed query vector",
    )
