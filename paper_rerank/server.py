"""MCP + HTTP server for query embeddings and reranking, using fastmcp"""

import logging
import threading
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastmcp import FastMCP
from fastmcp.exceptions import McpError
from mcp.types import ErrorData
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from paper_rerank.api import SearchAPI
from paper_rerank.config import config
from paper_rerank.errors import InvalidInputError, RerankEngineError, StoreUnavailableError
from paper_rerank.models.candidate import Candidate
from paper_rerank.services.embedder import Embedder
from paper_rerank.services.rerank import RerankService
from paper_rerank.services.telemetry import get_telemetry_service
from paper_rerank.services.vector_store import VectorStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize fastmcp server
mcp = FastMCP(name="paper-rerank", version="1.0.0")

# Initialize services (created at startup or on first request)
_embedder: Embedder | None = None
_vector_store: VectorStore | None = None
_rerank_service: RerankService | None = None
_api: SearchAPI | None = None

# Background schema warm-up
_scheduler: BackgroundScheduler | None = None

_services_lock = threading.Lock()


def _init_services() -> tuple[VectorStore, RerankService, SearchAPI]:
    """Create the service graph once; safe to call from any thread"""
    global _embedder, _vector_store, _rerank_service, _api

    with _services_lock:
        if _vector_store is None:
            _embedder = Embedder()
            _vector_store = VectorStore(config.db_path, embedder=_embedder)
            _rerank_service = RerankService(_vector_store)
            _api = SearchAPI(
                _vector_store, _embedder, _rerank_service, telemetry=get_telemetry_service()
            )

    return _vector_store, _rerank_service, _api


async def _get_services() -> tuple[VectorStore, RerankService, SearchAPI]:
    """Get or initialize services"""
    return _init_services()


def _to_mcp_error(error: Exception) -> McpError:
    if isinstance(error, InvalidInputError):
        return McpError(ErrorData(code=-32602, message=error.message))
    if isinstance(error, RerankEngineError):
        return McpError(
            ErrorData(
                code=-32603,
                message=f"{error.code} ({error.status_code}): {error.message}",
            )
        )
    logger.error(f"Unhandled error in MCP tool: {error}", exc_info=error)
    return McpError(ErrorData(code=-32603, message="Internal error"))


@mcp.tool()
async def embed_query(query: str) -> dict[str, Any]:
    """Compute (or fetch from cache) the embedding vector of a search query

    Args:
        query: Search query text

    Returns:
        dict: {"queryEmbedding": [...]} with exactly `embedding_dimension` floats
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        vector_store, _, _ = await _get_services()
        try:
            if not query or not query.strip():
                raise InvalidInputError("Query is required")
            embedding = await vector_store.get_or_compute_query_embedding(query)
        except Exception as e:
            error = e
            raise _to_mcp_error(e) from e

        response = {"queryEmbedding": embedding}
        return response

    finally:
        telemetry.log_query(
            tool_name="embed_query",
            query=query,
            parameters={},
            response=response,
            error=error,
        )


@mcp.tool()
async def rerank_results(
    query: str,
    results: list[dict[str, Any]],
    query_embedding: list[float] | None = None,
) -> list[dict[str, Any]]:
    """Rerank search results by semantic similarity to the query

    The first result is kept in place; the rest are ordered by descending similarity.

    Args:
        query: The user query
        results: Ordered search hits, each with at least an "id" (plus title/summary)
        query_embedding: Optional precomputed query vector

    Returns:
        list: The results in reranked order, each annotated with "score"
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        _, rerank_service, _ = await _get_services()
        try:
            try:
                candidates = [Candidate.model_validate(r) for r in results]
            except ValueError as e:
                raise InvalidInputError(f"Invalid result entry: {e}") from e
            ranked = await rerank_service.rerank(query, candidates, query_embedding=query_embedding)
        except Exception as e:
            error = e
            raise _to_mcp_error(e) from e

        payload = [item.to_payload() for item in ranked]
        response = {"results": payload}
        return payload

    finally:
        telemetry.log_query(
            tool_name="rerank_results",
            query=query,
            parameters={
                "candidate_count": len(results),
                "precomputed_embedding": query_embedding is not None,
            },
            response=response,
            error=error,
        )


@mcp.custom_route("/api/search", methods=["GET", "POST"])
async def search(request: Request) -> Response:
    _, _, api = await _get_services()
    return await api.search(request)


@mcp.custom_route("/api/embed", methods=["POST"])
async def embed(request: Request) -> Response:
    _, _, api = await _get_services()
    return await api.embed(request)


# Both routes (/ and /health) point to the same function
@mcp.custom_route("/", methods=["GET"])
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    _, _, api = await _get_services()
    return await api.health(request)


def _warm_schema() -> None:
    """Provision the embedding cache schema ahead of the first request"""
    vector_store, _, _ = _init_services()
    try:
        vector_store.ensure_schema_sync()
    except StoreUnavailableError as e:
        # Sticky: requests degrade to uncached computation
        logger.error(f"Schema warm-up failed: {e}")


def _startup_sync() -> None:
    """Create services and start the schema warm-up job"""
    global _scheduler

    try:
        _init_services()

        if config.vector_db_enabled and config.schema_warmup_enabled:
            logger.info("Scheduling embedding cache schema warm-up")
            _scheduler = BackgroundScheduler()
            # No trigger: the job runs once, immediately
            _scheduler.add_job(
                _warm_schema,
                id="schema_warmup",
                name="Embedding Cache Schema Warm-up",
                replace_existing=True,
            )
            _scheduler.start()
        else:
            logger.info("Schema warm-up is disabled")
    except Exception as e:
        logger.error(f"Failed to start schema warm-up: {e}")
        # Don't fail server startup; requests provision on demand


def _shutdown_sync() -> None:
    """Gracefully shutdown on server shutdown"""
    global _scheduler

    if _scheduler:
        try:
            logger.info("Shutting down background scheduler")
            _scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        _scheduler = None

    if _vector_store:
        try:
            _vector_store.close()
        except Exception as e:
            logger.error(f"Error closing vector store: {e}")

    get_telemetry_service().shutdown()


def main() -> None:
    """Entry point for the server"""
    _startup_sync()

    try:
        mcp.run(transport="streamable-http", host=config.server_host, port=config.server_port)
    finally:
        _shutdown_sync()


if __name__ == "__main__":
    main()
