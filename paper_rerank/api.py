"""HTTP handlers for query embedding, batch embedding, proxy and rerank requests"""

import json
import logging
import time
from typing import Any

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from paper_rerank.errors import (
    INTERNAL,
    InternalError,
    InvalidInputError,
    RerankEngineError,
    UpstreamError,
)
from paper_rerank.models.candidate import RerankRequest
from paper_rerank.services import codec
from paper_rerank.services.embedder import Embedder
from paper_rerank.services.rerank import RerankService
from paper_rerank.services.telemetry import TelemetryService
from paper_rerank.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


def wants_binary(request: Request) -> bool:
    """Binary framing is negotiated by ?format=binary or an octet-stream Accept header"""
    if request.query_params.get("format") == "binary":
        return True
    return codec.CONTENT_TYPE in request.headers.get("accept", "")


def error_response(error: Exception) -> Response:
    """
    Render an error for an HTTP caller

    Upstream errors forward the remote error object verbatim with the mapped status.
    Anything outside the taxonomy is logged with its traceback and returned as a
    generic 500.
    """
    if isinstance(error, UpstreamError) and error.payload:
        return Response(error.payload, status_code=error.status_code, media_type="application/json")

    if isinstance(error, RerankEngineError) and not isinstance(error, InternalError):
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    logger.error(f"Unhandled error while serving request: {error}", exc_info=error)
    return JSONResponse({"error": "Internal server error", "code": INTERNAL}, status_code=500)


class SearchAPI:
    """Starlette request handlers bound to the embedding and rerank services"""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        rerank_service: RerankService,
        telemetry: TelemetryService | None = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.rerank_service = rerank_service
        self.telemetry = telemetry

    def routes(self) -> list[Route]:
        return [
            Route("/api/search", self.search, methods=["GET", "POST"]),
            Route("/api/embed", self.embed, methods=["POST"]),
            Route("/health", self.health, methods=["GET"]),
            Route("/", self.health, methods=["GET"]),
        ]

    def _log(
        self,
        tool_name: str,
        query: str | None,
        parameters: dict[str, Any],
        response: dict[str, Any] | None,
        error: Exception | None,
        start_time: float,
    ) -> None:
        if self.telemetry is None:
            return
        self.telemetry.log_query(
            tool_name=tool_name,
            query=query,
            parameters=parameters,
            response=response,
            error=error,
            metadata={"elapsed_ms": (time.time() - start_time) * 1000},
        )

    async def search(self, request: Request) -> Response:
        """GET embeds a query (?q=) or a batch (?text=...); POST reranks candidates"""
        if request.method == "POST":
            return await self.rerank(request)
        if request.query_params.getlist("text"):
            return await self.embed_texts(request)
        return await self.embed_query(request)

    async def embed_query(self, request: Request) -> Response:
        start_time = time.time()
        query = request.query_params.get("q", "")
        response = None
        error: Exception | None = None

        try:
            if not query.strip():
                raise InvalidInputError("Query parameter 'q' is required")
            embedding = await self.vector_store.get_or_compute_query_embedding(query)
            response = {"queryEmbedding": embedding}
            return JSONResponse(response)
        except Exception as e:
            error = e
            return error_response(e)
        finally:
            self._log("embed_query", query, {}, response, error, start_time)

    async def embed_texts(self, request: Request) -> Response:
        start_time = time.time()
        texts = request.query_params.getlist("text")
        binary = wants_binary(request)
        error: Exception | None = None

        try:
            vectors = await self.embedder.embed_batch(texts)
            if binary:
                return Response(codec.encode(vectors), media_type=codec.CONTENT_TYPE)
            # A single text returns a bare vector, several return an array of vectors
            return JSONResponse(vectors[0] if len(vectors) == 1 else vectors)
        except Exception as e:
            error = e
            return error_response(e)
        finally:
            self._log(
                "embed_texts",
                None,
                {"batch_size": len(texts), "format": "binary" if binary else "json"},
                None,
                error,
                start_time,
            )

    async def rerank(self, request: Request) -> Response:
        start_time = time.time()
        query = None
        parameters: dict[str, Any] = {}
        response = None
        error: Exception | None = None

        try:
            try:
                body = RerankRequest.model_validate(json.loads(await request.body()))
            except (ValueError, ValidationError) as e:
                raise InvalidInputError("Invalid request body") from e

            query = body.query
            parameters = {
                "candidate_count": len(body.results),
                "precomputed_embedding": body.query_embedding is not None,
            }
            ranked = await self.rerank_service.rerank(
                body.query, body.results, query_embedding=body.query_embedding
            )
            payload = [item.to_payload() for item in ranked]
            response = {"results": payload}
            return JSONResponse(payload)
        except Exception as e:
            error = e
            return error_response(e)
        finally:
            self._log("rerank_results", query, parameters, response, error, start_time)

    async def embed(self, request: Request) -> Response:
        """Pass a raw request body through to the remote model (proxy mode)"""
        start_time = time.time()
        binary = wants_binary(request)
        error: Exception | None = None

        try:
            body = await request.body()
            if binary:
                result = await self.embedder.proxy_binary(body)
            else:
                result = await self.embedder.proxy(body)
            return Response(result.body, status_code=result.status_code, media_type=result.content_type)
        except Exception as e:
            error = e
            return error_response(e)
        finally:
            self._log(
                "embed_proxy",
                None,
                {"format": "binary" if binary else "json"},
                None,
                error,
                start_time,
            )

    async def health(self, request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "schema_ready": self.vector_store.is_ready})
