"""Embedding generation service backed by a remote TEI-compatible model endpoint"""

import asyncio
import json
import logging

import httpx

from paper_rerank.config import config
from paper_rerank.errors import (
    InvalidInputError,
    UpstreamError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    error_from_body,
    error_from_text,
)
from paper_rerank.models.proxy import ProxyResponse
from paper_rerank.services import codec

logger = logging.getLogger(__name__)

_WHITESPACE = b" \t\r\n"


def first_significant_byte(body: bytes) -> bytes:
    """Return the first non-whitespace byte of a body (empty if there is none)"""
    stripped = body.lstrip(_WHITESPACE)
    return stripped[:1]


class Embedder:
    """Generate embeddings through the remote model; holds no cache of its own"""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        endpoint_url: str | None = None,
    ):
        """
        Initialize the remote model client

        Args:
            client: Optional preconfigured httpx client (tests pass a mock transport)
            endpoint_url: Override for config.embedding_endpoint_url
        """
        self.endpoint_url = endpoint_url or config.embedding_endpoint_url
        self.model_version = config.embedding_model
        self.dimension = config.embedding_dimension
        self.max_batch_size = config.embedding_max_batch_size
        self.timeout = config.embedding_timeout_seconds

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        self._semaphore = asyncio.Semaphore(config.embedding_max_concurrency)

        self._headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.embedding_api_key:
            self._headers["Authorization"] = f"Bearer {config.embedding_api_key}"

    def validate_texts(self, texts: list[str]) -> list[str]:
        """
        Validate and trim a batch of texts

        Raises:
            InvalidInputError: If the batch is empty, too large, or contains a blank text
        """
        if not texts:
            raise InvalidInputError("At least one text is required")
        if len(texts) > self.max_batch_size:
            raise InvalidInputError(
                f"Maximum {self.max_batch_size} texts allowed per batch, got {len(texts)}"
            )

        trimmed: list[str] = []
        for i, text in enumerate(texts):
            if not isinstance(text, str):
                raise InvalidInputError(f"Text at position {i} is not a string")
            value = text.strip()
            if not value:
                raise InvalidInputError(f"Text at position {i} is empty")
            trimmed.append(value)
        return trimmed

    async def embed_text(self, text: str, timeout: float | None = None) -> list[float]:
        """
        Generate embedding for a single text

        Args:
            text: Text to embed
            timeout: Optional caller deadline in seconds

        Returns:
            list[float]: Vector with exactly `dimension` components
        """
        embeddings = await self.embed_batch([text], timeout=timeout)
        return embeddings[0]

    async def embed_batch(
        self, texts: list[str], timeout: float | None = None
    ) -> list[list[float]]:
        """
        Generate embeddings for up to max_batch_size texts in one remote call

        Args:
            texts: Texts to embed
            timeout: Optional caller deadline in seconds

        Returns:
            list[list[float]]: One vector per text, in input order
        """
        trimmed = self.validate_texts(texts)
        payload = json.dumps({"inputs": trimmed}).encode("utf-8")

        body = await self._invoke(payload, timeout)
        return self._parse_embeddings(body, expected_count=len(trimmed))

    async def proxy(self, body: bytes, timeout: float | None = None) -> ProxyResponse:
        """
        Pass a raw request body through to the remote model

        Success arrays are forwarded verbatim; error objects carrying error_type are
        forwarded with their mapped status; anything else goes back as 200.
        """
        try:
            raw = await self._invoke(body, timeout)
        except UpstreamError as e:
            return ProxyResponse(status_code=e.status_code, body=(e.payload or "").encode("utf-8"))

        if first_significant_byte(raw) == b"[":
            return ProxyResponse(status_code=200, body=raw)

        error = error_from_body(raw)
        if error is not None:
            logger.warning(f"Remote model reported {error.error_type}: {error.message}")
            return ProxyResponse(status_code=error.status_code, body=raw)

        return ProxyResponse(status_code=200, body=raw)

    async def proxy_binary(self, body: bytes, timeout: float | None = None) -> ProxyResponse:
        """Same as proxy(), but successful responses are re-framed in the binary format"""
        try:
            raw = await self._invoke(body, timeout)
        except UpstreamError as e:
            return ProxyResponse(status_code=e.status_code, body=(e.payload or "").encode("utf-8"))

        error = error_from_body(raw)
        if error is not None:
            return ProxyResponse(status_code=error.status_code, body=raw)

        try:
            vectors = json.loads(raw)
        except ValueError as e:
            raise UpstreamUnavailableError("Failed to parse embeddings") from e
        if not isinstance(vectors, list) or not all(isinstance(v, list) for v in vectors):
            raise UpstreamUnavailableError("Failed to parse embeddings")
        if not vectors:
            raise InvalidInputError("No embeddings returned")

        dims = len(vectors[0])
        if any(len(v) != dims for v in vectors):
            raise UpstreamUnavailableError("Inconsistent embedding dimensions")

        framed = codec.encode(vectors)
        logger.info(f"Binary embeddings prepared: batch={len(vectors)} dims={dims} size={len(framed)}")
        return ProxyResponse(status_code=200, body=framed, content_type=codec.CONTENT_TYPE)

    async def _invoke(self, payload: bytes, timeout: float | None) -> bytes:
        """
        Send one request to the remote model

        Not retried: any failure is terminal for the calling request.

        Raises:
            UpstreamTimeoutError: If the effective deadline expired
            UpstreamError: If a structured error could be recovered from the failure
            UpstreamUnavailableError: For any other transport failure
        """
        effective = self.timeout if timeout is None else min(timeout, self.timeout)

        try:
            async with asyncio.timeout(effective):
                async with self._semaphore:
                    response = await self.client.post(
                        self.endpoint_url, content=payload, headers=self._headers
                    )
        except (TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"Remote embedding call timed out after {effective:.1f}s")
            raise UpstreamTimeoutError(
                f"Remote embedding call exceeded {effective:.1f}s deadline"
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Remote embedding call failed: {e}")
            raise error_from_text(str(e)) from e

        if response.status_code >= 400:
            error = error_from_text(f"HTTP {response.status_code}: {response.text}")
            logger.error(f"Remote model returned HTTP {response.status_code}: {error.message}")
            raise error

        return response.content

    def _parse_embeddings(self, body: bytes, expected_count: int) -> list[list[float]]:
        """Parse a success array, or raise the error the body describes"""
        if first_significant_byte(body) != b"[":
            error = error_from_body(body)
            if error is not None:
                logger.error(f"Remote model reported {error.error_type}: {error.message}")
                raise error
            raise UpstreamUnavailableError(
                f"Unable to parse embedding response: {body[:200].decode('utf-8', 'replace')}"
            )

        try:
            vectors = json.loads(body)
        except ValueError as e:
            raise UpstreamUnavailableError("Unable to parse embedding response") from e

        if len(vectors) != expected_count:
            raise UpstreamUnavailableError(
                f"Embedding count mismatch: expected {expected_count}, got {len(vectors)}"
            )

        embeddings: list[list[float]] = []
        for vector in vectors:
            if not isinstance(vector, list) or len(vector) != self.dimension:
                size = len(vector) if isinstance(vector, list) else "non-list"
                raise UpstreamUnavailableError(
                    f"Embedding dimension mismatch: expected {self.dimension}, got {size}"
                )
            try:
                embeddings.append([float(value) for value in vector])
            except (TypeError, ValueError) as e:
                raise UpstreamUnavailableError("Embedding contains non-numeric values") from e
        return embeddings

    async def close(self) -> None:
        """Close the HTTP client if this instance created it"""
        if self._owns_client:
            await self.client.aclose()
