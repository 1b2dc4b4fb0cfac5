"""Unit tests for the remote embedding service"""

import json

import httpx
import pytest

from paper_rerank.errors import (
    InvalidInputError,
    UpstreamError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from paper_rerank.services import codec
from paper_rerank.services.embedder import Embedder, first_significant_byte
from tests.helpers import DIM, unit_vector

OVERLOADED = '{"error":"overloaded","error_type":"overloaded"}'


def make_embedder(handler) -> Embedder:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Embedder(client=client, endpoint_url="http://model.test/embed")


def respond(status_code: int, content: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=content.encode())

    return handler


class TestGenerateEmbeddings:
    @pytest.mark.asyncio
    async def test_embed_text_returns_full_dimension(self, embedder, fake_model):
        vector = await embedder.embed_text("  attention is all you need  ")

        assert len(vector) == DIM
        # Text is trimmed before it is sent
        assert fake_model.calls == [["attention is all you need"]]

    @pytest.mark.asyncio
    async def test_embed_batch_is_one_remote_call(self, embedder, fake_model):
        vectors = await embedder.embed_batch(["a", "b", "c"])

        assert len(vectors) == 3
        assert vectors[1] == pytest.approx(unit_vector("b"))
        assert len(fake_model.calls) == 1

    @pytest.mark.asyncio
    async def test_request_shape_and_credentials(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[unit_vector("x")])

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("paper_rerank.services.embedder.config.embedding_api_key", "secret")
            embedder = make_embedder(handler)

        await embedder.embed_text("x")

        assert json.loads(seen[0].content) == {"inputs": ["x"]}
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_rejects_oversized_batch_before_remote_call(self, embedder, fake_model):
        with pytest.raises(InvalidInputError, match="Maximum 32"):
            await embedder.embed_batch([f"text {i}" for i in range(33)])

        assert fake_model.calls == []

    @pytest.mark.asyncio
    async def test_rejects_empty_batch(self, embedder, fake_model):
        with pytest.raises(InvalidInputError):
            await embedder.embed_batch([])

        assert fake_model.calls == []

    @pytest.mark.asyncio
    async def test_rejects_blank_text(self, embedder, fake_model):
        with pytest.raises(InvalidInputError, match="position 1"):
            await embedder.embed_batch(["ok", "   "])

        assert fake_model.calls == []

    @pytest.mark.asyncio
    async def test_wrong_dimension_from_remote(self):
        embedder = make_embedder(respond(200, json.dumps([[0.1, 0.2]])))

        with pytest.raises(UpstreamUnavailableError, match="dimension mismatch"):
            await embedder.embed_text("x")

    @pytest.mark.asyncio
    async def test_non_numeric_component_from_remote(self):
        embedder = make_embedder(respond(200, json.dumps([["x"] * DIM])))

        with pytest.raises(UpstreamUnavailableError, match="non-numeric") as exc_info:
            await embedder.embed_text("x")

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_null_component_from_remote(self):
        embedder = make_embedder(respond(200, json.dumps([[None] * DIM])))

        with pytest.raises(UpstreamUnavailableError, match="non-numeric"):
            await embedder.embed_text("x")

    @pytest.mark.asyncio
    async def test_wrong_count_from_remote(self):
        embedder = make_embedder(respond(200, json.dumps([unit_vector("a")])))

        with pytest.raises(UpstreamUnavailableError, match="count mismatch"):
            await embedder.embed_batch(["a", "b"])


class TestRemoteErrors:
    @pytest.mark.asyncio
    async def test_overloaded_in_error_status(self):
        """Test that an error status carrying an error object maps to 429"""
        embedder = make_embedder(respond(424, OVERLOADED))

        with pytest.raises(UpstreamError) as exc_info:
            await embedder.embed_text("x")

        assert exc_info.value.status_code == 429
        assert exc_info.value.payload == OVERLOADED

    @pytest.mark.asyncio
    async def test_overloaded_in_200_body(self):
        """Test that a 200 body carrying an error object maps to 429 too"""
        embedder = make_embedder(respond(200, OVERLOADED))

        with pytest.raises(UpstreamError) as exc_info:
            await embedder.embed_text("x")

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_transport_error_with_embedded_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(f"remote invocation failed: {OVERLOADED}", request=request)

        embedder = make_embedder(handler)

        with pytest.raises(UpstreamError) as exc_info:
            await embedder.embed_text("x")

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_transport_error_without_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        embedder = make_embedder(handler)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await embedder.embed_text("x")

        assert exc_info.value.status_code == 502
        assert "connection refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unparseable_error_status(self):
        embedder = make_embedder(respond(500, "<html>bad gateway</html>"))

        with pytest.raises(UpstreamUnavailableError):
            await embedder.embed_text("x")

    @pytest.mark.asyncio
    async def test_timeout_is_reported_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        embedder = make_embedder(handler)

        with pytest.raises(UpstreamTimeoutError):
            await embedder.embed_text("x")

        assert len(calls) == 1


class TestProxy:
    @pytest.mark.asyncio
    async def test_success_array_forwarded_verbatim(self):
        body = "  \n[[0.1, 0.2], [0.3, 0.4]]"
        embedder = make_embedder(respond(200, body))

        result = await embedder.proxy(b'{"inputs": ["a", "b"]}')

        assert result.status_code == 200
        assert result.body == body.encode()

    @pytest.mark.asyncio
    async def test_error_body_remapped(self):
        embedder = make_embedder(respond(200, OVERLOADED))

        result = await embedder.proxy(b'{"inputs": ["a"]}')

        assert result.status_code == 429
        assert json.loads(result.body)["error_type"] == "overloaded"

    @pytest.mark.asyncio
    async def test_error_status_remapped(self):
        payload = '{"error":"input too long","error_type":"validation"}'
        embedder = make_embedder(respond(400, payload))

        result = await embedder.proxy(b'{"inputs": ["a"]}')

        assert result.status_code == 413
        assert result.body == payload.encode()

    @pytest.mark.asyncio
    async def test_unknown_object_forwarded_as_200(self):
        embedder = make_embedder(respond(200, '{"status": "warming up"}'))

        result = await embedder.proxy(b"{}")

        assert result.status_code == 200
        assert result.body == b'{"status": "warming up"}'

    @pytest.mark.asyncio
    async def test_binary_variant(self):
        embedder = make_embedder(respond(200, json.dumps([[0.5, 1.5], [2.5, 3.5]])))

        result = await embedder.proxy_binary(b'{"inputs": ["a", "b"]}')

        assert result.status_code == 200
        assert result.content_type == "application/octet-stream"
        assert codec.decode(result.body) == [[0.5, 1.5], [2.5, 3.5]]

    @pytest.mark.asyncio
    async def test_binary_variant_error_body(self):
        embedder = make_embedder(respond(200, OVERLOADED))

        result = await embedder.proxy_binary(b'{"inputs": ["a"]}')

        assert result.status_code == 429
        assert result.content_type == "application/json"


def test_first_significant_byte():
    assert first_significant_byte(b" \t\r\n[1]") == b"["
    assert first_significant_byte(b"   ") == b""
