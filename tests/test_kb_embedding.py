"""Unit tests for the embedding client (HTTP faked with `httpx.MockTransport`)."""

from __future__ import annotations

import unittest
from pathlib import Path
import sys

import httpx


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

LM_STUDIO = "http://lmstudio.test/v1"


def _config(**updates):
    from persona_kb.config_manager.knowledge_base import EmbeddingConfig

    # model_copy skips validation so tests can use a zero retry delay
    return EmbeddingConfig(dimensions=4).model_copy(
        update={"retry_delay_ms": 0, **updates}
    )


def _client(handler, **config_updates):
    from persona_kb.knowledge_base.embedding import EmbeddingClient

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EmbeddingClient(
        _config(**config_updates),
        http_client=http,
        lm_studio_base_url=LM_STUDIO,
        embedding_base_url=LM_STUDIO,
        openai_api_key="",
    )


def _embedding_response(vector):
    return httpx.Response(200, json={"data": [{"embedding": vector}]})


class TestEmbeddingClient(unittest.IsolatedAsyncioTestCase):
    async def test_generate_embedding_pads_to_configured_dimensions(self) -> None:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return _embedding_response([0.1, 0.2, 0.3])

        client = _client(handler)
        result = await client.generate_embedding("hello")

        self.assertEqual(len(result.embedding), 4)
        self.assertEqual(result.embedding[3], 0.0)
        self.assertEqual(result.dimensions, 4)
        self.assertEqual(result.provider, "lmstudio")
        self.assertEqual(str(requests[0].url), f"{LM_STUDIO}/embeddings")

    async def test_retries_transient_failures(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(500, text="busy")
            return _embedding_response([1.0, 0.0, 0.0, 0.0])

        client = _client(handler, retry_attempts=3)
        result = await client.generate_embedding("hello")

        self.assertEqual(calls["n"], 3)
        self.assertEqual(result.embedding, [1.0, 0.0, 0.0, 0.0])

    async def test_raises_after_retry_budget_is_exhausted(self) -> None:
        from persona_kb.knowledge_base.errors import EmbeddingError

        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, retry_attempts=2)
        with self.assertRaises(EmbeddingError):
            await client.generate_embedding("hello")
        self.assertEqual(calls["n"], 2)

    async def test_invalid_payload_is_an_error(self) -> None:
        from persona_kb.knowledge_base.errors import EmbeddingError

        client = _client(lambda request: httpx.Response(200, json={"data": []}), retry_attempts=1)
        with self.assertRaises(EmbeddingError):
            await client.generate_embedding("hello")

    async def test_non_numeric_vector_is_retried_then_an_error(self) -> None:
        from persona_kb.knowledge_base.errors import EmbeddingError

        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return _embedding_response(["nan?", None])

        client = _client(handler, retry_attempts=2)
        with self.assertRaises(EmbeddingError) as ctx:
            await client.generate_embedding("hello")

        self.assertEqual(calls["n"], 2)
        self.assertIn("Invalid embedding vector", str(ctx.exception))

    async def test_nested_vector_is_an_error(self) -> None:
        from persona_kb.knowledge_base.errors import EmbeddingError

        client = _client(lambda r: _embedding_response([[1.0, 2.0], [3.0, 4.0]]), retry_attempts=1)
        with self.assertRaises(EmbeddingError):
            await client.generate_embedding("hello")

    async def test_falls_back_to_openai(self) -> None:
        from persona_kb.knowledge_base.embedding import EmbeddingClient

        seen_hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_hosts.append(request.url.host)
            if request.url.host == "lmstudio.test":
                return httpx.Response(503)
            self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
            return _embedding_response([0.5, 0.5, 0.5, 0.5])

        client = EmbeddingClient(
            _config(
                retry_attempts=1,
                fallback_provider="openai",
                fallback_model="text-embedding-3-small",
            ),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            lm_studio_base_url=LM_STUDIO,
            embedding_base_url=LM_STUDIO,
            openai_api_key="sk-test",
            openai_base_url="http://openai.test/v1",
        )
        result = await client.generate_embedding("hello")

        self.assertEqual(seen_hosts, ["lmstudio.test", "openai.test"])
        self.assertEqual(result.provider, "openai")
        self.assertEqual(result.model, "text-embedding-3-small")

    async def test_generate_embeddings_keeps_input_order(self) -> None:
        import json

        def handler(request: httpx.Request) -> httpx.Response:
            text = json.loads(request.content)["input"]
            return _embedding_response([float(len(text)), 0.0, 0.0, 0.0])

        client = _client(handler)
        results = await client.generate_embeddings(["a", "bbb", "cc"], concurrency=2)

        self.assertEqual([r.embedding[0] for r in results], [1.0, 3.0, 2.0])


class TestEmbeddingAvailability(unittest.IsolatedAsyncioTestCase):
    async def test_available_when_models_endpoint_answers(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(str(request.url), f"{LM_STUDIO}/models")
            return httpx.Response(200, json={"data": []})

        status = await _client(handler).check_embedding_availability()

        self.assertTrue(status.available)
        self.assertEqual(status.provider, "lmstudio")

    async def test_unavailable_when_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        status = await _client(handler).check_embedding_availability()

        self.assertFalse(status.available)
        self.assertIn("connection refused", status.error)

    async def test_unavailable_on_error_status(self) -> None:
        status = await _client(lambda r: httpx.Response(500)).check_embedding_availability()

        self.assertFalse(status.available)
        self.assertEqual(status.error, "HTTP 500")

    async def test_openai_without_key_is_unavailable(self) -> None:
        status = await _client(
            lambda r: httpx.Response(200), provider="openai"
        ).check_embedding_availability()

        self.assertFalse(status.available)
        self.assertEqual(status.error, "OPENAI_API_KEY not configured")


class TestNormalizeEmbedding(unittest.TestCase):
    def test_truncates_long_vectors(self) -> None:
        from persona_kb.knowledge_base.embedding import normalize_embedding

        self.assertEqual(normalize_embedding([1.0, 2.0, 3.0], 2), [1.0, 2.0])

    def test_rejects_non_finite_values(self) -> None:
        from persona_kb.knowledge_base.embedding import normalize_embedding

        with self.assertRaises(ValueError):
            normalize_embedding([1.0, float("nan")], 2)


class TestEmbeddingClientSettings(unittest.TestCase):
    def test_base_urls_and_key_come_from_settings(self) -> None:
        from persona_kb.config_manager import KBSettings
        from persona_kb.knowledge_base.embedding import EmbeddingClient

        settings = KBSettings(
            lm_studio_base_url="http://lm.test/v1/",
            openai_api_key="sk-env",
        )
        client = EmbeddingClient(
            _config(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
            settings=settings,
        )

        self.assertEqual(client.lm_studio_base_url, "http://lm.test/v1")
        self.assertEqual(client.embedding_base_url, "http://lm.test/v1")
        self.assertEqual(client.openai_api_key, "sk-env")


if __name__ == "__main__":
    unittest.main()
