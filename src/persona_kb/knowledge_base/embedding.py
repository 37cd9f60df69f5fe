"""
Embedding client for the knowledge base.

Talks to a local LM Studio server (OpenAI-compatible API) or to OpenAI, with
per-call retry and exponential backoff, an optional fallback provider and
dimension normalization so every stored vector has the configured length.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx
import numpy as np
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config_manager.knowledge_base import EmbeddingConfig
from ..config_manager.settings import KBSettings
from .errors import EmbeddingError
from .models import EmbeddingResult, EmbeddingServiceStatus

OPENAI_BASE_URL = "https://api.openai.com/v1"
EMBEDDING_REQUEST_TIMEOUT = 60.0


class ProviderError(Exception):
    """A provider answered with an error status or an unusable payload."""


class Embedder(Protocol):
    """What the indexing pipeline and the retriever need from an embedding client."""

    async def check_embedding_availability(self) -> EmbeddingServiceStatus: ...

    async def generate_embedding(self, text: str) -> EmbeddingResult: ...


def normalize_embedding(embedding: Sequence[float], target_dims: int) -> list[float]:
    """
    Truncate or zero-pad a vector to `target_dims`.

    Raises:
        ValueError, TypeError: If the vector is not a flat list of finite numbers
    """
    vector = np.asarray(embedding, dtype=np.float32)
    if vector.ndim != 1 or vector.shape[0] == 0:
        raise ValueError(f"Expected a flat vector, got shape {vector.shape}")
    if not np.isfinite(vector).all():
        raise ValueError("Embedding contains non-finite values")

    if vector.shape[0] == target_dims:
        return vector.tolist()

    if vector.shape[0] > target_dims:
        logger.warning(f"⚠️ Truncating embedding {vector.shape[0]}D -> {target_dims}D")
        return vector[:target_dims].tolist()

    logger.warning(f"⚠️ Padding embedding {vector.shape[0]}D -> {target_dims}D")
    return np.pad(vector, (0, target_dims - vector.shape[0])).tolist()


class EmbeddingClient:
    """
    Generates embeddings through the configured provider.

    One instance is shared by the indexing pipeline and the retriever; it owns
    an `httpx.AsyncClient` unless one is injected.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        lm_studio_base_url: Optional[str] = None,
        embedding_base_url: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        openai_base_url: str = OPENAI_BASE_URL,
        settings: Optional[KBSettings] = None,
    ):
        """
        Initialize the embedding client.

        Args:
            config: Embedding section of the RAG configuration
            http_client: Optional shared HTTP client (tests inject a mock transport)
            lm_studio_base_url: LM Studio API base, defaults to LM_STUDIO_BASE_URL
            embedding_base_url: Base for the embeddings endpoint, defaults to
                EMBEDDING_BASE_URL or the LM Studio base
            openai_api_key: OpenAI key, defaults to OPENAI_API_KEY
            openai_base_url: OpenAI API base
            settings: Environment settings supplying the defaults above
        """
        settings = settings or KBSettings()
        self.config = config
        self._http = http_client or httpx.AsyncClient(timeout=EMBEDDING_REQUEST_TIMEOUT)
        self._owns_http = http_client is None
        self.lm_studio_base_url = (lm_studio_base_url or settings.lm_studio_base_url).rstrip("/")
        self.embedding_base_url = (
            embedding_base_url or settings.embedding_base_url or self.lm_studio_base_url
        ).rstrip("/")
        self.openai_api_key = (
            openai_api_key if openai_api_key is not None else settings.openai_api_key
        )
        self.openai_base_url = openai_base_url.rstrip("/")

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "EmbeddingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def check_embedding_availability(self) -> EmbeddingServiceStatus:
        """
        Probe the configured provider with a short timeout.

        LM Studio is probed with `GET /models`. If it is unreachable and the
        fallback is OpenAI with a key configured, the fallback is reported as
        available instead.

        Returns:
            EmbeddingServiceStatus describing the provider that would be used
        """
        provider = self.config.provider
        model = self.config.model

        if provider == "lmstudio":
            start = time.monotonic()
            try:
                response = await self._http.get(
                    f"{self.lm_studio_base_url}/models",
                    timeout=self.config.availability_timeout_seconds,
                )
            except httpx.HTTPError as e:
                if self.config.fallback_provider == "openai" and self.openai_api_key:
                    logger.warning(
                        f"⚠️ LM Studio unreachable ({e!r}), OpenAI fallback is available"
                    )
                    return EmbeddingServiceStatus(
                        available=True,
                        provider="openai",
                        model=self.config.fallback_model,
                    )
                return EmbeddingServiceStatus(
                    available=False,
                    provider="lmstudio",
                    model=model,
                    error=str(e) or e.__class__.__name__,
                )

            latency_ms = int((time.monotonic() - start) * 1000)
            if response.is_success:
                return EmbeddingServiceStatus(
                    available=True, provider="lmstudio", model=model, latency_ms=latency_ms
                )
            return EmbeddingServiceStatus(
                available=False,
                provider="lmstudio",
                model=model,
                error=f"HTTP {response.status_code}",
                latency_ms=latency_ms,
            )

        if self.openai_api_key:
            return EmbeddingServiceStatus(available=True, provider="openai", model=model)
        return EmbeddingServiceStatus(
            available=False,
            provider="openai",
            model=model,
            error="OPENAI_API_KEY not configured",
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Embed a single text, retrying transient failures.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult normalized to the configured dimensions

        Raises:
            EmbeddingError: When the primary (and fallback, if any) exhausted
                their retry budgets
        """
        provider = self.config.provider
        model = self.config.model

        try:
            return await self._with_retry(
                lambda: self._call_embedding_api(provider, model, text),
                name=f"{provider}/{model}",
            )
        except EmbeddingError as primary_error:
            fallback_provider = self.config.fallback_provider
            fallback_model = self.config.fallback_model
            if not (fallback_provider and fallback_model):
                raise

            logger.warning(
                f"⚠️ Primary {provider}/{model} failed after retries, trying fallback "
                f"{fallback_provider}/{fallback_model}: {primary_error}"
            )
            return await self._with_retry(
                lambda: self._call_embedding_api(fallback_provider, fallback_model, text),
                name=f"{fallback_provider}/{fallback_model}",
            )

    async def generate_embeddings(
        self,
        texts: Sequence[str],
        concurrency: Optional[int] = None,
    ) -> list[EmbeddingResult]:
        """
        Embed several texts with at most `concurrency` calls in flight.

        Results are returned in input order; the first failure propagates.
        """
        semaphore = asyncio.Semaphore(concurrency or self.config.concurrency)

        async def _embed(text: str) -> EmbeddingResult:
            async with semaphore:
                return await self.generate_embedding(text)

        return list(await asyncio.gather(*(_embed(t) for t in texts)))

    async def _with_retry(
        self,
        fn: Callable[[], Awaitable[EmbeddingResult]],
        name: str,
    ) -> EmbeddingResult:
        attempts = self.config.retry_attempts

        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            wait_ms = int((state.next_action.sleep if state.next_action else 0) * 1000)
            logger.warning(
                f"⚠️ Embedding {name} attempt {state.attempt_number}/{attempts} failed, "
                f"retrying in {wait_ms}ms: {error}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.config.retry_delay_ms / 1000),
            retry=retry_if_exception_type((httpx.HTTPError, ProviderError)),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return await retrying(fn)
        except (httpx.HTTPError, ProviderError) as e:
            raise EmbeddingError(f"{name} failed after {attempts} attempts: {e}") from e

    async def _call_embedding_api(
        self, provider: str, model: str, text: str
    ) -> EmbeddingResult:
        if provider == "lmstudio":
            url = f"{self.embedding_base_url}/embeddings"
            headers = {"Content-Type": "application/json"}
            label = "LM Studio"
        else:
            if not self.openai_api_key:
                raise ProviderError("OPENAI_API_KEY not configured")
            url = f"{self.openai_base_url}/embeddings"
            headers = {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.openai_api_key}",
            }
            label = "OpenAI"

        response = await self._http.post(
            url, json={"model": model, "input": text}, headers=headers
        )
        if not response.is_success:
            raise ProviderError(
                f"{label} embedding failed ({response.status_code}): {response.text}"
            )

        try:
            embedding = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Invalid embedding response from {label}") from e
        if not isinstance(embedding, list) or not embedding:
            raise ProviderError(f"Invalid embedding response from {label}")

        try:
            normalized = normalize_embedding(embedding, self.config.dimensions)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"Invalid embedding vector from {label}: {e}") from e
        return EmbeddingResult(
            embedding=normalized,
            provider=provider,
            model=model,
            dimensions=len(normalized),
        )
