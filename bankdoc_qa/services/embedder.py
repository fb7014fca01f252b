# =============================================================================
# Embedding Gateway — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates query embeddings using any OpenAI-compatible embedding API.
# Supports OpenAI, Alibaba Cloud (DashScope), and any other provider that
# implements the OpenAI embeddings endpoint.
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose OpenAI-compatible APIs, so switching embedding
# backends is an env change (EMBEDDING_BASE_URL), not a code change.
#
# DESIGN DECISION: Async client. Embedding sits on the request path
# (every question embeds 1–4 variants), so the call must not block the
# FastAPI event loop.
#
# DESIGN DECISION: Each API call goes through retry_async. Quota and
# rate-limit failures back off; auth / invalid-input failures surface
# immediately as FatalUpstreamError.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens
# - We batch at 100 texts per API call (configurable via settings)
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from bankdoc_qa.config import settings
from bankdoc_qa.services.retry import retry_async

logger = logging.getLogger(__name__)


class EmbeddingGateway:
    """
    Thin async wrapper around an OpenAI-compatible embeddings endpoint.

    Args:
        client: Pre-built AsyncOpenAI-like client. Built lazily from
            settings when omitted, so importing this module never needs
            an API key.
        model: Embedding model name.
        dimensions: Output dimensionality (0 / None → provider default).
        batch_size: Texts per API call.
        max_attempts / base_delay: Retry policy per API call.
    """

    def __init__(
        self,
        client: Any | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        self._client = client
        self._model = model or settings.embedding_model
        self._dimensions = (
            settings.embedding_dimensions if dimensions is None else dimensions
        )
        self._batch_size = batch_size or settings.embedding_batch_size
        self._max_attempts = max_attempts or settings.retry_max_attempts
        self._base_delay = (
            settings.retry_base_delay_seconds if base_delay is None else base_delay
        )

    # -----------------------------------------------------------------------
    # Client — Lazy Initialisation
    # -----------------------------------------------------------------------
    # API key resolution order:
    #   1. OPENAI_API_KEY (explicit embedding key)
    #   2. LLM_API_KEY (shared key, e.g. one DashScope key for everything)
    # -----------------------------------------------------------------------

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            resolved_key = settings.openai_api_key or settings.llm_api_key
            if not resolved_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )

            client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
            if settings.embedding_base_url:
                client_kwargs["base_url"] = settings.embedding_base_url

            self._client = AsyncOpenAI(**client_kwargs)
            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self._model,
                settings.embedding_base_url or "https://api.openai.com/v1",
            )
        return self._client

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed texts in sub-batches, returning vectors in input order.

        Raises:
            ValueError: If no API key is configured.
            TransientUpstreamError: Rate limited on every attempt.
            FatalUpstreamError: Authentication or invalid input.
        """
        if not texts:
            return []

        client = self._get_client()
        all_embeddings: list[list[float]] = [[] for _ in texts]

        for start in range(0, len(texts), self._batch_size):
            batch = list(texts[start : start + self._batch_size])

            create_kwargs: dict = {"model": self._model, "input": batch}
            if self._dimensions:
                create_kwargs["dimensions"] = self._dimensions

            response = await retry_async(
                lambda: client.embeddings.create(**create_kwargs),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                description="Embedding batch",
            )

            # Items carry their own index; order is not assumed.
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[start + item.index] = item.embedding

            logger.debug(
                "Embedded %d texts (%d prompt tokens)",
                len(batch),
                response.usage.prompt_tokens if response.usage else 0,
            )

        return all_embeddings

    async def embed(self, text: str) -> list[float]:
        """Embed a single text. Convenience wrapper over embed_batch."""
        result = await self.embed_batch([text])
        return result[0]
