# =============================================================================
# Embedding Gateway — Text → Fixed-Length Vectors (Provider-Agnostic)
# =============================================================================
#
# Wraps any OpenAI-compatible embeddings endpoint (OpenAI, DashScope, ...)
# behind two calls:
#
#   embed(text)         → one vector
#   embed_batch(texts)  → vectors in input order, one API call per
#                          `embedding_batch_size` texts
#
# The gateway validates what comes back: one vector per input, each of the
# configured dimension. Anything else is a ProviderError.
#
# No retry logic: a failed call raises immediately and the caller decides.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import APIError, AsyncOpenAI

from web3_insight.config import Settings, settings
from web3_insight.errors import ConfigError, InputError, ProviderError

logger = logging.getLogger(__name__)


class EmbeddingGateway:
    """
    Async embedding client with input and output validation.

    The SDK client is created lazily on first use, so a missing API key
    surfaces as ConfigError on the first embedding call rather than at
    import or application startup. Tests pass a fake `client` directly.
    """

    def __init__(
        self,
        config: Settings | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._config = config or settings
        self._client = client
        self.model = self._config.embedding_model
        self.dimensions = self._config.embedding_dimensions
        self._batch_size = self._config.embedding_batch_size

    def _get_client(self) -> AsyncOpenAI:
        """Lazily initialize and cache the embedding client."""
        if self._client is None:
            resolved_key = self._config.openai_api_key or self._config.llm_api_key
            if not resolved_key:
                raise ConfigError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )

            client_kwargs: dict = {"api_key": resolved_key}
            if self._config.embedding_base_url:
                client_kwargs["base_url"] = self._config.embedding_base_url

            self._client = AsyncOpenAI(**client_kwargs)

            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self.model,
                self._config.embedding_base_url or "https://api.openai.com/v1",
            )
        return self._client

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Raises:
            InputError: If text is empty or whitespace-only.
            ConfigError: If no embedding API key is configured.
            ProviderError: If the API call fails or returns malformed data.
        """
        if not text or not text.strip():
            raise InputError("Text to embed cannot be empty")
        vectors = await self._create([text.strip()])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed many texts, preserving input order.

        Normally a single upstream call; lists longer than
        `embedding_batch_size` are split into consecutive sub-batches.

        Raises:
            InputError: If the list is empty or contains an empty text.
            ConfigError: If no embedding API key is configured.
            ProviderError: If an API call fails or returns malformed data.
        """
        if not texts:
            raise InputError("Texts to embed must be a non-empty list")

        empty = [i for i, t in enumerate(texts) if not t or not t.strip()]
        if empty:
            raise InputError(
                "Texts to embed cannot be empty",
                details=[f"Text at position {i} is empty" for i in empty],
            )

        cleaned = [t.strip() for t in texts]
        all_embeddings: list[list[float]] = []

        for i in range(0, len(cleaned), self._batch_size):
            batch = cleaned[i : i + self._batch_size]
            logger.debug(
                "Embedding batch %d–%d of %d texts (model=%s)",
                i + 1, i + len(batch), len(cleaned), self.model,
            )
            all_embeddings.extend(await self._create(batch))

        logger.info(
            "Generated %d embeddings (model=%s, dimensions=%d)",
            len(all_embeddings), self.model, self.dimensions,
        )
        return all_embeddings

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _create(self, batch: list[str]) -> list[list[float]]:
        """One upstream call; returns vectors in the order of `batch`."""
        client = self._get_client()

        create_kwargs: dict = {"model": self.model, "input": batch}
        if self.dimensions:
            create_kwargs["dimensions"] = self.dimensions

        try:
            response = await client.embeddings.create(**create_kwargs)
        except APIError as e:
            raise ProviderError(f"Embedding provider error: {e}") from e

        data = list(response.data or [])
        if len(data) != len(batch):
            raise ProviderError(
                f"Embedding provider returned {len(data)} vectors "
                f"for {len(batch)} inputs"
            )

        # Sorted by the provider's index so output order matches input order
        vectors = [item.embedding for item in sorted(data, key=lambda x: x.index)]
        for vector in vectors:
            if not vector or len(vector) != self.dimensions:
                raise ProviderError(
                    f"Embedding provider returned a vector of dimension "
                    f"{len(vector) if vector else 0}, expected {self.dimensions}"
                )
        return [list(vector) for vector in vectors]
