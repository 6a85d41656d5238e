"""Embedding generation for entity alignment.

Supports an OpenAI-compatible embeddings endpoint or a local FastEmbed model,
with a bounded LRU cache keyed by text hash and truncation of long inputs.
"""

import hashlib
from typing import Any, List, Optional, Tuple

import numpy as np
from fastembed import TextEmbedding
from loguru import logger

from safetykg.errors import EmbeddingProviderError
from safetykg.utils.cache import LRUTTLCache
from safetykg.utils.config import EmbeddingConfig
from safetykg.utils.llm_client import create_openai_client


class EmbeddingGenerator:
    """Generate embeddings for text with the configured provider.

    Example:
        >>> generator = EmbeddingGenerator(EmbeddingConfig(provider="local"))
        >>> vectors = generator.generate(["泵 设备", "阀门 设备"])
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None, use_cache: bool = True) -> None:
        """Initialize the embedding generator.

        Args:
            config: Embedding configuration
            use_cache: Whether to cache embeddings by text
        """
        self.config = config or EmbeddingConfig()
        self.provider = self.config.provider
        self.use_cache = use_cache

        self._cache: LRUTTLCache[np.ndarray] = LRUTTLCache(
            max_size=self.config.cache_size, ttl_seconds=None
        )

        self.client: Any = None
        self.model: Any = None

        if self.provider == "openai":
            self.client = create_openai_client(
                api_key=self.config.api_key, base_url=self.config.base_url
            )
            logger.info(f"Using OpenAI-compatible embeddings: {self.config.model}")
        else:
            logger.info(f"Loading local embedding model: {self.config.model}")
            self.model = TextEmbedding(model_name=self.config.model)
            logger.success(f"Loaded {self.config.model} ({self.config.dimension}d embeddings)")

    def generate(self, texts: List[str]) -> List[np.ndarray]:
        """Generate embeddings for a list of texts.

        Args:
            texts: Texts to embed

        Returns:
            One float32 vector per input text, in order

        Raises:
            EmbeddingProviderError: If the provider call fails
        """
        if not texts:
            return []

        embeddings: List[Optional[np.ndarray]] = []
        pending: List[Tuple[int, str]] = []

        for i, text in enumerate(texts):
            if self.use_cache:
                cached = self._cache.get(self._get_cache_key(text))
                if cached is not None:
                    embeddings.append(cached)
                    continue
            embeddings.append(None)
            pending.append((i, text))

        if pending:
            truncated = [self._truncate_text(text) for _, text in pending]
            try:
                generated = self._embed(truncated)
            except Exception as exc:  # noqa: BLE001
                raise EmbeddingProviderError(f"Embedding request failed: {exc}") from exc

            if len(generated) != len(pending):
                raise EmbeddingProviderError(
                    f"Embedding provider returned {len(generated)} vectors for {len(pending)} inputs"
                )

            for (i, original), vector in zip(pending, generated):
                array = np.asarray(vector, dtype=np.float32)
                if self.use_cache:
                    self._cache.set(self._get_cache_key(original), array)
                embeddings[i] = array

        logger.debug(
            f"Generated {len(texts)} embeddings "
            f"(cache hits: {self._cache.hits}, misses: {self._cache.misses})"
        )
        return [e for e in embeddings if e is not None]

    def _embed(self, texts: List[str]) -> List[Any]:
        if self.provider == "openai":
            response = self.client.embeddings.create(model=self.config.model, input=texts)
            return [item.embedding for item in response.data]
        return list(self.model.embed(texts, batch_size=self.config.batch_size))

    def _truncate_text(self, text: str) -> str:
        # ~4 characters per token
        max_chars = self.config.max_tokens * 4
        if len(text) <= max_chars:
            return text
        logger.debug(f"Truncated embedding input from {len(text)} to {max_chars} chars")
        return text[:max_chars]

    def _get_cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def clear_cache(self) -> None:
        """Clear the embedding cache."""
        self._cache.clear()
        self._cache.hits = 0
        self._cache.misses = 0

    @staticmethod
    def cosine_similarity(a: Any, b: Any) -> float:
        """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
        vec_a = np.asarray(a, dtype=np.float64)
        vec_b = np.asarray(b, dtype=np.float64)
        if vec_a.shape != vec_b.shape or vec_a.size == 0:
            return 0.0
        norm_a = np.linalg.norm(vec_a)
        norm_b = np.linalg.norm(vec_b)
        if norm_a == 0 or norm_b == 0:
            return 0.0
        return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))

    def __repr__(self) -> str:
        return (
            f"EmbeddingGenerator(provider={self.provider}, model={self.config.model}, "
            f"cache_size={len(self._cache)})"
        )
