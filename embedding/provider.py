"""
Embedding providers.

Every vector leaving a provider has the configured pgvector width, so the
stores never see a dimension mismatch.
"""

import logging
from typing import List, Optional

import openai
from openai import AsyncOpenAI

from config import get_config
from logic.chatgpt_integration import map_openai_error, retry_with_backoff
from utils.embedding_dimensions import adjust_embedding_vector
from utils.error_handling import UpstreamError, with_timeout

logger = logging.getLogger(__name__)

MAX_EMBEDDING_CHARS = 32000


class EmbeddingProvider:
    """``embed(text) -> vector`` of fixed width; one upstream call per invocation."""

    dimension: int = 1024

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class OpenAIEmbedding(EmbeddingProvider):
    """Embeddings via ``AsyncOpenAI.embeddings.create``."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        request_dimensions: Optional[bool] = None,
        timeout: Optional[float] = None,
        config=None,
    ):
        self.config = config or get_config()
        self._client = client
        self.model = model or self.config.EMBEDDING_MODEL
        self.dimension = dimension or self.config.EMBEDDING_DIMENSIONS
        self.request_dimensions = (
            self.config.EMBEDDING_REQUEST_DIMENSIONS if request_dimensions is None else request_dimensions
        )
        self.timeout = timeout if timeout is not None else self.config.EMBEDDING_TIMEOUT

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.EMBEDDING_API_KEY:
                raise UpstreamError("Embedding API key is not configured", provider="embedding")
            self._client = AsyncOpenAI(
                api_key=self.config.EMBEDDING_API_KEY,
                base_url=self.config.EMBEDDING_BASE_URL,
                max_retries=0,
            )
        return self._client

    @retry_with_backoff(provider="embedding")
    async def embed(self, text: str) -> List[float]:
        cleaned = (text or "").replace("\n", " ").strip()
        if not cleaned:
            raise UpstreamError("Cannot embed empty text", provider="embedding")
        if len(cleaned) > MAX_EMBEDDING_CHARS:
            logger.warning("Text too long (%d chars), truncating to %d", len(cleaned), MAX_EMBEDDING_CHARS)
            cleaned = cleaned[:MAX_EMBEDDING_CHARS]

        params = {"model": self.model, "input": cleaned, "encoding_format": "float"}
        if self.request_dimensions:
            params["dimensions"] = self.dimension

        try:
            response = await with_timeout(
                self.client.embeddings.create(**params), self.timeout, "embedding"
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, "embedding") from exc

        if not response.data:
            raise UpstreamError("Embedding response contained no vectors", provider="embedding")
        return adjust_embedding_vector(response.data[0].embedding, self.dimension)
