"""Embedding generation for chunks and queries."""
from enum import Enum
from typing import List, Sequence

import httpx
import structlog

from app import config
from app.errors import ConfigurationError, UpstreamError, ValidationError
from app.llm_client import GeminiClient
from app.rag.models import EmbeddingVector

logger = structlog.get_logger()


class TaskType(str, Enum):
    """What an embedding will be used for. Stored chunks and search queries
    must be embedded with their own task type."""

    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"


class Embedder:
    """Turns text into fixed-length vectors using the Gemini embedding API."""

    def __init__(
        self,
        client: GeminiClient,
        model: str = None,
        dimension: int = None,
    ):
        """Initialize the embedder.

        Args:
            client: Gemini client handle
            model: Embedding model name (default: the client's embedding model)
            dimension: Required vector length (default from config)
        """
        self.client = client
        self.model = model or client.embedding_model
        self.dimension = dimension or config.EMBEDDING_DIMENSION

    def _check_configured(self) -> None:
        if not self.client.is_configured:
            raise ConfigurationError("GEMINI_API_KEY is not set in environment variables")

    def _to_vector(self, values: Sequence[float]) -> EmbeddingVector:
        if len(values) != self.dimension:
            raise UpstreamError(
                "embedding",
                f"Expected {self.dimension} dimensions, got {len(values)}",
                {"model": self.model},
            )
        return tuple(float(v) for v in values)

    async def embed(
        self, text: str, task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT
    ) -> EmbeddingVector:
        """Embed a single text.

        Raises:
            ConfigurationError: If the Gemini API key is missing
            ValidationError: If text is empty
            UpstreamError: If the embedding call fails
        """
        self._check_configured()

        if not text or not text.strip():
            raise ValidationError("Text cannot be empty")

        try:
            values = await self.client.embed_content(
                text,
                task_type=TaskType(task_type).value,
                model=self.model,
                output_dimensionality=self.dimension,
            )
        except httpx.HTTPError as e:
            raise UpstreamError("embedding", str(e), {"model": self.model}) from e

        return self._to_vector(values)

    async def embed_batch(
        self,
        texts: Sequence[str],
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> List[EmbeddingVector]:
        """Embed many texts with one batched request.

        Returns:
            Vectors aligned index-for-index with ``texts``

        Raises:
            ConfigurationError: If the Gemini API key is missing
            ValidationError: If texts is empty or contains a blank entry
            UpstreamError: If the embedding call fails or returns the wrong count
        """
        self._check_configured()

        if not texts:
            raise ValidationError("Texts array cannot be empty")

        blank = [i for i, text in enumerate(texts) if not text or not text.strip()]
        if blank:
            raise ValidationError(
                "Texts cannot contain empty entries", {"positions": blank[:10]}
            )

        try:
            batch = await self.client.batch_embed_contents(
                list(texts),
                task_type=TaskType(task_type).value,
                model=self.model,
                output_dimensionality=self.dimension,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(
                "embedding", str(e), {"model": self.model, "batch_size": len(texts)}
            ) from e

        if len(batch) != len(texts):
            raise UpstreamError(
                "embedding",
                f"Requested {len(texts)} embeddings, received {len(batch)}",
                {"model": self.model},
            )

        vectors = [self._to_vector(values) for values in batch]

        logger.debug(
            "embeddings_batch_generated",
            batch_size=len(vectors),
            task_type=TaskType(task_type).value,
        )

        return vectors
