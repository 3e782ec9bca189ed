"""Construction of the long-lived service objects.

Everything is built once per process by ``build_services()`` and passed
explicitly to whoever needs it; ``aclose()`` releases the HTTP clients.
"""
from dataclasses import dataclass

import structlog

from app import config
from app.errors import ConfigurationError
from app.llm_client import GeminiClient
from app.rag.chunker import TextChunker
from app.rag.embedder import Embedder
from app.rag.gateway import IndexGateway
from app.rag.pipeline import RAGPipeline
from app.rag.registry import DocumentRegistry

logger = structlog.get_logger()

VECTOR_BACKENDS = ("pinecone", "faiss")


@dataclass
class RAGServices:
    llm: GeminiClient
    index_service: object
    gateway: IndexGateway
    pipeline: RAGPipeline
    registry: DocumentRegistry

    async def aclose(self) -> None:
        await self.llm.aclose()
        await self.index_service.aclose()


def build_index_service(backend: str = None):
    """Create the index service for ``backend`` ("pinecone" or "faiss")."""
    backend = (backend or config.VECTOR_BACKEND).lower()

    if backend == "pinecone":
        from app.rag.pinecone_client import PineconeService

        return PineconeService()
    if backend == "faiss":
        from app.rag.store_faiss import FAISSIndexService

        return FAISSIndexService()

    raise ConfigurationError(
        f"Unknown VECTOR_BACKEND {backend!r}, expected one of {', '.join(VECTOR_BACKENDS)}"
    )


def build_services(
    backend: str = None,
    llm: GeminiClient = None,
    index_service=None,
    index_name: str = None,
) -> RAGServices:
    """Wire the pipeline and registry from configuration.

    Args:
        backend: Vector backend name (default from config)
        llm: Prebuilt Gemini client (built from config if omitted)
        index_service: Prebuilt index service (built from backend if omitted)
        index_name: Index name (default from config)
    """
    llm = llm or GeminiClient()
    index_service = index_service or build_index_service(backend)

    gateway = IndexGateway(index_service, index_name=index_name)
    embedder = Embedder(llm)
    pipeline = RAGPipeline(
        chunker=TextChunker(),
        embedder=embedder,
        gateway=gateway,
        llm=llm,
    )
    registry = DocumentRegistry(gateway)

    logger.info(
        "services_built",
        backend=type(index_service).__name__,
        index_name=index_name or config.PINECONE_INDEX_NAME,
        embedding_model=embedder.model,
        chat_model=llm.chat_model,
    )

    return RAGServices(
        llm=llm,
        index_service=index_service,
        gateway=gateway,
        pipeline=pipeline,
        registry=registry,
    )
