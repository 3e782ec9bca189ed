"""RAG pipeline: document ingestion and question answering.

Ingestion:
- Text chunking
- Batched embedding generation
- One upsert of all chunk records

Query:
- Query embedding
- Top-K vector search
- Context assembly and source collection
- Generation with optional conversation history
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from app import config
from app.errors import UpstreamError, ValidationError
from app.llm_client import GeminiClient
from app.rag.chunker import TextChunker
from app.rag.embedder import Embedder, TaskType
from app.rag.gateway import IndexGateway
from app.rag.models import ChunkMetadata, IndexedRecord, chunk_key, parse_history

logger = structlog.get_logger()

NO_CONTEXT_RESPONSE = (
    "I don't have any documents to answer from yet. "
    "Please upload a document first, then ask your question again."
)

PROMPT_TEMPLATE = """You are a helpful assistant. Answer the user's question based on the following context. If the context doesn't contain enough information, say so.

Context:
{context}

Question: {query}

Answer:"""


def build_prompt(context: str, query: str) -> str:
    return PROMPT_TEMPLATE.format(context=context, query=query)


@dataclass
class IngestResult:
    document_id: str
    source: str
    chunk_count: int


@dataclass
class RAGAnswer:
    response: str
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.response, "sources": self.sources}


class RAGPipeline:
    """Ingests documents into the index and answers questions from it."""

    def __init__(
        self,
        chunker: TextChunker,
        embedder: Embedder,
        gateway: IndexGateway,
        llm: GeminiClient,
        top_k: int = None,
        history_window: int = None,
    ):
        """Initialize the pipeline.

        Args:
            chunker: Text chunker
            embedder: Embedding generator
            gateway: Index gateway
            llm: Gemini client used for generation
            top_k: Default number of chunks to retrieve (default from config)
            history_window: Most recent conversation turns sent to the model,
                0 for all (default from config)
        """
        self.chunker = chunker
        self.embedder = embedder
        self.gateway = gateway
        self.llm = llm
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.history_window = config.HISTORY_WINDOW if history_window is None else history_window

        logger.info(
            "rag_pipeline_initialized",
            chunk_size=chunker.chunk_size,
            chunk_overlap=chunker.chunk_overlap,
            top_k=self.top_k,
        )

    async def ingest(self, text: str, source: str, document_id: str) -> IngestResult:
        """Chunk, embed and store one document.

        There is no partial success: if embedding or the upsert fails the
        whole document counts as not ingested.

        Args:
            text: Document text
            source: Display name of the document (file name, URL)
            document_id: Globally unique id; reusing one overwrites chunks

        Raises:
            ValidationError: If source/document_id are blank or text has no content
            ConfigurationError: If a credential or the index name is missing
            UpstreamError: If embedding or the upsert fails
        """
        if not source or not source.strip():
            raise ValidationError("Source is required")
        if not document_id or not document_id.strip():
            raise ValidationError("Document ID is required")

        chunks = self.chunker.chunk_text(text)
        if not chunks:
            raise ValidationError("No text content to index", {"source": source})

        logger.info("ingesting_document", document_id=document_id, source=source)

        try:
            embeddings = await self.embedder.embed_batch(
                [chunk.content for chunk in chunks], TaskType.RETRIEVAL_DOCUMENT
            )

            created_at = datetime.now(timezone.utc)
            records = [
                IndexedRecord(
                    id=chunk_key(document_id, chunk.chunk_index),
                    values=vector,
                    metadata=ChunkMetadata(
                        text=chunk.content,
                        source=source,
                        chunk_index=chunk.chunk_index,
                        document_id=document_id,
                        created_at=created_at,
                    ),
                )
                for chunk, vector in zip(chunks, embeddings)
            ]

            await self.gateway.upsert(records)

        except UpstreamError as e:
            logger.error(
                "document_ingestion_failed",
                document_id=document_id,
                stage=e.stage,
                error=str(e),
            )
            raise

        stats = self.chunker.get_chunk_stats(chunks)
        logger.info(
            "document_ingested",
            document_id=document_id,
            source=source,
            chunk_count=stats["chunk_count"],
            avg_chunk_size=stats["avg_chunk_size"],
            max_chunk_size=stats["max_chunk_size"],
        )

        return IngestResult(document_id=document_id, source=source, chunk_count=len(chunks))

    async def answer(
        self,
        query: str,
        top_k: Optional[int] = None,
        history: Optional[Iterable[Any]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> RAGAnswer:
        """Answer a question from the indexed documents.

        Args:
            query: User question
            top_k: Number of chunks to retrieve (overrides default)
            history: Prior conversation turns, oldest first; malformed
                entries are dropped
            metadata_filter: Optional index filter, e.g. one document only

        Returns:
            RAGAnswer with the model's text and the distinct sources used.
            When nothing relevant is indexed, a fixed reply with no sources
            and no generation call.

        Raises:
            ValidationError: If the query is blank
            ConfigurationError: If a credential or the index name is missing
            UpstreamError: If embedding, search or generation fails
        """
        if not query or not query.strip():
            raise ValidationError("Message is required")

        top_k = top_k or self.top_k
        turns = parse_history(history)
        if self.history_window > 0:
            turns = turns[-self.history_window :]

        logger.info(
            "rag_query_started",
            query_length=len(query),
            top_k=top_k,
            history_turns=len(turns),
        )

        try:
            query_vector = await self.embedder.embed(query, TaskType.RETRIEVAL_QUERY)
            matches = await self.gateway.query(
                query_vector, top_k=top_k, metadata_filter=metadata_filter
            )

            texts = []
            sources: List[str] = []
            for match in sorted(matches, key=lambda m: m.score, reverse=True):
                if match.metadata is None:
                    continue
                if match.metadata.text:
                    texts.append(match.metadata.text)
                if match.metadata.source and match.metadata.source not in sources:
                    sources.append(match.metadata.source)

            context = "\n\n".join(texts)

            if not context.strip():
                logger.info("no_relevant_context_found", results_found=len(matches))
                return RAGAnswer(response=NO_CONTEXT_RESPONSE, sources=[])

            prompt = build_prompt(context, query)

            try:
                response = await self.llm.generate(prompt, history=turns)
            except httpx.HTTPError as e:
                raise UpstreamError("generation", str(e), {"model": self.llm.chat_model}) from e

        except UpstreamError as e:
            logger.error("rag_query_failed", stage=e.stage, error=str(e))
            raise

        logger.info(
            "rag_query_completed",
            num_sources=len(sources),
            context_length=len(context),
            response_length=len(response),
        )

        return RAGAnswer(response=response, sources=sources)
