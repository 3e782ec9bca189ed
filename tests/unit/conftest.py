"""Pytest configuration and fixtures for unit tests.

Gemini is replaced by an ``httpx.MockTransport`` that returns deterministic
bag-of-words embeddings, so similarity search over the in-process FAISS
index behaves like the real thing without network access.
"""
import json
import re
import zlib
from datetime import datetime, timezone

import httpx
import pytest

from app.llm_client import GeminiClient
from app.rag.chunker import TextChunker
from app.rag.embedder import Embedder
from app.rag.gateway import IndexGateway
from app.rag.models import ChunkMetadata, IndexedRecord, chunk_key
from app.rag.pipeline import RAGPipeline
from app.rag.registry import DocumentRegistry
from app.rag.store_faiss import FAISSIndexService
from app.services import RAGServices

DIMENSION = 768
GEMINI_TEST_URL = "https://gemini.test/v1beta"
TEST_INDEX = "test-index"

_WORD = re.compile(r"[a-z0-9]+")


def fake_embedding(text: str, dimension: int = DIMENSION) -> list:
    """Hashed bag-of-words vector with a small constant component."""
    values = [0.0] * dimension
    values[0] = 0.1
    for word in _WORD.findall(text.lower()):
        values[1 + zlib.crc32(word.encode("utf-8")) % (dimension - 1)] += 1.0
    return values


def basis_vector(position: int, dimension: int = DIMENSION) -> list:
    values = [0.0] * dimension
    values[position % dimension] = 1.0
    return values


class FakeGemini:
    """Request handler standing in for the Gemini REST API."""

    def __init__(self):
        self.reply = "Cats are mammals, according to the document."
        self.requests = []
        self.embed_status = 200
        self.generate_status = 200
        self.generate_body = None
        self.embedding_dimension = None
        self.drop_last_embedding = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        self.requests.append((path, body, request.headers))

        if path.endswith(":batchEmbedContents"):
            if self.embed_status != 200:
                return httpx.Response(self.embed_status, json={"error": {"message": "quota"}})
            embeddings = [{"values": self._embed(r)} for r in body["requests"]]
            if self.drop_last_embedding:
                embeddings = embeddings[:-1]
            return httpx.Response(200, json={"embeddings": embeddings})

        if path.endswith(":embedContent"):
            if self.embed_status != 200:
                return httpx.Response(self.embed_status, json={"error": {"message": "quota"}})
            return httpx.Response(200, json={"embedding": {"values": self._embed(body)}})

        if path.endswith(":generateContent"):
            if self.generate_status != 200:
                return httpx.Response(self.generate_status, json={"error": {"message": "down"}})
            if self.generate_body is not None:
                return httpx.Response(200, json=self.generate_body)
            return httpx.Response(
                200,
                json={"candidates": [{"content": {"role": "model", "parts": [{"text": self.reply}]}}]},
            )

        if path.endswith("/models"):
            return httpx.Response(
                200,
                json={"models": [{"name": "models/gemini-2.0-flash"}, {"name": "models/text-embedding-004"}]},
            )

        return httpx.Response(404, json={"error": {"message": "not found"}})

    def _embed(self, request_body: dict) -> list:
        text = request_body["content"]["parts"][0]["text"]
        dimension = self.embedding_dimension or request_body.get("outputDimensionality", DIMENSION)
        return fake_embedding(text, dimension)

    def calls(self, suffix: str) -> list:
        """Bodies of the requests whose path ends with ``suffix``."""
        return [body for path, body, _ in self.requests if path.endswith(suffix)]


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
def llm(fake_gemini):
    return GeminiClient(
        api_key="test-key",
        base_url=GEMINI_TEST_URL,
        chat_model="gemini-2.0-flash",
        embedding_model="text-embedding-004",
        transport=httpx.MockTransport(fake_gemini.handler),
    )


@pytest.fixture
def embedder(llm):
    return Embedder(llm, dimension=DIMENSION)


@pytest.fixture
def index_service():
    return FAISSIndexService()


@pytest.fixture
def gateway(index_service):
    return IndexGateway(
        index_service,
        index_name=TEST_INDEX,
        dimension=DIMENSION,
        namespace="",
        delete_settle_seconds=0,
        ready_timeout=5,
        ready_poll_interval=0,
    )


@pytest.fixture
def pipeline(embedder, gateway, llm):
    return RAGPipeline(
        chunker=TextChunker(chunk_size=1000, chunk_overlap=200),
        embedder=embedder,
        gateway=gateway,
        llm=llm,
        top_k=5,
        history_window=10,
    )


@pytest.fixture
def registry(gateway):
    return DocumentRegistry(gateway)


@pytest.fixture
def services(llm, index_service, gateway, pipeline, registry):
    return RAGServices(
        llm=llm,
        index_service=index_service,
        gateway=gateway,
        pipeline=pipeline,
        registry=registry,
    )


@pytest.fixture
def make_record():
    """Factory for chunk records with a one-hot vector."""

    def _make(document_id, chunk_index, source="doc.txt", created_at=None, position=None):
        return IndexedRecord(
            id=chunk_key(document_id, chunk_index),
            values=tuple(basis_vector(chunk_index if position is None else position)),
            metadata=ChunkMetadata(
                text=f"{document_id} chunk {chunk_index}",
                source=source,
                chunk_index=chunk_index,
                document_id=document_id,
                created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
            ),
        )

    return _make
