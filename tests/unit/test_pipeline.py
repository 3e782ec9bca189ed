"""End-to-end tests for ingestion and question answering.

Gemini is faked at the HTTP layer and the index is the in-process FAISS
service, so everything between the two runs for real.
"""
import pytest

from app.errors import UpstreamError, ValidationError
from app.rag.chunker import TextChunker
from app.rag.pipeline import NO_CONTEXT_RESPONSE, RAGPipeline, build_prompt

CATS = "Cats are mammals. Dogs are mammals too."


def small_chunk_pipeline(embedder, gateway, llm, **kwargs):
    return RAGPipeline(
        chunker=TextChunker(chunk_size=20, chunk_overlap=5),
        embedder=embedder,
        gateway=gateway,
        llm=llm,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_ingest_stores_one_record_per_chunk(pipeline, gateway, fake_gemini):
    result = await pipeline.ingest(CATS, "a.txt", "doc-1")

    assert result.chunk_count == 1
    assert result.document_id == "doc-1"
    assert await gateway.list_ids() == ["doc-1-chunk-0"]

    record = (await gateway.fetch(["doc-1-chunk-0"]))["doc-1-chunk-0"]
    assert record.metadata["text"] == CATS
    assert record.metadata["source"] == "a.txt"
    assert record.metadata["chunkIndex"] == 0
    assert record.metadata["documentId"] == "doc-1"
    assert record.metadata["createdAt"].endswith("Z")

    [batch] = fake_gemini.calls(":batchEmbedContents")
    assert batch["requests"][0]["taskType"] == "RETRIEVAL_DOCUMENT"


@pytest.mark.asyncio
async def test_chunks_of_one_document_share_a_timestamp(embedder, gateway, llm):
    pipeline = small_chunk_pipeline(embedder, gateway, llm)

    result = await pipeline.ingest("Cats purr loudly. Cats purr softly. Cats purr often.", "a.txt", "doc-1")

    records = await gateway.fetch(await gateway.list_ids())
    assert result.chunk_count == len(records) > 1
    assert len({r.metadata["createdAt"] for r in records.values()}) == 1
    assert sorted(r.metadata["chunkIndex"] for r in records.values()) == list(range(result.chunk_count))



class RecordingChunker(TextChunker):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.stats = []

    def get_chunk_stats(self, chunks):
        stats = super().get_chunk_stats(chunks)
        self.stats.append(stats)
        return stats


@pytest.mark.asyncio
async def test_ingest_reports_chunk_stats(embedder, gateway, llm):
    chunker = RecordingChunker(chunk_size=20, chunk_overlap=5)
    pipeline = RAGPipeline(chunker=chunker, embedder=embedder, gateway=gateway, llm=llm)

    result = await pipeline.ingest("Cats purr loudly. Cats purr softly. Cats purr often.", "a.txt", "doc-1")

    [stats] = chunker.stats
    assert stats["chunk_count"] == result.chunk_count
    assert 0 < stats["max_chunk_size"] <= 20


@pytest.mark.asyncio
async def test_reingesting_same_document_id_overwrites(pipeline, gateway):
    await pipeline.ingest(CATS, "a.txt", "doc-1")
    await pipeline.ingest(CATS, "a.txt", "doc-1")

    assert (await gateway.stats()).total_record_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   \n  "])
async def test_ingest_rejects_text_without_content(pipeline, fake_gemini, text):
    with pytest.raises(ValidationError) as exc_info:
        await pipeline.ingest(text, "a.txt", "doc-1")

    assert "No text content" in exc_info.value.message
    assert fake_gemini.requests == []


@pytest.mark.asyncio
async def test_ingest_requires_source_and_document_id(pipeline):
    with pytest.raises(ValidationError):
        await pipeline.ingest(CATS, "", "doc-1")
    with pytest.raises(ValidationError):
        await pipeline.ingest(CATS, "a.txt", " ")


@pytest.mark.asyncio
async def test_failed_embedding_stores_nothing(pipeline, gateway, fake_gemini):
    fake_gemini.embed_status = 503

    with pytest.raises(UpstreamError) as exc_info:
        await pipeline.ingest(CATS, "a.txt", "doc-1")

    assert exc_info.value.stage == "embedding"
    assert await gateway.list_ids() == []


@pytest.mark.asyncio
async def test_answer_uses_retrieved_context(pipeline, fake_gemini):
    await pipeline.ingest(CATS, "a.txt", "doc-1")

    answer = await pipeline.answer("What are cats?")

    assert answer.response == fake_gemini.reply
    assert answer.sources == ["a.txt"]
    assert answer.to_dict() == {"message": fake_gemini.reply, "sources": ["a.txt"]}

    [query_embedding] = fake_gemini.calls(":embedContent")
    assert query_embedding["taskType"] == "RETRIEVAL_QUERY"

    [generation] = fake_gemini.calls(":generateContent")
    prompt = generation["contents"][-1]["parts"][0]["text"]
    assert prompt == build_prompt(CATS, "What are cats?")
    assert "Context:\n" + CATS in prompt
    assert "Question: What are cats?" in prompt


@pytest.mark.asyncio
async def test_empty_index_gets_fixed_reply_without_generation(pipeline, fake_gemini):
    answer = await pipeline.answer("What are cats?")

    assert answer.response == NO_CONTEXT_RESPONSE
    assert answer.sources == []
    assert fake_gemini.calls(":generateContent") == []


@pytest.mark.asyncio
async def test_sources_are_distinct_and_ordered_by_relevance(embedder, gateway, llm, fake_gemini):
    pipeline = small_chunk_pipeline(embedder, gateway, llm, top_k=5)
    await pipeline.ingest("Cats purr loudly. Cats purr softly. Cats purr often.", "a.txt", "doc-a")
    await pipeline.ingest("Dogs bark.", "b.txt", "doc-b")

    answer = await pipeline.answer("Why do cats purr?")

    assert answer.sources == ["a.txt", "b.txt"]
    prompt = fake_gemini.calls(":generateContent")[0]["contents"][-1]["parts"][0]["text"]
    assert prompt.index("Cats purr") < prompt.index("Dogs bark.")


@pytest.mark.asyncio
async def test_metadata_filter_limits_sources(pipeline):
    await pipeline.ingest(CATS, "a.txt", "doc-a")
    await pipeline.ingest("Parrots can talk.", "b.txt", "doc-b")

    answer = await pipeline.answer(
        "What are cats?", metadata_filter={"documentId": {"$eq": "doc-b"}}
    )

    assert answer.sources == ["b.txt"]


@pytest.mark.asyncio
async def test_top_k_override(embedder, gateway, llm):
    pipeline = small_chunk_pipeline(embedder, gateway, llm, top_k=5)
    await pipeline.ingest("Cats purr loudly. Cats purr softly. Cats purr often.", "a.txt", "doc-a")
    await pipeline.ingest("Dogs bark.", "b.txt", "doc-b")

    answer = await pipeline.answer("Why do cats purr?", top_k=1)

    assert answer.sources == ["a.txt"]


@pytest.mark.asyncio
async def test_history_is_sent_before_the_prompt(pipeline, fake_gemini):
    await pipeline.ingest(CATS, "a.txt", "doc-1")
    history = [
        {"role": "user", "content": "Hi"},
        {"role": "system", "content": "ignored: bad role"},
        {"role": "assistant", "content": "Hello! Ask me about your documents."},
        {"role": "user", "content": "   "},
        "not a turn",
    ]

    await pipeline.answer("What are cats?", history=history)

    contents = fake_gemini.calls(":generateContent")[0]["contents"]
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][0]["text"] == "Hi"


@pytest.mark.asyncio
async def test_history_window_keeps_most_recent_turns(embedder, gateway, llm, fake_gemini):
    pipeline = RAGPipeline(TextChunker(), embedder, gateway, llm, history_window=2)
    await pipeline.ingest(CATS, "a.txt", "doc-1")
    history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"} for i in range(6)]

    await pipeline.answer("What are cats?", history=history)

    contents = fake_gemini.calls(":generateContent")[0]["contents"]
    assert [c["parts"][0]["text"] for c in contents[:-1]] == ["turn 4", "turn 5"]


@pytest.mark.asyncio
async def test_generation_failure_is_reported(pipeline, fake_gemini):
    await pipeline.ingest(CATS, "a.txt", "doc-1")
    fake_gemini.generate_status = 500

    with pytest.raises(UpstreamError) as exc_info:
        await pipeline.answer("What are cats?")

    assert exc_info.value.stage == "generation"


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "  "])
async def test_blank_question_is_rejected(pipeline, fake_gemini, query):
    with pytest.raises(ValidationError) as exc_info:
        await pipeline.answer(query)

    assert exc_info.value.message == "Message is required"
    assert fake_gemini.requests == []
