"""Text chunking with overlap for RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
"""
import re
from typing import List
from dataclasses import dataclass
import structlog

from app import config
from app.errors import ValidationError

logger = structlog.get_logger()

# A natural break must fall past this fraction of the window to be used
MIN_BREAK_FRACTION = 0.5

SENTENCE_SPLIT_PATTERN = re.compile(r"([.!?]\s+)")


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum size of each chunk in characters (default from config)
            chunk_overlap: Characters shared by consecutive fixed-width chunks
                (default from config)

        Raises:
            ValidationError: If the size/overlap combination cannot make progress
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        # Validate parameters
        if self.chunk_size <= 0:
            raise ValidationError(f"Chunk size must be positive, got {self.chunk_size}")

        if self.chunk_overlap < 0:
            raise ValidationError(f"Overlap must not be negative, got {self.chunk_overlap}")

        if self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into chunks, preferring sentence and line boundaries.

        Each window of ``chunk_size`` characters (except the last) is cut at
        its last ``.`` or newline when that falls past the middle of the
        window; the next window then starts right after the cut. Otherwise
        the full window is kept and the next one starts ``chunk_overlap``
        characters before its end.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects with trimmed, non-empty content
        """
        if not text or not text.strip():
            return []

        text_length = len(text)
        chunks = []
        start = 0

        while start < text_length:
            end = min(start + self.chunk_size, text_length)
            window = text[start:end]
            window_start = start

            if end < text_length:
                break_at = max(window.rfind("."), window.rfind("\n"))

                if break_at > self.chunk_size * MIN_BREAK_FRACTION:
                    window = window[: break_at + 1]
                    start += break_at + 1
                else:
                    start += self.chunk_size - self.chunk_overlap
            else:
                start = text_length

            content = window.strip()
            if not content:
                continue

            chunks.append(
                TextChunk(
                    content=content,
                    char_start=window_start,
                    char_end=window_start + len(window),
                    chunk_index=len(chunks),
                )
            )

        logger.info(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks) if chunks else 0,
        )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "overlap": self.chunk_overlap,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunk_text(text: str, max_size: int = 1000, overlap: int = 200) -> List[str]:
    """Chunk text and return only the chunk strings.

    Args:
        text: Text to chunk
        max_size: Maximum characters per chunk
        overlap: Characters shared by consecutive fixed-width chunks

    Returns:
        Ordered list of trimmed, non-empty chunk strings
    """
    chunker = TextChunker(chunk_size=max_size, chunk_overlap=overlap)
    return [chunk.content for chunk in chunker.chunk_text(text)]


def chunk_by_sentences(text: str, max_chunk_size: int = 1000) -> List[str]:
    """Pack whole sentences into chunks of at most ``max_chunk_size`` characters.

    A single sentence longer than the limit becomes its own chunk.
    """
    if not text or not text.strip():
        return []

    # The capture group keeps the terminators as separate pieces
    pieces = SENTENCE_SPLIT_PATTERN.split(text)
    chunks = []
    current = ""

    for piece in pieces:
        candidate = current + piece
        if len(candidate) <= max_chunk_size:
            current = candidate
            continue

        if current.strip():
            chunks.append(current.strip())
        current = piece

    if current.strip():
        chunks.append(current.strip())

    return chunks
