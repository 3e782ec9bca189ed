"""Records stored in and read back from the vector index."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
import structlog

logger = structlog.get_logger()

EmbeddingVector = Tuple[float, ...]


def chunk_key(document_id: str, chunk_index: int) -> str:
    """Index id of one chunk. The only link between a vector and its document."""
    return f"{document_id}-chunk-{chunk_index}"


def document_prefix(document_id: str) -> str:
    """Id prefix shared by every chunk of a document."""
    return f"{document_id}-chunk-"


def utc_isoformat(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ChunkMetadata(BaseModel):
    """Metadata attached to every chunk vector.

    Field names are snake_case in Python and camelCase in the index.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    text: str = Field(..., description="Chunk text used for generation context.")
    source: str = Field(..., description="Original file name or URL.")
    chunk_index: int = Field(..., alias="chunkIndex", ge=0)
    document_id: str = Field(..., alias="documentId", min_length=1)
    created_at: datetime = Field(..., alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_index_metadata(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "source": self.source,
            "chunkIndex": self.chunk_index,
            "documentId": self.document_id,
            "createdAt": utc_isoformat(self.created_at),
        }

    @classmethod
    def from_index_metadata(cls, metadata: Optional[Dict[str, Any]]) -> Optional["ChunkMetadata"]:
        """Parse metadata returned by the index.

        Returns:
            ChunkMetadata, or None if the stored metadata is missing or malformed
        """
        if not metadata:
            return None
        try:
            return cls.model_validate(metadata)
        except ValidationError as e:
            logger.warning(
                "chunk_metadata_invalid",
                error_count=e.error_count(),
                fields=sorted(metadata.keys()),
            )
            return None


@dataclass(frozen=True)
class IndexedRecord:
    """One vector plus its metadata, as written to the index."""

    id: str
    values: EmbeddingVector
    metadata: ChunkMetadata

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "values": list(self.values),
            "metadata": self.metadata.to_index_metadata(),
        }


@dataclass(frozen=True)
class QueryMatch:
    """A single similarity search hit."""

    id: str
    score: float
    metadata: Optional[ChunkMetadata]


@dataclass(frozen=True)
class FetchedRecord:
    """A record fetched by id. Metadata is kept raw so callers can be lenient."""

    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentSummary:
    """Per-document view derived from the chunks in the index."""

    document_id: str
    source: str
    created_at: datetime
    chunk_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "source": self.source,
            "createdAt": utc_isoformat(self.created_at),
            "chunkCount": self.chunk_count,
        }


class ConversationTurn(BaseModel):
    """One prior message in a multi-turn conversation."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


def parse_history(raw: Optional[Iterable[Any]]) -> List[ConversationTurn]:
    """Keep the well-formed turns of a caller-supplied history.

    Malformed entries are dropped (and logged) instead of failing the request.
    """
    if not raw:
        return []

    turns = []
    dropped = 0
    for entry in raw:
        if isinstance(entry, ConversationTurn):
            turns.append(entry)
            continue
        try:
            turns.append(ConversationTurn.model_validate(entry))
        except ValidationError:
            dropped += 1

    if dropped:
        logger.warning("history_entries_dropped", dropped=dropped, kept=len(turns))

    return turns


@dataclass(frozen=True)
class IndexDescription:
    """What the index service reports about one index."""

    name: str
    dimension: Optional[int]
    metric: Optional[str] = None
    host: Optional[str] = None
    ready: bool = False


@dataclass(frozen=True)
class IndexStats:
    total_record_count: int
    dimension: Optional[int]
    index_fullness: float
    namespaces: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRecordCount": self.total_record_count,
            "dimension": self.dimension,
            "indexFullness": self.index_fullness,
            "namespaces": {name: {"recordCount": count} for name, count in self.namespaces.items()},
        }


@dataclass(frozen=True)
class ListPage:
    """One page of a paginated id listing. ``next_token`` is None on the last page."""

    ids: List[str]
    next_token: Optional[str] = None
