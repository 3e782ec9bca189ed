"""Document-level view over the chunks stored in the index.

There is no document table: a document is the set of chunks sharing a
``documentId``, and its summary is recomputed from the index on demand.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import TypeAdapter, ValidationError as PydanticValidationError
import structlog

from app import config
from app.errors import ValidationError
from app.rag.gateway import IndexGateway
from app.rag.models import DocumentSummary, document_prefix

logger = structlog.get_logger()

_datetime_adapter = TypeAdapter(datetime)


def _parse_created_at(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except PydanticValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_newest_first(documents: List[DocumentSummary]) -> List[DocumentSummary]:
    return sorted(documents, key=lambda d: d.created_at, reverse=True)


class DocumentRegistry:
    """Lists and deletes documents by scanning chunk ids in the index."""

    def __init__(self, gateway: IndexGateway, fetch_batch_size: int = None):
        """Initialize the registry.

        Args:
            gateway: Index gateway
            fetch_batch_size: Ids per metadata fetch request (default from config)
        """
        self.gateway = gateway
        self.fetch_batch_size = fetch_batch_size or config.FETCH_BATCH_SIZE

    async def list_documents(self) -> List[DocumentSummary]:
        """Summarise every document in the index.

        Returns:
            One DocumentSummary per documentId, in no particular order

        Raises:
            UpstreamError: If listing or fetching fails
        """
        all_ids = await self.gateway.list_ids()
        if not all_ids:
            return []

        scanned_at = datetime.now(timezone.utc)
        documents: Dict[str, DocumentSummary] = {}
        skipped = 0

        for i in range(0, len(all_ids), self.fetch_batch_size):
            batch = all_ids[i : i + self.fetch_batch_size]
            records = await self.gateway.fetch(batch)

            for record in records.values():
                metadata = record.metadata
                document_id = metadata.get("documentId")
                source = metadata.get("source")

                if not document_id or not source:
                    skipped += 1
                    continue

                created_at = _parse_created_at(metadata.get("createdAt")) or scanned_at

                doc = documents.get(document_id)
                if doc is None:
                    doc = documents[document_id] = DocumentSummary(
                        document_id=str(document_id),
                        source=str(source),
                        created_at=created_at,
                    )

                doc.chunk_count += 1
                if created_at < doc.created_at:
                    doc.created_at = created_at

        if skipped:
            logger.warning("records_without_document_metadata", skipped=skipped)

        logger.info(
            "documents_listed",
            document_count=len(documents),
            record_count=len(all_ids),
        )
        return list(documents.values())

    async def delete_document(self, document_id: str) -> int:
        """Delete every chunk of a document.

        Returns:
            Number of records deleted (0 if the document has no chunks)

        Raises:
            ValidationError: If document_id is blank
            UpstreamError: If listing or deleting fails
        """
        if not document_id or not document_id.strip():
            raise ValidationError("Document ID is required")

        ids = await self.gateway.list_ids(prefix=document_prefix(document_id))
        if not ids:
            logger.info("document_not_found_nothing_deleted", document_id=document_id)
            return 0

        await self.gateway.delete_by_ids(ids)
        logger.info("document_deleted", document_id=document_id, deleted_count=len(ids))
        return len(ids)
