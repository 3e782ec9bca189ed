"""Gateway to the vector index.

Owns the index lifecycle (create on first use, recreate on dimension
mismatch) and exposes the record operations the rest of the pipeline needs.
Works with any index service exposing the control/data-plane interface of
``PineconeService`` (``FAISSIndexService`` implements the same one).

Every failure from the index service surfaces as ``UpstreamError`` whose
``stage`` names the operation, so callers can report a degraded service
instead of an empty result.
"""
import asyncio
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx
import structlog

from app import config
from app.errors import (
    ConfigurationError,
    IndexAlreadyExistsError,
    IndexServiceError,
    UpstreamError,
    ValidationError,
)
from app.rag.models import (
    FetchedRecord,
    IndexDescription,
    IndexedRecord,
    IndexStats,
    QueryMatch,
    ChunkMetadata,
)

logger = structlog.get_logger()


@contextmanager
def _upstream(stage: str, **context: Any) -> Iterator[None]:
    """Re-raise index service failures as UpstreamError for ``stage``."""
    try:
        yield
    except IndexServiceError as e:
        logger.error("index_operation_failed", stage=stage, error=str(e), **context)
        raise UpstreamError(stage, e.message, {**e.details, **context}) from e
    except httpx.HTTPError as e:
        logger.error("index_operation_failed", stage=stage, error=str(e), **context)
        raise UpstreamError(stage, str(e), context) from e


class IdPager:
    """Async iterator over pages of record ids.

    Follows continuation tokens until the service stops returning one.
    ``exhausted`` only becomes True after the last page was delivered, so a
    scan interrupted by an error is distinguishable from a complete one.

    Usage::

        pager = gateway.iter_ids(prefix="doc-1-chunk-")
        async for ids in pager:
            ...
    """

    def __init__(self, gateway: "IndexGateway", prefix: Optional[str] = None, page_size: int = 100):
        self.prefix = prefix
        self.page_size = page_size
        self.pages_fetched = 0
        self.exhausted = False
        self._gateway = gateway
        self._started = False

    def __aiter__(self):
        if self._started:
            raise RuntimeError("IdPager can only be iterated once")
        self._started = True
        return self._pages()

    async def _pages(self):
        handle = await self._gateway.ensure_index()
        token = None

        while True:
            with _upstream("index list", prefix=self.prefix, page=self.pages_fetched):
                page = await handle.list_page(
                    prefix=self.prefix,
                    limit=self.page_size,
                    pagination_token=token,
                    namespace=self._gateway.namespace,
                )
            self.pages_fetched += 1

            if page.next_token and page.next_token == token:
                raise UpstreamError(
                    "index list", "Pagination token did not advance", {"prefix": self.prefix}
                )

            yield page.ids

            token = page.next_token
            if not token:
                self.exhausted = True
                return

    async def collect(self) -> List[str]:
        """Read every page and return all ids in listing order."""
        ids: List[str] = []
        async for page in self:
            ids.extend(page)
        return ids


class IndexGateway:
    """Creates/reconciles the vector index and performs record operations."""

    def __init__(
        self,
        service,
        index_name: str = None,
        dimension: int = None,
        metric: str = "cosine",
        cloud: str = None,
        region: str = None,
        namespace: str = None,
        delete_settle_seconds: float = None,
        ready_timeout: float = None,
        ready_poll_interval: float = 1.0,
        upsert_batch_size: int = 100,
    ):
        """Initialize the gateway.

        Args:
            service: Index service (PineconeService or FAISSIndexService)
            index_name: Default index name (falls back to config.PINECONE_INDEX_NAME)
            dimension: Required index dimension (default from config)
            metric: Similarity metric for new indexes
            cloud: Serverless cloud for new indexes (default from config)
            region: Serverless region for new indexes (default from config)
            namespace: Namespace for record operations (default from config)
            delete_settle_seconds: Pause between deleting and recreating an index
            ready_timeout: Maximum seconds to wait for a new index to be ready
            ready_poll_interval: Seconds between readiness checks
            upsert_batch_size: Records per upsert request
        """
        self.service = service
        self.index_name = index_name
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.metric = metric
        self.cloud = cloud or config.PINECONE_CLOUD
        self.region = region or config.PINECONE_REGION
        self.namespace = config.PINECONE_NAMESPACE if namespace is None else namespace
        self.delete_settle_seconds = (
            config.INDEX_DELETE_SETTLE_SECONDS
            if delete_settle_seconds is None
            else delete_settle_seconds
        )
        self.ready_timeout = config.INDEX_READY_TIMEOUT if ready_timeout is None else ready_timeout
        self.ready_poll_interval = ready_poll_interval
        self.upsert_batch_size = upsert_batch_size

        self._handles: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    def _resolve_name(self, name: Optional[str]) -> str:
        target = name or self.index_name or config.PINECONE_INDEX_NAME
        if not target:
            raise ConfigurationError(
                "PINECONE_INDEX_NAME environment variable is not set and no index name was provided"
            )
        return target

    async def ensure_index(self, name: str = None):
        """Return a data-plane handle for the index, creating it if needed.

        An existing index whose dimension differs from ``self.dimension`` is
        deleted and recreated; its vectors are lost.

        Raises:
            ConfigurationError: If no index name is configured
            UpstreamError: If the index service fails
        """
        target = self._resolve_name(name)
        handle = self._handles.get(target)
        if handle is not None:
            return handle

        async with self._lock:
            handle = self._handles.get(target)
            if handle is not None:
                return handle

            with _upstream("index setup", index_name=target):
                description = await self._reconcile(target)
                handle = self.service.index(description)

            self._handles[target] = handle

        return handle

    async def _reconcile(self, name: str) -> IndexDescription:
        indexes = await self.service.list_indexes()
        existing = next((i for i in indexes if i.name == name), None)

        if existing is None:
            logger.info("creating_index", index_name=name, dimension=self.dimension)
            return await self._create(name)

        if existing.dimension != self.dimension:
            logger.warning(
                "index_dimension_mismatch_recreating",
                index_name=name,
                index_dimension=existing.dimension,
                embedding_dimension=self.dimension,
            )
            await self.service.delete_index(name)
            self._handles.pop(name, None)
            await asyncio.sleep(self.delete_settle_seconds)
            return await self._create(name)

        logger.info("using_existing_index", index_name=name, dimension=existing.dimension)
        if existing.ready and existing.host:
            return existing
        return await self._wait_until_ready(name)

    async def _create(self, name: str) -> IndexDescription:
        try:
            await self.service.create_index(
                name,
                dimension=self.dimension,
                metric=self.metric,
                cloud=self.cloud,
                region=self.region,
            )
        except IndexAlreadyExistsError:
            # Another caller created it between our list and create
            logger.info("index_already_exists", index_name=name)

        description = await self._wait_until_ready(name)
        if description.dimension != self.dimension:
            raise UpstreamError(
                "index setup",
                f"Index {name} has dimension {description.dimension}, expected {self.dimension}",
            )

        logger.info("index_ready", index_name=name, dimension=description.dimension)
        return description

    async def _wait_until_ready(self, name: str) -> IndexDescription:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout

        while True:
            description = await self.service.describe_index(name)
            if description.ready and description.host:
                return description
            if loop.time() >= deadline:
                raise UpstreamError(
                    "index setup",
                    f"Index {name} not ready after {self.ready_timeout:.0f}s",
                )
            await asyncio.sleep(self.ready_poll_interval)

    async def upsert(self, records: Sequence[IndexedRecord]) -> int:
        """Write or overwrite records by id.

        Returns:
            Number of records written
        """
        if not records:
            return 0

        handle = await self.ensure_index()
        payloads = [record.to_payload() for record in records]
        written = 0

        with _upstream("index upsert", count=len(payloads)):
            for i in range(0, len(payloads), self.upsert_batch_size):
                batch = payloads[i : i + self.upsert_batch_size]
                written += await handle.upsert(batch, namespace=self.namespace)

        logger.info("vectors_upserted", count=len(payloads))
        return written

    async def query(
        self,
        vector: Sequence[float],
        top_k: int = 5,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        """Return the ``top_k`` most similar records, best first.

        Args:
            vector: Query embedding
            top_k: Number of matches to return
            metadata_filter: Optional Pinecone-style filter,
                e.g. ``{"documentId": {"$eq": "..."}}``
        """
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Query vector has {len(vector)} dimensions, index expects {self.dimension}"
            )

        handle = await self.ensure_index()

        with _upstream("index query", top_k=top_k):
            raw_matches = await handle.query(
                vector, top_k=top_k, filter=metadata_filter, namespace=self.namespace
            )

        matches = [
            QueryMatch(
                id=m["id"],
                score=float(m.get("score") or 0.0),
                metadata=ChunkMetadata.from_index_metadata(m.get("metadata")),
            )
            for m in raw_matches
        ]
        matches.sort(key=lambda m: m.score, reverse=True)

        logger.info(
            "vector_search_completed",
            top_k=top_k,
            results_found=len(matches),
            filtered=bool(metadata_filter),
        )
        return matches

    async def fetch(self, ids: Sequence[str]) -> Dict[str, FetchedRecord]:
        """Fetch records by id. Missing ids are absent from the result."""
        if not ids:
            return {}

        handle = await self.ensure_index()
        with _upstream("index fetch", count=len(ids)):
            raw = await handle.fetch(list(ids), namespace=self.namespace)

        return {
            record_id: FetchedRecord(id=record_id, metadata=dict(record.get("metadata") or {}))
            for record_id, record in raw.items()
        }

    async def delete_by_ids(self, ids: Sequence[str]) -> int:
        """Delete records by id. Irreversible."""
        if not ids:
            return 0

        handle = await self.ensure_index()
        with _upstream("index delete", count=len(ids)):
            await handle.delete(list(ids), namespace=self.namespace)

        logger.info("vectors_deleted", count=len(ids))
        return len(ids)

    async def delete_all(self) -> None:
        """Delete every record in the namespace. Irreversible."""
        handle = await self.ensure_index()
        with _upstream("index delete"):
            await handle.delete_all(namespace=self.namespace)

        logger.warning("all_vectors_deleted", namespace=self.namespace)

    def iter_ids(self, prefix: Optional[str] = None, page_size: int = 100) -> IdPager:
        return IdPager(self, prefix=prefix, page_size=page_size)

    async def list_ids(self, prefix: Optional[str] = None) -> List[str]:
        """List every record id (optionally under ``prefix``), all pages."""
        return await self.iter_ids(prefix=prefix).collect()

    async def stats(self) -> IndexStats:
        handle = await self.ensure_index()
        with _upstream("index stats"):
            return await handle.describe_index_stats()

    async def check(self, name: str = None) -> IndexStats:
        """Report on the index without creating, recreating or caching it.

        Raises:
            ConfigurationError: If no index name is configured
            UpstreamError: If the index is missing, not ready, has the wrong
                dimension, or the service fails
        """
        target = self._resolve_name(name)

        with _upstream("index health", index_name=target):
            description = await self.service.describe_index(target)

            if description.dimension != self.dimension:
                raise UpstreamError(
                    "index health",
                    f"Index {target} has dimension {description.dimension}, expected {self.dimension}",
                )
            if not (description.ready and description.host):
                raise UpstreamError("index health", f"Index {target} is not ready")

            handle = self._handles.get(target) or self.service.index(description)
            return await handle.describe_index_stats()
