"""In-process FAISS index service.

Implements the same control-plane / data-plane interface as
``app.rag.pinecone_client`` so the gateway can run without a Pinecone
account (``VECTOR_BACKEND=faiss``) and so tests exercise real similarity
search. Nothing is written to disk; the index lives as long as the process.

Handles:
- Cosine similarity via L2-normalised vectors in an inner-product index
- Dimension enforcement on upsert and query
- Upsert-by-id (replace) and delete-by-id on top of FAISS integer ids
- Pinecone-style metadata filters and paginated id listing
"""
import base64
import copy
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from app.errors import IndexAlreadyExistsError, IndexNotFoundError, IndexServiceError
from app.rag.models import IndexDescription, IndexStats, ListPage

logger = structlog.get_logger()

SUPPORTED_METRICS = ("cosine",)


def _encode_token(last_id: str) -> str:
    return base64.urlsafe_b64encode(last_id.encode("utf-8")).decode("ascii")


def _decode_token(token: str) -> str:
    try:
        return base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise IndexServiceError(f"Invalid pagination token: {token}", status_code=400) from e


def _matches_filter(metadata: Dict[str, Any], condition: Dict[str, Any]) -> bool:
    """Evaluate a Pinecone-style metadata filter against one record."""
    for key, expected in condition.items():
        if key == "$and":
            if not all(_matches_filter(metadata, sub) for sub in expected):
                return False
            continue
        if key == "$or":
            if not any(_matches_filter(metadata, sub) for sub in expected):
                return False
            continue

        actual = metadata.get(key)
        if not isinstance(expected, dict):
            expected = {"$eq": expected}

        for op, operand in expected.items():
            if op == "$eq":
                ok = actual == operand
            elif op == "$ne":
                ok = actual != operand
            elif op == "$in":
                ok = actual in operand
            elif op == "$nin":
                ok = actual not in operand
            else:
                raise IndexServiceError(f"Unsupported filter operator: {op}", status_code=400)
            if not ok:
                return False

    return True


class _Namespace:
    """Vectors and metadata of one namespace."""

    def __init__(self, dimension: int):
        self.index = faiss.IndexIDMap(faiss.IndexFlatIP(dimension))
        self.int_ids: Dict[str, int] = {}
        self.keys: Dict[int, str] = {}
        self.values: Dict[str, np.ndarray] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self._next_int_id = 0

    def __len__(self) -> int:
        return len(self.int_ids)

    def remove(self, ids: Sequence[str]) -> int:
        int_ids = [self.int_ids[i] for i in ids if i in self.int_ids]
        if not int_ids:
            return 0
        self.index.remove_ids(np.array(int_ids, dtype=np.int64))
        for record_id in ids:
            int_id = self.int_ids.pop(record_id, None)
            if int_id is None:
                continue
            self.keys.pop(int_id, None)
            self.values.pop(record_id, None)
            self.metadata.pop(record_id, None)
        return len(int_ids)

    def add(self, record_id: str, vector: np.ndarray, metadata: Dict[str, Any]) -> None:
        int_id = self._next_int_id
        self._next_int_id += 1

        normalized = vector.reshape(1, -1).copy()
        faiss.normalize_L2(normalized)
        self.index.add_with_ids(normalized, np.array([int_id], dtype=np.int64))

        self.int_ids[record_id] = int_id
        self.keys[int_id] = record_id
        self.values[record_id] = vector
        self.metadata[record_id] = copy.deepcopy(metadata)


class FAISSIndex:
    """Data-plane operations against one in-process index."""

    def __init__(self, name: str, dimension: int, metric: str = "cosine"):
        self.name = name
        self.dimension = dimension
        self.metric = metric
        self._namespaces: Dict[str, _Namespace] = {}

    def describe(self) -> IndexDescription:
        return IndexDescription(
            name=self.name,
            dimension=self.dimension,
            metric=self.metric,
            host=f"faiss://{self.name}",
            ready=True,
        )

    def _namespace(self, namespace: str, create: bool = False) -> Optional[_Namespace]:
        ns = self._namespaces.get(namespace)
        if ns is None and create:
            ns = self._namespaces[namespace] = _Namespace(self.dimension)
        return ns

    def _as_vector(self, values: Sequence[float]) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise IndexServiceError(
                f"Vector dimension {vector.shape[-1] if vector.ndim else 0} does not match "
                f"the dimension of the index {self.dimension}",
                status_code=400,
            )
        return vector

    async def upsert(self, vectors: Sequence[Dict[str, Any]], namespace: str = "") -> int:
        # Validate everything first so a bad record leaves the index untouched
        prepared = {
            v["id"]: (self._as_vector(v["values"]), v.get("metadata") or {}) for v in vectors
        }

        ns = self._namespace(namespace, create=True)
        ns.remove(list(prepared))
        for record_id, (vector, metadata) in prepared.items():
            ns.add(record_id, vector, metadata)

        logger.debug(
            "faiss_vectors_upserted",
            index_name=self.name,
            count=len(prepared),
            total_vectors=len(ns),
        )
        return len(prepared)

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
        namespace: str = "",
    ) -> List[Dict[str, Any]]:
        query_vector = self._as_vector(vector).reshape(1, -1).copy()
        ns = self._namespace(namespace)
        if ns is None or len(ns) == 0 or top_k <= 0:
            return []

        faiss.normalize_L2(query_vector)

        # With a filter, rank everything and filter afterwards
        k = len(ns) if filter else min(top_k, len(ns))
        scores, indices = ns.index.search(query_vector, k)

        matches = []
        for score, int_id in zip(scores[0].tolist(), indices[0].tolist()):
            if int_id < 0:
                continue
            record_id = ns.keys[int_id]
            metadata = ns.metadata[record_id]
            if filter and not _matches_filter(metadata, filter):
                continue
            matches.append(
                {"id": record_id, "score": float(score), "metadata": copy.deepcopy(metadata)}
            )
            if len(matches) >= top_k:
                break

        return matches

    async def fetch(self, ids: Sequence[str], namespace: str = "") -> Dict[str, Dict[str, Any]]:
        ns = self._namespace(namespace)
        if ns is None:
            return {}
        return {
            record_id: {
                "id": record_id,
                "values": ns.values[record_id].tolist(),
                "metadata": copy.deepcopy(ns.metadata[record_id]),
            }
            for record_id in ids
            if record_id in ns.int_ids
        }

    async def delete(self, ids: Sequence[str], namespace: str = "") -> None:
        ns = self._namespace(namespace)
        if ns is not None:
            ns.remove(list(ids))

    async def delete_all(self, namespace: str = "") -> None:
        self._namespaces.pop(namespace, None)

    async def list_page(
        self,
        prefix: Optional[str] = None,
        limit: int = 100,
        pagination_token: Optional[str] = None,
        namespace: str = "",
    ) -> ListPage:
        ns = self._namespace(namespace)
        if ns is None:
            return ListPage(ids=[])

        ids = sorted(i for i in ns.int_ids if not prefix or i.startswith(prefix))
        if pagination_token:
            after = _decode_token(pagination_token)
            ids = [i for i in ids if i > after]

        page = ids[:limit]
        next_token = _encode_token(page[-1]) if len(ids) > limit else None
        return ListPage(ids=page, next_token=next_token)

    async def describe_index_stats(self) -> IndexStats:
        namespaces = {name: len(ns) for name, ns in self._namespaces.items() if len(ns)}
        return IndexStats(
            total_record_count=sum(namespaces.values()),
            dimension=self.dimension,
            index_fullness=0.0,
            namespaces=namespaces,
        )


class FAISSIndexService:
    """Control plane for in-process FAISS indexes."""

    def __init__(self):
        self._indexes: Dict[str, FAISSIndex] = {}
        logger.info("faiss_index_service_initialized")

    async def list_indexes(self) -> List[IndexDescription]:
        return [index.describe() for index in self._indexes.values()]

    async def describe_index(self, name: str) -> IndexDescription:
        return self._get(name).describe()

    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: str = "cosine",
        cloud: str = None,
        region: str = None,
    ) -> IndexDescription:
        if name in self._indexes:
            raise IndexAlreadyExistsError(f"Index {name} already exists", status_code=409)
        if metric not in SUPPORTED_METRICS:
            raise IndexServiceError(f"Unsupported metric: {metric}", status_code=400)

        self._indexes[name] = FAISSIndex(name, dimension, metric)
        logger.info("faiss_index_created", index_name=name, dimension=dimension)
        return self._indexes[name].describe()

    async def delete_index(self, name: str) -> None:
        self._get(name)
        del self._indexes[name]
        logger.info("faiss_index_deleted", index_name=name)

    def index(self, description: IndexDescription) -> FAISSIndex:
        return self._get(description.name)

    def _get(self, name: str) -> FAISSIndex:
        try:
            return self._indexes[name]
        except KeyError:
            raise IndexNotFoundError(f"Index {name} not found", status_code=404) from None

    async def aclose(self) -> None:
        return None
