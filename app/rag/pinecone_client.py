"""Pinecone REST client.

Two layers, mirroring Pinecone's own split:

- ``PineconeService``: control plane (list / describe / create / delete indexes)
- ``PineconeIndex``: data plane for one index (upsert, query, fetch, delete,
  list, stats), addressed by the host the control plane reports

HTTP failures are classified into ``IndexAlreadyExistsError`` (409),
``IndexNotFoundError`` (404) and ``IndexServiceError`` (everything else,
including connection failures).
"""
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from app import config
from app.errors import (
    ConfigurationError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    IndexServiceError,
)
from app.rag.models import IndexDescription, IndexStats, ListPage

logger = structlog.get_logger()


class _PineconeHTTP:
    """Shared request plumbing: auth headers and error classification."""

    def __init__(self, client: httpx.AsyncClient, api_key: str, api_version: str):
        self._client = client
        self._api_key = api_key
        self._api_version = api_version

    def _headers(self) -> Dict[str, str]:
        if not self._api_key or not self._api_key.strip():
            raise ConfigurationError("PINECONE_API_KEY environment variable is not set")
        return {
            "Api-Key": self._api_key,
            "X-Pinecone-API-Version": self._api_version,
        }

    async def request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        headers = self._headers()

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.error("pinecone_connection_error", url=url, error=str(e))
            raise IndexServiceError(f"Failed to connect to Pinecone: {e}") from e

        if response.status_code >= 400:
            body = response.text[:500]
            if response.status_code == 409:
                error_class = IndexAlreadyExistsError
            elif response.status_code == 404:
                error_class = IndexNotFoundError
            else:
                error_class = IndexServiceError
            raise error_class(
                f"Pinecone API error: {body or response.reason_phrase}",
                status_code=response.status_code,
                details={"method": method, "url": url},
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error("pinecone_invalid_response_body", url=url, status_code=response.status_code)
            raise IndexServiceError(
                "Pinecone returned a body that is not valid JSON",
                status_code=response.status_code,
                details={"method": method, "url": url, "body": response.text[:500]},
            ) from e


def _describe(data: Dict[str, Any]) -> IndexDescription:
    status = data.get("status") or {}
    return IndexDescription(
        name=data["name"],
        dimension=data.get("dimension"),
        metric=data.get("metric"),
        host=data.get("host"),
        ready=bool(status.get("ready")),
    )


class PineconeService:
    """Control-plane client for Pinecone indexes."""

    def __init__(
        self,
        api_key: str = None,
        control_url: str = None,
        api_version: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the Pinecone client.

        Args:
            api_key: Pinecone API key (default from config)
            control_url: Control plane base URL (default from config)
            api_version: Value of the X-Pinecone-API-Version header
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a mock here)
        """
        self.control_url = (control_url or config.PINECONE_CONTROL_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout or config.HTTP_TIMEOUT, transport=transport
        )
        self._http = _PineconeHTTP(
            self._client,
            config.PINECONE_API_KEY if api_key is None else api_key,
            api_version or config.PINECONE_API_VERSION,
        )

    async def list_indexes(self) -> List[IndexDescription]:
        data = await self._http.request("GET", f"{self.control_url}/indexes")
        return [_describe(item) for item in (data or {}).get("indexes") or []]

    async def describe_index(self, name: str) -> IndexDescription:
        data = await self._http.request("GET", f"{self.control_url}/indexes/{name}")
        return _describe(data or {"name": name})

    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: str,
        cloud: str,
        region: str,
    ) -> IndexDescription:
        """Create a serverless index.

        Raises:
            IndexAlreadyExistsError: If an index with this name exists
        """
        payload = {
            "name": name,
            "dimension": dimension,
            "metric": metric,
            "spec": {"serverless": {"cloud": cloud, "region": region}},
        }
        logger.info(
            "pinecone_create_index_request",
            index_name=name,
            dimension=dimension,
            cloud=cloud,
            region=region,
        )
        data = await self._http.request("POST", f"{self.control_url}/indexes", json=payload)
        return _describe(data or {"name": name, "dimension": dimension})

    async def delete_index(self, name: str) -> None:
        await self._http.request("DELETE", f"{self.control_url}/indexes/{name}")
        logger.info("pinecone_index_deleted", index_name=name)

    def index(self, description: IndexDescription) -> "PineconeIndex":
        """Return a data-plane handle for a described index."""
        if not description.host:
            raise IndexServiceError(
                f"Index {description.name} has no host yet", details={"index": description.name}
            )
        return PineconeIndex(description.name, description.host, self._http)

    async def aclose(self) -> None:
        await self._client.aclose()


class PineconeIndex:
    """Data-plane operations against one Pinecone index."""

    def __init__(self, name: str, host: str, http: _PineconeHTTP):
        self.name = name
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self.base_url = host.rstrip("/")
        self._http = http

    async def upsert(self, vectors: Sequence[Dict[str, Any]], namespace: str = "") -> int:
        data = await self._http.request(
            "POST",
            f"{self.base_url}/vectors/upsert",
            json={"vectors": list(vectors), "namespace": namespace},
        )
        return int((data or {}).get("upsertedCount", len(vectors)))

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
        namespace: str = "",
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "vector": list(vector),
            "topK": top_k,
            "includeMetadata": True,
            "includeValues": False,
            "namespace": namespace,
        }
        if filter:
            payload["filter"] = filter
        data = await self._http.request("POST", f"{self.base_url}/query", json=payload)
        return list((data or {}).get("matches") or [])

    async def fetch(self, ids: Sequence[str], namespace: str = "") -> Dict[str, Dict[str, Any]]:
        data = await self._http.request(
            "GET",
            f"{self.base_url}/vectors/fetch",
            params={"ids": list(ids), "namespace": namespace},
        )
        return dict((data or {}).get("vectors") or {})

    async def delete(self, ids: Sequence[str], namespace: str = "") -> None:
        await self._http.request(
            "POST",
            f"{self.base_url}/vectors/delete",
            json={"ids": list(ids), "namespace": namespace},
        )

    async def delete_all(self, namespace: str = "") -> None:
        await self._http.request(
            "POST",
            f"{self.base_url}/vectors/delete",
            json={"deleteAll": True, "namespace": namespace},
        )

    async def list_page(
        self,
        prefix: Optional[str] = None,
        limit: int = 100,
        pagination_token: Optional[str] = None,
        namespace: str = "",
    ) -> ListPage:
        params: Dict[str, Any] = {"limit": limit, "namespace": namespace}
        if prefix:
            params["prefix"] = prefix
        if pagination_token:
            params["paginationToken"] = pagination_token

        data = await self._http.request("GET", f"{self.base_url}/vectors/list", params=params) or {}
        ids = [v["id"] for v in data.get("vectors") or [] if v.get("id")]
        next_token = (data.get("pagination") or {}).get("next") or None
        return ListPage(ids=ids, next_token=next_token)

    async def describe_index_stats(self) -> IndexStats:
        data = await self._http.request("POST", f"{self.base_url}/describe_index_stats", json={}) or {}
        namespaces = {
            name: int(info.get("vectorCount", 0))
            for name, info in (data.get("namespaces") or {}).items()
        }
        return IndexStats(
            total_record_count=int(data.get("totalVectorCount", 0)),
            dimension=data.get("dimension"),
            index_fullness=float(data.get("indexFullness", 0.0)),
            namespaces=namespaces,
        )
