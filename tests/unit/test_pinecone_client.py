"""Tests for the Pinecone REST client against a mocked transport."""
import json

import httpx
import pytest

from app.errors import (
    ConfigurationError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    IndexServiceError,
    UpstreamError,
)
from app.rag.gateway import IndexGateway
from app.rag.models import IndexDescription
from app.rag.pinecone_client import PineconeService

CONTROL_URL = "https://api.pinecone.test"
HOST = "docs-abc123.svc.us-east-1.pinecone.io"


class FakePinecone:
    """Routes requests to canned responses keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, status=200, body=None):
        self.routes[(method, path)] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes.get((request.method, request.url.path), (404, {"error": "no route"}))
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def fake_pinecone():
    return FakePinecone()


@pytest.fixture
def service(fake_pinecone):
    return PineconeService(
        api_key="pc-key",
        control_url=CONTROL_URL,
        api_version="2025-01",
        transport=httpx.MockTransport(fake_pinecone.handler),
    )


@pytest.fixture
def index(service):
    return service.index(IndexDescription(name="docs", dimension=768, host=HOST, ready=True))


@pytest.mark.asyncio
async def test_list_indexes_parses_descriptions(service, fake_pinecone):
    fake_pinecone.add(
        "GET",
        "/indexes",
        body={
            "indexes": [
                {"name": "docs", "dimension": 768, "metric": "cosine", "host": HOST, "status": {"ready": True}},
                {"name": "old", "dimension": 1536, "metric": "cosine", "host": "old.io", "status": {"ready": False}},
            ]
        },
    )

    indexes = await service.list_indexes()

    assert [(i.name, i.dimension, i.ready) for i in indexes] == [("docs", 768, True), ("old", 1536, False)]
    request = fake_pinecone.requests[0]
    assert request.headers["Api-Key"] == "pc-key"
    assert request.headers["X-Pinecone-API-Version"] == "2025-01"


@pytest.mark.asyncio
async def test_create_index_sends_serverless_spec(service, fake_pinecone):
    fake_pinecone.add("POST", "/indexes", status=201, body={"name": "docs", "dimension": 768, "status": {"ready": False}})

    description = await service.create_index("docs", dimension=768, metric="cosine", cloud="aws", region="us-east-1")

    assert description.dimension == 768
    assert fake_pinecone.last_json() == {
        "name": "docs",
        "dimension": 768,
        "metric": "cosine",
        "spec": {"serverless": {"cloud": "aws", "region": "us-east-1"}},
    }


@pytest.mark.asyncio
async def test_conflict_maps_to_already_exists(service, fake_pinecone):
    fake_pinecone.add("POST", "/indexes", status=409, body={"error": {"code": "ALREADY_EXISTS"}})

    with pytest.raises(IndexAlreadyExistsError) as exc_info:
        await service.create_index("docs", dimension=768, metric="cosine", cloud="aws", region="us-east-1")

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_missing_index_maps_to_not_found(service):
    with pytest.raises(IndexNotFoundError):
        await service.describe_index("nope")


@pytest.mark.asyncio
async def test_server_error_maps_to_index_service_error(service, fake_pinecone):
    fake_pinecone.add("DELETE", "/indexes/docs", status=500, body={"error": "boom"})

    with pytest.raises(IndexServiceError) as exc_info:
        await service.delete_index("docs")

    assert exc_info.value.status_code == 500
    assert not isinstance(exc_info.value, (IndexNotFoundError, IndexAlreadyExistsError))


@pytest.mark.asyncio
async def test_connection_failure_maps_to_index_service_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = PineconeService(api_key="pc-key", control_url=CONTROL_URL, transport=httpx.MockTransport(refuse))

    with pytest.raises(IndexServiceError) as exc_info:
        await service.list_indexes()

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_non_json_success_body_is_index_service_error():
    def html(request):
        return httpx.Response(200, text="<html>gateway</html>")

    service = PineconeService(api_key="pc-key", control_url=CONTROL_URL, transport=httpx.MockTransport(html))

    with pytest.raises(IndexServiceError) as exc_info:
        await service.list_indexes()
    assert exc_info.value.status_code == 200

    gateway = IndexGateway(service, index_name="docs", dimension=768, ready_poll_interval=0)
    with pytest.raises(UpstreamError) as exc_info:
        await gateway.ensure_index()
    assert exc_info.value.stage == "index setup"


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error(fake_pinecone):
    service = PineconeService(api_key="", control_url=CONTROL_URL, transport=httpx.MockTransport(fake_pinecone.handler))

    with pytest.raises(ConfigurationError):
        await service.list_indexes()
    assert fake_pinecone.requests == []


def test_index_handle_requires_host(service):
    with pytest.raises(IndexServiceError):
        service.index(IndexDescription(name="docs", dimension=768, host=None))


def test_index_handle_adds_scheme_to_host(index):
    assert index.base_url == f"https://{HOST}"


@pytest.mark.asyncio
async def test_upsert_posts_vectors(index, fake_pinecone):
    fake_pinecone.add("POST", "/vectors/upsert", body={"upsertedCount": 2})
    vectors = [{"id": "d-chunk-0", "values": [0.1], "metadata": {}}, {"id": "d-chunk-1", "values": [0.2], "metadata": {}}]

    assert await index.upsert(vectors, namespace="ns") == 2
    assert fake_pinecone.last_json() == {"vectors": vectors, "namespace": "ns"}
    assert fake_pinecone.requests[-1].url.host == HOST


@pytest.mark.asyncio
async def test_query_sends_filter_and_returns_matches(index, fake_pinecone):
    fake_pinecone.add(
        "POST",
        "/query",
        body={"matches": [{"id": "d-chunk-0", "score": 0.9, "metadata": {"text": "hi"}}]},
    )

    matches = await index.query([0.1, 0.2], top_k=3, filter={"documentId": {"$eq": "d"}})

    assert matches == [{"id": "d-chunk-0", "score": 0.9, "metadata": {"text": "hi"}}]
    payload = fake_pinecone.last_json()
    assert payload["topK"] == 3
    assert payload["includeMetadata"] is True
    assert payload["filter"] == {"documentId": {"$eq": "d"}}


@pytest.mark.asyncio
async def test_fetch_sends_repeated_ids(index, fake_pinecone):
    fake_pinecone.add("GET", "/vectors/fetch", body={"vectors": {"a": {"id": "a", "metadata": {"source": "x"}}}})

    records = await index.fetch(["a", "b"])

    assert records == {"a": {"id": "a", "metadata": {"source": "x"}}}
    assert fake_pinecone.requests[-1].url.params.get_list("ids") == ["a", "b"]


@pytest.mark.asyncio
async def test_list_page_passes_prefix_and_token(index, fake_pinecone):
    fake_pinecone.add(
        "GET",
        "/vectors/list",
        body={"vectors": [{"id": "d-chunk-0"}, {"id": "d-chunk-1"}], "pagination": {"next": "tok-2"}},
    )

    page = await index.list_page(prefix="d-chunk-", limit=2, pagination_token="tok-1")

    assert page.ids == ["d-chunk-0", "d-chunk-1"]
    assert page.next_token == "tok-2"
    params = fake_pinecone.requests[-1].url.params
    assert params["prefix"] == "d-chunk-"
    assert params["limit"] == "2"
    assert params["paginationToken"] == "tok-1"


@pytest.mark.asyncio
async def test_list_page_without_pagination_is_last(index, fake_pinecone):
    fake_pinecone.add("GET", "/vectors/list", body={"vectors": [{"id": "x"}]})

    page = await index.list_page()

    assert page.ids == ["x"]
    assert page.next_token is None
    assert "prefix" not in fake_pinecone.requests[-1].url.params


@pytest.mark.asyncio
async def test_delete_and_delete_all(index, fake_pinecone):
    fake_pinecone.add("POST", "/vectors/delete", body={})

    await index.delete(["a", "b"])
    assert fake_pinecone.last_json() == {"ids": ["a", "b"], "namespace": ""}

    await index.delete_all()
    assert fake_pinecone.last_json() == {"deleteAll": True, "namespace": ""}


@pytest.mark.asyncio
async def test_describe_index_stats(index, fake_pinecone):
    fake_pinecone.add(
        "POST",
        "/describe_index_stats",
        body={
            "namespaces": {"": {"vectorCount": 12}},
            "dimension": 768,
            "indexFullness": 0.01,
            "totalVectorCount": 12,
        },
    )

    stats = await index.describe_index_stats()

    assert stats.total_record_count == 12
    assert stats.to_dict() == {
        "totalRecordCount": 12,
        "dimension": 768,
        "indexFullness": 0.01,
        "namespaces": {"": {"recordCount": 12}},
    }
