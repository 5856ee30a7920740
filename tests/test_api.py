"""
Endpoint tests for the FastAPI layer, using TestClient with in-memory
collaborators wired through assemble_services().
"""

import logging

from fastapi.testclient import TestClient

import api
from api import assemble_services, create_app
from circuit_breaker import AIAvailabilityBreaker
from config import Settings
from conftest import HARDWARE_PRODUCTS, FakeVectorStore, RecordingCatalog
from repositories import InMemoryCatalogRepository


def make_client(products=HARDWARE_PRODUCTS, vector_store=None, catalog=None, **overrides):
    overrides.setdefault("index_on_startup", False)
    settings = Settings(_env_file=None, **overrides)
    store = vector_store or FakeVectorStore()
    if catalog is None:
        catalog = InMemoryCatalogRepository(products)

    async def build(s):
        return await assemble_services(s, catalog, store, AIAvailabilityBreaker())

    return TestClient(create_app(settings, build))


async def wait_for_indexing():
    return await api._state.indexing_task


class TestSearchEndpoint:
    def test_missing_query_is_bad_request(self):
        with make_client() as client:
            resp = client.get("/api/products/search")
            assert resp.status_code == 400
            assert "example" in resp.json()["detail"]

            assert client.get("/api/products/search", params={"q": "   "}).status_code == 400

    def test_search_falls_back_to_text(self):
        with make_client() as client:
            resp = client.get("/api/products/search", params={"q": "cerrojo cinco octavos"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["query"] == "cerrojo cinco octavos"
        assert data["strategy_used"] == "advanced_text"
        assert [p["id"] for p in data["results"]] == [1, 7, 2]
        assert data["total"] == 3
        assert data["suggestions"] == []
        assert "X-Response-Time-Ms" in resp.headers

    def test_limit_is_honoured(self):
        with make_client() as client:
            data = client.get("/api/products/search",
                              params={"q": "cerrojo", "limit": 1}).json()
        assert data["total"] == 1

    def test_no_results_has_suggestions(self):
        with make_client() as client:
            data = client.get("/api/products/search", params={"q": "xyzzy"}).json()

        assert data["total"] == 0
        assert data["strategy_used"] == "none"
        assert data["suggestions"]


class TestProductEndpoints:
    def test_list_products(self):
        with make_client() as client:
            data = client.get("/api/products").json()
        assert data["total"] == len(HARDWARE_PRODUCTS)

    def test_reindex(self):
        store = FakeVectorStore()
        with make_client(vector_store=store) as client:
            data = client.post("/api/products/reindex").json()

        assert data["indexed_documents"] == len(HARDWARE_PRODUCTS)
        assert data["total_batches"] == 1
        assert data["aborted"] is False

    def test_reindex_reports_quota_abort(self):
        store = FakeVectorStore(add_errors=[RuntimeError("insufficient_quota")])
        with make_client(vector_store=store) as client:
            data = client.post("/api/products/reindex").json()
            health = client.get("/health").json()

        assert data["aborted"] is True
        assert health["status"] == "DEGRADED"

    def test_index_one(self):
        store = FakeVectorStore()
        with make_client(vector_store=store) as client:
            resp = client.post("/api/products/4/index")

        assert resp.status_code == 200
        assert resp.json()["product_id"] == 4
        assert [d.id for d in store.add_calls[0]] == ["4"]

    def test_index_unknown_product(self):
        with make_client() as client:
            assert client.post("/api/products/999/index").status_code == 404

    def test_index_failure_is_bad_gateway(self):
        store = FakeVectorStore(add_errors=[RuntimeError("connection reset")])
        with make_client(vector_store=store) as client:
            assert client.post("/api/products/4/index").status_code == 502


class TestSystemEndpoints:
    def test_health_up_then_degraded(self):
        with make_client() as client:
            assert client.get("/health").json()["status"] == "UP"

            api._state.services.breaker.record_failure()
            data = client.get("/health").json()

        assert data["status"] == "DEGRADED"
        assert data["ai_available"] is False
        assert data["components"]["vocabulary"]["brands"] == 2
        assert data["components"]["reformulation_cache"]["entries"] == 0
        assert data["request_count"] == 2

    def test_info_lists_strategies(self):
        with make_client() as client:
            data = client.get("/api/products/info").json()

        assert data["ai_status"]["strategies"] == [
            "ai_complete", "hybrid", "advanced_text", "basic_text"]
        assert data["ai_status"]["state"] == "available"


class TestStartup:
    def test_startup_schedules_indexing(self):
        store = FakeVectorStore()
        with make_client(vector_store=store, index_on_startup=True) as client:
            assert api._state.indexing_task is not None
            client.portal.call(wait_for_indexing)

        assert [len(call) for call in store.add_calls] == [len(HARDWARE_PRODUCTS)]

    def test_empty_catalog_indexes_nothing(self):
        store = FakeVectorStore()
        with make_client(products=[], vector_store=store, index_on_startup=True) as client:
            stats = client.portal.call(wait_for_indexing)

        assert stats.total_batches == 0
        assert store.add_calls == []

    def test_unreachable_catalog_does_not_block_startup(self):
        catalog = RecordingCatalog(fail_all=True)
        with make_client(catalog=catalog, index_on_startup=True) as client:
            assert client.get("/health").status_code == 200
            result = client.portal.call(wait_for_indexing)

        assert result is None
        assert catalog.calls.count(("find_all",)) == 2

    def test_log_level_is_applied_on_startup(self):
        root = logging.getLogger()
        previous = root.level
        try:
            with make_client(log_level="DEBUG"):
                assert root.level == logging.DEBUG
        finally:
            root.setLevel(previous)
