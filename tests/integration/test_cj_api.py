"""
CJ API 라우터 통합 테스트.

메모리 DB 스코프로 서비스를 조립하고 FastAPI TestClient로 호출합니다.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from cjsync.api.endpoints import categories, sync, webhooks
from cjsync.bootstrap import build_services
from cjsync.settings import Settings


def _app(services) -> FastAPI:
    app = FastAPI()
    app.include_router(webhooks.router, prefix="/api/cj-dropshipping/webhooks")
    app.include_router(sync.router, prefix="/api/cj-dropshipping/sync")
    app.include_router(categories.router, prefix="/api/cj-dropshipping/categories")
    app.state.services = services
    return app


def _settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "cj_email": "ops@example.com",
        "cj_api_key": "key-123",
        "environment": "development",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def services(scope):
    return build_services(_settings(), scope=scope)


@pytest.fixture
def client(services):
    return TestClient(_app(services))


def _stock_body(message_id="msg-1"):
    return {
        "messageId": message_id,
        "type": "STOCK",
        "params": {"1001": [{"vid": "1001", "areaId": 2, "countryCode": "US", "storageNum": 9}]},
    }


@pytest.mark.integration
class TestWebhookEndpoint:
    """웹훅 엔드포인트."""

    def test_get_returns_ready(self, client):
        response = client.get("/api/cj-dropshipping/webhooks")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ready"

    def test_empty_post_is_connectivity_check(self, client):
        response = client.post("/api/cj-dropshipping/webhooks", content=b"")

        body = response.json()
        assert response.status_code == 200
        assert body["code"] == 200
        assert body["result"] is True
        assert body["data"]["status"] == "ready"

    def test_invalid_json_still_acknowledged(self, client):
        response = client.post(
            "/api/cj-dropshipping/webhooks",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["result"] is True

    def test_stock_event_applied_then_duplicate(self, client, services):
        with services.scope() as repo:
            product = repo.create_product(services.supplier_id, "PID123")
            repo.create_variant(product.id, cj_variant_id="1001", sku="A")

        first = client.post("/api/cj-dropshipping/webhooks", json=_stock_body())
        second = client.post("/api/cj-dropshipping/webhooks", json=_stock_body())

        assert first.json()["data"]["status"] == "applied"
        assert second.json()["data"]["status"] == "duplicate"
        with services.scope() as repo:
            assert repo.find_variants_by_vid("1001")[0].stock == 9

    def test_production_requires_https(self, scope, services):
        services.config = _settings(environment="production")
        client = TestClient(_app(services))

        plain = client.post("/api/cj-dropshipping/webhooks", json=_stock_body("msg-plain"))
        forwarded = client.post(
            "/api/cj-dropshipping/webhooks",
            json=_stock_body("msg-forwarded"),
            headers={"X-Forwarded-Proto": "https"},
        )

        assert plain.status_code == 200
        assert plain.json()["result"] is False
        assert plain.json()["message"] == "HTTPS required in production"
        assert forwarded.json()["result"] is True
        assert forwarded.json()["data"]["status"] == "applied"

    def test_webhook_toggle_reread_per_request(self, services):
        loaded = iter([_settings(enable_webhooks=True), _settings(enable_webhooks=False)])
        services.config_loader = lambda: next(loaded)
        client = TestClient(_app(services))

        first = client.post("/api/cj-dropshipping/webhooks", json=_stock_body("msg-on"))
        second = client.post("/api/cj-dropshipping/webhooks", json=_stock_body("msg-off"))

        assert first.json()["data"]["status"] == "applied"
        assert second.json()["data"]["status"] == "disabled"

    def test_webhooks_disabled(self, services):
        services.config = _settings(enable_webhooks=False)
        client = TestClient(_app(services))

        response = client.post("/api/cj-dropshipping/webhooks", json=_stock_body())

        assert response.json()["data"]["status"] == "disabled"


@pytest.mark.integration
class TestCategoryEndpoints:
    """카테고리 매핑 엔드포인트."""

    def test_sync_list_and_apply(self, client, services):
        with services.scope() as repo:
            for i in range(3):
                repo.create_product(services.supplier_id, f"K-{i}", external_category="Kitchen Gadgets")
            kitchen_id = repo.create_category("Kitchen", "kitchen").id

        synced = client.post("/api/cj-dropshipping/categories/unmapped/sync")
        listed = client.get("/api/cj-dropshipping/categories/unmapped")
        applied = client.post(
            "/api/cj-dropshipping/categories/mappings",
            json={"externalCategory": "Kitchen Gadgets", "internalCategoryId": str(kitchen_id)},
        )
        after = client.get("/api/cj-dropshipping/categories/unmapped")

        assert synced.json()["created"] == 1
        assert listed.json()[0]["externalCategory"] == "Kitchen Gadgets"
        assert listed.json()[0]["productCount"] == 3
        assert applied.status_code == 200
        assert applied.json()["productsUpdated"] == 3
        assert after.json() == []

    def test_apply_unknown_category(self, client):
        response = client.post(
            "/api/cj-dropshipping/categories/mappings",
            json={"externalCategory": "Kitchen Gadgets", "internalCategoryId": "00000000-0000-0000-0000-000000000000"},
        )

        assert response.status_code == 404


@pytest.mark.integration
class TestSyncEndpoints:
    """동기화 엔드포인트."""

    def test_unknown_job(self, client):
        response = client.post("/api/cj-dropshipping/sync/jobs/prices")

        assert response.status_code == 404

    def test_submit_rejected_while_shutting_down(self, client, services):
        services.orchestrator.cancel()

        response = client.post("/api/cj-dropshipping/sync/jobs/stock")

        assert response.status_code == 409

    def test_verify_corrupted_variant(self, client, services):
        with services.scope() as repo:
            product = repo.create_product(services.supplier_id, "PID123")
            variant_id = repo.create_variant(product.id, cj_variant_id="PID123", sku="A").id

        response = client.post(f"/api/cj-dropshipping/sync/variants/{variant_id}/verify")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error_code"] == "VARIANT_INTEGRITY"
        assert detail["context"]["action"] == "run_reconciliation"

    def test_reconcile_unknown_product(self, client):
        response = client.post("/api/cj-dropshipping/sync/products/00000000-0000-0000-0000-000000000000/reconcile")

        assert response.status_code == 404

    def test_runs_listing(self, client):
        response = client.get("/api/cj-dropshipping/sync/runs")

        assert response.status_code == 200
        assert response.json() == []
