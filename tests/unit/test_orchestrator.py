"""
SyncOrchestrator 테스트.

배치 분할, 동시성 상한, 취소, 인증 실패 중단, 실행 이력 기록을 검증합니다.
"""

import asyncio

import pytest

from cjsync.exceptions import AuthError, NotFoundError, SupplierTransportError
from cjsync.schemas.exchange import ExternalReview, InventoryLevel
from cjsync.services.catalog import CatalogFetcher
from cjsync.services.orchestrator import JobSummary, SyncOrchestrator
from cjsync.services.reconciliation import IdentityReconciler


class FakeFetcher:
    """재고/리뷰 조회 대역. 동시 실행 수를 기록합니다."""

    def __init__(self, failures=None, hold=0):
        self.failures = failures or {}
        self.hold = hold
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call = None

    async def _enter(self, pid):
        self.calls.append(pid)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for _ in range(self.hold + 1):
                await asyncio.sleep(0)
            if self.on_call:
                self.on_call(pid)
            error = self.failures.get(pid)
            if error is not None:
                raise error
        finally:
            self.in_flight -= 1

    async def get_inventory_by_pid(self, pid):
        await self._enter(pid)
        return {f"V-{pid}": InventoryLevel(vid=f"V-{pid}", total=7, by_country={"CN": 7})}

    async def list_reviews(self, pid):
        await self._enter(pid)
        return [
            ExternalReview(review_id=f"{pid}-1", pid=pid, rating=5.0, comment="great"),
            ExternalReview(review_id=f"{pid}-2", pid=pid, rating=4.0),
            ExternalReview(review_id=f"{pid}-3", pid=pid, rating=4.0),
        ]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def _seed_catalog(seed, count):
    return [
        seed.product(f"P{i:03d}", variants=[{"cj_variant_id": f"V-P{i:03d}", "sku": f"S{i}"}])
        for i in range(count)
    ]


def _orchestrator(scope, supplier_id, fetcher, sleep=None, **kwargs):
    return SyncOrchestrator(
        scope,
        supplier_id,
        fetcher,
        IdentityReconciler(fetcher, scope),
        sleep=sleep or SleepRecorder(),
        **kwargs,
    )


@pytest.mark.unit
class TestStockSync:
    """재고 동기화 작업."""

    @pytest.mark.asyncio
    async def test_counts_and_batches(self, scope, seed, supplier_id):
        """상품 120개, 배치 50 → 3배치, 배치 사이 대기 2회"""
        product_ids = _seed_catalog(seed, 120)
        fetcher = FakeFetcher()
        sleep = SleepRecorder()
        orchestrator = _orchestrator(scope, supplier_id, fetcher, sleep=sleep, batch_size=50, batch_sleep=2.0)

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "success"
        assert summary.total == 120
        assert summary.succeeded == 120
        assert summary.failed == 0
        assert sleep.delays == [2.0, 2.0]
        assert summary.details["variants_updated"] == 120
        with scope() as repo:
            variant = repo.get_product(product_ids[0], with_variants=True).variants[0]
            assert variant.stock == 7
            assert variant.stock_synced_at is not None

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, scope, seed, supplier_id):
        _seed_catalog(seed, 20)
        fetcher = FakeFetcher(hold=3)
        orchestrator = _orchestrator(scope, supplier_id, fetcher, batch_size=20, concurrency=4)

        await orchestrator.run_stock_sync()

        assert fetcher.max_in_flight <= 4
        assert fetcher.max_in_flight > 1
        assert len(fetcher.calls) == 20

    @pytest.mark.asyncio
    async def test_failures_are_counted_per_unit(self, scope, seed, supplier_id):
        _seed_catalog(seed, 5)
        fetcher = FakeFetcher(failures={
            "P001": SupplierTransportError("timeout"),
            "P003": NotFoundError("gone"),
        })
        orchestrator = _orchestrator(scope, supplier_id, fetcher)

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "partial"
        assert summary.succeeded == 3
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.errors[0]["pid"] == "P001"
        assert summary.succeeded + summary.failed + summary.skipped == summary.total

    @pytest.mark.asyncio
    async def test_products_without_tracked_variants_are_skipped(self, scope, seed, supplier_id):
        seed.product("P-NOVID", variants=[{"cj_variant_id": None, "sku": "A"}])
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(scope, supplier_id, fetcher)

        summary = await orchestrator.run_stock_sync()

        assert summary.skipped == 1
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_job(self, scope, seed, supplier_id):
        _seed_catalog(seed, 30)
        fetcher = FakeFetcher(failures={f"P{i:03d}": AuthError("CJ 재로그인 실패") for i in range(30)})
        orchestrator = _orchestrator(scope, supplier_id, fetcher, batch_size=10, concurrency=2)

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "fail"
        assert summary.aborted_reason == "AUTH_ERROR"
        assert len(fetcher.calls) <= 2
        assert summary.to_dict()["not_processed"] == 30 - summary.processed


@pytest.mark.unit
class TestCancellation:
    """취소."""

    @pytest.mark.asyncio
    async def test_cancel_stops_taking_new_units(self, scope, seed, supplier_id):
        _seed_catalog(seed, 40)
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(scope, supplier_id, fetcher, batch_size=10, concurrency=2)

        def cancel_after_five(pid):
            if len(fetcher.calls) >= 5:
                orchestrator.cancel()

        fetcher.on_call = cancel_after_five

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "cancelled"
        assert summary.cancelled is True
        # 진행 중이던 단위는 마무리되지만 새 단위는 시작하지 않음
        assert summary.processed == len(fetcher.calls)
        assert summary.processed < 10
        assert summary.to_dict()["not_processed"] == 40 - summary.processed

    @pytest.mark.asyncio
    async def test_cancel_is_sticky(self, scope, seed, supplier_id):
        _seed_catalog(seed, 3)
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(scope, supplier_id, fetcher)
        orchestrator.cancel()

        summary = await orchestrator.run_job("stock")

        assert summary.status == "cancelled"
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_submitted_jobs(self, scope, seed, supplier_id):
        _seed_catalog(seed, 4)
        fetcher = FakeFetcher(hold=2)
        orchestrator = _orchestrator(scope, supplier_id, fetcher, batch_size=2, concurrency=1)

        task = orchestrator.submit("stock")
        await asyncio.sleep(0)
        await orchestrator.shutdown()

        assert task.done()
        assert task.result().status in ("cancelled", "success")

    @pytest.mark.asyncio
    async def test_unknown_job(self, scope, supplier_id):
        orchestrator = _orchestrator(scope, supplier_id, FakeFetcher())
        with pytest.raises(ValueError):
            await orchestrator.run_job("prices")


@pytest.mark.unit
class TestJobsAndToggles:
    """리뷰/보정 작업, 비활성화 토글, 실행 이력."""

    @pytest.mark.asyncio
    async def test_disabled_toggle(self, scope, seed, supplier_id):
        _seed_catalog(seed, 3)
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(scope, supplier_id, fetcher, sync_enabled=False)

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "disabled"
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_disabled_connection(self, scope, seed, supplier_id):
        _seed_catalog(seed, 3)
        with scope() as repo:
            repo.update_credential(supplier_id, enabled=False)
        fetcher = FakeFetcher()

        summary = await _orchestrator(scope, supplier_id, fetcher).run_review_sync()

        assert summary.status == "disabled"
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_review_sync_stores_rating(self, scope, seed, supplier_id):
        [product_id] = _seed_catalog(seed, 1)
        orchestrator = _orchestrator(scope, supplier_id, FakeFetcher())

        summary = await orchestrator.run_review_sync()

        assert summary.succeeded == 1
        assert summary.details["reviews"] == 3
        with scope() as repo:
            product = repo.get_product(product_id)
            assert product.rating == 4.33
            assert product.reviews_count == 3
            assert product.reviews[0]["review_id"] == "P000-1"
            assert product.reviews_synced_at is not None

    @pytest.mark.asyncio
    async def test_reconciliation_sweep(self, scope, seed, supplier_id, fake_dispatcher, make_envelope):
        seed.product("PID123", variants=[{"cj_variant_id": "PID123", "sku": "SKU-RED-M"}])
        seed.product("PID200", variants=[{"cj_variant_id": "2001", "sku": "OK"}])
        fake_dispatcher.routes["/product/variant/query"] = make_envelope(
            [{"vid": "1001", "variantSku": "SKU-RED-M"}]
        )
        fetcher = CatalogFetcher(fake_dispatcher)
        orchestrator = _orchestrator(scope, supplier_id, fetcher)

        summary = await orchestrator.run_reconciliation_sweep()

        assert summary.total == 1
        assert summary.succeeded == 1
        assert summary.details["corrected"] == 1
        again = await orchestrator.run_reconciliation_sweep()
        assert again.total == 0
        assert again.status == "success"

    @pytest.mark.asyncio
    async def test_runs_are_recorded(self, scope, seed, supplier_id):
        _seed_catalog(seed, 2)
        orchestrator = _orchestrator(scope, supplier_id, FakeFetcher())

        summary = await orchestrator.run_stock_sync()

        assert summary.run_id is not None
        with scope() as repo:
            [run] = repo.list_sync_runs("stock_sync")
            assert run.status == "success"
            assert run.succeeded == 2
            assert run.summary["total"] == 2

    @pytest.mark.asyncio
    async def test_unit_loading_failure_is_recorded(self, scope, seed, supplier_id, flaky_scope):
        """대상 조회 중 저장소 오류 → fail 요약과 실행 이력"""
        _seed_catalog(seed, 3)
        flaky_scope.fail_calls = {1}
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(flaky_scope, supplier_id, fetcher)

        summary = await orchestrator.run_stock_sync()

        assert summary.status == "fail"
        assert summary.aborted_reason == "PERSISTENCE_ERROR"
        assert summary.failed == 1
        assert summary.run_id is not None
        assert fetcher.calls == []
        with scope() as repo:
            [run] = repo.list_sync_runs("stock_sync")
            assert run.status == "fail"
            assert run.summary["aborted_reason"] == "PERSISTENCE_ERROR"

    @pytest.mark.asyncio
    async def test_periodic_run_survives_failed_round(self, scope, supplier_id):
        orchestrator = _orchestrator(scope, supplier_id, FakeFetcher())
        rounds = []

        async def run_job(job_name):
            rounds.append(job_name)
            if len(rounds) == 1:
                raise RuntimeError("db connection reset")
            orchestrator.cancel()
            return JobSummary(job=job_name)

        orchestrator.run_job = run_job

        await asyncio.wait_for(orchestrator.run_periodic("stock", interval=0), timeout=5)

        assert rounds == ["stock", "stock"]
