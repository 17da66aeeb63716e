"""
배치 동기화 오케스트레이터.

재고/리뷰 갱신과 옵션 ID 보정 스윕을 제한된 수의 워커로 처리합니다.
- 작업 단위: 상품 1개
- batch_size 단위로 나누고 배치 사이에 batch_sleep만큼 대기
- cancel() 이후에는 새 단위를 꺼내지 않고 진행 중인 단위만 마칩니다
- 체크포인트 없이 매 실행마다 전체를 다시 평가 (단위별 커밋이라 중단돼도 손실 없음)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from cjsync.exceptions import AuthError, CJSyncError, NotFoundError, PersistenceError, SyncDisabledError
from cjsync.repository import RepositoryScope
from cjsync.services.catalog import CatalogFetcher
from cjsync.services.reconciliation import IdentityReconciler

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 100

WorkUnit = tuple[uuid.UUID, str]
Worker = Callable[[WorkUnit, "JobSummary"], Awaitable[str]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobSummary:
    job: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    status: str = "running"
    cancelled: bool = False
    aborted_reason: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    details: Counter = field(default_factory=Counter)
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    duration_ms: int | None = None
    run_id: uuid.UUID | None = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def record_error(self, unit: WorkUnit | None, error: Exception) -> None:
        self.failed += 1
        if len(self.errors) >= MAX_RECORDED_ERRORS:
            return
        entry: dict[str, Any] = (
            error.to_dict() if isinstance(error, CJSyncError) else {"error_code": type(error).__name__, "message": str(error)}
        )
        if unit is not None:
            entry["product_id"] = str(unit[0])
            entry["pid"] = unit[1]
        self.errors.append(entry)

    def finish(self, started: float) -> None:
        self.finished_at = _now()
        self.duration_ms = int((time.monotonic() - started) * 1000)
        if self.status == "disabled":
            return
        if self.aborted_reason:
            self.status = "fail"
        elif self.cancelled:
            self.status = "cancelled"
        elif self.failed == 0:
            self.status = "success"
        elif self.succeeded + self.skipped > 0:
            self.status = "partial"
        else:
            self.status = "fail"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "status": self.status,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "not_processed": max(self.total - self.processed, 0),
            "cancelled": self.cancelled,
            "aborted_reason": self.aborted_reason,
            "details": dict(self.details),
            "errors": self.errors,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "run_id": str(self.run_id) if self.run_id else None,
        }


class SyncOrchestrator:
    def __init__(
        self,
        scope: RepositoryScope,
        supplier_id: uuid.UUID,
        fetcher: CatalogFetcher,
        reconciler: IdentityReconciler,
        batch_size: int = 50,
        concurrency: int = 4,
        batch_sleep: float = 2.0,
        sync_enabled: bool = True,
        review_sync_enabled: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._scope = scope
        self._supplier_id = supplier_id
        self._fetcher = fetcher
        self._reconciler = reconciler
        self.batch_size = max(batch_size, 1)
        self.concurrency = max(concurrency, 1)
        self.batch_sleep = batch_sleep
        self.sync_enabled = sync_enabled
        self.review_sync_enabled = review_sync_enabled
        self._sleep = sleep
        self._cancel = asyncio.Event()
        self._tasks: set[asyncio.Task[JobSummary]] = set()
        self._jobs: dict[str, Callable[[], Awaitable[JobSummary]]] = {
            "stock": self.run_stock_sync,
            "reviews": self.run_review_sync,
            "reconcile": self.run_reconciliation_sweep,
        }

    # ----- 제어 -----

    def cancel(self) -> None:
        """진행 중인 작업이 새 단위를 꺼내지 않도록 합니다."""
        if not self._cancel.is_set():
            logger.info("[SYNC] 취소 요청 수신, 진행 중인 단위만 마무리합니다")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    async def run_job(self, job_name: str) -> JobSummary:
        job = self._jobs.get(job_name)
        if job is None:
            raise ValueError(f"Unknown job: {job_name}")
        return await job()

    def submit(self, job_name: str) -> asyncio.Task[JobSummary]:
        """작업을 워커 풀에 백그라운드로 제출합니다."""
        if job_name not in self._jobs:
            raise ValueError(f"Unknown job: {job_name}")
        task = asyncio.create_task(self.run_job(job_name), name=f"cjsync-{job_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_periodic(self, job_name: str, interval: float) -> None:
        """cancel() 전까지 interval 간격으로 작업을 반복합니다."""
        while not self.cancelled:
            try:
                await self.run_job(job_name)
            except Exception as e:
                # 한 회차 실패로 반복 작업이 멈추지 않도록
                logger.exception(f"[SYNC] {job_name} 주기 실행 실패: {e}")
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def shutdown(self) -> None:
        self.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----- 작업 -----

    async def run_stock_sync(self) -> JobSummary:
        return await self._run("stock_sync", self._stock_units, self._sync_stock)

    async def run_review_sync(self) -> JobSummary:
        return await self._run(
            "review_sync", self._product_units, self._sync_reviews, enabled=self.review_sync_enabled
        )

    async def run_reconciliation_sweep(self) -> JobSummary:
        return await self._run(
            "reconciliation_sweep",
            lambda: self._reconciler.find_suspect_products(self._supplier_id),
            self._reconcile,
        )

    def _product_units(self) -> list[WorkUnit]:
        with self._scope() as repo:
            return repo.list_product_refs(self._supplier_id, active_only=True)

    def _stock_units(self) -> list[WorkUnit]:
        return self._product_units()

    def _connection_enabled(self) -> bool:
        with self._scope() as repo:
            credential = repo.get_credential(self._supplier_id)
            return credential is not None and credential.enabled

    async def _run(
        self,
        job: str,
        load_units: Callable[[], list[WorkUnit]],
        worker: Worker,
        enabled: bool = True,
    ) -> JobSummary:
        started = time.monotonic()
        summary = JobSummary(job=job)

        try:
            enabled = self.sync_enabled and enabled and self._connection_enabled()
            units = load_units() if enabled else []
        except CJSyncError as e:
            # 대상 조회 실패도 실행 이력은 남김
            logger.error(f"[SYNC] {job} 시작 실패: {e.message}")
            summary.record_error(None, e)
            summary.aborted_reason = e.error_code
            summary.finish(started)
            self._record(summary)
            return summary

        if not enabled:
            logger.info(f"[SYNC] {job} 비활성화 상태, 건너뜀")
            summary.status = "disabled"
            summary.finish(started)
            self._record(summary)
            return summary

        summary.total = len(units)
        logger.info(f"[SYNC] {job} 시작: 대상 {summary.total}개, 배치 {self.batch_size}, 워커 {self.concurrency}")

        for index in range(0, len(units), self.batch_size):
            if self.cancelled or summary.aborted_reason:
                break
            if index > 0 and self.batch_sleep > 0:
                await self._sleep(self.batch_sleep)
                if self.cancelled:
                    break
            await self._run_batch(units[index:index + self.batch_size], worker, summary)

        summary.cancelled = self.cancelled and summary.processed < summary.total
        summary.finish(started)
        logger.info(
            f"[SYNC] {job} 완료: status={summary.status} 성공 {summary.succeeded} / 실패 {summary.failed} / "
            f"건너뜀 {summary.skipped} ({summary.duration_ms}ms)"
        )
        self._record(summary)
        return summary

    async def _run_batch(self, batch: list[WorkUnit], worker: Worker, summary: JobSummary) -> None:
        queue: asyncio.Queue[WorkUnit] = asyncio.Queue()
        for unit in batch:
            queue.put_nowait(unit)

        async def worker_loop() -> None:
            while not self.cancelled and not summary.aborted_reason:
                try:
                    unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._process(unit, worker, summary)

        await asyncio.gather(*(worker_loop() for _ in range(min(self.concurrency, len(batch)))))

    async def _process(self, unit: WorkUnit, worker: Worker, summary: JobSummary) -> None:
        try:
            outcome = await worker(unit, summary)
        except (AuthError, SyncDisabledError) as e:
            # 이후 단위도 모두 실패하므로 작업 중단
            logger.error(f"[SYNC] {summary.job} 인증/연결 문제로 중단: {e.message}")
            summary.record_error(unit, e)
            summary.aborted_reason = e.error_code
        except CJSyncError as e:
            logger.warning(f"[SYNC] {summary.job} pid={unit[1]} 실패: {e.message}")
            summary.record_error(unit, e)
        except Exception as e:
            logger.exception(f"[SYNC] {summary.job} pid={unit[1]} 예기치 않은 오류: {e}")
            summary.record_error(unit, e)
        else:
            if outcome == "skipped":
                summary.skipped += 1
            else:
                summary.succeeded += 1

    def _record(self, summary: JobSummary) -> None:
        try:
            with self._scope() as repo:
                run = repo.record_sync_run(
                    job_name=summary.job,
                    status=summary.status,
                    succeeded=summary.succeeded,
                    failed=summary.failed,
                    skipped=summary.skipped,
                    duration_ms=summary.duration_ms,
                    summary=summary.to_dict(),
                    started_at=summary.started_at,
                    finished_at=summary.finished_at,
                )
                summary.run_id = run.id
        except PersistenceError as e:
            logger.error(f"[SYNC] {summary.job} 실행 이력 저장 실패: {e.message}")
            summary.errors.append(e.to_dict())

    # ----- 단위 처리 -----

    async def _sync_stock(self, unit: WorkUnit, summary: JobSummary) -> str:
        product_id, pid = unit
        with self._scope() as repo:
            product = repo.get_product(product_id, with_variants=True)
            tracked = [v for v in product.variants if v.is_active and v.cj_variant_id] if product else []
        if not tracked:
            return "skipped"

        try:
            levels = await self._fetcher.get_inventory_by_pid(pid)
        except NotFoundError:
            logger.info(f"[SYNC] pid={pid} 재고 정보 없음, 건너뜀")
            return "skipped"

        now = _now()
        updated = 0
        with self._scope() as repo:
            product = repo.get_product(product_id, with_variants=True)
            if product is None:
                return "skipped"
            for variant in product.variants:
                level = levels.get(variant.cj_variant_id or "")
                if variant.is_active and level is not None:
                    repo.update_variant(variant, stock=level.total, stock_synced_at=now)
                    updated += 1
        summary.details.update(variants_updated=updated, variants_missing=len(tracked) - updated)
        return "succeeded"

    async def _sync_reviews(self, unit: WorkUnit, summary: JobSummary) -> str:
        product_id, pid = unit
        try:
            reviews = await self._fetcher.list_reviews(pid)
        except NotFoundError:
            return "skipped"

        ratings = [r.rating for r in reviews if r.rating is not None]
        rating = round(sum(ratings) / len(ratings), 2) if ratings else None
        with self._scope() as repo:
            product = repo.get_product(product_id)
            if product is None:
                return "skipped"
            repo.update_product(
                product,
                rating=rating,
                reviews_count=len(reviews),
                reviews=[r.model_dump(mode="json") for r in reviews],
                reviews_synced_at=_now(),
            )
        summary.details.update(reviews=len(reviews))
        return "succeeded"

    async def _reconcile(self, unit: WorkUnit, summary: JobSummary) -> str:
        product_id, _pid = unit
        result = await self._reconciler.reconcile_product(product_id)
        summary.details.update(
            corrected=result.corrected,
            deactivated=result.deactivated,
            products_deactivated=int(result.product_deactivated),
        )
        return "succeeded" if result.changed else "skipped"
