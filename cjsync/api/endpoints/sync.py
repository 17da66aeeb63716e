import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from cjsync.api.deps import get_services
from cjsync.bootstrap import Services
from cjsync.exceptions import NotFoundError, VariantIntegrityError

router = APIRouter()


def _to_iso(dt):
    return dt.isoformat() if dt else None


@router.post("/jobs/{job_name}", status_code=202)
async def submit_job(job_name: str, services: Services = Depends(get_services)):
    """배치 작업(stock, reviews, reconcile)을 백그라운드로 제출합니다."""
    if job_name not in services.orchestrator.job_names:
        raise HTTPException(status_code=404, detail=f"알 수 없는 작업: {job_name}")
    if services.orchestrator.cancelled:
        raise HTTPException(status_code=409, detail="종료 중에는 작업을 제출할 수 없습니다.")
    services.orchestrator.submit(job_name)
    return {"job": job_name, "status": "submitted"}


@router.get("/runs")
def list_runs(
    job_name: str | None = Query(default=None, alias="jobName"),
    limit: int = Query(default=20, ge=1, le=200),
    services: Services = Depends(get_services),
):
    with services.scope() as repo:
        runs = repo.list_sync_runs(job_name=job_name, limit=limit)
        return [
            {
                "id": str(run.id),
                "jobName": run.job_name,
                "status": run.status,
                "succeeded": run.succeeded,
                "failed": run.failed,
                "skipped": run.skipped,
                "durationMs": run.duration_ms,
                "startedAt": _to_iso(run.started_at),
                "finishedAt": _to_iso(run.finished_at),
            }
            for run in runs
        ]


@router.post("/products/{product_id}/reconcile")
async def reconcile_product(product_id: uuid.UUID, services: Services = Depends(get_services)):
    try:
        result = await services.reconciler.reconcile_product(product_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return result.to_dict()


@router.post("/variants/{variant_id}/verify")
async def verify_variant(variant_id: uuid.UUID, services: Services = Depends(get_services)):
    """주문 전 옵션 검증. 손상된 vid면 409와 조치 안내를 반환합니다."""
    try:
        variant = await services.reconciler.verify_before_order(variant_id)
    except VariantIntegrityError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    return {"valid": True, "variant": variant.model_dump(mode="json")}
