import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from cjsync.api.endpoints import categories, sync, webhooks
from cjsync.bootstrap import build_services
from cjsync.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 설정 미주입 → 웹훅 토글은 요청마다 환경에서 다시 읽음
    app.state.services = build_services()
    try:
        yield
    finally:
        # 진행 중인 배치는 현재 단위까지만 처리하고 종료
        await app.state.services.aclose()
        logger.info("[BOOT] CJ 서비스 종료")


app = FastAPI(title="cjsync", lifespan=lifespan)

app.include_router(webhooks.router, prefix="/api/cj-dropshipping/webhooks", tags=["Webhooks"])
app.include_router(sync.router, prefix="/api/cj-dropshipping/sync", tags=["Sync"])
app.include_router(categories.router, prefix="/api/cj-dropshipping/categories", tags=["Categories"])


@app.get("/health")
def health(request: Request):
    services = getattr(request.app.state, "services", None)
    expiry = services.credentials.current_expiry if services else None
    return {
        "status": "ok" if services else "starting",
        "environment": settings.environment,
        "tokenExpiresAt": expiry.isoformat() if expiry else None,
    }
