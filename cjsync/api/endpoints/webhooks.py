import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from cjsync.api.deps import get_services, is_secure_request
from cjsync.bootstrap import Services
from cjsync.services.webhooks import WEBHOOK_PATH, ack

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def webhook_status():
    """공급사 연결 확인용 (GET)."""
    return ack(True, "Success", {"endpoint": WEBHOOK_PATH, "status": "ready"})


@router.post("")
async def receive_webhook(request: Request, services: Services = Depends(get_services)):
    """
    CJ 웹훅 수신. 처리 결과와 관계없이 항상 code 200 envelope를 반환합니다.
    """
    raw_body = await request.body()
    body: dict[str, Any] = {}
    if raw_body:
        try:
            parsed = json.loads(raw_body)
        except json.JSONDecodeError as e:
            logger.warning(f"[WEBHOOK] JSON 파싱 실패: {e}")
            parsed = {}
        if isinstance(parsed, dict):
            body = parsed

    handler = services.webhook_handler()
    return await handler.handle(body, secure=is_secure_request(request))
