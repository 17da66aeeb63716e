"""
CJ 웹훅 수신 처리.

이벤트 상태: received → validated → applied | rejected | duplicate

- messageId 없는 빈 payload는 공급사의 연결 확인(ping)이므로 즉시 성공 응답
- production에서는 HTTPS(또는 forwarded 헤더)만 허용, 아니면 거절하되 응답은 반환
- 이미 applied 또는 처리 중인 messageId는 재처리하지 않음 (at-least-once 전달), rejected만 재처리
- 하위 처리 실패는 rejected로 기록하고 공급사에는 성공 응답 (재전송 폭주 방지)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from cjsync.exceptions import CJSyncError, NotFoundError, PersistenceError, SupplierAPIError, ValidationError
from cjsync.repository import CatalogRepository, RepositoryScope
from cjsync.schemas.exchange import ExternalProduct
from cjsync.schemas.webhook import (
    CJWebhookEvent,
    LogisticsEvent,
    OrderEvent,
    ProductEvent,
    StockEvent,
    UnknownEvent,
    VariantEvent,
    parse_webhook_event,
)
from cjsync.services.catalog import CatalogFetcher
from cjsync.services.category_mapper import CategoryMapper
from cjsync.services.dispatcher import CJRequest, RateLimitedDispatcher

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/cj-dropshipping/webhooks"

WEBHOOK_TOPICS = ("product", "stock", "order", "logistics")

_ORDER_STATUS_MAP = {
    "CREATED": "PENDING",
    "IN_CART": "PENDING",
    "UNPAID": "PENDING",
    "PAID": "PAID",
    "UNSHIPPED": "PROCESSING",
    "PROCESSING": "PROCESSING",
    "SHIPPED": "SHIPPED",
    "DELIVERED": "DELIVERED",
    "CANCELLED": "CANCELLED",
}


def map_order_status(status: str | None) -> str:
    """CJ 주문 상태 → 내부 주문 상태. 알 수 없으면 PENDING."""
    if not status:
        return "PENDING"
    return _ORDER_STATUS_MAP.get(status.strip().upper(), "PENDING")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ack(result: bool, message: str, data: dict[str, Any] | None) -> dict[str, Any]:
    """CJ가 기대하는 응답 envelope. 처리 결과와 무관하게 code는 200."""
    return {
        "code": 200,
        "result": result,
        "message": message,
        "data": data,
        "requestId": str(uuid.uuid4()),
    }


class WebhookHandler:
    def __init__(
        self,
        scope: RepositoryScope,
        supplier_id: uuid.UUID,
        mapper: CategoryMapper,
        fetcher: CatalogFetcher | None = None,
        enabled: bool = True,
        require_secure_transport: bool = False,
    ) -> None:
        self._scope = scope
        self._supplier_id = supplier_id
        self._mapper = mapper
        self._fetcher = fetcher
        self.enabled = enabled
        self.require_secure_transport = require_secure_transport

    async def handle(self, body: dict[str, Any] | None, secure: bool = True) -> dict[str, Any]:
        if not self.enabled:
            logger.info("[WEBHOOK] 웹훅 처리 비활성화 상태, 수신만 확인")
            return ack(True, "Webhooks disabled", {"endpoint": WEBHOOK_PATH, "status": "disabled"})

        if not body or not body.get("messageId"):
            return ack(
                True,
                "Success",
                {"endpoint": WEBHOOK_PATH, "status": "ready", "timestamp": _now().isoformat()},
            )

        message_id = str(body["messageId"])
        event_type = str(body.get("type") or "").upper() or None

        # received
        try:
            duplicate = self._receive(message_id, event_type, body)
        except PersistenceError as e:
            # 동시 중복 전달로 unique 제약에 걸린 경우
            logger.warning(f"[WEBHOOK] {message_id} 수신 기록 실패, 중복 전달로 간주: {e.message}")
            return ack(True, "Duplicate", {"status": "duplicate", "messageId": message_id})
        if duplicate:
            logger.info(f"[WEBHOOK] {message_id} 이미 처리됨 또는 처리 중 (duplicate)")
            return ack(True, "Duplicate", {"status": "duplicate", "messageId": message_id})

        # validated
        if self.require_secure_transport and not secure:
            logger.warning(f"[WEBHOOK] {message_id} 비보안 전송 거절")
            self._mark(message_id, "rejected", error="insecure_transport")
            return ack(False, "HTTPS required in production", None)

        try:
            event = parse_webhook_event(body)
        except ValidationError as e:
            logger.warning(f"[WEBHOOK] {message_id} payload 검증 실패: {e.message}")
            self._mark(message_id, "rejected", error=e.message)
            return ack(True, "Rejected", {"status": "rejected", "messageId": message_id})

        if isinstance(event, UnknownEvent):
            logger.warning(f"[WEBHOOK] {message_id} 지원하지 않는 type={event.type}, 보류")
            self._mark(message_id, "rejected", error=f"unsupported_event_type:{event.type}")
            return ack(True, "Rejected", {"status": "rejected", "messageId": message_id})

        self._mark(message_id, "validated")

        # applied
        try:
            await self._apply(event)
        except Exception as e:
            logger.exception(f"[WEBHOOK] {message_id} {event.kind} 처리 실패: {e}")
            error = e.to_dict() if isinstance(e, CJSyncError) else {"message": str(e)}
            self._mark(message_id, "rejected", error=str(error)[:2000])
            return ack(True, "Rejected", {"status": "rejected", "messageId": message_id})

        logger.info(f"[WEBHOOK] {message_id} {event.kind} 적용 완료")
        return ack(True, "Success", {"status": "applied", "messageId": message_id})

    def _receive(self, message_id: str, event_type: str | None, body: dict[str, Any]) -> bool:
        """
        수신 기록. 처리할 필요가 없으면 True(duplicate).

        applied는 물론 received/validated(다른 요청이 처리 중)도 중복으로 봅니다.
        rejected만 조건부 UPDATE로 재처리 권한을 얻은 요청 하나가 다시 처리합니다.
        """
        with self._scope() as repo:
            event = repo.get_webhook_event(message_id)
            if event is None:
                repo.create_webhook_event(message_id, event_type, body)
                return False
            repo.update_webhook_event(event, delivery_count=event.delivery_count + 1)
            if event.status != "rejected":
                return True
            return not repo.claim_rejected_webhook_event(message_id, body)

    def _mark(self, message_id: str, status: str, error: str | None = None) -> bool:
        """상태 기록. 저장소 오류는 로그만 남기고 False (공급사 응답은 그대로 반환)."""
        try:
            with self._scope() as repo:
                event = repo.get_webhook_event(message_id)
                if event is not None:
                    repo.update_webhook_event(event, status=status, error=error, processed_at=_now())
        except PersistenceError as e:
            logger.error(f"[WEBHOOK] {message_id} 상태 기록 실패 ({status}): {e.message}")
            return False
        return True

    async def _apply(self, event: CJWebhookEvent) -> None:
        # 공급사 재조회는 트랜잭션 밖에서
        detail: ExternalProduct | None = None
        gone = False
        if isinstance(event, ProductEvent) and self._fetcher is not None:
            try:
                detail = await self._fetcher.get_product_detail(event.pid)
            except NotFoundError:
                gone = True

        with self._scope() as repo:
            if isinstance(event, ProductEvent):
                self._apply_product(repo, event, detail, gone)
            elif isinstance(event, VariantEvent):
                self._apply_variant(repo, event)
            elif isinstance(event, StockEvent):
                self._apply_stock(repo, event)
            elif isinstance(event, OrderEvent):
                self._apply_order(repo, event)
            elif isinstance(event, LogisticsEvent):
                self._apply_logistics(repo, event)

            record = repo.get_webhook_event(event.message_id)
            repo.update_webhook_event(record, status="applied", error=None, processed_at=_now())

    def _apply_product(
        self,
        repo: CatalogRepository,
        event: ProductEvent,
        detail: ExternalProduct | None,
        gone: bool,
    ) -> None:
        product = repo.get_product_by_pid(self._supplier_id, event.pid)
        if product is None:
            logger.info(f"[WEBHOOK] pid={event.pid} 미러에 없는 상품, 건너뜀")
            return

        if gone:
            repo.update_product(product, status="inactive", inactive_reason="not_found_upstream")
            count = repo.deactivate_variants(product.id)
            logger.warning(f"[WEBHOOK] pid={event.pid} 공급사에서 삭제됨 → 옵션 {count}개 비활성화")
            return

        name = (detail.name if detail else None) or event.product_name
        price = (detail.sell_price if detail else None) or event.sell_price
        category = (detail.category if detail else None) or event.category_name

        fields: dict[str, Any] = {}
        if name and name != product.name:
            fields["name"] = name
        if price is not None and price != product.price:
            fields["price"] = price
        if category and category != product.external_category:
            # 카테고리가 바뀌면 기존 매핑 결과는 무효
            fields["external_category"] = category
            fields["category_id"] = None
        if fields:
            repo.update_product(product, **fields)

        if detail is not None:
            upstream_prices = {v.vid: v.price for v in detail.variants if v.price is not None}
            for variant in product.variants:
                new_price = upstream_prices.get(variant.cj_variant_id or "")
                if new_price is not None and new_price != variant.price:
                    repo.update_variant(variant, price=new_price)

        self._mapper.sync_in(repo, self._supplier_id)

    def _apply_variant(self, repo: CatalogRepository, event: VariantEvent) -> None:
        variants = repo.find_variants_by_vid(event.vid)
        if not variants:
            logger.info(f"[WEBHOOK] vid={event.vid} 미러에 없는 옵션, 건너뜀")
        for variant in variants:
            if event.sell_price is not None:
                repo.update_variant(variant, price=event.sell_price)

    def _apply_stock(self, repo: CatalogRepository, event: StockEvent) -> None:
        now = _now()
        missing = 0
        for vid, total in event.totals().items():
            variants = repo.find_variants_by_vid(vid)
            if not variants:
                missing += 1
            for variant in variants:
                repo.update_variant(variant, stock=total, stock_synced_at=now)
        if missing:
            logger.debug(f"[WEBHOOK] 재고 이벤트 중 미러에 없는 vid {missing}개")

    def _apply_order(self, repo: CatalogRepository, event: OrderEvent) -> None:
        fields: dict[str, Any] = {
            "status": map_order_status(event.order_status),
            "supplier_status": event.order_status,
        }
        if event.order_number:
            fields["order_number"] = event.order_number
        if event.logistic_name:
            fields["logistic_name"] = event.logistic_name
        if event.track_number:
            fields["tracking_number"] = event.track_number

        order = repo.get_order(event.cj_order_id)
        if order is None:
            repo.create_order(event.cj_order_id, **fields)
        else:
            repo.update_order(order, **fields)

    def _apply_logistics(self, repo: CatalogRepository, event: LogisticsEvent) -> None:
        fields: dict[str, Any] = {}
        if event.tracking_status:
            fields["tracking_status"] = event.tracking_status
        if event.logistic_name:
            fields["logistic_name"] = event.logistic_name
        if event.tracking_number:
            fields["tracking_number"] = event.tracking_number
        if event.track_events:
            fields["tracking_events"] = event.track_events

        order = repo.get_order(event.order_id)
        if order is None:
            repo.create_order(event.order_id, **fields)
        else:
            repo.update_order(order, **fields)


async def register_webhooks(
    dispatcher: RateLimitedDispatcher,
    callback_url: str,
    enable: bool = True,
) -> dict[str, Any]:
    """CJ에 웹훅 콜백 URL 등록 (enable=False면 해제)."""
    if enable and not callback_url.startswith("https://"):
        raise ValidationError("웹훅 콜백 URL은 https여야 합니다.", field="callback_url")

    topic_config = {
        "type": "ENABLE" if enable else "CANCEL",
        "callbackUrls": [callback_url] if enable else [],
    }
    payload = {topic: dict(topic_config) for topic in WEBHOOK_TOPICS}
    envelope = await dispatcher.dispatch(CJRequest("POST", "/webhook/set", json=payload))
    if not envelope.ok:
        raise SupplierAPIError(f"CJ 웹훅 설정 실패: {envelope.message}", code=envelope.code)
    logger.info(f"[WEBHOOK] 웹훅 {'등록' if enable else '해제'} 완료: {callback_url or '-'}")
    return {"topics": list(WEBHOOK_TOPICS), "enabled": enable, "callback_url": callback_url}
