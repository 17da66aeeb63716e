"""
CJ 웹훅 이벤트 스키마.

수신 경계에서 type별 태그 이벤트로 파싱합니다. 알 수 없는 type은
필드를 추측하지 않고 UnknownEvent로 남깁니다.
"""

import json
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from cjsync.exceptions import ValidationError


class _EventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: str


class ProductEvent(_EventBase):
    kind: Literal["PRODUCT"] = "PRODUCT"
    pid: str
    product_name: str | None = Field(default=None, validation_alias=AliasChoices("productNameEn", "productName"))
    sell_price: float | None = Field(default=None, validation_alias=AliasChoices("productSellPrice", "sellPrice"))
    status: str | None = Field(default=None, validation_alias=AliasChoices("productStatus", "status"))
    category_name: str | None = Field(default=None, validation_alias=AliasChoices("categoryName", "category_name"))
    category_id: str | None = Field(default=None, validation_alias=AliasChoices("categoryId", "category_id"))
    fields: list[str] = Field(default_factory=list)


class VariantEvent(_EventBase):
    kind: Literal["VARIANT"] = "VARIANT"
    vid: str
    sku: str | None = Field(default=None, validation_alias=AliasChoices("variantSku", "sku"))
    sell_price: float | None = Field(default=None, validation_alias=AliasChoices("variantSellPrice", "sellPrice"))
    status: str | None = Field(default=None, validation_alias=AliasChoices("variantStatus", "status"))
    weight: float | None = Field(default=None, validation_alias=AliasChoices("variantWeight", "weight"))
    fields: list[str] = Field(default_factory=list)


class StockLevel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vid: str
    area_id: str | None = Field(default=None, validation_alias=AliasChoices("areaId", "area_id"))
    area_en: str | None = Field(default=None, validation_alias=AliasChoices("areaEn", "area_en"))
    country_code: str | None = Field(default=None, validation_alias=AliasChoices("countryCode", "country_code"))
    storage_num: int = Field(default=0, validation_alias=AliasChoices("storageNum", "storage_num"))

    @field_validator("area_id", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class StockEvent(_EventBase):
    kind: Literal["STOCK"] = "STOCK"
    levels: list[StockLevel] = Field(default_factory=list)

    def totals(self) -> dict[str, int]:
        """vid별 전체 창고 재고 합계."""
        totals: dict[str, int] = {}
        for level in self.levels:
            totals[level.vid] = totals.get(level.vid, 0) + max(level.storage_num, 0)
        return totals


class OrderEvent(_EventBase):
    kind: Literal["ORDER"] = "ORDER"
    cj_order_id: str = Field(validation_alias=AliasChoices("cjOrderId", "orderId"))
    order_number: str | None = Field(default=None, validation_alias=AliasChoices("orderNumber", "order_number"))
    order_status: str | None = Field(default=None, validation_alias=AliasChoices("orderStatus", "order_status"))
    logistic_name: str | None = Field(default=None, validation_alias=AliasChoices("logisticName", "logistic_name"))
    track_number: str | None = Field(default=None, validation_alias=AliasChoices("trackNumber", "trackingNumber"))


class LogisticsEvent(_EventBase):
    kind: Literal["LOGISTIC"] = "LOGISTIC"
    order_id: str = Field(validation_alias=AliasChoices("orderId", "cjOrderId"))
    logistic_name: str | None = Field(default=None, validation_alias=AliasChoices("logisticName", "logistic_name"))
    tracking_number: str | None = Field(default=None, validation_alias=AliasChoices("trackingNumber", "trackNumber"))
    tracking_status: str | None = Field(default=None, validation_alias=AliasChoices("trackingStatus", "tracking_status"))
    track_events: list[dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("logisticsTrackEvents", "track_events")
    )

    @field_validator("track_events", mode="before")
    @classmethod
    def _parse_track_events(cls, v: Any) -> Any:
        # 문자열(JSON)로 오는 경우가 있음
        if v in (None, ""):
            return []
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                return []
        if isinstance(v, dict):
            return [v]
        return v


class UnknownEvent(_EventBase):
    kind: Literal["UNKNOWN"] = "UNKNOWN"
    type: str | None = None


CJWebhookEvent = Union[ProductEvent, VariantEvent, StockEvent, OrderEvent, LogisticsEvent, UnknownEvent]

_EVENT_TYPES: dict[str, type[_EventBase]] = {
    "PRODUCT": ProductEvent,
    "VARIANT": VariantEvent,
    "STOCK": StockEvent,
    "ORDER": OrderEvent,
    "LOGISTIC": LogisticsEvent,
    "LOGISTICS": LogisticsEvent,
}


def _stock_levels(params: Any) -> list[dict[str, Any]]:
    """STOCK params: {vid: [{...}]} 또는 [{...}] 두 형태 모두 허용."""
    if isinstance(params, list):
        return [row for row in params if isinstance(row, dict)]
    rows: list[dict[str, Any]] = []
    if isinstance(params, dict):
        for key, value in params.items():
            for row in value if isinstance(value, list) else [value]:
                if isinstance(row, dict):
                    rows.append({"vid": key, **row})
    return rows


def parse_webhook_event(body: dict[str, Any]) -> CJWebhookEvent:
    """
    {messageId, type, params} → 태그 이벤트.
    필수 필드 누락/형식 오류는 ValidationError.
    """
    message_id = body.get("messageId")
    if not message_id:
        raise ValidationError("messageId가 없습니다.", field="messageId")
    event_type = str(body.get("type") or "").upper()
    model = _EVENT_TYPES.get(event_type)
    if model is None:
        return UnknownEvent(message_id=str(message_id), type=event_type or None)

    params = body.get("params")
    try:
        if model is StockEvent:
            return StockEvent(message_id=str(message_id), levels=_stock_levels(params))
        if not isinstance(params, dict):
            raise ValidationError(f"{event_type} params 형식 오류", field="params")
        return model.model_validate({**params, "message_id": str(message_id)})
    except PydanticValidationError as e:
        raise ValidationError(
            f"{event_type} 웹훅 payload 검증 실패: {e.error_count()}개 오류",
            field="params",
            context={"errors": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
        ) from e
