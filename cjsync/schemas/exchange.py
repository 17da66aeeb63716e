"""
공급사 응답을 정규화한 내부 교환 스키마.

선택 필드는 생략되지 않고 항상 None으로 채워집니다.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ExternalVariant(BaseModel):
    """
    공급사 옵션(variant). 유효한 옵션은 vid != pid.
    """
    vid: str
    pid: str | None = None
    sku: str | None = None
    name: str | None = None
    price: float | None = None
    stock: int | None = None
    weight: float | None = None
    image: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def attribute_values(self) -> list[str]:
        values = self.attributes.get("values") or []
        return [str(v) for v in values if v not in (None, "")]


class ExternalProduct(BaseModel):
    """
    공급사 상품. 저장하지 않고 검증 기준/수집 소스로만 사용합니다.
    """
    pid: str
    name: str | None = None
    sell_price: float | None = None
    category: str | None = None
    category_id: str | None = None
    status: str | None = None
    image: str | None = None
    variants: list[ExternalVariant] = Field(default_factory=list)


class ExternalReview(BaseModel):
    review_id: str
    pid: str | None = None
    rating: float | None = None
    comment: str | None = None
    author: str | None = None
    country_code: str | None = None
    images: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class InventoryLevel(BaseModel):
    """옵션별 국가 창고 재고 합계."""
    vid: str
    total: int = 0
    by_country: dict[str, int] = Field(default_factory=dict)


class ProductPage(BaseModel):
    page: int
    page_size: int
    total_records: int | None = None
    total_pages: int | None = None
    products: list[ExternalProduct] = Field(default_factory=list)


class ProductFilter(BaseModel):
    """listV2 조회 조건."""
    keyword: str | None = None
    category_id: str | None = None
    page_size: int = Field(default=100, ge=1, le=100)
    max_pages: int | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"size": self.page_size}
        if self.keyword:
            params["keyWord"] = self.keyword
        if self.category_id:
            params["categoryId"] = self.category_id
        return params
