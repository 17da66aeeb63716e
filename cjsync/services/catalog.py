"""
CJ 카탈로그 조회.

listV2 페이지 순회, 상품/옵션/재고/리뷰 조회를 디스패처를 통해 수행하고
응답을 교환 스키마(ExternalProduct 등)로 정규화합니다.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from cjsync.cj_client import CJEnvelope
from cjsync.exceptions import NotFoundError, SupplierAPIError
from cjsync.normalization import (
    parse_int,
    to_external_product,
    to_external_review,
    to_external_variant,
    to_inventory_levels,
)
from cjsync.schemas.exchange import (
    ExternalProduct,
    ExternalReview,
    ExternalVariant,
    InventoryLevel,
    ProductFilter,
    ProductPage,
)
from cjsync.services.dispatcher import CJRequest, RateLimitedDispatcher

logger = logging.getLogger(__name__)

REVIEW_PAGE_SIZE = 100
MAX_REVIEW_PAGES = 50

# "존재하지 않음"으로 해석되는 응답 메시지 조각
_NOT_FOUND_HINTS = ("not exist", "not found", "no data", "does not exist", "offline", "removed")


def _looks_missing(envelope: CJEnvelope) -> bool:
    """
    pid/vid가 공급사에 없다는 응답인지 판단합니다.
    실패 응답은 메시지로만 판단하고, "System busy" 같은 일시 오류는 해당하지 않습니다.
    """
    message = (envelope.message or "").lower()
    if any(hint in message for hint in _NOT_FOUND_HINTS):
        return True
    # 성공 응답인데 data가 비어 있으면 조회 대상 없음
    return envelope.ok and envelope.data in (None, [], {})


class CatalogFetcher:
    def __init__(self, dispatcher: RateLimitedDispatcher) -> None:
        self._dispatcher = dispatcher

    async def _get(self, path: str, params: dict[str, Any], subject: str) -> CJEnvelope:
        envelope = await self._dispatcher.dispatch(CJRequest("GET", path, params=params))
        if envelope.ok and envelope.data not in (None, [], {}):
            return envelope
        if _looks_missing(envelope):
            raise NotFoundError(
                f"CJ {subject} 없음: {envelope.message or 'data null'}",
                context={"path": path, **params},
            )
        raise SupplierAPIError(
            f"CJ {path} 실패: {envelope.message}",
            code=envelope.code,
            context={"path": path, **params},
        )

    # ----- 상품 -----

    async def fetch_product_page(self, page: int, product_filter: ProductFilter | None = None) -> ProductPage:
        """listV2 한 페이지 조회"""
        product_filter = product_filter or ProductFilter()
        params = {"page": page, **product_filter.to_params()}
        envelope = await self._dispatcher.dispatch(CJRequest("GET", "/product/listV2", params=params))
        if not envelope.ok:
            raise SupplierAPIError(f"CJ 상품 목록 조회 실패: {envelope.message}", code=envelope.code)

        data = envelope.data if isinstance(envelope.data, dict) else {}
        raw_products: list[dict[str, Any]] = []
        for block in data.get("content") or []:
            if isinstance(block, dict):
                raw_products.extend(p for p in block.get("productList") or [] if isinstance(p, dict))
        if not raw_products and isinstance(data.get("list"), list):
            raw_products = [p for p in data["list"] if isinstance(p, dict)]

        products: list[ExternalProduct] = []
        for raw in raw_products:
            try:
                products.append(to_external_product(raw))
            except ValueError as e:
                logger.warning(f"[CJ] 상품 정규화 건너뜀 (page={page}): {e}")

        return ProductPage(
            page=page,
            page_size=product_filter.page_size,
            total_records=parse_int(data.get("totalRecords")),
            total_pages=parse_int(data.get("totalPages")),
            products=products,
        )

    async def list_products(
        self,
        product_filter: ProductFilter | None = None,
        start_page: int = 1,
    ) -> AsyncIterator[ExternalProduct]:
        """
        상품 목록을 페이지 단위로 지연 조회합니다.
        start_page부터 재시작할 수 있고, 빈 페이지 또는 totalPages에서 끝납니다.
        """
        product_filter = product_filter or ProductFilter()
        page = max(start_page, 1)
        fetched_pages = 0
        while True:
            result = await self.fetch_product_page(page, product_filter)
            fetched_pages += 1
            logger.info(
                f"[CJ] listV2 page={page}/{result.total_pages or '?'} products={len(result.products)}"
            )
            for product in result.products:
                yield product

            if not result.products:
                break
            if result.total_pages is not None and page >= result.total_pages:
                break
            if product_filter.max_pages is not None and fetched_pages >= product_filter.max_pages:
                break
            page += 1

    async def get_product_detail(self, pid: str) -> ExternalProduct:
        """상품 상세 (옵션 포함)"""
        envelope = await self._get("/product/query", {"pid": pid}, f"상품 pid={pid}")
        if not isinstance(envelope.data, dict):
            raise SupplierAPIError(f"CJ 상품 상세 응답 형식 오류 pid={pid}", code=envelope.code)
        return to_external_product(envelope.data)

    # ----- 옵션 -----

    async def get_variants_by_pid(self, pid: str) -> list[ExternalVariant]:
        """상품의 공급사 옵션 목록. 옵션이 없는 상품이면 빈 리스트."""
        envelope = await self._dispatcher.dispatch(
            CJRequest("GET", "/product/variant/query", params={"pid": pid})
        )
        if not envelope.ok:
            if _looks_missing(envelope):
                raise NotFoundError(f"CJ 상품 pid={pid} 없음: {envelope.message}", context={"pid": pid})
            raise SupplierAPIError(f"CJ 옵션 조회 실패 pid={pid}: {envelope.message}", code=envelope.code)

        raw_variants = envelope.data if isinstance(envelope.data, list) else []
        variants: list[ExternalVariant] = []
        for raw in raw_variants:
            if not isinstance(raw, dict):
                continue
            try:
                variants.append(to_external_variant(raw, pid=pid))
            except ValueError as e:
                logger.warning(f"[CJ] pid={pid} 옵션 정규화 건너뜀: {e}")
        return variants

    async def get_variant_by_vid(self, vid: str) -> ExternalVariant | None:
        """vid 단건 조회. 공급사에 없으면 None."""
        try:
            envelope = await self._get("/product/variant/queryByVid", {"vid": vid}, f"옵션 vid={vid}")
        except NotFoundError:
            return None
        data = envelope.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        return to_external_variant(data)

    # ----- 재고 / 리뷰 -----

    async def get_inventory_by_pid(self, pid: str) -> dict[str, InventoryLevel]:
        envelope = await self._get("/product/stock/getInventoryByPid", {"pid": pid}, f"재고 pid={pid}")
        return to_inventory_levels(envelope.data)

    async def list_reviews(self, pid: str) -> list[ExternalReview]:
        """상품 리뷰 전체 (100개 단위 페이지)"""
        reviews: list[ExternalReview] = []
        for page in range(1, MAX_REVIEW_PAGES + 1):
            envelope = await self._dispatcher.dispatch(
                CJRequest(
                    "GET",
                    "/product/productComments",
                    params={"pid": pid, "pageNum": page, "pageSize": REVIEW_PAGE_SIZE},
                )
            )
            if not envelope.ok:
                if page == 1 and _looks_missing(envelope):
                    raise NotFoundError(f"CJ 상품 pid={pid} 리뷰 조회 불가: {envelope.message}", context={"pid": pid})
                raise SupplierAPIError(f"CJ 리뷰 조회 실패 pid={pid}: {envelope.message}", code=envelope.code)

            data = envelope.data if isinstance(envelope.data, dict) else {}
            rows = [r for r in data.get("list") or [] if isinstance(r, dict)]
            for raw in rows:
                try:
                    reviews.append(to_external_review(raw, pid=pid))
                except ValueError as e:
                    logger.debug(f"[CJ] pid={pid} 리뷰 건너뜀: {e}")

            total = parse_int(data.get("total")) or 0
            if not rows or page * REVIEW_PAGE_SIZE >= total:
                break
        return reviews
