"""
CatalogFetcher 테스트.

디스패처 대역으로 CJ 응답을 흉내 내고 정규화 결과를 확인합니다.
"""

import pytest

from cjsync.exceptions import NotFoundError, SupplierAPIError
from cjsync.schemas.exchange import ProductFilter
from cjsync.services.catalog import CatalogFetcher


def _listing(make_envelope, pages: dict[int, list[dict]], total_pages: int | None = None):
    def route(request):
        page = request.params["page"]
        rows = pages.get(page, [])
        return make_envelope({
            "pageNumber": page,
            "totalPages": total_pages,
            "totalRecords": sum(len(r) for r in pages.values()),
            "content": [{"productList": rows}],
        })
    return route


@pytest.mark.unit
class TestProductListing:
    """listV2 페이지 순회."""

    @pytest.mark.asyncio
    async def test_iterates_pages_until_total_pages(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = _listing(
            make_envelope,
            {
                1: [{"id": "P1", "nameEn": "Lamp", "sellPrice": "12.50", "categoryName": "Lighting"}],
                2: [{"id": "P2", "nameEn": "Mug", "sellPrice": "3.2-5.8"}],
            },
            total_pages=2,
        )
        fetcher = CatalogFetcher(fake_dispatcher)

        products = [p async for p in fetcher.list_products(ProductFilter(page_size=50))]

        assert [p.pid for p in products] == ["P1", "P2"]
        assert products[0].sell_price == 12.5
        assert products[0].category == "Lighting"
        assert products[1].sell_price == 3.2
        assert len(fake_dispatcher.calls("/product/listV2")) == 2
        assert fake_dispatcher.requests[0].params["size"] == 50

    @pytest.mark.asyncio
    async def test_stops_on_empty_page_without_total(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = _listing(
            make_envelope, {1: [{"id": "P1"}], 2: [{"id": "P2"}]}
        )
        fetcher = CatalogFetcher(fake_dispatcher)

        products = [p async for p in fetcher.list_products()]

        assert [p.pid for p in products] == ["P1", "P2"]
        # 3페이지(빈 페이지)에서 종료
        assert [r.params["page"] for r in fake_dispatcher.requests] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_restart_from_start_page(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = _listing(
            make_envelope, {1: [{"id": "P1"}], 2: [{"id": "P2"}], 3: [{"id": "P3"}]}, total_pages=3
        )
        fetcher = CatalogFetcher(fake_dispatcher)

        products = [p async for p in fetcher.list_products(start_page=2)]

        assert [p.pid for p in products] == ["P2", "P3"]

    @pytest.mark.asyncio
    async def test_max_pages_limits_iteration(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = _listing(
            make_envelope, {1: [{"id": "P1"}], 2: [{"id": "P2"}]}, total_pages=2
        )
        fetcher = CatalogFetcher(fake_dispatcher)

        products = [p async for p in fetcher.list_products(ProductFilter(max_pages=1))]

        assert [p.pid for p in products] == ["P1"]

    @pytest.mark.asyncio
    async def test_missing_optional_fields_are_explicit_none(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = _listing(make_envelope, {1: [{"pid": "P9"}]}, total_pages=1)
        fetcher = CatalogFetcher(fake_dispatcher)

        [product] = [p async for p in fetcher.list_products()]
        dumped = product.model_dump()

        assert dumped["name"] is None
        assert dumped["sell_price"] is None
        assert dumped["category"] is None
        assert dumped["variants"] == []

    @pytest.mark.asyncio
    async def test_non_ok_listing_raises(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/listV2"] = make_envelope(None, code=1600500, result=False, message="param error")
        fetcher = CatalogFetcher(fake_dispatcher)

        with pytest.raises(SupplierAPIError):
            await fetcher.fetch_product_page(1)


@pytest.mark.unit
class TestProductDetail:
    """상품/옵션 단건 조회."""

    @pytest.mark.asyncio
    async def test_detail_with_variants(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/query"] = make_envelope({
            "pid": "PID123",
            "productNameEn": "Cotton Tee",
            "sellPrice": 9.9,
            "categoryName": "Tops",
            "variants": [
                {"vid": "V-RED-M", "variantSku": "SKU-RED-M", "variantKey": '["Red","M"]', "variantSellPrice": "10.5"},
                {"vid": "V-BLUE-L", "variantSku": "SKU-BLUE-L", "variantKey": "Blue-L"},
            ],
        })
        fetcher = CatalogFetcher(fake_dispatcher)

        product = await fetcher.get_product_detail("PID123")

        assert product.name == "Cotton Tee"
        assert [v.vid for v in product.variants] == ["V-RED-M", "V-BLUE-L"]
        assert product.variants[0].attribute_values == ["Red", "M"]
        assert product.variants[0].price == 10.5
        assert product.variants[1].attribute_values == ["Blue", "L"]
        assert product.variants[1].pid == "PID123"

    @pytest.mark.asyncio
    async def test_detail_not_found(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/query"] = make_envelope(None, code=1600100, result=False, message="product not exist")
        fetcher = CatalogFetcher(fake_dispatcher)

        with pytest.raises(NotFoundError):
            await fetcher.get_product_detail("GONE")

    @pytest.mark.asyncio
    async def test_busy_response_is_not_not_found(self, fake_dispatcher, make_envelope):
        busy = make_envelope(None, code=1600500, result=False, message="System busy, please try again")
        fake_dispatcher.routes["/product/query"] = busy
        fake_dispatcher.routes["/product/variant/query"] = busy
        fetcher = CatalogFetcher(fake_dispatcher)

        with pytest.raises(SupplierAPIError):
            await fetcher.get_product_detail("PID1")
        with pytest.raises(SupplierAPIError):
            await fetcher.get_variants_by_pid("PID1")

    @pytest.mark.asyncio
    async def test_variants_by_pid_empty_list(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/variant/query"] = make_envelope([])
        fetcher = CatalogFetcher(fake_dispatcher)

        assert await fetcher.get_variants_by_pid("PID123") == []

    @pytest.mark.asyncio
    async def test_variant_by_vid_missing_returns_none(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/variant/queryByVid"] = make_envelope(None, message="variant not found")
        fetcher = CatalogFetcher(fake_dispatcher)

        assert await fetcher.get_variant_by_vid("V-NOPE") is None

    @pytest.mark.asyncio
    async def test_variant_by_vid(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/variant/queryByVid"] = make_envelope(
            {"vid": "V1", "pid": "P1", "variantSku": "SKU-1"}
        )
        fetcher = CatalogFetcher(fake_dispatcher)

        variant = await fetcher.get_variant_by_vid("V1")

        assert variant.vid == "V1"
        assert variant.pid == "P1"
        assert variant.sku == "SKU-1"


@pytest.mark.unit
class TestInventoryAndReviews:
    """재고/리뷰."""

    @pytest.mark.asyncio
    async def test_inventory_sums_warehouses(self, fake_dispatcher, make_envelope):
        fake_dispatcher.routes["/product/stock/getInventoryByPid"] = make_envelope({
            "variantInventories": [
                {"vid": "V1", "inventory": [
                    {"countryCode": "CN", "totalInventory": 120},
                    {"countryCode": "US", "totalInventory": "30"},
                ]},
                {"vid": "V2", "inventory": []},
            ]
        })
        fetcher = CatalogFetcher(fake_dispatcher)

        levels = await fetcher.get_inventory_by_pid("P1")

        assert levels["V1"].total == 150
        assert levels["V1"].by_country == {"CN": 120, "US": 30}
        assert levels["V2"].total == 0

    @pytest.mark.asyncio
    async def test_reviews_paginate_until_total(self, fake_dispatcher, make_envelope):
        def route(request):
            page = request.params["pageNum"]
            size = 100 if page == 1 else 20
            rows = [
                {"commentId": f"C{page}-{i}", "score": "5", "commentUser": "kim", "commentDate": "2026-09-01 10:00:00"}
                for i in range(size)
            ]
            return make_envelope({"total": 120, "list": rows})

        fake_dispatcher.routes["/product/productComments"] = route
        fetcher = CatalogFetcher(fake_dispatcher)

        reviews = await fetcher.list_reviews("P1")

        assert len(reviews) == 120
        assert len(fake_dispatcher.calls("/product/productComments")) == 2
        assert reviews[0].rating == 5.0
        assert reviews[0].created_at.year == 2026
