"""
CJ 응답 필드 정규화.

같은 값이 엔드포인트마다 다른 키로 내려오므로 (pid/id/productId 등)
여기서 한 번만 흡수하고 서비스 계층은 교환 스키마만 다룹니다.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from cjsync.schemas.exchange import ExternalProduct, ExternalReview, ExternalVariant, InventoryLevel

logger = logging.getLogger(__name__)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value).strip() or None


def parse_price(value: Any) -> float | None:
    """'12.5', 12.5, '3.2-5.8'(범위) 모두 허용. 범위는 하한값."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    match = re.match(r"^\s*(\d+(?:\.\d+)?)", text)
    if not match:
        logger.debug(f"가격 파싱 실패: {value!r}")
        return None
    return float(match.group(1))


def parse_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def parse_cj_datetime(value: Any) -> datetime | None:
    """CJ 날짜 형식(ISO8601 or ms) 파싱. 타임존이 없으면 UTC로 간주."""
    if not value:
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
            return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
        if isinstance(value, str):
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00").replace(" ", "T", 1))
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError as e:
        logger.warning(f"날짜 파싱 실패 ({value}): {e}")
    return None


def ensure_utc(value: datetime | None) -> datetime | None:
    """DB(SQLite 등)에서 tz 정보 없이 돌아온 값을 UTC로 보정."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def split_variant_key(value: Any) -> list[str]:
    """
    variantKey 분해.
    '["Red","M"]' 같은 JSON 배열 문자열, 'Red-M', 리스트 모두 처리.
    """
    if value in (None, ""):
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    text = str(value).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]
    return [part.strip() for part in text.split("-") if part.strip()]


def normalize_token(value: Any) -> str:
    """SKU/속성 비교용 정규화 (대소문자, 공백 무시)."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip().lower()


def to_external_variant(raw: dict[str, Any], pid: str | None = None) -> ExternalVariant:
    vid = _as_str(_first(raw, "vid", "variantId", "id"))
    if not vid:
        raise ValueError("variant 응답에 vid가 없습니다")

    key_values = split_variant_key(raw.get("variantKey"))
    attributes = {
        "key": "-".join(key_values) if key_values else None,
        "values": key_values,
        "name_en": _as_str(raw.get("variantNameEn")),
        "property": _as_str(raw.get("variantProperty")),
        "standard": _as_str(raw.get("variantStandard")),
        "unit": _as_str(raw.get("variantUnit")),
        "length": parse_price(raw.get("variantLength")),
        "width": parse_price(raw.get("variantWidth")),
        "height": parse_price(raw.get("variantHeight")),
    }
    return ExternalVariant(
        vid=vid,
        pid=_as_str(_first(raw, "pid", "productId")) or pid,
        sku=_as_str(raw.get("variantSku")),
        name=_as_str(_first(raw, "variantNameEn", "variantName")),
        price=parse_price(_first(raw, "variantSellPrice", "sellPrice")),
        stock=parse_int(_first(raw, "inventoryNum", "variantStock", "storageNum")),
        weight=parse_price(raw.get("variantWeight")),
        image=_as_str(raw.get("variantImage")),
        attributes=attributes,
    )


def to_external_product(raw: dict[str, Any]) -> ExternalProduct:
    pid = _as_str(_first(raw, "pid", "id", "productId"))
    if not pid:
        raise ValueError("product 응답에 pid가 없습니다")

    variants: list[ExternalVariant] = []
    for raw_variant in raw.get("variants") or []:
        if isinstance(raw_variant, dict):
            try:
                variants.append(to_external_variant(raw_variant, pid=pid))
            except ValueError as e:
                logger.warning(f"[CJ] pid={pid} 옵션 정규화 건너뜀: {e}")

    return ExternalProduct(
        pid=pid,
        name=_as_str(_first(raw, "productNameEn", "nameEn", "productName", "name")),
        sell_price=parse_price(_first(raw, "sellPrice", "nowPrice", "price")),
        category=_as_str(_first(raw, "categoryName", "threeCategoryName", "category")),
        category_id=_as_str(raw.get("categoryId")),
        status=_as_str(_first(raw, "status", "productStatus")),
        image=_as_str(_first(raw, "productImage", "bigImage", "image")),
        variants=variants,
    )


def to_external_review(raw: dict[str, Any], pid: str | None = None) -> ExternalReview:
    review_id = _as_str(_first(raw, "commentId", "id"))
    if not review_id:
        raise ValueError("review 응답에 commentId가 없습니다")
    images = raw.get("commentUrls") or []
    return ExternalReview(
        review_id=review_id,
        pid=_as_str(raw.get("pid")) or pid,
        rating=parse_price(_first(raw, "score", "rating")),
        comment=_as_str(raw.get("comment")),
        author=_as_str(raw.get("commentUser")),
        country_code=_as_str(raw.get("countryCode")),
        images=[str(url) for url in images if url] if isinstance(images, list) else [],
        created_at=parse_cj_datetime(raw.get("commentDate")),
    )


def to_inventory_levels(data: Any) -> dict[str, InventoryLevel]:
    """
    getInventoryByPid 응답 → vid별 재고.
    variantInventories[].inventory[] 의 totalInventory를 국가별로 합산합니다.
    """
    levels: dict[str, InventoryLevel] = {}
    if not isinstance(data, dict):
        return levels
    for entry in data.get("variantInventories") or []:
        vid = _as_str(entry.get("vid")) if isinstance(entry, dict) else None
        if not vid:
            continue
        level = levels.setdefault(vid, InventoryLevel(vid=vid))
        for row in entry.get("inventory") or []:
            qty = parse_int(_first(row, "totalInventory", "storageNum")) or 0
            country = _as_str(row.get("countryCode")) or "UNKNOWN"
            level.by_country[country] = level.by_country.get(country, 0) + qty
            level.total += qty
    return levels
