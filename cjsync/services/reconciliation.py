"""
옵션 ID 무결성 보정 (Identity Reconciler).

로컬 옵션의 cj_variant_id는 공급사의 유효한 vid이거나, 그렇지 않으면 비활성 상태여야 합니다.

탐지: 이름 붙은 의심 패턴 predicate 집합 (SUSPECT_PREDICATES)
보정: 상품의 공급사 옵션 목록을 기준으로 SKU → 속성 순으로 매칭
- 유일한 매칭이면 vid 덮어쓰기 (is_active 유지)
- 매칭 없음/동점이면 비활성화 (주문 이력 보존을 위해 삭제하지 않음)
- 상품 자체가 공급사에 없으면 전체 옵션 비활성화 + 상품 inactive
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from cjsync.exceptions import NotFoundError, VariantIntegrityError
from cjsync.normalization import normalize_token, split_variant_key
from cjsync.repository import RepositoryScope
from cjsync.schemas.exchange import ExternalVariant
from cjsync.services.catalog import CatalogFetcher

logger = logging.getLogger(__name__)

SuspectPredicate = Callable[[str | None, str], bool]

SUSPECT_PREDICATES: dict[str, SuspectPredicate] = {}

_NUMERIC_RE = re.compile(r"^\d+$")
_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_TOKEN_SPLIT_RE = re.compile(r"[\s/,;|]+")

# 수집 파이프라인이 임시로 만들던 id 접두어
SYNTHETIC_PREFIXES = ("var-", "variant-", "tmp-", "temp-", "local-", "gen-")


def register_suspect_predicate(name: str) -> Callable[[SuspectPredicate], SuspectPredicate]:
    """의심 패턴 등록. 보정 알고리즘은 수정하지 않고 새 패턴만 추가합니다."""
    def decorator(fn: SuspectPredicate) -> SuspectPredicate:
        SUSPECT_PREDICATES[name] = fn
        return fn
    return decorator


def looks_like_supplier_id(value: str) -> bool:
    return bool(_NUMERIC_RE.match(value) or _UUID_RE.match(value))


@register_suspect_predicate("equals_product_id")
def _equals_product_id(vid: str | None, pid: str) -> bool:
    return vid is not None and vid == pid


@register_suspect_predicate("contains_underscore")
def _contains_underscore(vid: str | None, pid: str) -> bool:
    return vid is not None and "_" in vid


@register_suspect_predicate("synthetic_prefix")
def _synthetic_prefix(vid: str | None, pid: str) -> bool:
    if not vid or vid == pid or looks_like_supplier_id(vid):
        return False
    return vid.startswith(pid) or vid.lower().startswith(SYNTHETIC_PREFIXES)


@register_suspect_predicate("missing_variant_id")
def _missing_variant_id(vid: str | None, pid: str) -> bool:
    # 공급사 옵션이 실제로 있는지는 보정 단계에서 확인
    return vid is None or not vid.strip()


def detect_suspect(
    vid: str | None,
    pid: str,
    predicates: Mapping[str, SuspectPredicate] | None = None,
) -> list[str]:
    """vid가 걸리는 의심 패턴 이름 목록. 빈 리스트면 정상."""
    predicates = SUSPECT_PREDICATES if predicates is None else predicates
    return [name for name, predicate in predicates.items() if predicate(vid, pid)]


# ----- 매칭 -----

@dataclass(frozen=True)
class MatchResult:
    variant: ExternalVariant | None = None
    method: str | None = None
    reason: str | None = None

    @property
    def matched(self) -> bool:
        return self.variant is not None


def _tokens(value: Any) -> set[str]:
    if value in (None, ""):
        return set()
    return {normalize_token(t) for t in _TOKEN_SPLIT_RE.split(str(value)) if normalize_token(t)}


def local_attribute_values(attributes: Mapping[str, Any] | None, name: str | None) -> set[str]:
    """로컬 옵션의 속성값 (color/size 등). 속성이 없으면 옵션명 토큰."""
    values: set[str] = set()
    for value in (attributes or {}).values():
        if isinstance(value, list):
            values.update(normalize_token(v) for v in value if normalize_token(v))
        elif isinstance(value, str):
            values.update(normalize_token(v) for v in split_variant_key(value) if normalize_token(v))
    if not values:
        values = _tokens(name)
    return values


def candidate_attribute_values(candidate: ExternalVariant) -> set[str]:
    values = {normalize_token(v) for v in candidate.attribute_values if normalize_token(v)}
    values.update(_tokens(candidate.name))
    return values


def _best_by_attributes(local_values: set[str], pool: list[ExternalVariant]) -> tuple[ExternalVariant | None, str | None]:
    if not local_values:
        return None, "no_attributes"
    scored = [(len(local_values & candidate_attribute_values(c)), c) for c in pool]
    top = max((score for score, _ in scored), default=0)
    if top == 0:
        return None, "no_attribute_match"
    best = [c for score, c in scored if score == top]
    if len(best) > 1:
        return None, "ambiguous_attributes"
    return best[0], None


def match_variant(
    sku: str | None,
    local_values: set[str],
    candidates: list[ExternalVariant],
) -> MatchResult:
    """
    SKU 일치 우선, SKU가 없거나 동점이면 속성 일치로 결정.
    SKU가 있는데 정확히 일치하는 후보가 없으면 (유사 SKU 포함) 매칭 없음.
    """
    if not candidates:
        return MatchResult(reason="no_candidates")

    local_sku = normalize_token(sku)
    if local_sku:
        exact = [c for c in candidates if normalize_token(c.sku) == local_sku]
        if len(exact) == 1:
            return MatchResult(variant=exact[0], method="sku")
        if not exact:
            return MatchResult(reason="no_sku_match")
        best, reason = _best_by_attributes(local_values, exact)
        if best is None:
            return MatchResult(reason="ambiguous_sku")
        return MatchResult(variant=best, method="sku+attributes")

    best, reason = _best_by_attributes(local_values, candidates)
    if best is None:
        return MatchResult(reason=reason)
    return MatchResult(variant=best, method="attributes")


# ----- 보정 -----

@dataclass
class ProductReconciliation:
    product_id: uuid.UUID
    pid: str
    checked: int = 0
    corrected: int = 0
    deactivated: int = 0
    unchanged: int = 0
    product_deactivated: bool = False
    decisions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.corrected or self.deactivated or self.product_deactivated)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id),
            "pid": self.pid,
            "checked": self.checked,
            "corrected": self.corrected,
            "deactivated": self.deactivated,
            "unchanged": self.unchanged,
            "product_deactivated": self.product_deactivated,
            "decisions": self.decisions,
        }


@dataclass(frozen=True)
class _LocalVariantSnapshot:
    id: uuid.UUID
    vid: str | None
    sku: str | None
    values: frozenset[str]
    reasons: tuple[str, ...]


class IdentityReconciler:
    def __init__(
        self,
        fetcher: CatalogFetcher,
        scope: RepositoryScope,
        predicates: Mapping[str, SuspectPredicate] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._scope = scope
        self._predicates = predicates

    def detect(self, vid: str | None, pid: str) -> list[str]:
        return detect_suspect(vid, pid, self._predicates)

    def find_suspect_products(self, supplier_id: uuid.UUID) -> list[tuple[uuid.UUID, str]]:
        """활성 의심 옵션을 가진 상품 목록 (로컬 데이터만 사용, API 호출 없음)."""
        with self._scope() as repo:
            products = repo.list_products_with_variants(supplier_id)
            return [
                (product.id, product.cj_product_id)
                for product in products
                if any(v.is_active and self.detect(v.cj_variant_id, product.cj_product_id) for v in product.variants)
            ]

    async def _fetch_upstream(self, pid: str) -> list[ExternalVariant] | None:
        """공급사 옵션 목록. 상품 자체가 없으면 None."""
        try:
            variants = await self._fetcher.get_variants_by_pid(pid)
        except NotFoundError:
            return None
        if variants:
            return variants
        # 옵션 0개: 상품 삭제인지 단일 상품인지 상세 조회로 구분
        try:
            await self._fetcher.get_product_detail(pid)
        except NotFoundError:
            return None
        return []

    async def reconcile_product(self, product_id: uuid.UUID) -> ProductReconciliation:
        with self._scope() as repo:
            product = repo.get_product(product_id, with_variants=True)
            if product is None:
                raise NotFoundError(f"로컬 상품 {product_id} 없음", context={"product_id": str(product_id)})
            pid = product.cj_product_id
            active = [
                _LocalVariantSnapshot(
                    id=v.id,
                    vid=v.cj_variant_id,
                    sku=v.sku,
                    values=frozenset(local_attribute_values(v.attributes, v.name)),
                    reasons=tuple(self.detect(v.cj_variant_id, pid)),
                )
                for v in product.variants
                if v.is_active
            ]

        result = ProductReconciliation(product_id=product_id, pid=pid, checked=len(active))
        suspects = [snap for snap in active if snap.reasons]
        if not suspects:
            result.unchanged = len(active)
            return result

        upstream = await self._fetch_upstream(pid)
        if upstream is None:
            with self._scope() as repo:
                product = repo.get_product(product_id)
                repo.update_product(product, status="inactive", inactive_reason="not_found_upstream")
                result.deactivated = repo.deactivate_variants(product_id)
            result.product_deactivated = True
            logger.warning(
                f"[RECON] pid={pid} 공급사에 없음 → 상품 inactive, 옵션 {result.deactivated}개 비활성화"
            )
            return result

        # vid == pid 인 공급사 레코드는 기준으로 쓰지 않음
        upstream_by_vid = {v.vid: v for v in upstream if v.vid != pid}
        healthy_claimed = {snap.vid for snap in active if not snap.reasons and snap.vid in upstream_by_vid}
        candidates = [v for vid, v in upstream_by_vid.items() if vid not in healthy_claimed]

        decisions: dict[uuid.UUID, MatchResult] = {}
        for snap in suspects:
            if not upstream_by_vid and set(snap.reasons) == {"missing_variant_id"}:
                # 공급사 옵션이 없는 단일 상품은 vid가 없는 게 정상
                result.unchanged += 1
                continue
            if snap.vid and snap.vid in upstream_by_vid and snap.vid not in healthy_claimed:
                # 패턴에는 걸리지만 공급사에 실제로 있는 vid
                result.unchanged += 1
                continue
            decisions[snap.id] = match_variant(snap.sku, set(snap.values), candidates)

        claims = Counter(m.variant.vid for m in decisions.values() if m.matched)
        for variant_id, match in list(decisions.items()):
            if match.matched and claims[match.variant.vid] > 1:
                decisions[variant_id] = MatchResult(reason="conflicting_claim")

        result.unchanged += len(active) - len(suspects)
        if not decisions:
            return result

        snapshots = {snap.id: snap for snap in suspects}
        with self._scope() as repo:
            for variant_id, match in decisions.items():
                variant = repo.get_variant(variant_id)
                if variant is None:
                    # 공급사 조회 중 로컬에서 삭제된 옵션
                    logger.info(f"[RECON] pid={pid} 옵션 {variant_id} 로컬에서 삭제됨, 건너뜀")
                    result.unchanged += 1
                    continue
                snap = snapshots[variant_id]
                entry = {
                    "variant_id": str(variant_id),
                    "old_vid": snap.vid,
                    "reasons": list(snap.reasons),
                }
                if match.matched:
                    repo.update_variant(variant, cj_variant_id=match.variant.vid)
                    result.corrected += 1
                    entry.update(action="corrected", new_vid=match.variant.vid, method=match.method)
                    logger.info(
                        f"[RECON] pid={pid} 옵션 {variant_id}: vid {snap.vid!r} → {match.variant.vid} ({match.method})"
                    )
                else:
                    repo.update_variant(variant, is_active=False)
                    result.deactivated += 1
                    entry.update(action="deactivated", reason=match.reason)
                    logger.warning(
                        f"[RECON] pid={pid} 옵션 {variant_id}: 매칭 실패({match.reason}) → 비활성화"
                    )
                result.decisions.append(entry)
        return result

    async def validate_vid(self, vid: str) -> ExternalVariant | None:
        """공급사 기준 vid 조회. 없으면 None."""
        variant = await self._fetcher.get_variant_by_vid(vid)
        if variant is None:
            logger.info(f"[RECON] vid={vid} 공급사에 없음")
        return variant

    async def verify_before_order(self, variant_id: uuid.UUID) -> ExternalVariant:
        """
        주문 생성 직전 옵션 검증. 손상된 vid면 VariantIntegrityError로 중단합니다.
        """
        with self._scope() as repo:
            variant = repo.get_variant(variant_id)
            if variant is None:
                raise VariantIntegrityError(
                    f"옵션 {variant_id}을(를) 찾을 수 없습니다.",
                    context={"variant_id": str(variant_id)},
                )
            vid = variant.cj_variant_id
            pid = variant.product.cj_product_id
            is_active = variant.is_active

        context = {"variant_id": str(variant_id), "vid": vid, "pid": pid, "action": "run_reconciliation"}
        if not is_active:
            raise VariantIntegrityError(
                f"옵션 {variant_id}은(는) 비활성 상태라 주문할 수 없습니다. 다른 옵션을 선택하세요.",
                field="is_active",
                context=context,
            )

        reasons = self.detect(vid, pid)
        if reasons:
            raise VariantIntegrityError(
                f"옵션 {variant_id}의 CJ vid {vid!r}가 손상되었습니다 ({', '.join(reasons)}). "
                f"주문을 중단합니다. 상품 {pid}에 대해 reconcile을 실행한 뒤 다시 시도하세요.",
                field="cj_variant_id",
                context={**context, "reasons": reasons},
            )

        upstream = await self.validate_vid(vid)
        if upstream is None:
            raise VariantIntegrityError(
                f"CJ vid {vid}가 공급사에 존재하지 않습니다. 주문을 중단합니다. "
                f"상품 {pid}에 대해 reconcile을 실행하세요.",
                field="cj_variant_id",
                context=context,
            )
        if upstream.pid and upstream.pid != pid:
            raise VariantIntegrityError(
                f"CJ vid {vid}는 다른 상품({upstream.pid})의 옵션입니다. 주문을 중단합니다.",
                field="cj_variant_id",
                context={**context, "upstream_pid": upstream.pid},
            )
        return upstream

    def summarize(self, results: Iterable[ProductReconciliation]) -> dict[str, int]:
        totals = Counter()
        for r in results:
            totals.update(
                checked=r.checked,
                corrected=r.corrected,
                deactivated=r.deactivated,
                unchanged=r.unchanged,
                products_deactivated=int(r.product_deactivated),
            )
        return dict(totals)
