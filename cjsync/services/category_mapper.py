"""
공급사 카테고리 매핑.

매핑은 항상 큐레이터가 명시적으로 결정합니다. 여기서는 미매핑 후보와
상품 수를 최신 상태로 유지하고, 결정된 매핑을 상품에 일괄 반영만 합니다.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass

from cjsync.exceptions import NotFoundError, ValidationError
from cjsync.models import UnmappedExternalCategory
from cjsync.repository import CatalogRepository, RepositoryScope

logger = logging.getLogger(__name__)


@dataclass
class CategorySyncSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    backfilled: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class MappingResult:
    mapping_id: uuid.UUID
    external_category: str
    internal_category_id: uuid.UUID
    products_updated: int
    created: bool


class CategoryMapper:
    def __init__(self, scope: RepositoryScope) -> None:
        self._scope = scope

    def sync_unmapped_categories(self, supplier_id: uuid.UUID) -> CategorySyncSummary:
        """공급사 단위 미매핑 카테고리 재계산 (한 트랜잭션)."""
        with self._scope() as repo:
            summary = self.sync_in(repo, supplier_id)
        logger.info(f"[CATEGORY] supplier={supplier_id} 미매핑 동기화: {summary.to_dict()}")
        return summary

    def sync_in(self, repo: CatalogRepository, supplier_id: uuid.UUID) -> CategorySyncSummary:
        """
        호출자의 트랜잭션 안에서 미매핑 카테고리를 재계산합니다.

        1. 이미 매핑된 카테고리인데 category_id가 비어 있는 상품(신규 수집분)은 매핑대로 채움
        2. 남은 미매핑 상품을 카테고리별로 집계해 행 생성/갱신
        3. 집계에 없는(0개) 행 삭제
        """
        summary = CategorySyncSummary()

        for mapping in repo.list_category_mappings(supplier_id):
            summary.backfilled += repo.bulk_assign_category(
                supplier_id, mapping.external_category, mapping.internal_category_id
            )

        counts = repo.count_unmapped_products_by_category(supplier_id)
        existing: dict[str, UnmappedExternalCategory] = {
            row.external_category: row for row in repo.list_unmapped_categories(supplier_id)
        }

        for external_category, count in counts.items():
            row = existing.pop(external_category, None)
            if row is None:
                repo.create_unmapped_category(supplier_id, external_category, count)
                summary.created += 1
            elif row.product_count != count:
                repo.update_unmapped_category(row, product_count=count)
                summary.updated += 1
            else:
                summary.unchanged += 1

        for row in existing.values():
            repo.delete_unmapped_category(row)
            summary.deleted += 1

        return summary

    def apply_mapping(
        self,
        supplier_id: uuid.UUID,
        external_category: str,
        internal_category_id: uuid.UUID,
    ) -> MappingResult:
        """
        매핑 생성 + 해당 상품 category_id 일괄 반영 + 미매핑 행 제거 (한 트랜잭션).
        같은 매핑을 다시 적용해도 결과는 같습니다.
        """
        external_category = (external_category or "").strip()
        if not external_category:
            raise ValidationError("external_category가 비어 있습니다.", field="external_category")

        with self._scope() as repo:
            if repo.get_category(internal_category_id) is None:
                raise NotFoundError(
                    f"내부 카테고리 {internal_category_id} 없음",
                    context={"internal_category_id": str(internal_category_id)},
                )

            mapping = repo.get_category_mapping(supplier_id, external_category)
            previous_category_id = None
            created = mapping is None
            if mapping is None:
                mapping = repo.create_category_mapping(supplier_id, external_category, internal_category_id)
            elif mapping.internal_category_id != internal_category_id:
                previous_category_id = mapping.internal_category_id
                repo.update_category_mapping(mapping, internal_category_id=internal_category_id)

            updated = repo.bulk_assign_category(
                supplier_id,
                external_category,
                internal_category_id,
                replace_category_id=previous_category_id,
            )

            row = repo.get_unmapped_category(supplier_id, external_category)
            if row is not None:
                repo.delete_unmapped_category(row)

            result = MappingResult(
                mapping_id=mapping.id,
                external_category=external_category,
                internal_category_id=internal_category_id,
                products_updated=updated,
                created=created,
            )

        logger.info(
            f"[CATEGORY] 매핑 적용 supplier={supplier_id} '{external_category}' → {internal_category_id} "
            f"(상품 {updated}개)"
        )
        return result

    def list_unmapped(self, supplier_id: uuid.UUID) -> list[UnmappedExternalCategory]:
        """큐레이션 대상 목록 (상품 수 내림차순)."""
        with self._scope() as repo:
            return repo.list_unmapped_categories(supplier_id)
