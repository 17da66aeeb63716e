"""
카탈로그 미러 저장소.

서비스 계층은 세션을 직접 다루지 않고 이 저장소의 키 기반
조회/생성/갱신/삭제, 카운트, 일괄 갱신 연산만 사용합니다.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from cjsync.exceptions import PersistenceError
from cjsync.models import (
    Category,
    CategoryMapping,
    Product,
    ProductVariant,
    Supplier,
    SupplierCredential,
    SupplierOrder,
    SyncRun,
    UnmappedExternalCategory,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CatalogRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _apply(self, obj: Any, fields: dict[str, Any]) -> Any:
        for key, value in fields.items():
            if not hasattr(obj, key):
                raise AttributeError(f"{type(obj).__name__} has no field '{key}'")
            setattr(obj, key, value)
        self.session.flush()
        return obj

    # ----- 공급사 / 인증 -----

    def get_supplier_by_name(self, name: str) -> Supplier | None:
        return self.session.scalars(select(Supplier).where(Supplier.name == name)).first()

    def create_supplier(self, name: str) -> Supplier:
        supplier = Supplier(name=name)
        self.session.add(supplier)
        self.session.flush()
        return supplier

    def get_credential(self, supplier_id: uuid.UUID) -> SupplierCredential | None:
        return self.session.scalars(
            select(SupplierCredential).where(SupplierCredential.supplier_id == supplier_id)
        ).first()

    def create_credential(self, supplier_id: uuid.UUID, **fields: Any) -> SupplierCredential:
        credential = SupplierCredential(supplier_id=supplier_id, **fields)
        self.session.add(credential)
        self.session.flush()
        return credential

    def update_credential(self, supplier_id: uuid.UUID, **fields: Any) -> SupplierCredential:
        credential = self.get_credential(supplier_id)
        if credential is None:
            raise PersistenceError(f"supplier {supplier_id} 인증 정보가 없습니다", operation="update_credential")
        return self._apply(credential, fields)

    # ----- 상품 / 옵션 -----

    def get_product(self, product_id: uuid.UUID, with_variants: bool = False) -> Product | None:
        stmt = select(Product).where(Product.id == product_id)
        if with_variants:
            stmt = stmt.options(selectinload(Product.variants))
        return self.session.scalars(stmt).first()

    def get_product_by_pid(self, supplier_id: uuid.UUID, pid: str) -> Product | None:
        return self.session.scalars(
            select(Product)
            .where(Product.supplier_id == supplier_id, Product.cj_product_id == pid)
            .options(selectinload(Product.variants))
        ).first()

    def create_product(self, supplier_id: uuid.UUID, cj_product_id: str, **fields: Any) -> Product:
        product = Product(supplier_id=supplier_id, cj_product_id=cj_product_id, **fields)
        self.session.add(product)
        self.session.flush()
        return product

    def update_product(self, product: Product, **fields: Any) -> Product:
        return self._apply(product, fields)

    def delete_product(self, product: Product) -> None:
        self.session.execute(delete(ProductVariant).where(ProductVariant.product_id == product.id))
        self.session.delete(product)
        self.session.flush()

    def list_product_refs(self, supplier_id: uuid.UUID, active_only: bool = True) -> list[tuple[uuid.UUID, str]]:
        """(product.id, cj_product_id) 목록. 배치 작업의 작업 단위 소스."""
        stmt = select(Product.id, Product.cj_product_id).where(Product.supplier_id == supplier_id)
        if active_only:
            stmt = stmt.where(Product.status == "active")
        stmt = stmt.order_by(Product.created_at, Product.id)
        return [(row[0], row[1]) for row in self.session.execute(stmt)]

    def list_products_with_variants(self, supplier_id: uuid.UUID) -> list[Product]:
        return list(
            self.session.scalars(
                select(Product)
                .where(Product.supplier_id == supplier_id)
                .options(selectinload(Product.variants))
                .order_by(Product.created_at, Product.id)
            )
        )

    def count_products(self, supplier_id: uuid.UUID, **filters: Any) -> int:
        stmt = select(func.count(Product.id)).where(Product.supplier_id == supplier_id)
        for key, value in filters.items():
            column = getattr(Product, key)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        return self.session.scalar(stmt) or 0

    def get_variant(self, variant_id: uuid.UUID) -> ProductVariant | None:
        return self.session.scalars(
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .options(selectinload(ProductVariant.product))
        ).first()

    def find_variants_by_vid(self, vid: str) -> list[ProductVariant]:
        return list(self.session.scalars(select(ProductVariant).where(ProductVariant.cj_variant_id == vid)))

    def create_variant(self, product_id: uuid.UUID, **fields: Any) -> ProductVariant:
        variant = ProductVariant(product_id=product_id, **fields)
        self.session.add(variant)
        self.session.flush()
        return variant

    def update_variant(self, variant: ProductVariant, **fields: Any) -> ProductVariant:
        return self._apply(variant, fields)

    def deactivate_variants(self, product_id: uuid.UUID) -> int:
        result = self.session.execute(
            update(ProductVariant)
            .where(ProductVariant.product_id == product_id, ProductVariant.is_active.is_(True))
            .values(is_active=False, updated_at=_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    # ----- 카테고리 -----

    def get_category(self, category_id: uuid.UUID) -> Category | None:
        return self.session.get(Category, category_id)

    def create_category(self, name: str, slug: str) -> Category:
        category = Category(name=name, slug=slug)
        self.session.add(category)
        self.session.flush()
        return category

    def count_unmapped_products_by_category(self, supplier_id: uuid.UUID) -> dict[str, int]:
        stmt = (
            select(Product.external_category, func.count(Product.id))
            .where(
                Product.supplier_id == supplier_id,
                Product.category_id.is_(None),
                Product.external_category.is_not(None),
                Product.external_category != "",
            )
            .group_by(Product.external_category)
        )
        return {row[0]: int(row[1]) for row in self.session.execute(stmt)}

    def get_category_mapping(self, supplier_id: uuid.UUID, external_category: str) -> CategoryMapping | None:
        return self.session.scalars(
            select(CategoryMapping).where(
                CategoryMapping.supplier_id == supplier_id,
                CategoryMapping.external_category == external_category,
            )
        ).first()

    def list_category_mappings(self, supplier_id: uuid.UUID) -> list[CategoryMapping]:
        return list(
            self.session.scalars(select(CategoryMapping).where(CategoryMapping.supplier_id == supplier_id))
        )

    def create_category_mapping(
        self, supplier_id: uuid.UUID, external_category: str, internal_category_id: uuid.UUID
    ) -> CategoryMapping:
        mapping = CategoryMapping(
            supplier_id=supplier_id,
            external_category=external_category,
            internal_category_id=internal_category_id,
        )
        self.session.add(mapping)
        self.session.flush()
        return mapping

    def update_category_mapping(self, mapping: CategoryMapping, **fields: Any) -> CategoryMapping:
        return self._apply(mapping, fields)

    def bulk_assign_category(
        self,
        supplier_id: uuid.UUID,
        external_category: str,
        category_id: uuid.UUID,
        replace_category_id: uuid.UUID | None = None,
    ) -> int:
        """
        (supplier, external_category) 상품의 category_id를 한 번에 채웁니다.
        category_id가 null이거나 replace_category_id인 상품만 대상입니다.
        """
        target = Product.category_id.is_(None)
        if replace_category_id is not None:
            target = or_(target, Product.category_id == replace_category_id)
        result = self.session.execute(
            update(Product)
            .where(
                Product.supplier_id == supplier_id,
                Product.external_category == external_category,
                target,
            )
            .values(category_id=category_id, updated_at=_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def list_unmapped_categories(self, supplier_id: uuid.UUID) -> list[UnmappedExternalCategory]:
        return list(
            self.session.scalars(
                select(UnmappedExternalCategory)
                .where(UnmappedExternalCategory.supplier_id == supplier_id)
                .order_by(UnmappedExternalCategory.product_count.desc(), UnmappedExternalCategory.external_category)
            )
        )

    def get_unmapped_category(self, supplier_id: uuid.UUID, external_category: str) -> UnmappedExternalCategory | None:
        return self.session.scalars(
            select(UnmappedExternalCategory).where(
                UnmappedExternalCategory.supplier_id == supplier_id,
                UnmappedExternalCategory.external_category == external_category,
            )
        ).first()

    def create_unmapped_category(
        self, supplier_id: uuid.UUID, external_category: str, product_count: int
    ) -> UnmappedExternalCategory:
        row = UnmappedExternalCategory(
            supplier_id=supplier_id,
            external_category=external_category,
            product_count=product_count,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def update_unmapped_category(self, row: UnmappedExternalCategory, **fields: Any) -> UnmappedExternalCategory:
        return self._apply(row, fields)

    def delete_unmapped_category(self, row: UnmappedExternalCategory) -> None:
        self.session.delete(row)
        self.session.flush()

    # ----- 웹훅 -----

    def get_webhook_event(self, message_id: str) -> WebhookEvent | None:
        return self.session.scalars(select(WebhookEvent).where(WebhookEvent.message_id == message_id)).first()

    def create_webhook_event(self, message_id: str, event_type: str | None, payload: dict[str, Any]) -> WebhookEvent:
        event = WebhookEvent(message_id=message_id, type=event_type, payload=payload, status="received")
        self.session.add(event)
        self.session.flush()
        return event

    def update_webhook_event(self, event: WebhookEvent, **fields: Any) -> WebhookEvent:
        return self._apply(event, fields)

    def claim_rejected_webhook_event(self, message_id: str, payload: dict[str, Any]) -> bool:
        """rejected 이벤트를 received로 되돌려 재처리 권한을 얻습니다. 조건부 UPDATE라 한 요청만 성공."""
        result = self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.message_id == message_id, WebhookEvent.status == "rejected")
            .values(status="received", payload=payload, error=None, processed_at=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def count_webhook_events(self, status: str | None = None) -> int:
        stmt = select(func.count(WebhookEvent.id))
        if status is not None:
            stmt = stmt.where(WebhookEvent.status == status)
        return self.session.scalar(stmt) or 0

    # ----- 주문 매핑 -----

    def get_order(self, cj_order_id: str) -> SupplierOrder | None:
        return self.session.scalars(select(SupplierOrder).where(SupplierOrder.cj_order_id == cj_order_id)).first()

    def create_order(self, cj_order_id: str, **fields: Any) -> SupplierOrder:
        order = SupplierOrder(cj_order_id=cj_order_id, **fields)
        self.session.add(order)
        self.session.flush()
        return order

    def update_order(self, order: SupplierOrder, **fields: Any) -> SupplierOrder:
        return self._apply(order, fields)

    # ----- 작업 이력 -----

    def record_sync_run(self, **fields: Any) -> SyncRun:
        run = SyncRun(**fields)
        self.session.add(run)
        self.session.flush()
        return run

    def list_sync_runs(self, job_name: str | None = None, limit: int = 20) -> list[SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
        if job_name:
            stmt = stmt.where(SyncRun.job_name == job_name)
        return list(self.session.scalars(stmt))


RepositoryScope = Callable[[], AbstractContextManager[CatalogRepository]]


@contextmanager
def repository_scope(factory: Callable[[], Session]) -> Iterator[CatalogRepository]:
    """
    트랜잭션 하나에 묶인 저장소를 제공합니다.
    블록이 정상 종료되면 commit, 예외 시 rollback 됩니다.
    SQLAlchemy 오류는 PersistenceError로 변환됩니다.
    """
    try:
        with factory() as session:
            with session.begin():
                yield CatalogRepository(session)
    except SQLAlchemyError as exc:
        logger.error(f"[DB] 트랜잭션 실패: {exc}")
        raise PersistenceError(f"저장소 작업 실패: {exc.__class__.__name__}", operation="transaction") from exc
