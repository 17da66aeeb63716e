import uuid

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from cjsync.api.deps import get_services
from cjsync.bootstrap import Services
from cjsync.exceptions import NotFoundError, ValidationError

router = APIRouter()


class CategoryMappingIn(BaseModel):
    externalCategory: str = Field(min_length=1)
    internalCategoryId: uuid.UUID


@router.get("/unmapped")
def list_unmapped(services: Services = Depends(get_services)):
    rows = services.mapper.list_unmapped(services.supplier_id)
    return [
        {
            "externalCategory": row.external_category,
            "productCount": row.product_count,
            "detectedAt": row.detected_at.isoformat() if row.detected_at else None,
            "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
        }
        for row in rows
    ]


@router.post("/unmapped/sync")
def sync_unmapped(services: Services = Depends(get_services)):
    return services.mapper.sync_unmapped_categories(services.supplier_id).to_dict()


@router.post("/mappings")
def apply_mapping(payload: CategoryMappingIn, services: Services = Depends(get_services)):
    """큐레이터 매핑 결정 적용."""
    try:
        result = services.mapper.apply_mapping(
            services.supplier_id, payload.externalCategory, payload.internalCategoryId
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {
        "mappingId": str(result.mapping_id),
        "externalCategory": result.external_category,
        "internalCategoryId": str(result.internal_category_id),
        "productsUpdated": result.products_updated,
        "created": result.created,
    }
