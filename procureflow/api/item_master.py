from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session, joinedload
import logging

from procureflow.database import get_db
from procureflow.exceptions import NotFound, ValidationError
from procureflow.models import ItemMaster, ItemCategory
from procureflow.schemas import ItemMasterCreate, ItemCategoryCreate, CatalogItem
from procureflow.services.catalog_resolver import search_catalog, catalog_item_to_candidate

logger = logging.getLogger(__name__)

router = APIRouter()


def decimal_to_float(val):
    return float(val) if val is not None else None


def item_to_response(item: ItemMaster) -> dict:
    """Convert ItemMaster to response dict"""
    return {
        "id": item.id,
        "item_code": item.item_code,
        "display_name": item.display_name,
        "model_name": item.model_name,
        "make": item.make,
        "description": item.description,
        "category_id": item.category_id,
        "category": {
            "id": item.category.id,
            "code": item.category.code,
            "name": item.category.name
        } if item.category else None,
        "sub_category_id": item.sub_category_id,
        "sub_category": {
            "id": item.sub_category.id,
            "code": item.sub_category.code,
            "name": item.sub_category.name
        } if item.sub_category else None,
        "uom": item.uom,
        "reference_price": decimal_to_float(item.reference_price),
        "is_active": item.is_active,
        "created_at": item.created_at.isoformat() if item.created_at else None
    }


def category_to_response(cat: ItemCategory) -> dict:
    return {
        "id": cat.id,
        "parent_id": cat.parent_id,
        "code": cat.code,
        "name": cat.name,
        "is_active": cat.is_active
    }


# ============ Category Endpoints ============

@router.get("/items/categories")
async def get_item_categories(
    parent_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """Top-level categories, or the sub-categories of parent_id"""
    query = db.query(ItemCategory).filter(ItemCategory.is_active == True)
    if parent_id is None:
        query = query.filter(ItemCategory.parent_id.is_(None))
    else:
        query = query.filter(ItemCategory.parent_id == parent_id)

    return [category_to_response(c) for c in query.order_by(ItemCategory.code).all()]


@router.post("/items/categories", status_code=status.HTTP_201_CREATED)
async def create_item_category(data: ItemCategoryCreate, db: Session = Depends(get_db)):
    """Create a category, or a sub-category when parent_id is given"""
    if data.parent_id is not None:
        parent = db.query(ItemCategory).filter(ItemCategory.id == data.parent_id).first()
        if not parent:
            raise NotFound(f"Parent category {data.parent_id} not found")

    code = data.code.upper()
    existing = db.query(ItemCategory).filter(
        ItemCategory.parent_id.is_(None) if data.parent_id is None else ItemCategory.parent_id == data.parent_id,
        ItemCategory.code == code
    ).first()
    if existing:
        raise ValidationError(f"Category code {code} already exists")

    category = ItemCategory(parent_id=data.parent_id, code=code, name=data.name)
    db.add(category)
    db.commit()
    db.refresh(category)

    return category_to_response(category)


# ============ Item Endpoints ============

@router.get("/items/search", response_model=List[CatalogItem])
async def search_items(
    query: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Catalog search used by the line-item import"""
    items = search_catalog(db, query, limit)
    return [catalog_item_to_candidate(item) for item in items]


@router.get("/items/{item_id}")
async def get_item(item_id: int, db: Session = Depends(get_db)):
    """Get a specific item"""
    item = db.query(ItemMaster).options(
        joinedload(ItemMaster.category),
        joinedload(ItemMaster.sub_category)
    ).filter(ItemMaster.id == item_id).first()

    if not item:
        raise NotFound(f"Item {item_id} not found")

    return item_to_response(item)


@router.post("/items", status_code=status.HTTP_201_CREATED)
async def create_item(data: ItemMasterCreate, db: Session = Depends(get_db)):
    """Create a new catalog item"""
    existing = db.query(ItemMaster).filter(ItemMaster.item_code == data.item_code).first()
    if existing:
        raise ValidationError(f"Item code {data.item_code} already exists")

    for field in ("category_id", "sub_category_id"):
        category_id = getattr(data, field)
        if category_id is not None and not db.query(ItemCategory).filter(ItemCategory.id == category_id).first():
            raise NotFound(f"Category {category_id} not found")

    item = ItemMaster(**data.model_dump())
    db.add(item)
    db.commit()
    db.refresh(item)

    logger.info(f"Item {item.item_code} created")
    return item_to_response(item)
