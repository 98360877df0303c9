from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Dict, List
from src.api.dependencies import http_error, require_staff
from src.core.database import get_db
from src.models.schemas import Category, CategoryCreate, CategoryUpdate
from src.services.account_service import Caller
from src.services.catalog_service import CatalogService
from src.services.exceptions import InventoryError

router = APIRouter()

@router.post("/", response_model=Category)
async def create_category(
    category_data: CategoryCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Create a new, empty category"""
    try:
        return CatalogService(db).create_category(category_data.name)
    except InventoryError as e:
        raise http_error(e)

@router.get("/", response_model=List[Category])
async def get_categories(db: Session = Depends(get_db)):
    """Get all categories by name"""
    return CatalogService(db).list_categories()

@router.post("/recalculate", response_model=Dict[int, int])
async def recalculate_all_item_counts(
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Rebuild every category's item count from the products table"""
    return CatalogService(db).recalculate_all_item_counts()

@router.get("/{category_id}", response_model=Category)
async def get_category(category_id: int, db: Session = Depends(get_db)):
    try:
        return CatalogService(db).get_category(category_id)
    except InventoryError as e:
        raise http_error(e)

@router.put("/{category_id}", response_model=Category)
async def rename_category(
    category_id: int,
    category_data: CategoryUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    try:
        return CatalogService(db).rename_category(category_id, category_data.name)
    except InventoryError as e:
        raise http_error(e)

@router.post("/{category_id}/recalculate", response_model=Category)
async def recalculate_item_count(
    category_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    try:
        return CatalogService(db).recalculate_item_count(category_id)
    except InventoryError as e:
        raise http_error(e)

@router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    try:
        CatalogService(db).delete_category(category_id)
    except InventoryError as e:
        raise http_error(e)
