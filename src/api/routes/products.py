from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from src.api.dependencies import http_error, require_staff
from src.core.database import get_db
from src.models.schemas import Product, ProductCreate, ProductUpdate, Restock
from src.services.account_service import Caller
from src.services.catalog_service import CatalogService
from src.services.exceptions import InventoryError

router = APIRouter()

@router.post("/", response_model=Product)
async def create_product(
    product_data: ProductCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Create a new product"""
    try:
        return CatalogService(db).create_product(product_data)
    except InventoryError as e:
        raise http_error(e)

@router.get("/", response_model=List[Product])
async def get_products(db: Session = Depends(get_db)):
    """Get all products, newest first"""
    return CatalogService(db).list_products()

@router.get("/status/debug")
async def get_inventory_status(db: Session = Depends(get_db)):
    """Get stock levels and versions for debugging"""
    return CatalogService(db).get_inventory_status()

@router.get("/{product_id}", response_model=Product)
async def get_product(product_id: int, db: Session = Depends(get_db)):
    """Get a specific product"""
    try:
        return CatalogService(db).get_product(product_id)
    except InventoryError as e:
        raise http_error(e)

@router.put("/{product_id}", response_model=Product)
async def update_product(
    product_id: int,
    product_data: ProductUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Update a product; status follows stock and category counts follow moves"""
    try:
        return CatalogService(db).update_product(product_id, product_data)
    except InventoryError as e:
        raise http_error(e)

@router.post("/{product_id}/restock", response_model=Product)
async def restock_product(
    product_id: int,
    restock: Restock,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Add units to a product's stock"""
    try:
        return await CatalogService(db).restock(product_id, restock.quantity)
    except InventoryError as e:
        raise http_error(e)

@router.delete("/{product_id}", status_code=204)
async def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_staff),
):
    """Delete a product"""
    try:
        CatalogService(db).delete_product(product_id)
    except InventoryError as e:
        raise http_error(e)
