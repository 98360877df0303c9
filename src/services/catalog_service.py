import asyncio
import logging
from typing import Dict, List

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from src.core.config import LOW_STOCK_THRESHOLD, ORDER_MAX_RETRIES
from src.models.database import (
    Category, Product, Order, derive_product_status,
    STATUS_ACTIVE, STATUS_LOW_STOCK, STATUS_SOLD,
)
from src.models.schemas import ProductCreate, ProductUpdate
from src.services.exceptions import (
    CategoryNotFound, ConcurrencyConflict, DuplicateRecord, ProductNotFound,
)

logger = logging.getLogger(__name__)


def stock_status_case(new_stock):
    """SQL expression deriving the product status from a stock expression"""
    return case(
        (new_stock <= 0, STATUS_SOLD),
        (new_stock <= LOW_STOCK_THRESHOLD, STATUS_LOW_STOCK),
        else_=STATUS_ACTIVE,
    )


class CatalogService:
    """
    Product and category maintenance.

    Category.item_count is adjusted in the same transaction as the product
    write that changes it, and can always be rebuilt from a COUNT query.
    """

    def __init__(self, db: Session):
        self.db = db

    # Categories

    def list_categories(self) -> List[Category]:
        return self.db.query(Category).order_by(Category.name.asc()).all()

    def get_category(self, category_id: int) -> Category:
        category = self.db.get(Category, category_id)
        if not category:
            raise CategoryNotFound(f"Category {category_id} not found")
        return category

    def create_category(self, name: str) -> Category:
        self._ensure_category_name_free(name)
        category = Category(name=name, item_count=0)
        self.db.add(category)
        self.db.commit()
        self.db.refresh(category)
        logger.info(f"Created category {category.name} ({category.id})")
        return category

    def rename_category(self, category_id: int, name: str) -> Category:
        category = self.get_category(category_id)
        if name != category.name:
            self._ensure_category_name_free(name)
            category.name = name
            # Keep the denormalized name on products in step
            self.db.execute(
                update(Product)
                .where(Product.category_id == category_id)
                .values(category_name=name)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self.db.refresh(category)
        return category

    def delete_category(self, category_id: int) -> None:
        """Delete a category; its products stay, uncategorized"""
        category = self.get_category(category_id)
        self.db.execute(
            update(Product)
            .where(Product.category_id == category_id)
            .values(category_id=None, category_name=None)
            .execution_options(synchronize_session=False)
        )
        self.db.delete(category)
        self.db.commit()
        logger.info(f"Deleted category {category_id}")

    def _ensure_category_name_free(self, name: str) -> None:
        existing = self.db.query(Category).filter(Category.name == name).first()
        if existing:
            raise DuplicateRecord(f"Category {name} already exists")

    # Products

    def list_products(self) -> List[Product]:
        return self.db.query(Product).order_by(Product.created_at.desc(), Product.id.desc()).all()

    def get_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id)
        if not product:
            raise ProductNotFound(f"Product {product_id} not found")
        return product

    def create_product(self, product_data: ProductCreate) -> Product:
        category = None
        if product_data.category_id is not None:
            category = self.get_category(product_data.category_id)

        product = Product(
            name=product_data.name,
            stock=product_data.stock,
            price=product_data.price,
            category_id=category.id if category else None,
            category_name=category.name if category else None,
            status=derive_product_status(product_data.stock),
        )
        try:
            self.db.add(product)
            self.db.flush()
            if category:
                self._adjust_item_count(category.id, 1)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(product)
        logger.info(f"Created product {product.name} ({product.id}) with stock {product.stock}")
        return product

    def update_product(self, product_id: int, product_data: ProductUpdate) -> Product:
        product = self.get_product(product_id)
        updates = product_data.model_dump(exclude_unset=True)

        old_category_id = product.category_id
        new_category = None
        category_changed = "category_id" in updates and updates["category_id"] != old_category_id
        if category_changed and updates["category_id"] is not None:
            new_category = self.get_category(updates["category_id"])

        try:
            for field in ("name", "price"):
                if updates.get(field) is not None:
                    setattr(product, field, updates[field])

            if updates.get("stock") is not None and updates["stock"] != product.stock:
                product.stock = updates["stock"]
                product.status = derive_product_status(product.stock)
                product.version += 1

            if category_changed:
                product.category_id = new_category.id if new_category else None
                product.category_name = new_category.name if new_category else None
                self.db.flush()
                if old_category_id is not None:
                    self._adjust_item_count(old_category_id, -1)
                if new_category:
                    self._adjust_item_count(new_category.id, 1)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(product)
        return product

    def delete_product(self, product_id: int) -> None:
        """
        Delete a product. Existing orders keep their product name snapshot
        and lose the product reference.
        """
        product = self.get_product(product_id)
        category_id = product.category_id
        try:
            self.db.execute(
                update(Order)
                .where(Order.product_id == product_id)
                .values(product_id=None)
                .execution_options(synchronize_session=False)
            )
            self.db.delete(product)
            self.db.flush()
            if category_id is not None:
                self._adjust_item_count(category_id, -1)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted product {product_id}")

    async def restock(self, product_id: int, quantity: int) -> Product:
        """
        Add ``quantity`` units using the version column as a
        compare-and-swap token, retrying when another writer got there first.
        """
        for attempt in range(ORDER_MAX_RETRIES):
            try:
                return self._restock_attempt(product_id, quantity)
            except ConcurrencyConflict:
                if attempt == ORDER_MAX_RETRIES - 1:
                    raise ConcurrencyConflict(
                        f"Unable to restock product {product_id} after {ORDER_MAX_RETRIES} attempts"
                    )
                logger.warning(f"Restock conflict on attempt {attempt + 1}, retrying...")
                await asyncio.sleep(0.01 * (attempt + 1))

    def _restock_attempt(self, product_id: int, quantity: int) -> Product:
        product = self.get_product(product_id)
        self.db.refresh(product)
        expected_version = product.version
        new_stock = product.stock + quantity

        update_count = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.version == expected_version)
            .values(
                stock=new_stock,
                status=derive_product_status(new_stock),
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount

        if update_count == 0:
            self.db.rollback()
            raise ConcurrencyConflict(f"Product {product.name} was modified by another transaction")

        self.db.commit()
        self.db.refresh(product)
        logger.info(f"Restocked {product.name}: new stock = {product.stock} (version {product.version})")
        return product

    def get_inventory_status(self) -> List[dict]:
        """Get current stock levels for debugging"""
        return [
            {
                "id": product.id,
                "name": product.name,
                "stock": product.stock,
                "status": product.status,
                "version": product.version,
            }
            for product in self.db.query(Product).order_by(Product.id).all()
        ]

    # Item counts

    def _adjust_item_count(self, category_id: int, delta: int) -> None:
        """Shift a category's item_count by ``delta``, never below zero"""
        new_count = Category.item_count + delta
        self.db.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(item_count=case((new_count < 0, 0), else_=new_count))
            .execution_options(synchronize_session=False)
        )

    def _count_products(self, category_id: int) -> int:
        return self.db.scalar(
            select(func.count(Product.id)).where(Product.category_id == category_id)
        ) or 0

    def recalculate_item_count(self, category_id: int) -> Category:
        category = self.get_category(category_id)
        category.item_count = self._count_products(category_id)
        self.db.commit()
        self.db.refresh(category)
        return category

    def recalculate_all_item_counts(self) -> Dict[int, int]:
        """
        Overwrite every category's item_count with the live product count.
        Returns the new counts keyed by category id.
        """
        counts = dict(
            self.db.execute(
                select(Product.category_id, func.count(Product.id))
                .where(Product.category_id.is_not(None))
                .group_by(Product.category_id)
            ).all()
        )

        result = {}
        try:
            for category in self.db.query(Category).all():
                actual = counts.get(category.id, 0)
                if category.item_count != actual:
                    logger.info(
                        f"Correcting item count for category {category.name}: "
                        f"{category.item_count} -> {actual}"
                    )
                category.item_count = actual
                result[category.id] = actual
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result

