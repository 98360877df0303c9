from typing import List

from sqlalchemy.orm import Session

from src.core.config import LOW_STOCK_THRESHOLD
from src.models.database import Customer, Product, CUSTOMER_PENDING
from src.models.schemas import Notification, NotificationSummary

# Approval requests first, then stock alerts by severity
_SEVERITY = {"pending_approval": 0, "out_of_stock": 1, "low_stock": 2}


class NotificationService:
    """Read model of staff alerts, recomputed from the stores on every call"""

    def __init__(self, db: Session):
        self.db = db

    def stock_alerts(self) -> List[Notification]:
        products = (
            self.db.query(Product)
            .filter(Product.stock <= LOW_STOCK_THRESHOLD)
            .order_by(Product.stock.asc(), Product.name.asc())
            .all()
        )
        alerts = []
        for product in products:
            if product.stock <= 0:
                alerts.append(Notification(
                    id=f"stock_{product.id}",
                    type="out_of_stock",
                    category="stock",
                    message=f"{product.name} is out of stock",
                    product_id=product.id,
                    stock=product.stock,
                ))
            else:
                alerts.append(Notification(
                    id=f"stock_{product.id}",
                    type="low_stock",
                    category="stock",
                    message=f"{product.name} has low stock ({product.stock} remaining)",
                    product_id=product.id,
                    stock=product.stock,
                ))
        return alerts

    def approval_requests(self) -> List[Notification]:
        customers = (
            self.db.query(Customer)
            .filter(Customer.status == CUSTOMER_PENDING)
            .order_by(Customer.created_at.desc(), Customer.id.desc())
            .all()
        )
        return [
            Notification(
                id=f"approval_{customer.id}",
                type="pending_approval",
                category="approval",
                message=f"{customer.name} ({customer.email}) is waiting for approval",
                customer_id=customer.id,
            )
            for customer in customers
        ]

    def summary(self) -> NotificationSummary:
        notifications = self.approval_requests() + self.stock_alerts()
        notifications.sort(key=lambda n: _SEVERITY[n.type])
        return NotificationSummary(
            pending_approvals=sum(1 for n in notifications if n.type == "pending_approval"),
            out_of_stock=sum(1 for n in notifications if n.type == "out_of_stock"),
            low_stock=sum(1 for n in notifications if n.type == "low_stock"),
            total=len(notifications),
            notifications=notifications,
        )
