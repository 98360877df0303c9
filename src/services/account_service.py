import logging
import random
import string
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import ADMIN_USER_IDS, CASH_IN_SIMULATION_DELAY, MIN_CASH_IN_AMOUNT
from src.models.database import (
    Customer, Order, Staff, UserBalance, utcnow,
    CUSTOMER_APPROVED, CUSTOMER_PENDING, CUSTOMER_REJECTED,
    ROLE_CUSTOMER, STAFF_ROLES,
)
from src.models.schemas import CustomerCreate, CustomerUpdate, PaymentDetails, PaymentMethod, StaffCreate, StaffUpdate
from src.services.exceptions import (
    CustomerNotFound, DuplicateRecord, InvalidAmount, InvalidPaymentDetails,
    InvalidRole, InvalidStatusTransition, RecordInUse, StaffNotFound,
)
from src.services.payment_service import PaymentSimulator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Authenticated identity with its role resolved at request time"""
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role in ("Admin", "Manager")


def generate_customer_code() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"********-{suffix}"


class AccountService:
    """Customers, staff, roles and wallet balances"""

    def __init__(self, db: Session, payment_simulator: Optional[PaymentSimulator] = None):
        self.db = db
        self.payments = payment_simulator or PaymentSimulator(delay=CASH_IN_SIMULATION_DELAY)

    # Roles

    def resolve_role(self, user_id: str) -> str:
        """
        Role is derived from the staff table on every call; there is no
        second copy of it to keep in sync.
        """
        if user_id in ADMIN_USER_IDS:
            return "Admin"
        staff = self.db.query(Staff).filter(Staff.user_id == user_id).first()
        if staff:
            return staff.role
        return ROLE_CUSTOMER

    def get_caller(self, user_id: str) -> Caller:
        return Caller(user_id=user_id, role=self.resolve_role(user_id))

    # Customers

    def list_customers(self) -> List[Customer]:
        return self.db.query(Customer).order_by(Customer.created_at.desc(), Customer.id.desc()).all()

    def list_pending_approvals(self) -> List[Customer]:
        return (
            self.db.query(Customer)
            .filter(Customer.status == CUSTOMER_PENDING)
            .order_by(Customer.created_at.desc(), Customer.id.desc())
            .all()
        )

    def get_customer(self, customer_id: int) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if not customer:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return customer

    def get_customer_by_user_id(self, user_id: str) -> Optional[Customer]:
        return self.db.query(Customer).filter(Customer.user_id == user_id).first()

    def search_customer_by_email(self, email: str) -> Optional[Customer]:
        return self.db.query(Customer).filter(Customer.email == email.lower()).first()

    def create_customer(self, customer_data: CustomerCreate) -> Customer:
        """New customers always start out pending approval"""
        email = customer_data.email.lower()
        if self.search_customer_by_email(email):
            raise DuplicateRecord(f"A customer with email {email} already exists")
        if customer_data.user_id and self.get_customer_by_user_id(customer_data.user_id):
            raise DuplicateRecord(f"User {customer_data.user_id} already has a customer record")

        customer_code = generate_customer_code()
        while self.db.query(Customer).filter(Customer.customer_code == customer_code).first():
            customer_code = generate_customer_code()

        customer = Customer(
            customer_code=customer_code,
            user_id=customer_data.user_id,
            name=customer_data.name,
            email=email,
            status=CUSTOMER_PENDING,
        )
        self.db.add(customer)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateRecord(f"A customer with email {email} already exists")
        self.db.refresh(customer)
        logger.info(f"Created customer {customer.customer_code} pending approval")
        return customer

    def update_customer(self, customer_id: int, customer_data: CustomerUpdate) -> Customer:
        customer = self.get_customer(customer_id)
        updates = customer_data.model_dump(exclude_unset=True)
        if updates.get("name"):
            customer.name = updates["name"]
        if updates.get("email"):
            email = updates["email"].lower()
            existing = self.search_customer_by_email(email)
            if existing and existing.id != customer.id:
                raise DuplicateRecord(f"A customer with email {email} already exists")
            customer.email = email
        self.db.commit()
        self.db.refresh(customer)
        return customer

    def delete_customer(self, customer_id: int) -> None:
        customer = self.get_customer(customer_id)
        if self.db.query(Order.id).filter(Order.customer_id == customer_id).first():
            raise RecordInUse(f"Customer {customer.customer_code} has orders and cannot be deleted")
        self.db.delete(customer)
        self.db.commit()

    # Approval workflow

    def approve_customer(self, customer_id: int, approver_id: str) -> Customer:
        return self._decide(customer_id, approver_id, CUSTOMER_APPROVED)

    def reject_customer(self, customer_id: int, approver_id: str) -> Customer:
        return self._decide(customer_id, approver_id, CUSTOMER_REJECTED)

    def _decide(self, customer_id: int, approver_id: str, new_status: str) -> Customer:
        customer = self.get_customer(customer_id)
        if customer.status != CUSTOMER_PENDING:
            raise InvalidStatusTransition(
                f"Cannot move customer {customer.customer_code} from {customer.status} to {new_status}"
            )
        customer.status = new_status
        customer.approved_by = approver_id
        customer.approved_at = utcnow()
        self.db.commit()
        self.db.refresh(customer)
        logger.info(f"Customer {customer.customer_code} {new_status} by {approver_id}")
        return customer

    def request_approval(self, customer_id: int) -> Customer:
        """Customer asks (again) to be approved; clears any previous decision"""
        customer = self.get_customer(customer_id)
        if customer.status == CUSTOMER_APPROVED:
            raise InvalidStatusTransition(f"Customer {customer.customer_code} is already approved")
        customer.status = CUSTOMER_PENDING
        customer.approved_by = None
        customer.approved_at = None
        self.db.commit()
        self.db.refresh(customer)
        return customer

    # Staff

    def list_staff(self) -> List[Staff]:
        return self.db.query(Staff).order_by(Staff.name.asc()).all()

    def get_staff(self, staff_id: int) -> Staff:
        staff = self.db.get(Staff, staff_id)
        if not staff:
            raise StaffNotFound(f"Staff member {staff_id} not found")
        return staff

    def create_staff(self, staff_data: StaffCreate) -> Staff:
        self._check_role(staff_data.role)
        email = staff_data.email.lower()
        if self.db.query(Staff).filter(Staff.email == email).first():
            raise DuplicateRecord(f"A staff member with email {email} already exists")
        if staff_data.user_id and self.db.query(Staff).filter(Staff.user_id == staff_data.user_id).first():
            raise DuplicateRecord(f"User {staff_data.user_id} is already a staff member")

        staff = Staff(user_id=staff_data.user_id, name=staff_data.name, email=email, role=staff_data.role)
        self.db.add(staff)
        self.db.commit()
        self.db.refresh(staff)
        logger.info(f"Added staff member {staff.email} as {staff.role}")
        return staff

    def update_staff(self, staff_id: int, staff_data: StaffUpdate) -> Staff:
        staff = self.get_staff(staff_id)
        updates = staff_data.model_dump(exclude_unset=True)
        if updates.get("role"):
            self._check_role(updates["role"])
            staff.role = updates["role"]
        if updates.get("name"):
            staff.name = updates["name"]
        self.db.commit()
        self.db.refresh(staff)
        return staff

    def delete_staff(self, staff_id: int) -> None:
        """Removing the staff row is enough; the identity falls back to Customer"""
        staff = self.get_staff(staff_id)
        self.db.delete(staff)
        self.db.commit()

    def _check_role(self, role: str) -> None:
        if role not in STAFF_ROLES:
            raise InvalidRole(f"Unknown staff role {role}; expected one of {', '.join(STAFF_ROLES)}")

    # Wallet

    def get_balance(self, user_id: str) -> Decimal:
        row = self.db.get(UserBalance, user_id)
        return Decimal(row.balance) if row else Decimal("0.00")

    async def cash_in(
        self,
        user_id: str,
        amount: Decimal,
        method: PaymentMethod,
        details: Optional[PaymentDetails] = None,
    ) -> Decimal:
        """Credit the wallet after a simulated external payment"""
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidAmount("Please enter a valid amount")
        if amount < MIN_CASH_IN_AMOUNT:
            raise InvalidAmount(f"Minimum cash in amount is {MIN_CASH_IN_AMOUNT}")
        if method == PaymentMethod.BALANCE:
            raise InvalidPaymentDetails("Cash in requires an external payment method")

        await self.payments.charge(method, details, amount)

        try:
            self._credit(user_id, amount)
            self.db.commit()
        except IntegrityError:
            # Another request created the row first
            self.db.rollback()
            self._credit(user_id, amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        balance = self.get_balance(user_id)
        logger.info(f"Cash in of {amount} for {user_id}: new balance = {balance}")
        return balance

    def _credit(self, user_id: str, amount: Decimal) -> None:
        update_count = self.db.execute(
            update(UserBalance)
            .where(UserBalance.user_id == user_id)
            .values(balance=UserBalance.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if update_count == 0:
            self.db.add(UserBalance(user_id=user_id, balance=amount))
            self.db.flush()
