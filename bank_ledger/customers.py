"""
Customer Management Module

Customer profiles with an opaque KYC status. Registration by staff creates
the profile and its initial account in one unit of work.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional, Tuple
from enum import Enum

from .storage import StorageInterface, StorageRecord
from .accounts import AccountManager, Account, AccountType
from .money import ZERO, AmountLike, to_amount
from .errors import NotFound, InvalidOperation
from .logging_config import get_logger, log_action


class KYCStatus(Enum):
    """Know-your-customer verification status"""
    PENDING = "Pending"
    VERIFIED = "Verified"
    REJECTED = "Rejected"


@dataclass
class Customer(StorageRecord):
    """Customer profile"""
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    kyc_status: KYCStatus = KYCStatus.PENDING


class CustomerManager:
    """Manages customer profiles"""

    UPDATABLE_FIELDS = ("name", "email", "phone", "address")

    def __init__(self, storage: StorageInterface, account_manager: AccountManager):
        self.storage = storage
        self.account_manager = account_manager
        self.table_name = account_manager.customers_table
        self.logger = get_logger("bank_ledger.customers")

    def register_customer(
        self,
        name: str,
        email: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        kyc_status: KYCStatus = KYCStatus.PENDING,
        account_type: Optional[AccountType] = None,
        initial_balance: AmountLike = ZERO
    ) -> Tuple[Customer, Optional[Account]]:
        """
        Create a customer and, when account_type is given, the initial account

        Self-registered customers come without an account; staff open it later.

        Returns:
            (customer, initial account or None)
        """
        initial_balance = to_amount(initial_balance)
        if initial_balance < ZERO:
            raise InvalidOperation("Initial balance cannot be negative")

        account = None
        with self.storage.atomic():
            self._lock_email(email)
            if self.find_by_email(email):
                raise InvalidOperation(f"A customer with email {email} already exists")

            now = datetime.now(timezone.utc)
            customer = Customer(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                name=name,
                email=email,
                phone=phone,
                address=address,
                kyc_status=kyc_status
            )
            self._save_customer(customer)

            if account_type is not None:
                account = self.account_manager.create_account(customer.id, account_type, initial_balance)

        log_action(
            self.logger, "info", f"Customer registered: #{customer.id}",
            action="register_customer", resource=f"customer:{customer.id}",
            extra={
                "initial_account_id": account.id if account else None,
                "kyc_status": kyc_status.value
            }
        )
        return customer, account

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        """Get customer by ID"""
        data = self.storage.load(self.table_name, customer_id)
        if data:
            return Customer.from_dict(data)
        return None

    def require_customer(self, customer_id: int) -> Customer:
        """Get customer by ID or raise NotFound"""
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFound(f"Customer #{customer_id} not found")
        return customer

    def find_by_email(self, email: str) -> Optional[Customer]:
        """Customer profile linked to an email, used to resolve portal users"""
        found = self.storage.find(self.table_name, {"email": email})
        return Customer.from_dict(found[0]) if found else None

    def list_customers(self) -> List[Customer]:
        """All customers, newest first"""
        customers = [Customer.from_dict(data) for data in self.storage.load_all(self.table_name)]
        customers.sort(key=lambda c: c.id, reverse=True)
        return customers

    def update_customer(self, customer_id: int, **changes) -> Customer:
        """Update profile fields (name, email, phone, address)"""
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise InvalidOperation(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            customer = self._lock_customer(customer_id)
            if "email" in changes and changes["email"] != customer.email:
                self._lock_email(changes["email"])
                if self.find_by_email(changes["email"]):
                    raise InvalidOperation(f"A customer with email {changes['email']} already exists")
            for field_name, value in changes.items():
                setattr(customer, field_name, value)
            customer.updated_at = datetime.now(timezone.utc)
            self._save_customer(customer)
        return customer

    def update_kyc_status(self, customer_id: int, kyc_status: KYCStatus) -> Customer:
        """Record the outcome of KYC review"""
        with self.storage.atomic():
            customer = self._lock_customer(customer_id)
            previous = customer.kyc_status
            customer.kyc_status = kyc_status
            customer.updated_at = datetime.now(timezone.utc)
            self._save_customer(customer)

        log_action(
            self.logger, "info", f"KYC status changed for customer #{customer_id}",
            action="update_kyc_status", resource=f"customer:{customer_id}",
            extra={"old_status": previous.value, "new_status": kyc_status.value}
        )
        return customer

    def _lock_email(self, email: str) -> None:
        # Held until commit so the uniqueness check and the insert are one step
        self.storage.lock_name(f"customer_email:{email.strip().lower()}")

    def _lock_customer(self, customer_id: int) -> Customer:
        data = self.storage.lock_record(self.table_name, customer_id)
        if data is None:
            raise NotFound(f"Customer #{customer_id} not found")
        return Customer.from_dict(data)

    def _save_customer(self, customer: Customer) -> None:
        self.storage.save(self.table_name, customer.id, customer.to_dict())
