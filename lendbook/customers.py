"""
Customer Management Module

Borrower profiles: contact details, address, bank details and account
status. Customers are soft-deleted so loans keep a valid borrower reference.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import re

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidInputError, NotFoundError
from .logging_config import get_logger


logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


class CustomerStatus(Enum):
    """Customer account status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass
class Address:
    """Postal address"""
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "India"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Address']:
        if not data:
            return None
        return cls(
            street=data.get('street'),
            city=data.get('city'),
            state=data.get('state'),
            country=data.get('country') or "India"
        )


@dataclass
class BankAccount:
    """Bank account details of a customer or the lender"""
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None

    def __post_init__(self):
        if self.ifsc_code:
            self.ifsc_code = self.ifsc_code.strip().upper()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['BankAccount']:
        if not data:
            return None
        return cls(
            account_name=data.get('account_name'),
            account_number=data.get('account_number'),
            ifsc_code=data.get('ifsc_code'),
            bank_name=data.get('bank_name')
        )


@dataclass
class Customer(StorageRecord):
    """Borrower profile"""
    first_name: str
    last_name: str
    email: str
    phone: str
    address: Optional[Address] = None
    pan_number: Optional[str] = None
    bank_details: Optional[BankAccount] = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    is_deleted: bool = False
    notes: Optional[str] = None

    def __post_init__(self):
        self.email = (self.email or "").strip().lower()
        if not EMAIL_PATTERN.match(self.email):
            raise InvalidInputError("Invalid email format")
        if not self.first_name or not self.last_name:
            raise InvalidInputError("First and last name are required")
        if not self.phone:
            raise InvalidInputError("Phone number is required")
        if self.pan_number:
            self.pan_number = self.pan_number.strip().upper()

    @property
    def full_name(self) -> str:
        """Get customer's full name"""
        return f"{self.first_name} {self.last_name}"


class CustomerManager:
    """
    Manages customer profiles
    """

    UPDATABLE_FIELDS = (
        'first_name', 'last_name', 'email', 'phone', 'address',
        'pan_number', 'bank_details', 'status', 'notes'
    )

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "customers"

    def create_customer(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        address: Optional[Address] = None,
        pan_number: Optional[str] = None,
        bank_details: Optional[BankAccount] = None,
        notes: Optional[str] = None
    ) -> Customer:
        """
        Create a new customer

        Raises:
            InvalidInputError: If the email is malformed or already registered
        """
        now = datetime.now(timezone.utc)

        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            address=address,
            pan_number=pan_number,
            bank_details=bank_details,
            notes=notes
        )

        if self.get_customer_by_email(customer.email):
            raise InvalidInputError(f"Customer with email {customer.email} already exists")

        self._save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_CREATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={
                "full_name": customer.full_name,
                "email": customer.email
            }
        )
        logger.info("Customer created", extra={"action": "customer.create", "resource": customer.id})

        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID (soft-deleted customers included)"""
        customer_dict = self.storage.load(self.table_name, customer_id)
        if customer_dict:
            return self._customer_from_dict(customer_dict)
        return None

    def require_customer(self, customer_id: str) -> Customer:
        """Get a live customer or raise NotFoundError"""
        customer = self.get_customer(customer_id)
        if not customer or customer.is_deleted:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        """Get live customer by email address"""
        matches = self.storage.find(self.table_name, {"email": email.strip().lower(), "is_deleted": False})
        if matches:
            return self._customer_from_dict(matches[0])
        return None

    def update_customer(self, customer_id: str, **changes) -> Customer:
        """
        Update customer fields

        Only fields in ``UPDATABLE_FIELDS`` may change; ``None`` values are ignored.
        """
        customer = self.require_customer(customer_id)

        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        changed = {}
        for name, value in changes.items():
            if value is None:
                continue
            if name == 'status' and not isinstance(value, CustomerStatus):
                try:
                    value = CustomerStatus(value)
                except ValueError:
                    raise InvalidInputError(f"Invalid customer status: {value}")
            if name == 'email':
                value = value.strip().lower()
                other = self.get_customer_by_email(value)
                if other and other.id != customer.id:
                    raise InvalidInputError(f"Customer with email {value} already exists")
            setattr(customer, name, value)
            changed[name] = value

        # Re-run field validation
        customer.__post_init__()
        customer.updated_at = datetime.now(timezone.utc)
        self._save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_UPDATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"changed_fields": sorted(changed)}
        )

        return customer

    def delete_customer(self, customer_id: str) -> Customer:
        """Soft-delete a customer"""
        customer = self.require_customer(customer_id)
        customer.is_deleted = True
        customer.status = CustomerStatus.INACTIVE
        customer.updated_at = datetime.now(timezone.utc)
        self._save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_DELETED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"email": customer.email}
        )
        logger.info("Customer soft-deleted", extra={"action": "customer.delete", "resource": customer.id})

        return customer

    def list_customers(
        self,
        status: Optional[CustomerStatus] = None,
        search: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[Customer]:
        """
        List customers, newest first

        Args:
            status: Only customers in this status
            search: Case-insensitive match on name, email or phone
            include_deleted: Include soft-deleted customers
        """
        customers = [self._customer_from_dict(data) for data in self.storage.load_all(self.table_name)]

        if not include_deleted:
            customers = [c for c in customers if not c.is_deleted]
        if status:
            customers = [c for c in customers if c.status == status]
        if search:
            needle = search.strip().lower()
            customers = [
                c for c in customers
                if needle in c.full_name.lower() or needle in c.email or needle in c.phone
            ]

        customers.sort(key=lambda c: c.created_at, reverse=True)
        return customers

    def _save_customer(self, customer: Customer) -> None:
        """Save customer to storage"""
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def _customer_to_dict(self, customer: Customer) -> Dict:
        """Convert Customer to dictionary for storage"""
        return customer.to_dict()

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data['phone'],
            address=Address.from_dict(data.get('address')),
            pan_number=data.get('pan_number'),
            bank_details=BankAccount.from_dict(data.get('bank_details')),
            status=CustomerStatus(data.get('status', CustomerStatus.ACTIVE.value)),
            is_deleted=data.get('is_deleted', False),
            notes=data.get('notes')
        )
