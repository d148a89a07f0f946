"""
Lender Profile

The single lender record: business identity printed on documents, bank
details, default terms and the prefixes used for document numbers.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional
import threading

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .customers import Address, BankAccount, EMAIL_PATTERN
from .exceptions import InvalidInputError
from .logging_config import get_logger


logger = get_logger(__name__)

LENDER_ID = "lender"

DEFAULT_TERMS = (
    "1. The borrower agrees to repay the loan amount along with interest as per the agreed schedule.\n"
    "2. Late payment will attract additional charges as specified in the agreement.\n"
    "3. Prepayment is allowed without any penalty.\n"
    "4. The lender reserves the right to recall the loan in case of default.\n"
    "5. All disputes shall be subject to local jurisdiction."
)


@dataclass
class Lender(StorageRecord):
    """Lender business profile"""
    business_name: str = "Your Finance Company"
    owner_name: str = "Owner Name"
    email: str = "contact@yourfinance.com"
    phone: str = "+91-9999999999"
    address: Optional[Address] = None
    pan_number: Optional[str] = None
    bank_details: Optional[BankAccount] = None
    terms_and_conditions: str = DEFAULT_TERMS
    loan_prefix: str = "LN"
    invoice_prefix: str = "INV"
    contract_prefix: str = "CONT"
    receipt_prefix: str = "RCPT"

    def __post_init__(self):
        for name in ('loan_prefix', 'invoice_prefix', 'contract_prefix', 'receipt_prefix'):
            value = (getattr(self, name) or "").strip().upper()
            if not value or not value.replace('_', '').isalnum():
                raise InvalidInputError(f"{name} must be alphanumeric")
            setattr(self, name, value)
        if self.pan_number:
            self.pan_number = self.pan_number.strip().upper()
        if not EMAIL_PATTERN.match(self.email or ""):
            raise InvalidInputError("Invalid email format")


class LenderProfile:
    """
    Get-or-initialize access to the lender singleton
    """

    UPDATABLE_FIELDS = (
        'business_name', 'owner_name', 'email', 'phone', 'address', 'pan_number',
        'bank_details', 'terms_and_conditions', 'loan_prefix', 'invoice_prefix',
        'contract_prefix', 'receipt_prefix'
    )

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "lender"
        self._lock = threading.Lock()

    def get_lender(self) -> Lender:
        """Return the lender, creating it with defaults on first access"""
        with self._lock:
            data = self.storage.load(self.table_name, LENDER_ID)
            if data:
                return self._lender_from_dict(data)

            now = datetime.now(timezone.utc)
            lender = Lender(
                id=LENDER_ID,
                created_at=now,
                updated_at=now,
                address=Address(street="123 Main Street", city="Mumbai", state="Maharashtra")
            )
            self.storage.save(self.table_name, lender.id, lender.to_dict())
            logger.info("Lender profile initialized with defaults",
                        extra={"action": "lender.init", "resource": LENDER_ID})
            return lender

    def update_lender(self, **changes) -> Lender:
        """
        Update lender fields; nested address and bank details merge into the
        existing values instead of replacing them
        """
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        lender = self.get_lender()
        for name, value in changes.items():
            if value is None:
                continue
            if name == 'address' and isinstance(value, dict):
                value = Address.from_dict({**(self._as_dict(lender.address)), **value})
            elif name == 'bank_details' and isinstance(value, dict):
                value = BankAccount.from_dict({**(self._as_dict(lender.bank_details)), **value})
            setattr(lender, name, value)

        lender.__post_init__()
        lender.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, lender.id, lender.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LENDER_UPDATED,
            entity_type="lender",
            entity_id=lender.id,
            metadata={"changed_fields": sorted(k for k, v in changes.items() if v is not None)}
        )
        return lender

    @staticmethod
    def _as_dict(value) -> Dict:
        if value is None:
            return {}
        return {k: v for k, v in vars(value).items() if v is not None}

    def _lender_from_dict(self, data: Dict) -> Lender:
        return Lender(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            business_name=data['business_name'],
            owner_name=data['owner_name'],
            email=data['email'],
            phone=data['phone'],
            address=Address.from_dict(data.get('address')),
            pan_number=data.get('pan_number'),
            bank_details=BankAccount.from_dict(data.get('bank_details')),
            terms_and_conditions=data.get('terms_and_conditions') or DEFAULT_TERMS,
            loan_prefix=data.get('loan_prefix', 'LN'),
            invoice_prefix=data.get('invoice_prefix', 'INV'),
            contract_prefix=data.get('contract_prefix', 'CONT'),
            receipt_prefix=data.get('receipt_prefix', 'RCPT')
        )
