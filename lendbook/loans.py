"""
Loan Module

Handles loan origination, approval, cancellation, manual status changes,
foreclosure settlement and the loan records every other component reads.

State machine::

    pending_approval -> active -> completed
    pending_approval -> closed          (cancel)
    active           -> closed          (foreclosure settlement)

``completed`` and ``closed`` are terminal. ``pending_approval``, ``approved``
and ``active`` can also be set by hand while no terminal state is reached.

``remaining_balance`` and ``payments_received`` are cached projections of
the payment history; every write that changes them goes through one storage
transaction together with the payment it reflects, and ``reconcile_loan`` in
the payment ledger can rebuild them.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any, Union
from contextlib import contextmanager
from enum import Enum
import threading
import uuid
import weakref

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .amortization import (
    InterestType, ScheduleEntry, calculate_loan_estimate, parse_interest_type
)
from .customers import CustomerManager
from .lender import LenderProfile
from .numbering import DocumentNumberer
from .money import ZERO, Numeric, round_money
from .exceptions import (
    ConcurrencyConflictError, InvalidInputError, InvalidOperationError,
    InvalidStateError, NotFoundError
)
from .logging_config import get_logger


logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_APPROVAL = "pending_approval"  # Created, awaiting approval
    APPROVED = "approved"                  # Approved by hand, no payment yet
    ACTIVE = "active"                      # In repayment
    COMPLETED = "completed"                # Fully repaid
    CLOSED = "closed"                      # Cancelled or foreclosed


TERMINAL_STATUSES = frozenset({LoanStatus.COMPLETED, LoanStatus.CLOSED})
MANUAL_STATUSES = frozenset({LoanStatus.PENDING_APPROVAL, LoanStatus.APPROVED, LoanStatus.ACTIVE})
PAYABLE_STATUSES = frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE})


class PaymentMethod(Enum):
    """How a payment reached the lender"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CHEQUE = "cheque"
    OTHER = "other"


def parse_payment_method(value: Union[str, PaymentMethod, None]) -> PaymentMethod:
    if value is None:
        return PaymentMethod.CASH
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).lower())
    except ValueError:
        raise InvalidInputError(f"Unknown payment method: {value}")


@dataclass
class BankDetails:
    """Bank or UPI details attached to a payment or settlement"""
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    branch: Optional[str] = None
    upi_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['BankDetails']:
        if not data:
            return None
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass
class SettlementDetails:
    """Terms a loan was foreclosed on, kept for the settlement certificate"""
    original_balance: Decimal
    settlement_amount: Decimal
    discount: Decimal
    payment_method: PaymentMethod
    settlement_date: date
    notes: Optional[str] = None
    bank_details: Optional[BankDetails] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_balance': str(self.original_balance),
            'settlement_amount': str(self.settlement_amount),
            'discount': str(self.discount),
            'payment_method': self.payment_method.value,
            'settlement_date': self.settlement_date.isoformat(),
            'notes': self.notes,
            'bank_details': self.bank_details.to_dict() if self.bank_details else None
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['SettlementDetails']:
        if not data:
            return None
        return cls(
            original_balance=Decimal(data['original_balance']),
            settlement_amount=Decimal(data['settlement_amount']),
            discount=Decimal(data['discount']),
            payment_method=PaymentMethod(data['payment_method']),
            settlement_date=date.fromisoformat(data['settlement_date']),
            notes=data.get('notes'),
            bank_details=BankDetails.from_dict(data.get('bank_details'))
        )


@dataclass
class Loan(StorageRecord):
    """One lending contract with its schedule and repayment position"""
    loan_number: str
    customer_id: str
    principal: Decimal
    monthly_interest_rate: Decimal      # Percent per month, e.g. 2 for 2%
    loan_duration_months: int
    interest_type: InterestType
    start_date: date
    end_date: date
    monthly_emi: Decimal
    total_amount_payable: Decimal
    total_interest_amount: Decimal
    remaining_balance: Decimal
    manual_emi: Optional[Decimal] = None
    payments_received: int = 0
    amortization_schedule: List[ScheduleEntry] = field(default_factory=list)
    status: LoanStatus = LoanStatus.PENDING_APPROVAL
    approval_date: Optional[datetime] = None
    notes: Optional[str] = None
    settlement: Optional[SettlementDetails] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_paid(self) -> Decimal:
        """Amount collected so far according to the cached balance"""
        return round_money(self.total_amount_payable - self.remaining_balance)

    @property
    def progress_percentage(self) -> int:
        if self.total_amount_payable == 0:
            return 0
        return int((self.total_paid / self.total_amount_payable * 100).to_integral_value())

    @property
    def next_schedule_entry(self) -> Optional[ScheduleEntry]:
        """Next unpaid schedule slot, or None once the schedule is exhausted"""
        if self.payments_received < len(self.amortization_schedule):
            return self.amortization_schedule[self.payments_received]
        return None


@dataclass
class Payment(StorageRecord):
    """Record of money received against a loan"""
    loan_id: str
    customer_id: str
    payment_number: int                 # Schedule slot this payment satisfies (1-based)
    amount_paid: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    balance_after_payment: Decimal
    payment_method: PaymentMethod
    payment_date: date
    receipt_number: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    bank_details: Optional[BankDetails] = None
    is_settlement: bool = False
    invoice_id: Optional[str] = None    # Invoice this payment was credited to


class LoanManager:
    """
    Manages loan lifecycle from origination through completion or closure
    """

    UPDATABLE_FIELDS = (
        'customer_id', 'principal', 'monthly_interest_rate', 'loan_duration_months',
        'interest_type', 'start_date', 'manual_emi', 'notes'
    )

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        customer_manager: CustomerManager,
        lender_profile: LenderProfile,
        numberer: DocumentNumberer,
        default_interest_type: Union[str, InterestType] = InterestType.SIMPLE,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.customer_manager = customer_manager
        self.lender_profile = lender_profile
        self.numberer = numberer
        self.default_interest_type = parse_interest_type(default_interest_type)
        self.clock = clock or utc_now

        self.loans_table = "loans"
        self.payments_table = "payments"
        self.invoices_table = "invoices"

        # Entries disappear once no caller holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @contextmanager
    def loan_lock(self, loan_id: str):
        """Serialize mutations of one loan within this process"""
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
        with lock:
            yield

    def create_loan(
        self,
        customer_id: str,
        principal: Numeric,
        monthly_interest_rate: Numeric,
        loan_duration_months: int,
        interest_type: Union[str, InterestType, None] = None,
        start_date: Optional[date] = None,
        manual_emi: Optional[Numeric] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan in ``pending_approval``

        Args:
            customer_id: Borrower customer ID
            principal: Amount lent
            monthly_interest_rate: Percent per month
            loan_duration_months: Tenure (1-360)
            interest_type: "simple" (flat) or "compound" (reducing balance)
            start_date: Disbursement date; the first instalment falls one month later
            manual_emi: EMI override; calculated when omitted
            notes: Free text

        Returns:
            Created Loan object

        Raises:
            InvalidInputError: If any parameter is out of range
            NotFoundError: If the customer does not exist
        """
        if interest_type is None:
            interest_type = self.default_interest_type
        estimate = calculate_loan_estimate(
            principal, monthly_interest_rate, loan_duration_months,
            interest_type, start_date, manual_emi
        )
        self.customer_manager.require_customer(customer_id)

        lender = self.lender_profile.get_lender()
        now = self.clock()

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=self.numberer.next_number("loan", lender.loan_prefix, now.year),
            customer_id=customer_id,
            principal=estimate.principal,
            monthly_interest_rate=estimate.monthly_interest_rate,
            loan_duration_months=estimate.loan_duration_months,
            interest_type=estimate.interest_type,
            start_date=estimate.start_date,
            end_date=estimate.end_date,
            monthly_emi=estimate.monthly_emi,
            manual_emi=estimate.manual_emi,
            total_amount_payable=estimate.total_amount_payable,
            total_interest_amount=estimate.total_interest_amount,
            remaining_balance=estimate.total_amount_payable,
            amortization_schedule=estimate.amortization_schedule,
            notes=notes
        )

        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "loan_number": loan.loan_number,
                "customer_id": customer_id,
                "principal": loan.principal,
                "monthly_interest_rate": loan.monthly_interest_rate,
                "loan_duration_months": loan.loan_duration_months,
                "interest_type": loan.interest_type,
                "monthly_emi": loan.monthly_emi
            }
        )
        logger.info("Loan created", extra={
            "action": "loan.create", "resource": loan.id,
            "extra": {"loan_number": loan.loan_number, "principal": str(loan.principal)}
        })

        return loan

    def update_loan(self, loan_id: str, **changes) -> Loan:
        """
        Change terms of a pending loan and recompute it as if re-created

        Fields not passed keep their current values. Passing ``manual_emi=None``
        drops an EMI override.

        Raises:
            InvalidStateError: If the loan is no longer pending approval
        """
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING_APPROVAL:
                raise InvalidStateError("Cannot update approved or active loans")

            def pick(name, current):
                value = changes.get(name)
                return current if value is None else value

            customer_id = pick('customer_id', loan.customer_id)
            manual_emi = changes['manual_emi'] if 'manual_emi' in changes else loan.manual_emi

            estimate = calculate_loan_estimate(
                pick('principal', loan.principal),
                pick('monthly_interest_rate', loan.monthly_interest_rate),
                pick('loan_duration_months', loan.loan_duration_months),
                pick('interest_type', loan.interest_type),
                pick('start_date', loan.start_date),
                manual_emi
            )
            if customer_id != loan.customer_id:
                self.customer_manager.require_customer(customer_id)

            loan.customer_id = customer_id
            loan.principal = estimate.principal
            loan.monthly_interest_rate = estimate.monthly_interest_rate
            loan.loan_duration_months = estimate.loan_duration_months
            loan.interest_type = estimate.interest_type
            loan.start_date = estimate.start_date
            loan.end_date = estimate.end_date
            loan.monthly_emi = estimate.monthly_emi
            loan.manual_emi = estimate.manual_emi
            loan.total_amount_payable = estimate.total_amount_payable
            loan.total_interest_amount = estimate.total_interest_amount
            loan.remaining_balance = estimate.total_amount_payable
            loan.amortization_schedule = estimate.amortization_schedule
            if 'notes' in changes:
                loan.notes = changes['notes']

            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_UPDATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "changed_fields": sorted(changes),
                "monthly_emi": loan.monthly_emi,
                "total_amount_payable": loan.total_amount_payable
            }
        )
        return loan

    def approve_loan(self, loan_id: str) -> Loan:
        """
        Approve a pending loan; it goes straight to ``active``

        Raises:
            InvalidStateError: Unless the loan is pending approval
        """
        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING_APPROVAL:
                raise InvalidStateError("Only pending loans can be approved")

            loan.status = LoanStatus.ACTIVE
            loan.approval_date = self.clock()
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"loan_number": loan.loan_number, "approval_date": loan.approval_date}
        )
        logger.info("Loan approved", extra={"action": "loan.approve", "resource": loan.id})
        return loan

    def cancel_loan(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """
        Cancel a pending loan (status ``closed``, no settlement, no payments)

        Raises:
            InvalidStateError: Unless the loan is pending approval
        """
        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING_APPROVAL:
                raise InvalidStateError("Only pending loans can be cancelled")

            loan.status = LoanStatus.CLOSED
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CANCELLED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"loan_number": loan.loan_number, "reason": reason}
        )
        logger.info("Loan cancelled", extra={"action": "loan.cancel", "resource": loan.id})
        return loan

    def update_loan_status(self, loan_id: str, status: Union[str, LoanStatus]) -> Loan:
        """
        Set the status by hand among pending_approval, approved and active

        Schedule and balances are left untouched.

        Raises:
            InvalidInputError: If the target is not one of the manual statuses
            InvalidStateError: If the loan is already completed or closed
            InvalidOperationError: If reverting to pending after payments
        """
        try:
            target = status if isinstance(status, LoanStatus) else LoanStatus(str(status))
        except ValueError:
            target = None
        if target not in MANUAL_STATUSES:
            raise InvalidInputError(
                "Invalid status update. Only pending_approval, approved or active can be set manually"
            )

        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            if loan.is_terminal:
                raise InvalidStateError(f"Loan is {loan.status.value}; its status can no longer change")

            previous = loan.status
            if target == LoanStatus.PENDING_APPROVAL:
                if loan.payments_received > 0:
                    raise InvalidOperationError("Cannot revert to pending: payments have already been recorded")
                loan.approval_date = None
            elif loan.approval_date is None:
                loan.approval_date = self.clock()
            loan.status = target
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"from": previous, "to": target}
        )
        return loan

    def foreclose_loan(
        self,
        loan_id: str,
        discount: Numeric = 0,
        settlement_amount: Optional[Numeric] = None,
        payment_method: Union[str, PaymentMethod, None] = PaymentMethod.CASH,
        notes: Optional[str] = None,
        bank_details: Optional[BankDetails] = None,
        settlement_date: Optional[date] = None
    ) -> Loan:
        """
        Close an active loan early against a one-off settlement

        The settlement is written as a single terminal payment that retires the
        whole outstanding balance, regardless of the next schedule slot.

        Args:
            loan_id: Loan to settle
            discount: Waived amount, used when ``settlement_amount`` is not given
            settlement_amount: Agreed final amount; overrides ``balance - discount``
            payment_method: How the settlement was paid
            notes: Free text for the settlement certificate
            bank_details: Bank or UPI details of the settlement transfer
            settlement_date: Date of settlement (defaults to today)

        Raises:
            InvalidStateError: Unless the loan is active
            InvalidInputError: For a negative or oversized discount, or a
                non-positive final amount
        """
        method = parse_payment_method(payment_method)
        try:
            discount = round_money(discount if discount is not None else 0)
            override = round_money(settlement_amount) if settlement_amount is not None else None
        except ValueError as e:
            raise InvalidInputError(str(e))
        if discount < 0:
            raise InvalidInputError("Discount cannot be negative")

        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError("Only active loans can be foreclosed")

            prior_balance = loan.remaining_balance
            if override is not None:
                final_amount = override
                discount = max(ZERO, round_money(prior_balance - final_amount))
            else:
                if discount > prior_balance:
                    raise InvalidInputError("Discount cannot exceed the outstanding balance")
                final_amount = round_money(prior_balance - discount)
            if final_amount <= 0:
                raise InvalidInputError("Settlement amount must be positive")

            now = self.clock()
            today = settlement_date or now.date()
            lender = self.lender_profile.get_lender()

            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                customer_id=loan.customer_id,
                payment_number=loan.payments_received + 1,
                amount_paid=final_amount,
                principal_portion=prior_balance,
                interest_portion=ZERO,
                balance_after_payment=ZERO,
                payment_method=method,
                payment_date=today,
                receipt_number=self.numberer.next_number("receipt", lender.receipt_prefix, today.year),
                notes=f"Foreclosure settlement. {notes or ''}".strip(),
                bank_details=bank_details,
                is_settlement=True
            )

            loan.settlement = SettlementDetails(
                original_balance=prior_balance,
                settlement_amount=final_amount,
                discount=discount,
                payment_method=method,
                settlement_date=today,
                notes=notes,
                bank_details=bank_details
            )
            loan.status = LoanStatus.CLOSED
            loan.remaining_balance = ZERO
            loan.payments_received += 1

            with self.storage.atomic():
                self.save_payment(payment)
                self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_FORECLOSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "payment_id": payment.id,
                "original_balance": prior_balance,
                "settlement_amount": final_amount,
                "discount": discount,
                "payment_method": method
            }
        )
        logger.info("Loan foreclosed", extra={
            "action": "loan.foreclose", "resource": loan.id,
            "extra": {"settlement_amount": str(final_amount), "original_balance": str(prior_balance)}
        })
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        matches = self.storage.find(self.loans_table, {"loan_number": loan_number})
        if matches:
            return self._loan_from_dict(matches[0])
        return None

    def list_loans(
        self,
        status: Union[str, LoanStatus, None] = None,
        customer_id: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Loan]:
        """
        List loans, newest first

        Args:
            status: Only loans in this status
            customer_id: Only loans of this borrower
            search: Case-insensitive match on loan number
        """
        filters = {}
        if status is not None:
            filters['status'] = status.value if isinstance(status, LoanStatus) else status
        if customer_id:
            filters['customer_id'] = customer_id

        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        if search:
            needle = search.strip().lower()
            loans = [loan for loan in loans if needle in loan.loan_number.lower()]

        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_amortization_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        return self.require_loan(loan_id).amortization_schedule

    def get_current_balance(self, loan_id: str) -> Dict[str, Any]:
        """Repayment position of a loan"""
        loan = self.require_loan(loan_id)
        next_entry = loan.next_schedule_entry
        return {
            "loan_number": loan.loan_number,
            "remaining_balance": loan.remaining_balance,
            "total_paid": loan.total_paid,
            "payments_received": loan.payments_received,
            "remaining_payments": max(0, loan.loan_duration_months - loan.payments_received),
            "status": loan.status.value,
            "next_due_date": next_entry.due_date if next_entry else None,
            "progress_percentage": loan.progress_percentage
        }

    def delete_loan(self, loan_id: str) -> bool:
        """
        Administrative removal of a loan together with its payments and invoices

        Raises:
            NotFoundError: If the loan does not exist
        """
        with self.loan_lock(loan_id):
            loan = self.require_loan(loan_id)
            with self.storage.atomic():
                payments = self.storage.find(self.payments_table, {"loan_id": loan_id})
                invoices = self.storage.find(self.invoices_table, {"loan_id": loan_id})
                for payment in payments:
                    self.storage.delete(self.payments_table, payment['id'])
                for invoice in invoices:
                    self.storage.delete(self.invoices_table, invoice['id'])
                self.storage.delete(self.loans_table, loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "loan_number": loan.loan_number,
                "payments_deleted": len(payments),
                "invoices_deleted": len(invoices)
            }
        )
        logger.warning("Loan deleted", extra={"action": "loan.delete", "resource": loan_id})
        return True

    def get_portfolio_summary(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Book-level totals for the dashboard"""
        today = as_of or self.clock().date()
        loans = [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]
        payments = self.storage.load_all(self.payments_table)

        total_lent = sum((loan.principal for loan in loans), ZERO)
        total_payable = sum((loan.total_amount_payable for loan in loans), ZERO)
        active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]
        overdue = [
            loan for loan in active
            if loan.next_schedule_entry and loan.next_schedule_entry.due_date < today
        ]

        return {
            "total_customers": len(self.customer_manager.list_customers()),
            "total_loans": len(loans),
            "active_loans": len(active),
            "overdue_loans": len(overdue),
            "healthy_loans": len(active) - len(overdue),
            "total_lent": round_money(total_lent),
            "total_remaining": round_money(sum((loan.remaining_balance for loan in loans), ZERO)),
            "total_received": round_money(sum((Decimal(p['amount_paid']) for p in payments), ZERO)),
            "total_payable": round_money(total_payable),
            "projected_interest": round_money(total_payable - total_lent)
        }

    def loan_from_record(self, data: Dict) -> Loan:
        """Build a Loan from a raw storage record"""
        return self._loan_from_dict(data)

    def save_loan(self, loan: Loan) -> None:
        """Persist a loan changed by a collaborator (version-checked)"""
        self._save_loan(loan)

    def _save_loan(self, loan: Loan) -> None:
        """Save loan, refusing to overwrite a version written by someone else"""
        stored = self.storage.load(self.loans_table, loan.id)
        if stored and stored.get('version', 1) != loan.version:
            raise ConcurrencyConflictError(
                f"Loan {loan.id} was modified concurrently "
                f"(expected version {loan.version}, found {stored.get('version')})"
            )
        loan.version += 1
        loan.updated_at = self.clock()
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        payment_dict = self.storage.load(self.payments_table, payment_id)
        if payment_dict:
            return self._payment_from_dict(payment_dict)
        return None

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payment history for a loan, in schedule order"""
        payments = [
            self._payment_from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda p: (p.payment_number, p.created_at))
        return payments

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = loan.to_dict()
        result['amortization_schedule'] = [entry.to_dict() for entry in loan.amortization_schedule]
        result['settlement'] = loan.settlement.to_dict() if loan.settlement else None
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        def get_decimal(name: str) -> Optional[Decimal]:
            if data.get(name) is None:
                return None
            return Decimal(data[name])

        approval_date = None
        if data.get('approval_date'):
            approval_date = datetime.fromisoformat(data['approval_date'])

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            principal=Decimal(data['principal']),
            monthly_interest_rate=Decimal(data['monthly_interest_rate']),
            loan_duration_months=int(data['loan_duration_months']),
            interest_type=InterestType(data['interest_type']),
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            monthly_emi=Decimal(data['monthly_emi']),
            manual_emi=get_decimal('manual_emi'),
            total_amount_payable=Decimal(data['total_amount_payable']),
            total_interest_amount=Decimal(data['total_interest_amount']),
            remaining_balance=Decimal(data['remaining_balance']),
            payments_received=int(data.get('payments_received', 0)),
            amortization_schedule=[
                ScheduleEntry.from_dict(entry) for entry in data.get('amortization_schedule', [])
            ],
            status=LoanStatus(data['status']),
            approval_date=approval_date,
            notes=data.get('notes'),
            settlement=SettlementDetails.from_dict(data.get('settlement')),
            version=int(data.get('version', 1))
        )

    def _payment_to_dict(self, payment: Payment) -> Dict:
        """Convert payment to dictionary"""
        result = payment.to_dict()
        result['bank_details'] = payment.bank_details.to_dict() if payment.bank_details else None
        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        """Convert dictionary to payment"""
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            payment_number=int(data['payment_number']),
            amount_paid=Decimal(data['amount_paid']),
            principal_portion=Decimal(data['principal_portion']),
            interest_portion=Decimal(data['interest_portion']),
            balance_after_payment=Decimal(data['balance_after_payment']),
            payment_method=PaymentMethod(data['payment_method']),
            payment_date=date.fromisoformat(data['payment_date']),
            receipt_number=data.get('receipt_number'),
            reference_id=data.get('reference_id'),
            notes=data.get('notes'),
            bank_details=BankDetails.from_dict(data.get('bank_details')),
            is_settlement=bool(data.get('is_settlement', False)),
            invoice_id=data.get('invoice_id')
        )
