"""
Invoice Module

EMI invoices: the daily invoice cycle that bills the next unpaid instalment of
every active loan, overdue marking, and the payment linkage the ledger uses.

An invoice's storage id is derived from (loan, year, month), so a billing
period can hold at most one invoice however often the cycle runs.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import threading

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus, Payment
from .lender import LenderProfile
from .numbering import DocumentNumberer
from .money import ZERO, round_money
from .exceptions import InvalidStateError, NotFoundError, InvalidInputError
from .logging_config import get_logger


logger = get_logger(__name__)


class InvoiceStatus(Enum):
    """Invoice status"""
    PENDING = "pending"
    ISSUED = "issued"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


OPEN_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE})


class InvoiceType(Enum):
    EMI_RECEIPT = "emi_receipt"


@dataclass(frozen=True)
class InvoicePeriod:
    """Billing month"""
    month: int
    year: int


@dataclass
class Invoice(StorageRecord):
    """Bill for one scheduled EMI"""
    invoice_number: str
    loan_id: str
    customer_id: str
    period: InvoicePeriod
    invoice_date: date
    due_date: date
    amount_due: Decimal
    balance_due: Decimal
    amount_paid: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.PENDING
    invoice_type: InvoiceType = InvoiceType.EMI_RECEIPT
    payment_ids: List[str] = field(default_factory=list)  # Payments credited, oldest first

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass
class InvoiceRunResult:
    """Outcome of one invoice cycle"""
    as_of: date
    created: List[Invoice] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)       # Loan IDs already billed or fully scheduled
    failed: Dict[str, str] = field(default_factory=dict)   # Loan ID -> error message
    marked_overdue: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "created": len(self.created),
            "invoice_numbers": [invoice.invoice_number for invoice in self.created],
            "skipped": len(self.skipped),
            "failed": dict(self.failed),
            "marked_overdue": self.marked_overdue
        }


def invoice_key(loan_id: str, year: int, month: int) -> str:
    """Storage id of the invoice for one loan and billing month"""
    return f"INVKEY-{loan_id}-{year}-{month:02d}"


class InvoiceManager:
    """
    Generates and tracks EMI invoices
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_manager: LoanManager,
        lender_profile: LenderProfile,
        numberer: DocumentNumberer
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.lender_profile = lender_profile
        self.numberer = numberer
        self.table_name = "invoices"
        self._run_lock = threading.Lock()

    def run_invoice_generation(self, as_of: Optional[date] = None) -> InvoiceRunResult:
        """
        Bill the next unpaid instalment of every active loan

        Safe to run any number of times: a loan already billed for the period
        of its next instalment is skipped. A failure on one loan is logged and
        reported in the result; the remaining loans are still processed. Loans
        themselves are never modified.

        Args:
            as_of: Business date of the run (defaults to today, UTC)

        Returns:
            InvoiceRunResult
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        result = InvoiceRunResult(as_of=as_of)

        with self._run_lock:
            candidates = self.storage.find(self.loan_manager.loans_table, {"status": LoanStatus.ACTIVE.value})
            for loan_data in candidates:
                loan_id = loan_data.get('id', '<unknown>')
                try:
                    invoice = self._bill_next_instalment(loan_data, as_of)
                except Exception as e:
                    result.failed[loan_id] = str(e) or e.__class__.__name__
                    logger.exception("Invoice generation failed for loan", extra={
                        "action": "invoice.generate", "resource": loan_id
                    })
                    continue
                if invoice:
                    result.created.append(invoice)
                else:
                    result.skipped.append(loan_id)

            try:
                result.marked_overdue = self.mark_overdue_invoices(as_of)
            except Exception:
                logger.exception("Overdue marking failed", extra={"action": "invoice.mark_overdue"})

        self.audit_trail.log_event(
            event_type=AuditEventType.INVOICE_RUN_COMPLETED,
            entity_type="invoice_run",
            entity_id=as_of.isoformat(),
            metadata=result.to_dict()
        )
        logger.info("Invoice cycle completed", extra={
            "action": "invoice.run", "extra": result.to_dict()
        })
        return result

    def _bill_next_instalment(self, loan_data: Dict[str, Any], as_of: date) -> Optional[Invoice]:
        loan: Loan = self.loan_manager.loan_from_record(loan_data)
        if loan.status != LoanStatus.ACTIVE or loan.remaining_balance <= 0:
            return None

        entry = loan.next_schedule_entry
        if entry is None:
            return None

        period = InvoicePeriod(month=entry.due_date.month, year=entry.due_date.year)
        key = invoice_key(loan.id, period.year, period.month)

        lender = self.lender_profile.get_lender()
        with self.storage.atomic():
            if self.storage.exists(self.table_name, key):
                return None

            now = datetime.now(timezone.utc)
            invoice = Invoice(
                id=key,
                created_at=now,
                updated_at=now,
                invoice_number=self.numberer.next_number("invoice", lender.invoice_prefix, as_of.year),
                loan_id=loan.id,
                customer_id=loan.customer_id,
                period=period,
                invoice_date=as_of,
                due_date=entry.due_date,
                amount_due=entry.emi,
                balance_due=entry.emi
            )
            self._save_invoice(invoice)

        self.audit_trail.log_event(
            event_type=AuditEventType.INVOICE_CREATED,
            entity_type="invoice",
            entity_id=invoice.id,
            metadata={
                "invoice_number": invoice.invoice_number,
                "loan_id": loan.id,
                "period": f"{period.year}-{period.month:02d}",
                "amount_due": invoice.amount_due
            }
        )
        return invoice

    def mark_overdue_invoices(self, as_of: Optional[date] = None) -> int:
        """Flag pending and issued invoices whose due date has passed"""
        as_of = as_of or datetime.now(timezone.utc).date()
        count = 0
        for invoice in self.list_invoices():
            if invoice.status in (InvoiceStatus.PENDING, InvoiceStatus.ISSUED) and invoice.due_date < as_of:
                invoice.status = InvoiceStatus.OVERDUE
                invoice.updated_at = datetime.now(timezone.utc)
                self._save_invoice(invoice)
                count += 1
        return count

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        data = self.storage.load(self.table_name, invoice_id)
        if data:
            return self._invoice_from_dict(data)
        return None

    def require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        matches = self.storage.find(self.table_name, {"invoice_number": invoice_number})
        if matches:
            return self._invoice_from_dict(matches[0])
        return None

    def list_invoices(
        self,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Union[str, InvoiceStatus, None] = None
    ) -> List[Invoice]:
        """List invoices, most recent invoice date first"""
        filters = {}
        if loan_id:
            filters['loan_id'] = loan_id
        if customer_id:
            filters['customer_id'] = customer_id
        if status is not None:
            filters['status'] = status.value if isinstance(status, InvoiceStatus) else status

        invoices = [self._invoice_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        invoices.sort(key=lambda i: (i.invoice_date, i.invoice_number), reverse=True)
        return invoices

    def cancel_invoice(self, invoice_id: str) -> Invoice:
        """
        Cancel an unpaid invoice

        Raises:
            InvalidStateError: If the invoice is paid, already cancelled, or
                has money applied to it
        """
        invoice = self.require_invoice(invoice_id)
        if not invoice.is_open:
            raise InvalidStateError(f"Cannot cancel a {invoice.status.value} invoice")
        if invoice.amount_paid > 0:
            raise InvalidStateError("Cannot cancel an invoice with payments applied")

        invoice.status = InvoiceStatus.CANCELLED
        invoice.updated_at = datetime.now(timezone.utc)
        self._save_invoice(invoice)

        self.audit_trail.log_event(
            event_type=AuditEventType.INVOICE_CANCELLED,
            entity_type="invoice",
            entity_id=invoice.id,
            metadata={"invoice_number": invoice.invoice_number}
        )
        return invoice

    def delete_invoice(self, invoice_id: str) -> bool:
        invoice = self.require_invoice(invoice_id)
        self.storage.delete(self.table_name, invoice.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.INVOICE_DELETED,
            entity_type="invoice",
            entity_id=invoice.id,
            metadata={"invoice_number": invoice.invoice_number, "status": invoice.status}
        )
        return True

    def apply_payment(self, payment: Payment) -> Optional[Invoice]:
        """
        Credit a payment to the oldest open invoice of its loan

        The invoice keeps the id of every payment credited to it, and the
        caller stores the invoice id on the payment so ``revert_payment`` can
        find it again.

        Returns:
            The updated invoice, or None if the loan has no open invoice
        """
        if payment.amount_paid <= 0:
            raise InvalidInputError("Payment amount must be positive")

        open_invoices = [i for i in self.list_invoices(loan_id=payment.loan_id) if i.is_open]
        if not open_invoices:
            return None

        invoice = min(open_invoices, key=lambda i: (i.period.year, i.period.month))
        invoice.amount_paid = round_money(invoice.amount_paid + payment.amount_paid)
        invoice.balance_due = max(ZERO, round_money(invoice.amount_due - invoice.amount_paid))
        invoice.payment_ids.append(payment.id)
        if invoice.balance_due <= 0:
            invoice.status = InvoiceStatus.PAID
        invoice.updated_at = datetime.now(timezone.utc)
        self._save_invoice(invoice)
        return invoice

    def revert_payment(self, payment: Payment) -> Optional[Invoice]:
        """
        Take one payment's credit back off the invoice it was applied to

        Returns:
            The updated invoice, or None if the payment was never applied
        """
        invoice = self.get_invoice(payment.invoice_id) if payment.invoice_id else None
        if invoice is None:
            invoice = next(
                (i for i in self.list_invoices(loan_id=payment.loan_id) if payment.id in i.payment_ids),
                None
            )
        if invoice is None or payment.id not in invoice.payment_ids:
            return None

        invoice.payment_ids.remove(payment.id)
        invoice.amount_paid = max(ZERO, round_money(invoice.amount_paid - payment.amount_paid))
        invoice.balance_due = max(ZERO, round_money(invoice.amount_due - invoice.amount_paid))
        if invoice.balance_due > 0 and invoice.status != InvoiceStatus.CANCELLED:
            invoice.status = InvoiceStatus.PENDING
        invoice.updated_at = datetime.now(timezone.utc)
        self._save_invoice(invoice)
        return invoice

    def _save_invoice(self, invoice: Invoice) -> None:
        self.storage.save(self.table_name, invoice.id, invoice.to_dict())

    def _invoice_from_dict(self, data: Dict) -> Invoice:
        return Invoice(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            invoice_number=data['invoice_number'],
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            period=InvoicePeriod(month=int(data['period']['month']), year=int(data['period']['year'])),
            invoice_date=date.fromisoformat(data['invoice_date']),
            due_date=date.fromisoformat(data['due_date']),
            amount_due=Decimal(data['amount_due']),
            balance_due=Decimal(data['balance_due']),
            amount_paid=Decimal(data.get('amount_paid', '0.00')),
            status=InvoiceStatus(data['status']),
            invoice_type=InvoiceType(data.get('invoice_type', InvoiceType.EMI_RECEIPT.value)),
            payment_ids=list(data.get('payment_ids') or [])
        )
