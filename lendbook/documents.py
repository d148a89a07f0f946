"""
Document Payloads

Assembles the data behind the lender's documents (loan agreement, account
statement, payment receipt, EMI invoice, no-objection certificate and
settlement certificate) and hands it to a DocumentSink. Layout and rendering
belong to the sink; every amount here is already computed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .customers import CustomerManager
from .lender import Lender, LenderProfile
from .loans import Loan, LoanManager, LoanStatus, TERMINAL_STATUSES
from .invoices import InvoiceManager
from .payments import PaymentLedger
from .numbering import DocumentNumberer
from .money import ZERO, round_money
from .storage import to_storage_value
from .exceptions import InvalidOperationError, InvalidStateError
from .logging_config import get_logger


logger = get_logger(__name__)


@dataclass
class Document:
    """A computed document ready for rendering"""
    document_type: str
    document_number: str
    generated_at: datetime
    lender: Dict[str, Any]
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return f"{self.document_type}-{self.document_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type,
            "document_number": self.document_number,
            "generated_at": self.generated_at.isoformat(),
            "lender": self.lender,
            "data": to_storage_value(self.data)
        }


class DocumentSink(ABC):
    """Abstract receiver of generated documents"""

    @abstractmethod
    def deliver(self, document: Document) -> None:
        """Render, store or send the document"""
        pass


class RecordingDocumentSink(DocumentSink):
    """Keeps delivered documents in memory"""

    def __init__(self):
        self.documents: List[Document] = []

    def deliver(self, document: Document) -> None:
        self.documents.append(document)

    @property
    def last(self) -> Optional[Document]:
        return self.documents[-1] if self.documents else None


class DocumentService:
    """
    Builds document payloads from loans, payments and invoices
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        payment_ledger: PaymentLedger,
        invoice_manager: InvoiceManager,
        customer_manager: CustomerManager,
        lender_profile: LenderProfile,
        numberer: DocumentNumberer,
        audit_trail: AuditTrail,
        sink: Optional[DocumentSink] = None
    ):
        self.loan_manager = loan_manager
        self.payment_ledger = payment_ledger
        self.invoice_manager = invoice_manager
        self.customer_manager = customer_manager
        self.lender_profile = lender_profile
        self.numberer = numberer
        self.audit_trail = audit_trail
        self.sink = sink or RecordingDocumentSink()

    def loan_agreement(self, loan_id: str) -> Document:
        """Agreement with the full terms and repayment schedule; numbered from the contract sequence"""
        loan = self.loan_manager.require_loan(loan_id)
        lender = self.lender_profile.get_lender()
        number = self.numberer.next_number("contract", lender.contract_prefix)

        data = {
            "borrower": self._borrower(loan),
            "loan": self._loan_terms(loan),
            "amortization_schedule": [entry.to_dict() for entry in loan.amortization_schedule],
            "terms_and_conditions": lender.terms_and_conditions
        }
        return self._emit("loan_agreement", number, lender, data, loan.id)

    def loan_statement(self, loan_id: str) -> Document:
        """Account statement: terms, payment history and current position"""
        loan = self.loan_manager.require_loan(loan_id)
        lender = self.lender_profile.get_lender()
        summary = self.payment_ledger.get_loan_payment_summary(loan_id)
        payments = sorted(summary["payments"], key=lambda p: (p.payment_date, p.payment_number))

        data = {
            "borrower": self._borrower(loan),
            "loan": self._loan_terms(loan),
            "payments": [
                {
                    "payment_number": p.payment_number,
                    "payment_date": p.payment_date,
                    "amount_paid": p.amount_paid,
                    "principal_portion": p.principal_portion,
                    "interest_portion": p.interest_portion,
                    "balance_after_payment": p.balance_after_payment,
                    "payment_method": p.payment_method,
                    "receipt_number": p.receipt_number
                }
                for p in payments
            ],
            "total_paid": summary["total_paid"],
            "remaining_balance": loan.remaining_balance,
            "payments_received": loan.payments_received,
            "progress_percentage": loan.progress_percentage
        }
        return self._emit("loan_statement", loan.loan_number, lender, data, loan.id)

    def payment_receipt(self, payment_id: str) -> Document:
        payment = self.payment_ledger.require_payment(payment_id)
        loan = self.loan_manager.require_loan(payment.loan_id)
        lender = self.lender_profile.get_lender()

        data = {
            "borrower": self._borrower(loan),
            "loan_number": loan.loan_number,
            "payment_number": payment.payment_number,
            "payment_date": payment.payment_date,
            "amount_paid": payment.amount_paid,
            "principal_portion": payment.principal_portion,
            "interest_portion": payment.interest_portion,
            "balance_after_payment": payment.balance_after_payment,
            "payment_method": payment.payment_method,
            "reference_id": payment.reference_id,
            "bank_details": payment.bank_details.to_dict() if payment.bank_details else None,
            "is_settlement": payment.is_settlement
        }
        return self._emit("payment_receipt", payment.receipt_number or payment.id, lender, data, loan.id)

    def invoice_document(self, invoice_id: str) -> Document:
        """
        Invoice for an EMI that has money applied to it

        Raises:
            InvalidOperationError: If nothing has been paid on the invoice
        """
        invoice = self.invoice_manager.require_invoice(invoice_id)
        if invoice.amount_paid <= 0:
            raise InvalidOperationError("Invoice can only be generated once a payment is applied")
        loan = self.loan_manager.require_loan(invoice.loan_id)
        lender = self.lender_profile.get_lender()

        data = {
            "borrower": self._borrower(loan),
            "loan_number": loan.loan_number,
            "period": {"month": invoice.period.month, "year": invoice.period.year},
            "invoice_date": invoice.invoice_date,
            "due_date": invoice.due_date,
            "amount_due": invoice.amount_due,
            "amount_paid": invoice.amount_paid,
            "balance_due": invoice.balance_due,
            "status": invoice.status,
            "payment_ids": list(invoice.payment_ids)
        }
        return self._emit("invoice", invoice.invoice_number, lender, data, loan.id)

    def no_objection_certificate(self, loan_id: str) -> Document:
        """
        Raises:
            InvalidStateError: Unless the loan is completed or closed
        """
        loan = self.loan_manager.require_loan(loan_id)
        if loan.status not in TERMINAL_STATUSES:
            raise InvalidStateError("NOC can only be generated for closed or completed loans")
        lender = self.lender_profile.get_lender()

        data = {
            "borrower": self._borrower(loan),
            "loan": self._loan_terms(loan),
            "closure_status": loan.status,
            "closure_date": loan.updated_at.date(),
            "total_paid": round_money(sum(
                (p.amount_paid for p in self.loan_manager.get_loan_payments(loan.id)), ZERO
            ))
        }
        return self._emit("noc", loan.loan_number, lender, data, loan.id)

    def settlement_certificate(self, loan_id: str) -> Document:
        """
        Raises:
            InvalidStateError: If the loan was not closed by a settlement
        """
        loan = self.loan_manager.require_loan(loan_id)
        if loan.status != LoanStatus.CLOSED or loan.settlement is None:
            raise InvalidStateError("Settlement certificate requires a settled loan")
        lender = self.lender_profile.get_lender()

        data = {
            "borrower": self._borrower(loan),
            "loan": self._loan_terms(loan),
            "settlement": loan.settlement.to_dict()
        }
        return self._emit("settlement_certificate", loan.loan_number, lender, data, loan.id)

    def _borrower(self, loan: Loan) -> Dict[str, Any]:
        customer = self.customer_manager.get_customer(loan.customer_id)
        if customer is None:
            return {"customer_id": loan.customer_id}
        return {
            "customer_id": customer.id,
            "name": customer.full_name,
            "email": customer.email,
            "phone": customer.phone,
            "address": vars(customer.address) if customer.address else None,
            "pan_number": customer.pan_number
        }

    @staticmethod
    def _loan_terms(loan: Loan) -> Dict[str, Any]:
        return {
            "loan_number": loan.loan_number,
            "principal": loan.principal,
            "monthly_interest_rate": loan.monthly_interest_rate,
            "loan_duration_months": loan.loan_duration_months,
            "interest_type": loan.interest_type,
            "monthly_emi": loan.monthly_emi,
            "total_amount_payable": loan.total_amount_payable,
            "total_interest_amount": loan.total_interest_amount,
            "start_date": loan.start_date,
            "end_date": loan.end_date,
            "status": loan.status
        }

    @staticmethod
    def _lender_block(lender: Lender) -> Dict[str, Any]:
        return {
            "business_name": lender.business_name,
            "owner_name": lender.owner_name,
            "email": lender.email,
            "phone": lender.phone,
            "address": vars(lender.address) if lender.address else None,
            "pan_number": lender.pan_number,
            "bank_details": vars(lender.bank_details) if lender.bank_details else None
        }

    def _emit(self, document_type: str, number: str, lender: Lender,
              data: Dict[str, Any], loan_id: str) -> Document:
        document = Document(
            document_type=document_type,
            document_number=number,
            generated_at=datetime.now(timezone.utc),
            lender=self._lender_block(lender),
            data=data
        )
        self.sink.deliver(document)

        self.audit_trail.log_event(
            event_type=AuditEventType.DOCUMENT_GENERATED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"document_type": document_type, "document_number": number}
        )
        logger.info("Document generated", extra={
            "action": "document.generate", "resource": loan_id,
            "extra": {"document_type": document_type, "document_number": number}
        })
        return document
