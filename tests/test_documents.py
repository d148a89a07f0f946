"""
Tests for document payloads
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lendbook.config import LendbookConfig
from lendbook.storage import InMemoryStorage
from lendbook.system import LendingSystem
from lendbook.documents import RecordingDocumentSink
from lendbook.audit import AuditEventType
from lendbook.exceptions import InvalidOperationError, InvalidStateError, NotFoundError


class TestDocumentService:
    """Test document generation for a flat-rate loan of 10000 at 5% for 12 months"""

    def setup_method(self):
        self.sink = RecordingDocumentSink()
        self.system = LendingSystem(
            config=LendbookConfig(storage_backend="memory"),
            storage=InMemoryStorage(),
            document_sink=self.sink
        )
        self.documents = self.system.document_service
        self.customer = self.system.customer_manager.create_customer(
            first_name="Asha", last_name="Menon", email="asha@example.com", phone="+91-9000000040"
        )
        self.loan = self.system.loan_manager.create_loan(
            self.customer.id, Decimal('10000'), Decimal('5'), 12, start_date=date(2025, 1, 15)
        )
        self.system.loan_manager.approve_loan(self.loan.id)

    def pay(self, amount, payment_date=date(2025, 2, 10)):
        return self.system.payment_ledger.record_payment(self.loan.id, Decimal(amount), payment_date=payment_date)

    def test_loan_agreement(self):
        document = self.documents.loan_agreement(self.loan.id)
        year = datetime.now(timezone.utc).year

        assert document.document_type == "loan_agreement"
        assert document.document_number == f"CONT-{year}-0001"
        assert document.data["borrower"]["name"] == "Asha Menon"
        assert document.data["loan"]["monthly_emi"] == Decimal('1333.33')
        assert len(document.data["amortization_schedule"]) == 12
        assert document.lender["business_name"] == "Your Finance Company"
        assert self.sink.last is document

    def test_agreements_numbered_sequentially(self):
        self.documents.loan_agreement(self.loan.id)
        second = self.documents.loan_agreement(self.loan.id)
        assert second.document_number.endswith("-0002")

    def test_loan_statement(self):
        self.pay('1333.33')
        self.pay('700', payment_date=date(2025, 3, 12))

        document = self.documents.loan_statement(self.loan.id)
        data = document.to_dict()["data"]

        assert document.document_number == self.loan.loan_number
        assert [p["payment_number"] for p in data["payments"]] == [1, 2]
        assert data["payments"][0]["payment_method"] == "cash"
        assert data["total_paid"] == "2033.33"
        assert data["remaining_balance"] == "13966.63"

    def test_payment_receipt(self):
        payment = self.pay('700')
        document = self.documents.payment_receipt(payment.id)

        assert document.document_type == "payment_receipt"
        assert document.document_number == "RCPT-2025-0001"
        assert document.data["interest_portion"] == Decimal('500.00')
        assert document.data["principal_portion"] == Decimal('200.00')
        assert document.filename == "payment_receipt-RCPT-2025-0001"

    def test_receipt_for_missing_payment(self):
        with pytest.raises(NotFoundError):
            self.documents.payment_receipt("missing")

    def test_invoice_document_requires_payment(self):
        invoice = self.system.invoice_manager.run_invoice_generation(as_of=date(2025, 2, 1)).created[0]
        with pytest.raises(InvalidOperationError):
            self.documents.invoice_document(invoice.id)

        self.pay('1333.33')
        document = self.documents.invoice_document(invoice.id)
        assert document.document_number == "INV-2025-0001"
        assert document.data["period"] == {"month": 2, "year": 2025}
        assert document.data["balance_due"] == Decimal('0.00')

    def test_noc_requires_terminal_loan(self):
        with pytest.raises(InvalidStateError):
            self.documents.no_objection_certificate(self.loan.id)

        small = self.system.loan_manager.create_loan(
            self.customer.id, Decimal('1000'), Decimal('1'), 2, start_date=date(2025, 1, 15)
        )
        self.system.loan_manager.approve_loan(small.id)
        self.system.payment_ledger.record_payment(small.id, Decimal('1020'), payment_date=date(2025, 2, 10))

        document = self.documents.no_objection_certificate(small.id)
        assert document.document_type == "noc"
        assert document.data["closure_status"].value == "completed"
        assert document.data["total_paid"] == Decimal('1020.00')

    def test_settlement_certificate(self):
        with pytest.raises(InvalidStateError):
            self.documents.settlement_certificate(self.loan.id)

        self.pay('1333.33')
        self.system.loan_manager.foreclose_loan(
            self.loan.id, discount=Decimal('500'), settlement_date=date(2025, 3, 1)
        )

        document = self.documents.settlement_certificate(self.loan.id)
        settlement = document.data["settlement"]
        assert settlement["original_balance"] == "14666.63"
        assert settlement["settlement_amount"] == "14166.63"
        assert settlement["discount"] == "500.00"

        # Foreclosed loans also qualify for a NOC
        assert self.documents.no_objection_certificate(self.loan.id).document_type == "noc"

    def test_generation_is_audited(self):
        self.documents.loan_agreement(self.loan.id)

        events = self.system.audit_trail.get_events_by_type(AuditEventType.DOCUMENT_GENERATED)
        assert len(events) == 1
        assert events[0].entity_id == self.loan.id
        assert events[0].metadata["document_type"] == "loan_agreement"
