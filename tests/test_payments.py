"""
Tests for the payment ledger

Covers interest-first allocation, loan completion, the time-boxed edit and
reversal window, and reconciliation of cached loan figures.
"""

import threading

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date

from lendbook.config import LendbookConfig
from lendbook.storage import InMemoryStorage
from lendbook.system import LendingSystem
from lendbook.loans import LoanStatus, PaymentMethod, BankDetails
from lendbook.invoices import InvoiceStatus
from lendbook.audit import AuditEventType
from lendbook.exceptions import (
    NotFoundError, InvalidInputError, InvalidStateError, InvalidOperationError,
    NotAllowedError, AlreadySettledError
)


class FakeClock:
    """Controllable UTC clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class LedgerTestCase:
    """Shared setup: one active flat-rate loan of 10000 at 5% for 12 months"""

    def setup_method(self):
        self.clock = FakeClock(datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc))
        self.system = LendingSystem(
            config=LendbookConfig(storage_backend="memory"),
            storage=InMemoryStorage(),
            clock=self.clock
        )
        self.ledger = self.system.payment_ledger
        self.loan_manager = self.system.loan_manager
        self.customer = self.system.customer_manager.create_customer(
            first_name="Kiran", last_name="Rao", email="kiran@example.com", phone="+91-9000000010"
        )
        self.loan = self.loan_manager.create_loan(
            self.customer.id, Decimal('10000'), Decimal('5'), 12, start_date=date(2025, 1, 15)
        )
        self.loan_manager.approve_loan(self.loan.id)


class TestRecordPayment(LedgerTestCase):
    """Test payment allocation"""

    def test_partial_payment_goes_to_interest_first(self):
        """Test 300 against a 500-interest slot is all interest"""
        payment = self.ledger.record_payment(self.loan.id, Decimal('300'))

        assert payment.payment_number == 1
        assert payment.interest_portion == Decimal('300.00')
        assert payment.principal_portion == Decimal('0.00')
        assert payment.balance_after_payment == Decimal('15699.96')
        assert payment.payment_method == PaymentMethod.CASH
        assert payment.payment_date == date(2025, 1, 20)

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.remaining_balance == Decimal('15699.96')
        assert loan.payments_received == 1

    def test_second_payment_splits_interest_and_principal(self):
        """Test 700 against the next 500-interest slot splits 500/200"""
        self.ledger.record_payment(self.loan.id, Decimal('300'))
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))

        assert payment.payment_number == 2
        assert payment.interest_portion == Decimal('500.00')
        assert payment.principal_portion == Decimal('200.00')
        assert self.loan_manager.get_loan(self.loan.id).remaining_balance == Decimal('14999.96')

    def test_full_repayment_completes_loan(self):
        self.ledger.record_payment(self.loan.id, Decimal('15999.96'))

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.remaining_balance == Decimal('0')

        completed = self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_COMPLETED)
        assert [e.entity_id for e in completed] == [self.loan.id]

    def test_overpayment_floors_balance_at_zero(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('20000'))
        assert payment.balance_after_payment == Decimal('0')
        assert self.loan_manager.get_loan(self.loan.id).remaining_balance == Decimal('0')

    def test_approved_loan_becomes_active(self):
        pending = self.loan_manager.create_loan(self.customer.id, Decimal('1000'), Decimal('1'), 6)
        self.loan_manager.update_loan_status(pending.id, "approved")

        self.ledger.record_payment(pending.id, Decimal('100'))
        assert self.loan_manager.get_loan(pending.id).status == LoanStatus.ACTIVE

    def test_payment_after_schedule_exhausted_is_all_principal(self):
        """Test extra payments beyond the tenure reduce principal only"""
        short = self.loan_manager.create_loan(self.customer.id, Decimal('1000'), Decimal('0'), 1)
        self.loan_manager.approve_loan(short.id)

        self.ledger.record_payment(short.id, Decimal('400'))
        payment = self.ledger.record_payment(short.id, Decimal('200'))

        assert payment.interest_portion == Decimal('0')
        assert payment.principal_portion == Decimal('200.00')
        loan = self.loan_manager.get_loan(short.id)
        assert loan.payments_received == 2
        assert loan.remaining_balance == Decimal('400.00')

    def test_metadata_stored(self):
        payment = self.ledger.record_payment(
            self.loan.id, Decimal('1333.33'), payment_method="bank_transfer",
            payment_date=date(2025, 2, 14), reference_id="UTR123",
            notes="February EMI", bank_details=BankDetails(bank_name="SBI", transaction_id="T1")
        )
        stored = self.ledger.get_payment(payment.id)
        assert stored.payment_method == PaymentMethod.BANK_TRANSFER
        assert stored.payment_date == date(2025, 2, 14)
        assert stored.reference_id == "UTR123"
        assert stored.bank_details.bank_name == "SBI"
        assert stored.receipt_number == "RCPT-2025-0001"

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-5'), "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidInputError):
            self.ledger.record_payment(self.loan.id, amount)

    def test_unknown_method(self):
        with pytest.raises(InvalidInputError):
            self.ledger.record_payment(self.loan.id, Decimal('10'), payment_method="barter")

    def test_pending_loan_rejected(self):
        pending = self.loan_manager.create_loan(self.customer.id, Decimal('1000'), Decimal('1'), 6)
        with pytest.raises(InvalidStateError):
            self.ledger.record_payment(pending.id, Decimal('100'))

    def test_completed_loan_rejected(self):
        self.ledger.record_payment(self.loan.id, Decimal('15999.96'))
        with pytest.raises(InvalidStateError):
            self.ledger.record_payment(self.loan.id, Decimal('1'))

    def test_zero_balance_active_loan_rejected(self):
        loan = self.loan_manager.get_loan(self.loan.id)
        loan.remaining_balance = Decimal('0')
        self.loan_manager.save_loan(loan)

        with pytest.raises(AlreadySettledError):
            self.ledger.record_payment(self.loan.id, Decimal('1'))

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.ledger.record_payment("missing", Decimal('1'))

    def test_payment_applied_to_open_invoice(self):
        self.system.invoice_manager.run_invoice_generation(as_of=date(2025, 2, 1))
        payment = self.ledger.record_payment(self.loan.id, Decimal('1333.33'))

        invoice = self.system.invoice_manager.list_invoices(loan_id=self.loan.id)[0]
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment_ids == [payment.id]
        assert self.ledger.get_payment(payment.id).invoice_id == invoice.id
        assert invoice.balance_due == Decimal('0')


class TestReversal(LedgerTestCase):
    """Test the reversal window and its effects"""

    def test_reverse_within_window(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=23)

        self.ledger.reverse_payment(payment.id)

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.remaining_balance == Decimal('15999.96')
        assert loan.payments_received == 0
        assert self.ledger.get_payment(payment.id) is None

        reversed_events = self.system.audit_trail.get_events_by_type(AuditEventType.PAYMENT_REVERSED)
        assert len(reversed_events) == 1

    def test_reverse_after_window_rejected(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=25)

        with pytest.raises(NotAllowedError):
            self.ledger.reverse_payment(payment.id)
        assert self.ledger.get_payment(payment.id) is not None

    def test_reverse_exactly_at_window_edge(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=24)
        self.ledger.reverse_payment(payment.id)

    def test_reverse_reopens_completed_loan(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('15999.96'))
        self.ledger.reverse_payment(payment.id)

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.remaining_balance == Decimal('15999.96')

    def test_reverse_restores_invoice(self):
        self.system.invoice_manager.run_invoice_generation(as_of=date(2025, 2, 1))
        payment = self.ledger.record_payment(self.loan.id, Decimal('1333.33'))
        self.ledger.reverse_payment(payment.id)

        invoice = self.system.invoice_manager.list_invoices(loan_id=self.loan.id)[0]
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.amount_paid == Decimal('0')
        assert invoice.balance_due == Decimal('1333.33')
        assert invoice.payment_ids == []

    def test_settlement_cannot_be_reversed(self):
        self.loan_manager.foreclose_loan(self.loan.id)
        settlement = self.loan_manager.get_loan_payments(self.loan.id)[-1]

        with pytest.raises(InvalidOperationError):
            self.ledger.reverse_payment(settlement.id)

    def test_reverse_rejected_after_foreclosure(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.loan_manager.foreclose_loan(self.loan.id)

        with pytest.raises(InvalidStateError):
            self.ledger.reverse_payment(payment.id)

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.remaining_balance == Decimal('0')
        assert loan.payments_received == 2
        assert self.ledger.get_payment(payment.id) is not None

    def test_second_reversal_of_same_payment(self):
        self.ledger.record_payment(self.loan.id, Decimal('700'))
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.ledger.reverse_payment(payment.id)

        with pytest.raises(NotFoundError):
            self.ledger.reverse_payment(payment.id)

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.payments_received == 1
        assert loan.remaining_balance == Decimal('15299.96')

    def test_concurrent_reversals_apply_once(self):
        self.ledger.record_payment(self.loan.id, Decimal('700'))
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        barrier = threading.Barrier(2)
        outcomes = []

        def reverse():
            barrier.wait()
            try:
                self.ledger.reverse_payment(payment.id)
                outcomes.append("reversed")
            except NotFoundError:
                outcomes.append("not_found")

        threads = [threading.Thread(target=reverse) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["not_found", "reversed"]
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.payments_received == 1
        assert loan.remaining_balance == Decimal('15299.96')

    def test_reverse_one_of_several_invoice_payments(self):
        """Test reversing the earlier of two partial payments on one invoice"""
        self.system.invoice_manager.run_invoice_generation(as_of=date(2025, 2, 1))
        first = self.ledger.record_payment(self.loan.id, Decimal('500'))
        second = self.ledger.record_payment(self.loan.id, Decimal('300'))

        self.ledger.reverse_payment(first.id)

        invoice = self.system.invoice_manager.list_invoices(loan_id=self.loan.id)[0]
        assert invoice.amount_paid == Decimal('300.00')
        assert invoice.balance_due == Decimal('1033.33')
        assert invoice.payment_ids == [second.id]

        self.ledger.reverse_payment(second.id)
        invoice = self.system.invoice_manager.get_invoice(invoice.id)
        assert invoice.amount_paid == Decimal('0')
        assert invoice.payment_ids == []

    def test_settlement_payment_uses_ledger_clock(self):
        self.clock.advance(hours=3)
        self.loan_manager.foreclose_loan(self.loan.id)

        settlement = self.loan_manager.get_loan_payments(self.loan.id)[-1]
        assert settlement.created_at == self.clock.now
        assert settlement.payment_date == date(2025, 1, 20)

        # Still inside the window, but settlements never reverse
        with pytest.raises(InvalidOperationError):
            self.ledger.reverse_payment(settlement.id)

    def test_reverse_unknown_payment(self):
        with pytest.raises(NotFoundError):
            self.ledger.reverse_payment("missing")

    def test_custom_window(self):
        self.ledger.mutation_window = timedelta(hours=1)
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=2)
        with pytest.raises(NotAllowedError, match="1 hours"):
            self.ledger.reverse_payment(payment.id)


class TestUpdatePayment(LedgerTestCase):
    """Test time-boxed payment edits"""

    def test_update_metadata(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=2)

        updated = self.ledger.update_payment(
            payment.id, notes="Paid at branch", payment_method="cheque",
            reference_id="CHQ-77", payment_date="2025-01-19"
        )
        assert updated.notes == "Paid at branch"
        assert updated.payment_method == PaymentMethod.CHEQUE
        assert updated.payment_date == date(2025, 1, 19)
        assert updated.amount_paid == Decimal('700.00')

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.remaining_balance == Decimal('15299.96')

    def test_amount_change_rejected(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        with pytest.raises(InvalidOperationError):
            self.ledger.update_payment(payment.id, amount_paid=Decimal('800'))

    def test_update_after_window_rejected(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.clock.advance(hours=25)
        with pytest.raises(NotAllowedError):
            self.ledger.update_payment(payment.id, notes="late edit")

    def test_update_reversed_payment_not_found(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.ledger.reverse_payment(payment.id)

        with pytest.raises(NotFoundError):
            self.ledger.update_payment(payment.id, notes="too late")
        assert self.ledger.get_payment(payment.id) is None

    def test_update_on_foreclosed_loan_keeps_balances(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        self.loan_manager.foreclose_loan(self.loan.id)

        updated = self.ledger.update_payment(payment.id, reference_id="UTR-9")
        assert updated.reference_id == "UTR-9"

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.remaining_balance == Decimal('0')

    def test_update_bad_date(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('700'))
        with pytest.raises(InvalidInputError):
            self.ledger.update_payment(payment.id, payment_date="yesterday")


class TestPaymentQueries(LedgerTestCase):
    """Test listing, summaries and reconciliation"""

    def test_list_payments_by_date_range(self):
        self.ledger.record_payment(self.loan.id, Decimal('100'), payment_date=date(2025, 2, 1))
        self.ledger.record_payment(self.loan.id, Decimal('200'), payment_date=date(2025, 3, 1))
        self.ledger.record_payment(self.loan.id, Decimal('300'), payment_date=date(2025, 4, 1))

        payments = self.ledger.list_payments(loan_id=self.loan.id, date_from=date(2025, 2, 15), date_to=date(2025, 4, 1))
        assert [p.amount_paid for p in payments] == [Decimal('300.00'), Decimal('200.00')]
        assert len(self.ledger.list_payments(customer_id=self.customer.id)) == 3

    def test_require_payment(self):
        payment = self.ledger.record_payment(self.loan.id, Decimal('100'))
        assert self.ledger.require_payment(payment.id).amount_paid == Decimal('100.00')

        with pytest.raises(NotFoundError):
            self.ledger.require_payment("missing")

    def test_loan_payment_summary(self):
        self.ledger.record_payment(self.loan.id, Decimal('300'))
        self.ledger.record_payment(self.loan.id, Decimal('700'))

        summary = self.ledger.get_loan_payment_summary(self.loan.id)
        assert summary["total_payments"] == 2
        assert summary["total_paid"] == Decimal('1000.00')
        assert summary["total_interest"] == Decimal('800.00')
        assert summary["total_principal"] == Decimal('200.00')
        assert summary["remaining_balance"] == Decimal('14999.96')

    def test_reconcile_repairs_drift(self):
        self.ledger.record_payment(self.loan.id, Decimal('300'))
        self.ledger.record_payment(self.loan.id, Decimal('700'))

        loan = self.loan_manager.get_loan(self.loan.id)
        loan.remaining_balance = Decimal('12345.00')
        loan.payments_received = 7
        self.loan_manager.save_loan(loan)

        result = self.ledger.reconcile_loan(self.loan.id)
        assert result["changed"]
        assert result["after"]["remaining_balance"] == Decimal('14999.96')

        repaired = self.loan_manager.get_loan(self.loan.id)
        assert repaired.remaining_balance == Decimal('14999.96')
        assert repaired.payments_received == 2

        events = self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_RECONCILED)
        assert len(events) == 1

    def test_reconcile_consistent_loan_is_noop(self):
        self.ledger.record_payment(self.loan.id, Decimal('300'))
        result = self.ledger.reconcile_loan(self.loan.id)
        assert not result["changed"]

    def test_reconcile_completes_fully_paid_loan(self):
        self.ledger.record_payment(self.loan.id, Decimal('15999.96'))
        loan = self.loan_manager.get_loan(self.loan.id)
        loan.status = LoanStatus.ACTIVE
        loan.remaining_balance = Decimal('10')
        self.loan_manager.save_loan(loan)

        self.ledger.reconcile_loan(self.loan.id)
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.COMPLETED

    def test_reconcile_settled_loan(self):
        self.ledger.record_payment(self.loan.id, Decimal('300'))
        self.loan_manager.foreclose_loan(self.loan.id, discount=Decimal('500'))

        result = self.ledger.reconcile_loan(self.loan.id)
        assert not result["changed"]
        assert result["after"]["status"] == "closed"
