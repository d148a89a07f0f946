"""
Payment Ledger

Applies payments to a loan's schedule, reverses them, and keeps the loan's
cached ``remaining_balance`` and ``payments_received`` in step with the
payment history.

Allocation is interest-first: a payment settles the interest of the next
schedule slot before anything reduces principal. Once the schedule is
exhausted every rupee goes to principal.

Payments can be edited or reversed only within a short window after they
were recorded (24 hours by default).
"""

from datetime import timedelta, date
from typing import Dict, List, Optional, Any, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .loans import (
    BankDetails, Clock, LoanManager, LoanStatus, Payment, PaymentMethod,
    PAYABLE_STATUSES, parse_payment_method, utc_now
)
from .invoices import InvoiceManager
from .lender import LenderProfile
from .numbering import DocumentNumberer
from .money import ZERO, Numeric, round_money
from .exceptions import (
    AlreadySettledError, InvalidInputError, InvalidOperationError,
    InvalidStateError, NotAllowedError, NotFoundError
)
from .logging_config import get_logger


logger = get_logger(__name__)


class PaymentLedger:
    """
    Records, edits and reverses loan payments
    """

    EDITABLE_FIELDS = ('payment_method', 'payment_date', 'reference_id', 'notes', 'bank_details')

    def __init__(
        self,
        loan_manager: LoanManager,
        invoice_manager: InvoiceManager,
        lender_profile: LenderProfile,
        numberer: DocumentNumberer,
        audit_trail: AuditTrail,
        mutation_window_hours: int = 24,
        clock: Optional[Clock] = None
    ):
        self.loan_manager = loan_manager
        self.invoice_manager = invoice_manager
        self.lender_profile = lender_profile
        self.numberer = numberer
        self.audit_trail = audit_trail
        self.storage = loan_manager.storage
        self.mutation_window = timedelta(hours=mutation_window_hours)
        self.clock = clock or utc_now

    def record_payment(
        self,
        loan_id: str,
        amount_paid: Numeric,
        payment_method: Union[str, PaymentMethod, None] = PaymentMethod.CASH,
        payment_date: Optional[date] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        bank_details: Optional[BankDetails] = None
    ) -> Payment:
        """
        Apply a payment to the next unpaid schedule slot

        Args:
            loan_id: Loan being repaid
            amount_paid: Amount received (> 0)
            payment_method: cash, bank_transfer, upi, cheque or other
            payment_date: Date money was received (defaults to today)
            reference_id: External reference (UTR, cheque number)
            notes: Free text
            bank_details: Bank or UPI details of the transfer

        Returns:
            Created Payment

        Raises:
            InvalidInputError: If the amount is not positive
            NotFoundError: If the loan does not exist
            InvalidStateError: Unless the loan is approved or active
            AlreadySettledError: If nothing remains to be paid
        """
        try:
            amount = round_money(amount_paid)
        except ValueError as e:
            raise InvalidInputError(str(e))
        if amount <= 0:
            raise InvalidInputError("Payment amount must be positive")
        method = parse_payment_method(payment_method)

        with self.loan_manager.loan_lock(loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status not in PAYABLE_STATUSES:
                raise InvalidStateError("Can only record payments for active loans")
            if loan.remaining_balance <= 0:
                raise AlreadySettledError("Loan is already fully paid")

            slot = loan.next_schedule_entry
            if slot is not None:
                interest_portion = min(slot.interest, amount)
                principal_portion = round_money(amount - interest_portion)
            else:
                # Schedule exhausted: overpayment goes entirely to principal
                interest_portion = ZERO
                principal_portion = amount

            new_balance = max(ZERO, round_money(loan.remaining_balance - amount))
            now = self.clock()
            paid_on = payment_date or now.date()
            lender = self.lender_profile.get_lender()

            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                customer_id=loan.customer_id,
                payment_number=loan.payments_received + 1,
                amount_paid=amount,
                principal_portion=principal_portion,
                interest_portion=interest_portion,
                balance_after_payment=new_balance,
                payment_method=method,
                payment_date=paid_on,
                receipt_number=self.numberer.next_number("receipt", lender.receipt_prefix, paid_on.year),
                reference_id=reference_id,
                notes=notes,
                bank_details=bank_details
            )

            previous_status = loan.status
            loan.payments_received += 1
            loan.remaining_balance = new_balance
            if new_balance <= 0:
                loan.status = LoanStatus.COMPLETED
            elif loan.status == LoanStatus.APPROVED:
                loan.status = LoanStatus.ACTIVE

            with self.storage.atomic():
                self.loan_manager.save_loan(loan)
                invoice = self.invoice_manager.apply_payment(payment)
                payment.invoice_id = invoice.id if invoice else None
                self.loan_manager.save_payment(payment)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan.id,
                "payment_number": payment.payment_number,
                "amount_paid": amount,
                "interest_portion": interest_portion,
                "principal_portion": principal_portion,
                "remaining_balance": new_balance,
                "invoice_id": invoice.id if invoice else None
            }
        )
        if loan.status == LoanStatus.COMPLETED and previous_status != LoanStatus.COMPLETED:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"loan_number": loan.loan_number, "final_payment_id": payment.id}
            )
        logger.info("Payment recorded", extra={
            "action": "payment.record", "resource": payment.id,
            "extra": {"loan_id": loan.id, "amount": str(amount), "remaining_balance": str(new_balance)}
        })

        return payment

    def reverse_payment(self, payment_id: str) -> Payment:
        """
        Undo a recent payment: restore the loan balance and count, reopen a
        completed loan, revert the linked invoice, and delete the payment

        Raises:
            NotFoundError: If the payment does not exist (or was reversed concurrently)
            NotAllowedError: If the payment is older than the mutation window
            InvalidOperationError: For a foreclosure settlement payment
            InvalidStateError: If the loan has since been closed or settled
        """
        loan_id = self.require_payment(payment_id).loan_id

        with self.loan_manager.loan_lock(loan_id):
            # Re-read under the lock; a concurrent reversal may have deleted it
            payment = self.require_payment(payment_id)
            if payment.is_settlement:
                raise InvalidOperationError("Settlement payments cannot be reversed")
            self._check_window(payment, "deleted")

            loan = self.loan_manager.get_loan(loan_id)
            if loan and (loan.status == LoanStatus.CLOSED or loan.settlement is not None):
                raise InvalidStateError("Payments on a closed loan cannot be reversed")

            with self.storage.atomic():
                if loan:
                    loan.remaining_balance = min(
                        loan.total_amount_payable,
                        round_money(loan.remaining_balance + payment.amount_paid)
                    )
                    loan.payments_received = max(0, loan.payments_received - 1)
                    if loan.status == LoanStatus.COMPLETED:
                        loan.status = LoanStatus.ACTIVE
                    self.loan_manager.save_loan(loan)
                self.invoice_manager.revert_payment(payment)
                self.storage.delete(self.loan_manager.payments_table, payment.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_REVERSED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": payment.loan_id,
                "amount_paid": payment.amount_paid,
                "remaining_balance": loan.remaining_balance if loan else None
            }
        )
        logger.info("Payment reversed", extra={
            "action": "payment.reverse", "resource": payment.id,
            "extra": {"loan_id": payment.loan_id, "amount": str(payment.amount_paid)}
        })
        return payment

    def update_payment(self, payment_id: str, **changes) -> Payment:
        """
        Edit the descriptive fields of a recent payment

        The amount cannot change: reverse the payment and record it again.

        Raises:
            NotFoundError: If the payment does not exist (or was reversed concurrently)
            NotAllowedError: If the payment is older than the mutation window
            InvalidOperationError: If ``amount_paid`` (or another computed field) is passed
        """
        forbidden = set(changes) - set(self.EDITABLE_FIELDS)
        if forbidden:
            raise InvalidOperationError(
                f"Cannot modify {', '.join(sorted(forbidden))}; reverse the payment and record it again"
            )
        loan_id = self.require_payment(payment_id).loan_id

        with self.loan_manager.loan_lock(loan_id):
            payment = self.require_payment(payment_id)
            self._check_window(payment, "modified")

            for name, value in changes.items():
                if value is None:
                    continue
                if name == 'payment_method':
                    value = parse_payment_method(value)
                elif name == 'payment_date' and not isinstance(value, date):
                    try:
                        value = date.fromisoformat(str(value)[:10])
                    except ValueError:
                        raise InvalidInputError(f"Invalid payment date: {value!r}")
                elif name == 'bank_details' and isinstance(value, dict):
                    value = BankDetails.from_dict(value)
                setattr(payment, name, value)

            payment.updated_at = self.clock()
            self.loan_manager.save_payment(payment)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_UPDATED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={"changed_fields": sorted(k for k, v in changes.items() if v is not None)}
        )
        return payment

    def _check_window(self, payment: Payment, verb: str) -> None:
        age = self.clock() - payment.created_at
        if age > self.mutation_window:
            hours = int(self.mutation_window.total_seconds() // 3600)
            raise NotAllowedError(f"Payments can only be {verb} within {hours} hours")

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.loan_manager.get_payment(payment_id)

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def list_payments(
        self,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[Payment]:
        """List payments, most recent payment date first"""
        filters = {}
        if loan_id:
            filters['loan_id'] = loan_id
        if customer_id:
            filters['customer_id'] = customer_id

        records = self.storage.find_between(
            self.loan_manager.payments_table,
            'payment_date',
            start=date_from.isoformat() if date_from else None,
            end=date_to.isoformat() if date_to else None,
            filters=filters
        )
        payments = [self.loan_manager._payment_from_dict(data) for data in records]
        payments.sort(key=lambda p: (p.payment_date, p.created_at), reverse=True)
        return payments

    def get_loan_payment_summary(self, loan_id: str) -> Dict[str, Any]:
        """Payment history of a loan with totals"""
        loan = self.loan_manager.require_loan(loan_id)
        payments = self.list_payments(loan_id=loan_id)
        return {
            "loan_number": loan.loan_number,
            "payments": payments,
            "total_payments": len(payments),
            "total_paid": round_money(sum((p.amount_paid for p in payments), ZERO)),
            "total_interest": round_money(sum((p.interest_portion for p in payments), ZERO)),
            "total_principal": round_money(sum((p.principal_portion for p in payments), ZERO)),
            "remaining_balance": loan.remaining_balance
        }

    def reconcile_loan(self, loan_id: str) -> Dict[str, Any]:
        """
        Rebuild a loan's cached balance and payment count from its payments

        ``remaining_balance`` becomes total payable minus the sum of recorded
        payments (floored at zero; a settlement closes the loan outright) and
        ``payments_received`` the number of payments. Status is brought in
        line when the loan is completed or active.

        Returns:
            Dictionary describing what changed
        """
        with self.loan_manager.loan_lock(loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            payments = self.loan_manager.get_loan_payments(loan_id)

            settled = any(p.is_settlement for p in payments)
            paid = round_money(sum((p.amount_paid for p in payments), ZERO))
            expected_balance = ZERO if settled else max(ZERO, round_money(loan.total_amount_payable - paid))
            expected_count = len(payments)

            before = {
                "remaining_balance": loan.remaining_balance,
                "payments_received": loan.payments_received,
                "status": loan.status.value
            }

            loan.remaining_balance = expected_balance
            loan.payments_received = expected_count
            if not settled:
                if expected_balance <= 0 and loan.status == LoanStatus.ACTIVE:
                    loan.status = LoanStatus.COMPLETED
                elif expected_balance > 0 and loan.status == LoanStatus.COMPLETED:
                    loan.status = LoanStatus.ACTIVE

            after = {
                "remaining_balance": loan.remaining_balance,
                "payments_received": loan.payments_received,
                "status": loan.status.value
            }
            changed = before != after
            if changed:
                self.loan_manager.save_loan(loan)

        if changed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_RECONCILED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"before": before, "after": after}
            )
            logger.warning("Loan projection repaired", extra={
                "action": "loan.reconcile", "resource": loan.id,
                "extra": {"before": str(before), "after": str(after)}
            })

        return {"loan_id": loan.id, "changed": changed, "before": before, "after": after}
