"""
Lending system wiring

Builds every manager over one storage backend from configuration.
"""

from datetime import datetime
from typing import Callable, Optional

from .config import LendbookConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .numbering import DocumentNumberer
from .customers import CustomerManager
from .lender import LenderProfile
from .loans import LoanManager
from .invoices import InvoiceManager
from .payments import PaymentLedger
from .documents import DocumentService, DocumentSink
from .scheduler import InvoiceScheduler


class LendingSystem:
    """Lending back office with all components initialized"""

    def __init__(
        self,
        config: Optional[LendbookConfig] = None,
        storage: Optional[StorageInterface] = None,
        document_sink: Optional[DocumentSink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()

        # Storage
        if storage is None:
            storage = create_storage(self.config.storage_backend, self.config.database_path)
        self.storage = storage

        # Core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.numberer = DocumentNumberer(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.lender_profile = LenderProfile(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.customer_manager,
            self.lender_profile, self.numberer,
            default_interest_type=self.config.default_interest_type,
            clock=clock
        )
        self.invoice_manager = InvoiceManager(
            self.storage, self.audit_trail, self.loan_manager,
            self.lender_profile, self.numberer
        )
        self.payment_ledger = PaymentLedger(
            self.loan_manager, self.invoice_manager, self.lender_profile,
            self.numberer, self.audit_trail,
            mutation_window_hours=self.config.payment_mutation_window_hours,
            clock=clock
        )
        self.document_service = DocumentService(
            self.loan_manager, self.payment_ledger, self.invoice_manager,
            self.customer_manager, self.lender_profile, self.numberer,
            self.audit_trail, sink=document_sink
        )
        self.invoice_scheduler = InvoiceScheduler(
            self.invoice_manager,
            run_hour_utc=self.config.invoice_run_hour_utc,
            poll_seconds=self.config.invoice_scheduler_poll_seconds,
            clock=clock
        )

    def close(self) -> None:
        self.invoice_scheduler.stop()
        self.storage.close()
