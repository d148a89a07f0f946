"""
Invoice Scheduler

Background thread that runs the invoice cycle once a day at a configured UTC
hour. Failures are logged; they never stop the thread.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional
import threading

from .invoices import InvoiceManager, InvoiceRunResult
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class InvoiceScheduler:
    """
    Daily driver for InvoiceManager.run_invoice_generation
    """

    def __init__(
        self,
        invoice_manager: InvoiceManager,
        run_hour_utc: int = 0,
        poll_seconds: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if not 0 <= run_hour_utc <= 23:
            raise ValueError("run_hour_utc must be between 0 and 23")
        self.invoice_manager = invoice_manager
        self.run_hour_utc = run_hour_utc
        self.poll_seconds = poll_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.running = False
        self.last_run_date: Optional[date] = None
        self.last_result: Optional[InvoiceRunResult] = None
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the scheduler thread"""
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="invoice-scheduler")
            self._thread.daemon = True
            self.running = True
            self._thread.start()
            logger.info("Invoice scheduler started", extra={
                "action": "scheduler.start", "extra": {"run_hour_utc": self.run_hour_utc}
            })

    def stop(self) -> None:
        """Stop the scheduler thread and wait for it to exit"""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None:
            thread.join(timeout=5.0)
        logger.info("Invoice scheduler stopped", extra={"action": "scheduler.stop"})

    def is_running(self) -> bool:
        return self.running

    def run_now(self, as_of: Optional[date] = None) -> Optional[InvoiceRunResult]:
        """
        Run the invoice cycle immediately

        Returns:
            The run result, or None if the cycle raised (the error is logged)
        """
        run_date = as_of or self.clock().date()
        try:
            result = self.invoice_manager.run_invoice_generation(as_of=run_date)
        except Exception:
            logger.exception("Invoice cycle failed", extra={
                "action": "scheduler.run", "extra": {"as_of": run_date.isoformat()}
            })
            return None

        self.last_run_date = run_date
        self.last_result = result
        log_action(logger, "info", "Invoice cycle completed", action="scheduler.run",
                   extra={"as_of": run_date.isoformat(), "created": len(result.created)})
        return result

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True once per UTC day, from the configured hour onwards"""
        now = now or self.clock()
        return now.hour >= self.run_hour_utc and self.last_run_date != now.date()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                if self.is_due():
                    self.run_now()
            except Exception:
                logger.exception("Invoice scheduler tick failed", extra={"action": "scheduler.tick"})
            self._stop_event.wait(self.poll_seconds)
