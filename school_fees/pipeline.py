import asyncio
import logging
from typing import Optional

from school_fees.processor import PaymentProcessor
from school_fees.reconciliation import ReconciliationReport, reconcile_stale_payments
from school_fees.work_queue import BoundedWorkQueue

logger = logging.getLogger(__name__)


class PaymentPipeline:
    """Owns the payment work queue and processor for the lifetime of the app."""

    def __init__(
        self,
        session_factory,
        queue: BoundedWorkQueue,
        processor: PaymentProcessor,
        stale_after: Optional[float] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.processor = processor
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval if sweep_interval is not None else stale_after
        self._sweeper: Optional[asyncio.Task] = None

    def submit_payment_for_processing(self, payment_id: int) -> None:
        self.queue.submit(lambda: self.processor.process(payment_id))
        logger.debug("Queued payment %s (queued=%d running=%d)", payment_id, self.queue.pending, self.queue.running)

    async def process_payment(self, payment_id: int) -> None:
        await self.processor.process(payment_id)

    async def start(self) -> Optional[ReconciliationReport]:
        report = None
        if self.stale_after is not None:
            report = await reconcile_stale_payments(self.session_factory, self.stale_after)
        self.queue.start()
        if report is not None:
            for payment_id in report.pending_ids:
                self.submit_payment_for_processing(payment_id)
            # Rows that were still fresh at startup only go stale later
            self._sweeper = asyncio.create_task(self._sweep_stale_payments())
        return report

    async def _sweep_stale_payments(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await reconcile_stale_payments(self.session_factory, self.stale_after, include_pending=False)
            except Exception:
                logger.exception("Stale payment sweep failed, retrying in %.1fs", self.sweep_interval)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        logger.info("Draining payment queue (queued=%d running=%d)", self.queue.pending, self.queue.running)
        await self.queue.shutdown(timeout=timeout)
