import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select

from school_fees.exceptions import InvalidStatusTransition
from school_fees.models import Payment, PaymentStatus, utcnow
from school_fees.transitions import update_payment_status

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    failed_ids: List[int] = field(default_factory=list)
    pending_ids: List[int] = field(default_factory=list)


async def reconcile_stale_payments(
    session_factory,
    stale_after: float,
    now: Optional[datetime] = None,
    include_pending: bool = True,
) -> ReconciliationReport:
    """
    Recover payments abandoned by a previous process.

    Anything still ``processing`` and untouched for ``stale_after`` seconds is
    failed. Pending payments are only reported, and only when
    ``include_pending`` is set; re-submitting them is up to the caller.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=stale_after)
    report = ReconciliationReport()

    async with session_factory() as session:
        stale = await session.execute(
            select(Payment.id)
            .where(Payment.status == PaymentStatus.PROCESSING, Payment.updated_at < cutoff)
            .order_by(Payment.id)
        )
        stale_ids = list(stale.scalars().all())

        if include_pending:
            pending = await session.execute(
                select(Payment.id).where(Payment.status == PaymentStatus.PENDING).order_by(Payment.id)
            )
            report.pending_ids = list(pending.scalars().all())

    for payment_id in stale_ids:
        try:
            updated = await update_payment_status(session_factory, payment_id, PaymentStatus.FAILED)
        except InvalidStatusTransition:
            # Settled between the scan and the update
            continue
        if updated is not None:
            report.failed_ids.append(payment_id)

    if report.failed_ids:
        logger.warning("Failed %d stale processing payments: %s", len(report.failed_ids), report.failed_ids)
    if report.pending_ids:
        logger.info("Found %d pending payments from a previous run", len(report.pending_ids))
    return report
