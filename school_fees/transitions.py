import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from school_fees.exceptions import InvalidStatusTransition
from school_fees.models import Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


async def update_payment_status(
    session_factory,
    payment_id: int,
    status: PaymentStatus,
    processed_at: Optional[datetime] = None,
) -> Optional[Payment]:
    """
    Move one payment to ``status`` inside a single transaction.

    The row is read with ``FOR UPDATE`` and written with a conditional update
    keyed on the status that was read, so two writers racing on the same
    payment cannot both apply a transition from the same source state.

    Returns the updated payment, or ``None`` when the payment does not exist.
    Raises InvalidStatusTransition when the move is not a forward transition
    or a concurrent writer changed the status first.
    """
    if not isinstance(status, PaymentStatus):
        raise TypeError(f"status must be a PaymentStatus, got {status!r}")

    now = utcnow()

    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                select(Payment).where(Payment.id == payment_id).with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                return None

            current = payment.status
            if not current.can_transition_to(status):
                raise InvalidStatusTransition(payment_id, current, status)

            values = {"status": status, "updated_at": now}
            if status.is_terminal:
                values["processed_at"] = processed_at or now

            updated = await session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise InvalidStatusTransition(payment_id, current, status)

        # Committed; mirror the written values onto the loaded instance
        for key, value in values.items():
            setattr(payment, key, value)
        session.expunge(payment)

    logger.info("Payment %s: %s -> %s", payment_id, current.value, status.value)
    return payment
