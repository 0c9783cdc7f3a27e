import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from school_fees.exceptions import InvalidStatusTransition
from school_fees.models import PaymentStatus
from school_fees.transitions import update_payment_status

logger = logging.getLogger(__name__)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type(InvalidStatusTransition),
    reraise=True,
)
async def force_failed(session_factory, payment_id: int):
    return await update_payment_status(session_factory, payment_id, PaymentStatus.FAILED)


class PaymentProcessor:
    """
    Simulated settlement of a single payment.

    Drives pending -> processing -> completed|failed through the transition
    operator. The gateway is stood in for by a random delay and a weighted
    coin flip.
    """

    def __init__(
        self,
        session_factory,
        success_rate: float = 0.9,
        min_delay: float = 2.0,
        max_delay: float = 5.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("delay bounds must satisfy 0 <= min_delay <= max_delay")
        self.session_factory = session_factory
        self.success_rate = success_rate
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()
        self._sleep = sleep

    def settle(self) -> bool:
        return self._rng.random() < self.success_rate

    async def process(self, payment_id: int) -> None:
        logger.info("Processing payment %s", payment_id)
        try:
            started = await update_payment_status(
                self.session_factory, payment_id, PaymentStatus.PROCESSING
            )
            if started is None:
                logger.error("Payment %s not found, dropping job", payment_id)
                return

            await self._sleep(self._rng.uniform(self.min_delay, self.max_delay))

            if self.settle():
                await update_payment_status(self.session_factory, payment_id, PaymentStatus.COMPLETED)
                logger.info("Payment %s completed", payment_id)
            else:
                await update_payment_status(self.session_factory, payment_id, PaymentStatus.FAILED)
                logger.warning("Payment %s failed settlement", payment_id)

        except InvalidStatusTransition as exc:
            # Another job or the reconciliation sweep already moved this payment
            logger.warning("Skipping payment %s: %s", payment_id, exc)

        except Exception:
            logger.exception("Error processing payment %s, marking it failed", payment_id)
            try:
                await force_failed(self.session_factory, payment_id)
            except InvalidStatusTransition as exc:
                logger.warning("Payment %s left as is: %s", payment_id, exc)
            except Exception:
                logger.exception("Could not mark payment %s as failed", payment_id)
