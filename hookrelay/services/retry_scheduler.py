"""
Retry Scheduler contract.

Both schedulers (the ARQ worker and the in-process LocalDispatcher) drive
delivery through ``run_forward_attempt``: one call runs exactly one
Delivery Engine attempt and tells the scheduler how long to wait before the
next one, or that the delivery cycle is over.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Optional

from hookrelay.errors import RecordMissingError, TransientDeliveryError
from hookrelay.logging_config import get_logger
from hookrelay.models.messages import ForwardMessage

if TYPE_CHECKING:
    from hookrelay.config import Settings
    from hookrelay.services.delivery_engine import DeliveryEngine


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and inter-attempt delay.

    The default is 1 initial attempt + 2 retries with a fixed 2 second delay.
    """
    max_tries: int = 3
    delay_seconds: float = 2.0
    backoff: Literal["fixed", "exponential"] = "fixed"

    def __post_init__(self):
        if self.max_tries < 1:
            raise ValueError("max_tries must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def delay_for(self, job_try: int) -> float:
        """Delay after attempt number ``job_try`` (1-based) failed."""
        if self.backoff == "exponential":
            return self.delay_seconds * 2 ** (job_try - 1)
        return self.delay_seconds

    def is_final(self, job_try: int) -> bool:
        return job_try >= self.max_tries

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            max_tries=settings.MAX_DELIVERY_ATTEMPTS,
            delay_seconds=settings.RETRY_DELAY_SECONDS,
            backoff=settings.RETRY_BACKOFF,
        )


async def run_forward_attempt(
    engine: "DeliveryEngine",
    message: ForwardMessage,
    job_try: int,
    policy: RetryPolicy,
) -> Optional[float]:
    """
    Run attempt number ``job_try`` of a delivery cycle.

    Returns:
        Seconds to wait before the next attempt, or None when the cycle is
        over (forwarded, dead-lettered, skipped, or the record is gone)
    """
    log = get_logger(webhook_id=message.webhook_id, job_try=job_try, max_tries=policy.max_tries)

    try:
        await engine.attempt(
            message,
            final_attempt=policy.is_final(job_try),
            scheduled_retry=job_try > 1,
        )
    except TransientDeliveryError:
        delay = policy.delay_for(job_try)
        log.info("delivery_retry_scheduled", defer_seconds=delay)
        return delay
    except RecordMissingError:
        # Caller already got "accepted"; nothing to retry against
        log.warning("delivery_abandoned")
        return None
    return None
