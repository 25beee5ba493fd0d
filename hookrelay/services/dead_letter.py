"""
Dead-letter handler.

Consumes webhook-forward-dlq messages. Delivery state is already persisted
by the time a message arrives here; this is the alerting hook.
"""
from hookrelay.logging_config import get_logger
from hookrelay.models.messages import DeadLetterMessage
from hookrelay.routes.metrics import track_dead_letter
from hookrelay.sentry_config import capture_message


class DeadLetterHandler:
    """Log and alert on permanently failed deliveries."""

    def __init__(self):
        self.handled = 0

    async def handle(self, message: DeadLetterMessage) -> None:
        log = get_logger(webhook_id=message.webhook_id, target_url=message.target_url)
        log.error(
            "webhook_moved_to_dlq",
            error=message.error_message,
            status_code=message.status_code,
        )
        track_dead_letter()
        capture_message(
            "Webhook permanently failed - moved to DLQ",
            level="error",
            webhook_id=message.webhook_id,
            target_url=message.target_url,
            error_message=message.error_message,
            status_code=message.status_code,
        )
        self.handled += 1
