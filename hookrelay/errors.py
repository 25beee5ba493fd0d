"""
Error taxonomy for hookrelay.

Request-facing errors carry the HTTP status they are surfaced with.
Delivery errors never reach the original caller; they are recorded on the
webhook record instead.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for all hookrelay errors."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class WebhookNotFoundError(RelayError):
    """No webhook record exists for the requested id."""
    status_code = 404

    def __init__(self, webhook_id: str):
        super().__init__("Webhook not found")
        self.webhook_id = webhook_id


class InvalidInputError(RelayError):
    """Malformed request input, e.g. a target URL that is not http(s)."""
    status_code = 422


class InvalidStateError(RelayError):
    """The record is not in a state that allows the requested operation."""
    status_code = 400


class InvalidTransitionError(InvalidStateError):
    """A status change that is not an edge of the delivery state machine."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move webhook from '{current}' to '{target}'")
        self.current = current
        self.target = target


class RecordMissingError(RelayError):
    """The record vanished between dispatch and the delivery attempt."""

    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook {webhook_id} not found at delivery time")
        self.webhook_id = webhook_id


class DeliveryError(RelayError):
    """An outbound delivery attempt failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        # HTTP status of the target response, None for network errors
        self.response_status = status_code


class TransientDeliveryError(DeliveryError):
    """5xx or network/timeout failure. The scheduler retries it."""


class PermanentDeliveryError(DeliveryError):
    """4xx failure, or a transient failure on the final attempt. Dead-lettered."""
