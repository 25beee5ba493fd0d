"""
ARQ Background Worker for hookrelay.

Consumes the webhook-captured, webhook-forward and webhook-forward-dlq
queues. ARQ is the retry scheduler for deliveries: a transient failure
raises Retry with the policy's delay until the attempt budget is spent.
"""
import asyncio

from arq import Retry
from arq.connections import RedisSettings

from hookrelay.config import settings
from hookrelay.logging_config import configure_logging, get_logger
from hookrelay.models.messages import CapturedMessage, DeadLetterMessage, ForwardMessage
from hookrelay.sentry_config import configure_sentry
from hookrelay.services.container import create_services
from hookrelay.services.retry_scheduler import run_forward_attempt

log = get_logger(component="worker")


async def process_captured_webhook(ctx: dict, payload: dict) -> dict:
    """Persist a captured webhook as RECEIVED."""
    message = CapturedMessage.model_validate(payload)
    record = await ctx["services"].relay_service.store_captured(message)
    return {"webhookId": record.id, "status": record.status.value}


async def forward_webhook(ctx: dict, payload: dict) -> dict:
    """
    Run one delivery attempt.

    ARQ counts attempts in ctx["job_try"] (starts at 1) and stops after
    WorkerSettings.max_tries; the final attempt is told so and dead-letters
    instead of asking for another retry.
    """
    message = ForwardMessage.model_validate(payload)
    services = ctx["services"]
    job_try = ctx.get("job_try", 1)

    delay = await run_forward_attempt(services.delivery_engine, message, job_try, services.retry_policy)
    if delay is not None:
        raise Retry(defer=delay)

    record = await services.store.get(message.webhook_id)
    return {
        "webhookId": message.webhook_id,
        "status": record.status.value if record else None,
    }


async def handle_dead_letter(ctx: dict, payload: dict) -> None:
    """Alert on a permanently failed delivery."""
    await ctx["services"].dead_letter_handler.handle(DeadLetterMessage.model_validate(payload))


async def startup(ctx: dict) -> None:
    """Build services over the worker's own Redis pool."""
    configure_logging()
    configure_sentry()
    ctx["services"] = await create_services(settings, redis_client=ctx["redis"])
    log.info("worker_started", max_tries=ctx["services"].retry_policy.max_tries)


async def shutdown(ctx: dict) -> None:
    services = ctx.get("services")
    if services is not None:
        await services.close()
    log.info("worker_stopped")


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_captured_webhook,
    forward_webhook,
    handle_dead_letter,
]


async def main():
    """Run the worker using arq cli."""
    print("Use: arq hookrelay.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq hookrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = int(settings.FORWARD_TIMEOUT_SECONDS) + 30
    max_tries = settings.MAX_DELIVERY_ATTEMPTS
    functions = ARQ_FUNCTIONS
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())
