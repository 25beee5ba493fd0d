"""
Dispatch boundary between the relay entry points and the delivery side.

Entry points send messages and never wait for delivery. ArqDispatcher puts
them on the ARQ queue for the worker; LocalDispatcher runs the handlers as
asyncio tasks in the same process and hosts the retry loop itself.
"""
import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Coroutine, Optional, Protocol

from arq import ArqRedis

from hookrelay.logging_config import get_logger
from hookrelay.models.base import CamelModel
from hookrelay.models.messages import (
    CAPTURED_TOPIC,
    DEAD_LETTER_TOPIC,
    FORWARD_TOPIC,
    CapturedMessage,
    DeadLetterMessage,
    ForwardMessage,
)
from hookrelay.sentry_config import capture_exception
from hookrelay.services.retry_scheduler import RetryPolicy, run_forward_attempt

if TYPE_CHECKING:
    from hookrelay.services.delivery_engine import DeliveryEngine

log = get_logger(component="dispatcher")

# ARQ task consuming each topic
TASKS = {
    CAPTURED_TOPIC: "process_captured_webhook",
    FORWARD_TOPIC: "forward_webhook",
    DEAD_LETTER_TOPIC: "handle_dead_letter",
}


class Dispatcher(Protocol):
    async def captured(self, message: CapturedMessage) -> None: ...

    async def forward(self, message: ForwardMessage) -> None: ...

    async def dead_letter(self, message: DeadLetterMessage) -> None: ...


class ArqDispatcher:
    """Enqueue messages as ARQ jobs."""

    def __init__(self, pool: ArqRedis):
        self.pool = pool

    async def captured(self, message: CapturedMessage) -> None:
        await self._enqueue(CAPTURED_TOPIC, message.webhook_id, message)

    async def forward(self, message: ForwardMessage) -> None:
        await self._enqueue(FORWARD_TOPIC, message.webhook_id, message)

    async def dead_letter(self, message: DeadLetterMessage) -> None:
        await self._enqueue(DEAD_LETTER_TOPIC, message.webhook_id, message)

    async def _enqueue(self, topic: str, webhook_id: str, message: CamelModel) -> None:
        job = await self.pool.enqueue_job(TASKS[topic], message.to_wire())
        log.info(
            "message_enqueued",
            topic=topic,
            webhook_id=webhook_id,
            job_id=job.job_id if job else None,
        )


class LocalDispatcher:
    """
    In-process dispatcher.

    Call ``bind`` once the handlers exist; the delivery engine itself needs a
    dispatcher for dead letters, so construction is two-step.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()
        self._tasks: set[asyncio.Task] = set()
        self._on_captured: Optional[Callable[[CapturedMessage], Awaitable[None]]] = None
        self._engine: Optional["DeliveryEngine"] = None
        self._on_dead_letter: Optional[Callable[[DeadLetterMessage], Awaitable[None]]] = None

    def bind(
        self,
        on_captured: Callable[[CapturedMessage], Awaitable[None]],
        engine: "DeliveryEngine",
        on_dead_letter: Callable[[DeadLetterMessage], Awaitable[None]],
    ) -> None:
        self._on_captured = on_captured
        self._engine = engine
        self._on_dead_letter = on_dead_letter

    async def captured(self, message: CapturedMessage) -> None:
        self._require_bound()
        self._spawn(CAPTURED_TOPIC, message.webhook_id, self._on_captured(message))

    async def forward(self, message: ForwardMessage) -> None:
        self._require_bound()
        self._spawn(FORWARD_TOPIC, message.webhook_id, self._run_forward(message))

    async def dead_letter(self, message: DeadLetterMessage) -> None:
        self._require_bound()
        self._spawn(DEAD_LETTER_TOPIC, message.webhook_id, self._on_dead_letter(message))

    async def _run_forward(self, message: ForwardMessage) -> None:
        job_try = 1
        while True:
            delay = await run_forward_attempt(self._engine, message, job_try, self.policy)
            if delay is None:
                return
            await asyncio.sleep(delay)
            job_try += 1

    def _require_bound(self) -> None:
        if self._engine is None:
            raise RuntimeError("LocalDispatcher used before bind()")

    def _spawn(self, topic: str, webhook_id: str, coro: Coroutine) -> None:
        task = asyncio.create_task(self._guard(topic, webhook_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, topic: str, webhook_id: str, coro: Coroutine) -> None:
        try:
            await coro
        except Exception as e:
            log.error("local_handler_failed", topic=topic, webhook_id=webhook_id, error=str(e))
            capture_exception(e)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every message, including ones spawned meanwhile, is handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
