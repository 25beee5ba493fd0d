"""
Webhook record store.

Durable keyed storage for webhook records with get / set / list-all
semantics over the "webhooks" collection. Writes are last-write-wins.
"""
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.models.state_entry import StateEntry
from hookrelay.models.webhook import WebhookRecord

WEBHOOKS_GROUP = "webhooks"


class WebhookStore(Protocol):
    """Storage interface the relay depends on."""

    async def get(self, webhook_id: str) -> Optional[WebhookRecord]: ...

    async def set(self, record: WebhookRecord) -> None: ...

    async def list_all(self) -> list[WebhookRecord]: ...


class InMemoryWebhookStore:
    """
    Dict-backed store.

    Records are kept serialized so callers never share a mutable object with
    the store, matching how an external store behaves.
    """

    def __init__(self):
        self._records: dict[str, dict] = {}

    async def get(self, webhook_id: str) -> Optional[WebhookRecord]:
        data = self._records.get(webhook_id)
        if data is None:
            return None
        return WebhookRecord.model_validate(data)

    async def set(self, record: WebhookRecord) -> None:
        self._records[record.id] = record.model_dump(mode="json", by_alias=True)

    async def list_all(self) -> list[WebhookRecord]:
        return [WebhookRecord.model_validate(data) for data in self._records.values()]

    async def delete(self, webhook_id: str) -> None:
        """Remove a record. Retention is external; used to simulate concurrent deletes."""
        self._records.pop(webhook_id, None)


class SqlWebhookStore:
    """Store backed by the state_entries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], group: str = WEBHOOKS_GROUP):
        self.session_factory = session_factory
        self.group = group

    async def get(self, webhook_id: str) -> Optional[WebhookRecord]:
        async with self.session_factory() as db:
            entry = await db.get(StateEntry, (self.group, webhook_id))
            if entry is None:
                return None
            return WebhookRecord.model_validate(entry.value)

    async def set(self, record: WebhookRecord) -> None:
        value = record.model_dump(mode="json", by_alias=True)
        async with self.session_factory() as db:
            entry = await db.get(StateEntry, (self.group, record.id))
            if entry is None:
                db.add(StateEntry(group_name=self.group, key=record.id, value=value))
            else:
                entry.value = value
            await db.commit()

    async def list_all(self) -> list[WebhookRecord]:
        async with self.session_factory() as db:
            stmt = select(StateEntry).where(StateEntry.group_name == self.group)
            result = await db.execute(stmt)
            return [WebhookRecord.model_validate(entry.value) for entry in result.scalars().all()]
