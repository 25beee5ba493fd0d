"""
Keyed state storage.

One row per (group, key) with a JSON value. Webhook records live in the
"webhooks" group.
"""
from typing import Any
from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin


class StateEntry(Base, TimestampMixin):
    """A single keyed value within a named group."""
    __tablename__ = "state_entries"

    group_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self):
        return f"<StateEntry(group={self.group_name}, key={self.key})>"
