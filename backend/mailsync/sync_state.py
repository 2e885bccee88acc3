"""Typed per-provider cursors stored in Account.sync_state.

The persisted blob keeps one flat shape shared by all providers:
    {historyId?, lastSync?, calendarLastSync?, contactsLastSync?}
Each cursor model reads and writes only its own keys and leaves the rest intact.
"""
from datetime import datetime
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator

from .models import Account


class SyncCursor(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"

    @classmethod
    def from_state(cls, state: Optional[dict]):
        return cls.model_validate(state or {})

    def merge_into(self, state: Optional[dict]) -> dict:
        merged = dict(state or {})
        merged.update(self.model_dump(mode="json", by_alias=True, exclude_none=True))
        return merged


class GmailCursor(SyncCursor):
    history_id: Optional[str] = Field(default=None, alias="historyId")
    last_sync: Optional[datetime] = Field(default=None, alias="lastSync")

    @field_validator("history_id", mode="before")
    @classmethod
    def _history_id_as_str(cls, v):
        # Gmail returns historyId as a string, but older rows may hold a number.
        return str(v) if v is not None else None

    @property
    def is_incremental(self) -> bool:
        return bool(self.history_id and self.last_sync)


class CalendarCursor(SyncCursor):
    last_sync: Optional[datetime] = Field(default=None, alias="calendarLastSync")


class ContactsCursor(SyncCursor):
    last_sync: Optional[datetime] = Field(default=None, alias="contactsLastSync")


C = TypeVar("C", bound=SyncCursor)


def load_cursor(account: Account, cursor_type: Type[C]) -> C:
    return cursor_type.from_state(account.sync_state)


def save_cursor(account: Account, cursor: SyncCursor, *, synced_at: Optional[datetime] = None) -> None:
    """Write the cursor into the account row (caller commits)."""
    # Reassign rather than mutate so SQLAlchemy sees the JSON change.
    account.sync_state = cursor.merge_into(account.sync_state)
    account.last_synced_at = synced_at or datetime.utcnow()
