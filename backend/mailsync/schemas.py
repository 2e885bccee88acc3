"""Pydantic schemas for API."""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

Provider = Literal["gmail", "google_calendar", "google_contacts"]
SyncTypeParam = Literal["email", "calendar", "contacts", "all", "auto"]


class AccountCreate(BaseModel):
    user_id: str
    external_account_id: str
    provider: Provider
    email: Optional[str] = None
    is_active: bool = True


class AccountResponse(BaseModel):
    id: str
    user_id: str
    external_account_id: str
    provider: str
    email: Optional[str] = None
    is_active: bool
    last_synced_at: Optional[datetime] = None
    sync_state: Optional[dict] = None

    class Config:
        from_attributes = True


class SyncRequest(BaseModel):
    account_id: str
    sync_type: SyncTypeParam = "auto"
    # Pipedream external user id; defaults to the account's user_id
    external_user_id: Optional[str] = None
    # Run inline and return the outcome instead of starting in the background
    wait: bool = False
    force_full_sync: bool = False
