"""SQLAlchemy models."""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """A connected upstream credential (Pipedream account)."""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    external_account_id = Column(String, unique=True, index=True, nullable=False)  # Pipedream apn_...
    email = Column(String, nullable=True)
    provider = Column(String(32), nullable=False)  # gmail, google_calendar, google_contacts
    is_active = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    # {historyId?, lastSync?, calendarLastSync?, contactsLastSync?}; see sync_state.py
    sync_state = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncJob(Base):
    """One row per sync attempt."""
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(16), nullable=False)  # email, calendar, contacts
    status = Column(String(16), default="pending", nullable=False)  # pending, processing, completed, failed, cancelled
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    failed_items = Column(Integer, default=0, nullable=False)
    config = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SyncLock(Base):
    """Single-flight lock and last-run snapshot per (account, sync type)."""
    __tablename__ = "sync_locks"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    sync_type = Column(String(16), nullable=False)
    is_syncing = Column(Boolean, default=False, nullable=False)
    active_job_id = Column(String(36), nullable=True)
    last_sync_start = Column(DateTime, nullable=True)
    last_sync_complete = Column(DateTime, nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error = Column(Text, nullable=True)
    processed = Column(Integer, default=0, nullable=True)
    failed = Column(Integer, default=0, nullable=True)
    total = Column(Integer, default=0, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncStep(Base):
    """Checkpoint log: one row per completed named step of a job."""
    __tablename__ = "sync_steps"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    step_name = Column(String(255), nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    result = Column(JSON, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class Thread(Base):
    __tablename__ = "threads"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    gmail_thread_id = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    participants = Column(JSON, nullable=True)  # [{"email": ..., "name": ...}]
    labels = Column(JSON, nullable=True)
    message_count = Column(Integer, default=0)
    is_read = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    is_important = Column(Boolean, default=False)
    has_attachments = Column(Boolean, default=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    emails = relationship("Email", back_populates="thread", cascade="all, delete-orphan")


class Email(Base):
    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    thread_id = Column(Integer, ForeignKey("threads.id", ondelete="CASCADE"), nullable=True, index=True)
    gmail_id = Column(String, nullable=False)
    gmail_thread_id = Column(String, nullable=True, index=True)
    subject = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    body_text = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    from_address = Column(JSON, nullable=True)  # {"email": ..., "name": ...}
    to_addresses = Column(JSON, nullable=True)
    cc_addresses = Column(JSON, nullable=True)
    bcc_addresses = Column(JSON, nullable=True)
    labels = Column(JSON, nullable=True)
    category = Column(String(16), default="inbox")  # inbox, sent, draft, spam, trash
    is_read = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    is_important = Column(Boolean, default=False)
    has_attachments = Column(Boolean, default=False)
    received_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    thread = relationship("Thread", back_populates="emails")


class CalendarEvent(Base):
    __tablename__ = "calendar_events"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    google_event_id = Column(String, nullable=False)
    calendar_id = Column(String, nullable=True)
    title = Column(String, nullable=False, default="(no title)")
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=True, index=True)
    end_time = Column(DateTime, nullable=True)
    is_all_day = Column(Boolean, default=False)
    timezone = Column(String, nullable=True)
    status = Column(String(16), nullable=True)
    meeting_url = Column(String, nullable=True)
    organizer = Column(JSON, nullable=True)
    attendees = Column(JSON, nullable=True)
    is_recurring = Column(Boolean, default=False)
    recurrence_rule = Column(Text, nullable=True)
    is_busy = Column(Boolean, default=True)
    html_link = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    email = Column(String, nullable=True)  # null for phone-only contacts
    phone = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    company = Column(String, nullable=True)
    job_title = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    avatar_url = Column(String, nullable=True)
    location = Column(String, nullable=True)
    social_profiles = Column(JSON, nullable=True)  # {"linkedin": ..., "twitter": ..., "github": ...}
    google_resource_name = Column(String, nullable=True)
    source = Column(String(32), default="google_contacts")  # google_contacts, email
    interaction_count = Column(Integer, default=0)
    last_interaction_at = Column(DateTime, nullable=True)
    relationship_strength = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Natural keys for idempotent upserts and single-flight rows
Index("ix_sync_locks_account_type", SyncLock.account_id, SyncLock.sync_type, unique=True)
Index("ix_sync_steps_job_step", SyncStep.job_id, SyncStep.step_name, unique=True)
Index("ix_sync_jobs_account_type_created", SyncJob.account_id, SyncJob.type, SyncJob.created_at)
Index("ix_threads_gmail_account", Thread.gmail_thread_id, Thread.account_id, unique=True)
Index("ix_emails_gmail_account", Email.gmail_id, Email.account_id, unique=True)
Index("ix_calendar_events_google_account", CalendarEvent.google_event_id, CalendarEvent.account_id, unique=True)
Index("ix_contacts_user_email", Contact.user_id, Contact.email, unique=True)
