"""Initial sync schema: accounts, sync jobs/locks/steps, threads, emails, events, contacts.

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "accounts" not in tables:
        op.create_table(
            "accounts",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("external_account_id", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("provider", sa.String(32), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_synced_at", sa.DateTime(), nullable=True),
            sa.Column("sync_state", sa.JSON(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_accounts_user_id", "accounts", ["user_id"])
        op.create_index("ix_accounts_external_account_id", "accounts", ["external_account_id"], unique=True)

    if "sync_jobs" not in tables:
        op.create_table(
            "sync_jobs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("type", sa.String(16), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("config", sa.JSON(), nullable=True),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_sync_jobs_user_id", "sync_jobs", ["user_id"])
        op.create_index("ix_sync_jobs_account_id", "sync_jobs", ["account_id"])
        op.create_index("ix_sync_jobs_account_type_created", "sync_jobs", ["account_id", "type", "created_at"])

    if "sync_locks" not in tables:
        op.create_table(
            "sync_locks",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sync_type", sa.String(16), nullable=False),
            sa.Column("is_syncing", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("active_job_id", sa.String(36), nullable=True),
            sa.Column("last_sync_start", sa.DateTime(), nullable=True),
            sa.Column("last_sync_complete", sa.DateTime(), nullable=True),
            sa.Column("last_status", sa.String(32), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("processed", sa.Integer(), nullable=True),
            sa.Column("failed", sa.Integer(), nullable=True),
            sa.Column("total", sa.Integer(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_sync_locks_account_type", "sync_locks", ["account_id", "sync_type"], unique=True)

    if "sync_steps" not in tables:
        op.create_table(
            "sync_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_id", sa.String(36), sa.ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False),
            sa.Column("step_name", sa.String(255), nullable=False),
            sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_sync_steps_job_id", "sync_steps", ["job_id"])
        op.create_index("ix_sync_steps_job_step", "sync_steps", ["job_id", "step_name"], unique=True)

    if "threads" not in tables:
        op.create_table(
            "threads",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("gmail_thread_id", sa.String(), nullable=False),
            sa.Column("subject", sa.String(), nullable=True),
            sa.Column("snippet", sa.Text(), nullable=True),
            sa.Column("participants", sa.JSON(), nullable=True),
            sa.Column("labels", sa.JSON(), nullable=True),
            sa.Column("message_count", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("is_starred", sa.Boolean(), nullable=True),
            sa.Column("is_important", sa.Boolean(), nullable=True),
            sa.Column("has_attachments", sa.Boolean(), nullable=True),
            sa.Column("last_message_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_threads_account_id", "threads", ["account_id"])
        op.create_index("ix_threads_user_id", "threads", ["user_id"])
        op.create_index("ix_threads_gmail_account", "threads", ["gmail_thread_id", "account_id"], unique=True)

    if "emails" not in tables:
        op.create_table(
            "emails",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("thread_id", sa.Integer(), sa.ForeignKey("threads.id", ondelete="CASCADE"), nullable=True),
            sa.Column("gmail_id", sa.String(), nullable=False),
            sa.Column("gmail_thread_id", sa.String(), nullable=True),
            sa.Column("subject", sa.String(), nullable=True),
            sa.Column("snippet", sa.Text(), nullable=True),
            sa.Column("body_text", sa.Text(), nullable=True),
            sa.Column("body_html", sa.Text(), nullable=True),
            sa.Column("from_address", sa.JSON(), nullable=True),
            sa.Column("to_addresses", sa.JSON(), nullable=True),
            sa.Column("cc_addresses", sa.JSON(), nullable=True),
            sa.Column("bcc_addresses", sa.JSON(), nullable=True),
            sa.Column("labels", sa.JSON(), nullable=True),
            sa.Column("category", sa.String(16), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("is_starred", sa.Boolean(), nullable=True),
            sa.Column("is_important", sa.Boolean(), nullable=True),
            sa.Column("has_attachments", sa.Boolean(), nullable=True),
            sa.Column("received_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_emails_account_id", "emails", ["account_id"])
        op.create_index("ix_emails_user_id", "emails", ["user_id"])
        op.create_index("ix_emails_thread_id", "emails", ["thread_id"])
        op.create_index("ix_emails_gmail_thread_id", "emails", ["gmail_thread_id"])
        op.create_index("ix_emails_received_at", "emails", ["received_at"])
        op.create_index("ix_emails_gmail_account", "emails", ["gmail_id", "account_id"], unique=True)

    if "calendar_events" not in tables:
        op.create_table(
            "calendar_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("google_event_id", sa.String(), nullable=False),
            sa.Column("calendar_id", sa.String(), nullable=True),
            sa.Column("title", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("location", sa.String(), nullable=True),
            sa.Column("start_time", sa.DateTime(), nullable=True),
            sa.Column("end_time", sa.DateTime(), nullable=True),
            sa.Column("is_all_day", sa.Boolean(), nullable=True),
            sa.Column("timezone", sa.String(), nullable=True),
            sa.Column("status", sa.String(16), nullable=True),
            sa.Column("meeting_url", sa.String(), nullable=True),
            sa.Column("organizer", sa.JSON(), nullable=True),
            sa.Column("attendees", sa.JSON(), nullable=True),
            sa.Column("is_recurring", sa.Boolean(), nullable=True),
            sa.Column("recurrence_rule", sa.Text(), nullable=True),
            sa.Column("is_busy", sa.Boolean(), nullable=True),
            sa.Column("html_link", sa.String(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_calendar_events_account_id", "calendar_events", ["account_id"])
        op.create_index("ix_calendar_events_user_id", "calendar_events", ["user_id"])
        op.create_index("ix_calendar_events_start_time", "calendar_events", ["start_time"])
        op.create_index(
            "ix_calendar_events_google_account", "calendar_events", ["google_event_id", "account_id"], unique=True
        )

    if "contacts" not in tables:
        op.create_table(
            "contacts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("company", sa.String(), nullable=True),
            sa.Column("job_title", sa.String(), nullable=True),
            sa.Column("bio", sa.Text(), nullable=True),
            sa.Column("avatar_url", sa.String(), nullable=True),
            sa.Column("location", sa.String(), nullable=True),
            sa.Column("social_profiles", sa.JSON(), nullable=True),
            sa.Column("google_resource_name", sa.String(), nullable=True),
            sa.Column("source", sa.String(32), nullable=True),
            sa.Column("interaction_count", sa.Integer(), nullable=True),
            sa.Column("last_interaction_at", sa.DateTime(), nullable=True),
            sa.Column("relationship_strength", sa.Integer(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_contacts_user_id", "contacts", ["user_id"])
        op.create_index("ix_contacts_account_id", "contacts", ["account_id"])
        op.create_index("ix_contacts_phone", "contacts", ["phone"])
        op.create_index("ix_contacts_user_email", "contacts", ["user_id", "email"], unique=True)


def downgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())
    for table in (
        "contacts",
        "calendar_events",
        "emails",
        "threads",
        "sync_steps",
        "sync_locks",
        "sync_jobs",
        "accounts",
    ):
        if table in tables:
            op.drop_table(table)
