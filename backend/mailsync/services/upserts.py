"""Idempotent insert-or-update keyed by natural identity.

Callers run these inside a SAVEPOINT (`db.begin_nested()`) so one bad record
never poisons the surrounding step transaction.
"""
from typing import Any, Optional, Type

from sqlalchemy.orm import Session

from ..models import Base, Contact


def upsert_row(
    db: Session,
    model: Type[Base],
    keys: dict[str, Any],
    values: dict[str, Any],
    *,
    skip_none: bool = False,
):
    """Update the row matching `keys` in place, or insert it. Returns the row."""
    row = db.query(model).filter_by(**keys).first()
    if skip_none:
        values = {k: v for k, v in values.items() if v is not None}
    if row is None:
        row = model(**keys, **values)
        db.add(row)
    else:
        for key, value in values.items():
            setattr(row, key, value)
    db.flush()
    return row


def upsert_contact_by_phone(db: Session, user_id: str, phone: str, values: dict[str, Any]) -> Contact:
    """
    Phone-only contacts have no unique index, so check for an existing
    email-less row with the same phone and update it, else insert.
    """
    existing: Optional[Contact] = (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.phone == phone, Contact.email.is_(None))
        .first()
    )
    values = {k: v for k, v in values.items() if v is not None}
    if existing is None:
        existing = Contact(user_id=user_id, phone=phone, **values)
        db.add(existing)
    else:
        for key, value in values.items():
            setattr(existing, key, value)
    db.flush()
    return existing
