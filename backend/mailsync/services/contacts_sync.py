"""Google Contacts (People API) sync plus contact enrichment from stored email."""
import logging
from datetime import datetime
from typing import Optional

from ..config import settings
from ..models import Contact, Email
from ..rate_limiter import CONTACTS_API
from ..sync_state import ContactsCursor, save_cursor
from .base_sync import SUCCESS, BaseSyncService, _chunk_list
from .upserts import upsert_contact_by_phone, upsert_row

logger = logging.getLogger(__name__)

PEOPLE_API_BASE = "https://people.googleapis.com/v1"
PERSON_FIELDS = "names,emailAddresses,phoneNumbers,organizations,biographies,photos,addresses,urls"

CONNECTIONS_LIST_TOKENS = 3

SOCIAL_DOMAINS = (
    ("linkedin", ("linkedin.com",)),
    ("twitter", ("twitter.com", "x.com")),
    ("github", ("github.com",)),
)


def _primary(items: list[dict]) -> dict:
    """The entry flagged primary, else the first one."""
    for item in items or []:
        if (item.get("metadata") or {}).get("primary"):
            return item
    return (items or [{}])[0]


def _social_profiles(urls: list[dict]) -> dict:
    profiles = {}
    for entry in urls or []:
        value = (entry.get("value") or "").strip()
        lowered = value.lower()
        for network, domains in SOCIAL_DOMAINS:
            if network not in profiles and any(d in lowered for d in domains):
                profiles[network] = value
    return profiles


def transform_person(person: dict) -> Optional[dict]:
    """Map a People API person to contact fields. None when it has no email and no phone."""
    email = (_primary(person.get("emailAddresses")).get("value") or "").strip().lower() or None
    phone = (_primary(person.get("phoneNumbers")).get("value") or "").strip() or None
    if not email and not phone:
        return None
    organization = _primary(person.get("organizations"))
    photos = [p for p in person.get("photos") or [] if not p.get("default")]
    return {
        "email": email,
        "phone": phone,
        "name": _primary(person.get("names")).get("displayName") or email,
        "company": organization.get("name"),
        "job_title": organization.get("title"),
        "bio": _primary(person.get("biographies")).get("value"),
        "avatar_url": photos[0].get("url") if photos else None,
        "location": _primary(person.get("addresses")).get("formattedValue"),
        "social_profiles": _social_profiles(person.get("urls")) or None,
        "google_resource_name": person.get("resourceName"),
    }


def relationship_strength(interaction_count: int) -> int:
    return min(interaction_count * 2, 100)


def _email_participants(email: Email) -> list[dict]:
    return [a for a in [email.from_address, *(email.to_addresses or []), *(email.cc_addresses or [])] if a]


class ContactsSyncService(BaseSyncService):
    sync_type = "contacts"
    rate_limit_key = CONTACTS_API

    def sync(self, options: dict) -> dict:
        skipped = 0
        estimated_total: Optional[int] = None
        page_token = None
        page = 0
        while True:
            counts = self.steps.run(f"contacts-page-{page}", lambda: self._sync_contacts_page(page_token))
            if page == 0:
                estimated_total = counts.get("total_people")
            # Connections seen so far are ground truth; the first-page total is only an estimate.
            self.total += int(counts.get("listed", 0))
            skipped += int(counts.get("skipped", 0))
            self._apply_counts(counts)
            self._report_progress(total=max(self.total, estimated_total or 0))
            page_token = counts.get("next_page_token")
            page += 1
            if not page_token:
                break

        derived = self.steps.run("derive-contacts-from-email", self._derive_contacts_from_email)
        interactions = self.steps.run("recompute-interactions", self._recompute_interactions)
        self.steps.run("save-cursor", self._save_cursor)

        return {
            "status": SUCCESS,
            "contacts_processed": self.processed,
            "contacts_failed": self.failed,
            "contacts_skipped": skipped,
            "total_contacts": self.total,
            "estimated_total": estimated_total,
            "contacts_derived": derived.get("created", 0),
            "interactions_updated": interactions.get("updated", 0),
        }

    def _sync_contacts_page(self, page_token: Optional[str]) -> dict:
        params = {"personFields": PERSON_FIELDS, "pageSize": settings.contacts_page_size}
        if page_token:
            params["pageToken"] = page_token
        data = self._fetch(
            f"{PEOPLE_API_BASE}/people/me/connections",
            tokens=CONNECTIONS_LIST_TOKENS,
            params=params,
        )
        people = data.get("connections") or []
        processed = failed = skipped = 0
        for person in people:
            values = transform_person(person)
            if values is None:
                skipped += 1
                continue
            if self._persist_record(f"contact {person.get('resourceName')}", lambda: self._upsert_contact(values)):
                processed += 1
            else:
                failed += 1
        return {
            "listed": len(people),
            "processed": processed,
            "failed": failed,
            "skipped": skipped,
            "total_people": data.get("totalPeople") or data.get("totalItems"),
            "next_page_token": data.get("nextPageToken"),
        }

    def _upsert_contact(self, values: dict) -> Contact:
        user_id = self.account.user_id
        values = dict(values, account_id=self.account.id, source="google_contacts")
        email = values.pop("email")
        if email:
            return upsert_row(self.db, Contact, {"user_id": user_id, "email": email}, values, skip_none=True)
        phone = values.pop("phone")
        return upsert_contact_by_phone(self.db, user_id, phone, values)

    # ----------------------------
    # Enrichment from stored email
    # ----------------------------

    def _recent_emails(self) -> list[Email]:
        return (
            self.db.query(Email)
            .filter(Email.user_id == self.account.user_id)
            .order_by(Email.received_at.desc())
            .limit(settings.contacts_email_scan_limit)
            .all()
        )

    def _all_emails(self):
        """Every stored email of the user, streamed in batches."""
        return self.db.query(Email).filter(Email.user_id == self.account.user_id).yield_per(500)

    def _derive_contacts_from_email(self) -> dict:
        """Create contacts for From/To/Cc addresses the user has emailed with but never saved."""
        own = (self.account.email or "").lower()
        candidates: dict[str, Optional[str]] = {}
        for email in self._recent_emails():
            for addr in _email_participants(email):
                address = (addr.get("email") or "").lower()
                if address and address != own and address not in candidates:
                    candidates[address] = addr.get("name")

        existing: set[str] = set()
        for chunk in _chunk_list(list(candidates), 500):
            rows = (
                self.db.query(Contact.email)
                .filter(Contact.user_id == self.account.user_id, Contact.email.in_(chunk))
                .all()
            )
            existing.update(r[0] for r in rows)

        created = 0
        for address, name in candidates.items():
            if address in existing:
                continue
            ok = self._persist_record(
                f"derived contact {address}",
                lambda: self.db.add(
                    Contact(
                        user_id=self.account.user_id,
                        account_id=self.account.id,
                        email=address,
                        name=name or address,
                        source="email",
                    )
                ),
            )
            if ok:
                created += 1
        logger.info(f"Derived {created} contacts from email for user {self.account.user_id}")
        return {"created": created}

    def _recompute_interactions(self) -> dict:
        """Batch recount of interactions for every contact of the user, over all stored email."""
        stats: dict[str, list] = {}  # email -> [count, last_at]
        for email in self._all_emails():
            seen_in_message = set()
            for addr in _email_participants(email):
                address = (addr.get("email") or "").lower()
                if not address or address in seen_in_message:
                    continue
                seen_in_message.add(address)
                entry = stats.setdefault(address, [0, None])
                entry[0] += 1
                if email.received_at and (entry[1] is None or email.received_at > entry[1]):
                    entry[1] = email.received_at

        updated = 0
        contacts = (
            self.db.query(Contact)
            .filter(Contact.user_id == self.account.user_id, Contact.email.isnot(None))
            .all()
        )
        for contact in contacts:
            count, last_at = stats.get(contact.email.lower(), [0, None])
            strength = relationship_strength(count)
            if (
                contact.interaction_count != count
                or contact.last_interaction_at != last_at
                or contact.relationship_strength != strength
            ):
                contact.interaction_count = count
                contact.last_interaction_at = last_at
                contact.relationship_strength = strength
                updated += 1
        self.db.flush()
        return {"updated": updated}

    def _save_cursor(self) -> dict:
        synced_at = datetime.utcnow()
        save_cursor(self.account, ContactsCursor(last_sync=synced_at), synced_at=synced_at)
        return {"contacts_last_sync": synced_at.isoformat()}
