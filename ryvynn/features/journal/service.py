"""
Encrypted journal storage.

Entries are encrypted in the browser; the server only ever sees ciphertext,
the IV and the algorithm tag. Retention follows the user's tier.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
import logging
import uuid

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import journal_entries, session_scope
from ryvynn.core.errors import NotFoundError, ValidationError
from ryvynn.features.audit.service import record_app_event
from ryvynn.features.entitlements.matrix import UNLIMITED, Limit
from ryvynn.features.entitlements.service import FREE_TIER, EntitlementStore
from ryvynn.features.usage.service import utc_now


logger = logging.getLogger("ryvynn")

ALGO_VERSION = "AES-GCM-256"
MAX_TAGS = 10
MAX_TAG_LENGTH = 40


class JournalEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ciphertext: str
    iv: str
    algo_version: str
    tags: List[str] = []
    created_at: datetime
    updated_at: datetime


def _to_entry(row) -> JournalEntry:
    return JournalEntry(
        id=row.id,
        ciphertext=row.ciphertext,
        iv=row.iv,
        algo_version=row.algo_version,
        tags=list(row.tags or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _clean_tags(tags: Optional[List[str]]) -> List[str]:
    cleaned = []
    for tag in tags or []:
        tag = str(tag).strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tags must be at most {MAX_TAG_LENGTH} characters")
        if tag not in cleaned:
            cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags per entry")
    return cleaned


class JournalService:
    def __init__(
        self,
        session_factory: sessionmaker,
        entitlements: EntitlementStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.entitlements = entitlements
        self.clock = clock

    def create_entry(self, user_id: str, ciphertext: str, iv: str, tags: Optional[List[str]] = None) -> JournalEntry:
        """
        Store an encrypted entry.

        Raises:
            ValidationError: missing ciphertext or IV, or bad tags
        """
        if not ciphertext or not iv:
            raise ValidationError("ciphertext and iv are required")
        cleaned = _clean_tags(tags)

        now = self.clock()
        entry_id = str(uuid.uuid4())
        with session_scope(self.session_factory) as session:
            session.execute(
                insert(journal_entries).values(
                    id=entry_id,
                    user_id=user_id,
                    ciphertext=ciphertext,
                    iv=iv,
                    algo_version=ALGO_VERSION,
                    tags=cleaned,
                    created_at=now,
                    updated_at=now,
                )
            )
            record_app_event(session, "journal_created", user_id)

        logger.info("[journal] entry created", extra={"user_id": user_id, "entry_id": entry_id})
        return JournalEntry(
            id=entry_id,
            ciphertext=ciphertext,
            iv=iv,
            algo_version=ALGO_VERSION,
            tags=cleaned,
            created_at=now,
            updated_at=now,
        )

    def list_entries(self, user_id: str) -> List[JournalEntry]:
        """Newest first."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(journal_entries)
                .where(journal_entries.c.user_id == user_id)
                .order_by(journal_entries.c.created_at.desc())
            ).all()
        return [_to_entry(row) for row in rows]

    def delete_entry(self, user_id: str, entry_id: str) -> None:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                delete(journal_entries)
                .where(journal_entries.c.id == entry_id)
                .where(journal_entries.c.user_id == user_id)
            )
            if result.rowcount == 0:
                # Someone else's entry looks exactly like a missing one
                raise NotFoundError("Journal entry not found")

        logger.info("[journal] entry deleted", extra={"user_id": user_id, "entry_id": entry_id})

    def retention_days(self, user_id: str, session: Optional[Session] = None) -> Limit:
        entitlement = self.entitlements.get(user_id, session=session)
        if entitlement is None:
            return self.entitlements.resolver.resolve(FREE_TIER).limits.journal_retention_days
        return entitlement.limits.journal_retention_days

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete entries older than each owner's retention window.

        Returns:
            Number of entries deleted
        """
        now = now or self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        purged = 0
        with session_scope(self.session_factory) as session:
            owners = session.execute(select(journal_entries.c.user_id).distinct()).scalars().all()
            for user_id in owners:
                days = self.retention_days(user_id, session=session)
                if days is UNLIMITED:
                    continue
                cutoff = now - timedelta(days=days)
                result = session.execute(
                    delete(journal_entries)
                    .where(journal_entries.c.user_id == user_id)
                    .where(journal_entries.c.created_at < cutoff)
                )
                purged += result.rowcount or 0

        if purged:
            logger.info("[journal] purged expired entries", extra={"count": purged})
        return purged
