"""
Journal tests: ciphertext-only storage, ownership and tier retention.
"""
import pytest

from ryvynn.core.errors import NotFoundError, ValidationError
from ryvynn.features.audit.service import list_app_events
from ryvynn.core.database import session_scope
from ryvynn.features.entitlements.matrix import UNLIMITED
from ryvynn.features.journal.service import ALGO_VERSION


@pytest.fixture
def journal(services):
    return services.journal


def test_create_and_list_newest_first(journal, make_user, clock):
    make_user("u_j")
    first = journal.create_entry("u_j", "Y2lwaGVy", "aXYx", tags=["sleep", " sleep ", "work"])
    clock.advance(hours=1)
    second = journal.create_entry("u_j", "Y2lwaGVyMg==", "aXYy")

    assert first.algo_version == ALGO_VERSION
    assert first.tags == ["sleep", "work"]

    entries = journal.list_entries("u_j")
    assert [e.id for e in entries] == [second.id, first.id]
    assert entries[1].ciphertext == "Y2lwaGVy"


def test_create_records_event_without_content(journal, make_user, session_factory):
    make_user("u_j")
    journal.create_entry("u_j", "Y2lwaGVy", "aXYx")

    with session_scope(session_factory) as session:
        events = list_app_events(session, user_id="u_j", event_type="journal_created")
    assert len(events) == 1
    assert "Y2lwaGVy" not in str(events[0]["metadata"])


@pytest.mark.parametrize(
    "ciphertext, iv, tags",
    [
        ("", "aXYx", None),
        ("Y2lwaGVy", "", None),
        ("Y2lwaGVy", "aXYx", ["t" * 41]),
        ("Y2lwaGVy", "aXYx", [f"tag{i}" for i in range(11)]),
    ],
)
def test_create_rejects_invalid(journal, make_user, ciphertext, iv, tags):
    make_user("u_j")
    with pytest.raises(ValidationError):
        journal.create_entry("u_j", ciphertext, iv, tags=tags)


def test_delete_is_owner_only(journal, make_user):
    make_user("u_owner")
    make_user("u_other")
    entry = journal.create_entry("u_owner", "Y2lwaGVy", "aXYx")

    with pytest.raises(NotFoundError):
        journal.delete_entry("u_other", entry.id)
    assert len(journal.list_entries("u_owner")) == 1

    journal.delete_entry("u_owner", entry.id)
    assert journal.list_entries("u_owner") == []

    with pytest.raises(NotFoundError):
        journal.delete_entry("u_owner", entry.id)


def test_purge_follows_tier_retention(journal, make_user, clock):
    make_user("u_free")
    make_user("u_spark", tier=1)
    make_user("u_sovereign", tier=4)
    for user_id in ("u_free", "u_spark", "u_sovereign"):
        journal.create_entry(user_id, "b2xk", "aXY=")

    clock.advance(days=10)
    assert journal.purge_expired() == 1
    assert journal.list_entries("u_free") == []
    assert len(journal.list_entries("u_spark")) == 1

    clock.advance(days=25)
    assert journal.purge_expired() == 1
    assert journal.list_entries("u_spark") == []

    clock.advance(days=3650)
    assert journal.purge_expired() == 0
    assert len(journal.list_entries("u_sovereign")) == 1


def test_retention_days_by_tier(journal, make_user):
    make_user("u_free")
    make_user("u_sovereign", tier=4)
    assert journal.retention_days("u_free") == 7
    assert journal.retention_days("nobody") == 7
    assert journal.retention_days("u_sovereign") is UNLIMITED
