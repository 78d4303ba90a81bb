"""
Companion service tests: metering, crisis handling and event recording.
"""
from unittest.mock import patch

import pytest

from ryvynn.core.database import session_scope
from ryvynn.core.errors import ValidationError
from ryvynn.features.audit.service import list_app_events
from ryvynn.features.companion.classifier import CRISIS_LOW, safety_message
from ryvynn.features.companion.personas import PersonalitySliders


@pytest.fixture
def companion(services):
    return services.companion


def events(session_factory, user_id, event_type=None):
    with session_scope(session_factory) as session:
        return list_app_events(session, user_id=user_id, event_type=event_type)


def test_reply_is_styled_and_metered(companion, make_user):
    make_user("u_chat")

    reply = companion.respond("u_chat", "I'm so frustrated with everything today")

    assert reply.allowed is True
    assert reply.is_crisis is False
    assert reply.emotion == "angry"
    assert reply.text
    assert reply.usage.current == 1
    assert companion.usage("u_chat").current == 1


def test_free_user_is_denied_after_three_calls(companion, make_user):
    make_user("u_free")
    for _ in range(3):
        assert companion.respond("u_free", "hello there").allowed is True

    denied = companion.respond("u_free", "hello there")

    assert denied.allowed is False
    assert denied.text is None
    assert denied.usage.remaining == 0


def test_high_crisis_returns_safety_message_only(companion, make_user):
    make_user("u_crisis")
    with patch.object(companion.composer, "compose") as compose:
        reply = companion.respond("u_crisis", "I want to kill myself")

    compose.assert_not_called()
    assert reply.is_crisis is True
    assert reply.crisis_level == "high"
    assert reply.emotion is None
    assert "988" in reply.text
    assert "741741" in reply.text


def test_medium_crisis_is_a_crisis(companion, make_user):
    make_user("u_med")
    reply = companion.respond("u_med", "I feel completely hopeless")
    assert reply.is_crisis is True
    assert reply.crisis_level == "medium"
    assert "988" in reply.text


def test_low_level_appends_support_line(companion, make_user):
    make_user("u_low")
    reply = companion.respond("u_low", "I feel really alone tonight")

    assert reply.is_crisis is False
    assert reply.crisis_level == CRISIS_LOW
    assert reply.text.endswith(safety_message(CRISIS_LOW))


def test_sliders_apply_only_when_entitled(companion, users, make_user):
    make_user("u_sov", tier=4)
    users.update_avatar("u_sov", sliders=PersonalitySliders(warmth=10))

    with patch.object(companion.composer, "compose", return_value="ok") as compose:
        companion.respond("u_sov", "just checking in")
    assert compose.call_args.args[3] == PersonalitySliders(warmth=10)

    # Dropping below the slider tier ignores the stored dials
    make_user("u_sov", tier=1)
    with patch.object(companion.composer, "compose", return_value="ok") as compose:
        companion.respond("u_sov", "just checking in")
    assert compose.call_args.args[3] is None


def test_events_never_store_message_text(companion, make_user, session_factory):
    make_user("u_ev")
    companion.respond("u_ev", "I want to end it all, my secret plan")

    recorded = events(session_factory, "u_ev")
    assert [e["event_type"] for e in recorded] == ["flame_call", "crisis_shown"]
    assert "secret" not in str([e["metadata"] for e in recorded])
    assert recorded[1]["metadata"]["level"] == "high"


@pytest.mark.parametrize("message", ["", "   ", "x" * 4001])
def test_invalid_messages_are_rejected(companion, make_user, message):
    make_user("u_val")
    with pytest.raises(ValidationError):
        companion.respond("u_val", message)
