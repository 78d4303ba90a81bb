"""
Companion ("Flame") conversation service.

Flow per message:
1. Validate the message
2. Meter flame_calls (deny -> allowed=False, no reply)
3. Classify; high/medium crisis returns the fixed safety message only
4. Compose a styled reply; sliders only for entitled users
5. Record app events (never the message itself)
"""

from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.orm import sessionmaker

from ryvynn.core.database import session_or_scope
from ryvynn.core.errors import ValidationError
from ryvynn.features.audit.service import record_app_event
from ryvynn.features.companion.classifier import CRISIS_LOW, classify, safety_message
from ryvynn.features.companion.composer import ResponseComposer
from ryvynn.features.entitlements.matrix import CounterKind
from ryvynn.features.entitlements.service import EntitlementStore
from ryvynn.features.usage.service import UsageDecision, UsageMeter, UsageSnapshot
from ryvynn.features.users.service import SLIDERS_FEATURE, UserService


logger = logging.getLogger("ryvynn")

MAX_MESSAGE_LENGTH = 4000


@dataclass(frozen=True)
class CompanionReply:
    allowed: bool
    text: Optional[str]
    is_crisis: bool
    crisis_level: Optional[str]
    emotion: Optional[str]
    usage: UsageDecision


class CompanionService:
    def __init__(
        self,
        session_factory: sessionmaker,
        meter: UsageMeter,
        entitlements: EntitlementStore,
        composer: ResponseComposer,
        users: UserService,
    ):
        self.session_factory = session_factory
        self.meter = meter
        self.entitlements = entitlements
        self.composer = composer
        self.users = users

    def respond(self, user_id: str, message: str) -> CompanionReply:
        text = (message or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")

        usage = self.meter.check_and_increment(user_id, CounterKind.FLAME_CALLS)
        if not usage.allowed:
            return CompanionReply(
                allowed=False,
                text=None,
                is_crisis=False,
                crisis_level=None,
                emotion=None,
                usage=usage,
            )

        result = classify(text)

        if result.is_crisis:
            reply_text = safety_message(result.crisis_level)
        else:
            avatar = self.users.get_avatar_profile(user_id)
            sliders = None
            if self.entitlements.has_feature(user_id, SLIDERS_FEATURE):
                sliders = avatar.sliders
            reply_text = self.composer.compose(result.emotion, avatar.age_tier, avatar.gender_persona, sliders)
            if result.crisis_level == CRISIS_LOW:
                reply_text = f"{reply_text}\n\n{safety_message(CRISIS_LOW)}"

        with session_or_scope(self.session_factory) as session:
            record_app_event(
                session,
                "flame_call",
                user_id,
                {"emotion": result.emotion, "crisis": result.is_crisis},
            )
            if result.crisis_level:
                record_app_event(session, "crisis_shown", user_id, {"level": result.crisis_level})

        if result.crisis_level:
            logger.warning(
                "[companion] crisis detected",
                extra={"user_id": user_id, "crisis_level": result.crisis_level},
            )

        return CompanionReply(
            allowed=True,
            text=reply_text,
            is_crisis=result.is_crisis,
            crisis_level=result.crisis_level,
            emotion=result.emotion,
            usage=usage,
        )

    def usage(self, user_id: str) -> UsageSnapshot:
        return self.meter.peek(user_id, CounterKind.FLAME_CALLS)
