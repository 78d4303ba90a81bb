"""
Truth feed: anonymous posts balanced between light and shadow.

Handles:
- Post creation with daily limits and crisis hold
- Balanced feed (light/shadow interleaved, most recent first per tag)
- Read-once rewards

Authors are never exposed to readers. Crisis-flagged posts are stored
hidden and wait for manual review.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import session_scope, truth_posts, truth_reads
from ryvynn.core.errors import ValidationError
from ryvynn.features.audit.service import record_app_event
from ryvynn.features.companion.classifier import CRISIS_HIGH, CRISIS_MEDIUM, detect_crisis_level
from ryvynn.features.entitlements.matrix import CounterKind, limit_to_json
from ryvynn.features.entitlements.service import EntitlementStore
from ryvynn.features.tokens.ledger import TokenLedger
from ryvynn.features.usage.service import UsageDecision, UsageMeter, utc_now


logger = logging.getLogger("ryvynn")

EMOTION_TAGS = ("light", "shadow")
MIN_CONTENT_LENGTH = 10
MAX_CONTENT_LENGTH = 2000
MAX_FEED_LIMIT = 50
SHARING_MULTIPLIER = 5

# Extra phrases that hold a post even when the companion would not escalate
TRUTH_CRISIS_KEYWORDS = ("overdose",)
HELD_LEVELS = (CRISIS_HIGH, CRISIS_MEDIUM)


@dataclass(frozen=True)
class FeedPost:
    id: int
    content: str
    emotion_tag: str
    created_at: datetime
    already_read: bool = False

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "emotion_tag": self.emotion_tag,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "already_read": self.already_read,
        }


@dataclass(frozen=True)
class CreatePostResult:
    success: bool
    post_id: Optional[int] = None
    is_visible: bool = False
    held_for_review: bool = False
    tokens_earned: int = 0
    upgrade_required: bool = False
    limit_info: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FeedResult:
    posts: List[FeedPost] = field(default_factory=list)
    has_more: bool = False
    reads_remaining: Any = None
    limit_info: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ReadResult:
    success: bool
    tokens_earned: int = 0
    already_read: bool = False
    upgrade_required: bool = False
    limit_info: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def interleave(light: Sequence, shadow: Sequence) -> list:
    """Alternate light/shadow while both remain, then append the leftover."""
    combined = []
    i = j = 0
    while i < len(light) and j < len(shadow):
        combined.append(light[i])
        combined.append(shadow[j])
        i += 1
        j += 1
    combined.extend(light[i:])
    combined.extend(shadow[j:])
    return combined


def _to_post(row, already_read: bool = False) -> FeedPost:
    return FeedPost(
        id=row.id,
        content=row.content,
        emotion_tag=row.emotion_tag,
        created_at=row.created_at,
        already_read=already_read,
    )


class TruthFeedService:
    def __init__(
        self,
        session_factory: sessionmaker,
        meter: UsageMeter,
        entitlements: EntitlementStore,
        tokens: TokenLedger,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.meter = meter
        self.entitlements = entitlements
        self.tokens = tokens
        self.clock = clock

    def _tier_name(self, user_id: str, session: Session) -> str:
        tier_id = self.entitlements.current_tier(user_id, session=session)
        return self.entitlements.resolver.tier_name(tier_id)

    def create_post(self, user_id: str, content: str, emotion_tag: str) -> CreatePostResult:
        """
        Store a truth post.

        Raises:
            ValidationError: content length out of range or unknown tag
        """
        text = (content or "").strip()
        if len(text) < MIN_CONTENT_LENGTH or len(text) > MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Content must be between {MIN_CONTENT_LENGTH} and {MAX_CONTENT_LENGTH} characters"
            )
        if emotion_tag not in EMOTION_TAGS:
            raise ValidationError("Emotion tag must be 'light' or 'shadow'")

        with session_scope(self.session_factory) as session:
            usage = self.meter.check_and_increment(user_id, CounterKind.TRUTH_POSTS, session=session)
            if not usage.allowed:
                return CreatePostResult(
                    success=False,
                    upgrade_required=True,
                    limit_info={
                        "used": usage.current,
                        "limit": limit_to_json(usage.limit),
                        "tier_name": self._tier_name(user_id, session),
                    },
                )

            crisis_level = detect_crisis_level(text, TRUTH_CRISIS_KEYWORDS)
            held = crisis_level in HELD_LEVELS

            result = session.execute(
                insert(truth_posts).values(
                    user_id=user_id,
                    content=text,
                    emotion_tag=emotion_tag,
                    contains_crisis_keywords=held,
                    crisis_level=crisis_level if held else None,
                    is_visible=not held,
                    created_at=self.clock(),
                )
            )
            post_id = result.inserted_primary_key[0]

            if held:
                record_app_event(session, "truth_post_held", user_id, {"post_id": post_id, "level": crisis_level})
                logger.warning(
                    "[truth] post held for review",
                    extra={"user_id": user_id, "post_id": post_id, "crisis_level": crisis_level},
                )
                return CreatePostResult(success=True, post_id=post_id, is_visible=False, held_for_review=True)

            earned = self.entitlements.earn_rate(user_id, session=session) * SHARING_MULTIPLIER
            if earned > 0:
                self.tokens.award(session, user_id, earned, "truth_sharing", reference=f"post:{post_id}")

        logger.info("[truth] post created", extra={"user_id": user_id, "post_id": post_id})
        return CreatePostResult(success=True, post_id=post_id, is_visible=True, tokens_earned=earned)

    def get_feed(self, user_id: Optional[str] = None, limit: int = 10) -> FeedResult:
        limit = max(1, min(limit, MAX_FEED_LIMIT))

        with session_scope(self.session_factory) as session:
            pools = {}
            for tag in EMOTION_TAGS:
                pools[tag] = session.execute(
                    select(truth_posts.c.id, truth_posts.c.content, truth_posts.c.emotion_tag, truth_posts.c.created_at)
                    .where(truth_posts.c.is_visible.is_(True))
                    .where(truth_posts.c.emotion_tag == tag)
                    .order_by(truth_posts.c.created_at.desc(), truth_posts.c.id.desc())
                    .limit(limit + 1)
                ).all()

            combined = interleave(pools["light"], pools["shadow"])
            has_more = len(combined) > limit
            rows = combined[:limit]

            if user_id is None:
                return FeedResult(posts=[_to_post(row) for row in rows], has_more=has_more)

            read_ids = set()
            if rows:
                read_ids = set(
                    session.execute(
                        select(truth_reads.c.post_id)
                        .where(truth_reads.c.user_id == user_id)
                        .where(truth_reads.c.post_id.in_([row.id for row in rows]))
                    ).scalars()
                )

            snapshot = self.meter.peek(user_id, CounterKind.TRUTH_READS, session=session)
            limit_info = {
                "reads_today": snapshot.current,
                "limit": limit_to_json(snapshot.limit),
                "tier_name": self._tier_name(user_id, session),
            }

        return FeedResult(
            posts=[_to_post(row, row.id in read_ids) for row in rows],
            has_more=has_more,
            reads_remaining=limit_to_json(snapshot.remaining),
            limit_info=limit_info,
        )

    def read_post(self, user_id: Optional[str], post_id: int) -> ReadResult:
        """
        Mark a post as read and award soul tokens once per (user, post).

        Anonymous readers can read but earn nothing.
        """
        try:
            with session_scope(self.session_factory) as session:
                visible = session.execute(
                    select(truth_posts.c.is_visible).where(truth_posts.c.id == post_id)
                ).scalar()
                if not visible:
                    return ReadResult(success=False, error="not_found")

                if user_id is None:
                    return ReadResult(success=True)

                already = session.execute(
                    select(func.count())
                    .select_from(truth_reads)
                    .where(truth_reads.c.user_id == user_id)
                    .where(truth_reads.c.post_id == post_id)
                ).scalar()
                if already:
                    return ReadResult(success=True, already_read=True)

                usage: UsageDecision = self.meter.check_and_increment(
                    user_id, CounterKind.TRUTH_READS, session=session
                )
                if not usage.allowed:
                    return ReadResult(
                        success=False,
                        upgrade_required=True,
                        limit_info={
                            "reads_today": usage.current,
                            "limit": limit_to_json(usage.limit),
                            "tier_name": self._tier_name(user_id, session),
                        },
                    )

                session.execute(
                    insert(truth_reads).values(user_id=user_id, post_id=post_id, read_at=self.clock())
                )
                earned = self.entitlements.earn_rate(user_id, session=session)
                if earned > 0:
                    self.tokens.award(session, user_id, earned, "truth_reading", reference=f"post:{post_id}")
        except IntegrityError:
            # Concurrent read of the same post won the unique constraint
            logger.info("[truth] duplicate read", extra={"user_id": user_id, "post_id": post_id})
            return ReadResult(success=True, already_read=True)

        return ReadResult(success=True, tokens_earned=earned)
