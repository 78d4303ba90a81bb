"""
User profile service.

- ensure_profile(user_id): profile row plus a free-tier entitlement
- get_profile / get_avatar_profile
- update_avatar: persona, age tier, name and personality sliders
- link_customer / find_user_by_customer for billing
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import profiles, session_or_scope
from ryvynn.core.errors import FeatureNotEntitledError, NotFoundError, ValidationError
from ryvynn.features.companion.personas import AvatarProfile, PersonalitySliders
from ryvynn.features.entitlements.service import EntitlementStore
from ryvynn.models.user import Profile


logger = logging.getLogger("ryvynn")

AGE_TIER_FEATURE = "age_tier_switching"
SLIDERS_FEATURE = "personality_sliders"


def _avatar_from_row(row) -> AvatarProfile:
    return AvatarProfile(
        gender_persona=row.gender_persona,
        age_tier=row.age_tier,
        avatar_name=row.avatar_name,
        sliders=PersonalitySliders(
            warmth=row.personality_warmth,
            directness=row.personality_directness,
            humor=row.personality_humor,
            formality=row.personality_formality,
        ),
    )


def _profile_from_row(row) -> Profile:
    return Profile(
        user_id=row.user_id,
        display_name=row.display_name or Profile.normalized_display_name(row.user_id, None),
        avatar=_avatar_from_row(row),
        stripe_customer_id=row.stripe_customer_id,
        created_at=row.created_at,
    )


class UserService:
    def __init__(self, session_factory: sessionmaker, entitlements: EntitlementStore):
        self.session_factory = session_factory
        self.entitlements = entitlements

    def get_profile(self, user_id: str, session: Optional[Session] = None) -> Optional[Profile]:
        with session_or_scope(self.session_factory, session) as s:
            row = s.execute(select(profiles).where(profiles.c.user_id == user_id)).first()
            return _profile_from_row(row) if row else None

    def ensure_profile(self, user_id: str, display_name: Optional[str] = None) -> Profile:
        existing = self.get_profile(user_id)
        if existing:
            return existing

        default_avatar = AvatarProfile()
        try:
            with session_or_scope(self.session_factory) as session:
                session.execute(
                    insert(profiles).values(
                        user_id=user_id,
                        display_name=Profile.normalized_display_name(user_id, display_name),
                        gender_persona=default_avatar.gender_persona,
                        age_tier=default_avatar.age_tier,
                        avatar_name=default_avatar.avatar_name,
                    )
                )
                self.entitlements.ensure(user_id, session=session)
        except IntegrityError:
            # Concurrent first request created it
            logger.debug("[users] profile already created", extra={"user_id": user_id})
        else:
            logger.info("[users] profile created", extra={"user_id": user_id})

        profile = self.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} could not be created")
        return profile

    def get_avatar_profile(self, user_id: str, session: Optional[Session] = None) -> AvatarProfile:
        profile = self.get_profile(user_id, session=session)
        return profile.avatar if profile else AvatarProfile()

    def update_avatar(
        self,
        user_id: str,
        *,
        gender_persona: Optional[str] = None,
        age_tier: Optional[str] = None,
        avatar_name: Optional[str] = None,
        sliders: Optional[PersonalitySliders] = None,
    ) -> Profile:
        current = self.ensure_profile(user_id)

        changes = {}
        if gender_persona is not None:
            changes["gender_persona"] = gender_persona
        if avatar_name is not None:
            changes["avatar_name"] = avatar_name
        if age_tier is not None and age_tier != current.avatar.age_tier:
            check = self.entitlements.check_feature(user_id, AGE_TIER_FEATURE)
            if not check.entitled:
                raise FeatureNotEntitledError(check.reason or "Age tier switching is not included in your tier")
            changes["age_tier"] = age_tier
        if sliders is not None:
            check = self.entitlements.check_feature(user_id, SLIDERS_FEATURE)
            if not check.entitled:
                raise FeatureNotEntitledError(check.reason or "Personality sliders are not included in your tier")
            changes["sliders"] = sliders

        try:
            updated = AvatarProfile.model_validate({**current.avatar.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid avatar settings: {e.errors()[0]['msg']}")

        with session_or_scope(self.session_factory) as session:
            session.execute(
                update(profiles)
                .where(profiles.c.user_id == user_id)
                .values(
                    gender_persona=updated.gender_persona,
                    age_tier=updated.age_tier,
                    avatar_name=updated.avatar_name,
                    personality_warmth=updated.sliders.warmth,
                    personality_directness=updated.sliders.directness,
                    personality_humor=updated.sliders.humor,
                    personality_formality=updated.sliders.formality,
                    updated_at=datetime.now(timezone.utc),
                )
            )

        logger.info("[users] avatar updated", extra={"user_id": user_id, "fields": sorted(changes)})
        return self.get_profile(user_id)

    def find_user_by_customer(self, session: Session, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        row = session.execute(
            select(profiles.c.user_id).where(profiles.c.stripe_customer_id == customer_id)
        ).first()
        return row.user_id if row else None

    def profile_exists(self, session: Session, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        return session.execute(
            select(profiles.c.user_id).where(profiles.c.user_id == user_id)
        ).first() is not None

    def link_customer(self, session: Session, user_id: str, customer_id: str) -> None:
        session.execute(
            update(profiles)
            .where(profiles.c.user_id == user_id)
            .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
        )
