"""
Profile API routes: avatar persona, age tier and personality sliders.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ryvynn.api.deps import current_user, get_user_service
from ryvynn.features.companion.personas import PersonalitySliders
from ryvynn.features.users.service import UserService
from ryvynn.models.user import Profile


router = APIRouter(prefix="/v1/profile", tags=["profile"])


class AvatarUpdateRequest(BaseModel):
    gender_persona: Optional[str] = None
    age_tier: Optional[str] = None
    avatar_name: Optional[str] = None
    sliders: Optional[PersonalitySliders] = None


def _profile_out(profile: Profile) -> Dict[str, Any]:
    # stripe_customer_id stays server-side
    return {
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "avatar": profile.avatar.model_dump(),
    }


@router.get("")
def get_profile(
    user_id: str = Depends(current_user),
    users: UserService = Depends(get_user_service),
) -> Dict[str, Any]:
    return _profile_out(users.ensure_profile(user_id))


@router.patch("/avatar")
def update_avatar(
    request: AvatarUpdateRequest,
    user_id: str = Depends(current_user),
    users: UserService = Depends(get_user_service),
) -> Dict[str, Any]:
    """Age tier switching and sliders are gated by tier (403 when not entitled)."""
    profile = users.update_avatar(
        user_id,
        gender_persona=request.gender_persona,
        age_tier=request.age_tier,
        avatar_name=request.avatar_name,
        sliders=request.sliders,
    )
    return _profile_out(profile)
