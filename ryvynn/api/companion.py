"""
Companion ("Flame") API routes.

- POST /v1/companion/messages: Send a message, get a styled reply or the safety message
- GET  /v1/companion/usage: Today's conversation usage
"""
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ryvynn.api.deps import current_user, get_companion_service
from ryvynn.features.companion.service import CompanionService
from ryvynn.features.entitlements.matrix import limit_to_json


router = APIRouter(prefix="/v1/companion", tags=["companion"])


class MessageRequest(BaseModel):
    message: str


class UsageOut(BaseModel):
    used: int
    limit: Union[int, str]
    remaining: Union[int, str]


class MessageResponse(BaseModel):
    allowed: bool
    reply: Optional[str] = None
    is_crisis: bool = False
    crisis_level: Optional[str] = None
    emotion: Optional[str] = None
    upgrade_required: bool = False
    usage: UsageOut


@router.post("/messages", response_model=MessageResponse)
def send_message(
    request: MessageRequest,
    user_id: str = Depends(current_user),
    companion: CompanionService = Depends(get_companion_service),
) -> Dict[str, Any]:
    """
    Reply to a companion message.

    A reached daily limit is not an error: the response has
    allowed=false and upgrade_required=true.
    """
    reply = companion.respond(user_id, request.message)
    return {
        "allowed": reply.allowed,
        "reply": reply.text,
        "is_crisis": reply.is_crisis,
        "crisis_level": reply.crisis_level,
        "emotion": reply.emotion,
        "upgrade_required": not reply.allowed,
        "usage": {
            "used": reply.usage.current,
            "limit": limit_to_json(reply.usage.limit),
            "remaining": limit_to_json(reply.usage.remaining),
        },
    }


@router.get("/usage", response_model=UsageOut)
def get_usage(
    user_id: str = Depends(current_user),
    companion: CompanionService = Depends(get_companion_service),
) -> Dict[str, Any]:
    snapshot = companion.usage(user_id)
    return {
        "used": snapshot.current,
        "limit": limit_to_json(snapshot.limit),
        "remaining": limit_to_json(snapshot.remaining),
    }
