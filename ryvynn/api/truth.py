"""
Truth feed API routes.

- POST /v1/truth/posts: Share an anonymous truth
- GET  /v1/truth/feed: Balanced light/shadow feed (anonymous allowed)
- POST /v1/truth/posts/{post_id}/read: Mark read, earn soul tokens once
- GET  /v1/truth/tokens: Soul token balance and recent ledger
"""
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ryvynn.api.deps import current_user, get_token_ledger, get_truth_service, get_user_service
from ryvynn.core.auth import get_optional_user_id
from ryvynn.features.tokens.ledger import TokenLedger
from ryvynn.features.truth.service import TruthFeedService
from ryvynn.features.users.service import UserService


router = APIRouter(prefix="/v1/truth", tags=["truth"])


class CreatePostRequest(BaseModel):
    content: str
    emotion_tag: Literal["light", "shadow"]


@router.post("/posts")
def create_post(
    request: CreatePostRequest,
    user_id: str = Depends(current_user),
    truth: TruthFeedService = Depends(get_truth_service),
) -> Dict[str, Any]:
    result = truth.create_post(user_id, request.content, request.emotion_tag)
    return {
        "success": result.success,
        "post_id": result.post_id,
        "is_visible": result.is_visible,
        "held_for_review": result.held_for_review,
        "tokens_earned": result.tokens_earned,
        "upgrade_required": result.upgrade_required,
        "limit_info": result.limit_info,
    }


@router.get("/feed")
def get_feed(
    limit: int = Query(10),
    user_id: Optional[str] = Depends(get_optional_user_id),
    users: UserService = Depends(get_user_service),
    truth: TruthFeedService = Depends(get_truth_service),
) -> Dict[str, Any]:
    if user_id:
        users.ensure_profile(user_id)
    feed = truth.get_feed(user_id, limit=limit)
    return {
        "posts": [post.to_public() for post in feed.posts],
        "has_more": feed.has_more,
        "reads_remaining": feed.reads_remaining,
        "limit_info": feed.limit_info,
    }


@router.post("/posts/{post_id}/read")
def read_post(
    post_id: int,
    user_id: Optional[str] = Depends(get_optional_user_id),
    users: UserService = Depends(get_user_service),
    truth: TruthFeedService = Depends(get_truth_service),
) -> Dict[str, Any]:
    if user_id:
        users.ensure_profile(user_id)
    result = truth.read_post(user_id, post_id)
    return {
        "success": result.success,
        "tokens_earned": result.tokens_earned,
        "already_read": result.already_read,
        "upgrade_required": result.upgrade_required,
        "limit_info": result.limit_info,
        "error": result.error,
    }


@router.get("/tokens")
def get_tokens(
    limit: int = Query(20),
    user_id: str = Depends(current_user),
    tokens: TokenLedger = Depends(get_token_ledger),
) -> Dict[str, Any]:
    balance = tokens.get_balance(user_id)
    entries = tokens.get_ledger(user_id, limit=limit)
    return {
        "balance": balance.model_dump(),
        "ledger": [entry.model_dump(mode="json") for entry in entries],
    }
