"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session for a paid tier
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/status: Get user billing status
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ryvynn.api.deps import current_user, get_billing_service
from ryvynn.features.billing.provider import BillingProviderError, BillingWebhookError
from ryvynn.features.billing.service import BillingService


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    tier: int
    cadence: Literal["monthly", "annual"] = "monthly"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    """Request to create portal session."""
    return_url: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    tier: int
    tier_name: str
    status: Optional[str]
    period_end: Optional[str]  # ISO8601
    cancel_at_period_end: bool


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(current_user),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Tier not purchasable
        502: Stripe API error
    """
    try:
        url = billing.start_checkout(
            user_id=user_id,
            tier=request.tier,
            cadence=request.cadence,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(
    request: PortalRequest,
    user_id: str = Depends(current_user),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe billing portal session.

    Errors:
        503: Billing disabled
        404: Customer not found (user never checked out)
        502: Stripe API error
    """
    try:
        url = billing.start_portal(user_id=user_id, return_url=request.return_url)
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(request: Request, billing: BillingService = Depends(get_billing_service)):
    """
    Handle Stripe webhook events.

    Returns 200 for applied, ignored, stale and duplicate events; 500 for
    unknown prices and unresolvable users so Stripe retries them.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        response = billing.process_webhook(headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JSONResponse(status_code=response.http_status, content=response.body())


@router.get("/status", response_model=BillingStatusResponse)
def get_status(
    user_id: str = Depends(current_user),
    billing: BillingService = Depends(get_billing_service),
):
    status = billing.get_billing_status(user_id)

    period_end_str = None
    if status["period_end"]:
        period_end_str = status["period_end"].isoformat()

    return {**status, "period_end": period_end_str}
