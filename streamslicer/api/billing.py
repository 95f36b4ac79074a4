"""Billing API - Stripe integration for credit purchases.

Credits are only granted by the verified ``checkout.session.completed``
webhook. The client never credits itself after opening a checkout page.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
import stripe

from streamslicer.api.deps import get_context, get_current_user_id
from streamslicer.config import Settings
from streamslicer.context import AppContext
from streamslicer.errors import ConfigurationError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CreditPackage(BaseModel):
    """Available credit package."""
    id: str
    name: str
    credits: int
    price_cents: int
    currency: str = "USD"


class CheckoutResponse(BaseModel):
    """Checkout session response."""
    checkout_url: str
    session_id: str


class CreditBalance(BaseModel):
    """Credit balance response."""
    credits: int
    user_id: str
    trial_available: bool


# Available credit packages
CREDIT_PACKAGES = [
    CreditPackage(id="starter", name="Starter Pack", credits=5000, price_cents=500),
    CreditPackage(id="creator", name="Creator Pack", credits=12000, price_cents=1000),
    CreditPackage(id="studio", name="Studio Pack", credits=70000, price_cents=5000),
]


def get_stripe(settings: Settings):
    """Get configured Stripe client."""
    if not settings.stripe_secret_key:
        raise ConfigurationError("Stripe is not configured")
    stripe.api_key = settings.stripe_secret_key
    return stripe


@router.get("/packages", response_model=list[CreditPackage])
async def list_packages():
    """List available credit packages."""
    return CREDIT_PACKAGES


@router.get("/balance", response_model=CreditBalance)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Get current credit balance."""
    return CreditBalance(
        credits=await ctx.ledger.get_balance(user_id),
        user_id=user_id,
        trial_available=await ctx.ledger.check_trial_eligibility(user_id),
    )


@router.post("/checkout/{package_id}", response_model=CheckoutResponse)
async def create_checkout_session(
    package_id: str,
    success_url: str = "http://localhost:5173/payment/success",
    cancel_url: str = "http://localhost:5173/payment/cancel",
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Create a Stripe checkout session for credit purchase."""
    package = next((p for p in CREDIT_PACKAGES if p.id == package_id), None)
    if not package:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Package not found", "code": "not_found"}
        )

    get_stripe(ctx.settings)

    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": package.currency.lower(),
                    "product_data": {
                        "name": f"StreamSlicer - {package.name}",
                        "description": f"{package.credits} credits for stream analysis",
                    },
                    "unit_amount": package.price_cents,
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=success_url + "?session_id={CHECKOUT_SESSION_ID}",
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={
                "user_id": user_id,
                "package_id": package.id,
                "credits": str(package.credits),
            }
        )
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": f"Payment error: {str(e)}", "code": "payment_error"}
        )

    return CheckoutResponse(
        checkout_url=session.url,
        session_id=session.id,
    )


@router.post("/webhook")
async def stripe_webhook(request: Request, ctx: AppContext = Depends(get_context)):
    """Handle Stripe webhook events.

    A failed credit grant is reported as a 500 so Stripe retries the
    event; the checkout session id makes the retry idempotent.
    """
    get_stripe(ctx.settings)

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, ctx.settings.stripe_webhook_secret
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] == "checkout.session.completed":
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}

        user_id = session.get("client_reference_id") or metadata.get("user_id")
        credits = int(metadata.get("credits", 0))

        if session.get("payment_status") != "paid":
            logger.info("Checkout %s completed without payment, skipping", session["id"])
        elif user_id and credits > 0:
            await ctx.ledger.add_credits(user_id, credits, reference=session["id"])
        else:
            logger.warning("Checkout %s has no user or credits in metadata", session["id"])

    return {"status": "ok"}


@router.get("/verify/{session_id}")
async def verify_payment(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Report a checkout's payment status and the current balance.

    Read-only: credits arrive through the webhook.
    """
    get_stripe(ctx.settings)

    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Could not verify payment: {str(e)}", "code": "payment_error"}
        )

    if session.client_reference_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Checkout session not found", "code": "not_found"}
        )

    if session.payment_status != "paid":
        return {
            "status": "pending",
            "payment_status": session.payment_status,
        }

    return {
        "status": "completed",
        "credits": await ctx.ledger.get_balance(user_id),
        "credits_purchased": int((session.metadata or {}).get("credits", 0)),
    }
