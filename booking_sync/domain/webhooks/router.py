"""
Webhook routes

- POST /webhooks/calendly - scheduling provider notifications
- POST /webhooks/payments - payment processor notifications (Standard Webhooks)
- /scheduling/admin/webhook-subscription - provisioning and secret rotation
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user_id
from ...config import ADMIN_USER_IDS
from ...database import get_db
from ...errors import AuthenticationRequired
from ...models import WebhookSubscription
from ...services.calendly_service import get_calendly_service
from ...services.scheduling_provider import SchedulingProvider
from ...utils.timeutils import as_utc
from ..bookings.service import BookingService
from .schemas import ProvisionSubscriptionRequest, SubscriptionResponse, WebhookAck
from .service import WebhookService
from .signing_secrets import SigningSecretManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
admin_router = APIRouter(prefix="/scheduling/admin", tags=["Scheduling Admin"])


def get_webhook_service(db: Session = Depends(get_db)) -> WebhookService:
    """Dependency injection for WebhookService"""
    return WebhookService(db, bookings=BookingService(db))


def get_signing_secret_manager(
    db: Session = Depends(get_db),
    provider: SchedulingProvider = Depends(get_calendly_service),
) -> SigningSecretManager:
    return SigningSecretManager(db, provider)


async def require_admin(user_id: str = Depends(get_current_user_id)) -> str:
    if user_id not in ADMIN_USER_IDS:
        logger.warning(f"🚫 Non-admin {user_id} attempted webhook administration")
        raise AuthenticationRequired("Administrator access required")
    return user_id


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# Signed deliveries are never rate limited; a 429 makes the provider redeliver
@router.post("/calendly", response_model=WebhookAck)
async def calendly_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Handle Calendly webhook events.
    Supported events: invitee.created, invitee.canceled, invitee_no_show.created

    Answers 200 once the event is durably recorded, whatever the business
    outcome; only signature (401) and payload (400) failures are rejected.
    """
    body = await request.body()
    signature = request.headers.get("Calendly-Webhook-Signature") or request.headers.get(
        "X-Webhook-Signature"
    )
    result = service.handle_webhook(body, signature, client_ip=_client_ip(request))
    return WebhookAck(outcome=result.outcome, duplicate=result.duplicate)


@router.post("/payments", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Handle payment processor events (payment.succeeded, payment.failed)"""
    body = await request.body()
    result = service.handle_payment_webhook(
        body,
        request.headers.get("webhook-id"),
        request.headers.get("webhook-timestamp"),
        request.headers.get("webhook-signature"),
        client_ip=_client_ip(request),
    )
    return WebhookAck(outcome=result.outcome, duplicate=result.duplicate)


def to_subscription_response(subscription: WebhookSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        providerSubscriptionUri=subscription.provider_subscription_uri,
        callbackUrl=subscription.callback_url,
        events=subscription.events or [],
        scope=subscription.scope,
        state=subscription.state,
        rotatedAt=as_utc(subscription.rotated_at),
        rotationInProgress=subscription.previous_signing_secret is not None,
    )


@admin_router.post("/webhook-subscription", response_model=SubscriptionResponse)
async def provision_webhook_subscription(
    data: ProvisionSubscriptionRequest,
    _admin: str = Depends(require_admin),
    manager: SigningSecretManager = Depends(get_signing_secret_manager),
):
    """Register the webhook callback with the provider under a new signing secret"""
    subscription = await manager.provision_subscription(data.callbackUrl, data.events, data.scope)
    return to_subscription_response(subscription)


@admin_router.post("/webhook-subscription/rotate", response_model=SubscriptionResponse)
async def rotate_webhook_secret(
    _admin: str = Depends(require_admin),
    manager: SigningSecretManager = Depends(get_signing_secret_manager),
):
    subscription = await manager.rotate_secret()
    return to_subscription_response(subscription)
