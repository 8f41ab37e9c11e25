"""
Signing-secret manager

Owns the shared secret the provider signs webhook deliveries with. Secrets are
generated here, handed to the provider when the subscription is registered and
stored Fernet-encrypted. During rotation the previous secret keeps verifying
deliveries that were signed before the switch.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    CALENDLY_WEBHOOK_SIGNING_KEY,
    CALENDLY_WEBHOOK_SIGNING_KEY_SECONDARY,
    SIGNING_SECRET_GRACE_HOURS,
    WEBHOOK_CALLBACK_URL,
)
from ...errors import CallbackNotConfigured
from ...models import WebhookSubscription
from ...security_utils import decrypt_secret, encrypt_secret, mask_sensitive_data
from ...services.scheduling_provider import SchedulingProvider
from ...utils.timeutils import to_db, utcnow
from .repository import WebhookSubscriptionRepository

logger = logging.getLogger(__name__)

DEFAULT_EVENTS = ["invitee.created", "invitee.canceled", "invitee_no_show.created"]


def generate_signing_secret() -> str:
    return secrets.token_urlsafe(32)


class SigningSecretManager:
    def __init__(
        self,
        db: Session,
        provider: Optional[SchedulingProvider] = None,
        repo: Optional[WebhookSubscriptionRepository] = None,
    ):
        self.db = db
        self.provider = provider
        self.repo = repo or WebhookSubscriptionRepository()

    def current_secrets(self) -> list[str]:
        """Secrets a delivery may be signed with, current first"""
        subscription = self.repo.get_active(self.db)
        if subscription is None:
            return [s for s in (CALENDLY_WEBHOOK_SIGNING_KEY, CALENDLY_WEBHOOK_SIGNING_KEY_SECONDARY) if s]

        result = [decrypt_secret(subscription.signing_secret)]
        if subscription.previous_signing_secret:
            result.append(decrypt_secret(subscription.previous_signing_secret))
        return result

    async def provision_subscription(
        self,
        callback_url: Optional[str] = None,
        events: Optional[list[str]] = None,
        scope: str = "organization",
    ) -> WebhookSubscription:
        """Register our callback with the provider under a freshly generated secret"""
        callback_url = callback_url or WEBHOOK_CALLBACK_URL
        if not callback_url:
            raise CallbackNotConfigured("WEBHOOK_CALLBACK_URL is not configured")
        events = events or list(DEFAULT_EVENTS)

        account = await self.provider.get_current_account()
        signing_secret = generate_signing_secret()
        resource = await self.provider.create_webhook_subscription(
            url=callback_url,
            events=events,
            organization_uri=account.organization_uri,
            scope=scope,
            signing_key=signing_secret,
            user_uri=account.uri if scope == "user" else None,
        )

        subscription = self.repo.create(
            self.db,
            provider_subscription_uri=resource.get("uri"),
            callback_url=callback_url,
            events=events,
            scope=scope,
            organization_uri=account.organization_uri,
            signing_secret=encrypt_secret(signing_secret),
        )
        logger.info(
            f"✅ Webhook subscription {subscription.provider_subscription_uri} provisioned "
            f"(secret {mask_sensitive_data(signing_secret)})"
        )
        return subscription

    async def rotate_secret(self) -> WebhookSubscription:
        """
        Re-register the subscription under a new secret.

        The provider cannot change the key of an existing subscription, so the
        old registration is removed and a new one created. The outgoing secret
        is kept as ``previous`` until the grace period ends.
        """
        subscription = self.repo.get_active(self.db)
        if subscription is None:
            logger.info("🔄 No webhook subscription yet; provisioning instead of rotating")
            return await self.provision_subscription()

        new_secret = generate_signing_secret()
        if subscription.provider_subscription_uri:
            await self.provider.delete_webhook_subscription(subscription.provider_subscription_uri)

        try:
            resource = await self.provider.create_webhook_subscription(
                url=subscription.callback_url,
                events=subscription.events,
                organization_uri=subscription.organization_uri,
                scope=subscription.scope,
                signing_key=new_secret,
            )
        except Exception:
            logger.critical(
                f"🚨 Webhook subscription for {subscription.callback_url} was removed but could not "
                f"be re-created; deliveries are stopped until it is provisioned again"
            )
            subscription.provider_subscription_uri = None
            self.repo.save(self.db, subscription)
            raise

        subscription.previous_signing_secret = subscription.signing_secret
        subscription.signing_secret = encrypt_secret(new_secret)
        subscription.provider_subscription_uri = resource.get("uri")
        subscription.rotated_at = to_db(utcnow())
        self.repo.save(self.db, subscription)
        logger.info(f"🔄 Webhook signing secret rotated (new secret {mask_sensitive_data(new_secret)})")
        return subscription

    def retire_previous_secrets(self, now: Optional[datetime] = None) -> int:
        """Stop accepting rotated-out secrets once the grace period is over"""
        cutoff = to_db((now or utcnow()) - timedelta(hours=SIGNING_SECRET_GRACE_HOURS))
        subscriptions = self.repo.get_rotated_before(self.db, cutoff)
        for subscription in subscriptions:
            subscription.previous_signing_secret = None
        self.db.commit()
        if subscriptions:
            logger.info(f"🔐 Retired {len(subscriptions)} rotated-out signing secret(s)")
        return len(subscriptions)
