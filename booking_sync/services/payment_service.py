"""Payment collaborator - narrow "charge X for booking Y" interface backed by Dodo Payments"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dodopayments import AsyncDodoPayments  # type: ignore

from ..config import (
    DODO_ADHOC_PRODUCT_ID,
    DODO_PAYMENTS_API_KEY,
    DODO_PAYMENTS_ENVIRONMENT,
    FRONTEND_URL,
)
from ..errors import PaymentInitiationFailed
from ..models import Booking

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentHandle:
    reference: str
    checkout_url: str


def to_minor_units(amount: Decimal) -> int:
    """Amount in lowest currency unit (e.g., cents)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def normalize_dodo_environment(env: Optional[str]) -> str:
    """Normalize Dodo environment value to expected format"""
    value = (env or "test_mode").strip().lower()
    if value in {"live", "production", "prod"}:
        return "live_mode"
    if value in {"test", "sandbox", "staging", "dev", "development"}:
        return "test_mode"
    if value in {"test_mode", "live_mode"}:
        return value
    logger.warning(f"Unknown DODO environment '{env}', defaulting to test_mode")
    return "test_mode"


class PaymentCollaborator(ABC):
    @abstractmethod
    async def initiate_payment(self, booking: Booking, amount: Decimal, currency: str) -> PaymentHandle:
        """Start a payment for the booking; raises PaymentInitiationFailed"""

    @abstractmethod
    async def request_refund(self, payment_reference: str, amount: Decimal, reason: str) -> str:
        """Refund (part of) a captured payment; returns the processor's refund id"""


class DodoPaymentCollaborator(PaymentCollaborator):
    """Checkout sessions on the pay-what-you-want product, priced per booking"""

    def __init__(self, client: Optional[AsyncDodoPayments] = None, product_id: Optional[str] = None):
        self.environment = normalize_dodo_environment(DODO_PAYMENTS_ENVIRONMENT)
        self.product_id = product_id or DODO_ADHOC_PRODUCT_ID
        self.client = client

        if self.client is None:
            if not DODO_PAYMENTS_API_KEY:
                logger.warning("DODO_PAYMENTS_API_KEY not set; paid bookings will fail until configured")
            else:
                self.client = AsyncDodoPayments(
                    bearer_token=DODO_PAYMENTS_API_KEY,
                    environment=self.environment,
                )
                logger.info(f"Dodo Payments client initialized (env={self.environment})")

    async def initiate_payment(self, booking: Booking, amount: Decimal, currency: str) -> PaymentHandle:
        if not self.client or not self.product_id:
            raise PaymentInitiationFailed("Payments are not configured", booking_id=booking.id)

        session_data = {
            "product_cart": [
                {
                    "product_id": self.product_id,
                    "quantity": 1,
                    "amount": to_minor_units(amount),
                }
            ],
            "customer": {"email": booking.client_email, "name": booking.client_name},
            "metadata": {
                "booking_id": str(booking.id),
                "session_type_id": str(booking.session_type_id),
                "currency": currency,
            },
            "return_url": f"{FRONTEND_URL}/bookings/{booking.id}/payment-complete",
        }

        try:
            session = await self.client.checkout_sessions.create(**session_data)
        except Exception as e:
            logger.error(f"❌ Failed to create checkout session for booking {booking.id}: {e}")
            raise PaymentInitiationFailed(
                "Payment could not be started; the booking was canceled", booking_id=booking.id
            ) from e

        checkout_url = getattr(session, "checkout_url", None)
        session_id = getattr(session, "session_id", None)
        if not checkout_url or not session_id:
            logger.error(f"❌ Checkout session for booking {booking.id} came back without a link")
            raise PaymentInitiationFailed(
                "Payment could not be started; the booking was canceled", booking_id=booking.id
            )

        logger.info(f"💳 Checkout session {session_id} created for booking {booking.id}")
        return PaymentHandle(reference=session_id, checkout_url=checkout_url)

    async def request_refund(self, payment_reference: str, amount: Decimal, reason: str) -> str:
        if not self.client:
            raise RuntimeError("Dodo Payments client not initialized")

        refund = await self.client.refunds.create(
            payment_id=payment_reference,
            reason=reason,
            items=[{"item_id": self.product_id, "amount": to_minor_units(amount)}],
        )
        refund_id = getattr(refund, "refund_id", None)
        logger.info(f"💸 Refund {refund_id} requested for payment {payment_reference}")
        return refund_id


_payment_collaborator: Optional[PaymentCollaborator] = None


def get_payment_collaborator() -> PaymentCollaborator:
    global _payment_collaborator
    if _payment_collaborator is None:
        _payment_collaborator = DodoPaymentCollaborator()
    return _payment_collaborator
