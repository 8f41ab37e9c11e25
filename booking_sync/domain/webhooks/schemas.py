"""Webhook domain schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: Optional[str] = None
    duplicate: bool = False


class ProvisionSubscriptionRequest(BaseModel):
    callbackUrl: Optional[str] = None
    events: Optional[list[str]] = None
    scope: str = "organization"


class SubscriptionResponse(BaseModel):
    providerSubscriptionUri: Optional[str] = None
    callbackUrl: str
    events: list[str]
    scope: str
    state: str
    rotatedAt: Optional[datetime] = None
    rotationInProgress: bool = False
