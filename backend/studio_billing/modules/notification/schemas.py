"""Pydantic schemas for tenant notifications."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from studio_billing.modules.notification.models import NotificationSeverity


class NotificationSendRequest(BaseModel):
    """Notification to emit for a tenant."""
    tenant_id: uuid.UUID
    title: str = Field(..., max_length=255)
    message: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    link: Optional[str] = Field(default=None, max_length=500)
    dedupe_key: Optional[str] = Field(default=None, max_length=255)


class NotificationResponse(BaseModel):
    """Stored notification."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    title: str
    message: str
    severity: NotificationSeverity
    link: Optional[str] = None
    is_read: bool
    created_at: Optional[datetime] = None
