"""Outbound facts emitted for the notification and audit collaborators."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from clouddeck.models.build import new_id, utcnow

DEPLOYMENT_SUCCESS = "deployment.success"
DEPLOYMENT_FAILED = "deployment.failed"
DEPLOYMENT_CANCELLED = "deployment.cancelled"


class DomainEvent(BaseModel):
    """A deployment lifecycle event for notification/webhook fan-out.

    Attributes:
        name: Event name, e.g. ``deployment.success``
        project_id: Project the event belongs to
        payload: ``{deployment, environment, url | error}``
    """

    id: str = Field(default_factory=new_id)
    name: str
    project_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class AuditFact(BaseModel):
    """An audit-worthy action, recorded by the external audit log."""

    id: str = Field(default_factory=new_id)
    action: str
    resource: str
    resource_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class WebhookFailure(BaseModel):
    """An inbound webhook that was acknowledged but not applied."""

    id: str = Field(default_factory=new_id)
    source: str = Field(..., description="git or provider")
    provider: str
    reason: str
    received_at: datetime = Field(default_factory=utcnow)
    provider_deployment_id: str | None = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to a webhook sender.

    ``received`` is always true so senders do not retry; ``processed`` tells
    whether the webhook changed anything.
    """

    received: bool = True
    processed: bool = False
    deployment_id: str | None = None
    message: str | None = None
