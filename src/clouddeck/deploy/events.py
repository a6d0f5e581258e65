"""In-process fan-out of domain events and audit facts.

Notification delivery and the audit log live outside CloudDeck; they
subscribe here. A failing subscriber is logged and never interrupts the
deployment that emitted the event.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from clouddeck.lib.logging_config import get_logger
from clouddeck.models.events import AuditFact, DomainEvent

logger = get_logger(__name__)

EventHandler = Callable[[DomainEvent], None]
AuditHandler = Callable[[AuditFact], None]


class EventBus:
    """Synchronous publisher for ``DomainEvent`` and ``AuditFact`` records."""

    def __init__(self) -> None:
        """Create an empty bus."""
        self._lock = threading.Lock()
        self._event_handlers: list[EventHandler] = []
        self._audit_handlers: list[AuditHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Register a domain event handler."""
        with self._lock:
            self._event_handlers.append(handler)

    def subscribe_audit(self, handler: AuditHandler) -> None:
        """Register an audit fact handler."""
        with self._lock:
            self._audit_handlers.append(handler)

    def emit(
        self, name: str, project_id: str, payload: dict[str, Any]
    ) -> DomainEvent:
        """Publish a domain event such as ``deployment.success``."""
        event = DomainEvent(name=name, project_id=project_id, payload=payload)
        logger.debug(f"Event {name} for project {project_id}")
        with self._lock:
            handlers = list(self._event_handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {name}: {e}", exc_info=True)
        return event

    def audit(
        self,
        action: str,
        resource: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        **metadata: Any,
    ) -> AuditFact:
        """Publish an audit fact such as ``DEPLOYMENT_STARTED_VERCEL``."""
        fact = AuditFact(
            action=action,
            resource=resource,
            resource_id=resource_id,
            user_id=user_id,
            metadata=metadata,
        )
        with self._lock:
            handlers = list(self._audit_handlers)
        for handler in handlers:
            try:
                handler(fact)
            except Exception as e:
                logger.error(f"Audit handler failed for {action}: {e}", exc_info=True)
        return fact


class RecordingSink:
    """Keeps emitted events and facts in memory (used by the HTTP server)."""

    def __init__(self, max_items: int = 1000) -> None:
        """Create a sink bounded to ``max_items`` of each kind."""
        self.max_items = max_items
        self.events: list[DomainEvent] = []
        self.audit_facts: list[AuditFact] = []
        self._lock = threading.Lock()

    def attach(self, bus: EventBus) -> RecordingSink:
        """Subscribe this sink to a bus."""
        bus.subscribe(self.on_event)
        bus.subscribe_audit(self.on_audit)
        return self

    def on_event(self, event: DomainEvent) -> None:
        with self._lock:
            self.events.append(event)
            del self.events[: -self.max_items]

    def on_audit(self, fact: AuditFact) -> None:
        with self._lock:
            self.audit_facts.append(fact)
            del self.audit_facts[: -self.max_items]
