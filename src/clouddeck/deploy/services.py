"""Wiring of the deployment engine components.

Both the HTTP server and the CLI need the same object graph: a store, the
project catalog, the adapter registry, the build pipeline, the orchestrator
and the webhook ingestor, all sharing one event bus.
"""

from __future__ import annotations

from dataclasses import dataclass

import requests

from clouddeck.config.loader import ProjectCatalog
from clouddeck.deploy.builder import BuildPipeline
from clouddeck.deploy.events import EventBus, RecordingSink
from clouddeck.deploy.orchestrator import DeploymentOrchestrator
from clouddeck.deploy.registry import AdapterRegistry
from clouddeck.deploy.state import DeploymentStore
from clouddeck.deploy.webhooks import WebhookIngestor
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import PlatformConfig

logger = get_logger(__name__)


@dataclass
class DeploymentServices:
    """The running deployment engine."""

    config: PlatformConfig
    store: DeploymentStore
    catalog: ProjectCatalog
    registry: AdapterRegistry
    events: EventBus
    sink: RecordingSink
    pipeline: BuildPipeline
    orchestrator: DeploymentOrchestrator
    webhooks: WebhookIngestor

    @classmethod
    def from_config(
        cls,
        config: PlatformConfig,
        registry: AdapterRegistry | None = None,
        session: requests.Session | None = None,
        store: DeploymentStore | None = None,
    ) -> DeploymentServices:
        """Build every component from platform configuration.

        Args:
            config: Platform configuration
            registry: Adapter registry to use instead of one built from config
            session: HTTP session shared by the provider adapters
            store: Record store to use instead of one at ``config.state_path``
        """
        store = store or DeploymentStore(config.state_path)
        catalog = ProjectCatalog(config.projects)
        registry = registry or AdapterRegistry.from_config(config, session=session)
        events = EventBus()
        sink = RecordingSink().attach(events)
        pipeline = BuildPipeline(config, store, catalog)
        orchestrator = DeploymentOrchestrator(
            config, store, catalog, registry, pipeline, events=events
        )
        webhooks = WebhookIngestor(config, orchestrator, registry, store, catalog)
        logger.debug(
            f"Deployment services ready with {len(catalog.all())} project(s) "
            f"and {config.max_workers} worker(s)"
        )
        return cls(
            config=config,
            store=store,
            catalog=catalog,
            registry=registry,
            events=events,
            sink=sink,
            pipeline=pipeline,
            orchestrator=orchestrator,
            webhooks=webhooks,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop background work and flush the store."""
        self.orchestrator.shutdown(wait=wait)
