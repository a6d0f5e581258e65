"""CloudDeck deployment engine.

This package provides the build pipeline, provider adapters, the deployment
orchestrator and webhook ingestion.
"""

from clouddeck.deploy.builder import BuildPipeline, compute_cache_key
from clouddeck.deploy.orchestrator import DeploymentOrchestrator
from clouddeck.deploy.registry import AdapterRegistry, Provider, retry_with_backoff
from clouddeck.deploy.services import DeploymentServices
from clouddeck.deploy.state import DeploymentStore
from clouddeck.deploy.webhooks import WebhookIngestor

__all__ = [
    "AdapterRegistry",
    "BuildPipeline",
    "DeploymentOrchestrator",
    "DeploymentServices",
    "DeploymentStore",
    "Provider",
    "WebhookIngestor",
    "compute_cache_key",
    "retry_with_backoff",
]
