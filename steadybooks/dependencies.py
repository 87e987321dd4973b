"""
Process-wide component wiring.

All integration components are built once at startup (FastAPI lifespan) and
shared by every request. Routers reach them through the get_services
dependency.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from steadybooks.config import Settings
from steadybooks.connectors.connection_service import ConnectionService
from steadybooks.connectors.qbo_client import QBOClient
from steadybooks.connectors.sync_orchestrator import DataSyncOrchestrator
from steadybooks.connectors.token_manager import TokenLifecycleManager
from steadybooks.connectors.webhook_handler import StripeSignatureVerifier, WebhookReconciler
from steadybooks.resilience.policy import ResiliencePolicy, build_outbound_policy, build_storage_policy
from steadybooks.storage.base import StorageBackend
from steadybooks.storage.resilient import ResilientStore


@dataclass
class Services:
    """Shared components for one process."""

    settings: Settings
    backend: StorageBackend
    store: ResilientStore
    http_client: httpx.AsyncClient
    outbound_policy: ResiliencePolicy
    token_manager: TokenLifecycleManager
    qbo_client: QBOClient
    orchestrator: DataSyncOrchestrator
    connections: ConnectionService
    verifier: StripeSignatureVerifier
    reconciler: WebhookReconciler

    async def aclose(self) -> None:
        await self.http_client.aclose()
        self.backend.close()


def build_services(
    settings: Settings,
    backend: StorageBackend,
    http_client: Optional[httpx.AsyncClient] = None,
    outbound_policy: Optional[ResiliencePolicy] = None,
    storage_policy: Optional[ResiliencePolicy] = None,
) -> Services:
    """
    Wire every component from settings.

    Args:
        settings: Application settings
        backend: Storage implementation
        http_client: Shared outbound HTTP client (built from settings if omitted)
        outbound_policy: Override for the QuickBooks policy
        storage_policy: Override for the storage policy

    Returns:
        Fully wired Services container
    """
    http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    outbound_policy = outbound_policy or build_outbound_policy(settings)
    store = ResilientStore(backend, storage_policy or build_storage_policy(settings))

    token_manager = TokenLifecycleManager(settings, http_client, outbound_policy, store)
    qbo_client = QBOClient(
        http_client,
        outbound_policy,
        base_url=settings.intuit_api_base_url,
        minor_version=settings.intuit_minor_version,
    )

    return Services(
        settings=settings,
        backend=backend,
        store=store,
        http_client=http_client,
        outbound_policy=outbound_policy,
        token_manager=token_manager,
        qbo_client=qbo_client,
        orchestrator=DataSyncOrchestrator(store, token_manager, qbo_client),
        connections=ConnectionService(store, token_manager, qbo_client),
        verifier=StripeSignatureVerifier(
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        ),
        reconciler=WebhookReconciler(store),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the process's Services container."""
    return request.app.state.services
