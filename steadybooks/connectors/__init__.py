"""
External integrations for SteadyBooks.

Main Components:
    TokenLifecycleManager: QuickBooks OAuth2 authorization and token refresh
    QBOClient: Read-only QuickBooks queries for dashboard figures
    DataSyncOrchestrator: Concurrent figure sync with partial-failure handling
    ConnectionService: Connect, inspect and disconnect dashboards
    WebhookReconciler: Applies Stripe billing events to local subscriptions

Usage:
    >>> orchestrator = DataSyncOrchestrator(store, token_manager, qbo_client)
    >>> snapshot = await orchestrator.sync("dash-42")
    >>> if snapshot is None:
    ...     ...  # render last known figures
"""

from steadybooks.connectors.connection_service import CallbackResult, ConnectionService
from steadybooks.connectors.qbo_client import QBOAPIError, QBOAuthError, QBOClient, QBOTransientError
from steadybooks.connectors.report_parser import parse_profit_and_loss
from steadybooks.connectors.sync_orchestrator import DataSyncOrchestrator
from steadybooks.connectors.token_manager import (
    MalformedProviderResponse,
    OAuthExchangeFailed,
    TokenLifecycleManager,
    TokenRefreshFailed,
)
from steadybooks.connectors.webhook_handler import (
    MalformedWebhookError,
    ReconcileOutcome,
    StripeSignatureVerifier,
    WebhookReconciler,
    WebhookVerificationError,
    map_subscription_status,
)

__all__ = [
    # QuickBooks
    "QBOClient",
    "QBOAuthError",
    "QBOAPIError",
    "QBOTransientError",
    "parse_profit_and_loss",
    # OAuth
    "TokenLifecycleManager",
    "OAuthExchangeFailed",
    "MalformedProviderResponse",
    "TokenRefreshFailed",
    # Orchestration
    "DataSyncOrchestrator",
    "ConnectionService",
    "CallbackResult",
    # Stripe
    "StripeSignatureVerifier",
    "WebhookReconciler",
    "ReconcileOutcome",
    "WebhookVerificationError",
    "MalformedWebhookError",
    "map_subscription_status",
]
