"""API routers for all endpoints."""

from steadybooks.routers import connection, quickbooks, webhooks

__all__ = [
    "connection",
    "quickbooks",
    "webhooks",
]
