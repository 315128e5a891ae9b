"""
API layer for the CDC pipeline.

This module provides:
- FastAPI application factory (HTTP read-back and operational signals)
- Websocket endpoint for live notifications
"""

from .http_server import ApiContext, SubscriptionMessage, create_app, router

__all__ = [
    "ApiContext",
    "SubscriptionMessage",
    "create_app",
    "router",
]
