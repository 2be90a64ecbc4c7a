"""
SDK for Enhpix.

Clients for the external inference and payment providers.
"""

from .replicate_client import ReplicateProvider, select_provider
from .stripe_client import StripeBilling, WebhookHandler

__all__ = ["ReplicateProvider", "StripeBilling", "WebhookHandler", "select_provider"]
