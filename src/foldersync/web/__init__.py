"""Web surface for status queries, manual triggers and webhooks."""

from .app import create_web_app, verify_signature, SyncWebHandlers

__all__ = ["create_web_app", "verify_signature", "SyncWebHandlers"]
