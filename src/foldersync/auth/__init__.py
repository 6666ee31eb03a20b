"""Authentication module for the folder sync connector."""

from .token_store import TokenStore

__all__ = ["TokenStore"]
