"""
Token storage for the remote store credentials.

Access and refresh tokens start from the configured settings and are
overridden by whatever was last persisted to the token file, so a token
refreshed at runtime survives a restart.
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class TokenStore:
    """Holds the current access/refresh token pair and persists it as JSON."""

    def __init__(
        self,
        token_storage_path: Optional[str] = None,
        access_token: str = "",
        refresh_token: str = ""
    ):
        self.token_storage_path = Path(token_storage_path) if token_storage_path else None
        self.access_token = access_token or ""
        self.refresh_token = refresh_token or ""
        self._loaded = False

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    async def load_tokens(self) -> Optional[Dict]:
        """Load tokens from file, overriding the configured values."""
        self._loaded = True
        if not self.token_storage_path or not self.token_storage_path.exists():
            return None

        try:
            with open(self.token_storage_path, 'r') as f:
                tokens = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load tokens", path=str(self.token_storage_path), error=str(e))
            return None

        if tokens.get("access_token"):
            self.access_token = tokens["access_token"]
        if tokens.get("refresh_token"):
            self.refresh_token = tokens["refresh_token"]

        logger.debug("Tokens loaded successfully")
        return tokens

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load_tokens()

    async def save_tokens(self, token_data: Dict) -> None:
        """Apply a token endpoint response and persist it.

        A response without a ``refresh_token`` keeps the current one.
        """
        if token_data.get("access_token"):
            self.access_token = token_data["access_token"]
        if token_data.get("refresh_token"):
            self.refresh_token = token_data["refresh_token"]

        if not self.token_storage_path:
            return

        stored = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": int(time.time()) + int(token_data.get("expires_in", 14400)),
            "obtained_at": datetime.now().isoformat(),
        }

        try:
            self.token_storage_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.token_storage_path, 'w') as f:
                json.dump(stored, f, indent=2)
            logger.debug("Tokens saved successfully")
        except OSError as e:
            logger.error("Failed to save tokens", error=str(e))
            raise
