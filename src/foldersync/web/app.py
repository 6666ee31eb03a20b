"""HTTP surface: health, run status, manual trigger and the remote store webhook."""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Callable, Optional

from aiohttp import web

from ..config.schema import SyncDirection
from ..utils.logging import get_logger


SIGNATURE_HEADER = "X-Dropbox-Signature"
DEFAULT_LOG_LIMIT = 50


def verify_signature(app_secret: str, body: bytes, signature: str) -> bool:
    """Check an HMAC-SHA256 hex signature of ``body`` keyed with the app secret."""
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class SyncWebHandlers:
    """Request handlers bound to one sync engine.

    Handlers only record intent or read state; sync runs happen on the
    scheduler.
    """

    def __init__(
        self,
        engine,
        app_secret: str = "",
        version: str = "",
        is_healthy: Optional[Callable[[], bool]] = None
    ):
        self.engine = engine
        self.app_secret = app_secret
        self.version = version
        self.is_healthy = is_healthy or (lambda: True)
        self.logger = get_logger(self.__class__.__name__)

    async def health(self, request: web.Request) -> web.Response:
        healthy = self.is_healthy()
        health_data = {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.version
        }
        return web.json_response(health_data, status=200 if healthy else 503)

    async def status(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", DEFAULT_LOG_LIMIT))
        except ValueError:
            raise web.HTTPBadRequest(text="limit must be an integer")

        run_state = self.engine.get_status()
        connection = await self.engine.remote.get_connection_status()
        logs = self.engine.activity_log.get_recent_logs(limit=max(limit, 0))

        return web.json_response({
            "sync": run_state.model_dump(mode="json"),
            "remote": connection,
            "logs": [entry.model_dump(mode="json") for entry in logs]
        })

    async def trigger_sync(self, request: web.Request) -> web.Response:
        payload = {}
        if request.can_read_body:
            try:
                payload = await request.json()
            except ValueError:
                return web.json_response({"error": "Invalid JSON body"}, status=400)

        if not isinstance(payload, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        try:
            direction = SyncDirection(payload.get("direction", SyncDirection.BOTH.value))
        except ValueError:
            return web.json_response({"error": "Invalid sync direction"}, status=400)

        self.engine.schedule_sync(direction)
        return web.json_response(
            {"status": "scheduled", "direction": direction.value},
            status=202
        )

    async def webhook_verify(self, request: web.Request) -> web.Response:
        """Echo the verification challenge verbatim."""
        challenge = request.query.get("challenge")
        if not challenge:
            self.logger.warning("Missing challenge parameter in webhook verification")
            return web.Response(text="", status=200)

        self.engine.activity_log.info(f"Received webhook verification challenge: {challenge}")
        return web.Response(text=challenge, content_type="text/plain")

    async def webhook_notify(self, request: web.Request) -> web.Response:
        body = await request.read()
        signature = request.headers.get(SIGNATURE_HEADER)

        if self.app_secret and signature and not verify_signature(self.app_secret, body, signature):
            self.engine.activity_log.warning("Rejected webhook notification with invalid signature")
            return web.json_response({"error": "Invalid signature"}, status=403)

        self.engine.activity_log.info("Received webhook notification, scheduling from_remote sync")
        self.engine.schedule_sync(SyncDirection.FROM_REMOTE)
        return web.json_response({"status": "success"})


def create_web_app(
    engine,
    app_secret: str = "",
    version: str = "",
    is_healthy: Optional[Callable[[], bool]] = None
) -> web.Application:
    """Build the aiohttp application for an engine."""
    handlers = SyncWebHandlers(engine, app_secret=app_secret, version=version, is_healthy=is_healthy)

    app = web.Application()
    app.router.add_get('/health', handlers.health)
    app.router.add_get('/status', handlers.status)
    app.router.add_post('/sync', handlers.trigger_sync)
    app.router.add_get('/webhook', handlers.webhook_verify)
    app.router.add_post('/webhook', handlers.webhook_notify)
    return app
