import asyncio
import logging
import os
import signal
from typing import Callable, Optional

from fastapi import FastAPI, Request
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import JSONResponse

from rank_gateway import __version__
from rank_gateway.access import CredentialClassifier
from rank_gateway.api import Gateway, router
from rank_gateway.audit import AuditDispatcher, AuditSink, DiscordWebhookSink, NullAuditSink
from rank_gateway.config import Settings
from rank_gateway.errors import GatewayError
from rank_gateway.limiter import ActionRateLimiter
from rank_gateway.ranking import GroupClient, RankChangeOrchestrator
from rank_gateway.request_limit import configure_request_limit, limiter as request_limiter
from rank_gateway.roblox import RobloxClient
from rank_gateway.store import IPApprovalStore, open_store


def schedule_restart(delay: float):
    """Sends SIGTERM to ourselves so uvicorn shuts down cleanly; the process manager brings us back."""
    logging.info(f"Process will exit in {delay:.1f}s for restart.")
    asyncio.get_running_loop().call_later(delay, os.kill, os.getpid(), signal.SIGTERM)


async def verify_login(client: GroupClient):
    """Startup check. The gateway is useless without a working session, so failure exits."""
    try:
        user = await client.get_authenticated_user()
    except Exception as e:
        logging.error(f"Login failed: {e}")
        raise SystemExit(1)
    logging.info(f"Logged in as {user.get('name')} (ID {user.get('id')}).")


async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


def create_app(settings: Settings, client: Optional[GroupClient] = None, store: Optional[IPApprovalStore] = None,
               audit_sink: Optional[AuditSink] = None, restart: Callable[[float], None] = schedule_restart) -> FastAPI:
    client = client or RobloxClient(settings.roblosecurity)
    store = store or open_store(settings.data_dir)
    if audit_sink is None:
        audit_sink = DiscordWebhookSink(settings.webhook_url) if settings.webhook_url else NullAuditSink()
    audit = AuditDispatcher(audit_sink)

    classifier = CredentialClassifier(
        store,
        maintainer_key=settings.maintainer_key,
        secondary_key=settings.secondary_key,
        spectator_key=settings.spectator_key,
        api_key=settings.api_key,
        on_proposal=lambda ip: audit.emit(f"New secondary login from {ip} is awaiting approval."),
    )
    limiter = ActionRateLimiter(settings.action_limit, settings.action_window_seconds)
    orchestrator = RankChangeOrchestrator(client, settings.group_id, store, limiter, audit)

    app = FastAPI(
        title="Roblox Rank Gateway",
        description="Authenticated rank changes for a single Roblox group.",
        version=__version__,
    )
    app.state.gateway = Gateway(settings, client, store, limiter, classifier, orchestrator, audit, restart)

    configure_request_limit(settings.request_rate_limit)
    app.state.limiter = request_limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        await verify_login(client)

    @app.on_event("shutdown")
    async def shutdown_event():
        await audit.aclose()
        if hasattr(client, "aclose"):
            await client.aclose()
            logging.info("Roblox session closed.")

    return app
