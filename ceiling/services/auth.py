"""
Ceiling Authorization Service (port 3003).

Endpoints:
    POST /auth/presentation-request  - Issue a challenge for a declared action
    POST /auth/token                 - Exchange a presentation for an access token
    GET  /auth/jwks                  - Published token verification keys
    GET  /auth/trusted-issuers       - Trusted credential issuers
    GET  /demo/audit-log             - Recent audit entries
    POST /demo/reset                 - Clear challenges and the audit trail
    GET  /health                     - Health check
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query
from pydantic import BaseModel

from ceiling.authorization import AuthorizationServer
from ceiling.config import Settings, load_settings
from ceiling.keys import load_or_create_keypair
from ceiling.kms import SigningKeyRing
from ceiling.nonce import ChallengeLedger, ChallengeReaper, MemoryChallengeStore, RedisChallengeStore
from ceiling.services import SERVICE_VERSION, HealthResponse, install_error_handlers

logger = logging.getLogger(__name__)

SERVICE_NAME = "auth-server"


class PresentationRequestBody(BaseModel):
    """Challenge request; ``action`` declares the intended scope."""

    action: Optional[str] = None
    resource: Optional[str] = None


class TokenRequest(BaseModel):
    """Presentation exchange request."""

    presentation: Dict[str, Any]
    challenge: str
    domain: str


def _challenge_store(settings: Settings):
    if not settings.redis_url:
        return MemoryChallengeStore()
    import redis.asyncio as redis

    logger.info("Using Redis challenge store")
    return RedisChallengeStore(redis.from_url(settings.redis_url))


def build_server(settings: Settings) -> AuthorizationServer:
    """Wire an AuthorizationServer with the persisted service key."""
    keypair = load_or_create_keypair(Path(settings.key_dir) / "auth-key.json")
    logger.info(f"Auth Server DID: {keypair.did}")
    ledger = ChallengeLedger(_challenge_store(settings), ttl_seconds=settings.nonce_ttl_seconds)
    return AuthorizationServer.from_settings(
        settings, SigningKeyRing.from_keypair(keypair), keypair.did, ledger=ledger
    )


def create_app(
    server: Optional[AuthorizationServer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the authorization service.

    Args:
        server: A pre-wired AuthorizationServer (built from settings if omitted).
        settings: Configuration snapshot (read from the environment if omitted).
    """
    settings = settings or load_settings()
    server = server or build_server(settings)
    reaper = ChallengeReaper(server.ledger, interval=settings.reap_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Trust discovery at startup is best-effort; it is retried on demand
        await server.trusted.discover()
        reaper.start()
        try:
            yield
        finally:
            await reaper.stop()

    app = FastAPI(
        title="Ceiling Authorization Server",
        description="Exchanges verifiable presentations for scoped access tokens",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    install_error_handlers(app)
    app.state.server = server

    @app.post("/auth/presentation-request")
    async def presentation_request(body: Optional[PresentationRequestBody] = None):
        """Generate a challenge and the credentials it requires."""
        body = body or PresentationRequestBody()
        request = await server.request_presentation(body.action, body.resource)
        return request.to_dict()

    @app.post("/auth/token")
    async def token(body: TokenRequest):
        """Exchange a Verifiable Presentation for an access token."""
        response = await server.exchange(body.presentation, body.challenge, body.domain)
        return response.to_dict()

    @app.get("/auth/jwks")
    async def jwks():
        return server.jwks()

    @app.get("/auth/trusted-issuers")
    async def trusted_issuers():
        return {"issuers": server.trusted_issuers()}

    @app.get("/demo/audit-log")
    async def audit_log(limit: int = Query(50, ge=1, le=1000)):
        entries = server.audit_log(limit)
        return {"entries": entries, "count": len(entries)}

    @app.post("/demo/reset")
    async def reset():
        await server.reset()
        logger.info("Demo reset - challenges and audit log cleared")
        return {"message": "Auth server reset complete"}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            did=server.token_issuer.issuer_did,
        )

    return app
