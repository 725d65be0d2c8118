"""
Ceiling Expense API (port 3005).

Validates bearer tokens and enforces the approval ceiling.

Endpoints:
    GET  /expenses                 - List expenses        (expense:view)
    GET  /expenses/{id}            - Get one expense      (expense:view)
    POST /expenses                 - Submit an expense    (expense:submit)
    POST /expenses/{id}/approve    - Approve, ceiling-checked (expense:approve)
    POST /expenses/{id}/reject     - Reject               (expense:approve)
    GET  /demo/expenses            - All expenses, no auth
    POST /demo/reset               - Restore seed expenses
    GET  /demo/audit-log           - Recent audit entries
    GET  /health                   - Health check
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Header, Query
from pydantic import BaseModel

from ceiling.cache import CacheInterface, MemoryCache, RedisCache
from ceiling.config import Settings, load_settings
from ceiling.enforcement import ResourceServer
from ceiling.services import SERVICE_VERSION, HealthResponse, bearer_token, install_error_handlers
from ceiling.tokens import RemoteKeySet, TokenValidator

logger = logging.getLogger(__name__)

SERVICE_NAME = "expense-api"


class ExpenseSubmission(BaseModel):
    """New expense. ``amount`` is validated by the resource server."""

    description: str
    amount: Any
    currency: str = "USD"
    category: str = ""
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


def _key_set_cache(settings: Settings) -> CacheInterface:
    if not settings.redis_url:
        return MemoryCache(default_ttl=settings.jwks_cache_ttl)
    import redis.asyncio as redis

    logger.info("Using Redis key-set cache")
    return RedisCache(redis.from_url(settings.redis_url), default_ttl=settings.jwks_cache_ttl)


def build_server(settings: Settings) -> ResourceServer:
    """Resource server validating tokens against the auth server's JWKS."""
    keys = RemoteKeySet(
        settings.auth_server_url,
        cache=_key_set_cache(settings),
        cache_ttl=settings.jwks_cache_ttl,
        http_timeout=settings.http_timeout,
    )
    return ResourceServer(TokenValidator(keys, audience=settings.audience))


def create_app(
    server: Optional[ResourceServer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the expense API.

    Args:
        server: A pre-wired ResourceServer (built from settings if omitted).
        settings: Configuration snapshot (read from the environment if omitted).
    """
    if server is None:
        server = build_server(settings or load_settings())

    app = FastAPI(
        title="Ceiling Expense API",
        description="Resource server enforcing signed approval ceilings",
        version=SERVICE_VERSION,
    )
    install_error_handlers(app)
    app.state.server = server

    @app.get("/expenses")
    async def list_expenses(authorization: Optional[str] = Header(default=None)):
        return {"expenses": await server.list_expenses(bearer_token(authorization))}

    @app.get("/expenses/{expense_id}")
    async def get_expense(expense_id: str, authorization: Optional[str] = Header(default=None)):
        return await server.get_expense(expense_id, bearer_token(authorization))

    @app.post("/expenses", status_code=201)
    async def submit_expense(
        body: ExpenseSubmission, authorization: Optional[str] = Header(default=None)
    ):
        return await server.submit_expense(
            bearer_token(authorization),
            description=body.description,
            amount=body.amount,
            category=body.category,
            currency=body.currency,
            notes=body.notes,
        )

    @app.post("/expenses/{expense_id}/approve")
    async def approve_expense(expense_id: str, authorization: Optional[str] = Header(default=None)):
        """The ceiling check: approve only if amount <= signed limit."""
        return await server.approve_action(expense_id, bearer_token(authorization))

    @app.post("/expenses/{expense_id}/reject")
    async def reject_expense(
        expense_id: str,
        body: Optional[RejectRequest] = None,
        authorization: Optional[str] = Header(default=None),
    ):
        reason = body.reason if body else None
        return await server.reject_expense(expense_id, bearer_token(authorization), reason)

    @app.get("/demo/expenses")
    async def demo_expenses():
        return {"expenses": server.demo_expenses()}

    @app.post("/demo/reset")
    async def reset():
        return {"message": "Expenses reset to initial state", "expenses": server.reset()}

    @app.get("/demo/audit-log")
    async def audit_log(limit: int = Query(50, ge=1, le=1000)):
        entries = server.audit_log(limit)
        return {"entries": entries, "count": len(entries)}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", service=SERVICE_NAME, version=SERVICE_VERSION)

    return app
