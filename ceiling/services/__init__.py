"""
Ceiling HTTP services.

Each service is a FastAPI application built by a ``create_app`` factory:

    ceiling.services.issuer    - credential issuer        (port 3001)
    ceiling.services.wallet    - holder wallet            (port 3002)
    ceiling.services.auth      - authorization server     (port 3003)
    ceiling.services.resource  - expense API              (port 3005)

Shared here: the CeilingError exception handler and the health model.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ceiling.errors import AuthenticationError, CeilingError, ValidationError

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    did: Optional[str] = None


def install_error_handlers(app: FastAPI) -> None:
    """Translate CeilingError (and request validation failures) into JSON bodies."""

    @app.exception_handler(CeilingError)
    async def ceiling_error_handler(request: Request, exc: CeilingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error}")
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = ValidationError("Invalid request body").to_dict()
        body["details"] = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content=body)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
