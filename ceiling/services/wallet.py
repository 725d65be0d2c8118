"""
Ceiling Wallet Service (port 3002).

Holds the holder's key. The agent asks for presentations here; it never
sees the key.

Endpoints:
    POST   /wallet/credentials        - Store a credential (verified first)
    GET    /wallet/credentials        - List stored credentials
    GET    /wallet/credentials/{id}   - Get one credential
    DELETE /wallet/credentials/{id}   - Remove a credential
    POST   /wallet/present            - Create a presentation bound to a challenge
    GET    /wallet/did                - Holder DID
    POST   /wallet/demo/setup         - Load the demo credentials from the issuer
    GET    /wallet/demo/state         - Wallet summary for the demo UI
    GET    /health                    - Health check
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI
from pydantic import BaseModel

from ceiling.config import ISSUER_URL, Settings, load_settings
from ceiling.errors import ValidationError
from ceiling.issuer import IssuerClient
from ceiling.keys import load_or_create_keypair
from ceiling.services import SERVICE_VERSION, HealthResponse, install_error_handlers
from ceiling.wallet import Wallet

logger = logging.getLogger(__name__)

SERVICE_NAME = "vc-wallet"
DEFAULT_ISSUER_URL = ISSUER_URL or "http://127.0.0.1:3001"


class PresentRequest(BaseModel):
    """``credentialTypes`` selects credentials (any match); omitted means all."""

    credentialTypes: Optional[List[str]] = None
    challenge: str = ""
    domain: str = ""


def create_app(
    wallet: Optional[Wallet] = None,
    settings: Optional[Settings] = None,
    issuer_client: Optional[IssuerClient] = None,
) -> FastAPI:
    """
    Build the wallet service.

    Args:
        wallet: A Wallet (loaded from the key directory if omitted).
        settings: Configuration snapshot (read from the environment if omitted).
        issuer_client: Client used by the demo setup to fetch credentials.
    """
    settings = settings or load_settings()
    if wallet is None:
        wallet = Wallet(load_or_create_keypair(Path(settings.key_dir) / "holder-key.json"))
        logger.info(f"Holder DID: {wallet.holder}")
    issuer_client = issuer_client or IssuerClient(
        settings.issuer_url or DEFAULT_ISSUER_URL, http_timeout=settings.http_timeout
    )

    app = FastAPI(
        title="Ceiling Wallet",
        description="Stores credentials and signs presentations for the holder",
        version=SERVICE_VERSION,
    )
    install_error_handlers(app)
    app.state.wallet = wallet

    @app.post("/wallet/credentials", status_code=201)
    async def store_credential(credential: Dict[str, Any] = Body(...)):
        credential_id = wallet.store(credential)
        stored = wallet.get(credential_id)
        return {
            "id": credential_id,
            "stored": True,
            "type": list(stored.types),
            "message": "Credential stored successfully",
        }

    @app.get("/wallet/credentials")
    async def list_credentials():
        return {"holder": wallet.holder, "credentials": wallet.list_credentials()}

    @app.get("/wallet/credentials/{credential_id}")
    async def get_credential(credential_id: str):
        return wallet.get(credential_id).to_dict()

    @app.delete("/wallet/credentials/{credential_id}")
    async def delete_credential(credential_id: str):
        wallet.delete(credential_id)
        return {"message": "Credential deleted"}

    @app.post("/wallet/present")
    async def present(body: PresentRequest):
        """Sign a presentation bound to the given challenge and domain."""
        presentation = wallet.present(body.credentialTypes, body.challenge, body.domain)
        logger.info(f"Presentation bound to domain {body.domain}")
        return presentation.to_dict()

    @app.get("/wallet/did")
    async def holder_did():
        return {"did": wallet.holder}

    @app.post("/wallet/demo/setup")
    async def demo_setup():
        """Replace stored credentials with freshly issued demo credentials."""
        async with issuer_client as client:
            credentials = await client.issue_demo_credentials(wallet.holder)

        try:
            stored = [wallet.get(credential_id) for credential_id in wallet.replace_all(credentials)]
        except ValidationError as e:
            raise ValidationError(f"Demo setup failed: {e.message}")

        return {
            "holder": wallet.holder,
            "credentials": [{"type": list(c.types), "issuer": c.issuer} for c in stored],
            "approvalLimit": wallet.approval_limit,
            "message": "Demo setup complete - Alice credentials loaded",
        }

    @app.get("/wallet/demo/state")
    async def demo_state():
        return wallet.state()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok", service=SERVICE_NAME, version=SERVICE_VERSION, did=wallet.holder
        )

    return app
