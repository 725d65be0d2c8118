"""
Ceiling Credential Issuer Service (port 3001).

Endpoints:
    POST /credentials/employee              - Issue an EmployeeCredential
    POST /credentials/finance-approver      - Issue a FinanceApproverCredential
    GET  /issuer/info                       - Issuer metadata (trust discovery)
    GET  /.well-known/did.json              - Issuer DID document
    POST /demo/issue-alice-credentials      - Both demo credentials for a holder
    GET  /health                            - Health check
"""

import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI
from pydantic import BaseModel

from ceiling.config import Settings, load_settings
from ceiling.issuer import CredentialIssuer
from ceiling.keys import load_or_create_keypair
from ceiling.services import SERVICE_VERSION, HealthResponse, install_error_handlers

logger = logging.getLogger(__name__)

SERVICE_NAME = "vc-issuer"


class EmployeeCredentialRequest(BaseModel):
    subjectDid: str
    name: str
    employeeId: str
    jobTitle: str
    department: str


class FinanceApproverCredentialRequest(BaseModel):
    subjectDid: str
    approvalLimit: Any
    department: str


class DemoCredentialsRequest(BaseModel):
    holderDid: Optional[str] = None


def create_app(
    issuer: Optional[CredentialIssuer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the issuer service.

    Args:
        issuer: A CredentialIssuer (loaded from the key directory if omitted).
        settings: Configuration snapshot (read from the environment if omitted).
    """
    if issuer is None:
        settings = settings or load_settings()
        issuer = CredentialIssuer(load_or_create_keypair(Path(settings.key_dir) / "issuer-key.json"))
        logger.info(f"Issuer DID: {issuer.did}")

    app = FastAPI(
        title="Ceiling Credential Issuer",
        description="Issues employee and approval-authority credentials",
        version=SERVICE_VERSION,
    )
    install_error_handlers(app)
    app.state.issuer = issuer

    @app.post("/credentials/employee")
    async def issue_employee(body: EmployeeCredentialRequest):
        credential = issuer.issue_employee_credential(
            body.subjectDid, body.name, body.employeeId, body.jobTitle, body.department
        )
        return credential.to_dict()

    @app.post("/credentials/finance-approver")
    async def issue_finance_approver(body: FinanceApproverCredentialRequest):
        credential = issuer.issue_approver_credential(
            body.subjectDid, body.approvalLimit, body.department
        )
        return credential.to_dict()

    @app.get("/issuer/info")
    async def info():
        return issuer.info()

    @app.get("/.well-known/did.json")
    async def did_document():
        return issuer.did_document()

    @app.post("/demo/issue-alice-credentials")
    async def issue_demo_credentials(body: DemoCredentialsRequest):
        credentials = issuer.issue_demo_credentials(body.holderDid)
        return {
            "credentials": [c.to_dict() for c in credentials],
            "holder": body.holderDid,
            "message": "Issued EmployeeCredential and FinanceApproverCredential for Alice",
        }

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok", service=SERVICE_NAME, version=SERVICE_VERSION, did=issuer.did
        )

    return app
