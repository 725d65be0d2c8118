"""
Ceiling Wallet.

Holds the holder's key and credentials and produces presentations bound to
a challenge and domain. The key never leaves the wallet; callers (the agent)
only ever see signed presentations.
"""

import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ceiling.errors import NotFoundError, ValidationError
from ceiling.keys import KeyPair
from ceiling.models import (
    ApproverSubject,
    Credential,
    Presentation,
    build_presentation_document,
)
from ceiling.proofs import ASSERTION, AUTHENTICATION, sign_document
from ceiling.verifier import proof_verifies

logger = logging.getLogger(__name__)


class Wallet:
    """
    In-memory credential wallet for a single holder.

    Example:
        >>> wallet = Wallet(generate_identity())
        >>> wallet.store(credential)
        >>> vp = wallet.present(["EmployeeCredential"], challenge, "expense-api")
    """

    def __init__(self, keypair: KeyPair):
        self.keypair = keypair
        self._credentials: "OrderedDict[str, Credential]" = OrderedDict()

    @property
    def holder(self) -> str:
        return self.keypair.did

    def store(self, credential: Union[Credential, Dict[str, Any]]) -> str:
        """
        Verify and store a credential.

        Returns:
            The credential id (``urn:uuid`` assigned when the credential has none).

        Raises:
            ValidationError: Malformed credential, bad signature, or the
                subject is not this wallet's holder.
        """
        credential_id, credential = self._checked(credential)
        self._credentials[credential_id] = credential
        logger.info(f"Stored credential: {', '.join(credential.types)}")
        return credential_id

    def replace_all(self, credentials: Iterable[Union[Credential, Dict[str, Any]]]) -> List[str]:
        """
        Swap the stored credentials for ``credentials``.

        Every credential is checked before anything changes, so a rejected
        one leaves the wallet as it was.
        """
        checked = [self._checked(credential) for credential in credentials]
        self._credentials = OrderedDict(checked)
        logger.info(f"Wallet now holds {len(checked)} credentials")
        return [credential_id for credential_id, _ in checked]

    def _checked(self, credential: Union[Credential, Dict[str, Any]]) -> Tuple[str, Credential]:
        if not isinstance(credential, Credential):
            credential = Credential.from_dict(credential)

        if not proof_verifies(credential.document, credential.proof, ASSERTION, credential.issuer):
            logger.warning(f"Refusing credential with invalid signature: {credential.display_types}")
            raise ValidationError("Credential signature verification failed")

        subject_id = credential.subject.id
        if subject_id and subject_id != self.holder:
            raise ValidationError("Credential subject ID does not match wallet holder DID")

        return credential.id or f"urn:uuid:{uuid.uuid4()}", credential

    def list_credentials(self) -> List[Dict[str, Any]]:
        """Summaries of stored credentials."""
        return [
            {
                "id": credential_id,
                "type": list(credential.types),
                "issuer": credential.issuer,
                "validFrom": credential.document.get("validFrom"),
                "validUntil": credential.document.get("validUntil"),
            }
            for credential_id, credential in self._credentials.items()
        ]

    def get(self, credential_id: str) -> Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise NotFoundError("Credential not found")

    def delete(self, credential_id: str) -> None:
        if self._credentials.pop(credential_id, None) is None:
            raise NotFoundError("Credential not found")

    def clear(self) -> None:
        self._credentials.clear()

    def __len__(self) -> int:
        return len(self._credentials)

    def credentials(self) -> List[Credential]:
        return list(self._credentials.values())

    def present(
        self,
        credential_types: Optional[Iterable[str]],
        challenge: str,
        domain: str,
    ) -> Presentation:
        """
        Create a holder-signed presentation bound to ``challenge`` and ``domain``.

        Args:
            credential_types: Types to include (any match); None includes all.
            challenge: Nonce from the authorization server.
            domain: Audience the presentation is intended for.

        Raises:
            ValidationError: Missing challenge/domain, or no matching credentials.
        """
        if not challenge or not domain:
            raise ValidationError("challenge and domain are required")

        wanted = set(credential_types) if credential_types is not None else None
        selected = [
            c for c in self._credentials.values() if wanted is None or wanted.intersection(c.types)
        ]
        if not selected:
            raise ValidationError("No matching credentials found")

        document = build_presentation_document(self.holder, selected)
        document["proof"] = sign_document(
            document,
            self.keypair.key,
            self.keypair.verification_method,
            AUTHENTICATION,
            challenge=challenge,
            domain=domain,
        )
        logger.info(f"Created presentation with {len(selected)} credential(s)")
        return Presentation.from_dict(document)

    @property
    def approval_limit(self) -> Any:
        """Approval limit of the stored approver credential, for display only."""
        for credential in self._credentials.values():
            if isinstance(credential.subject, ApproverSubject):
                return credential.subject.approval_limit
        return None

    def state(self) -> Dict[str, Any]:
        """Wallet summary for the demo UI."""
        return {
            "holder": self.holder,
            "credentialCount": len(self._credentials),
            "credentials": [
                {
                    "type": c.display_types,
                    "issuer": c.issuer,
                    "subject": c.document.get("credentialSubject"),
                }
                for c in self._credentials.values()
            ],
            "approvalLimit": self.approval_limit,
        }
