# fides_trust/publishing.py
"""Allowlist-governed publishing of externally issued traceability-event credentials."""

import logging
import re
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .allowlist import enforce_allowlist, select_trust_relevant_product_ids
from .blob_store import BlobStore, gateway_url
from .dte_index import DteIndex, DteIndexingContext, build_dte_index_records, extract_product_refs
from .errors import MalformedInputError, RevokedError, VerificationFailedError
from .schemas import PublishResult

if TYPE_CHECKING:
    from .credentials import CredentialEngine
    from .registry import IssuerTrustRegistry
    from .resolution import ResolutionIndex

logger = logging.getLogger(__name__)


def extract_events(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Events from `vc.credentialSubject`; a single object counts as one event."""
    vc = payload.get("vc") if isinstance(payload.get("vc"), dict) else payload
    subject = vc.get("credentialSubject", payload.get("credentialSubject"))
    if isinstance(subject, list):
        return [e for e in subject if isinstance(e, dict)]
    if isinstance(subject, dict):
        return [subject]
    return []


class DtePublisher:
    """
    Verifies a DTE VC-JWT, checks its supplier against each product's
    manufacturer allowlist, stores it in the blob store and indexes its events.
    """

    def __init__(
        self,
        credentials: "CredentialEngine",
        registry: "IssuerTrustRegistry",
        resolution: "ResolutionIndex",
        dte_index: DteIndex,
        blob_store: BlobStore,
        default_gateway_url: Optional[str] = None,
    ):
        self.credentials = credentials
        self.registry = registry
        self.resolution = resolution
        self.dte_index = dte_index
        self.blob_store = blob_store
        self.default_gateway_url = default_gateway_url

    async def publish(self, jwt: str, gateway_base_url: Optional[str] = None) -> PublishResult:
        """
        Publishes one DTE credential.

        Nothing is stored or indexed unless verification and the allowlist
        both pass.

        Raises:
            MalformedInputError: Unparseable token, or no events in the subject.
            RevokedError: The credential has been revoked.
            VerificationFailedError: Any other verification failure.
            NotAllowlistedError: A referenced product's manufacturer has not
                allowlisted the issuer.
        """
        jwt = str(jwt or "").strip()
        if not jwt:
            raise MalformedInputError("Missing VC-JWT")

        verification = await self.credentials.verify(jwt)
        if not verification.verified:
            message = ", ".join(verification.errors)
            if "Revoked" in verification.error_codes:
                raise RevokedError(message)
            raise VerificationFailedError(f"Invalid DTE VC: {message}")

        payload = verification.payload or {}
        vc = payload.get("vc") if isinstance(payload.get("vc"), dict) else {}
        issuer_did = str(verification.issuer or "").strip()
        credential_id = (
            str(vc.get("id") or "").strip()
            or str(payload.get("jti") or "").strip()
            or f"urn:uuid:{uuid.uuid4()}"
        )

        events = extract_events(payload)
        if not events:
            raise MalformedInputError("No events found: DTE VC must include credentialSubject[]")

        refs = [ref for event in events for ref in extract_product_refs(event)]
        await enforce_allowlist(
            issuer_did,
            select_trust_relevant_product_ids(refs),
            self.resolution.resolve_manufacturer_did,
            self.registry.get_trusted_supplier_dids,
        )

        safe_issuer = re.sub(r"[^a-zA-Z0-9.-]+", "_", issuer_did)
        cid = await self.blob_store.put(jwt.encode("utf-8"), name=f"dte-external-{safe_issuer}.jwt")

        context = DteIndexingContext(
            issuer_did=issuer_did,
            credential_id=credential_id,
            dte_cid=cid,
            gateway_url=gateway_url(gateway_base_url or self.default_gateway_url, cid),
        )
        records = build_dte_index_records(events, context)
        indexed = await self.dte_index.upsert_many(records)

        product_ids: List[str] = []
        for record in records:
            if record.productId not in product_ids:
                product_ids.append(record.productId)

        logger.info(f"Published DTE {credential_id} from {issuer_did} as {cid} ({indexed} index records)")
        return PublishResult(
            cid=cid,
            credential_id=credential_id,
            issuer_did=issuer_did,
            product_ids=product_ids,
            records_indexed=indexed,
        )
