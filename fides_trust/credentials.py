# fides_trust/credentials.py
"""VC-JWT issuance and verification (EdDSA over Ed25519)."""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from jwcrypto import jwk, jws
from pydantic import ValidationError

from .config import Settings
from .constants import (
    CREDENTIAL_SCHEMA_TYPE,
    DPP_CREDENTIAL_TYPE,
    DTE_CREDENTIAL_TYPE,
    ED25519_KEY_LENGTH,
    JWT_TYP,
    STATUS_LIST_CONTEXT,
    STATUS_LIST_ENTRY_TYPE,
    SUPPORTED_JWT_ALG,
    SUPPORTED_KEY_TYPE,
    VC_CONTEXT_V2,
    VC_JSONLD_CONTEXT_V1,
)
from .did_utils import b64url_decode, b64url_encode, public_jwk_from_bytes
from .errors import FidesTrustError, InvalidKeyFormatError, MalformedInputError
from .schemas import (
    IssueOptions,
    IssuerStatus,
    JwtHeader,
    VcEnvelope,
    VerificationResult,
    VerifyOptions,
)

if TYPE_CHECKING:
    from .registry import IssuerTrustRegistry
    from .status_list import StatusListManager

logger = logging.getLogger(__name__)


@dataclass
class Ed25519Signer:
    """Signing key bound to an issuer DID."""
    did: str
    public_key: bytes
    private_jwk: Dict[str, Any] = field(repr=False)
    key_id: Optional[str] = None
    key_type: str = SUPPORTED_KEY_TYPE


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _from_numeric_date(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_iso_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _decode_segment(segment: str, name: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(b64url_decode(segment).decode("utf-8"))
    except ValueError as e:
        raise MalformedInputError(f"Invalid JWT format: cannot decode {name}: {e}")
    if not isinstance(decoded, dict):
        raise MalformedInputError(f"Invalid JWT format: {name} is not a JSON object")
    return decoded


def decode_vc_jwt(jwt: str) -> VcEnvelope:
    """
    Splits and decodes a VC-JWT without checking its signature.

    Raises:
        MalformedInputError: If the token is not three base64url segments
                             with JSON object header and payload.
    """
    if not isinstance(jwt, str):
        raise MalformedInputError("Invalid JWT format: token must be a string")
    token = jwt.strip()
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedInputError(f"Invalid JWT format: expected 3 parts, got {len(parts)}")
    if not parts[2]:
        raise MalformedInputError("Invalid JWT format: empty signature segment")

    header = _decode_segment(parts[0], "header")
    payload = _decode_segment(parts[1], "payload")
    try:
        b64url_decode(parts[2])
    except ValueError as e:
        raise MalformedInputError(f"Invalid JWT format: cannot decode signature: {e}")

    try:
        parsed_header = JwtHeader.model_validate(header)
    except ValidationError as e:
        raise MalformedInputError(f"Invalid JWT header: {e.error_count()} validation error(s)")
    return VcEnvelope(jwt=token, header=parsed_header, payload=payload, signature=parts[2])


class CredentialEngine:
    """
    Issues and verifies VC-JWTs for registered did:web issuers.

    The revocation ledger is optional. Without it, issued credentials carry no
    `credentialStatus` and revocation checks degrade to "not revoked" with a
    logged warning.
    """

    def __init__(
        self,
        registry: "IssuerTrustRegistry",
        settings: Settings,
        status_list: Optional["StatusListManager"] = None,
    ):
        self.registry = registry
        self.settings = settings
        self.status_list = status_list
        if status_list is None:
            logger.warning("Revocation ledger disabled: credentials will be issued without credentialStatus")

    def _signing_key(self, signer: Ed25519Signer, issuer_did: str) -> jwk.JWK:
        if signer.key_type != SUPPORTED_KEY_TYPE:
            raise InvalidKeyFormatError(
                f"Unsupported key type for VC-JWT: {signer.key_type}. "
                f"Only '{SUPPORTED_KEY_TYPE}' is supported for the {SUPPORTED_JWT_ALG} algorithm."
            )
        if len(signer.public_key) != ED25519_KEY_LENGTH:
            raise InvalidKeyFormatError(
                f"Invalid ed25519 public key length: expected {ED25519_KEY_LENGTH} bytes, got {len(signer.public_key)}"
            )
        if signer.did != issuer_did:
            raise MalformedInputError(f"Signer DID {signer.did} does not match issuer {issuer_did}")

        try:
            key = jwk.JWK(**signer.private_jwk)
        except Exception as e:
            raise InvalidKeyFormatError(f"Failed to load private JWK: {e}")
        if key.key_type != 'OKP' or key.get('crv') != 'Ed25519' or not key.has_private:
            raise InvalidKeyFormatError("JWK must be a private OKP key with curve Ed25519.")
        if key.get('x') != b64url_encode(signer.public_key):
            raise InvalidKeyFormatError("Private JWK does not match the signer's public key.")
        return key

    async def issue(
        self,
        credential_subject: Any,
        issuer_did: str,
        signer: Ed25519Signer,
        options: Optional[IssueOptions] = None,
    ) -> VcEnvelope:
        """
        Issues a product passport credential.

        Args:
            credential_subject: The subject object embedded verbatim.
            issuer_did: did:web issuer; must match the signer.
            signer: Ed25519 signer (see `IssuerTrustRegistry.get_signer`).
            options: Expiry, explicit id, extra contexts, key id.

        Returns:
            The decoded envelope of the signed token.

        Raises:
            InvalidKeyFormatError: For a non-Ed25519 or inconsistent signer.
            StatusListFullError / StorageUnavailableError: If a revocation
                index cannot be allocated.
        """
        return await self._issue(
            credential_subject,
            issuer_did,
            signer,
            options,
            credential_type=DPP_CREDENTIAL_TYPE,
            context_url=self.settings.dpp_context_url,
            schema_url=self.settings.dpp_schema_url,
            schema_sha256=self.settings.dpp_schema_sha256,
        )

    async def issue_dte(
        self,
        events: List[Dict[str, Any]],
        issuer_did: str,
        signer: Ed25519Signer,
        options: Optional[IssueOptions] = None,
    ) -> VcEnvelope:
        """Issues a traceability-event credential whose subject is the event list."""
        if not isinstance(events, list) or not events:
            raise MalformedInputError("DTE events must be a non-empty array")
        return await self._issue(
            events,
            issuer_did,
            signer,
            options,
            credential_type=DTE_CREDENTIAL_TYPE,
            context_url=self.settings.dte_context_url,
            schema_url=self.settings.dte_schema_url,
            schema_sha256=self.settings.dte_schema_sha256,
        )

    async def _issue(
        self,
        credential_subject: Any,
        issuer_did: str,
        signer: Ed25519Signer,
        options: Optional[IssueOptions],
        credential_type: str,
        context_url: str,
        schema_url: str,
        schema_sha256: Optional[str],
    ) -> VcEnvelope:
        options = options or IssueOptions()
        key = self._signing_key(signer, issuer_did)

        identity = await self.registry.get_identity(issuer_did)
        issuer_name = issuer_did
        if identity is not None:
            issuer_name = identity.metadata.organizationName or identity.metadata.domain or issuer_did

        credential_id = options.credential_id or f"urn:uuid:{uuid.uuid4()}"
        now = datetime.now(timezone.utc)
        iat = int(now.timestamp())

        contexts = [VC_CONTEXT_V2, context_url, VC_JSONLD_CONTEXT_V1, *options.additional_contexts]
        vc: Dict[str, Any] = {
            "@context": contexts,
            "type": ["VerifiableCredential", credential_type],
            "id": credential_id,
            "issuer": {"type": ["CredentialIssuer"], "id": issuer_did, "name": issuer_name},
            "validFrom": _iso(now),
            "credentialSubject": credential_subject,
            "credentialSchema": {"id": schema_url, "type": CREDENTIAL_SCHEMA_TYPE},
        }
        if options.expiration_date:
            vc["validUntil"] = _iso(options.expiration_date)
        if schema_sha256:
            vc["schemaSha256"] = schema_sha256

        if self.status_list is not None:
            entry = await self.status_list.assign_entry(issuer_did, credential_id)
            if STATUS_LIST_CONTEXT not in contexts:
                contexts.append(STATUS_LIST_CONTEXT)
            vc["credentialStatus"] = entry.model_dump()

        claims: Dict[str, Any] = {"iss": issuer_did, "jti": credential_id, "iat": iat, "nbf": iat, "vc": vc}
        if options.expiration_date:
            expires = options.expiration_date
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
            claims["exp"] = int(expires.timestamp())

        header: Dict[str, Any] = {"alg": SUPPORTED_JWT_ALG, "typ": JWT_TYP}
        kid = options.key_id or signer.key_id
        if kid:
            header["kid"] = kid

        token = jws.JWS(json.dumps(claims).encode('utf-8'))
        token.add_signature(key, None, json.dumps(header))
        signed_jwt = token.serialize(compact=True)
        logger.info(f"Issued {credential_type} credential {credential_id} for {issuer_did}")
        return decode_vc_jwt(signed_jwt)

    def decode(self, jwt: str) -> VcEnvelope:
        return decode_vc_jwt(jwt)

    async def verify(self, jwt: str, options: Optional[VerifyOptions] = None) -> VerificationResult:
        """
        Verifies a VC-JWT against the issuer's registered key.

        Checks run in order: structure, algorithm, issuer, signature, temporal
        claims, revocation. Every failure is reported in the result.

        Raises:
            MalformedInputError: Only when the token cannot be parsed at all.
        """
        options = options or VerifyOptions()
        envelope = decode_vc_jwt(jwt)
        payload = envelope.payload
        vc = envelope.vc

        result = VerificationResult(verified=True, issuer=envelope.issuer, payload=payload)
        result.issuance_date = _from_numeric_date(payload.get("iat")) or _from_iso_date(vc.get("validFrom"))
        result.expiration_date = _from_numeric_date(payload.get("exp")) or _from_iso_date(vc.get("validUntil"))

        if envelope.header.alg != SUPPORTED_JWT_ALG:
            result.fail(
                "VerificationFailed",
                f"Unsupported JWT algorithm: {envelope.header.alg}. Expected {SUPPORTED_JWT_ALG}.",
            )
            return result

        if envelope.header.typ is not None and envelope.header.typ != JWT_TYP:
            result.warnings.append(f"Unexpected JWT typ header: {envelope.header.typ}. Expected {JWT_TYP}.")

        issuer = envelope.issuer
        if not issuer:
            result.fail("MalformedInput", "JWT payload missing issuer (iss or issuer field)")
            return result

        vc_issuer = vc.get("issuer")
        vc_issuer_id = vc_issuer.get("id") if isinstance(vc_issuer, dict) else vc_issuer
        if vc_issuer_id and vc_issuer_id != issuer:
            result.fail("VerificationFailed", f"vc.issuer {vc_issuer_id} does not match iss {issuer}")
            return result

        identity = await self.registry.get_identity(issuer)
        if identity is None:
            result.fail("NotFound", f"Issuer not registered: {issuer}")
            return result
        if options.require_verified_issuer and identity.status != IssuerStatus.VERIFIED:
            result.fail("VerificationFailed", f"Issuer {issuer} is not verified (status {identity.status.value})")

        if not self._signature_valid(envelope, identity.signing_key.public_key, result):
            return result

        if options.check_temporal:
            self._check_temporal(payload, result)

        if options.check_revocation:
            await self._check_revocation(issuer, envelope, result)

        if result.verified:
            logger.info(f"Credential {envelope.credential_id} from {issuer} verified")
        else:
            logger.warning(f"Credential {envelope.credential_id} from {issuer} failed verification: {result.errors}")
        return result

    def _signature_valid(self, envelope: VcEnvelope, public_key: bytes, result: VerificationResult) -> bool:
        try:
            public_jwk = public_jwk_from_bytes(public_key)
            token = jws.JWS()
            token.deserialize(envelope.jwt)
            token.verify(public_jwk, alg=SUPPORTED_JWT_ALG)
            return True
        except jws.InvalidJWSSignature:
            logger.warning("JWT signature verification failed: InvalidSignature exception.")
            result.fail("VerificationFailed", "Invalid JWT signature: signature verification failed")
        except (jws.InvalidJWSObject, InvalidKeyFormatError, ValueError) as e:
            logger.error(f"Error during JWS verification: {e}")
            result.fail("VerificationFailed", f"JWT verification error: {e}")
        return False

    def _check_temporal(self, payload: Dict[str, Any], result: VerificationResult) -> None:
        now = time.time()
        skew = self.settings.clock_skew_seconds
        for claim in ("nbf", "exp"):
            if claim in payload and _from_numeric_date(payload[claim]) is None:
                result.fail("MalformedInput", f"Invalid '{claim}' claim: must be a NumericDate")

        nbf = _from_numeric_date(payload.get("nbf"))
        if nbf is not None and nbf.timestamp() > now + skew:
            result.fail("VerificationFailed", f"Credential is not yet valid (nbf {_iso(nbf)})")
        exp = _from_numeric_date(payload.get("exp"))
        if exp is not None and exp.timestamp() < now - skew:
            result.fail("VerificationFailed", f"Credential expired at {_iso(exp)}")

    async def _check_revocation(self, issuer: str, envelope: VcEnvelope, result: VerificationResult) -> None:
        status = envelope.vc.get("credentialStatus")
        if not status:
            result.warnings.append("VC does not include credentialStatus (legacy credential)")
            return
        if self.status_list is None:
            logger.warning(f"Revocation check skipped for {envelope.credential_id}: status list is disabled")
            result.warnings.append("Revocation check skipped: status list feature is disabled")
            return
        if not isinstance(status, dict) or status.get("type") != STATUS_LIST_ENTRY_TYPE:
            kind = status.get("type") if isinstance(status, dict) else type(status).__name__
            result.warnings.append(f"Unsupported credentialStatus type: {kind}")
            return

        try:
            index = int(status.get("statusListIndex"))
        except (TypeError, ValueError, OverflowError):
            result.fail("MalformedInput", f"Invalid statusListIndex: {status.get('statusListIndex')!r}")
            return

        try:
            revoked = await self.status_list.is_revoked(issuer, index)
        except MalformedInputError as e:
            result.fail("MalformedInput", e.message)
            return
        except FidesTrustError as e:
            logger.error(f"Status List check failed for {envelope.credential_id}: {e.message}")
            result.fail("StorageUnavailable", f"Status List check failed: {e.message}")
            return
        if revoked:
            result.fail("Revoked", "Credential has been revoked (Status List check failed)")
