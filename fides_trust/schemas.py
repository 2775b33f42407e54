"""Pydantic models for stored records, published documents and results."""

from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    DEFAULT_ACCOUNT_NETWORK,
    SUPPORTED_KEY_TYPE,
    DID_WEB_METHOD,
)


class IssuerStatus(str, Enum):
    """Verification state of a did:web issuer. UNKNOWN is never stored."""
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class EncryptedPrivateKey(BaseModel):
    """AES-256-GCM encrypted Ed25519 seed."""
    ivB64: str
    ctB64: str
    tagB64: str


class SigningKey(BaseModel):
    type: str = SUPPORTED_KEY_TYPE
    public_key_hex: str

    @property
    def public_key(self) -> bytes:
        return bytes.fromhex(self.public_key_hex)


class AuthorizedAccount(BaseModel):
    address: str
    network: str = DEFAULT_ACCOUNT_NETWORK
    addedAt: Optional[datetime] = None


class IssuerMetadata(BaseModel):
    """Issuer metadata. Unknown keys are preserved on merge."""
    model_config = ConfigDict(extra="allow")

    domain: str
    organizationName: str
    registeredAt: datetime
    path: Optional[List[str]] = None
    trustedSupplierDids: List[str] = Field(default_factory=list)

    @field_validator("trustedSupplierDids", mode="before")
    @classmethod
    def _coerce_did_list(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]


class IssuerIdentity(BaseModel):
    """A registered did:web issuer."""
    did: str
    method: str = DID_WEB_METHOD
    signing_key: SigningKey
    encrypted_private_key: Optional[EncryptedPrivateKey] = None
    status: IssuerStatus = IssuerStatus.PENDING
    metadata: IssuerMetadata
    authorized_accounts: List[AuthorizedAccount] = Field(default_factory=list)
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None


class IssuerVerificationResult(BaseModel):
    """Outcome of a did:web hosting check."""
    success: bool
    status: IssuerStatus
    error: Optional[str] = None


class VerificationMethod(BaseModel):
    """Represents a DID Document Verification Method entry."""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    controller: str
    publicKeyMultibase: Optional[str] = None


class DidService(BaseModel):
    id: str
    type: str
    serviceEndpoint: Any


class DidDocument(BaseModel):
    """A did:web document, as generated or as fetched from its host."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    context: Any = Field(None, alias="@context")
    id: str
    verificationMethod: List[VerificationMethod] = Field(default_factory=list)
    authentication: List[Any] = Field(default_factory=list)
    assertionMethod: List[Any] = Field(default_factory=list)
    service: List[DidService] = Field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AccountGroup(BaseModel):
    network: str
    addresses: List[str] = Field(default_factory=list)


class AuthorizedAccountsDocument(BaseModel):
    """Document published next to did.json listing operational accounts."""
    did: str
    updatedAt: str
    accounts: List[AccountGroup] = Field(default_factory=list)
    policy: str


class JwtHeader(BaseModel):
    model_config = ConfigDict(extra="allow")

    alg: str
    typ: Optional[str] = None
    kid: Optional[str] = None


class VcEnvelope(BaseModel):
    """A signed VC-JWT split into its three parts."""
    jwt: str = Field(..., description="Compact three-segment JWS.")
    header: JwtHeader
    payload: Dict[str, Any]
    signature: str = Field(..., description="Base64url signature segment.")

    @property
    def issuer(self) -> Optional[str]:
        iss = self.payload.get("iss") or self.payload.get("issuer")
        if isinstance(iss, dict):
            iss = iss.get("id")
        return iss if isinstance(iss, str) else None

    @property
    def vc(self) -> Dict[str, Any]:
        vc = self.payload.get("vc")
        return vc if isinstance(vc, dict) else {}

    @property
    def credential_id(self) -> Optional[str]:
        value = self.payload.get("jti") or self.vc.get("id")
        return str(value) if value else None


class IssueOptions(BaseModel):
    """Options accepted by credential issuance."""
    credential_id: Optional[str] = None
    expiration_date: Optional[datetime] = None
    additional_contexts: List[str] = Field(default_factory=list)
    key_id: Optional[str] = None


class VerifyOptions(BaseModel):
    """Which optional checks a credential verification performs."""
    check_temporal: bool = True
    check_revocation: bool = True
    require_verified_issuer: bool = True


class VerificationResult(BaseModel):
    """Output of credential verification."""
    verified: bool = Field(..., description="True only if every requested check passed.")
    issuer: Optional[str] = Field(None, description="Issuer DID taken from the credential.")
    issuance_date: Optional[datetime] = Field(None, description="From iat, or validFrom.")
    expiration_date: Optional[datetime] = Field(None, description="From exp, or validUntil.")
    errors: List[str] = Field(default_factory=list, description="Human-readable failure reasons.")
    error_codes: List[str] = Field(default_factory=list, description="Error kinds, e.g. 'Revoked'.")
    warnings: List[str] = Field(default_factory=list)
    payload: Optional[Dict[str, Any]] = Field(None, description="Decoded JWT payload.")

    def fail(self, code: str, message: str) -> None:
        self.verified = False
        self.errors.append(message)
        if code not in self.error_codes:
            self.error_codes.append(code)


class StatusListEntry(BaseModel):
    """`credentialStatus` block embedded in an issued VC."""
    id: str
    type: str
    statusPurpose: str
    statusListIndex: str
    statusListCredential: str


class StatusListMapping(BaseModel):
    credential_id: str
    issuer_did: str
    index: int
    status_list_cid: Optional[str] = None
    created_at: datetime


class StatusListRecord(BaseModel):
    """Per-issuer status list pointer and allocation counter."""
    issuer_did: str
    current_cid: Optional[str] = None
    next_index: int = 0
    updated_at: Optional[datetime] = None


class ProductRef(BaseModel):
    productId: str
    role: str


class DteIndexRecord(BaseModel):
    """One discovery row per (productId, dteCid, eventId, role)."""
    productId: str
    dteCid: str
    dteUri: str
    gatewayUrl: Optional[str] = None
    issuerDid: str
    credentialId: str
    eventId: str
    eventType: Optional[str] = None
    eventTime: Optional[str] = None
    role: str
    createdAt: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.productId}::{self.dteCid}::{self.eventId}::{self.role}"


class AllowlistDecision(BaseModel):
    """Outcome of an allowlist check for one submission."""
    allowed: bool
    product_id: Optional[str] = None
    supplier_did: Optional[str] = None
    manufacturer_did: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None


class PublishResult(BaseModel):
    cid: str
    credential_id: str
    issuer_did: str
    product_ids: List[str] = Field(default_factory=list)
    records_indexed: int = 0
