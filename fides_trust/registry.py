# fides_trust/registry.py
"""did:web issuer registry: identities, hosted-document verification and authorizations."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .config import Settings
from .constants import (
    ACCOUNTS_POLICY,
    ACCOUNTS_SERVICE_FRAGMENT,
    ACCOUNTS_SERVICE_TYPE,
    ACCOUNT_NETWORK_PREFIX,
    DEFAULT_ACCOUNT_NETWORK,
    DID_CONTEXT_V1,
    DID_DOCUMENT_CONTENT_TYPES,
    ED25519_2020_CONTEXT,
    VERIFICATION_KEY_FRAGMENT,
    VERIFICATION_KEY_TYPE,
)
from .credentials import Ed25519Signer
from .did_utils import (
    accounts_service_endpoint,
    did_web_from_domain,
    did_web_to_url,
    generate_ed25519_keypair,
    parse_did_web,
    private_jwk_from_seed,
    public_key_from_multibase,
    public_key_to_multibase,
)
from .errors import (
    FidesTrustError,
    InvalidKeyFormatError,
    MalformedInputError,
    NotFoundError,
    VerificationFailedError,
)
from .key_encryption import KeyEncryptor
from .schemas import (
    AccountGroup,
    AuthorizedAccount,
    AuthorizedAccountsDocument,
    DidDocument,
    DidService,
    IssuerIdentity,
    IssuerMetadata,
    IssuerStatus,
    IssuerVerificationResult,
    SigningKey,
    VerificationMethod,
)
from .storage import IssuerStorage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_account(address: str) -> str:
    value = str(address or "").strip()
    return value.lower() if value.lower().startswith("0x") else value


def build_did_document(identity: IssuerIdentity, test_mode: bool = False) -> DidDocument:
    """Projects a stored identity into the did.json it must host. No I/O."""
    did = identity.did
    key_id = f"{did}#{VERIFICATION_KEY_FRAGMENT}"
    return DidDocument(
        context=[DID_CONTEXT_V1, ED25519_2020_CONTEXT],
        id=did,
        verificationMethod=[
            VerificationMethod(
                id=key_id,
                type=VERIFICATION_KEY_TYPE,
                controller=did,
                publicKeyMultibase=public_key_to_multibase(identity.signing_key.public_key),
            )
        ],
        authentication=[key_id],
        assertionMethod=[key_id],
        service=[
            DidService(
                id=f"{did}#{ACCOUNTS_SERVICE_FRAGMENT}",
                type=ACCOUNTS_SERVICE_TYPE,
                serviceEndpoint=accounts_service_endpoint(did, test_mode),
            )
        ],
    )


def build_authorized_accounts_document(
    identity: IssuerIdentity, now: Optional[datetime] = None
) -> AuthorizedAccountsDocument:
    """Groups authorized accounts by network into the published accounts document. No I/O."""
    by_network: Dict[str, List[str]] = {}
    for account in identity.authorized_accounts:
        addresses = by_network.setdefault(account.network or DEFAULT_ACCOUNT_NETWORK, [])
        if account.address not in addresses:
            addresses.append(account.address)

    return AuthorizedAccountsDocument(
        did=identity.did,
        updatedAt=(now or _utcnow()).isoformat().replace("+00:00", "Z"),
        accounts=[
            AccountGroup(network=f"{ACCOUNT_NETWORK_PREFIX}{network}", addresses=addresses)
            for network, addresses in by_network.items()
        ],
        policy=ACCOUNTS_POLICY,
    )


def extract_accounts_service_endpoint(document: DidDocument) -> Optional[str]:
    for service in document.service:
        if service.type == ACCOUNTS_SERVICE_TYPE and isinstance(service.serviceEndpoint, str):
            return service.serviceEndpoint
    return None


class IssuerTrustRegistry:
    """
    Owns did:web issuer identities and their trust state.

    Status transitions:
        PENDING  --verify ok-->   VERIFIED
        PENDING  --verify fail--> FAILED
        VERIFIED/FAILED --re-verify--> VERIFIED | FAILED

    Construct once per process with an injected storage and pass it to request
    handlers. `transport` lets tests and embedding apps substitute the HTTP layer.
    """

    def __init__(
        self,
        storage: IssuerStorage,
        settings: Settings,
        encryptor: Optional[KeyEncryptor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.settings = settings
        self._encryptor_instance = encryptor
        self._transport = transport

    def _encryptor(self) -> KeyEncryptor:
        if self._encryptor_instance is None:
            self._encryptor_instance = KeyEncryptor(self.settings.master_key())
        return self._encryptor_instance

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.did_fetch_timeout_seconds, transport=self._transport)

    # --- registration ---------------------------------------------------

    async def register(self, domain: str, organization_name: str) -> IssuerIdentity:
        """
        Registers a did:web issuer for a bare domain.

        Args:
            domain: e.g. "example.com"; a port is allowed ("localhost:3000").
            organization_name: Display name used as the credential issuer name.

        Returns:
            The stored identity. An already-registered domain returns the
            existing identity unchanged.

        Raises:
            MalformedInputError: For a bad domain or empty organization name.
            ConfigurationMissingError: If no master key is configured.
        """
        did = did_web_from_domain(domain)
        return await self.register_did(did, organization_name)

    async def register_did(
        self,
        did: str,
        organization_name: str,
        status: Optional[IssuerStatus] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IssuerIdentity:
        """Registers an explicit, possibly path-based, did:web DID. Idempotent."""
        domain, path_parts = parse_did_web(did)
        organization_name = str(organization_name or "").strip()
        if not organization_name:
            raise MalformedInputError("Organization name is required.")
        if status == IssuerStatus.UNKNOWN:
            raise MalformedInputError("UNKNOWN is not a storable issuer status.")
        encryptor = self._encryptor()

        existing = await self.storage.get(did)
        if existing:
            logger.info(f"Issuer already registered for {did}; returning existing identity")
            return existing

        seed, public_key = generate_ed25519_keypair()
        metadata_fields: Dict[str, Any] = dict(metadata or {})
        metadata_fields.update(
            domain=domain,
            organizationName=organization_name,
            registeredAt=_utcnow(),
        )
        if path_parts:
            metadata_fields["path"] = path_parts
        else:
            metadata_fields.pop("path", None)
        try:
            issuer_metadata = IssuerMetadata.model_validate(metadata_fields)
        except ValidationError as e:
            raise MalformedInputError(f"Invalid issuer metadata: {e}")

        identity = IssuerIdentity(
            did=did,
            signing_key=SigningKey(public_key_hex=public_key.hex()),
            encrypted_private_key=encryptor.encrypt(seed),
            status=status or IssuerStatus.PENDING,
            metadata=issuer_metadata,
        )
        stored = await self.storage.create(identity)
        if stored.signing_key.public_key_hex == identity.signing_key.public_key_hex:
            logger.info(f"Registered issuer {did} ({organization_name}) with status {stored.status.value}")
        return stored

    async def get_identity(self, did: str) -> Optional[IssuerIdentity]:
        return await self.storage.get(did)

    async def get_status(self, did: str) -> IssuerStatus:
        identity = await self.storage.get(did)
        return identity.status if identity else IssuerStatus.UNKNOWN

    async def list_issuers(self) -> List[IssuerIdentity]:
        return await self.storage.list()

    async def _require(self, did: str) -> IssuerIdentity:
        identity = await self.storage.get(did)
        if identity is None:
            raise NotFoundError(f"Issuer not found for DID: {did}")
        return identity

    # --- hosted document verification ----------------------------------

    async def _fetch(self, url: str, what: str) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Accept": "application/did+json, application/json"})
        except httpx.TimeoutException:
            raise VerificationFailedError(f"Timed out fetching {what} from {url}")
        except httpx.HTTPError as e:
            raise VerificationFailedError(f"Network error fetching {what} from {url}: {e}")

        if response.status_code == 429:
            raise VerificationFailedError(f"Rate-limited while fetching {what}: {url}")
        if response.status_code != 200:
            raise VerificationFailedError(f"HTTP {response.status_code} fetching {what} from {url}")
        return response

    async def fetch_did_document(self, did: str) -> DidDocument:
        """
        Fetches and validates the hosted DID document.

        Raises:
            VerificationFailedError: Unreachable, non-200, wrong Content-Type,
                                     invalid JSON or invalid document shape.
        """
        url = did_web_to_url(did, self.settings.test_mode)
        logger.info(f"Fetching DID document from: {url}")
        response = await self._fetch(url, "DID document")

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in DID_DOCUMENT_CONTENT_TYPES:
            raise VerificationFailedError(f"Unexpected Content-Type '{content_type or 'none'}' for DID document at {url}")

        try:
            body = response.json()
        except ValueError as e:
            raise VerificationFailedError(f"DID document at {url} is not valid JSON: {e}")
        if not isinstance(body, dict):
            raise VerificationFailedError(f"DID document at {url} is not a JSON object")
        try:
            return DidDocument.model_validate(body)
        except ValidationError as e:
            raise VerificationFailedError(f"Malformed DID document at {url}: {e.error_count()} validation error(s)")

    async def _check_hosted_key(self, identity: IssuerIdentity) -> None:
        document = await self.fetch_did_document(identity.did)
        if document.id != identity.did:
            raise VerificationFailedError(f"DID mismatch: expected {identity.did}, got {document.id}")
        if not document.verificationMethod:
            raise VerificationFailedError("DID document has no verificationMethod")

        vm = document.verificationMethod[0]
        if not vm.publicKeyMultibase:
            raise VerificationFailedError("VerificationMethod missing publicKeyMultibase")

        hosted = public_key_from_multibase(vm.publicKeyMultibase)
        stored = identity.signing_key.public_key
        if hosted != stored:
            raise VerificationFailedError(
                f"Public key mismatch: stored key ({stored.hex()[:16]}...) "
                f"does not match hosted key ({hosted.hex()[:16]}...)"
            )

    async def verify(self, did: str) -> IssuerVerificationResult:
        """
        Checks that the hosted did.json carries the registered public key.

        Never raises for verification problems: an unknown DID yields UNKNOWN,
        and any fetch or comparison failure is recorded on the issuer as FAILED.
        """
        identity = await self.storage.get(did)
        if identity is None:
            return IssuerVerificationResult(
                success=False, status=IssuerStatus.UNKNOWN, error=f"Issuer not found for DID: {did}"
            )

        attempted_at = _utcnow()
        try:
            await self._check_hosted_key(identity)
        except FidesTrustError as e:
            logger.warning(f"DID verification failed for {did}: {e.message}")

            def _mark_failed(record: IssuerIdentity) -> None:
                record.status = IssuerStatus.FAILED
                record.last_error = e.message
                record.last_attempt_at = attempted_at

            await self.storage.update(did, _mark_failed)
            return IssuerVerificationResult(success=False, status=IssuerStatus.FAILED, error=e.message)

        def _mark_verified(record: IssuerIdentity) -> None:
            record.status = IssuerStatus.VERIFIED
            record.last_error = None
            record.last_attempt_at = attempted_at

        await self.storage.update(did, _mark_verified)
        logger.info(f"DID verification successful for {did}")
        return IssuerVerificationResult(success=True, status=IssuerStatus.VERIFIED)

    # --- authorized accounts -------------------------------------------

    async def add_authorized_account(
        self, did: str, address: str, network: Optional[str] = None
    ) -> IssuerIdentity:
        """Adds (address, network) to the issuer's authorized accounts unless already present."""
        address = _normalize_account(address)
        if not address:
            raise MalformedInputError("Account address is required.")
        network = str(network or "").strip() or DEFAULT_ACCOUNT_NETWORK

        def _add(identity: IssuerIdentity) -> None:
            for account in identity.authorized_accounts:
                if _normalize_account(account.address) == address and account.network == network:
                    return
            identity.authorized_accounts.append(
                AuthorizedAccount(address=address, network=network, addedAt=_utcnow())
            )

        updated = await self.storage.update(did, _add)
        logger.info(f"Authorized account {address} on {network} for {did}")
        return updated

    async def remove_authorized_account(
        self, did: str, address: str, network: Optional[str] = None
    ) -> IssuerIdentity:
        """Removes an account; without `network` it is removed from every network."""
        address = _normalize_account(address)
        network = str(network or "").strip() or None

        def _remove(identity: IssuerIdentity) -> None:
            identity.authorized_accounts = [
                a for a in identity.authorized_accounts
                if not (_normalize_account(a.address) == address and (network is None or a.network == network))
            ]

        return await self.storage.update(did, _remove)

    async def is_account_authorized(self, did: str, address: str, network: Optional[str] = None) -> bool:
        identity = await self.storage.get(did)
        if identity is None:
            return False
        address = _normalize_account(address)
        target_network = str(network or "").strip() or DEFAULT_ACCOUNT_NETWORK
        return any(
            _normalize_account(a.address) == address and a.network == target_network
            for a in identity.authorized_accounts
        )

    async def is_account_authorized_remote(self, did: str, address: str, network: Optional[str] = None) -> bool:
        """
        Checks authorization against the issuer's published documents rather
        than local state.

        Raises:
            VerificationFailedError: If either document cannot be fetched.
        """
        document = await self.fetch_did_document(did)
        endpoint = extract_accounts_service_endpoint(document)
        if not endpoint:
            return False

        response = await self._fetch(endpoint, "authorized accounts")
        try:
            body = response.json()
        except ValueError as e:
            raise VerificationFailedError(f"Authorized accounts document at {endpoint} is not valid JSON: {e}")

        accounts = body.get("accounts") if isinstance(body, dict) else None
        if not isinstance(accounts, list):
            return False

        address = _normalize_account(address)
        network_tag = f"{ACCOUNT_NETWORK_PREFIX}{str(network or '').strip() or DEFAULT_ACCOUNT_NETWORK}"
        for group in accounts:
            if isinstance(group, dict) and group.get("network") == network_tag:
                return address in [_normalize_account(a) for a in group.get("addresses") or []]
        return False

    async def find_issuer_by_account(self, address: str) -> Optional[str]:
        """Returns the DID whose authorized accounts include `address`, if any."""
        target = _normalize_account(address)
        if not target:
            return None
        for identity in sorted(await self.storage.list(), key=lambda i: i.did):
            if any(_normalize_account(a.address) == target for a in identity.authorized_accounts):
                return identity.did
        return None

    # --- metadata & trusted suppliers ----------------------------------

    async def update_metadata(self, did: str, patch: Dict[str, Any]) -> IssuerIdentity:
        """
        Shallow-merges `patch` into the issuer's metadata.

        Raises:
            NotFoundError: Unknown DID.
            MalformedInputError: If the merged metadata is invalid.
        """
        if not isinstance(patch, dict):
            raise MalformedInputError("Metadata patch must be an object.")

        def _merge(identity: IssuerIdentity) -> None:
            merged = {**identity.metadata.model_dump(), **patch}
            try:
                identity.metadata = IssuerMetadata.model_validate(merged)
            except ValidationError as e:
                raise MalformedInputError(f"Invalid issuer metadata: {e}")

        return await self.storage.update(did, _merge)

    async def add_trusted_supplier(self, did: str, supplier_did: str) -> IssuerIdentity:
        supplier_did = str(supplier_did or "").strip()
        if not supplier_did.startswith("did:"):
            raise MalformedInputError(f"Invalid supplier DID: '{supplier_did}'")

        def _add(identity: IssuerIdentity) -> None:
            if supplier_did not in identity.metadata.trustedSupplierDids:
                identity.metadata.trustedSupplierDids.append(supplier_did)

        updated = await self.storage.update(did, _add)
        logger.info(f"Issuer {did} now trusts supplier {supplier_did}")
        return updated

    async def remove_trusted_supplier(self, did: str, supplier_did: str) -> IssuerIdentity:
        supplier_did = str(supplier_did or "").strip()

        def _remove(identity: IssuerIdentity) -> None:
            identity.metadata.trustedSupplierDids = [
                d for d in identity.metadata.trustedSupplierDids if d != supplier_did
            ]

        updated = await self.storage.update(did, _remove)
        logger.info(f"Issuer {did} no longer trusts supplier {supplier_did}")
        return updated

    async def get_trusted_supplier_dids(self, did: str) -> List[str]:
        identity = await self.storage.get(did)
        if identity is None:
            return []
        return [d.strip() for d in identity.metadata.trustedSupplierDids if d and d.strip()]

    # --- published documents & keys ------------------------------------

    async def generate_did_document(self, did: str) -> Dict[str, Any]:
        identity = await self._require(did)
        return build_did_document(identity, self.settings.test_mode).to_json()

    async def generate_authorized_accounts_document(self, did: str) -> Dict[str, Any]:
        identity = await self._require(did)
        return build_authorized_accounts_document(identity).model_dump()

    async def get_public_key(self, did: str) -> bytes:
        identity = await self._require(did)
        return identity.signing_key.public_key

    async def get_signer(self, did: str) -> Ed25519Signer:
        """
        Decrypts the issuer's seed into a signer for credential issuance.

        Raises:
            NotFoundError: Unknown DID.
            InvalidKeyFormatError: No stored key, or decryption failed.
            ConfigurationMissingError: No master key configured.
        """
        identity = await self._require(did)
        if identity.encrypted_private_key is None:
            raise InvalidKeyFormatError(f"No encrypted private key found for DID: {did}")
        seed = self._encryptor().decrypt(identity.encrypted_private_key)
        public_key = identity.signing_key.public_key
        return Ed25519Signer(
            did=did,
            key_id=f"{did}#{VERIFICATION_KEY_FRAGMENT}",
            key_type=identity.signing_key.type,
            public_key=public_key,
            private_jwk=private_jwk_from_seed(seed, public_key),
        )
