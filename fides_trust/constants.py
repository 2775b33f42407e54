# fides_trust/constants.py
"""Shared constants for the trust & credential engine."""

DID_WEB_PREFIX: str = "did:web:"
DID_WEB_METHOD: str = "did:web"
SUPPORTED_KEY_TYPE: str = "ed25519"
SUPPORTED_JWT_ALG: str = "EdDSA"
JWT_TYP: str = "JWT"

MULTICODEC_ED25519_PUB_HEADER: bytes = b'\xed\x01'
MULTIBASE_BASE58BTC_PREFIX: str = "z"
ED25519_KEY_LENGTH: int = 32
VERIFICATION_KEY_TYPE: str = "Ed25519VerificationKey2020"
VERIFICATION_KEY_FRAGMENT: str = "key-1"

DID_CONTEXT_V1: str = "https://www.w3.org/ns/did/v1"
ED25519_2020_CONTEXT: str = "https://w3id.org/security/suites/ed25519-2020/v1"
VC_CONTEXT_V2: str = "https://www.w3.org/ns/credentials/v2"
VC_JSONLD_CONTEXT_V1: str = "https://www.w3.org/2018/credentials/v1"
STATUS_LIST_CONTEXT: str = "https://w3id.org/vc/status-list/2021/v1"

DEFAULT_DPP_CONTEXT_URL: str = "https://test.uncefact.org/vocabulary/untp/dpp/0.6.0/"
DEFAULT_DTE_CONTEXT_URL: str = "https://test.uncefact.org/vocabulary/untp/dte/0.6.0/"
DEFAULT_DPP_SCHEMA_URL: str = "https://test.uncefact.org/vocabulary/untp/dpp/untp-dpp-schema-0.6.0.json"
DEFAULT_DTE_SCHEMA_URL: str = "https://test.uncefact.org/vocabulary/untp/dte/untp-dte-schema-0.6.0.json"
CREDENTIAL_SCHEMA_TYPE: str = "JsonSchema2023"

DPP_CREDENTIAL_TYPE: str = "DigitalProductPassport"
DTE_CREDENTIAL_TYPE: str = "DigitalTraceabilityEvent"

ACCOUNTS_SERVICE_FRAGMENT: str = "polkadot-accounts"
ACCOUNTS_SERVICE_TYPE: str = "PolkadotAccounts"
ACCOUNTS_DOCUMENT_NAME: str = "polkadot-accounts.json"
ACCOUNTS_POLICY: str = "canIssueDpp"
DEFAULT_ACCOUNT_NETWORK: str = "asset-hub"
ACCOUNT_NETWORK_PREFIX: str = "polkadot:"

DID_DOCUMENT_CONTENT_TYPES = ("application/did+json", "application/json")

STATUS_LIST_DEFAULT_SIZE: int = 131072
STATUS_LIST_ENTRY_TYPE: str = "StatusList2021Entry"
STATUS_LIST_CREDENTIAL_TYPE: str = "StatusList2021Credential"
STATUS_LIST_SUBJECT_TYPE: str = "StatusList2021"
STATUS_PURPOSE_REVOCATION: str = "revocation"
REVOKE_MAX_ATTEMPTS: int = 3

AES_GCM_IV_LENGTH: int = 12
AES_GCM_TAG_LENGTH: int = 16
MASTER_KEY_HEX_LENGTH: int = 64

DTE_INDEX_DEFAULT_LIMIT: int = 200
TRUST_RELEVANT_ROLES = ("output", "epc", "parent")
