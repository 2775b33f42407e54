# fides_trust/did_utils.py
"""Utilities for did:web parsing, URL derivation and Ed25519 key encoding."""

import json
import logging
import base64
import re
from typing import Dict, Any, List, Tuple
from urllib.parse import quote, unquote

from jwcrypto import jwk
import multibase

from .constants import (
    DID_WEB_PREFIX,
    MULTICODEC_ED25519_PUB_HEADER,
    MULTIBASE_BASE58BTC_PREFIX,
    ED25519_KEY_LENGTH,
    ACCOUNTS_DOCUMENT_NAME,
)
from .errors import MalformedInputError, InvalidKeyFormatError

logger = logging.getLogger(__name__)

_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*(?::\d{{1,5}})?$")
_SANDBOX_HOSTS = ("localhost", "127.0.0.1")


def b64url_decode(data: str) -> bytes:
    """Base64url decoding that tolerates missing padding."""
    padded = data + '=' * (4 - len(data) % 4) if len(data) % 4 else data
    return base64.urlsafe_b64decode(padded.encode('ascii'))


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def normalize_domain(domain: str) -> str:
    """
    Validates and normalizes a bare host name (optionally with a port).

    Raises:
        MalformedInputError: If the value is not a plain domain.
    """
    if not isinstance(domain, str):
        raise MalformedInputError("Domain must be a string.")
    value = domain.strip().lower().rstrip(".")
    if not value or len(value) > 253 or not _DOMAIN_RE.match(value):
        raise MalformedInputError(f"Invalid domain for did:web: '{domain}'")
    return value


def did_web_from_domain(domain: str) -> str:
    """`example.com` -> `did:web:example.com`; a port colon is percent-encoded."""
    return f"{DID_WEB_PREFIX}{quote(normalize_domain(domain), safe='')}"


def parse_did_web(did: str) -> Tuple[str, List[str]]:
    """
    Splits a did:web DID into its decoded domain and path segments.

    Args:
        did: e.g. "did:web:example.com:pilots:abc".

    Returns:
        (domain, path_parts), e.g. ("example.com", ["pilots", "abc"]).

    Raises:
        MalformedInputError: If the DID is not a well-formed did:web identifier.
    """
    if not isinstance(did, str) or not did.startswith(DID_WEB_PREFIX):
        raise MalformedInputError(f"Invalid did:web format: {did}")

    parts = did[len(DID_WEB_PREFIX):].split(":")
    domain = unquote(parts[0])
    path_parts = [unquote(p) for p in parts[1:]]
    if not domain or any(not p for p in path_parts):
        raise MalformedInputError(f"Invalid did:web format: {did}")
    normalize_domain(domain)
    return domain, path_parts


def is_sandbox_local_did(did: str, test_mode: bool) -> bool:
    if not test_mode:
        return False
    try:
        domain, _ = parse_did_web(did)
    except MalformedInputError:
        return False
    return domain.split(":")[0] in _SANDBOX_HOSTS


def _did_web_document_url(did: str, filename: str, test_mode: bool) -> str:
    domain, path_parts = parse_did_web(did)
    protocol = "http" if is_sandbox_local_did(did, test_mode) else "https"
    if not path_parts:
        return f"{protocol}://{domain}/.well-known/{filename}"
    path = "/".join(quote(p, safe="") for p in path_parts)
    return f"{protocol}://{domain}/{path}/{filename}"


def did_web_to_url(did: str, test_mode: bool = False) -> str:
    """Location of the hosted did.json for a did:web DID."""
    return _did_web_document_url(did, "did.json", test_mode)


def accounts_service_endpoint(did: str, test_mode: bool = False) -> str:
    """Location of the authorized-accounts document published beside did.json."""
    return _did_web_document_url(did, ACCOUNTS_DOCUMENT_NAME, test_mode)


def public_key_to_multibase(public_key: bytes) -> str:
    """Encodes an Ed25519 public key as z-prefixed base58btc with the 0xed01 header."""
    if len(public_key) != ED25519_KEY_LENGTH:
        raise InvalidKeyFormatError(
            f"Invalid ed25519 public key length: expected {ED25519_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    return multibase.encode('base58btc', MULTICODEC_ED25519_PUB_HEADER + public_key).decode('ascii')


def public_key_from_multibase(value: str) -> bytes:
    """
    Decodes a publicKeyMultibase value into raw Ed25519 key bytes.

    Raises:
        InvalidKeyFormatError: On a wrong prefix, bad encoding, non-Ed25519
                               multicodec header or wrong length.
    """
    if not isinstance(value, str) or not value.startswith(MULTIBASE_BASE58BTC_PREFIX):
        raise InvalidKeyFormatError(
            f"Unsupported multibase encoding: Expected prefix '{MULTIBASE_BASE58BTC_PREFIX}'."
        )
    try:
        multicodec_bytes = multibase.decode(value)
    except Exception as e:
        raise InvalidKeyFormatError(f"Failed to decode multibase key '{value}': {e}")

    if not multicodec_bytes.startswith(MULTICODEC_ED25519_PUB_HEADER):
        actual_prefix_hex = multicodec_bytes[:len(MULTICODEC_ED25519_PUB_HEADER)].hex()
        raise InvalidKeyFormatError(
            f"Unsupported key type: Expected multicodec prefix {MULTICODEC_ED25519_PUB_HEADER.hex()} "
            f"(Ed25519 Public Key), got {actual_prefix_hex}."
        )

    public_key = multicodec_bytes[len(MULTICODEC_ED25519_PUB_HEADER):]
    if len(public_key) != ED25519_KEY_LENGTH:
        raise InvalidKeyFormatError(
            f"Decoded public key has incorrect length: {len(public_key)} bytes (expected {ED25519_KEY_LENGTH})."
        )
    return public_key


def generate_ed25519_keypair() -> Tuple[bytes, bytes]:
    """
    Generates a fresh Ed25519 key pair.

    Returns:
        (seed, public_key), both 32 bytes. The seed is the JWK 'd' value.
    """
    key = jwk.JWK.generate(kty='OKP', crv='Ed25519')
    private_jwk = json.loads(key.export_private())
    seed = b64url_decode(private_jwk['d'])
    public_key = b64url_decode(private_jwk['x'])
    if len(seed) != ED25519_KEY_LENGTH or len(public_key) != ED25519_KEY_LENGTH:
        raise InvalidKeyFormatError("Generated Ed25519 key has an unexpected length.")
    logger.debug(f"Generated Ed25519 key pair (public {public_key.hex()[:16]}...)")
    return seed, public_key


def private_jwk_from_seed(seed: bytes, public_key: bytes) -> Dict[str, Any]:
    """Builds an OKP/Ed25519 private JWK dict from raw key bytes."""
    if len(seed) != ED25519_KEY_LENGTH:
        raise InvalidKeyFormatError(f"Invalid ed25519 seed length: {len(seed)} (expected {ED25519_KEY_LENGTH})")
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(public_key),
        "d": b64url_encode(seed),
    }


def public_jwk_from_bytes(public_key: bytes) -> jwk.JWK:
    if len(public_key) != ED25519_KEY_LENGTH:
        raise InvalidKeyFormatError(
            f"Invalid ed25519 public key length: expected {ED25519_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    return jwk.JWK(kty='OKP', crv='Ed25519', x=b64url_encode(public_key))
