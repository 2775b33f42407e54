"""Tests for canonical identifiers and ledger resolution"""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest

from fides_trust.errors import MalformedInputError, StorageUnavailableError
from fides_trust.resolution import (
    ResolutionIndex,
    build_canonical_subject_id,
    derive_lookup_aliases,
    sha256_bytes32_utf8,
    sha256_hex32_utf8,
)

GS1_LINK = "https://id.gs1.org/01/09506000134352/10/LOT1"


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        ({"product_id": "SKU-1"}, "SKU-1"),
        ({"product_id": " SKU-1 ", "granularity": "Batch", "batch_number": "B7"}, "SKU-1#B7"),
        ({"product_id": "SKU-1", "granularity": "Item", "serial_number": "S9"}, "SKU-1#S9"),
        ({"product_id": "SKU-1", "granularity": "Batch"}, ""),
        ({"product_id": "SKU-1", "granularity": "Item", "batch_number": "B7"}, ""),
        ({"product_id": "SKU-1", "granularity": "Pallet"}, ""),
        ({"product_id": ""}, ""),
        ({"product_id": "ignored", "canonical_subject_id": " direct#1 "}, "direct#1"),
    ],
)
def test_build_canonical_subject_id(kwargs, expected):
    """Canonical ids follow the granularity rules"""
    assert build_canonical_subject_id(**kwargs) == expected


def test_subject_hashes():
    """Hashes are SHA-256 over UTF-8, hex form prefixed with 0x"""
    digest = hashlib.sha256("SKU-1#B7".encode("utf-8")).hexdigest()
    assert sha256_hex32_utf8("SKU-1#B7") == "0x" + digest
    assert sha256_bytes32_utf8("SKU-1#B7") == bytes.fromhex(digest)
    assert len(sha256_hex32_utf8("caffè")) == 66


def test_derive_lookup_aliases():
    """GS1 links, urn:product and GTIN prefixes gain alternate spellings"""
    assert derive_lookup_aliases(GS1_LINK) == [GS1_LINK, "GTIN:09506000134352"]
    assert derive_lookup_aliases("urn:product:SKU-1") == ["urn:product:SKU-1", "SKU-1"]
    assert derive_lookup_aliases("gtin:09506000134352") == ["gtin:09506000134352", "09506000134352"]
    assert derive_lookup_aliases("SKU-1") == ["SKU-1"]
    assert derive_lookup_aliases("  ") == []


@pytest.mark.asyncio
async def test_lookup_token_id(ledger):
    """Tokens are found by the hash of the canonical id"""
    token_id = ledger.register_passport("SKU-1#B7", "did:web:maker.example")
    index = ResolutionIndex(ledger)

    assert await index.lookup_token_id("SKU-1#B7") == token_id
    assert await index.lookup_token_id("SKU-1#B8") is None
    assert await index.lookup_token_id("") is None


@pytest.mark.asyncio
async def test_lookup_wraps_ledger_errors():
    """Ledger failures surface as StorageUnavailableError"""
    broken = MagicMock()
    broken.find_token_by_subject_hash = AsyncMock(side_effect=ConnectionError("rpc down"))
    index = ResolutionIndex(broken)

    with pytest.raises(StorageUnavailableError) as excinfo:
        await index.lookup_token_id("SKU-1")
    assert "rpc down" in str(excinfo.value)


@pytest.mark.asyncio
async def test_resolve_manufacturer_via_alias(ledger):
    """A GS1 link resolves through the GTIN alias used at registration"""
    ledger.register_passport("GTIN:09506000134352", "did:web:maker.example")
    index = ResolutionIndex(ledger)

    assert await index.resolve_token_id_for_product_class(GS1_LINK) == "1"
    assert await index.resolve_manufacturer_did(GS1_LINK) == "did:web:maker.example"
    assert await index.resolve_manufacturer_did("SKU-unknown") is None


@pytest.mark.asyncio
async def test_resolve_manufacturer_from_account(ledger, registry):
    """An account recorded on the ledger maps back to its issuer DID"""
    identity = await registry.register("maker.example", "Maker")
    await registry.add_authorized_account(identity.did, "0xAbC123")
    ledger.register_passport("SKU-1", "0xabc123")

    index = ResolutionIndex(ledger, registry)
    assert await index.resolve_manufacturer_did("SKU-1") == identity.did

    without_registry = ResolutionIndex(ledger)
    assert await without_registry.resolve_manufacturer_did("SKU-1") is None


def test_register_passport_validation(ledger):
    """Passport registration needs both a subject and an issuer, and is idempotent"""
    with pytest.raises(MalformedInputError):
        ledger.register_passport("", "did:web:maker.example")
    first = ledger.register_passport("SKU-1", "did:web:maker.example")
    assert ledger.register_passport("SKU-1", "did:web:other.example") == first
