# fides_trust/resolution.py
"""
Canonical product identifiers and their resolution to ledger tokens.

Canonical subject identifier, at each granularity:
  - ProductClass: productId
  - Batch:        productId + "#" + batchNumber
  - Item:         productId + "#" + serialNumber

The ledger indexes passports by SHA-256 over the UTF-8 bytes of that string,
written as "0x" + 64 lowercase hex characters.
"""

import hashlib
import logging
import re
from typing import TYPE_CHECKING, List, Optional

from .errors import StorageUnavailableError

if TYPE_CHECKING:
    from .ledger import PassportLedger
    from .registry import IssuerTrustRegistry

logger = logging.getLogger(__name__)

GRANULARITIES = ("ProductClass", "Batch", "Item")

_GS1_DIGITAL_LINK_GTIN = re.compile(r"/01/(\d{8,14})(?:/|$)")
_GTIN_PREFIXED = re.compile(r"^GTIN:(\d{8,14})$", re.IGNORECASE)
_URN_PRODUCT_PREFIX = "urn:product:"


def _clean(value: Optional[str]) -> str:
    return str(value or "").strip()


def build_canonical_subject_id(
    product_id: Optional[str] = None,
    granularity: str = "ProductClass",
    batch_number: Optional[str] = None,
    serial_number: Optional[str] = None,
    canonical_subject_id: Optional[str] = None,
) -> str:
    """
    Builds the canonical subject identifier for a product.

    A non-empty `canonical_subject_id` is returned as is. Otherwise an empty
    string signals that the inputs are insufficient for the granularity.
    """
    direct = _clean(canonical_subject_id)
    if direct:
        return direct

    product_id = _clean(product_id)
    if not product_id:
        return ""

    granularity = granularity or "ProductClass"
    if granularity == "ProductClass":
        return product_id
    if granularity == "Batch":
        batch_number = _clean(batch_number)
        return f"{product_id}#{batch_number}" if batch_number else ""
    if granularity == "Item":
        serial_number = _clean(serial_number)
        return f"{product_id}#{serial_number}" if serial_number else ""
    return ""


def sha256_bytes32_utf8(text: str) -> bytes:
    return hashlib.sha256(text.encode("utf-8")).digest()


def sha256_hex32_utf8(text: str) -> str:
    return "0x" + hashlib.sha256(text.encode("utf-8")).hexdigest()


def derive_lookup_aliases(product_id: str) -> List[str]:
    """
    Alternate spellings under which the same product may have been indexed.

    >>> derive_lookup_aliases("https://id.gs1.org/01/09506000134352/10/LOT1")
    ['https://id.gs1.org/01/09506000134352/10/LOT1', 'GTIN:09506000134352']
    """
    value = _clean(product_id)
    if not value:
        return []

    aliases = [value]

    def _add(alias: str) -> None:
        if alias and alias not in aliases:
            aliases.append(alias)

    match = _GS1_DIGITAL_LINK_GTIN.search(value)
    if match:
        _add(f"GTIN:{match.group(1)}")
    if value.startswith(_URN_PRODUCT_PREFIX):
        _add(value[len(_URN_PRODUCT_PREFIX):])
    match = _GTIN_PREFIXED.match(value)
    if match:
        _add(match.group(1))
    return aliases


class ResolutionIndex:
    """Maps product identifiers to ledger tokens and their issuing manufacturer."""

    def __init__(self, ledger: "PassportLedger", registry: Optional["IssuerTrustRegistry"] = None):
        self.ledger = ledger
        self.registry = registry

    async def lookup_token_id(self, canonical_subject_id: str) -> Optional[str]:
        canonical_subject_id = _clean(canonical_subject_id)
        if not canonical_subject_id:
            return None
        subject_hash = sha256_hex32_utf8(canonical_subject_id)
        try:
            token_id = await self.ledger.find_token_by_subject_hash(subject_hash)
        except StorageUnavailableError:
            raise
        except Exception as e:
            raise StorageUnavailableError(f"Ledger lookup failed for {canonical_subject_id}: {e}")
        logger.debug(f"Token lookup {canonical_subject_id} ({subject_hash[:18]}...) -> {token_id}")
        return str(token_id) if token_id is not None else None

    async def resolve_token_id_for_product_class(self, product_id: str) -> Optional[str]:
        for alias in derive_lookup_aliases(product_id):
            token_id = await self.lookup_token_id(build_canonical_subject_id(alias, "ProductClass"))
            if token_id:
                return token_id
        return None

    async def resolve_manufacturer_did(self, product_id: str) -> Optional[str]:
        """
        Finds the DID of the issuer that holds the product's class-level passport.

        The ledger may record either a DID or an operational account address; an
        address is mapped back to a DID through the registry's authorized accounts.
        """
        token_id = await self.resolve_token_id_for_product_class(product_id)
        if not token_id:
            return None
        try:
            issuer = _clean(await self.ledger.get_passport_issuer(token_id))
        except Exception as e:
            raise StorageUnavailableError(f"Ledger read failed for token {token_id}: {e}")
        if not issuer:
            return None
        if issuer.startswith("did:"):
            return issuer
        if self.registry is None:
            logger.warning(f"Passport {token_id} issuer {issuer} is an account but no registry is configured")
            return None
        return await self.registry.find_issuer_by_account(issuer)
