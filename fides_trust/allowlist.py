# fides_trust/allowlist.py
"""
Supplier allowlist governance for traceability events.

A supplier may publish events for a product only when the product's
manufacturer (the issuer of its class-level passport) lists the supplier's DID
in `trustedSupplierDids`. A manufacturer is always allowed on its own products.
"""

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .constants import TRUST_RELEVANT_ROLES
from .errors import MalformedInputError, NotAllowlistedError
from .schemas import AllowlistDecision, ProductRef

logger = logging.getLogger(__name__)

ResolveManufacturer = Callable[[str], Awaitable[Optional[str]]]
GetTrustedSuppliers = Callable[[str], Awaitable[List[str]]]


def normalize_did(value: Any) -> str:
    return str(value or "").strip()


def normalize_did_list(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        return []
    return [d for d in (normalize_did(v) for v in values) if d]


def is_supplier_allowed(supplier_did: str, manufacturer_did: str, trusted_supplier_dids: Iterable[str]) -> bool:
    supplier = normalize_did(supplier_did)
    manufacturer = normalize_did(manufacturer_did)
    if not supplier or not manufacturer:
        return False
    if supplier == manufacturer:
        return True
    return supplier in normalize_did_list(list(trusted_supplier_dids or []))


def _unique_product_ids(product_ids: Iterable[str]) -> List[str]:
    unique: List[str] = []
    for product_id in product_ids or []:
        value = str(product_id or "").strip()
        if value and value not in unique:
            unique.append(value)
    return unique


def select_trust_relevant_product_ids(refs: Iterable[Any]) -> List[str]:
    """
    Product ids the allowlist is checked against: those referenced as output,
    epc or parent. Falls back to every referenced id when none qualify.

    Accepts `ProductRef` objects or anything with `productId` and `role`.
    """
    refs = list(refs or [])
    relevant = _unique_product_ids(r.productId for r in refs if r.role in TRUST_RELEVANT_ROLES)
    return relevant or _unique_product_ids(r.productId for r in refs)


async def check_allowlist(
    supplier_did: str,
    product_ids: Iterable[str],
    resolve_manufacturer: ResolveManufacturer,
    get_trusted_suppliers: GetTrustedSuppliers,
) -> AllowlistDecision:
    """
    Evaluates the allowlist for every product id and reports the first denial.

    Raises:
        MalformedInputError: Missing supplier DID or no product ids.
    """
    supplier = normalize_did(supplier_did)
    if not supplier:
        raise MalformedInputError("Missing DTE issuer (supplier DID)")
    unique_ids = _unique_product_ids(product_ids)
    if not unique_ids:
        raise MalformedInputError("No product references found in DTE events")

    for product_id in unique_ids:
        manufacturer = normalize_did(await resolve_manufacturer(product_id))
        if not manufacturer:
            return AllowlistDecision(
                allowed=False,
                product_id=product_id,
                supplier_did=supplier,
                error_code="NotAllowlisted",
                reason=f"Cannot enforce allowlist: no passport issuer found for productId {product_id}",
            )

        trusted = normalize_did_list(await get_trusted_suppliers(manufacturer))
        if not is_supplier_allowed(supplier, manufacturer, trusted):
            return AllowlistDecision(
                allowed=False,
                product_id=product_id,
                supplier_did=supplier,
                manufacturer_did=manufacturer,
                error_code="NotAllowlisted",
                reason=f"Supplier {supplier} is not allowlisted by manufacturer {manufacturer} for productId {product_id}",
            )
        logger.debug(f"Supplier {supplier} allowed by {manufacturer} for {product_id}")

    return AllowlistDecision(allowed=True, supplier_did=supplier)


async def enforce_allowlist(
    supplier_did: str,
    product_ids: Iterable[str],
    resolve_manufacturer: ResolveManufacturer,
    get_trusted_suppliers: GetTrustedSuppliers,
) -> None:
    """
    Raises unless the supplier is allowed for every product id.

    Raises:
        MalformedInputError: Missing supplier DID or no product ids.
        NotAllowlistedError: A product has no resolvable manufacturer, or the
            manufacturer has not allowlisted the supplier.
    """
    decision = await check_allowlist(supplier_did, product_ids, resolve_manufacturer, get_trusted_suppliers)
    if not decision.allowed:
        logger.warning(f"Allowlist denied: {decision.reason}")
        raise NotAllowlistedError(
            decision.reason,
            product_id=decision.product_id,
            supplier_did=decision.supplier_did,
            manufacturer_did=decision.manufacturer_did,
        )
