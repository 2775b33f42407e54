# fides_trust/dte_index.py
"""
Discovery index for published Digital Traceability Events.

Each product identifier referenced by an event (outputs, inputs, EPC lists,
parent/child EPCs and quantity lists) becomes one `DteIndexRecord`, so events
can be found by any product they touch.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from .constants import DTE_INDEX_DEFAULT_LIMIT
from .resolution import derive_lookup_aliases
from .schemas import DteIndexRecord, ProductRef
from .storage import DteIndexStorage, sort_newest_first

logger = logging.getLogger(__name__)

_EPC_LISTS = (
    ("outputEPCList", "output"),
    ("inputEPCList", "input"),
    ("epcList", "epc"),
    ("childEPCList", "child"),
    ("childEPCs", "child"),
)
_QUANTITY_LISTS = ("quantityList", "inputQuantityList", "outputQuantityList")


class DteIndexingContext(BaseModel):
    issuer_did: str
    credential_id: str
    dte_cid: str
    gateway_url: Optional[str] = None


def _ref_id(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict) and value.get("id"):
        return str(value["id"]).strip()
    return ""


def extract_product_refs(event: Any) -> List[ProductRef]:
    """
    Collects product references from one event, expanded through lookup aliases
    and de-duplicated on (productId, role).
    """
    if not isinstance(event, dict):
        return []

    refs: Dict[str, ProductRef] = {}

    def _add(product_id: str, role: str) -> None:
        for alias in derive_lookup_aliases(product_id):
            refs.setdefault(f"{alias}::{role}", ProductRef(productId=alias, role=role))

    _add(_ref_id(event.get("parentEPC")), "parent")
    for field, role in _EPC_LISTS:
        if isinstance(event.get(field), list):
            for item in event[field]:
                _add(_ref_id(item), role)

    for field in _QUANTITY_LISTS:
        items = event.get(field)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and item.get("productId"):
                _add(str(item["productId"]).strip(), "quantity")

    return list(refs.values())


def guess_event_type(event: Any) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    raw = event.get("type")
    types = raw if isinstance(raw, list) else [raw] if raw else []
    names = [str(t) for t in types if t]
    for name in names:
        if name.endswith("Event") and name != "Event":
            return name
    return names[0] if names else None


def guess_event_time(event: Any) -> Optional[str]:
    """Event time as ISO-8601 UTC with milliseconds, or None when absent or unparseable."""
    if not isinstance(event, dict):
        return None
    value = event.get("eventTime") or event.get("event_time") or event.get("time")
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable event time: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_dte_index_records(events: Iterable[Any], context: DteIndexingContext) -> List[DteIndexRecord]:
    """
    One record per (event, referenced product, role).

    Events without an `id` are numbered `<credentialId>#event-<n>`, 1-based in
    credentialSubject order. Events that reference no product are skipped.
    """
    records: List[DteIndexRecord] = []
    for position, event in enumerate(events or [], start=1):
        refs = extract_product_refs(event)
        if not refs:
            continue
        event_id = str(event.get("id") or "").strip() or f"{context.credential_id}#event-{position}"
        event_type = guess_event_type(event)
        event_time = guess_event_time(event)
        for ref in refs:
            records.append(DteIndexRecord(
                productId=ref.productId,
                dteCid=context.dte_cid,
                dteUri=f"ipfs://{context.dte_cid}",
                gatewayUrl=context.gateway_url,
                issuerDid=context.issuer_did,
                credentialId=context.credential_id,
                eventId=event_id,
                eventType=event_type,
                eventTime=event_time,
                role=ref.role,
            ))
    return records


class DteIndex:
    """Alias-aware queries over a `DteIndexStorage`."""

    def __init__(self, storage: DteIndexStorage):
        self.storage = storage

    async def upsert_many(self, records: List[DteIndexRecord]) -> int:
        written = await self.storage.upsert_many(records)
        if written:
            logger.info(f"Indexed {written} DTE record(s)")
        return written

    async def list_by_product_id(self, product_id: str, limit: int = DTE_INDEX_DEFAULT_LIMIT) -> List[DteIndexRecord]:
        return await self.storage.list_by_product_id(product_id, limit)

    async def list_for_product(self, product_id: str, limit: int = DTE_INDEX_DEFAULT_LIMIT) -> List[DteIndexRecord]:
        """Records for the product under any of its lookup aliases, newest first."""
        merged: Dict[str, DteIndexRecord] = {}
        for alias in derive_lookup_aliases(product_id):
            for record in await self.storage.list_by_product_id(alias, limit):
                merged.setdefault(record.key, record)
        return sort_newest_first(list(merged.values()))[:max(0, int(limit))]
