# fides_trust/status_list.py
"""
Revocation ledger built on W3C StatusList2021.

Each issuer owns one bitstring. Issuance allocates the next unused index;
revocation sets that bit and publishes a new immutable status-list credential
to the blob store, then moves the issuer's `current_cid` pointer to it. The
pointer only moves if it still names the snapshot the bit was set on; a lost
race re-reads the newer snapshot and tries again.
Verifiers read the snapshot behind the pointer.
"""

import asyncio
import base64
import binascii
import gzip
import json
import logging
import time
import uuid
import zlib
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

from .blob_store import BlobStore
from .config import Settings
from .constants import (
    REVOKE_MAX_ATTEMPTS,
    STATUS_LIST_CONTEXT,
    STATUS_LIST_CREDENTIAL_TYPE,
    STATUS_LIST_DEFAULT_SIZE,
    STATUS_LIST_ENTRY_TYPE,
    STATUS_LIST_SUBJECT_TYPE,
    STATUS_PURPOSE_REVOCATION,
    VC_CONTEXT_V2,
    VC_JSONLD_CONTEXT_V1,
)
from .errors import MalformedInputError, NotFoundError, StatusListConflictError, StorageUnavailableError
from .schemas import StatusListEntry
from .storage import StatusListStorage

logger = logging.getLogger(__name__)


class Bitstring:
    """Fixed-size bitstring; bit 0 is the most significant bit of byte 0."""

    def __init__(self, size: int = STATUS_LIST_DEFAULT_SIZE, data: Optional[bytes] = None):
        if data is not None:
            self._bytes = bytearray(data)
            self.size = len(self._bytes) * 8
        else:
            if size <= 0:
                raise MalformedInputError("Bitstring size must be positive")
            self._bytes = bytearray((size + 7) // 8)
            self.size = size

    def _check(self, index: int) -> None:
        if not isinstance(index, int) or isinstance(index, bool) or index < 0 or index >= self.size:
            raise MalformedInputError(f"Status list index out of range: {index} (size {self.size})")

    def get(self, index: int) -> bool:
        self._check(index)
        return bool(self._bytes[index // 8] & (0x80 >> (index % 8)))

    def set(self, index: int) -> None:
        self._check(index)
        self._bytes[index // 8] |= 0x80 >> (index % 8)

    def encode(self) -> str:
        """GZIP-compress then base64-encode."""
        return base64.b64encode(gzip.compress(bytes(self._bytes))).decode("ascii")

    @classmethod
    def decode(cls, encoded: str) -> "Bitstring":
        """Accepts standard or URL-safe base64, padded or not."""
        if not isinstance(encoded, str) or not encoded.strip():
            raise MalformedInputError("encodedList must be a non-empty string")
        value = encoded.strip().replace("-", "+").replace("_", "/")
        value += "=" * (-len(value) % 4)
        try:
            return cls(data=gzip.decompress(base64.b64decode(value, validate=True)))
        except (binascii.Error, OSError, EOFError, zlib.error) as e:
            raise MalformedInputError(f"Invalid encodedList: {e}")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_status_list_credential(issuer_did: str, bitstring: Bitstring, list_id: Optional[str] = None) -> Dict[str, Any]:
    """Unsigned status-list credential published as an immutable snapshot."""
    list_id = list_id or f"urn:uuid:{uuid.uuid4()}"
    return {
        "@context": [VC_CONTEXT_V2, VC_JSONLD_CONTEXT_V1, STATUS_LIST_CONTEXT],
        "type": ["VerifiableCredential", STATUS_LIST_CREDENTIAL_TYPE],
        "id": list_id,
        "issuer": issuer_did,
        "issuanceDate": _iso_now(),
        "credentialSubject": {
            "id": f"{list_id}#list",
            "type": STATUS_LIST_SUBJECT_TYPE,
            "statusPurpose": STATUS_PURPOSE_REVOCATION,
            "encodedList": bitstring.encode(),
        },
    }


class StatusListManager:
    """
    Allocates status indices, revokes them and answers revocation queries.

    `is_revoked` serves a decoded snapshot from cache for up to
    `settings.status_list_cache_ttl_seconds`; a revocation made through this
    instance invalidates the issuer's cache entry immediately.
    """

    def __init__(
        self,
        storage: StatusListStorage,
        blob_store: BlobStore,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.blob_store = blob_store
        self.settings = settings
        self._clock = clock
        self._cache: Dict[str, Tuple[float, str, Bitstring]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, issuer_did: str) -> asyncio.Lock:
        lock = self._locks.get(issuer_did)
        if lock is None:
            lock = self._locks[issuer_did] = asyncio.Lock()
        return lock

    def status_list_url(self, issuer_did: str) -> str:
        base = self.settings.status_list_base_url.rstrip("/")
        return f"{base}/api/status-list?issuer={quote(issuer_did, safe='')}"

    async def _publish(self, issuer_did: str, bitstring: Bitstring) -> str:
        credential = build_status_list_credential(issuer_did, bitstring)
        cid = await self.blob_store.put(
            json.dumps(credential).encode("utf-8"),
            name=f"status-list-{issuer_did.replace(':', '-')}.json",
        )
        logger.debug(f"Published status list for {issuer_did} as {cid}")
        return cid

    async def _ensure_list(self, issuer_did: str) -> str:
        record = await self.storage.get_record(issuer_did)
        if record is not None and record.current_cid:
            return record.current_cid
        cid = await self._publish(issuer_did, Bitstring(self.settings.status_list_size))
        return await self.storage.init_current_cid(issuer_did, cid)

    async def allocate_index(self, issuer_did: str, credential_id: Optional[str] = None) -> int:
        """
        Returns the next unused index for `issuer_did`; the advanced counter is
        persisted before the index is returned.

        Raises:
            MalformedInputError: Empty issuer DID.
            StatusListFullError: The issuer's list has no free index.
        """
        issuer_did = str(issuer_did or "").strip()
        if not issuer_did:
            raise MalformedInputError("Issuer DID is required to allocate a status index")
        await self._ensure_list(issuer_did)
        index = await self.storage.allocate_index(issuer_did, credential_id, self.settings.status_list_size)
        logger.info(f"Allocated status index {index} for {issuer_did} (credential {credential_id})")
        return index

    async def assign_entry(self, issuer_did: str, credential_id: str) -> StatusListEntry:
        index = await self.allocate_index(issuer_did, credential_id)
        url = self.status_list_url(issuer_did)
        return StatusListEntry(
            id=f"{url}#{index}",
            type=STATUS_LIST_ENTRY_TYPE,
            statusPurpose=STATUS_PURPOSE_REVOCATION,
            statusListIndex=str(index),
            statusListCredential=url,
        )

    async def load_status_list_credential(self, cid: str) -> Dict[str, Any]:
        raw = await self.blob_store.get(cid)
        try:
            credential = json.loads(raw)
        except ValueError as e:
            raise StorageUnavailableError(f"Status list credential {cid} is not valid JSON: {e}")
        if not isinstance(credential, dict) or not isinstance(credential.get("credentialSubject"), dict):
            raise StorageUnavailableError(f"Status list credential {cid} has no credentialSubject")
        return credential

    async def _load_bitstring(self, cid: str) -> Bitstring:
        credential = await self.load_status_list_credential(cid)
        try:
            return Bitstring.decode(credential["credentialSubject"].get("encodedList"))
        except MalformedInputError as e:
            raise StorageUnavailableError(f"Status list credential {cid} is unreadable: {e.message}")

    async def get_status_list_credential(self, issuer_did: str) -> Dict[str, Any]:
        """The currently published status-list credential for an issuer."""
        record = await self.storage.get_record(issuer_did)
        if record is None or not record.current_cid:
            raise NotFoundError(f"No status list found for issuer: {issuer_did}")
        return await self.load_status_list_credential(record.current_cid)

    async def revoke(self, issuer_did: str, index: int) -> str:
        """
        Sets the revocation bit for `index` and publishes a new snapshot.

        Returns:
            The CID of the current snapshot. Revoking an already revoked index
            publishes nothing and returns the existing CID.

        Raises:
            NotFoundError: The issuer has no status list.
            MalformedInputError: The index was never allocated.
            StatusListConflictError: The snapshot pointer kept moving under
                                     concurrent writers.
        """
        async with self._lock_for(issuer_did):
            for attempt in range(1, REVOKE_MAX_ATTEMPTS + 1):
                record = await self.storage.get_record(issuer_did)
                if record is None or not record.current_cid:
                    raise NotFoundError(f"No status list found for issuer: {issuer_did}")
                if isinstance(index, bool) or not isinstance(index, int) or index < 0 or index >= record.next_index:
                    raise MalformedInputError(f"Status index {index} has not been allocated for issuer {issuer_did}")

                bitstring = await self._load_bitstring(record.current_cid)
                if bitstring.get(index):
                    logger.info(f"Status index {index} for {issuer_did} is already revoked")
                    return record.current_cid

                bitstring.set(index)
                new_cid = await self._publish(issuer_did, bitstring)
                try:
                    await self.storage.set_current_cid(issuer_did, new_cid, expected_cid=record.current_cid)
                except StatusListConflictError as e:
                    if attempt == REVOKE_MAX_ATTEMPTS:
                        raise
                    logger.warning(f"Retrying revocation of index {index} for {issuer_did}: {e.message}")
                    continue
                finally:
                    self._cache.pop(issuer_did, None)
                logger.info(f"Revoked status index {index} for {issuer_did}; new status list {new_cid}")
                return new_cid

    async def revoke_credential(self, issuer_did: str, credential_id: str) -> str:
        mapping = await self.storage.get_mapping(credential_id)
        if mapping is None:
            raise NotFoundError(f"No status list mapping found for credentialId: {credential_id}")
        if mapping.issuer_did != issuer_did:
            raise MalformedInputError(
                f"Issuer mismatch: credentialId {credential_id} belongs to {mapping.issuer_did}, not {issuer_did}"
            )
        return await self.revoke(issuer_did, mapping.index)

    async def _current_bitstring(self, issuer_did: str) -> Optional[Bitstring]:
        now = self._clock()
        cached = self._cache.get(issuer_did)
        if cached and now - cached[0] < self.settings.status_list_cache_ttl_seconds:
            return cached[2]

        record = await self.storage.get_record(issuer_did)
        if record is None or not record.current_cid:
            return None
        if cached and cached[1] == record.current_cid:
            bitstring = cached[2]
        else:
            bitstring = await self._load_bitstring(record.current_cid)
        self._cache[issuer_did] = (now, record.current_cid, bitstring)
        return bitstring

    async def is_revoked(self, issuer_did: str, index: int) -> bool:
        bitstring = await self._current_bitstring(issuer_did)
        if bitstring is None:
            return False
        return bitstring.get(index)

    async def check_status(self, credential_id: str) -> bool:
        """Revocation state by credential id; unknown ids are not revoked."""
        mapping = await self.storage.get_mapping(credential_id)
        if mapping is None:
            return False
        return await self.is_revoked(mapping.issuer_did, mapping.index)
