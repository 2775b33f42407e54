"""
Storage backends for issuer identities, status-list state and the DTE index.

Each store keeps one JSON object in memory and, when given a path, mirrors it
to a file with atomic replace. Read-modify-write operations run under an
asyncio lock and re-read the file first if another writer changed it.
File storage is correct for a single process only.
"""

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from pydantic import ValidationError

from .config import Settings, STORAGE_BACKENDS
from .constants import DTE_INDEX_DEFAULT_LIMIT
from .errors import (
    ConfigurationMissingError,
    NotFoundError,
    StatusListConflictError,
    StatusListFullError,
    StorageUnavailableError,
)
from .schemas import DteIndexRecord, IssuerIdentity, StatusListMapping, StatusListRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JsonDocument:
    """A JSON object held in memory, optionally backed by a file."""

    def __init__(self, path: Optional[str], default: Callable[[], Dict[str, Any]]):
        self.path = path
        self._default = default
        self._data: Optional[Dict[str, Any]] = None
        self._mtime_ns: Optional[int] = None
        self._lock = asyncio.Lock()

    def _load_if_changed(self) -> None:
        if self.path is None:
            if self._data is None:
                self._data = self._default()
            return

        try:
            mtime_ns = os.stat(self.path).st_mtime_ns
        except FileNotFoundError:
            if self._data is None:
                self._data = self._default()
            return
        except OSError as e:
            raise StorageUnavailableError(f"Cannot stat storage file {self.path}: {e}")

        if self._data is not None and mtime_ns == self._mtime_ns:
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailableError(f"Failed to load storage file {self.path}: {e}")
        if not isinstance(loaded, dict):
            raise StorageUnavailableError(f"Storage file {self.path} does not contain a JSON object")

        self._data = {**self._default(), **loaded}
        self._mtime_ns = mtime_ns
        logger.debug(f"Loaded storage file {self.path}")

    def _persist(self, data: Dict[str, Any]) -> None:
        if self.path is None:
            return
        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
            self._mtime_ns = os.stat(self.path).st_mtime_ns
        except OSError as e:
            raise StorageUnavailableError(f"Failed to write storage file {self.path}: {e}")

    async def read(self) -> Dict[str, Any]:
        async with self._lock:
            await asyncio.to_thread(self._load_if_changed)
            return copy.deepcopy(self._data)

    async def update(self, mutate: Callable[[Dict[str, Any]], T]) -> T:
        """Applies `mutate` to a working copy and persists it; an exception leaves state untouched."""
        async with self._lock:
            await asyncio.to_thread(self._load_if_changed)
            working = copy.deepcopy(self._data)
            result = mutate(working)
            await asyncio.to_thread(self._persist, working)
            self._data = working
            return result


def _validate(model, raw: Any, what: str):
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise StorageUnavailableError(f"Corrupt {what} record in storage: {e}")


class IssuerStorage(Protocol):
    async def get(self, did: str) -> Optional[IssuerIdentity]: ...
    async def list(self) -> List[IssuerIdentity]: ...
    async def create(self, identity: IssuerIdentity) -> IssuerIdentity: ...
    async def update(self, did: str, mutate: Callable[[IssuerIdentity], None]) -> IssuerIdentity: ...


class JsonIssuerStorage:
    """Issuer identities keyed by DID. `path=None` keeps them in memory only."""

    def __init__(self, path: Optional[str] = None):
        self._doc = JsonDocument(path, lambda: {"issuers": {}})

    async def get(self, did: str) -> Optional[IssuerIdentity]:
        data = await self._doc.read()
        raw = data["issuers"].get(did)
        return _validate(IssuerIdentity, raw, "issuer") if raw else None

    async def list(self) -> List[IssuerIdentity]:
        data = await self._doc.read()
        return [_validate(IssuerIdentity, raw, "issuer") for raw in data["issuers"].values()]

    async def create(self, identity: IssuerIdentity) -> IssuerIdentity:
        """Inserts `identity` unless the DID exists; returns whichever record is stored."""
        def _insert(data: Dict[str, Any]) -> IssuerIdentity:
            existing = data["issuers"].get(identity.did)
            if existing:
                return _validate(IssuerIdentity, existing, "issuer")
            data["issuers"][identity.did] = identity.model_dump(mode="json")
            return identity

        return await self._doc.update(_insert)

    async def update(self, did: str, mutate: Callable[[IssuerIdentity], None]) -> IssuerIdentity:
        """
        Atomically loads, mutates and stores one issuer.

        Raises:
            NotFoundError: If no issuer exists for `did`.
        """
        def _apply(data: Dict[str, Any]) -> IssuerIdentity:
            raw = data["issuers"].get(did)
            if not raw:
                raise NotFoundError(f"Issuer not found: {did}")
            identity = _validate(IssuerIdentity, raw, "issuer")
            mutate(identity)
            updated = IssuerIdentity.model_validate(identity.model_dump())
            data["issuers"][did] = updated.model_dump(mode="json")
            return updated

        return await self._doc.update(_apply)


class StatusListStorage(Protocol):
    async def get_record(self, issuer_did: str) -> Optional[StatusListRecord]: ...
    async def allocate_index(self, issuer_did: str, credential_id: Optional[str], max_size: int) -> int: ...
    async def init_current_cid(self, issuer_did: str, cid: str) -> str: ...
    async def set_current_cid(self, issuer_did: str, cid: str, expected_cid: Optional[str] = None) -> None: ...
    async def get_mapping(self, credential_id: str) -> Optional[StatusListMapping]: ...
    async def mappings_for_issuer(self, issuer_did: str) -> List[StatusListMapping]: ...


class JsonStatusListStorage:
    """Issuer-side status-list state: version pointers, counters and credential mappings."""

    def __init__(self, path: Optional[str] = None):
        self._doc = JsonDocument(path, lambda: {"versions": {}, "mappings": {}})

    async def get_record(self, issuer_did: str) -> Optional[StatusListRecord]:
        data = await self._doc.read()
        raw = data["versions"].get(issuer_did)
        return _validate(StatusListRecord, raw, "status list") if raw else None

    async def allocate_index(self, issuer_did: str, credential_id: Optional[str], max_size: int) -> int:
        """
        Hands out the next unused bit index and persists the advanced counter.

        A credential id that already has a mapping for this issuer gets its
        existing index back.

        Raises:
            StatusListFullError: When every index has been allocated.
        """
        def _allocate(data: Dict[str, Any]) -> int:
            if credential_id and credential_id in data["mappings"]:
                existing = _validate(StatusListMapping, data["mappings"][credential_id], "mapping")
                if existing.issuer_did == issuer_did:
                    return existing.index

            raw = data["versions"].get(issuer_did)
            record = _validate(StatusListRecord, raw, "status list") if raw else StatusListRecord(issuer_did=issuer_did)
            index = record.next_index
            if index >= max_size:
                raise StatusListFullError(
                    f"Status List full for issuer {issuer_did}. Maximum {max_size} credentials per list."
                )
            record.next_index = index + 1
            record.updated_at = utcnow()
            data["versions"][issuer_did] = record.model_dump(mode="json")

            if credential_id:
                mapping = StatusListMapping(
                    credential_id=credential_id,
                    issuer_did=issuer_did,
                    index=index,
                    status_list_cid=record.current_cid,
                    created_at=utcnow(),
                )
                data["mappings"][credential_id] = mapping.model_dump(mode="json")
            return index

        return await self._doc.update(_allocate)

    async def init_current_cid(self, issuer_did: str, cid: str) -> str:
        """Sets the first snapshot pointer unless one exists; returns the stored pointer."""
        def _init(data: Dict[str, Any]) -> str:
            raw = data["versions"].get(issuer_did)
            record = _validate(StatusListRecord, raw, "status list") if raw else StatusListRecord(issuer_did=issuer_did)
            if record.current_cid:
                return record.current_cid
            record.current_cid = cid
            record.updated_at = utcnow()
            data["versions"][issuer_did] = record.model_dump(mode="json")
            return cid

        return await self._doc.update(_init)

    async def set_current_cid(self, issuer_did: str, cid: str, expected_cid: Optional[str] = None) -> None:
        """
        Moves the snapshot pointer. With `expected_cid` the move only happens if
        the pointer still holds that value.

        Raises:
            StatusListConflictError: The pointer no longer matches `expected_cid`.
        """
        def _set(data: Dict[str, Any]) -> None:
            raw = data["versions"].get(issuer_did)
            record = _validate(StatusListRecord, raw, "status list") if raw else StatusListRecord(issuer_did=issuer_did)
            if expected_cid is not None and record.current_cid != expected_cid:
                raise StatusListConflictError(
                    f"Status list for {issuer_did} moved to {record.current_cid}, expected {expected_cid}"
                )
            record.current_cid = cid
            record.updated_at = utcnow()
            data["versions"][issuer_did] = record.model_dump(mode="json")

        await self._doc.update(_set)

    async def get_mapping(self, credential_id: str) -> Optional[StatusListMapping]:
        data = await self._doc.read()
        raw = data["mappings"].get(credential_id)
        return _validate(StatusListMapping, raw, "mapping") if raw else None

    async def mappings_for_issuer(self, issuer_did: str) -> List[StatusListMapping]:
        data = await self._doc.read()
        mappings = [_validate(StatusListMapping, raw, "mapping") for raw in data["mappings"].values()]
        return sorted((m for m in mappings if m.issuer_did == issuer_did), key=lambda m: m.index)


class DteIndexStorage(Protocol):
    async def upsert_many(self, records: List[DteIndexRecord]) -> int: ...
    async def list_by_product_id(self, product_id: str, limit: int = DTE_INDEX_DEFAULT_LIMIT) -> List[DteIndexRecord]: ...


def sort_newest_first(records: List[DteIndexRecord]) -> List[DteIndexRecord]:
    """eventTime descending, undated records last, createdAt as tie-break."""
    dated = [r for r in records if r.eventTime]
    undated = [r for r in records if not r.eventTime]
    dated.sort(key=lambda r: (r.eventTime, r.createdAt or ""), reverse=True)
    undated.sort(key=lambda r: r.createdAt or "", reverse=True)
    return dated + undated


class JsonDteIndexStorage:
    """Discovery index of published traceability events, keyed by record key."""

    def __init__(self, path: Optional[str] = None):
        self._doc = JsonDocument(path, lambda: {"records": {}})

    async def upsert_many(self, records: List[DteIndexRecord]) -> int:
        """Inserts or merges records; re-indexing keeps the first createdAt. Returns the count written."""
        if not records:
            return 0
        now = utcnow().isoformat()

        def _upsert(data: Dict[str, Any]) -> int:
            stored = data["records"]
            for incoming in records:
                normalized = incoming.model_copy(update={"createdAt": incoming.createdAt or now})
                existing = stored.get(normalized.key)
                if existing:
                    merged = {**existing, **normalized.model_dump(mode="json", exclude_none=True)}
                    merged["createdAt"] = existing.get("createdAt") or normalized.createdAt
                    stored[normalized.key] = merged
                else:
                    stored[normalized.key] = normalized.model_dump(mode="json")
            return len(records)

        return await self._doc.update(_upsert)

    async def list_by_product_id(self, product_id: str, limit: int = DTE_INDEX_DEFAULT_LIMIT) -> List[DteIndexRecord]:
        product_id = str(product_id or "").strip()
        if not product_id:
            return []
        data = await self._doc.read()
        matches = [
            _validate(DteIndexRecord, raw, "DTE index")
            for raw in data["records"].values()
            if raw.get("productId") == product_id
        ]
        return sort_newest_first(matches)[:max(0, int(limit))]


@dataclass
class StorageBackends:
    issuers: IssuerStorage
    status_lists: StatusListStorage
    dte_index: DteIndexStorage


def create_storage_backends(settings: Settings) -> StorageBackends:
    """
    Selects storage for the configured backend.

    Raises:
        ConfigurationMissingError: For an unknown backend, or for a
            process-local backend when `multi_instance` is set.
    """
    backend = settings.storage_backend
    if backend not in STORAGE_BACKENDS:
        raise ConfigurationMissingError(
            f"Unknown STORAGE_BACKEND '{backend}'. Expected one of: {', '.join(STORAGE_BACKENDS)}."
        )
    if settings.multi_instance:
        raise ConfigurationMissingError(
            f"STORAGE_BACKEND '{backend}' is process-local and cannot provide cross-instance atomicity; "
            "multi-instance deployments need a shared transactional store."
        )

    if backend == "memory":
        logger.info("Using in-memory storage (state is lost on restart)")
        return StorageBackends(JsonIssuerStorage(), JsonStatusListStorage(), JsonDteIndexStorage())

    logger.warning(f"Using JSON file storage in {settings.data_dir}; suitable for single-instance deployments only")
    return StorageBackends(
        issuers=JsonIssuerStorage(settings.data_file("issuers.json")),
        status_lists=JsonStatusListStorage(settings.data_file("status-lists.json")),
        dte_index=JsonDteIndexStorage(settings.data_file("dte-index.json")),
    )
