"""Content-addressed blob store interface and local implementations."""

import asyncio
import hashlib
import logging
import os
from typing import Dict, Optional, Protocol

from .errors import MalformedInputError, NotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

CID_PREFIX = "sha256-"


class BlobStore(Protocol):
    async def put(self, data: bytes, name: Optional[str] = None) -> str: ...
    async def get(self, cid: str) -> bytes: ...


def compute_cid(data: bytes) -> str:
    return f"{CID_PREFIX}{hashlib.sha256(data).hexdigest()}"


def gateway_url(base_url: Optional[str], cid: str) -> Optional[str]:
    """`https://gw.example/ipfs/<cid>`, or None without a gateway."""
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/ipfs/{cid}"


def _check_cid(cid: str) -> str:
    cid = str(cid or "").strip()
    digest = cid[len(CID_PREFIX):]
    if not cid.startswith(CID_PREFIX) or len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise MalformedInputError(f"Invalid content address: '{cid}'")
    return cid


class InMemoryBlobStore:
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def put(self, data: bytes, name: Optional[str] = None) -> str:
        cid = compute_cid(data)
        self._blobs[cid] = bytes(data)
        logger.debug(f"Stored blob {cid} ({len(data)} bytes, name={name})")
        return cid

    async def get(self, cid: str) -> bytes:
        cid = _check_cid(cid)
        if cid not in self._blobs:
            raise NotFoundError(f"Blob not found: {cid}")
        return self._blobs[cid]


class FileBlobStore:
    """One file per blob under `root`; writes are atomic and idempotent."""

    def __init__(self, root: str):
        self.root = root

    def _path(self, cid: str) -> str:
        return os.path.join(self.root, _check_cid(cid))

    def _write(self, cid: str, data: bytes) -> None:
        path = self._path(cid)
        if os.path.exists(path):
            return
        os.makedirs(self.root, exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def _read(self, cid: str) -> bytes:
        with open(self._path(cid), "rb") as f:
            return f.read()

    async def put(self, data: bytes, name: Optional[str] = None) -> str:
        cid = compute_cid(data)
        try:
            await asyncio.to_thread(self._write, cid, bytes(data))
        except OSError as e:
            raise StorageUnavailableError(f"Failed to store blob {cid}: {e}")
        logger.debug(f"Stored blob {cid} ({len(data)} bytes, name={name})")
        return cid

    async def get(self, cid: str) -> bytes:
        try:
            return await asyncio.to_thread(self._read, cid)
        except FileNotFoundError:
            raise NotFoundError(f"Blob not found: {cid}")
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read blob {cid}: {e}")
