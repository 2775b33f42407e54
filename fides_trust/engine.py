# fides_trust/engine.py
"""Construction of the engine's collaborators from `Settings`."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from .blob_store import BlobStore, FileBlobStore, InMemoryBlobStore
from .config import Settings
from .credentials import CredentialEngine
from .dte_index import DteIndex
from .errors import ConfigurationMissingError
from .ledger import InMemoryPassportLedger, PassportLedger
from .publishing import DtePublisher
from .registry import IssuerTrustRegistry
from .resolution import ResolutionIndex
from .status_list import StatusListManager
from .storage import StorageBackends, create_storage_backends

logger = logging.getLogger(__name__)


@dataclass
class TrustEngine:
    """Bundle of wired collaborators; build one per process with `build_trust_engine`."""
    settings: Settings
    storage: StorageBackends
    blob_store: BlobStore
    ledger: PassportLedger
    registry: IssuerTrustRegistry
    status_list: Optional[StatusListManager]
    credentials: CredentialEngine
    resolution: ResolutionIndex
    dte_index: DteIndex
    publisher: DtePublisher

    async def revoke_credential(self, issuer_did: str, credential_id: str) -> str:
        if self.status_list is None:
            raise ConfigurationMissingError("Status list is disabled (STATUS_LIST_ENABLED=false); cannot revoke.")
        return await self.status_list.revoke_credential(issuer_did, credential_id)


def build_trust_engine(
    settings: Settings,
    blob_store: Optional[BlobStore] = None,
    ledger: Optional[PassportLedger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    storage: Optional[StorageBackends] = None,
) -> TrustEngine:
    """
    Wires the registry, revocation ledger, credential engine, resolution index,
    DTE index and publisher.

    Args:
        settings: Engine configuration.
        blob_store: Content store; defaults to files under `<data_dir>/blobs`
            for the file backend and to memory otherwise.
        ledger: Passport ledger; defaults to an in-memory ledger.
        transport: Optional httpx transport used for did:web fetches.
        storage: Pre-built storages; defaults to `create_storage_backends(settings)`.

    Raises:
        ConfigurationMissingError: For an unusable storage configuration.
    """
    storage = storage or create_storage_backends(settings)
    if blob_store is None:
        if settings.storage_backend == "file":
            blob_store = FileBlobStore(os.path.join(settings.data_dir, "blobs"))
        else:
            blob_store = InMemoryBlobStore()
    if ledger is None:
        logger.info("No passport ledger supplied; using an in-memory ledger")
        ledger = InMemoryPassportLedger()

    registry = IssuerTrustRegistry(storage.issuers, settings, transport=transport)
    status_list = None
    if settings.status_list_enabled:
        status_list = StatusListManager(storage.status_lists, blob_store, settings)
    credentials = CredentialEngine(registry, settings, status_list=status_list)
    resolution = ResolutionIndex(ledger, registry)
    dte_index = DteIndex(storage.dte_index)
    publisher = DtePublisher(
        credentials,
        registry,
        resolution,
        dte_index,
        blob_store,
        default_gateway_url=settings.ipfs_gateway_url,
    )
    logger.debug(f"Trust engine built (storage={settings.storage_backend}, status_list={status_list is not None})")
    return TrustEngine(
        settings=settings,
        storage=storage,
        blob_store=blob_store,
        ledger=ledger,
        registry=registry,
        status_list=status_list,
        credentials=credentials,
        resolution=resolution,
        dte_index=dte_index,
        publisher=publisher,
    )
