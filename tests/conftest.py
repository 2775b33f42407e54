"""Configuration for pytest"""

import json
import logging

import httpx
import pytest

from fides_trust.blob_store import InMemoryBlobStore
from fides_trust.config import Settings
from fides_trust.did_utils import accounts_service_endpoint, did_web_to_url
from fides_trust.engine import build_trust_engine
from fides_trust.ledger import InMemoryPassportLedger
from fides_trust.registry import IssuerTrustRegistry
from fides_trust.status_list import StatusListManager
from fides_trust.storage import JsonIssuerStorage, JsonStatusListStorage

TEST_MASTER_KEY_HEX = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"


@pytest.fixture(autouse=True)
def setup_logging():
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(levelname)s - %(name)s - %(message)s'
    )

    logging.getLogger('jwcrypto').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    return logging.getLogger()


class DidWebHost:
    """Stand-in for the web servers hosting did.json files, served through httpx.MockTransport."""

    def __init__(self):
        self.documents = {}
        self.requests = []

    def publish(self, url, body, status_code=200, content_type="application/did+json"):
        self.documents[url] = (status_code, body, content_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        entry = self.documents.get(url)
        if entry is None:
            return httpx.Response(404, text="Not Found")
        status_code, body, content_type = entry
        content = json.dumps(body).encode() if isinstance(body, (dict, list)) else str(body).encode()
        return httpx.Response(status_code, content=content, headers={"content-type": content_type})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def host_issuer(self, registry, did):
        """Publishes the issuer's generated did.json and accounts document."""
        self.publish(did_web_to_url(did), await registry.generate_did_document(did))
        self.publish(
            accounts_service_endpoint(did),
            await registry.generate_authorized_accounts_document(did),
            content_type="application/json",
        )


@pytest.fixture
def settings(tmp_path):
    """Memory-backed settings with a fixed master key"""
    return Settings(
        master_key_hex=TEST_MASTER_KEY_HEX,
        storage_backend="memory",
        data_dir=str(tmp_path),
        status_list_base_url="https://fides.example",
    )


@pytest.fixture
def did_host():
    return DidWebHost()


@pytest.fixture
def registry(settings, did_host):
    return IssuerTrustRegistry(JsonIssuerStorage(), settings, transport=did_host.transport())


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def ledger():
    return InMemoryPassportLedger()


@pytest.fixture
def status_list(settings, blob_store):
    return StatusListManager(JsonStatusListStorage(), blob_store, settings)


@pytest.fixture
def engine(settings, blob_store, ledger, did_host):
    return build_trust_engine(settings, blob_store=blob_store, ledger=ledger, transport=did_host.transport())


@pytest.fixture
def verified_issuer(did_host):
    """Factory: registers a domain, hosts its documents and verifies it"""
    async def _create(registry, domain, organization_name="Test Org"):
        identity = await registry.register(domain, organization_name)
        await did_host.host_issuer(registry, identity.did)
        result = await registry.verify(identity.did)
        assert result.success, result.error
        return identity.did
    return _create
