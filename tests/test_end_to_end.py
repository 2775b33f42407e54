"""End-to-end flow: register, verify, issue, govern, publish, discover, revoke"""

import pytest

from fides_trust.config import Settings
from fides_trust.engine import build_trust_engine
from fides_trust.errors import (
    ConfigurationMissingError,
    MalformedInputError,
    NotAllowlistedError,
    RevokedError,
    VerificationFailedError,
)
from fides_trust.schemas import IssuerStatus

from conftest import TEST_MASTER_KEY_HEX

GS1_LINK = "https://id.gs1.org/01/09506000134352"
GTIN = "GTIN:09506000134352"


def _events():
    return [{
        "type": ["ObjectEvent"],
        "eventTime": "2024-05-01T10:00:00Z",
        "action": "observe",
        "epcList": [GS1_LINK],
        "inputEPCList": ["urn:product:RAW-COTTON"],
    }]


@pytest.mark.asyncio
async def test_supplier_dte_governed_by_manufacturer_allowlist(engine, did_host, ledger):
    """A supplier DTE is rejected until the manufacturer allowlists the supplier"""
    registry = engine.registry

    manufacturer = await registry.register("example.com", "Acme Manufacturing")
    first_attempt = await registry.verify(manufacturer.did)
    assert first_attempt.status == IssuerStatus.FAILED

    await did_host.host_issuer(registry, manufacturer.did)
    assert (await registry.verify(manufacturer.did)).status == IssuerStatus.VERIFIED

    supplier = await registry.register("supplier.example", "Cotton Supplier")
    await did_host.host_issuer(registry, supplier.did)
    assert (await registry.verify(supplier.did)).status == IssuerStatus.VERIFIED

    maker_signer = await registry.get_signer(manufacturer.did)
    dpp = await engine.credentials.issue({"product": {"identifier": GTIN}}, manufacturer.did, maker_signer)
    assert (await engine.credentials.verify(dpp.jwt)).verified
    ledger.register_passport(GTIN, manufacturer.did)

    supplier_signer = await registry.get_signer(supplier.did)
    dte = await engine.credentials.issue_dte(_events(), supplier.did, supplier_signer)

    with pytest.raises(NotAllowlistedError) as excinfo:
        await engine.publisher.publish(dte.jwt)
    error = excinfo.value
    assert error.supplier_did == supplier.did
    assert error.manufacturer_did == manufacturer.did
    assert error.product_id == GS1_LINK
    assert await engine.dte_index.list_for_product(GS1_LINK) == []

    await registry.add_trusted_supplier(manufacturer.did, supplier.did)
    result = await engine.publisher.publish(dte.jwt, gateway_base_url="https://gw.example")

    assert result.issuer_did == supplier.did
    assert result.credential_id == dte.credential_id
    assert result.records_indexed == 4
    assert result.product_ids == ["urn:product:RAW-COTTON", "RAW-COTTON", GS1_LINK, GTIN]
    assert await engine.blob_store.get(result.cid) == dte.jwt.encode("utf-8")

    discovered = await engine.dte_index.list_by_product_id(GS1_LINK)
    assert len(discovered) == 1
    assert discovered[0].role == "epc"
    assert discovered[0].issuerDid == supplier.did
    assert discovered[0].gatewayUrl == f"https://gw.example/ipfs/{result.cid}"
    assert discovered[0].eventId == f"{dte.credential_id}#event-1"

    again = await engine.publisher.publish(dte.jwt)
    assert again.cid == result.cid
    assert len(await engine.dte_index.list_by_product_id(GS1_LINK)) == 1

    await engine.revoke_credential(supplier.did, dte.credential_id)
    with pytest.raises(RevokedError):
        await engine.publisher.publish(dte.jwt)


@pytest.mark.asyncio
async def test_manufacturer_resolved_from_ledger_account(engine, did_host, ledger, verified_issuer):
    """Passports recorded under an operational account resolve to the issuer DID"""
    manufacturer = await verified_issuer(engine.registry, "example.com", "Acme")
    supplier = await verified_issuer(engine.registry, "supplier.example", "Supplier")
    await engine.registry.add_authorized_account(manufacturer, "0xAAbbCC")
    await engine.registry.add_trusted_supplier(manufacturer, supplier)
    ledger.register_passport(GTIN, "0xaabbcc")

    signer = await engine.registry.get_signer(supplier)
    dte = await engine.credentials.issue_dte(_events(), supplier, signer)

    result = await engine.publisher.publish(dte.jwt)
    assert result.records_indexed == 4


@pytest.mark.asyncio
async def test_publish_rejects_unknown_product(engine, verified_issuer):
    """Products without a passport cannot be governed and are rejected"""
    supplier = await verified_issuer(engine.registry, "supplier.example", "Supplier")
    signer = await engine.registry.get_signer(supplier)
    dte = await engine.credentials.issue_dte(_events(), supplier, signer)

    with pytest.raises(NotAllowlistedError) as excinfo:
        await engine.publisher.publish(dte.jwt)
    assert "no passport issuer found" in excinfo.value.message


@pytest.mark.asyncio
async def test_publish_rejects_invalid_credentials(engine, verified_issuer, ledger):
    """Unverifiable and event-less credentials are not published"""
    manufacturer = await verified_issuer(engine.registry, "example.com", "Acme")
    ledger.register_passport(GTIN, manufacturer)
    signer = await engine.registry.get_signer(manufacturer)

    dte = await engine.credentials.issue_dte(_events(), manufacturer, signer)
    header, payload, signature = dte.jwt.split(".")
    with pytest.raises(VerificationFailedError):
        await engine.publisher.publish(f"{header}.{payload}.{signature[:-4]}AAAA")

    dpp = await engine.credentials.issue("just a string subject", manufacturer, signer)
    with pytest.raises(MalformedInputError):
        await engine.publisher.publish(dpp.jwt)

    with pytest.raises(MalformedInputError):
        await engine.publisher.publish("  ")


@pytest.mark.asyncio
async def test_file_backend_survives_restart(tmp_path, did_host, verified_issuer):
    """Issuers, status lists and blobs persist across engine instances"""
    settings = Settings(
        master_key_hex=TEST_MASTER_KEY_HEX,
        storage_backend="file",
        data_dir=str(tmp_path),
        status_list_base_url="https://fides.example",
    )
    engine = build_trust_engine(settings, transport=did_host.transport())
    did = await verified_issuer(engine.registry, "example.com", "Acme")
    signer = await engine.registry.get_signer(did)
    envelope = await engine.credentials.issue({"product": {"identifier": GTIN}}, did, signer)
    await engine.revoke_credential(did, envelope.credential_id)

    restarted = build_trust_engine(settings, transport=did_host.transport())

    assert (await restarted.registry.get_identity(did)).status == IssuerStatus.VERIFIED
    assert await restarted.status_list.check_status(envelope.credential_id)
    result = await restarted.credentials.verify(envelope.jwt)
    assert "Revoked" in result.error_codes


@pytest.mark.asyncio
async def test_engine_without_status_list(settings, did_host):
    """Disabling the status list removes revocation"""
    engine = build_trust_engine(settings.model_copy(update={"status_list_enabled": False}), transport=did_host.transport())

    assert engine.status_list is None
    with pytest.raises(ConfigurationMissingError):
        await engine.revoke_credential("did:web:example.com", "urn:uuid:1")
