"""Tests for VC-JWT issuance and verification"""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from jwcrypto import jwk, jws

from fides_trust.credentials import CredentialEngine, decode_vc_jwt
from fides_trust.did_utils import b64url_encode
from fides_trust.errors import InvalidKeyFormatError, MalformedInputError, StorageUnavailableError
from fides_trust.schemas import IssueOptions, VerifyOptions

SUBJECT = {"product": {"identifier": "GTIN:09506000134352", "name": "Widget"}}


@pytest_asyncio.fixture
async def issuer(engine, verified_issuer):
    """A verified issuer DID and its signer"""
    did = await verified_issuer(engine.registry, "example.com", "Acme")
    return did, await engine.registry.get_signer(did)


def _resign_header(jwt, header):
    _, payload, signature = jwt.split(".")
    return f"{b64url_encode(json.dumps(header).encode())}.{payload}.{signature}"


@pytest.mark.asyncio
async def test_issue_builds_vc_jwt(engine, issuer):
    """Issued credentials carry the expected header, claims and VC body"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)

    assert envelope.header.alg == "EdDSA"
    assert envelope.header.typ == "JWT"
    assert envelope.header.kid == f"{did}#key-1"

    payload = envelope.payload
    assert payload["iss"] == did
    assert payload["jti"] == payload["vc"]["id"]
    assert payload["jti"].startswith("urn:uuid:")
    assert payload["nbf"] == payload["iat"]
    assert "exp" not in payload

    vc = payload["vc"]
    assert vc["@context"][0] == "https://www.w3.org/ns/credentials/v2"
    assert vc["@context"][-1] == "https://w3id.org/vc/status-list/2021/v1"
    assert vc["type"] == ["VerifiableCredential", "DigitalProductPassport"]
    assert vc["issuer"] == {"type": ["CredentialIssuer"], "id": did, "name": "Acme"}
    assert vc["credentialSubject"] == SUBJECT
    assert vc["credentialSchema"]["type"] == "JsonSchema2023"
    assert vc["credentialStatus"]["type"] == "StatusList2021Entry"
    assert vc["credentialStatus"]["statusListIndex"] == "0"


@pytest.mark.asyncio
async def test_issue_and_verify(engine, issuer):
    """A freshly issued credential verifies"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)

    result = await engine.credentials.verify(envelope.jwt)

    assert result.verified, result.errors
    assert result.issuer == did
    assert result.errors == []
    assert result.issuance_date is not None
    assert result.payload["vc"]["credentialSubject"] == SUBJECT


@pytest.mark.asyncio
async def test_issue_with_expiration(engine, issuer):
    """An expiration date sets exp and validUntil"""
    did, signer = issuer
    expires = datetime.now(timezone.utc) + timedelta(days=30)
    envelope = await engine.credentials.issue(SUBJECT, did, signer, IssueOptions(expiration_date=expires))

    assert envelope.payload["exp"] == int(expires.timestamp())
    assert envelope.payload["vc"]["validUntil"].endswith("Z")
    result = await engine.credentials.verify(envelope.jwt)
    assert result.verified
    assert int(result.expiration_date.timestamp()) == int(expires.timestamp())


@pytest.mark.asyncio
async def test_expired_credential(engine, issuer):
    """Expired credentials fail the temporal check unless it is disabled"""
    did, signer = issuer
    expired = datetime.now(timezone.utc) - timedelta(hours=1)
    envelope = await engine.credentials.issue(SUBJECT, did, signer, IssueOptions(expiration_date=expired))

    result = await engine.credentials.verify(envelope.jwt)
    assert not result.verified
    assert any("expired" in e for e in result.errors)

    relaxed = await engine.credentials.verify(envelope.jwt, VerifyOptions(check_temporal=False))
    assert relaxed.verified


@pytest.mark.asyncio
async def test_tampered_payload_fails_signature(engine, issuer):
    """Changing the payload invalidates the signature"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)
    header, _, signature = envelope.jwt.split(".")
    payload = dict(envelope.payload, jti="urn:uuid:forged")
    forged = f"{header}.{b64url_encode(json.dumps(payload).encode())}.{signature}"

    result = await engine.credentials.verify(forged)

    assert not result.verified
    assert "VerificationFailed" in result.error_codes
    assert any("signature" in e.lower() for e in result.errors)


@pytest.mark.asyncio
async def test_wrong_algorithm_rejected(engine, issuer):
    """Only EdDSA is accepted"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)

    result = await engine.credentials.verify(_resign_header(envelope.jwt, {"alg": "HS256", "typ": "JWT"}))

    assert not result.verified
    assert "Unsupported JWT algorithm: HS256" in result.errors[0]


@pytest.mark.asyncio
async def test_unregistered_issuer(engine):
    """A correctly signed token from an unknown issuer is NotFound"""
    key = jwk.JWK.generate(kty='OKP', crv='Ed25519')
    claims = {"iss": "did:web:unknown.example", "jti": "urn:uuid:1", "vc": {"id": "urn:uuid:1"}}
    token = jws.JWS(json.dumps(claims).encode('utf-8'))
    token.add_signature(key, None, json.dumps({"alg": "EdDSA", "typ": "JWT"}))

    result = await engine.credentials.verify(token.serialize(compact=True))

    assert not result.verified
    assert result.error_codes == ["NotFound"]


@pytest.mark.asyncio
async def test_unverified_issuer(engine):
    """Credentials of a PENDING issuer fail unless verification is not required"""
    identity = await engine.registry.register("pending.example", "Pending")
    signer = await engine.registry.get_signer(identity.did)
    envelope = await engine.credentials.issue(SUBJECT, identity.did, signer)

    result = await engine.credentials.verify(envelope.jwt)
    assert not result.verified
    assert any("not verified" in e for e in result.errors)

    relaxed = await engine.credentials.verify(envelope.jwt, VerifyOptions(require_verified_issuer=False))
    assert relaxed.verified


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.", "!!!.e30.c2ln", "W10.e30.c2ln"])
def test_decode_malformed(token):
    """Tokens that are not three base64url JSON-object segments raise"""
    with pytest.raises(MalformedInputError) as excinfo:
        decode_vc_jwt(token)
    assert excinfo.value.error_code == "MalformedInput"


@pytest.mark.asyncio
async def test_verify_malformed_raises(engine):
    """verify raises only for unparseable tokens"""
    with pytest.raises(MalformedInputError):
        await engine.credentials.verify("not-a-jwt")


@pytest.mark.asyncio
async def test_non_ed25519_signer_rejected(engine, issuer):
    """sr25519 and other key types are refused at issuance"""
    did, signer = issuer
    with pytest.raises(InvalidKeyFormatError) as excinfo:
        await engine.credentials.issue(SUBJECT, did, replace(signer, key_type="sr25519"))
    assert "Unsupported key type" in str(excinfo.value)

    with pytest.raises(InvalidKeyFormatError):
        await engine.credentials.issue(SUBJECT, did, replace(signer, public_key=b"\x00" * 33))


@pytest.mark.asyncio
async def test_signer_issuer_mismatch(engine, issuer):
    """The signer must belong to the issuer DID"""
    _, signer = issuer
    with pytest.raises(MalformedInputError):
        await engine.credentials.issue(SUBJECT, "did:web:other.example", signer)


@pytest.mark.asyncio
async def test_revoked_credential_fails(engine, issuer):
    """Revocation is reflected in verification"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)
    await engine.revoke_credential(did, envelope.credential_id)

    result = await engine.credentials.verify(envelope.jwt)

    assert not result.verified
    assert "Revoked" in result.error_codes


@pytest.mark.asyncio
async def test_status_lookup_failure_fails_closed(engine, issuer):
    """A broken status list makes verification fail with StorageUnavailable"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)

    failing = AsyncMock(side_effect=StorageUnavailableError("blob store offline"))
    with patch.object(engine.status_list, "is_revoked", failing):
        result = await engine.credentials.verify(envelope.jwt)

    assert not result.verified
    assert "StorageUnavailable" in result.error_codes
    failing.assert_awaited_once_with(did, 0)


@pytest.mark.asyncio
async def test_without_status_list(engine, issuer, settings):
    """Without a revocation ledger credentials carry no status and verify with a warning"""
    did, signer = issuer
    credentials = CredentialEngine(engine.registry, settings, status_list=None)
    envelope = await credentials.issue(SUBJECT, did, signer)

    assert "credentialStatus" not in envelope.vc
    result = await credentials.verify(envelope.jwt)
    assert result.verified
    assert any("credentialStatus" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_status_check_skipped_when_ledger_disabled(engine, issuer, settings):
    """A status entry cannot be checked without the ledger; the skip is reported"""
    did, signer = issuer
    envelope = await engine.credentials.issue(SUBJECT, did, signer)
    credentials = CredentialEngine(engine.registry, settings, status_list=None)

    result = await credentials.verify(envelope.jwt)

    assert result.verified
    assert any("skipped" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_issue_dte(engine, issuer):
    """DTE credentials use the traceability type and require events"""
    did, signer = issuer
    events = [{"type": ["ObjectEvent"], "epcList": ["GTIN:09506000134352"]}]
    envelope = await engine.credentials.issue_dte(events, did, signer)

    assert envelope.vc["type"] == ["VerifiableCredential", "DigitalTraceabilityEvent"]
    assert envelope.vc["credentialSubject"] == events

    with pytest.raises(MalformedInputError):
        await engine.credentials.issue_dte([], did, signer)


def _sign_claims(signer, claims, typ="JWT"):
    header = {"alg": "EdDSA", "kid": f"{signer.did}#key-1"}
    if typ is not None:
        header["typ"] = typ
    token = jws.JWS(json.dumps(claims).encode('utf-8'))
    token.add_signature(jwk.JWK(**signer.private_jwk), None, json.dumps(header))
    return token.serialize(compact=True)


def _claims(did, **extra):
    claims = {"iss": did, "jti": "urn:uuid:raw-1", "vc": {"id": "urn:uuid:raw-1", "issuer": did}}
    claims.update(extra)
    return claims


@pytest.mark.asyncio
async def test_not_yet_valid_credential(engine, issuer):
    """A future nbf fails the temporal check"""
    did, signer = issuer
    nbf = int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp())

    result = await engine.credentials.verify(_sign_claims(signer, _claims(did, nbf=nbf)))

    assert not result.verified
    assert "VerificationFailed" in result.error_codes
    assert any("not yet valid" in e for e in result.errors)


@pytest.mark.asyncio
@pytest.mark.parametrize("claim, value", [("exp", 1e300), ("nbf", float("inf")), ("exp", -1e20)])
async def test_out_of_range_numeric_dates_are_malformed(engine, issuer, claim, value):
    """Dates beyond the platform range are reported, not raised"""
    did, signer = issuer

    result = await engine.credentials.verify(_sign_claims(signer, _claims(did, **{claim: value})))

    assert not result.verified
    assert "MalformedInput" in result.error_codes
    assert any(f"Invalid '{claim}' claim" in e for e in result.errors)


@pytest.mark.asyncio
async def test_out_of_range_iat_is_ignored(engine, issuer):
    """An unrepresentable iat leaves the issuance date unset"""
    did, signer = issuer

    result = await engine.credentials.verify(_sign_claims(signer, _claims(did, iat=1e20)))

    assert result.verified, result.errors
    assert result.issuance_date is None


@pytest.mark.asyncio
async def test_infinite_status_index_is_malformed(engine, issuer):
    """A non-finite statusListIndex is a malformed status entry"""
    did, signer = issuer
    status = {"type": "StatusList2021Entry", "statusListIndex": float("inf")}
    claims = _claims(did)
    claims["vc"]["credentialStatus"] = status

    result = await engine.credentials.verify(_sign_claims(signer, claims))

    assert not result.verified
    assert "MalformedInput" in result.error_codes


@pytest.mark.asyncio
async def test_unexpected_typ_header_warns(engine, issuer):
    """A typ other than JWT is reported as a warning; a missing typ is accepted"""
    did, signer = issuer

    odd = await engine.credentials.verify(_sign_claims(signer, _claims(did), typ="vc+ld+json"))
    assert odd.verified, odd.errors
    assert any("Unexpected JWT typ header: vc+ld+json" in w for w in odd.warnings)

    missing = await engine.credentials.verify(_sign_claims(signer, _claims(did), typ=None))
    assert missing.verified, missing.errors
    assert not any("typ" in w for w in missing.warnings)
