"""Read/write interface to the passport ledger's subject-identifier index."""

import logging
from typing import Dict, Optional, Protocol

from .errors import MalformedInputError
from .resolution import sha256_hex32_utf8

logger = logging.getLogger(__name__)


class PassportLedger(Protocol):
    async def find_token_by_subject_hash(self, subject_hash: str) -> Optional[str]: ...
    async def get_passport_issuer(self, token_id: str) -> Optional[str]: ...


class InMemoryPassportLedger:
    """
    Process-local ledger used for development and tests.

    Passports are indexed by `sha256_hex32_utf8(canonical_subject_id)`, the
    same key a contract-backed ledger uses. The issuer may be a DID or an
    account address.
    """

    def __init__(self):
        self._tokens_by_hash: Dict[str, str] = {}
        self._issuers: Dict[str, str] = {}
        self._next_token = 1

    def register_passport(self, canonical_subject_id: str, issuer: str) -> str:
        canonical_subject_id = str(canonical_subject_id or "").strip()
        if not canonical_subject_id or not str(issuer or "").strip():
            raise MalformedInputError("Passport registration needs a canonical subject id and an issuer.")
        subject_hash = sha256_hex32_utf8(canonical_subject_id)
        if subject_hash in self._tokens_by_hash:
            return self._tokens_by_hash[subject_hash]
        token_id = str(self._next_token)
        self._next_token += 1
        self._tokens_by_hash[subject_hash] = token_id
        self._issuers[token_id] = str(issuer).strip()
        logger.info(f"Registered passport token {token_id} for subject {canonical_subject_id}")
        return token_id

    async def find_token_by_subject_hash(self, subject_hash: str) -> Optional[str]:
        return self._tokens_by_hash.get(str(subject_hash).lower())

    async def get_passport_issuer(self, token_id: str) -> Optional[str]:
        return self._issuers.get(str(token_id))
