# fides_trust/config.py
"""Runtime settings read from the environment."""

import os
import logging
import string
from typing import Optional

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_DPP_CONTEXT_URL,
    DEFAULT_DTE_CONTEXT_URL,
    DEFAULT_DPP_SCHEMA_URL,
    DEFAULT_DTE_SCHEMA_URL,
    MASTER_KEY_HEX_LENGTH,
    STATUS_LIST_DEFAULT_SIZE,
)
from .errors import ConfigurationMissingError

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("memory", "file")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationMissingError(f"{name} must be a number, got '{value}'.")


class Settings(BaseModel):
    """Engine configuration. Build with `Settings.from_env()` or directly in tests."""
    master_key_hex: Optional[str] = Field(None, description="64 hex chars; AES-256 key for private seeds.")
    test_mode: bool = False
    storage_backend: str = "file"
    data_dir: str = "./data"
    multi_instance: bool = False

    status_list_enabled: bool = True
    status_list_base_url: str = "http://localhost:3000"
    status_list_size: int = STATUS_LIST_DEFAULT_SIZE
    status_list_cache_ttl_seconds: float = 300.0

    did_fetch_timeout_seconds: float = 10.0
    clock_skew_seconds: int = 60

    dpp_context_url: str = DEFAULT_DPP_CONTEXT_URL
    dte_context_url: str = DEFAULT_DTE_CONTEXT_URL
    dpp_schema_url: str = DEFAULT_DPP_SCHEMA_URL
    dte_schema_url: str = DEFAULT_DTE_SCHEMA_URL
    dpp_schema_sha256: Optional[str] = None
    dte_schema_sha256: Optional[str] = None

    ipfs_gateway_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Reads settings from environment variables.

        Raises:
            ConfigurationMissingError: If a numeric variable cannot be parsed.
        """
        test_mode = os.getenv("FIDES_MODE") == "test" or os.getenv("TEST_MODE") == "1"
        settings = cls(
            master_key_hex=os.getenv("DIDWEB_MASTER_KEY_HEX") or None,
            test_mode=test_mode,
            storage_backend=(os.getenv("STORAGE_BACKEND") or "file").strip().lower(),
            data_dir=os.getenv("FIDES_DATA_DIR") or os.getenv("DATA_DIR") or "./data",
            multi_instance=_env_bool("FIDES_MULTI_INSTANCE"),
            status_list_enabled=_env_bool("STATUS_LIST_ENABLED", True),
            status_list_base_url=os.getenv("STATUS_LIST_BASE_URL") or os.getenv("RENDER_BASE_URL") or "http://localhost:3000",
            status_list_cache_ttl_seconds=_env_float("STATUS_LIST_CACHE_TTL_SECONDS", 300.0),
            did_fetch_timeout_seconds=_env_float("DID_FETCH_TIMEOUT_SECONDS", 10.0),
            clock_skew_seconds=int(_env_float("CLOCK_SKEW_SECONDS", 60)),
            dpp_context_url=os.getenv("UNTP_DPP_CONTEXT_URL") or DEFAULT_DPP_CONTEXT_URL,
            dte_context_url=os.getenv("UNTP_DTE_CONTEXT_URL") or DEFAULT_DTE_CONTEXT_URL,
            dpp_schema_url=os.getenv("UNTP_SCHEMA_URL") or DEFAULT_DPP_SCHEMA_URL,
            dte_schema_url=os.getenv("UNTP_DTE_SCHEMA_URL") or DEFAULT_DTE_SCHEMA_URL,
            dpp_schema_sha256=os.getenv("UNTP_SCHEMA_SHA256") or None,
            dte_schema_sha256=os.getenv("UNTP_DTE_SCHEMA_SHA256") or None,
            ipfs_gateway_url=os.getenv("IPFS_GATEWAY_URL") or None,
        )
        logger.debug(f"Loaded settings: backend={settings.storage_backend} test_mode={settings.test_mode}")
        return settings

    def master_key(self) -> bytes:
        """
        Returns the decoded 32-byte master key.

        Raises:
            ConfigurationMissingError: If the key is unset or not 64 hex characters.
        """
        value = (self.master_key_hex or "").strip()
        if not value:
            raise ConfigurationMissingError("DIDWEB_MASTER_KEY_HEX not set. Cannot encrypt or decrypt private keys.")
        if len(value) != MASTER_KEY_HEX_LENGTH or any(c not in string.hexdigits for c in value):
            raise ConfigurationMissingError("DIDWEB_MASTER_KEY_HEX must be 64 hex characters (32 bytes).")
        return bytes.fromhex(value)

    def data_file(self, name: str) -> str:
        """Path of a JSON data file; test mode uses a `.test.json` variant."""
        if self.test_mode and name.endswith(".json"):
            name = name[: -len(".json")] + ".test.json"
        return os.path.join(self.data_dir, name)
