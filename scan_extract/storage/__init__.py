"""Persistence for credentials and per-key quota state."""

from .credential_store import CredentialError, CredentialStore, generate_key_id
from .quota_store import (
    JsonFileBackend,
    KeyQuotaStore,
    KeyValueBackend,
    MemoryBackend,
    get_state_dir,
)

__all__ = [
    "CredentialStore",
    "CredentialError",
    "generate_key_id",
    "KeyQuotaStore",
    "KeyValueBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "get_state_dir",
]
