"""Persistent storage for per-key rate-limit state.

State is kept in a flat key-value store with keys namespaced per
credential id. Only two shapes are persisted:

- bucket:<id>  -> {"tokens": float, "last_refill": ms}
- daily:<id>   -> {"count": int, "reset_at": ms}

Missing or corrupt records load as None so callers fall back to tier
defaults. Every operation is best-effort: backend failures are logged and
never raised.
"""

import json
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import platformdirs

from ..types.quota import DailyUsage, TokenBucketState

logger = logging.getLogger(__name__)

APP_NAME = "scan-extract"
APP_AUTHOR = "scan-extract"

BUCKET_PREFIX = "bucket:"
DAILY_PREFIX = "daily:"


def get_state_dir() -> Path:
    """Get the platform-specific data directory."""
    return Path(platformdirs.user_data_dir(APP_NAME, APP_AUTHOR))


class KeyValueBackend(ABC):
    """Minimal key-value store holding JSON-compatible values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if absent."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a value if present."""


class MemoryBackend(KeyValueBackend):
    """In-process backend. State is lost when the process exits."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        """All stored keys."""
        return list(self._data)


class JsonFileBackend(KeyValueBackend):
    """Backend persisting all values to a single JSON file.

    The file is re-read before every access so several processes can share
    it. Writes are last-writer-wins.
    """

    def __init__(self, path: Optional[Path] = None):
        """Initialize the backend.

        Args:
            path: Path to the JSON file. Uses the platform data dir if None.
        """
        self._path = path or get_state_dir() / "quota_state.json"
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        """Path of the backing file."""
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            # Next write replaces the damaged file
            logger.warning(f"Quota state file {self._path} is corrupt, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = Path(f.name)
            json.dump(data, f, indent=2)
        try:
            tmp_path.replace(self._path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


class KeyQuotaStore:
    """Loads and saves token-bucket and daily-usage state per credential."""

    def __init__(self, backend: Optional[KeyValueBackend] = None):
        """Initialize the store.

        Args:
            backend: Key-value backend. Defaults to an in-memory backend.
        """
        self._backend = backend or MemoryBackend()

    @property
    def backend(self) -> KeyValueBackend:
        """The underlying key-value backend."""
        return self._backend

    def load_bucket(self, key_id: str) -> Optional[tuple[float, float]]:
        """Load persisted (tokens, last_refill_ms) for a key.

        Returns:
            The stored pair, or None when absent or malformed.
        """
        raw = self._safe_get(f"{BUCKET_PREFIX}{key_id}")
        if not isinstance(raw, dict):
            return None

        tokens = raw.get("tokens")
        last_refill = raw.get("last_refill")
        if not _is_number(tokens) or not _is_number(last_refill):
            logger.debug(f"Ignoring malformed bucket record for {key_id}")
            return None

        return float(tokens), float(last_refill)

    def save_bucket(self, key_id: str, bucket: TokenBucketState) -> None:
        """Persist a bucket's tokens and refill timestamp."""
        self._safe_set(
            f"{BUCKET_PREFIX}{key_id}",
            {"tokens": bucket.tokens, "last_refill": bucket.last_refill_ms},
        )

    def load_daily(self, key_id: str) -> Optional[DailyUsage]:
        """Load persisted daily usage for a key.

        Returns:
            The stored usage, or None when absent or malformed.
        """
        raw = self._safe_get(f"{DAILY_PREFIX}{key_id}")
        if not isinstance(raw, dict):
            return None

        count = raw.get("count")
        reset_at = raw.get("reset_at")
        if not isinstance(count, int) or isinstance(count, bool) or not _is_number(reset_at):
            logger.debug(f"Ignoring malformed daily record for {key_id}")
            return None

        return DailyUsage(count=max(0, count), reset_at_ms=float(reset_at))

    def save_daily(self, key_id: str, usage: DailyUsage) -> None:
        """Persist a key's daily usage."""
        self._safe_set(
            f"{DAILY_PREFIX}{key_id}",
            {"count": usage.count, "reset_at": usage.reset_at_ms},
        )

    def clear(self, key_id: str) -> None:
        """Delete both records for a key."""
        for key in (f"{BUCKET_PREFIX}{key_id}", f"{DAILY_PREFIX}{key_id}"):
            try:
                self._backend.delete(key)
            except Exception as e:
                logger.warning(f"Failed to delete quota record {key}: {e}")

    def _safe_get(self, key: str) -> Optional[Any]:
        try:
            return self._backend.get(key)
        except Exception as e:
            logger.warning(f"Failed to load quota record {key}: {e}")
            return None

    def _safe_set(self, key: str, value: Any) -> None:
        try:
            self._backend.set(key, value)
        except Exception as e:
            logger.warning(f"Failed to save quota record {key}: {e}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
