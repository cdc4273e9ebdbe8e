"""Persistent registry of API credentials.

Stores the caller's keys as a JSON list in the platform config directory.
"""

import json
import logging
import random
import string
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import platformdirs
from pydantic import ValidationError

from ..core.errors import ScanExtractError
from ..types.credentials import ApiTier, Credential
from .quota_store import APP_AUTHOR, APP_NAME

if TYPE_CHECKING:
    from ..orchestration.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SECRET_PREFIX = "AIza"


class CredentialError(ScanExtractError):
    """A credential could not be added or changed."""


def get_credentials_path() -> Path:
    """Get the path to the credentials file."""
    return Path(platformdirs.user_config_dir(APP_NAME, APP_AUTHOR)) / "credentials.json"


def generate_key_id() -> str:
    """Generate a unique credential id."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"key_{int(time.time() * 1000)}_{suffix}"


class CredentialStore:
    """Persistent credential list using a JSON file."""

    def __init__(self, path: Optional[Path] = None):
        """Initialize the credential store.

        Args:
            path: Path to credentials file. Uses default if None.
        """
        self._path = path or get_credentials_path()
        self._credentials: list[Credential] = []
        self._load()

    def _load(self) -> None:
        """Load credentials from disk."""
        try:
            if self._path.exists():
                with open(self._path, "r") as f:
                    raw = json.load(f)
                self._credentials = [Credential.model_validate(entry) for entry in raw]
                logger.debug(f"Loaded {len(self._credentials)} credentials from {self._path}")
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Failed to load credentials: {e}")
            self._credentials = []

    def _save(self) -> None:
        """Save credentials to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w") as f:
                json.dump([c.model_dump(mode="json") for c in self._credentials], f, indent=2)
            logger.debug(f"Saved credentials to {self._path}")
        except OSError as e:
            logger.warning(f"Failed to save credentials: {e}")

    def list_credentials(self) -> list[Credential]:
        """All registered credentials in insertion order."""
        return list(self._credentials)

    def get(self, key_id: str) -> Optional[Credential]:
        """Look up a credential by id."""
        for credential in self._credentials:
            if credential.id == key_id:
                return credential
        return None

    def add(self, secret: str, tier: str = "free", label: Optional[str] = None) -> Credential:
        """Register a new credential.

        Args:
            secret: The API key.
            tier: Tier name (see TIER_LIMITS).
            label: Optional display label.

        Returns:
            The stored credential.

        Raises:
            CredentialError: If the secret is empty, malformed or a duplicate.
        """
        secret = secret.strip()
        if not secret:
            raise CredentialError("API key must not be empty")
        if not secret.startswith(SECRET_PREFIX):
            raise CredentialError("Invalid API key format")
        if any(c.secret == secret for c in self._credentials):
            raise CredentialError("API key is already registered")

        try:
            api_tier = ApiTier(tier)
        except ValueError:
            raise CredentialError(f"Unknown tier: {tier}")

        credential = Credential(
            id=generate_key_id(),
            secret=secret,
            tier=api_tier,
            label=(label or "").strip() or None,
            added_at=datetime.now(),
        )
        self._credentials.append(credential)
        self._save()
        logger.info(f"Added credential {credential.id} ({credential.display_name})")
        return credential

    def update(
        self,
        key_id: str,
        tier: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Credential:
        """Change a credential's tier or label.

        Raises:
            CredentialError: If the id is unknown or the tier is invalid.
        """
        for index, credential in enumerate(self._credentials):
            if credential.id != key_id:
                continue

            updates: dict[str, object] = {}
            if tier is not None:
                try:
                    updates["tier"] = ApiTier(tier)
                except ValueError:
                    raise CredentialError(f"Unknown tier: {tier}")
            if label is not None:
                updates["label"] = label.strip() or None

            updated = credential.model_copy(update=updates)
            self._credentials[index] = updated
            self._save()
            return updated

        raise CredentialError(f"Unknown credential: {key_id}")

    def remove(self, key_id: str, rate_limiter: Optional["RateLimiter"] = None) -> bool:
        """Remove a credential and, if given a limiter, its quota state.

        Returns:
            True if a credential was removed.
        """
        remaining = [c for c in self._credentials if c.id != key_id]
        if len(remaining) == len(self._credentials):
            return False

        self._credentials = remaining
        self._save()

        if rate_limiter is not None:
            rate_limiter.reconcile(remaining)
            rate_limiter.clear_credential_state(key_id)

        logger.info(f"Removed credential {key_id}")
        return True

    def clear(self, rate_limiter: Optional["RateLimiter"] = None) -> None:
        """Remove every credential."""
        removed = [c.id for c in self._credentials]
        self._credentials = []
        self._save()

        if rate_limiter is not None:
            rate_limiter.reconcile([])
            for key_id in removed:
                rate_limiter.clear_credential_state(key_id)
