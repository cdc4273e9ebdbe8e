"""Configuration management for the scan extraction tool.

Loads configuration from environment variables with .env file support.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file from project root
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Daily quotas reset at midnight in the provider's zone, not the caller's
QUOTA_RESET_TIMEZONE = "America/Los_Angeles"

# Returned by estimated_wait_ms() when no key has daily quota left
WAIT_FALLBACK_MS = 60_000


@dataclass
class ExtractConfig:
    """Provider and environment configuration."""

    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    api_keys: list[str] = field(default_factory=list)  # Secrets supplied via env
    default_tier: str = "free"
    request_timeout: float = 120.0
    debug: bool = False
    state_dir: Optional[Path] = None  # Overrides the platform data dir

    @property
    def generate_url(self) -> str:
        """generateContent endpoint for the configured model."""
        return f"{self.api_base}/models/{self.model}:generateContent"

    def validate(self) -> list[str]:
        """Validate configuration fields.

        Returns:
            List of validation error messages, empty if valid.
        """
        from ..types.credentials import TIER_LIMITS

        errors = []
        if not self.model:
            errors.append("SCAN_EXTRACT_MODEL must not be empty")
        if not self.api_base.startswith(("http://", "https://")):
            errors.append("SCAN_EXTRACT_API_BASE must be an http(s) URL")
        if self.default_tier not in TIER_LIMITS:
            errors.append(
                f"SCAN_EXTRACT_TIER must be one of: {', '.join(TIER_LIMITS)}"
            )
        if self.request_timeout <= 0:
            errors.append("SCAN_EXTRACT_REQUEST_TIMEOUT must be positive")
        return errors


@dataclass
class DispatchConfig:
    """Tunables for batch planning, key acquisition and retry."""

    # Batch planning
    max_docs_per_batch: int = 10
    request_overhead_tokens: int = 2000
    per_page_tokens: int = 560  # Medium media resolution
    per_doc_response_tokens: int = 800
    token_budget_per_request: int = 60_000

    # Quality gate for documents returned by a batch call
    batch_quality_threshold: int = 70

    # Per-item attempts across key rotation
    max_attempts: int = 3

    # Key acquisition
    key_acquire_attempts: int = 10
    max_tolerable_wait_ms: int = 120_000
    wait_poll_cap_ms: int = 5000

    # Retry policy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


def get_config() -> ExtractConfig:
    """Load configuration from environment variables.

    Returns:
        ExtractConfig instance populated from environment.
    """
    keys_env = os.environ.get("SCAN_EXTRACT_API_KEYS", "")
    api_keys = [k.strip() for k in keys_env.split(",") if k.strip()]

    state_dir = os.environ.get("SCAN_EXTRACT_STATE_DIR")

    return ExtractConfig(
        model=os.environ.get("SCAN_EXTRACT_MODEL", DEFAULT_MODEL),
        api_base=os.environ.get("SCAN_EXTRACT_API_BASE", DEFAULT_API_BASE).rstrip("/"),
        api_keys=api_keys,
        default_tier=os.environ.get("SCAN_EXTRACT_TIER", "free"),
        request_timeout=float(os.environ.get("SCAN_EXTRACT_REQUEST_TIMEOUT", "120")),
        debug=os.environ.get("SCAN_EXTRACT_DEBUG", "").lower() == "true",
        state_dir=Path(state_dir) if state_dir else None,
    )
