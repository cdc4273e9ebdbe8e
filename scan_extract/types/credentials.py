"""Credential and tier models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ApiTier(str, Enum):
    """Named quota profiles offered by the provider."""

    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


@dataclass(frozen=True)
class TierLimits:
    """Capacity limits for a tier."""

    rpm: int  # Requests per minute, also the bucket capacity
    rpd: Optional[int]  # Requests per day, None = unbounded


TIER_LIMITS: dict[str, TierLimits] = {
    ApiTier.FREE.value: TierLimits(rpm=10, rpd=250),
    ApiTier.TIER1.value: TierLimits(rpm=1000, rpd=10_000),
    ApiTier.TIER2.value: TierLimits(rpm=2000, rpd=None),
    ApiTier.TIER3.value: TierLimits(rpm=4000, rpd=None),
}


def get_tier_limits(tier: str) -> TierLimits:
    """Get the limits for a tier name."""
    if tier not in TIER_LIMITS:
        raise ValueError(f"Unknown tier: {tier}. Available: {list(TIER_LIMITS)}")
    return TIER_LIMITS[tier]


def mask_secret(secret: str) -> str:
    """Mask a secret for display, keeping the first 8 and last 4 characters."""
    if len(secret) <= 12:
        return secret
    return f"{secret[:8]}...{secret[-4:]}"


class Credential(BaseModel):
    """An API key with its own rate-limit domain."""

    id: str = Field(description="Stable identifier, used to namespace quota state")
    secret: str = Field(description="API key presented to the provider")
    tier: ApiTier = Field(default=ApiTier.FREE)
    label: Optional[str] = Field(default=None)
    added_at: datetime = Field(default_factory=datetime.now)

    @property
    def limits(self) -> TierLimits:
        """Limits derived from the credential's tier."""
        return TIER_LIMITS[self.tier.value]

    @property
    def display_name(self) -> str:
        """Label if set, otherwise the masked secret."""
        return self.label or mask_secret(self.secret)
