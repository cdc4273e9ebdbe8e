"""Type definitions and Pydantic models."""

from .credentials import (
    TIER_LIMITS,
    ApiTier,
    Credential,
    TierLimits,
    get_tier_limits,
    mask_secret,
)
from .documents import (
    BatchDocument,
    ExtractedDocument,
    ExtractionMeta,
    ExtractionResult,
    Individual,
    PagePayload,
    ResultMetadata,
    VoteItem,
    WorkItem,
    clamp_confidence,
)
from .quota import DailyUsage, TokenBucketState
from .progress import (
    KeyStatus,
    ProcessingStatus,
    ProgressSnapshot,
    StatusState,
)

__all__ = [
    # Credentials
    "ApiTier",
    "Credential",
    "TierLimits",
    "TIER_LIMITS",
    "get_tier_limits",
    "mask_secret",
    # Documents
    "PagePayload",
    "WorkItem",
    "VoteItem",
    "Individual",
    "ExtractionMeta",
    "ExtractedDocument",
    "BatchDocument",
    "ResultMetadata",
    "ExtractionResult",
    "clamp_confidence",
    # Quota
    "TokenBucketState",
    "DailyUsage",
    # Progress
    "StatusState",
    "ProcessingStatus",
    "KeyStatus",
    "ProgressSnapshot",
]
