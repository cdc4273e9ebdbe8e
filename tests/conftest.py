"""Shared fixtures: a controllable clock, credentials, work items and documents."""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from scan_extract.orchestration.rate_limiter import RateLimiter
from scan_extract.storage.quota_store import KeyQuotaStore, MemoryBackend
from scan_extract.types import (
    ApiTier,
    BatchDocument,
    Credential,
    ExtractedDocument,
    PagePayload,
    WorkItem,
)

# Noon in the quota reset zone, well away from the daily reset
START_MS = datetime(2024, 6, 1, 12, 0, tzinfo=ZoneInfo("America/Los_Angeles")).timestamp() * 1000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: float = START_MS):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quota_store():
    """Quota store over an in-memory backend."""
    return KeyQuotaStore(MemoryBackend())


@pytest.fixture
def make_credential():
    """Factory for credentials with predictable ids."""

    def _make(key_id: str = "k1", tier: ApiTier = ApiTier.FREE, label=None) -> Credential:
        return Credential(id=key_id, secret=f"AIza-{key_id}", tier=tier, label=label)

    return _make


@pytest.fixture
def make_limiter(clock, quota_store):
    """Factory for limiters sharing the test clock and store."""

    def _make(credentials: list[Credential]) -> RateLimiter:
        return RateLimiter(credentials, quota_store=quota_store, clock=clock)

    return _make


@pytest.fixture
def make_items():
    """Factory for single-page work items item_0..item_n-1."""

    def _make(count: int, pages: int = 1) -> list[WorkItem]:
        return [
            WorkItem(
                id=f"item_{i}",
                source_label=f"scan_{i}.png",
                pages=[PagePayload.from_bytes(b"png", "image/png") for _ in range(pages)],
            )
            for i in range(count)
        ]

    return _make


def document_payload(
    property_number: str = "101",
    confidence: object = 95,
    requires_review: bool = False,
    name: str = "Jane Doe",
) -> dict:
    """Raw document dict as the model would return it."""
    return {
        "document_title": "Written Resolution",
        "property_number": property_number,
        "individual": {"name": name, "is_lessee": False},
        "votes": [{"agenda": "Budget", "options": ["Yes", "No"], "voted": ["Yes"]}],
        "_meta": {
            "confidence": confidence,
            "requires_review": requires_review,
            "extraction_notes": [],
        },
    }


@pytest.fixture
def make_document():
    """Factory for parsed single-document responses."""

    def _make(property_number: str = "101", confidence: int = 95, **kwargs) -> ExtractedDocument:
        return ExtractedDocument.model_validate(
            document_payload(property_number, confidence, **kwargs)
        )

    return _make


@pytest.fixture
def make_batch_document():
    """Factory for parsed batch-response documents."""

    def _make(source_index: int, property_number: str = "101", confidence: int = 95) -> BatchDocument:
        payload = document_payload(property_number, confidence)
        payload["source_index"] = source_index
        return BatchDocument.model_validate(payload)

    return _make
