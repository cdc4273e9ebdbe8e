"""Processing status and progress snapshot models."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from .documents import ExtractionResult


class StatusState(str, Enum):
    """Lifecycle states of a work item."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ProcessingStatus:
    """Tagged status of one work item.

    Only DONE carries a result and only ERROR carries a message. Use the
    constructors rather than building instances directly.
    """

    state: StatusState
    result: Optional[ExtractionResult] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "ProcessingStatus":
        return cls(StatusState.PENDING)

    @classmethod
    def processing(cls) -> "ProcessingStatus":
        return cls(StatusState.PROCESSING)

    @classmethod
    def done(cls, result: ExtractionResult) -> "ProcessingStatus":
        return cls(StatusState.DONE, result=result)

    @classmethod
    def failed(cls, message: str) -> "ProcessingStatus":
        return cls(StatusState.ERROR, error=message)

    @property
    def is_terminal(self) -> bool:
        """True for DONE and ERROR."""
        return self.state in (StatusState.DONE, StatusState.ERROR)


@dataclass(frozen=True)
class KeyStatus:
    """Point-in-time view of one credential's quota."""

    key_id: str
    label: Optional[str]
    tier: str
    available_tokens: int
    max_tokens: int
    daily_used: int
    daily_limit: Optional[int]
    has_any_token: bool
    is_exhausted: bool

    @property
    def is_available(self) -> bool:
        """Can serve a request right now."""
        return self.has_any_token and not self.is_exhausted


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable progress report handed to the caller.

    per_item_status is a read-only view over a private copy, so it never
    changes after emission.
    """

    total: int
    completed_count: int
    failed_count: int
    current_batch_index: int
    total_batches: int
    per_item_status: Mapping[str, ProcessingStatus] = field(
        default_factory=lambda: MappingProxyType({})
    )
    per_key_status: tuple[KeyStatus, ...] = ()
    is_waiting_for_key: bool = False
    wait_time_ms: int = 0

    @classmethod
    def capture(
        cls,
        statuses: Mapping[str, ProcessingStatus],
        key_statuses: list[KeyStatus],
        current_batch_index: int,
        total_batches: int,
        is_waiting_for_key: bool = False,
        wait_time_ms: int = 0,
    ) -> "ProgressSnapshot":
        """Build a snapshot from live state, copying every mutable input.

        Results of DONE items are deep-copied so later edits to a result
        do not show through earlier snapshots.
        """
        status_copy = {item_id: _detach(status) for item_id, status in statuses.items()}
        completed = sum(1 for s in status_copy.values() if s.state is StatusState.DONE)
        failed = sum(1 for s in status_copy.values() if s.state is StatusState.ERROR)
        return cls(
            total=len(status_copy),
            completed_count=completed,
            failed_count=failed,
            current_batch_index=current_batch_index,
            total_batches=total_batches,
            per_item_status=MappingProxyType(status_copy),
            per_key_status=tuple(key_statuses),
            is_waiting_for_key=is_waiting_for_key,
            wait_time_ms=wait_time_ms,
        )

    @property
    def resolved_count(self) -> int:
        """Items that reached a terminal state."""
        return self.completed_count + self.failed_count


def _detach(status: ProcessingStatus) -> ProcessingStatus:
    if status.result is None:
        return status
    return ProcessingStatus.done(status.result.model_copy(deep=True))
