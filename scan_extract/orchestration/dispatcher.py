"""Dispatch orchestrator for rate-limited batch extraction.

Drives planned batches through the extraction client one at a time:
- Each request is served by the key with the most available tokens
- Multi-document batches fall back to per-document requests when the
  batch call fails, is malformed, or returns low-confidence documents
- Rate-limit rejections drain the serving key and rotate to another
- Every item reaches at most one terminal status per run
- Progress snapshots are immutable copies of the live state

Failures are recorded per item and never raised. Only cancellation
propagates out of run().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..clients.gemini_client import ExtractionClient
from ..core.config import DispatchConfig
from ..core.errors import (
    DispatchCancelled,
    KeysExhaustedError,
    ResponseValidationError,
    is_rate_limit_error,
)
from ..types.credentials import Credential
from ..types.documents import BatchDocument, ExtractedDocument, ExtractionResult, WorkItem
from ..types.progress import KeyStatus, ProcessingStatus, ProgressSnapshot, StatusState
from .batch_planner import Batch, BatchPlanner
from .rate_limiter import RateLimiter
from .retry import RetryOptions, SleepFn, cancellable_sleep, with_retry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]

KEYS_EXHAUSTED_MESSAGE = str(KeysExhaustedError())


def validate_batch_response(documents: list[BatchDocument], batch_size: int) -> None:
    """Check that a batch response covers every input exactly once.

    Raises:
        ResponseValidationError: If the document count differs from the
            batch size or any expected source_index is missing.
    """
    if len(documents) != batch_size:
        raise ResponseValidationError(
            f"Batch returned {len(documents)} documents for {batch_size} inputs"
        )

    returned = {doc.source_index for doc in documents}
    missing = [index for index in range(batch_size) if index not in returned]
    if missing:
        raise ResponseValidationError(f"Batch response is missing source_index {missing}")


@dataclass
class DispatchResult:
    """Result of one dispatch run."""

    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    results: list[ExtractionResult] = field(default_factory=list)
    statuses: dict[str, ProcessingStatus] = field(default_factory=dict)
    key_statuses: list[KeyStatus] = field(default_factory=list)
    total_batches: int = 0

    @property
    def total(self) -> int:
        """Number of submitted items."""
        return len(self.statuses)

    @property
    def completed_count(self) -> int:
        """Items that finished with a result."""
        return sum(1 for s in self.statuses.values() if s.state is StatusState.DONE)

    @property
    def failed_count(self) -> int:
        """Items that finished with an error."""
        return sum(1 for s in self.statuses.values() if s.state is StatusState.ERROR)

    @property
    def needs_review_count(self) -> int:
        """Results flagged for human review."""
        return sum(1 for r in self.results if r.meta.needs_review)

    @property
    def errors(self) -> dict[str, str]:
        """Error message per failed item id."""
        return {
            item_id: status.error or ""
            for item_id, status in self.statuses.items()
            if status.state is StatusState.ERROR
        }

    @property
    def success(self) -> bool:
        """Check if every item succeeded."""
        return self.total > 0 and self.completed_count == self.total

    @property
    def partial_success(self) -> bool:
        """Check if at least one item succeeded."""
        return self.completed_count > 0

    @property
    def duration_seconds(self) -> float:
        """Get total run duration."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""

    result: DispatchResult
    dispatched: set[str] = field(default_factory=set)
    current_batch_index: int = 0
    progress_callback: Optional[ProgressCallback] = None
    cancel_event: Optional[asyncio.Event] = None


class DispatchOrchestrator:
    """Dispatches work items to the extraction client under rate limits.

    Batches and items are processed strictly sequentially so token
    accounting stays exact without locks.
    """

    def __init__(
        self,
        client: ExtractionClient,
        rate_limiter: RateLimiter,
        config: Optional[DispatchConfig] = None,
        sleep: Optional[SleepFn] = None,
    ):
        """Initialize the orchestrator.

        Args:
            client: Extraction client used for every request.
            rate_limiter: Caller-owned limiter, shared across runs.
            config: Dispatch tunables.
            sleep: Replacement for all waits (used by tests).
        """
        self._client = client
        self._limiter = rate_limiter
        self._config = config or DispatchConfig()
        self._planner = BatchPlanner.from_config(self._config)
        self._sleep_fn = sleep

    @property
    def rate_limiter(self) -> RateLimiter:
        """The limiter serving this orchestrator."""
        return self._limiter

    def plan(self, items: list[WorkItem]) -> list[Batch]:
        """Get the batch plan for the given items."""
        return self._planner.plan(items)

    async def run(
        self,
        credentials: list[Credential],
        items: list[WorkItem],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchResult:
        """Extract every work item.

        Args:
            credentials: Keys available for this run.
            items: Work items in dispatch order.
            progress_callback: Receives a snapshot on every transition.
            cancel_event: Set to request cancellation.

        Returns:
            DispatchResult with per-item statuses and completed results.

        Raises:
            DispatchCancelled: If cancel_event was set during the run.
        """
        self._limiter.reconcile(credentials)

        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                raise ValueError(f"Duplicate work item id: {item.id}")
            seen.add(item.id)

        batches = self.plan(items)
        result = DispatchResult(
            statuses={item.id: ProcessingStatus.pending() for item in items},
            total_batches=len(batches),
        )
        state = _RunState(
            result=result,
            progress_callback=progress_callback,
            cancel_event=cancel_event,
        )

        logger.info(
            f"Dispatching {len(items)} documents in {len(batches)} batches "
            f"with {len(credentials)} keys"
        )

        try:
            for batch in batches:
                await self._run_batch(batch, state)
        except DispatchCancelled as e:
            logger.info("Dispatch cancelled")
            result.key_statuses = self._limiter.status_snapshot()
            raise DispatchCancelled(str(e), snapshot=self._snapshot(state)) from None

        result.key_statuses = self._limiter.status_snapshot()
        result.completed_at = datetime.now()

        logger.info(
            f"Dispatch complete: {result.completed_count} done, "
            f"{result.failed_count} failed of {result.total}"
        )
        return result

    def run_sync(
        self,
        credentials: list[Credential],
        items: list[WorkItem],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DispatchResult:
        """Synchronous wrapper for run()."""
        return asyncio.run(self.run(credentials, items, progress_callback))

    # -- Batch loop ----------------------------------------------------------

    async def _run_batch(self, batch: Batch, state: _RunState) -> None:
        self._check_cancelled(state)
        state.current_batch_index = batch.index

        for item in batch.items:
            if item.id not in state.dispatched:
                state.result.statuses[item.id] = ProcessingStatus.processing()
        self._emit(state)

        if batch.size == 1:
            await self._process_single(batch.items[0], state)
        else:
            succeeded = await self._process_batch(batch, state)
            if not succeeded:
                unresolved = [i for i in batch.items if i.id not in state.dispatched]
                if unresolved:
                    logger.warning(
                        f"Batch {batch.index + 1} falling back to single requests "
                        f"for {len(unresolved)} documents"
                    )
                for item in unresolved:
                    await self._process_single(item, state)
                    self._emit(state)

        self._emit(state)

    async def _process_batch(self, batch: Batch, state: _RunState) -> bool:
        """Send a whole batch in one request.

        Returns:
            True if every item was resolved by the batch call.
        """
        pending = [item for item in batch.items if item.id not in state.dispatched]
        if not pending:
            return True

        key = await self._acquire_key(state)
        if key is None:
            for item in pending:
                self._fail(state, item, KEYS_EXHAUSTED_MESSAGE)
            return False

        if not self._limiter.consume(key.id):
            logger.debug(f"Key {key.display_name} lost its token before the batch call")
            return False

        self._check_cancelled(state)
        logger.info(
            f"Batch {batch.index + 1}/{state.result.total_batches}: "
            f"{len(pending)} documents via {key.display_name}"
        )

        try:
            documents = await self._client.extract_batch(key, pending)
            validate_batch_response(documents, len(pending))
        except DispatchCancelled:
            raise
        except Exception as e:
            if is_rate_limit_error(e):
                self._limiter.mark_exhausted(key.id)
            logger.warning(f"Batch {batch.index + 1} failed: {e}")
            return False

        low_quality: list[WorkItem] = []
        for document in documents:
            item = pending[document.source_index]
            if document.meta.confidence >= self._config.batch_quality_threshold:
                self._complete(state, item, document)
            else:
                low_quality.append(item)

        if low_quality:
            logger.info(
                f"Batch {batch.index + 1}: {len(low_quality)} documents below "
                f"confidence {self._config.batch_quality_threshold}, re-asking individually"
            )
            return False

        return True

    async def _process_single(self, item: WorkItem, state: _RunState) -> None:
        """Send one document, rotating keys on rate-limit rejections."""
        if item.id in state.dispatched:
            return

        state.result.statuses[item.id] = ProcessingStatus.processing()
        last_error: Optional[Exception] = None

        for attempt in range(self._config.max_attempts):
            self._check_cancelled(state)

            key = await self._acquire_key(state)
            if key is None:
                self._fail(state, item, KEYS_EXHAUSTED_MESSAGE)
                return

            if not self._limiter.consume(key.id):
                logger.debug(f"Key {key.display_name} lost its token, reselecting")
                continue

            try:
                document = await with_retry(
                    lambda: self._client.extract_single(key, item),
                    self._retry_options(state),
                    sleep=self._sleep_fn,
                )
            except DispatchCancelled:
                raise
            except Exception as e:
                if is_rate_limit_error(e):
                    last_error = e
                    self._limiter.mark_exhausted(key.id)
                    logger.warning(
                        f"Key {key.display_name} rate limited on {item.source_label} "
                        f"(attempt {attempt + 1}/{self._config.max_attempts})"
                    )
                    self._emit(state)
                    continue

                self._fail(state, item, str(e) or type(e).__name__)
                return

            self._complete(state, item, document)
            return

        detail = f": {last_error}" if last_error else ""
        self._fail(
            state,
            item,
            f"Failed after {self._config.max_attempts} attempts{detail}",
        )

    # -- Keys ----------------------------------------------------------------

    async def _acquire_key(self, state: _RunState) -> Optional[Credential]:
        """Get a key, polling while a short wait would free one.

        Returns:
            A credential, or None when every key is out of daily quota, the
            wait exceeds the tolerable bound or the poll budget runs out.
        """
        for _ in range(self._config.key_acquire_attempts):
            self._check_cancelled(state)

            key = self._limiter.best_available_key()
            if key is not None:
                return key

            if not self._limiter.has_daily_quota():
                logger.warning("All keys have used their daily quota")
                return None

            wait_ms = self._limiter.estimated_wait_ms()
            if wait_ms > self._config.max_tolerable_wait_ms:
                logger.warning(f"No key available within {wait_ms}ms, giving up")
                return None

            logger.info(f"Waiting {wait_ms}ms for a key")
            self._emit(state, is_waiting_for_key=True, wait_time_ms=wait_ms)
            await self._sleep(min(wait_ms, self._config.wait_poll_cap_ms) / 1000, state)

        self._check_cancelled(state)
        return self._limiter.best_available_key()

    # -- Bookkeeping ---------------------------------------------------------

    def _complete(self, state: _RunState, item: WorkItem, document: ExtractedDocument) -> None:
        if item.id in state.dispatched:
            logger.warning(f"Ignoring duplicate completion for {item.id}")
            return

        result = ExtractionResult.from_document(item, document)
        state.dispatched.add(item.id)
        state.result.statuses[item.id] = ProcessingStatus.done(result)
        state.result.results.append(result)
        logger.debug(
            f"Extracted {item.source_label} (confidence {result.meta.confidence_score})"
        )

    def _fail(self, state: _RunState, item: WorkItem, message: str) -> None:
        if item.id in state.dispatched:
            logger.warning(f"Ignoring duplicate failure for {item.id}")
            return

        state.dispatched.add(item.id)
        state.result.statuses[item.id] = ProcessingStatus.failed(message)
        logger.error(f"Failed to extract {item.source_label}: {message}")

    def _retry_options(self, state: _RunState) -> RetryOptions:
        def on_retry(attempt: int, error: Exception) -> None:
            logger.info(f"Retrying request (attempt {attempt}): {error}")
            self._emit(state)

        return RetryOptions(
            max_retries=self._config.max_retries,
            base_delay=self._config.base_delay,
            max_delay=self._config.max_delay,
            cancel_event=state.cancel_event,
            on_retry=on_retry,
        )

    def _check_cancelled(self, state: _RunState) -> None:
        if state.cancel_event is not None and state.cancel_event.is_set():
            raise DispatchCancelled()

    async def _sleep(self, seconds: float, state: _RunState) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            self._check_cancelled(state)
        else:
            await cancellable_sleep(seconds, state.cancel_event)

    def _snapshot(
        self,
        state: _RunState,
        is_waiting_for_key: bool = False,
        wait_time_ms: int = 0,
    ) -> ProgressSnapshot:
        return ProgressSnapshot.capture(
            statuses=state.result.statuses,
            key_statuses=self._limiter.status_snapshot(),
            current_batch_index=state.current_batch_index,
            total_batches=state.result.total_batches,
            is_waiting_for_key=is_waiting_for_key,
            wait_time_ms=wait_time_ms,
        )

    def _emit(
        self,
        state: _RunState,
        is_waiting_for_key: bool = False,
        wait_time_ms: int = 0,
    ) -> None:
        """Report progress via callback."""
        if state.progress_callback is None:
            return

        snapshot = self._snapshot(state, is_waiting_for_key, wait_time_ms)
        try:
            state.progress_callback(snapshot)
        except DispatchCancelled:
            raise
        except Exception:
            logger.exception("Progress callback raised")


async def process_documents(
    credentials: list[Credential],
    items: list[WorkItem],
    client: ExtractionClient,
    rate_limiter: Optional[RateLimiter] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    config: Optional[DispatchConfig] = None,
) -> list[ExtractionResult]:
    """Extract documents and return the completed results.

    Convenience function for callers that only need the results. Pass a
    long-lived rate_limiter to keep quota state across calls.

    Returns:
        Results in completion order, correlated to inputs by item_id.
    """
    limiter = rate_limiter or RateLimiter(credentials)
    orchestrator = DispatchOrchestrator(client, limiter, config)
    result = await orchestrator.run(credentials, items, progress_callback, cancel_event)
    return result.results
