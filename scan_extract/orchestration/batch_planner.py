"""Batch planner for grouping work items into requests.

Groups documents greedily, in input order, under a document-count cap and
an estimated token budget per request.
"""

from dataclasses import dataclass, field

from ..core.config import DispatchConfig
from ..types.documents import WorkItem


@dataclass
class Batch:
    """A group of work items sent in one request."""

    index: int
    items: list[WorkItem] = field(default_factory=list)
    estimated_tokens: int = 0

    @property
    def size(self) -> int:
        """Number of documents in the batch."""
        return len(self.items)

    @property
    def item_ids(self) -> list[str]:
        """Ids of the batched items, in order."""
        return [item.id for item in self.items]


class BatchPlanner:
    """Plans request batches from an ordered list of work items.

    The plan is a pure function of input order. Items are never reordered
    and an item that alone exceeds the budget still gets its own batch.
    """

    def __init__(
        self,
        max_docs_per_batch: int = 10,
        request_overhead_tokens: int = 2000,
        per_page_tokens: int = 560,
        per_doc_response_tokens: int = 800,
        token_budget_per_request: int = 60_000,
    ):
        """Initialize the planner.

        Args:
            max_docs_per_batch: Maximum documents in one request.
            request_overhead_tokens: Fixed cost of any request (instructions).
            per_page_tokens: Estimated input tokens per page image.
            per_doc_response_tokens: Estimated output tokens per document.
            token_budget_per_request: Budget a batch may not exceed.
        """
        if max_docs_per_batch < 1:
            raise ValueError("max_docs_per_batch must be at least 1")

        self._max_docs = max_docs_per_batch
        self._overhead = request_overhead_tokens
        self._per_page = per_page_tokens
        self._per_doc_response = per_doc_response_tokens
        self._budget = token_budget_per_request

    @classmethod
    def from_config(cls, config: DispatchConfig) -> "BatchPlanner":
        """Build a planner from dispatch configuration."""
        return cls(
            max_docs_per_batch=config.max_docs_per_batch,
            request_overhead_tokens=config.request_overhead_tokens,
            per_page_tokens=config.per_page_tokens,
            per_doc_response_tokens=config.per_doc_response_tokens,
            token_budget_per_request=config.token_budget_per_request,
        )

    def item_cost(self, item: WorkItem) -> int:
        """Estimated tokens one document adds to a request."""
        return item.page_count * self._per_page + self._per_doc_response

    def plan(self, items: list[WorkItem]) -> list[Batch]:
        """Partition items into batches.

        Args:
            items: Work items in dispatch order.

        Returns:
            Ordered batches covering every item exactly once.
        """
        batches: list[Batch] = []
        current = Batch(index=0, estimated_tokens=self._overhead)

        for item in items:
            cost = self.item_cost(item)

            if current.items and (
                current.size + 1 > self._max_docs
                or current.estimated_tokens + cost > self._budget
            ):
                batches.append(current)
                current = Batch(index=len(batches), estimated_tokens=self._overhead)

            current.items.append(item)
            current.estimated_tokens += cost

        if current.items:
            batches.append(current)

        return batches


def plan_batches(
    items: list[WorkItem],
    max_docs_per_batch: int = 10,
    per_doc_overhead_tokens: int = 800,
    token_budget_per_request: int = 60_000,
) -> list[Batch]:
    """Convenience function to plan batches with default page costs.

    Args:
        items: Work items in dispatch order.
        max_docs_per_batch: Maximum documents in one request.
        per_doc_overhead_tokens: Estimated response tokens per document.
        token_budget_per_request: Budget a batch may not exceed.

    Returns:
        Ordered batches.
    """
    planner = BatchPlanner(
        max_docs_per_batch=max_docs_per_batch,
        per_doc_response_tokens=per_doc_overhead_tokens,
        token_budget_per_request=token_budget_per_request,
    )
    return planner.plan(items)
