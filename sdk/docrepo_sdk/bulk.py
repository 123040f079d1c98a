"""
Bounded-concurrency bulk execution.

BulkOperationEngine applies one async operation to many items with at
most ``max_concurrency`` in flight, records every item's outcome and
raises a single AggregateOperationError if any item failed.

Item lifecycle:
    PENDING -> IN_FLIGHT -> SUCCEEDED | FAILED

Invariants:
    - A slot is acquired before an item starts and released when it ends
    - One item's failure never cancels another
    - Every submitted item ends in a terminal state
    - Once the cancel event is set no new item is admitted; items not
      admitted are marked FAILED with OperationCancelledError
    - An item whose operation raises CancelledError is FAILED, not lost

How to change safely:
    - Keep admission in the launching loop so no more than
      max_concurrency tasks exist at any time
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from .errors import AggregateOperationError, OperationCancelledError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CONCURRENCY = 5


class BulkItemState(Enum):
    """Lifecycle state of a bulk item."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BulkItemState.SUCCEEDED, BulkItemState.FAILED)


@dataclass
class BulkItemOutcome(Generic[T]):
    """Outcome of one bulk item.

    Attributes:
        index: Position in the submitted sequence
        item: The submitted item
        item_id: Id of the item, when one could be derived
        state: Current state
        result: Operation return value on success
        error: Exception on failure
    """

    index: int
    item: T
    item_id: Optional[str] = None
    state: BulkItemState = BulkItemState.PENDING
    result: Any = None
    error: Optional[BaseException] = None

    def _transition(self, state: BulkItemState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Bulk item {self.index} already {self.state.value}")
        self.state = state


@dataclass
class BulkResult(Generic[T]):
    """Terminal outcomes of a bulk run.

    Attributes:
        outcomes: One outcome per submitted item, in submission order
        peak_in_flight: Highest number of items running at once
        cancelled: Whether the cancel event stopped admission
    """

    outcomes: List[BulkItemOutcome[T]] = field(default_factory=list)
    peak_in_flight: int = 0
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> List[BulkItemOutcome[T]]:
        return [o for o in self.outcomes if o.state is BulkItemState.SUCCEEDED]

    @property
    def failed(self) -> List[BulkItemOutcome[T]]:
        return [o for o in self.outcomes if o.state is BulkItemState.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


class BulkOperationEngine:
    """Runs an operation over many items with bounded concurrency.

    Example:
        >>> engine = BulkOperationEngine(max_concurrency=3)
        >>> result = await engine.run(entities, upsert_one, name="upsert")
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        """Initialize the engine.

        Args:
            max_concurrency: Maximum items in flight at once
        """
        if max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1", field_name="max_concurrency")
        self.max_concurrency = max_concurrency

    async def run(
        self,
        items: Iterable[T],
        operation: Callable[[T], Awaitable[Any]],
        *,
        name: str = "operation",
        id_of: Optional[Callable[[T], Optional[str]]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        raise_on_failure: bool = True,
    ) -> BulkResult[T]:
        """Apply ``operation`` to every item.

        Args:
            items: Items to process
            operation: Coroutine function run once per item
            name: Operation name used in logs and errors
            id_of: Derives an item id for error reporting
            cancel_event: When set, stops admitting new items
            raise_on_failure: Raise AggregateOperationError if any item failed

        Returns:
            BulkResult with every item's terminal outcome

        Raises:
            AggregateOperationError: If any item failed and raise_on_failure is set
        """
        result: BulkResult[T] = BulkResult()
        for index, item in enumerate(items):
            result.outcomes.append(BulkItemOutcome(index=index, item=item, item_id=_safe_id(id_of, item)))

        semaphore = asyncio.Semaphore(self.max_concurrency)
        in_flight = 0
        tasks: List[asyncio.Task] = []

        async def execute(outcome: BulkItemOutcome[T]) -> None:
            nonlocal in_flight
            try:
                outcome.result = await operation(outcome.item)
                outcome._transition(BulkItemState.SUCCEEDED)
            except (Exception, asyncio.CancelledError) as e:
                outcome.error = e
                outcome._transition(BulkItemState.FAILED)
                logger.warning(
                    f"Bulk {name} item failed: {e}",
                    extra={"index": outcome.index, "item_id": outcome.item_id},
                )
            finally:
                in_flight -= 1
                semaphore.release()

        try:
            for outcome in result.outcomes:
                await semaphore.acquire()
                if cancel_event is not None and cancel_event.is_set():
                    semaphore.release()
                    result.cancelled = True
                    break
                outcome._transition(BulkItemState.IN_FLIGHT)
                in_flight += 1
                result.peak_in_flight = max(result.peak_in_flight, in_flight)
                tasks.append(asyncio.create_task(execute(outcome)))
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        # Never admitted, or cancelled before its task ran
        for outcome in result.outcomes:
            if not outcome.state.is_terminal:
                outcome.error = OperationCancelledError(outcome.item_id)
                outcome._transition(BulkItemState.FAILED)

        logger.info(
            f"Bulk {name} complete",
            extra={
                "total": result.total,
                "failed": len(result.failed),
                "peak_in_flight": result.peak_in_flight,
                "cancelled": result.cancelled,
            },
        )

        if raise_on_failure and result.failed:
            raise AggregateOperationError(name, result)
        return result


def _safe_id(id_of: Optional[Callable[[Any], Optional[str]]], item: Any) -> Optional[str]:
    if id_of is None:
        return None
    try:
        return id_of(item)
    except Exception:
        return None
