from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Sequence, Set, TypeVar,
)

from ..errors import CrawlCancelled, FetchFailure
from .pool import CancelToken, run_pool

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

INITIAL_ATTEMPT = 1


@dataclass
class AttemptError:
    attempt: int
    kind: str
    message: str

    def __str__(self) -> str:
        prefix = f"Attempt {self.attempt}: " if self.attempt > INITIAL_ATTEMPT else ""
        return f"{prefix}{self.message}"


@dataclass
class RetryOutcome(Generic[K]):
    """Per-key result of an initial pass plus its retry rounds."""

    keys: List[K]
    succeeded: Set[K] = field(default_factory=set)
    history: Dict[K, List[AttemptError]] = field(default_factory=dict)
    attempts: Dict[K, int] = field(default_factory=dict)
    initial_failures: List[K] = field(default_factory=list)
    rounds: int = 0

    @property
    def failed(self) -> List[K]:
        """Keys that never succeeded and carry at least one failure."""
        return [k for k in self.keys if k not in self.succeeded and self.history.get(k)]

    @property
    def stopped(self) -> List[K]:
        """Keys that never succeeded and never failed: cancelled or never dispatched."""
        return [k for k in self.keys if k not in self.succeeded and not self.history.get(k)]

    def merge(self, other: "RetryOutcome[K]") -> None:
        """Fold in the outcome of a later batch over different keys."""
        self.keys.extend(other.keys)
        self.succeeded.update(other.succeeded)
        self.history.update(other.history)
        self.attempts.update(other.attempts)
        self.initial_failures.extend(other.initial_failures)
        self.rounds += other.rounds

    def failure_report(self, label: Callable[[K], object] = lambda k: k) -> List[Dict[str, object]]:
        return [
            {"key": label(k), "errors": [str(e) for e in self.history[k]]}
            for k in self.failed
        ]


class RetryCoordinator:
    """
    Runs an initial pass through the worker pool, then retries the still-failing
    items in rounds ``retry_start .. retry_max`` at ``retry_concurrency``.

    ``attempt_fn(item, attempt, cancel)`` returns normally on success, raises a
    FetchFailure on a retryable failure and CrawlCancelled when the run is stopped.
    Any other exception is recorded as a transport failure.
    """

    def __init__(
        self,
        *,
        retry_start: int,
        retry_max: int,
        retry_concurrency: int,
        cancel: CancelToken,
        on_round: Optional[Callable[[int, List[Hashable]], None]] = None,
    ) -> None:
        self.retry_start = retry_start
        self.retry_max = retry_max
        self.retry_concurrency = retry_concurrency
        self.cancel = cancel
        self.on_round = on_round

    async def run(
        self,
        items: Sequence[T],
        key: Callable[[T], K],
        attempt_fn: Callable[[T, int, CancelToken], Awaitable[object]],
        concurrency: int,
    ) -> RetryOutcome[K]:
        outcome: RetryOutcome[K] = RetryOutcome(keys=[key(i) for i in items])

        failing = await self._pass(items, key, attempt_fn, INITIAL_ATTEMPT, concurrency, outcome)
        outcome.initial_failures = [key(i) for i in failing]

        for attempt in range(self.retry_start, self.retry_max + 1):
            if not failing or self.cancel.cancelled:
                break
            logger.info("Retry round %d: %d item(s)", attempt, len(failing))
            if self.on_round:
                self.on_round(attempt, [key(i) for i in failing])
            outcome.rounds += 1
            failing = await self._pass(
                failing, key, attempt_fn, attempt, self.retry_concurrency, outcome
            )

        if failing and not self.cancel.cancelled:
            logger.warning(
                "%d item(s) still failing after attempt %d", len(failing), self.retry_max
            )
        return outcome

    async def _pass(
        self,
        items: Sequence[T],
        key: Callable[[T], K],
        attempt_fn: Callable[[T, int, CancelToken], Awaitable[object]],
        attempt: int,
        concurrency: int,
        outcome: RetryOutcome[K],
    ) -> List[T]:
        run = await run_pool(
            items,
            lambda item, cancel: attempt_fn(item, attempt, cancel),
            concurrency,
            self.cancel,
        )
        failing: List[T] = []
        # The pool dispatches in input order, so everything past `dispatched` never started.
        for index, item in enumerate(items[: run.dispatched]):
            k = key(item)
            outcome.attempts[k] = outcome.attempts.get(k, 0) + 1
            exc = run.errors.get(index)
            if exc is None:
                outcome.succeeded.add(k)
            elif isinstance(exc, CrawlCancelled):
                continue
            else:
                kind = exc.kind if isinstance(exc, FetchFailure) else "transport"
                message = str(exc) or exc.__class__.__name__
                outcome.history.setdefault(k, []).append(AttemptError(attempt, kind, message))
                failing.append(item)
        if run.undispatched:
            logger.debug("Attempt %d: %d item(s) never started", attempt, run.undispatched)
        return failing
