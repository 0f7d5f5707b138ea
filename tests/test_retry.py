"""Tests for the retry coordinator."""

import asyncio

import pytest

from matter_crawler.engines.pool import CancelToken
from matter_crawler.engines.retry import RetryCoordinator
from matter_crawler.errors import CrawlCancelled, FetchTimeout, TransportError, ZeroResultError


def _coordinator(cancel=None, retry_start=2, retry_max=5, rounds=None):
    def on_round(attempt, keys):
        if rounds is not None:
            rounds.append((attempt, list(keys)))

    return RetryCoordinator(
        retry_start=retry_start,
        retry_max=retry_max,
        retry_concurrency=2,
        cancel=cancel or CancelToken(),
        on_round=on_round,
    )


class TestRetryCoordinator:
    """Test cases for RetryCoordinator."""

    @pytest.mark.asyncio
    async def test_all_succeed_without_rounds(self):
        """No retry round runs when the initial pass succeeds."""
        rounds = []

        async def attempt(item, n, cancel):
            return item

        outcome = await _coordinator(rounds=rounds).run([1, 2, 3], lambda i: i, attempt, 3)

        assert outcome.succeeded == {1, 2, 3}
        assert outcome.failed == []
        assert outcome.rounds == 0
        assert rounds == []

    @pytest.mark.asyncio
    async def test_retries_only_failing_items(self):
        """Each round retries exactly the items still failing."""
        failures = {2: 2, 3: 1}
        calls = []
        rounds = []

        async def attempt(item, n, cancel):
            calls.append((item, n))
            if failures.get(item, 0) > 0:
                failures[item] -= 1
                raise TransportError(f"item {item} down")

        outcome = await _coordinator(rounds=rounds).run([1, 2, 3], lambda i: i, attempt, 3)

        assert outcome.succeeded == {1, 2, 3}
        assert rounds == [(2, [2, 3]), (3, [2])]
        assert outcome.attempts == {1: 1, 2: 3, 3: 2}
        assert [str(e) for e in outcome.history[2]] == ["item 2 down", "Attempt 2: item 2 down"]
        assert outcome.initial_failures == [2, 3]

    @pytest.mark.asyncio
    async def test_attempt_bound_for_permanent_failure(self):
        """An always-failing item gets retry_max - retry_start + 2 attempts."""
        async def attempt(item, n, cancel):
            raise FetchTimeout("Timeout after 1s")

        outcome = await _coordinator(retry_start=2, retry_max=5).run(["a"], lambda i: i, attempt, 1)

        assert outcome.attempts["a"] == 5 - 2 + 2
        assert outcome.failed == ["a"]
        assert [e.attempt for e in outcome.history["a"]] == [1, 2, 3, 4, 5]
        assert {e.kind for e in outcome.history["a"]} == {"timeout"}
        report = outcome.failure_report()
        assert report[0]["key"] == "a"
        assert report[0]["errors"][-1] == "Attempt 5: Timeout after 1s"

    @pytest.mark.asyncio
    async def test_no_rounds_when_retry_max_below_start(self):
        """retry_max == retry_start - 1 disables retry rounds."""
        async def attempt(item, n, cancel):
            raise ZeroResultError("No products found")

        outcome = await _coordinator(retry_start=2, retry_max=1).run([7], lambda i: i, attempt, 1)

        assert outcome.attempts[7] == 1
        assert outcome.rounds == 0
        assert outcome.failed == [7]

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_recorded_as_transport(self):
        """Non-fetch exceptions count as transport failures."""
        async def attempt(item, n, cancel):
            raise KeyError("title")

        outcome = await _coordinator(retry_max=2).run(["x"], lambda i: i, attempt, 1)
        assert outcome.history["x"][0].kind == "transport"

    @pytest.mark.asyncio
    async def test_cancelled_attempts_are_not_failures(self):
        """Cancellation stops the rounds and is not counted as a failure."""
        cancel = CancelToken()

        async def attempt(item, n, token):
            if item == 0:
                raise TransportError("down")
            token.cancel()
            raise CrawlCancelled("Aborted")

        outcome = await _coordinator(cancel=cancel).run([0, 1], lambda i: i, attempt, 1)

        assert outcome.stopped == [1]
        assert outcome.failed == [0]
        assert outcome.rounds == 0
        assert 1 not in outcome.history

    @pytest.mark.asyncio
    async def test_retry_round_concurrency(self):
        """Retry rounds run at retry_concurrency."""
        active = 0
        peak_in_retry = 0

        async def attempt(item, n, cancel):
            nonlocal active, peak_in_retry
            active += 1
            if n > 1:
                peak_in_retry = max(peak_in_retry, active)
            await asyncio.sleep(0.002)
            active -= 1
            if n == 1:
                raise TransportError("first try fails")

        await _coordinator().run(list(range(8)), lambda i: i, attempt, 8)
        assert peak_in_retry <= 2
