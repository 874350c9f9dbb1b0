"""Unit tests for scanrelay.utils.retry."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from scanrelay.utils.retry import ExponentialBackoff, async_retrying


class TestExponentialBackoff:
    def test_doubles_per_attempt(self) -> None:
        wait = ExponentialBackoff(base=0.5, cap=100.0)
        delays = [wait(SimpleNamespace(attempt_number=n)) for n in (1, 2, 3, 4)]
        assert delays == [0.5, 1.0, 2.0, 4.0]

    def test_capped(self) -> None:
        wait = ExponentialBackoff(base=1.0, cap=3.0)
        assert wait(SimpleNamespace(attempt_number=10)) == 3.0

    def test_zero_base_never_sleeps(self) -> None:
        wait = ExponentialBackoff(base=0, cap=0)
        assert wait(SimpleNamespace(attempt_number=5)) == 0.0


class TestAsyncRetrying:
    @pytest.mark.asyncio
    async def test_transient_errors_retried_until_success(self) -> None:
        calls = 0
        retrying = async_retrying(
            operation="test", max_attempts=3, base=0, cap=0,
            retry_on=lambda exc: isinstance(exc, ConnectionError),
        )
        async for attempt in retrying:
            with attempt:
                calls += 1
                if calls < 3:
                    raise ConnectionError("flaky")
        assert calls == 3

    @pytest.mark.asyncio
    async def test_last_exception_reraised_when_exhausted(self) -> None:
        calls = 0
        retrying = async_retrying(
            operation="test", max_attempts=2, base=0, cap=0,
            retry_on=lambda exc: True,
        )
        with pytest.raises(ConnectionError, match="down"):
            async for attempt in retrying:
                with attempt:
                    calls += 1
                    raise ConnectionError("down")
        assert calls == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates_immediately(self) -> None:
        calls = 0
        retrying = async_retrying(
            operation="test", max_attempts=5, base=0, cap=0,
            retry_on=lambda exc: isinstance(exc, ConnectionError),
        )
        with pytest.raises(ValueError):
            async for attempt in retrying:
                with attempt:
                    calls += 1
                    raise ValueError("bad input")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_zero_max_attempts_still_tries_once(self) -> None:
        calls = 0
        async for attempt in async_retrying(
            operation="test", max_attempts=0, base=0, cap=0, retry_on=lambda exc: True
        ):
            with attempt:
                calls += 1
        assert calls == 1
