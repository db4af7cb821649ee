"""Tests for ``bq_stream.gate``."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bq_stream.gate import GateState, RequestGate
from bq_stream.resources import RequestDescriptor


class SlowExecutor:
    """Executor that yields a few times per call and tracks overlap."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.started: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, descriptor: RequestDescriptor) -> dict[str, Any]:
        self.started.append(descriptor.url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for _ in range(3):
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if descriptor.url in self.failing:
            raise RuntimeError(descriptor.url)
        return {"url": descriptor.url}


def _get(url: str) -> RequestDescriptor:
    return RequestDescriptor("GET", url)


class TestRequestGate:
    """Tests for ``RequestGate``."""

    def test_single_flight_in_submission_order(self) -> None:
        """N concurrent submissions run one at a time, oldest first."""
        executor = SlowExecutor()
        gate = RequestGate(executor)
        urls = [f"u{i}" for i in range(10)]

        async def run() -> tuple[list[dict[str, Any]], list[str]]:
            resolved: list[str] = []
            futures = [gate.submit(_get(url)) for url in urls]
            for url, future in zip(urls, futures):
                future.add_done_callback(lambda _, url=url: resolved.append(url))
            results = await asyncio.gather(*futures)
            return results, resolved

        results, resolved = asyncio.run(run())

        assert executor.max_in_flight == 1
        assert executor.started == urls
        assert resolved == urls
        assert results == [{"url": url} for url in urls]

    def test_submissions_from_separate_tasks(self) -> None:
        """Callers in different tasks share the same ordered stream."""
        executor = SlowExecutor()
        gate = RequestGate(executor)

        async def caller(url: str) -> dict[str, Any]:
            return await gate.submit(_get(url))

        async def run() -> list[dict[str, Any]]:
            return await asyncio.gather(caller("a"), caller("b"), caller("c"))

        assert asyncio.run(run()) == [{"url": "a"}, {"url": "b"}, {"url": "c"}]
        assert executor.max_in_flight == 1

    def test_submit_does_not_block_and_queues(self) -> None:
        """A busy gate queues callers and returns their futures immediately."""
        gate = RequestGate(SlowExecutor())

        async def run() -> None:
            first = gate.submit(_get("a"))
            second = gate.submit(_get("b"))
            assert gate.state is GateState.BUSY
            assert not second.done()
            await asyncio.sleep(0)
            assert gate.backlog == 1
            await asyncio.gather(first, second)
            assert gate.state is GateState.IDLE
            assert gate.backlog == 0

        asyncio.run(run())

    def test_failure_rejects_only_its_caller(self) -> None:
        """A failing call does not stop the backlog from draining."""
        executor = SlowExecutor(failing={"b"})
        gate = RequestGate(executor)

        async def run() -> list[Any]:
            futures = [gate.submit(_get(url)) for url in ("a", "b", "c")]
            return await asyncio.gather(*futures, return_exceptions=True)

        first, second, third = asyncio.run(run())

        assert first == {"url": "a"}
        assert isinstance(second, RuntimeError)
        assert third == {"url": "c"}

    def test_gate_reopens_after_idle(self) -> None:
        """A submission after the gate went idle starts a new drain."""
        executor = SlowExecutor()
        gate = RequestGate(executor)

        async def run() -> None:
            await gate.submit(_get("a"))
            assert gate.state is GateState.IDLE
            await gate.submit(_get("b"))

        asyncio.run(run())
        assert executor.started == ["a", "b"]

    def test_error_propagates_to_awaiting_caller(self) -> None:
        """The caller's await raises the executor's error."""
        gate = RequestGate(SlowExecutor(failing={"a"}))

        async def run() -> None:
            await gate.submit(_get("a"))

        with pytest.raises(RuntimeError):
            asyncio.run(run())
