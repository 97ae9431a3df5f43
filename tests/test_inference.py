"""Tests for the inference thread pool."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import pytest

from scenecaption.config import Settings
from scenecaption.ml.inference import InferencePool, InferenceRejectedError

if TYPE_CHECKING:
    from collections.abc import Callable


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestInferencePool:
    async def test_runs_function_on_worker_thread(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            thread_id = await pool.run(threading.get_ident)
        finally:
            pool.shutdown()
        assert thread_id != threading.get_ident()

    async def test_passes_arguments_and_returns_result(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            assert await pool.run(max, 3, 7) == 7
        finally:
            pool.shutdown()

    async def test_function_errors_pass_through(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))

        def engine_timeout() -> None:
            raise TimeoutError("model timeout")

        try:
            with pytest.raises(TimeoutError, match="model timeout"):
                await pool.run(engine_timeout)
            assert pool.rejected_count == 0
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_saturated_pool_rejects_after_queue_timeout(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1, queue_timeout=0.05))
        gate = threading.Event()
        try:
            blocked = asyncio.create_task(pool.run(gate.wait, 5))
            await _wait_until(lambda: pool.active_count == 1)

            with pytest.raises(InferenceRejectedError, match="No inference slot free"):
                await pool.run(max, 1, 2)

            assert pool.rejected_count == 1
            assert pool.queue_depth == 0

            gate.set()
            assert await blocked is True
            assert pool.active_count == 0
        finally:
            gate.set()
            pool.shutdown()

    async def test_queued_submission_runs_when_slot_frees(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1, queue_timeout=2.0))
        gate = threading.Event()
        try:
            blocked = asyncio.create_task(pool.run(gate.wait, 5))
            await _wait_until(lambda: pool.active_count == 1)

            queued = asyncio.create_task(pool.run(max, 1, 2))
            await _wait_until(lambda: pool.queue_depth == 1)

            gate.set()
            assert await queued == 2
            await blocked
            assert pool.rejected_count == 0
        finally:
            gate.set()
            pool.shutdown()
