"""Tests for ProgressivePersister flush triggers and failure handling."""

import asyncio
from decimal import Decimal

import pytest

from shiprate.services.errors import StorageError
from shiprate.services.models import ShipmentResult
from shiprate.services.persister import ProgressivePersister


class FakeSink:
    """Records appended sequences; fails the first `failures` appends."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.batches: list[list[int]] = []
        self.attempts = 0

    async def append(self, job_id: str, batch) -> int:
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database is locked")
        self.batches.append([sequence for sequence, _ in batch])
        return len(batch)


class FakeTime:
    """Clock whose sleep advances it instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


def _result(n: int) -> ShipmentResult:
    return ShipmentResult(shipment_id=f"S{n}", currently_paid=Decimal("10.00"))


async def _drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestFlushTriggers:
    async def test_size_trigger(self):
        sink = FakeSink()
        persister = ProgressivePersister("job-1", sink, batch_size=2, batch_timeout=60)

        persister.add(_result(1))
        persister.add(_result(2))
        await persister.wait_for_pending_flushes()

        assert sink.batches == [[1, 2]]
        assert persister.flushed_count == 2
        assert persister.pending_count == 0

        persister.add(_result(3))
        await _drain()
        assert sink.batches == [[1, 2]]
        assert persister.pending_count == 1

        await persister.close()
        assert sink.batches == [[1, 2], [3]]

    async def test_add_never_waits_on_storage(self):
        """add() returns before the write has happened."""
        sink = FakeSink()
        persister = ProgressivePersister("job-1", sink, batch_size=1, batch_timeout=60)

        persister.add(_result(1))
        assert sink.batches == []

        await persister.close()
        assert sink.batches == [[1]]

    async def test_timeout_trigger(self):
        fake = FakeTime()
        sink = FakeSink()
        persister = ProgressivePersister(
            "job-1", sink, batch_size=50, batch_timeout=30,
            clock=fake.clock, sleep=fake.sleep,
        )

        persister.add(_result(1))
        await _drain()

        assert sink.batches == [[1]]
        assert fake.now >= 30
        await persister.close()

    async def test_nothing_written_before_timeout(self):
        sink = FakeSink()
        persister = ProgressivePersister("job-1", sink, batch_size=50, batch_timeout=60)

        persister.add(_result(1))
        await _drain()
        assert sink.batches == []

        await persister.close()
        assert sink.batches == [[1]]

    async def test_sequence_follows_add_order(self):
        sink = FakeSink()
        persister = ProgressivePersister("job-1", sink, batch_size=3, batch_timeout=60)
        for n in range(1, 8):
            persister.add(_result(n))
            await _drain(2)
        await persister.close()

        flat = [s for batch in sink.batches for s in batch]
        assert flat == list(range(1, 8))


class TestFlushFailures:
    async def test_failed_batch_is_requeued(self):
        sink = FakeSink(failures=1)
        persister = ProgressivePersister("job-1", sink, batch_size=2, batch_timeout=60)

        persister.add(_result(1))
        persister.add(_result(2))
        await persister.wait_for_pending_flushes()

        assert sink.batches == []
        assert persister.pending_count == 2

        persister.add(_result(3))
        written = await persister.flush()

        assert written == 3
        assert sink.batches == [[1, 2, 3]]
        await persister.close()

    async def test_flush_retries_until_success(self):
        fake = FakeTime()
        sink = FakeSink(failures=2)
        persister = ProgressivePersister(
            "job-1", sink, batch_size=50, batch_timeout=30, max_flush_failures=3,
            clock=fake.clock, sleep=fake.sleep,
        )
        persister.add(_result(1))

        await persister.close()

        assert sink.batches == [[1]]
        assert sink.attempts == 3

    async def test_persistent_failure_is_fatal(self):
        fake = FakeTime()
        sink = FakeSink(failures=100)
        persister = ProgressivePersister(
            "job-1", sink, batch_size=1, batch_timeout=30, max_flush_failures=2,
            clock=fake.clock, sleep=fake.sleep,
        )
        persister.add(_result(1))

        with pytest.raises(StorageError) as exc_info:
            await persister.flush()
        assert exc_info.value.code == "E-4001"
        assert exc_info.value.details == {"job_id": "job-1"}

        with pytest.raises(StorageError):
            persister.add(_result(2))
        await persister.abort()
        assert sink.batches == []

    async def test_storage_error_from_sink_passes_through(self):
        class LockedSink:
            async def append(self, job_id, batch):
                raise StorageError.from_code("E-4001", reason="locked")

        fake = FakeTime()
        persister = ProgressivePersister(
            "job-1", LockedSink(), batch_size=10, batch_timeout=30, max_flush_failures=1,
            clock=fake.clock, sleep=fake.sleep,
        )
        persister.add(_result(1))

        with pytest.raises(StorageError, match="locked"):
            await persister.close()


class TestLifecycle:
    async def test_add_after_close(self):
        persister = ProgressivePersister("job-1", FakeSink(), batch_timeout=60)
        await persister.close()
        with pytest.raises(RuntimeError, match="closed"):
            persister.add(_result(1))

    async def test_abort_discards_without_writing(self):
        sink = FakeSink()
        persister = ProgressivePersister("job-1", sink, batch_size=50, batch_timeout=60)
        persister.add(_result(1))

        await persister.abort()

        assert sink.batches == []
        assert persister.pending_count == 1

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ProgressivePersister("job-1", FakeSink(), batch_size=0)
