"""Tests for BoundedBuffer: produce/consume, blocking, exclusion and audit records."""

import logging
import threading
import time

import pytest

from prodcons.core.buffer import BoundedBuffer
from prodcons.core.errors import CancelledOperation
from prodcons.core.metrics import LockEvent, OperationEvent, QueueStatEvent
from prodcons.core.sync import CancelToken


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.005)
    return True


class TestBasics:
    """Single-threaded behaviour."""

    @pytest.mark.parametrize("capacity", [0, -3, 2.5])
    def test_invalid_capacity(self, audit, capacity):
        """Test capacity must be a positive integer."""
        with pytest.raises(ValueError):
            BoundedBuffer(capacity, audit)

    def test_initial_state(self, audit):
        """Test a new buffer is empty with all slots free."""
        buf = BoundedBuffer(7, audit)
        assert buf.occupancy == 0
        assert buf.slots_left == 7
        assert buf.semaphore_values() == (7, 0)

    def test_produce_records_insertion(self, audit):
        """Test produce occupies a slot and logs the free-slot count."""
        buf = BoundedBuffer(7, audit)
        assert buf.produce() is True
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (6, 1)
        assert audit.lines == ["Produtor - Inserido um item no buffer – espaços disponíveis: 6"]

    def test_consume_records_removal(self, audit):
        """Test consume frees a slot and logs the free-slot count."""
        buf = BoundedBuffer(7, audit)
        buf.produce()
        buf.produce()
        assert buf.consume() is True
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (6, 1)
        assert audit.lines[-1] == "Consumidor - Consumido um item no buffer – espaços disponíveis: 6"

    def test_fill_to_capacity(self, audit):
        """Test the last produce reports zero free slots."""
        buf = BoundedBuffer(3, audit)
        for _ in range(3):
            buf.produce()
        assert buf.is_full()
        assert audit.lines[-1].endswith("espaços disponíveis: 0")
        assert buf.stats["produced"] == 3

    def test_produce_times_out_when_full(self, audit):
        """Test a timed produce on a full buffer changes nothing."""
        buf = BoundedBuffer(1, audit)
        buf.produce()
        assert buf.produce(timeout=0.05) is False
        assert buf.occupancy == 1
        assert len(audit.lines) == 1
        assert buf.semaphore_values() == (0, 1)

    def test_consume_times_out_when_empty(self, audit):
        """Test a timed consume on an empty buffer changes nothing."""
        buf = BoundedBuffer(2, audit)
        assert buf.consume(timeout=0.05) is False
        assert buf.occupancy == 0
        assert audit.lines == []

    def test_close_releases_audit(self, audit):
        """Test close closes the audit sink, once."""
        buf = BoundedBuffer(2, audit)
        buf.close()
        buf.close()
        assert audit.closed


class TestBlocking:
    """Boundary behaviour with capacity 1."""

    def test_consume_waits_for_first_produce(self, audit):
        """Test a consumer arriving first blocks until something is produced."""
        buf = BoundedBuffer(1, audit)
        done = threading.Event()
        t = threading.Thread(target=lambda: (buf.consume(), done.set()))
        t.start()

        assert wait_until(lambda: buf.waiters() == 1)
        assert not done.is_set()
        assert buf.occupancy == 0

        buf.produce()
        t.join(timeout=2.0)
        assert done.is_set()
        assert buf.occupancy == 0
        assert audit.lines == [
            "Produtor - Inserido um item no buffer – espaços disponíveis: 0",
            "Consumidor - Consumido um item no buffer – espaços disponíveis: 1",
        ]

    def test_second_produce_waits_for_consume(self, audit):
        """Test producing into a full buffer blocks until a consume frees a slot."""
        buf = BoundedBuffer(1, audit)
        buf.produce()
        done = threading.Event()
        t = threading.Thread(target=lambda: (buf.produce(), done.set()))
        t.start()

        assert wait_until(lambda: buf.waiters() == 1)
        assert not done.is_set()
        assert buf.occupancy == 1

        buf.consume()
        t.join(timeout=2.0)
        assert done.is_set()
        assert buf.occupancy == 1
        assert len(audit.lines) == 3


class TestCancellation:
    """Cancellation at the acquire points."""

    def test_cancelled_produce_leaves_state_untouched(self, audit):
        """Test cancelling a blocked producer aborts before any mutation."""
        buf = BoundedBuffer(1, audit)
        buf.produce()
        token = CancelToken()
        errors = []

        def worker():
            try:
                buf.produce(cancel=token)
            except CancelledOperation as e:
                errors.append(e)

        t = threading.Thread(target=worker)
        t.start()
        assert wait_until(lambda: buf.waiters() == 1)
        token.cancel()
        t.join(timeout=2.0)

        assert len(errors) == 1
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (0, 1)
        assert len(audit.lines) == 1

    def test_cancelled_consume_on_empty_buffer(self, audit):
        """Test a consume with an already-cancelled token raises immediately."""
        buf = BoundedBuffer(2, audit)
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancelledOperation):
            buf.consume(cancel=token)
        assert buf.occupancy == 0


    def test_cancel_inside_critical_section_completes(self, audit):
        """Test a cancel arriving while the guard is held lets the operation finish."""
        buf = BoundedBuffer(2, audit)
        token = CancelToken()
        original_write = audit.write

        def write_then_cancel(line):
            original_write(line)
            token.cancel()

        audit.write = write_then_cancel

        assert buf.produce(cancel=token) is True
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (1, 1)
        assert len(audit.lines) == 1

        with pytest.raises(CancelledOperation):
            buf.produce(cancel=token)
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (1, 1)


class TestAuditFailures:
    """A failing audit sink never breaks the buffer."""

    def test_write_failure_is_reported_not_raised(self, failing_audit, caplog):
        """Test produce completes and signals even when the audit write fails."""
        buf = BoundedBuffer(2, failing_audit)
        with caplog.at_level(logging.ERROR, logger="BoundedBuffer"):
            assert buf.produce() is True
        assert buf.occupancy == 1
        assert buf.semaphore_values() == (1, 1)
        assert buf.stats["log_failures"] == 1
        assert "Erro ao escrever no log" in caplog.text

        # Guard was released: the consumer gets in.
        assert buf.consume(timeout=1.0) is True
        assert buf.occupancy == 0


class TestConcurrency:
    """One producer thread and one consumer thread hammering the buffer."""

    def test_exclusion_and_conservation(self, audit, replay_audit):
        """Test occupancy == P - C, one thread in the critical section at a time, log consistent."""
        buf = BoundedBuffer(3, audit)
        produced, consumed = 300, 298

        producer = threading.Thread(target=lambda: [buf.produce() for _ in range(produced)])
        consumer = threading.Thread(target=lambda: [buf.consume() for _ in range(consumed)])
        producer.start()
        consumer.start()
        producer.join(timeout=10.0)
        consumer.join(timeout=10.0)
        assert not producer.is_alive() and not consumer.is_alive()

        assert buf.occupancy == produced - consumed
        assert buf.stats["produced"] == produced
        assert buf.stats["consumed"] == consumed
        assert buf.stats["max_concurrent_sections"] == 1
        assert buf.semaphore_values() == (1, 2)
        assert len(audit.lines) == produced + consumed
        assert replay_audit(audit.lines, 3) == produced - consumed


class TestTelemetry:
    """Events emitted to the telemetry store."""

    def test_operation_and_lock_events(self, audit, telemetry):
        """Test each operation emits an OperationEvent and a guard LockEvent."""
        buf = BoundedBuffer(4, audit, telemetry=telemetry)
        buf.produce()
        buf.consume()

        ops = telemetry.of_type(OperationEvent)
        assert [(o.role, o.action, o.occupancy, o.slots_left) for o in ops] == [
            ("Produtor", "insert", 1, 3),
            ("Consumidor", "remove", 0, 4),
        ]
        assert [o.seq for o in ops] == [1, 2]
        assert all(o.run_id == telemetry.run_id for o in ops)
        assert len(telemetry.of_type(LockEvent)) == 2

    def test_inspection_reads_do_not_log_lock_events(self, audit, telemetry):
        """Test occupancy reads and snapshots leave the guard contention data alone."""
        buf = BoundedBuffer(4, audit, telemetry=telemetry)
        buf.produce()
        for _ in range(5):
            assert buf.occupancy == 1
        assert buf.slots_left == 3
        assert not buf.is_full()
        buf.snapshot()
        assert len(telemetry.of_type(LockEvent)) == 1

    def test_snapshot(self, audit, telemetry):
        """Test snapshot describes the current occupancy."""
        buf = BoundedBuffer(4, audit, telemetry=telemetry)
        buf.produce()
        snap = buf.snapshot()
        assert isinstance(snap, QueueStatEvent)
        assert (snap.size, snap.capacity, snap.waiters) == (1, 4, 0)

    def test_snapshot_without_telemetry(self, audit):
        """Test snapshot is None when telemetry is off."""
        assert BoundedBuffer(1, audit).snapshot() is None
