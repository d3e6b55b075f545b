"""Tests for the SQLite telemetry store."""

import threading

import pytest

from prodcons.config import RunConfig
from prodcons.core.kernel import ProducerConsumerRun
from prodcons.core.metrics import LockEvent, MetricEvent, OperationEvent, QueueStatEvent, TickEvent
from prodcons.data.database import SqlLogger


@pytest.fixture
def store(tmp_path):
    logger = SqlLogger(str(tmp_path / "telemetry.sqlite3"))
    yield logger
    logger.stop()


class TestSqlLogger:
    """Tests for SqlLogger."""

    def test_events_reach_their_tables(self, store):
        """Test every event type is written by the writer thread."""
        store.start()
        rid = store.run_id
        store.log(OperationEvent(run_id=rid, subsystem="Buffer", role="Produtor", action="insert",
                                 seq=1, occupancy=1, slots_left=6))
        store.log(LockEvent(run_id=rid, subsystem="Produtor", lock_name="Buffer.guard",
                            wait_ms=0.1, held_ms=0.2, context="Buffer"))
        store.log(TickEvent(run_id=rid, subsystem="Produtor", tick_seq=1, wait_ms=0.3, work_time_ms=0.4))
        store.log(QueueStatEvent(run_id=rid, subsystem="Kernel", queue_name="Buffer",
                                 size=1, capacity=7, waiters=0))
        store.log(MetricEvent(run_id=rid, subsystem="Kernel", payload={"event": "run_finished"}))
        store.stop()

        ops = store.read_frame("operations")
        assert list(ops["occupancy"]) == [1]
        assert list(ops["role"]) == ["Produtor"]
        assert len(store.read_frame("locks")) == 1
        assert len(store.read_frame("ticks")) == 1
        assert list(store.read_frame("queue_stats")["capacity"]) == [7]
        assert "run_finished" in store.read_frame("metrics")["payload"].iloc[0]

    def test_log_before_start_is_dropped(self, store):
        """Test events logged while stopped are counted, not queued."""
        store.log(MetricEvent(run_id=store.run_id, subsystem="Kernel", payload={}))
        assert store.dropped == 1

    def test_dropped_count_under_concurrent_logging(self, store):
        """Test every event logged while stopped is counted, from many threads at once."""
        event = MetricEvent(run_id=store.run_id, subsystem="Kernel", payload={})

        def spam():
            for _ in range(1000):
                store.log(event)

        threads = [threading.Thread(target=spam) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10.0)
        assert store.dropped == 8000

    def test_unknown_table(self, store):
        """Test read_frame refuses arbitrary table names."""
        store.start()
        with pytest.raises(ValueError):
            store.read_frame("runs; DROP TABLE runs")

    def test_full_run_telemetry(self, store, tmp_path):
        """Test a complete run leaves one operation row per produce/consume."""
        store.start()
        config = RunConfig(capacity=2, produce_count=6, consume_count=4,
                           producer_interval=0, consumer_interval=0,
                           log_path=str(tmp_path / "audit.txt"), durable_log=False)
        report = ProducerConsumerRun(config, telemetry=store).run()
        store.stop()

        ops = store.read_frame("operations")
        assert len(ops) == 10
        assert list(ops["seq"]) == list(range(1, 11))
        assert ops["occupancy"].between(0, 2).all()
        assert int(ops["occupancy"].iloc[-1]) == report.occupancy == 2
