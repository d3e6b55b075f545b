import json
import sqlite3
import threading
import time
import logging
from pathlib import Path
from queue import Empty, SimpleQueue
from typing import Optional

import pandas as pd

from prodcons.core.metrics import LogEvent, TickEvent, LockEvent, QueueStatEvent, OperationEvent, MetricEvent
from prodcons.core.trace import os_trace

logger = logging.getLogger("Telemetry")

BATCH_SIZE = 50

TABLES = ("runs", "ticks", "locks", "queue_stats", "operations", "metrics")


class SqlLogger:
    """
    Run telemetry written to SQLite by one dedicated writer thread.

    OS CONCEPTS DEMONSTRATED:

    1. SINGLE WRITER PRINCIPLE:
       SQLite only supports one writer at a time. Every event is funneled
       through one thread, so there are no "database is locked" errors.

    2. ASYNCHRONOUS I/O:
       The producer and consumer only push events into an in-memory
       SimpleQueue (never blocks); disk I/O happens on the writer thread.
       That keeps the buffer's critical section free of disk latency.

    3. WRITE-AHEAD LOGGING (WAL):
       PRAGMA journal_mode = WAL lets the dashboard read while we write.
    """

    def __init__(self, db_path: str = "prodcons_telemetry.sqlite3"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Unbounded: log() must never block a worker thread.
        self._queue: SimpleQueue[Optional[LogEvent]] = SimpleQueue()

        self._writer_thread: Optional[threading.Thread] = None
        self._running = False
        self.run_id = time.time_ns() // 1000
        self.dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return
        self._init_schema()
        self._running = True

        # Threads cannot be restarted; always build a fresh one.
        self._writer_thread = threading.Thread(target=self._writer_loop, name="LogWriter", daemon=True)
        self._writer_thread.start()

        with self._connect() as conn:
            conn.execute(
                "INSERT INTO runs (id, started_at) VALUES (?, ?)",
                (self.run_id, time.time())
            )
        logger.info("Telemetry started. Run ID %s -> %s", self.run_id, self.db_path)

    def stop(self, timeout: float = 5.0):
        """Drain pending events, stop the writer and stamp the run end time."""
        if not self._running:
            return
        self._running = False
        self._queue.put(None)  # poison pill
        if self._writer_thread is not None:
            self._writer_thread.join(timeout=timeout)
            if self._writer_thread.is_alive():
                logger.warning("Telemetry writer did not exit within %.1fs", timeout)

        with self._connect() as conn:
            conn.execute("UPDATE runs SET ended_at = ? WHERE id = ?", (time.time(), self.run_id))
        logger.info("Telemetry stopped. %d event(s) dropped.", self.dropped)

    def log(self, event: LogEvent):
        """API to log an event. Ignored when the writer is not running."""
        if not self._running:
            with self._dropped_lock:
                self.dropped += 1
            return
        self._queue.put(event)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        return conn

    def _init_schema(self):
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY,
                    started_at REAL,
                    ended_at REAL
                );

                CREATE TABLE IF NOT EXISTS ticks (
                    run_id INTEGER,
                    subsystem TEXT,
                    seq INTEGER,
                    wait_ms REAL,
                    work_ms REAL,
                    ts_mono REAL,
                    FOREIGN KEY(run_id) REFERENCES runs(id)
                );

                CREATE TABLE IF NOT EXISTS locks (
                    run_id INTEGER,
                    subsystem TEXT,
                    lock_name TEXT,
                    wait_ms REAL,
                    held_ms REAL,
                    context TEXT,
                    ts_mono REAL
                );

                CREATE TABLE IF NOT EXISTS queue_stats (
                    run_id INTEGER,
                    queue_name TEXT,
                    size INTEGER,
                    capacity INTEGER,
                    waiters INTEGER,
                    ts_mono REAL
                );

                CREATE TABLE IF NOT EXISTS operations (
                    run_id INTEGER,
                    subsystem TEXT,
                    role TEXT,
                    action TEXT,
                    seq INTEGER,
                    occupancy INTEGER,
                    slots_left INTEGER,
                    ts_mono REAL
                );

                CREATE TABLE IF NOT EXISTS metrics (
                    run_id INTEGER,
                    subsystem TEXT,
                    payload JSON,
                    ts_mono REAL
                );
            """)

    def _writer_loop(self):
        """
        Drains the queue and writes to SQLite in batches.
        """
        os_trace("Writer thread started. Connecting to DB...")
        conn = self._connect()
        cursor = conn.cursor()

        stopping = False
        while not stopping:
            try:
                item = self._queue.get(timeout=1.0)
            except Empty:
                continue

            if item is None:
                os_trace("Received poison pill. Stopping writer.")
                break

            batch = [item]
            # Greedy fetch for batching
            while len(batch) < BATCH_SIZE and not self._queue.empty():
                next_item = self._queue.get_nowait()
                if next_item is None:
                    stopping = True
                    break
                batch.append(next_item)

            try:
                self._write_batch(cursor, batch)
                conn.commit()
                os_trace(f"Committed batch of {len(batch)} events.")
            except sqlite3.Error:
                logger.exception("Failed to write telemetry batch of %d events", len(batch))
                conn.rollback()

        conn.close()
        os_trace("Writer thread exited.")

    def _write_batch(self, cursor: sqlite3.Cursor, batch: list[LogEvent]):
        for event in batch:
            if isinstance(event, TickEvent):
                cursor.execute(
                    "INSERT INTO ticks VALUES (?, ?, ?, ?, ?, ?)",
                    (event.run_id, event.subsystem, event.tick_seq,
                     event.wait_ms, event.work_time_ms, event.ts_mono)
                )
            elif isinstance(event, LockEvent):
                cursor.execute(
                    "INSERT INTO locks VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (event.run_id, event.subsystem, event.lock_name,
                     event.wait_ms, event.held_ms, event.context, event.ts_mono)
                )
            elif isinstance(event, QueueStatEvent):
                cursor.execute(
                    "INSERT INTO queue_stats VALUES (?, ?, ?, ?, ?, ?)",
                    (event.run_id, event.queue_name, event.size,
                     event.capacity, event.waiters, event.ts_mono)
                )
            elif isinstance(event, OperationEvent):
                cursor.execute(
                    "INSERT INTO operations VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (event.run_id, event.subsystem, event.role, event.action,
                     event.seq, event.occupancy, event.slots_left, event.ts_mono)
                )
            elif isinstance(event, MetricEvent):
                cursor.execute(
                    "INSERT INTO metrics VALUES (?, ?, ?, ?)",
                    (event.run_id, event.subsystem, json.dumps(event.payload), event.ts_mono)
                )
            else:
                logger.warning("Unknown telemetry event %s", type(event).__name__)

    # ------------------------------------------------------------------
    # Read side (dashboard, tests)
    # ------------------------------------------------------------------

    def read_frame(self, table: str, limit: int = 500) -> pd.DataFrame:
        """Latest `limit` rows of `table` for this run, oldest first."""
        if table not in TABLES or table == "runs":
            raise ValueError(f"unknown telemetry table {table!r}")
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        try:
            df = pd.read_sql_query(
                f"SELECT * FROM {table} WHERE run_id = ? ORDER BY ts_mono DESC LIMIT ?",
                conn, params=(self.run_id, limit)
            )
        finally:
            conn.close()
        return df.sort_values("ts_mono").reset_index(drop=True)
