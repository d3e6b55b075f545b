import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

from prodcons.config import RunConfig
from prodcons.core.buffer import BoundedBuffer, Role
from prodcons.core.errors import ProdConsError
from prodcons.core.metrics import MetricEvent
from prodcons.core.sync import CancelToken
from prodcons.data.audit import AuditLog
from prodcons.workers.drivers import DriverResult, drive

logger = logging.getLogger("ProducerConsumerRun")


@dataclass
class RunReport:
    capacity: int
    produced: int
    consumed: int
    occupancy: int
    cancelled: bool
    log_path: str
    stats: dict = field(default_factory=dict)


class ProducerConsumerRun:
    """
    Orchestrates one run: one buffer, one producer thread, one consumer thread.

    OS CONCEPTS DEMONSTRATED:

    1. KERNEL:
       Bootstraps the shared resource (BoundedBuffer + audit log), creates
       the worker threads, starts and joins them, and releases the log only
       after both have terminated.

    2. WATCHDOG:
       A daemon thread samples the buffer periodically:
       - Stall detection: no operation completed for `stall_after` seconds.
       - Backpressure: the buffer is sitting at full capacity.

    3. CANCELLATION:
       stop() fires a CancelToken shared by both drivers. Blocked threads
       wake up from their semaphore (or their pause) and exit cleanly.
    """

    def __init__(self, config: Optional[RunConfig] = None, telemetry=None):
        self.config = (config or RunConfig()).validate()
        self.telemetry = telemetry
        self.cancel = CancelToken()
        self.buffer: Optional[BoundedBuffer] = None
        self.results: dict[Role, DriverResult] = {}
        self._threads: list[threading.Thread] = []
        self._done = threading.Event()
        self._watchdog_thread: Optional[threading.Thread] = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and not self._done.is_set()

    def bootstrap(self):
        """
        Open the audit log and wire the buffer to the two drivers.
        Raises LogOpenFailure if the log cannot be created.
        """
        if self.buffer is not None:
            return
        audit = AuditLog(self.config.log_path, durable=self.config.durable_log)
        self.buffer = BoundedBuffer(capacity=self.config.capacity, audit=audit,
                                    name="Buffer", telemetry=self.telemetry)

        plan = [
            (Role.PRODUCER, self.config.produce_count, self.config.producer_interval),
            (Role.CONSUMER, self.config.consume_count, self.config.consumer_interval),
        ]
        self._threads = [
            threading.Thread(target=self._run_driver, args=(role, count, interval),
                             name=role.value, daemon=True)
            for role, count, interval in plan
        ]
        self._watchdog_thread = threading.Thread(target=self._watchdog_loop, name="Watchdog", daemon=True)
        logger.info("Run bootstrapped. Capacity=%d, produce=%d, consume=%d, log=%s",
                    self.config.capacity, self.config.produce_count,
                    self.config.consume_count, self.config.log_path)

    def _run_driver(self, role: Role, count: int, interval: float):
        try:
            self.results[role] = drive(self.buffer, role, count, interval,
                                       cancel=self.cancel, telemetry=self.telemetry)
        except Exception:
            logger.exception("%s crashed", role.value)
            self.results[role] = DriverResult(role=role, requested=count, cancelled=True)

    def start(self):
        """Start both worker threads and the watchdog."""
        if self._started:
            return
        self.bootstrap()
        self._started = True
        for t in self._threads:
            t.start()
        self._watchdog_thread.start()
        logger.info("Run started.")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join both workers. Returns True once both have terminated."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(timeout=remaining)
        finished = not any(t.is_alive() for t in self._threads)
        if finished:
            self._done.set()
        return finished

    def stop(self, timeout: float = 2.0) -> bool:
        """Cancel both drivers and wait for them to exit."""
        logger.info("Stopping run...")
        self.cancel.cancel()
        return self.wait(timeout=timeout)

    def close(self):
        """
        Release the audit log. Raises LogCloseFailure.
        Refuses to close while a worker is still alive.
        """
        if any(t.is_alive() for t in self._threads):
            raise ProdConsError("cannot close the buffer while workers are running")
        self._done.set()
        if self._watchdog_thread is not None and self._watchdog_thread.is_alive():
            self._watchdog_thread.join(timeout=1.0)
        if self.buffer is not None:
            self.buffer.close()
        logger.info("Run closed.")

    def report(self) -> RunReport:
        produced = self.results.get(Role.PRODUCER)
        consumed = self.results.get(Role.CONSUMER)
        stats = dict(self.buffer.stats) if self.buffer is not None else {}
        if self.buffer is not None:
            stats["semaphores"] = self.buffer.semaphore_stats()
        return RunReport(
            capacity=self.config.capacity,
            produced=produced.completed if produced else 0,
            consumed=consumed.completed if consumed else 0,
            occupancy=self.buffer.occupancy if self.buffer is not None else 0,
            cancelled=any(r.cancelled for r in self.results.values()),
            log_path=self.config.log_path,
            stats=stats,
        )

    def run(self) -> RunReport:
        """bootstrap -> start -> wait -> close. Ctrl-C cancels the workers first."""
        self.start()
        try:
            self.wait()
        except KeyboardInterrupt:
            logger.warning("Interrupted. Cancelling workers.")
            self.stop()
        finally:
            if not self.running:
                self.close()
        report = self.report()
        self._log_metric({"event": "run_finished", "produced": report.produced,
                          "consumed": report.consumed, "occupancy": report.occupancy,
                          "cancelled": report.cancelled})
        return report

    def _log_metric(self, payload: dict):
        if self.telemetry is None:
            return
        self.telemetry.log(MetricEvent(run_id=self.telemetry.run_id, subsystem="Kernel", payload=payload))

    def _watchdog_loop(self):
        """
        Monitor buffer health until the run is done.
        """
        last_seq = -1
        last_progress = time.monotonic()
        while not self._done.wait(timeout=self.config.watchdog_interval):
            now = time.monotonic()

            seq = self.buffer.op_counter
            if seq != last_seq:
                last_seq = seq
                last_progress = now
            elif now - last_progress > self.config.stall_after:
                stalled_for = now - last_progress
                logger.warning(f"WATCHDOG: no buffer operation for {stalled_for:.1f}s "
                               f"(occupancy {self.buffer.occupancy}/{self.buffer.capacity}, "
                               f"{self.buffer.waiters()} waiter(s))")
                self._log_metric({"event": "stall_detected", "duration": stalled_for})

            if self.buffer.is_full():
                logger.warning(f"WATCHDOG: {self.buffer.name} is FULL ({self.buffer.capacity}). Producer is blocking.")

            snapshot = self.buffer.snapshot()
            if snapshot is not None:
                self.telemetry.log(snapshot)
