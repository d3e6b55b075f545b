import logging
import threading
import uuid
from enum import Enum
from typing import Optional

from prodcons.core.errors import LogWriteFailure
from prodcons.core.metrics import LockEvent, OperationEvent, QueueStatEvent
from prodcons.core.sync import CancelToken, CountingSemaphore, GuardLock
from prodcons.core.trace import os_trace
from prodcons.data.audit import AuditSink

logger = logging.getLogger("BoundedBuffer")


class Role(str, Enum):
    PRODUCER = "Produtor"
    CONSUMER = "Consumidor"


INSERTED_RECORD = "{role} - Inserido um item no buffer – espaços disponíveis: {slots_left}"
CONSUMED_RECORD = "{role} - Consumido um item no buffer – espaços disponíveis: {slots_left}"


class BoundedBuffer:
    """
    A fixed-capacity slot counter shared by one producer and one consumer thread.

    OS CONCEPTS DEMONSTRATED:

    1. COUNTING SEMAPHORES:
       self._empty_slots starts at `capacity` and counts slots free for
       production; self._full_slots starts at 0 and counts items available
       for consumption. A producer can never push occupancy past capacity
       and a consumer can never pull it below 0, because each must take a
       token before touching the counter.

    2. MUTUAL EXCLUSION:
       self._guard makes sure only one thread reads or modifies occupancy at
       a time. It is taken AFTER the semaphore, so nobody sleeps while
       holding it, and released by a `with` block, so an audit I/O error can
       never leave it held.

    3. SIGNAL AFTER COMMIT:
       The opposite semaphore is released only after the mutation is
       committed and the guard dropped. Semaphore counts and occupancy
       never diverge.

    4. CANCELLATION POINTS:
       The two semaphore acquires are the only places a thread can be
       interrupted. Once the guard is taken, the operation runs to the end.
    """

    def __init__(self, capacity: int, audit: AuditSink, name: str = "Buffer", telemetry=None):
        if not isinstance(capacity, int) or capacity < 1:
            raise ValueError(f"capacity must be a positive integer, got {capacity!r}")
        self.capacity = capacity
        self.name = name
        self.audit = audit
        self.telemetry = telemetry

        self._occupancy = 0
        self._empty_slots = CountingSemaphore(capacity, name=f"{name}.empty_slots")
        self._full_slots = CountingSemaphore(0, name=f"{name}.full_slots")
        self._guard = GuardLock(name=f"{name}.guard", on_release=self._record_guard)

        # Instrumentation; only touched while holding the guard
        self._inside = 0
        self.stats = {
            "produced": 0,
            "consumed": 0,
            "log_failures": 0,
            "max_concurrent_sections": 0,
        }
        self.op_counter = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def produce(self, cancel: Optional[CancelToken] = None, timeout: Optional[float] = None) -> bool:
        """
        Occupy one slot. Blocks while the buffer is full.

        Returns False (nothing changed) if `timeout` elapsed while waiting for
        a free slot. Raises CancelledOperation if `cancel` fired while waiting.
        """
        return self._transfer(
            Role.PRODUCER, self._empty_slots, self._full_slots, +1, INSERTED_RECORD, cancel, timeout
        )

    def consume(self, cancel: Optional[CancelToken] = None, timeout: Optional[float] = None) -> bool:
        """Free one slot. Blocks while the buffer is empty. Same contract as produce()."""
        return self._transfer(
            Role.CONSUMER, self._full_slots, self._empty_slots, -1, CONSUMED_RECORD, cancel, timeout
        )

    def _transfer(self, role: Role, wait_on: CountingSemaphore, signal: CountingSemaphore,
                  delta: int, record: str, cancel: Optional[CancelToken], timeout: Optional[float]) -> bool:
        op_id = str(uuid.uuid4())[:8]
        os_trace(f"[Op:{op_id}] {role.value} waiting on {wait_on.name}...")

        # 1. The only suspension / cancellation point.
        if not wait_on.acquire(cancel=cancel, timeout=timeout):
            os_trace(f"[Op:{op_id}] Timed out on {wait_on.name}.")
            return False

        try:
            # 2-4. Critical section
            with self._guard:
                self._inside += 1
                if self._inside > self.stats["max_concurrent_sections"]:
                    self.stats["max_concurrent_sections"] = self._inside
                try:
                    self._occupancy += delta
                    slots_left = self.capacity - self._occupancy
                    self.op_counter += 1
                    seq = self.op_counter
                    self.stats["produced" if delta > 0 else "consumed"] += 1
                    os_trace(f"[Op:{op_id}] Guard held (Seq:{seq}). Occupancy {self._occupancy}/{self.capacity}.")

                    self._write_audit(record.format(role=role.value, slots_left=slots_left))
                    event = self._operation_event(role, delta, seq, slots_left)
                finally:
                    self._inside -= 1
            os_trace(f"[Op:{op_id}] Guard released.")
        finally:
            # 5. Signal the other side, whatever happened inside.
            signal.release()

        if event is not None:
            self.telemetry.log(event)
        return True

    def _write_audit(self, line: str) -> None:
        try:
            self.audit.write(line)
        except LogWriteFailure as e:
            self.stats["log_failures"] += 1
            logger.error("Erro ao escrever no log: %s", e)

    def _operation_event(self, role: Role, delta: int, seq: int, slots_left: int) -> Optional[OperationEvent]:
        if self.telemetry is None:
            return None
        return OperationEvent(
            run_id=self.telemetry.run_id,
            subsystem=self.name,
            role=role.value,
            action="insert" if delta > 0 else "remove",
            seq=seq,
            occupancy=self._occupancy,
            slots_left=slots_left,
        )

    def _record_guard(self, wait_ms: float, held_ms: float) -> None:
        if self.telemetry is None:
            return
        self.telemetry.log(LockEvent(
            run_id=self.telemetry.run_id,
            subsystem=threading.current_thread().name,
            lock_name=self._guard.name,
            wait_ms=wait_ms,
            held_ms=held_ms,
            context=self.name,
        ))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def occupancy(self) -> int:
        """Current number of filled slots (thread-safe)."""
        with self._guard.untracked():
            return self._occupancy

    @property
    def slots_left(self) -> int:
        return self.capacity - self.occupancy

    def is_full(self) -> bool:
        return self.occupancy >= self.capacity

    def waiters(self) -> int:
        """Threads currently asleep on either semaphore."""
        return self._empty_slots.waiters + self._full_slots.waiters

    def semaphore_values(self) -> tuple[int, int]:
        """(empty_slots, full_slots) token counts."""
        return self._empty_slots.value, self._full_slots.value

    def semaphore_stats(self) -> dict[str, dict[str, int]]:
        return {
            "empty_slots": dict(self._empty_slots.stats),
            "full_slots": dict(self._full_slots.stats),
        }

    def snapshot(self) -> Optional[QueueStatEvent]:
        if self.telemetry is None:
            return None
        return QueueStatEvent(
            run_id=self.telemetry.run_id,
            subsystem="Kernel",
            queue_name=self.name,
            size=self.occupancy,
            capacity=self.capacity,
            waiters=self.waiters(),
        )

    def close(self) -> None:
        """
        Release the audit sink. Call only after both tasks have terminated.
        Raises LogCloseFailure if the sink cannot be closed.
        """
        if self._closed:
            return
        self._closed = True
        os_trace(f"Closing buffer {self.name}. Final occupancy {self._occupancy}.")
        self.audit.close()
