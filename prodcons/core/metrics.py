from dataclasses import dataclass, field
from typing import Any
import time

@dataclass(kw_only=True)
class LogEvent:
    """
    Base class for all loggable events in a run.

    ts_mono orders events across threads; ts is wall clock for display.
    """
    run_id: int
    subsystem: str
    ts: float = field(default_factory=time.time)
    ts_mono: float = field(default_factory=time.perf_counter)

@dataclass(kw_only=True)
class TickEvent(LogEvent):
    """
    One driver iteration (a single produce or consume call).

    Metrics
    - wait_ms: time spent inside the blocking call (semaphore + guard).
    - work_time_ms: whole iteration, pause excluded.
    """
    tick_seq: int
    wait_ms: float
    work_time_ms: float

@dataclass(kw_only=True)
class LockEvent(LogEvent):
    """
    Records contention on the buffer guard: time spent waiting and holding.
    """
    lock_name: str
    wait_ms: float
    held_ms: float
    context: str

@dataclass(kw_only=True)
class QueueStatEvent(LogEvent):
    """
    Records buffer occupancy.

    Metrics:
    - Size vs Capacity: utilization; size == capacity means the producer blocks.
    - Waiters: threads currently asleep on either semaphore.
    """
    queue_name: str
    size: int
    capacity: int
    waiters: int

@dataclass(kw_only=True)
class OperationEvent(LogEvent):
    """A committed produce/consume, captured while the guard was held."""
    role: str
    action: str
    seq: int
    occupancy: int
    slots_left: int

@dataclass(kw_only=True)
class MetricEvent(LogEvent):
    """
    Generic event: stalls, cancellations, run completion.
    """
    payload: dict[str, Any]
