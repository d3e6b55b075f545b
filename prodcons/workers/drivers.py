import threading
import time
import logging
from dataclasses import dataclass
from typing import Optional

from prodcons.core.buffer import BoundedBuffer, Role
from prodcons.core.errors import CancelledOperation
from prodcons.core.metrics import TickEvent, MetricEvent
from prodcons.core.sync import CancelToken

logger = logging.getLogger("Driver")


@dataclass
class DriverResult:
    role: Role
    requested: int
    completed: int = 0
    cancelled: bool = False


def drive(buffer: BoundedBuffer, role: Role, count: int, interval: float,
          cancel: Optional[CancelToken] = None, telemetry=None) -> DriverResult:
    """
    Call produce() or consume() `count` times, pausing `interval` seconds after each call.

    PRODUCER / CONSUMER ROLE:
       The driver holds no synchronization logic of its own; every blocking
       and signalling decision lives in the buffer. The pause goes through
       the cancel token, so stop() interrupts a sleeping driver as well as
       one blocked on a semaphore.
    """
    cancel = cancel if cancel is not None else CancelToken()
    operation = buffer.produce if role is Role.PRODUCER else buffer.consume
    result = DriverResult(role=role, requested=count)

    logger.info(f"[{role.value}] Thread Started (TID: {threading.get_native_id()}), {count} call(s)")

    for seq in range(1, count + 1):
        loop_start = time.perf_counter()
        try:
            operation(cancel=cancel)
        except CancelledOperation:
            result.cancelled = True
            logger.info("%s interrompido após %d de %d operações", role.value, result.completed, count)
            _log_metric(telemetry, role, {"event": "cancelled", "completed": result.completed})
            break
        wait_ms = (time.perf_counter() - loop_start) * 1000.0
        result.completed += 1

        if telemetry is not None:
            telemetry.log(TickEvent(
                run_id=telemetry.run_id,
                subsystem=role.value,
                tick_seq=seq,
                wait_ms=wait_ms,
                work_time_ms=(time.perf_counter() - loop_start) * 1000.0,
            ))

        if interval > 0 and not cancel.sleep(interval):
            # Cancelled during the pause; the last call already completed.
            result.cancelled = seq < count
            if result.cancelled:
                logger.info("%s interrompido após %d de %d operações", role.value, result.completed, count)
            break

    logger.info(f"[{role.value}] Finished: {result.completed}/{count}")
    return result


def _log_metric(telemetry, role: Role, payload: dict):
    if telemetry is None:
        return
    telemetry.log(MetricEvent(run_id=telemetry.run_id, subsystem=role.value, payload=payload))


def producer_task(buffer: BoundedBuffer, count: int, interval: float,
                  cancel: Optional[CancelToken] = None, telemetry=None) -> DriverResult:
    return drive(buffer, Role.PRODUCER, count, interval, cancel, telemetry)


def consumer_task(buffer: BoundedBuffer, count: int, interval: float,
                  cancel: Optional[CancelToken] = None, telemetry=None) -> DriverResult:
    return drive(buffer, Role.CONSUMER, count, interval, cancel, telemetry)
