"""Shared fixtures: in-memory audit sinks and a telemetry recorder."""

import re
import threading

import pytest

from prodcons.core.errors import LogWriteFailure

RECORD_RE = re.compile(
    r"^(Produtor|Consumidor) - (Inserido|Consumido) um item no buffer – espaços disponíveis: (\d+)$"
)


class MemoryAudit:
    """Audit sink that keeps lines in memory."""

    def __init__(self):
        self.lines = []
        self.closed = False
        self._lock = threading.Lock()

    def write(self, line):
        with self._lock:
            self.lines.append(line)

    def close(self):
        self.closed = True


class FailingAudit(MemoryAudit):
    """Audit sink whose writes always fail."""

    def write(self, line):
        raise LogWriteFailure("disk full")


class RecordingTelemetry:
    """Stands in for SqlLogger: keeps every event in a list."""

    run_id = 42

    def __init__(self):
        self.events = []

    def log(self, event):
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


def replay(lines, capacity):
    """Re-apply audit lines in file order and check every reported free-slot count.

    Returns the final occupancy.
    """
    occupancy = 0
    for line in lines:
        match = RECORD_RE.match(line)
        assert match, f"malformed audit line: {line!r}"
        role, action, slots_left = match.group(1), match.group(2), int(match.group(3))
        assert (role == "Produtor") == (action == "Inserido")
        occupancy += 1 if action == "Inserido" else -1
        assert 0 <= occupancy <= capacity
        assert slots_left == capacity - occupancy
    return occupancy


@pytest.fixture
def audit():
    return MemoryAudit()


@pytest.fixture
def failing_audit():
    return FailingAudit()


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def replay_audit():
    return replay
