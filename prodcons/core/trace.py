import threading
import time
from typing import Callable, Optional

TRACE_ENABLED = False

def _print_sink(entry: str):
    print(entry, flush=True)

_sink: Callable[[str], None] = _print_sink

def enable(sink: Optional[Callable[[str], None]] = None):
    """Turn on low level tracing. The dashboard passes its own sink to capture lines."""
    global TRACE_ENABLED, _sink
    TRACE_ENABLED = True
    if sink is not None:
        _sink = sink

def disable():
    global TRACE_ENABLED, _sink
    TRACE_ENABLED = False
    _sink = _print_sink

def os_trace(msg):
    #prints low level synchronization events for demonstration and analysis.
    if not TRACE_ENABLED:
        return
    _sink(f"[OS-TRACE] {time.time():.4f} | {threading.current_thread().name:<15} | {msg}")
