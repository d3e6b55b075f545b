from dataclasses import dataclass, fields
from typing import Optional

DEFAULT_LOG_PATH = "log_produtor_consumidor.txt"


@dataclass(frozen=True, kw_only=True)
class RunConfig:
    """Parameters of one producer/consumer run. Defaults reproduce the classic 7/15/12 demo."""
    capacity: int = 7
    produce_count: int = 15
    consume_count: int = 12
    producer_interval: float = 0.1
    consumer_interval: float = 0.15
    log_path: str = DEFAULT_LOG_PATH
    durable_log: bool = True
    telemetry_path: Optional[str] = None
    watchdog_interval: float = 2.0
    stall_after: float = 5.0
    trace: bool = False

    def validate(self) -> "RunConfig":
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.produce_count < 0 or self.consume_count < 0:
            raise ValueError("produce/consume counts must be >= 0")
        if self.consume_count > self.produce_count:
            # The consumer would block forever on its last calls.
            raise ValueError(
                f"consume_count ({self.consume_count}) cannot exceed produce_count ({self.produce_count})")
        if self.producer_interval < 0 or self.consumer_interval < 0:
            raise ValueError("intervals must be >= 0")
        if self.watchdog_interval <= 0 or self.stall_after <= 0:
            raise ValueError("watchdog_interval and stall_after must be > 0")
        return self

    @classmethod
    def from_args(cls, args) -> "RunConfig":
        """Build from an argparse namespace; attributes that are missing or None keep their default."""
        values = {}
        for f in fields(cls):
            value = getattr(args, f.name, None)
            if value is not None:
                values[f.name] = value
        return cls(**values).validate()
