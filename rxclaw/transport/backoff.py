"""Reconnect backoff schedule."""

from dataclasses import dataclass

DEFAULT_SCHEDULE: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 15.0, 30.0, 60.0)


@dataclass
class BackoffPolicy:
    """Stepped reconnect delays indexed by an attempt counter.

    Attributes:
        schedule: Delays in seconds, non-decreasing. Attempts past the end
            reuse the last value.
        attempts: Failed attempts since the last successful connection.
    """

    schedule: tuple[float, ...] = DEFAULT_SCHEDULE
    attempts: int = 0

    def __post_init__(self) -> None:
        if not self.schedule:
            raise ValueError("Backoff schedule must not be empty")
        if any(later < earlier for earlier, later in zip(self.schedule, self.schedule[1:])):
            raise ValueError(f"Backoff schedule must be non-decreasing: {self.schedule}")
        self.schedule = tuple(float(s) for s in self.schedule)

    def get_delay(self, attempt: int) -> float:
        """Delay for the given 0-indexed attempt, capped at the last step."""
        return self.schedule[min(max(attempt, 0), len(self.schedule) - 1)]

    def next_delay(self) -> float:
        """Delay for the upcoming attempt; advances the counter."""
        delay = self.get_delay(self.attempts)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        """Called whenever a transport opens."""
        self.attempts = 0
