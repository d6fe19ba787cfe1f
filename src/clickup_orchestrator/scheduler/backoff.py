"""Exponential backoff policy."""

from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Delays of base, base*factor, base*factor^2, ... capped at max_delay."""

    base: float
    max_delay: float
    factor: float = 2.0
    max_attempts: int | None = None
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        try:
            delay = min(self.base * (self.factor**self.attempt), self.max_delay)
        except OverflowError:
            delay = self.max_delay
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0
