import random


def backoff_delay(
    attempt: int,
    *,
    base: float = 0.5,
    factor: float = 2.0,
    jitter: float = 0.2,
    cap: float | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based), with +/- ``jitter`` spread."""
    delay = base * factor ** max(attempt - 1, 0)
    if cap is not None:
        delay = min(delay, cap)
    if jitter:
        delay *= random.uniform(1 - jitter, 1 + jitter)
    return delay
