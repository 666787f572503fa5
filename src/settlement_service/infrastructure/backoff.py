import random


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff delay with up to 10% jitter for a zero-based attempt."""
    delay: float = min(base_delay * (2**attempt), max_delay)
    jitter: float = random.uniform(0, delay * 0.1)
    return delay + jitter
