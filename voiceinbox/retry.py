from datetime import datetime, timedelta


def backoff_delay(attempts: int, base: int, maximum: int) -> int:
    """
    Seconds to wait before the next attempt after `attempts` failures.
    Doubles from `base` and saturates at `maximum`:
    base=300, maximum=86400 -> 300, 600, 1200, ..., 38400, 76800, 86400, 86400, ...
    """
    if attempts <= 0:
        attempts = 1
    if base <= 0:
        base = 1
    if maximum <= 0:
        maximum = base

    delay = base
    for _ in range(attempts - 1):
        if delay >= maximum / 2:
            delay = maximum
            break
        delay *= 2
    return min(delay, maximum)


def next_retry_at(now: datetime, attempts: int, base: int, maximum: int) -> datetime:
    return now + timedelta(seconds=backoff_delay(attempts, base, maximum))
