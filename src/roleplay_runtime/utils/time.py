import time


def get_current_timestamp() -> int:
    """Milliseconds since the Unix epoch."""
    return int(time.time() * 1000)
