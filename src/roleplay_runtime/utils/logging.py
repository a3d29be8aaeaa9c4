import sys

from loguru import logger


def setup_logging(level: str = "INFO", serialize: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink at 'level'.

    'serialize=True' emits one JSON object per line, which is what log collectors
    in a container deployment expect.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=serialize, enqueue=False, backtrace=False)
