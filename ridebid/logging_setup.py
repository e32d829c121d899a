import logging
from pathlib import Path

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def configure_logging(log_file: str | None = None, level: int | str | None = None):
    """Send marketplace logs to a file.

    The path and level come from the ``logging`` section of
    application.yaml unless given; relative paths land in ``ridebid/logs``.
    """
    logs_dir = Path(__file__).resolve().parent / "logs"
    target = Path(log_file or settings.LOG_FILE)
    if not target.is_absolute():
        target = logs_dir / target
    target.parent.mkdir(parents=True, exist_ok=True)

    level = level or settings.LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logging.basicConfig(filename=str(target), level=level, format=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
