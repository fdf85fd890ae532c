"""Process-wide logging setup."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Third-party loggers that are noisy at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "openai")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger with a console handler and an optional rotating file.

    Calling it again replaces the handlers installed by a previous call, so the
    application factory can be invoked more than once (tests do this).
    """
    numeric_level = getattr(logging, (level or "INFO").upper(), None)
    if not isinstance(numeric_level, int):
        logging.warning("[LOGGING] Invalid level %r, falling back to INFO", level)
        numeric_level = logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=1048576, backupCount=3, encoding="utf-8"))

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).debug("Logging configured at %s", logging.getLevelName(numeric_level))
