import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Root logging for the service: console plus a size-capped file on the Pi's SD card."""
    root = logging.getLogger()
    level_name = (level or settings.log_level).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # lifespan may run more than once per process (tests, reloads)
    if getattr(root, "_spotwatch_configured", False):
        return
    root._spotwatch_configured = True

    fmt = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    path = settings.log_file if log_file is None else log_file
    if path:
        fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    # one line per PUT is already logged by the delivery client
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
