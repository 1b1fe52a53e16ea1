import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the root logger for the relay server.

    Logs always go to stdout; when log_file is given they are mirrored to that file.
    Calling this more than once replaces the handlers installed by the previous call.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_relay_handler", False):
            root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._relay_handler = True
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler._relay_handler = True
        root.addHandler(file_handler)

    # uvicorn access logs are noisy at DEBUG
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
