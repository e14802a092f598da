import logging
import os
import sys
from pathlib import Path

LOGGER_NAME = "pastecdn"


def setup_logger():
    logger = logging.getLogger(LOGGER_NAME)
    # Every module calls this at import time; configure handlers only once
    if logger.handlers:
        return logger

    # Create logs directory if it doesn't exist
    logs_dir = Path(os.getenv("PASTECDN_LOGS_DIR", "logs"))
    logs_dir.mkdir(exist_ok=True, parents=True)

    level = os.getenv("PASTECDN_LOG_LEVEL", "DEBUG").upper()
    logger.setLevel(level)
    logger.propagate = False

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(logs_dir / "pastecdn.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger
