import logging
import sys
from pathlib import Path

from smarthome.core.config import settings


def setup_logging() -> logging.Logger:
    """Setup application logging"""

    logger = logging.getLogger("smarthome")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    Path("logs").mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler("logs/application.log")

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    # handled here, keep it out of the basicConfig root handler
    logger.propagate = False

    return logger
