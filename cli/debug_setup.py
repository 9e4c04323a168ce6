"""Logging setup for CLI"""

import logging
import os

from settings import LOG_LEVEL


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug: bool = False) -> None:
    """
    Configure the root logger

    Args:
        debug: Log everything at DEBUG to the console and append it to
            jwt_session_debug.log; otherwise log at LOG_LEVEL to the console
    """
    root_logger = logging.getLogger()

    # Clear existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if not debug:
        root_logger.setLevel(getattr(logging, str(LOG_LEVEL).upper(), logging.INFO))
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)
        return

    root_logger.setLevel(logging.DEBUG)

    log_file = os.path.abspath('jwt_session_debug.log')
    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    logging.getLogger(__name__).info(f"Debug logging enabled - appending to {log_file}")
