import logging
import sys
import os
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Console formatter: one color per level, plain text when colors are off."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    COLORS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def __init__(self, use_color: bool = True) -> None:
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        message = super().format(record)
        color = self.COLORS.get(record.levelno)
        if not self.use_color or not color:
            return message
        return f"{color}{message}{self.reset}"


def setup_logging(level=logging.INFO, log_dir: str = "logs"):
    """
    Setup centralized logging: colored stderr (stdout carries the JSON
    Result) plus a dated file under `log_dir`. Pass log_dir="" to skip the file.
    """
    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"ci_engine_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for logger_name in ["ci_engine", "main"]:
        l = logging.getLogger(logger_name)
        l.setLevel(level)
        l.propagate = True

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    root_logger.info("Logging initialized (console%s).", " + file" if log_dir else "")
