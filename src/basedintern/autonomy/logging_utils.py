import logging
import os
import sys
import time
from typing import List, Optional, TextIO, Tuple

from .config import Config


LOGGER_NAME = "basedintern.autonomy"
LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}

# (substrings, tag, color); first match wins, so more specific phases go first.
PHASES: List[Tuple[Tuple[str, ...], str, str]] = [
    (("Recovered state", "State file unreadable"), "STATE RECOVERY", "\033[31m"),
    (("reason=circuit_open", "Circuit breaker tripped"), "CIRCUIT OPEN", "\033[35m"),
    (("Tick skipped",), "TICK SKIPPED", "\033[33m"),
    (("Guardrails blocked",), "GUARDRAIL", "\033[36m"),
    (("TRADE EXECUTED",), "TRADE", "\033[32m"),
]


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def phase_tag(message: str) -> Optional[Tuple[str, str]]:
    for markers, tag, color in PHASES:
        if any(marker in message for marker in markers):
            return tag, color
    return None


def _stream_supports_color(stream: TextIO) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR", "").strip().lower() in {"1", "true", "yes"}:
        return True
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class UtcFormatter(logging.Formatter):
    converter = time.gmtime


class ColorFormatter(UtcFormatter):
    """Tags the phases an operator scans for during a deploy."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _LEVEL_COLORS.get(record.levelname.upper())
        if not color:
            return message
        tagged = phase_tag(record.getMessage())
        if tagged:
            tag, tag_color = tagged
            return f"{_BOLD}{tag_color}[{tag}] {message}{_RESET}"
        if "Sleeping seconds=" in message:
            return f"{_DIM}{color}{message}{_RESET}"
        return f"{color}{message}{_RESET}"


def setup_logging(cfg: Config, stream: Optional[TextIO] = None) -> logging.Logger:
    if stream is None:
        stream = sys.stderr
    logger = get_logger()
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = False

    plain = UtcFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    stream_handler = logging.StreamHandler(stream)
    if _stream_supports_color(stream):
        stream_handler.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    else:
        stream_handler.setFormatter(plain)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(plain)
        logger.addHandler(file_handler)

    return logger
