import logging
import sys
import threading
from typing import Iterable, Set

# Custom logging levels used by the pipeline runner
SUCCESS_LEVEL = 25
NOTICE_LEVEL = 35
FAILURE_LEVEL = 45

logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")
logging.addLevelName(NOTICE_LEVEL, "NOTICE")
logging.addLevelName(FAILURE_LEVEL, "FAILURE")

MASK = "***"

_secrets: Set[str] = set()
_secrets_lock = threading.Lock()


def register_secret(value: str) -> None:
    """
    Register a value that must never appear in log output.

    Values shorter than three characters are ignored; masking them would
    garble ordinary text.
    """
    if not value or len(value) < 3:
        return
    with _secrets_lock:
        _secrets.add(value)


def register_secrets(values: Iterable[str]) -> None:
    for value in values:
        register_secret(value)


def clear_secrets() -> None:
    with _secrets_lock:
        _secrets.clear()


def mask_secrets(text: str) -> str:
    """Replace every registered secret in ``text`` with ``***``."""
    if not text:
        return text
    with _secrets_lock:
        if not _secrets:
            return text
        # Longest first so a secret containing another one is masked whole
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, MASK)
    return text


class SecretMaskingFilter(logging.Filter):
    """Logging filter that scrubs registered secrets from records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds color codes to log messages based on log level."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "SUCCESS": "\033[92m",  # Bright Green
        "WARNING": "\033[33m",  # Yellow
        "NOTICE": "\033[96m",  # Bright Cyan
        "ERROR": "\033[31m",  # Red
        "FAILURE": "\033[91m",  # Bright Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        # Only add colors if output is to a terminal
        if sys.stderr.isatty():
            level_color = self.COLORS.get(record.levelname, "")
            reset_color = self.COLORS["RESET"]
            return f"{level_color}{message}{reset_color}"

        return message


def setup_colored_logging(level: int = logging.INFO) -> None:
    """
    Configure colored, secret-masking logging for the application.

    Args:
        level: Logging level (default: logging.INFO)
    """
    formatter = ColoredFormatter(
        fmt="%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecretMaskingFilter())
    root_logger.addHandler(console_handler)


class EnhancedLogger:
    """Logger wrapper with the pipeline's custom level methods."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, msg, *args, **kwargs):
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def success(self, msg, *args, **kwargs):
        """Log with SUCCESS level (bright green) - a step or job passed."""
        self._logger.log(SUCCESS_LEVEL, msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def notice(self, msg, *args, **kwargs):
        """Log with NOTICE level (bright cyan) - skipped work, trigger decisions."""
        self._logger.log(NOTICE_LEVEL, msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def failure(self, msg, *args, **kwargs):
        """Log with FAILURE level (bright red) - a step or job failed."""
        self._logger.log(FAILURE_LEVEL, msg, *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self._logger.critical(msg, *args, **kwargs)

    # Delegate other logger methods
    def __getattr__(self, name):
        return getattr(self._logger, name)


def get_colored_logger(name: str) -> EnhancedLogger:
    """
    Get an enhanced logger instance with the custom level methods.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Enhanced logger instance
    """
    return EnhancedLogger(logging.getLogger(name))
