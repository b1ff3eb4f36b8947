"""
Logging configuration for ClipGuard service.
"""
import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Per-request chatter from the HTTP clients used by backends and the consumer
NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "PIL")


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure stdout logging for the service and return the package logger."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    if not any(getattr(h, "_clipguard", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._clipguard = True
        root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    package_logger = logging.getLogger("clipguard")
    package_logger.setLevel(numeric_level)
    return package_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger under the clipguard namespace, e.g. get_logger("pipeline.orchestrator")."""
    return logging.getLogger(f"clipguard.{name}" if name else "clipguard")
