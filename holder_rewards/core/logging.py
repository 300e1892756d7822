"""
Structured logging setup using structlog.
Provides consistent logging across all modules.
"""

import sys
import time
import logging
from typing import Any, Dict, Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import settings


def setup_logging(log_file: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_file: Optional path to log file
    """
    # Clear any existing handlers
    logging.getLogger().handlers.clear()

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level)
    handlers = []

    # Console handler with Rich for development
    if settings.is_development and settings.log_format != "json":
        console = Console(file=sys.stderr)
        rich_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=True,
            rich_tracebacks=True,
            tracebacks_show_locals=True
        )
        rich_handler.setLevel(level)
        handlers.append(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(_build_formatter())
        handlers.append(stream_handler)

    if log_file or settings.log_file:
        file_path = Path(log_file or settings.log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(_build_formatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_formatter() -> logging.Formatter:
    if settings.log_format == "json":
        return logging.Formatter('%(message)s')
    return logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


class RateLimitLogger:
    """
    Throttles repeated rate-limit warnings so a flapping RPC endpoint
    does not flood the logs.

    Each distinct message (message + sorted context) is logged at most
    ``max_logs_per_message`` times per window, then a single suppression
    notice is emitted until the window expires.
    """

    def __init__(
        self,
        max_logs_per_message: int = 3,
        window_seconds: float = 60.0,
        clock=time.monotonic
    ):
        self.max_logs_per_message = max_logs_per_message
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger(__name__).bind(service="rate_limit_logger")

    def log(self, message: str, **context: Any) -> bool:
        """Log a warning unless it is suppressed. Returns True when emitted."""
        now = self._clock()
        self._cleanup(now)

        key = self._message_key(message, context)
        entry = self._entries.get(key)

        if entry is None or now - entry["first_seen"] > self.window_seconds:
            self._entries[key] = {"count": 1, "first_seen": now, "last_seen": now}
            self.logger.warning(message, **context)
            return True

        entry["count"] += 1
        entry["last_seen"] = now

        if entry["count"] <= self.max_logs_per_message:
            self.logger.warning(f"[{entry['count']}x] {message}", **context)
            return True

        if entry["count"] == self.max_logs_per_message + 1:
            self.logger.warning(
                "Suppressing further messages",
                suppressed_message=message,
                logged_times=self.max_logs_per_message
            )
        return False

    def summary(self) -> Dict[str, Any]:
        entries = sorted(self._entries.items(), key=lambda item: -item[1]["count"])
        return {
            "tracked_messages": len(entries),
            "suppressed_messages": sum(
                1 for _, e in entries if e["count"] > self.max_logs_per_message
            ),
            "top": [{"message": k, "count": e["count"]} for k, e in entries[:5]],
        }

    def reset(self) -> None:
        self._entries.clear()

    @staticmethod
    def _message_key(message: str, context: Dict[str, Any]) -> str:
        if not context:
            return message
        parts = "|".join(f"{k}:{context[k]}" for k in sorted(context))
        return f"{message}|{parts}"

    def _cleanup(self, now: float) -> None:
        expired = [
            key for key, entry in self._entries.items()
            if now - entry["last_seen"] > self.window_seconds
        ]
        for key in expired:
            del self._entries[key]


# Module-level logger for this file
logger = get_logger(__name__)
