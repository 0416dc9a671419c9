"""Logging configuration."""
import datetime
import json
import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

DEFAULT_LOG_LEVEL = "WARNING"
IGNORED_LOGGERS = [
    "aiohttp",
    "asyncio",
    "filelock",
]


def add_timestamp(_, __, event_dict: EventDict) -> EventDict:
    """Add ISO timestamp to the event dict."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return event_dict


def level_filter(min_level: str) -> Processor:
    """Drop events below ``min_level`` and events from noisy third-party loggers."""
    min_level_no = getattr(logging, min_level)

    def _filter(logger: Any, name: str, event_dict: EventDict) -> EventDict:
        logger_name = getattr(logger, "name", "") or ""
        if any(ignored in logger_name for ignored in IGNORED_LOGGERS):
            raise structlog.DropEvent
        level_no = getattr(logging, event_dict.get("level", name).upper(), logging.NOTSET)
        if level_no < min_level_no:
            raise structlog.DropEvent
        return event_dict

    return _filter


class CompactJSONRenderer:
    """Single-line JSON renderer with minimal output."""
    def __call__(self, _: Any, __: str, event_dict: EventDict) -> str:
        items = {
            "ts": event_dict.pop("timestamp", None),
            "lvl": event_dict.pop("level", "???"),
            "msg": event_dict.pop("event", ""),
        }
        event_dict.pop("logger", None)
        if event_dict:
            items["data"] = event_dict
        return json.dumps(items, separators=(",", ":"), default=str)


def configure_logging(level: str = DEFAULT_LOG_LEVEL, json_output: bool | None = None) -> None:
    """Configure structured logging for the application.

    Everything goes to STDERR so command output on STDOUT stays clean:
    - interactive terminals get the colored console renderer
    - pipes and files get compact single-line JSON
    """
    level = level.upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level),
        force=True,
    )

    if json_output is None:
        json_output = not sys.stderr.isatty()

    processors: List[Processor] = [
        structlog.stdlib.add_log_level,
        level_filter(level),
        structlog.stdlib.add_logger_name,
        add_timestamp,
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(CompactJSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
