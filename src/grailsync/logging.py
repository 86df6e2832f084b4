"""Structured logging configuration for grailsync.

Two rotating log files live under the configured log directory:

- ``app.log``: human-readable, every event
- ``sync.log``: JSON lines, only events from ``grailsync.sync.*`` loggers

Discogs credentials never reach either file: any event key that names a
token or secret is masked before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

APP_LOG = "app.log"
SYNC_LOG = "sync.log"

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")
_SECRET_KEYS = frozenset(
    {"token", "access_token", "token_secret", "consumer_secret", "oauth_signature", "authorization"}
)
_MASK = "***"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in event_dict:
        if key.lower() in _SECRET_KEYS and event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    _redact_credentials,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _file_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Route structlog through stdlib logging into the grailsync log files.

    Parameters
    ----------
    log_level:
        Level name such as ``debug`` or ``warning``; unknown names fall
        back to ``info``.
    log_dir:
        Where ``app.log`` and ``sync.log`` are written.  *None* installs
        no handlers, which keeps tests free of file output.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _file_handler(
                log_dir / APP_LOG,
                structlog.stdlib.ProcessorFormatter(
                    processor=structlog.dev.ConsoleRenderer(colors=False),
                    foreign_pre_chain=_shared_processors,
                ),
            )
        )

        sync_handler = _file_handler(
            log_dir / SYNC_LOG,
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=_shared_processors,
            ),
        )
        sync_handler.addFilter(logging.Filter("grailsync.sync"))
        root.addHandler(sync_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("grailsync").critical(
            "unhandled_exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]
