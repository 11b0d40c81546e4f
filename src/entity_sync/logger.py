import json
import logging
import os
import sys

from .config_schema import LoggingConfig

_TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured run logs.

    Produces one JSON object per log record with fields: ts, level, logger, msg.
    Extra attributes attached by the run reporter (``sync_outcome``) are
    merged in as an "outcome" field, and exception info as "exc".
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        outcome = getattr(record, "sync_outcome", None)
        if outcome is not None:
            entry["outcome"] = outcome
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=_DATE_FORMAT)
    return logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging based on execution mode.

    Args:
        mode: "service" for scheduled/background runs (file only, never
            stdout), "cli" for interactive runs (stderr, optionally a file).
        debug: If True, overrides LOG_LEVEL to DEBUG.
        log_file: Custom log file path (overrides ENTITY_SYNC_LOG_FILE).
        log_format: "text" (default) or "json" for structured output.
        level: Configured level name, used when LOG_LEVEL is not set.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: *level*, else WARNING for service mode and
                   INFO for CLI mode.
        ENTITY_SYNC_LOG_FILE: Log file path for service mode.
                  Default: /tmp/entity-sync.log
    """
    default_level = level or ("WARNING" if mode == "service" else "INFO")
    env_level = os.getenv("LOG_LEVEL", default_level).upper()

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []

    if mode == "service":
        # Priority: log_file param > ENTITY_SYNC_LOG_FILE env var > default
        final_log_file = log_file or os.getenv(
            "ENTITY_SYNC_LOG_FILE", "/tmp/entity-sync.log"
        )
        file_handler = logging.FileHandler(final_log_file, mode="a")
        file_handler.setFormatter(_make_formatter(log_format))
        handlers.append(file_handler)
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(_make_formatter(log_format))
        handlers.append(stderr_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(_make_formatter(log_format))
            handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
    )

    # Silence chatty transport libraries used by concrete repositories
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_logging_from_config(
    config: LoggingConfig, mode: str = "cli", debug: bool = False
) -> None:
    """Configure logging from the ``logging`` section of the unified config."""
    setup_logging(
        mode=mode,
        debug=debug,
        log_file=config.file,
        log_format=config.format,
        level=config.level,
    )
