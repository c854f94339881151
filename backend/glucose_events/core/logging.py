import logging
import os
from logging.config import dictConfig

FORMATS = {
    "structured": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
    # hosts that already stamp time and level on their own output
    "plain": "[%(name)s] %(message)s",
}

# chatty transport loggers underneath the Nightscout client
QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Routes the engine's loggers to one console handler.

    ``level`` and ``fmt`` fall back to ``LOG_LEVEL`` and ``LOG_FORMAT``. The
    host's own root configuration is left alone when the engine runs embedded.
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    log_format = (fmt or os.environ.get("LOG_FORMAT", "structured")).lower()
    if log_format not in FORMATS:
        raise RuntimeError(f"Unknown LOG_FORMAT {log_format!r}; expected one of {sorted(FORMATS)}")

    loggers = {"glucose_events": {"handlers": ["console"], "level": log_level, "propagate": False}}
    for name in QUIET_LOGGERS:
        loggers[name] = {"handlers": ["console"], "level": "WARNING", "propagate": False}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "engine": {
                    "format": FORMATS[log_format],
                    "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "engine",
                    "level": log_level,
                }
            },
            "loggers": loggers,
        }
    )
    logging.getLogger(__name__).debug("Logging configured", extra={"level": log_level, "format": log_format})


__all__ = ["configure_logging"]
