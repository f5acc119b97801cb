import os
from logging import config, getLevelName, getLogger
from typing import Any

LOGGER_NAME = "goip"
LOG_FORMATS = ("console", "plain")


def build_log_config(level: str = "INFO", fmt: str = "console") -> dict[str, Any]:
    """Return a dictConfig for the service logger and uvicorn's loggers.

    `console` colours the level prefix, `plain` leaves it uncoloured for log collectors.
    """
    log_level = getLevelName(level.upper())  # DEBUG, WARNING, ERROR
    use_colors = fmt != "plain"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(levelprefix)s %(asctime)s - %(client_addr)s - "%(request_line)s" %(status_code)s',
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": use_colors,
            },
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": use_colors,
            },
        },
        "handlers": {
            "access": {"class": "logging.StreamHandler", "formatter": "access", "stream": "ext://sys.stdout"},
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            LOGGER_NAME: {"handlers": ["default"], "level": log_level, "propagate": False},
            "uvicorn": {"handlers": ["default"], "level": log_level, "propagate": True},
            # Our middleware writes its own access lines with request ids.
            "uvicorn.access": {"handlers": ["access"], "level": "WARNING", "propagate": False},
            "uvicorn.error": {"level": log_level, "propagate": False},
        },
    }


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    config.dictConfig(build_log_config(level, fmt))


# Apply the environment-driven configuration at import; the app re-applies it from settings.
configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "console"))

logger = getLogger(LOGGER_NAME)
