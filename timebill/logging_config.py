"""
Logging configuration for timebill
"""

import logging
import logging.config
import sys
from typing import Any, Dict

from timebill import config


def setup_logging(level: str = None):
    """Configure console logging for the application and uvicorn."""
    level = (level or config.LOG_LEVEL).upper()

    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "simple": {
                "format": "%(levelname)s | %(name)s | %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if config.APP_ENV == "production" else "simple",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "timebill": {
                "level": level,
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"]
        }
    }

    logging.config.dictConfig(logging_config)
    logging.getLogger(__name__).debug("Logging configured at level %s", level)
