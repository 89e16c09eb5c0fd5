import logging.config


def configure_logging(level: str = "INFO") -> None:
    """Install a single console handler for the app and uvicorn loggers."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "taskboard": {"handlers": ["console"], "level": level.upper(), "propagate": False},
                "uvicorn.error": {"level": level.upper()},
            },
            "root": {"handlers": ["console"], "level": "WARNING"},
        }
    )
