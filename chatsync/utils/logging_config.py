from logging.config import dictConfig

from chatsync import config

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None, json_logs: bool | None = None):
    use_json = config.LOG_JSON if json_logs is None else json_logs
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
                "json": {
                    "format": '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if use_json else "default",
                },
            },
            "root": {
                "level": (level or config.LOG_LEVEL).upper(),
                "handlers": ["console"],
            },
            "loggers": {
                # the driver logs every heartbeat at debug
                "pymongo": {"level": "WARNING"},
            },
        }
    )
