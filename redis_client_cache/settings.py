import logging.config
import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    REDIS_HOST = str(os.getenv("REDIS_HOST", "localhost"))
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))

    # handshake retry policy for newly created connections
    CONNECT_RETRIES = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
    CONNECT_BACKOFF_CAP = float(os.getenv("REDIS_CONNECT_BACKOFF_CAP", "1.0"))
    CONNECT_BACKOFF_BASE = float(os.getenv("REDIS_CONNECT_BACKOFF_BASE", "0.05"))

    LOG_LEVEL = str(os.getenv("REDIS_CLIENT_CACHE_LOG_LEVEL", "WARNING")).upper()
    LOG_COLOR = os.getenv("REDIS_CLIENT_CACHE_LOG_COLOR", "").lower() in ("1", "true", "yes")


# logging
COLORS = {
    "HEADER": "\033[95m",
    "INFO": "\033[92m",
    "DEBUG": "\033[94m",
    "WARNING": "\033[93m",
    "ERROR": "\033[95m",
    "CRITICAL": "\033[91m",
    "ENDC": "\033[0m",
}


class ColorFulFormatColMixin:
    def format_col(self, message_str: str, level_name: str):
        if level_name in COLORS:
            message_str = COLORS.get(level_name) + message_str + COLORS.get("ENDC")
        return message_str


class ColorfulFormatter(logging.Formatter, ColorFulFormatColMixin):
    def format(self, record: logging.LogRecord):
        message_str = super().format(record)

        return self.format_col(message_str, level_name=record.levelname)


def init_log(log_level: str, colorful: bool = False):
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s [%(levelname)s][%(funcName)s]: %(message)s (%(filename)s:%(lineno)s)",
            },
            "colorful_console": {
                "format": "%(asctime)s | %(levelname)s: %(message)s (%(filename)s:%(lineno)s) (%(process)s)",
                "()": ColorfulFormatter,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "colorful_console",
            },
            "no_color_console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "redis_client_cache": {
                "handlers": ["console" if colorful else "no_color_console"],
                "level": log_level,
                "propagate": False,
            },
        },
    }
    logging.config.dictConfig(logging_config)


init_log(Config.LOG_LEVEL, Config.LOG_COLOR)
