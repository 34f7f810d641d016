import logging
import sys

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(module)s %(lineno)d %(message)s"


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Handler:
    """
    Configures the root logger with a single stdout handler.
    Uses python-json-logger when log_format is 'json', plain text otherwise.
    """
    root_logger = logging.getLogger()
    # Clear any existing handlers
    root_logger.handlers = []

    log_handler = logging.StreamHandler(sys.stdout)
    if log_format.lower() == "json":
        formatter = jsonlogger.JsonFormatter(
            JSON_FORMAT,
            rename_fields={
                "levelname": "level",
                "asctime": "timestamp",
            },
        )
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    log_handler.setFormatter(formatter)
    root_logger.addHandler(log_handler)
    root_logger.setLevel(level.upper())

    # Re-apply to uvicorn loggers so they match our format
    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(log_handler)
        uvicorn_logger.propagate = False

    return log_handler
