# utils/logging_config.py

import logging
import logging.handlers
import sys
from pathlib import Path
import json
from datetime import datetime

LOGGER_NAME = "photo_declutter"


def setup_logging(config) -> logging.Logger:
    """
    Setup application logging

    Console output at the configured level, a rotating text log and a
    rotating structured JSON log under config.log_dir.
    """
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, config.log_level.upper())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / f"{LOGGER_NAME}.log",
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))

    json_handler = logging.handlers.RotatingFileHandler(
        log_dir / f"{LOGGER_NAME}_structured.json",
        maxBytes=10*1024*1024,
        backupCount=5
    )
    json_handler.setLevel(logging.INFO)
    json_handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Replace handlers from an earlier call, leave foreign ones alone
    for handler in list(root.handlers):
        if getattr(handler, "_photo_declutter", False):
            root.removeHandler(handler)
            handler.close()

    for handler in (console_handler, file_handler, json_handler):
        handler._photo_declutter = True
        root.addHandler(handler)

    return logging.getLogger(LOGGER_NAME)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)
