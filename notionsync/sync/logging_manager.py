"""
JSON logging for sync runs.

Nodes, media downloads and the resolver sweep all run on scheduler worker
threads, so every record is one JSON object on stdout (and optionally a log
file) carrying the worker thread name. Records may pass
``extra={'details': {...}}``. When those details name the ``external_id`` of
the node or media item, or the ``job_id`` being worked on, the formatter lifts
them to top-level keys so one item can be followed across workers with a
plain filter. Level and log file come from SyncConfig.
"""

import logging
import sys
import json
from typing import Optional

# Detail keys promoted to the top level of each record
ITEM_KEYS = ('external_id', 'job_id')

class JsonFormatter(logging.Formatter):
    """One JSON object per record, with item keys lifted out of ``details``."""
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record['exc_info'] = self.formatException(record.exc_info)
        if hasattr(record, 'details'):
            log_record['details'] = record.details
            if isinstance(record.details, dict):
                for key in ITEM_KEYS:
                    if record.details.get(key):
                        log_record[key] = record.details[key]
        return json.dumps(log_record, ensure_ascii=False, default=str)

class LoggingManager:
    """
    Process-wide setup of the ``notionsync`` logger tree. The first instance
    configures handlers; later constructions return it unchanged.
    """
    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(LoggingManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, log_level: str = "INFO", log_file: Optional[str] = None):
        if hasattr(self, '_initialized') and self._initialized:
            return

        self.log_level = log_level.upper()
        self.log_file = log_file
        self.logger = logging.getLogger("notionsync")
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False  # Prevent duplicate logs in parent handlers

        if self.logger.hasHandlers():
            self.logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(JsonFormatter())
        self.logger.addHandler(console_handler)

        if self.log_file:
            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(JsonFormatter())
            self.logger.addHandler(file_handler)

        self._initialized = True

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        """
        Provides a logger with the correct configuration.
        """
        if not LoggingManager._instance:
            LoggingManager()
        return logging.getLogger(name)

def get_logger(name: str) -> logging.Logger:
    """
    Convenience function to get a logger instance.
    """
    return LoggingManager.get_logger(name)
