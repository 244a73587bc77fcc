# src/pgwd/log.py

"""
Structured logging for pgwd.

Every component logs through the same two calls the Cloud Logging client
exposes: `log_struct(payload, severity=...)` and `log_text(text, severity=...)`.

Two backends:
- Cloud Logging API (`google.cloud.logging.Client().logger(...)`), for runs on
  GCP with credentials available.
- StructuredLogHandler on stderr (default). Emits the JSON line format the
  Cloud Logging agent parses, so no credentials are needed locally or in a pod.
"""

import logging
import sys
from typing import Dict, Optional

from google.cloud import logging as gcp_logging
from google.cloud.logging.handlers import StructuredLogHandler

LOGGER_NAME = 'pgwd'

_SEVERITY_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'NOTICE': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
    'ALERT': logging.CRITICAL,
    'EMERGENCY': logging.CRITICAL,
}


class StructuredLogger:
    """Cloud Logging logger interface over a stdlib logger."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log_struct(self, info: Dict, severity: str = 'INFO'):
        level = _SEVERITY_LEVELS.get(severity.upper(), logging.INFO)
        message = info.get('message') or info.get('event', '')
        self._logger.log(level, message, extra={'json_fields': dict(info)})

    def log_text(self, text: str, severity: str = 'INFO'):
        level = _SEVERITY_LEVELS.get(severity.upper(), logging.INFO)
        self._logger.log(level, text)


def get_logger(use_cloud_api: bool = False, level: str = 'INFO',
               stream=None, labels: Optional[Dict[str, str]] = None):
    """Returns an object with `log_struct` / `log_text`."""
    if use_cloud_api:
        return gcp_logging.Client().logger(LOGGER_NAME, labels=labels)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_SEVERITY_LEVELS.get(level.upper(), logging.INFO))
    logger.propagate = False
    if not any(isinstance(h, StructuredLogHandler) for h in logger.handlers):
        logger.addHandler(StructuredLogHandler(labels=labels, stream=stream or sys.stderr))
    return StructuredLogger(logger)
