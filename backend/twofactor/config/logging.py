"""Logging configuration with JSON format support."""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

# Base32 secrets (16+ symbols) and bare 6-8 digit codes.
_SECRET_PATTERN = re.compile(r'\b[A-Z2-7]{16,}\b')
_CODE_PATTERN = re.compile(r'\b\d{6,8}\b')


def redact(message: str) -> str:
    message = _SECRET_PATTERN.sub('[REDACTED]', message)
    return _CODE_PATTERN.sub('[CODE]', message)


class RedactingFilter(logging.Filter):
    """Strip anything that looks like a TOTP secret or code from log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact(str(record.msg))
        if record.args:
            record.args = tuple(redact(arg) if isinstance(arg, str) else arg for arg in record.args)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for attr in ('user_id', 'action', 'state'):
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')


def configure_logging(level: str = 'INFO', format: str = 'text', redact_codes: bool = True) -> None:
    """Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        redact_codes: If True, mask anything shaped like a TOTP secret or code
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(JSONFormatter() if format.lower() == 'json' else TextFormatter())
    if redact_codes:
        console_handler.addFilter(RedactingFilter())
    root_logger.addHandler(console_handler)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
