"""
Structured logging for the API and the analysis workers.

Every record is enriched with the current log context (request id, worker,
job and capture ids), which lives in a ContextVar so each asyncio task keeps
its own. Keyword arguments passed to a StructuredLogger call become fields of
the JSON document.
"""

import json
import logging
import logging.config
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

_context: ContextVar[Dict[str, Any]] = ContextVar('capture_analysis_log_context', default={})

CONTEXT_FIELDS = ('request_id', 'operation', 'worker_id', 'job_id', 'item_id')

# Present on every LogRecord; anything else was passed in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

# Third-party loggers and the level they are capped at
_QUIET_LOGGERS = {
    'uvicorn': 'INFO',
    'uvicorn.access': 'WARNING',
    'sqlalchemy': 'WARNING',
    'apscheduler': 'WARNING',
    'httpx': 'WARNING',
    'openai': 'WARNING',
}


class ContextFilter(logging.Filter):
    """Copies the active log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.request_id = getattr(record, 'request_id', '-')
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        document: Dict[str, Any] = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        fields = {
            key: value for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith('_')
        }
        for key in CONTEXT_FIELDS:
            if key in fields:
                document[key] = fields.pop(key)
        if fields:
            document['extra'] = fields

        if record.exc_info and record.exc_info[0] is not None:
            document['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }

        return json.dumps(document, default=str)


class ContextManager:
    """Read and update the per-task log context."""

    @staticmethod
    def set_context(**values) -> None:
        merged = dict(_context.get())
        merged.update(values)
        _context.set(merged)

    @staticmethod
    def get_context() -> Dict[str, Any]:
        return _context.get()

    @staticmethod
    def clear_context() -> None:
        _context.set({})

    @staticmethod
    def generate_request_id() -> str:
        return uuid.uuid4().hex


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger for either JSON or plain-text output."""
    if log_format.lower() == "json":
        formatter: Dict[str, Any] = {'()': JSONFormatter}
    else:
        formatter = {
            'format': "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s] %(message)s",
        }

    loggers: Dict[str, Dict[str, Any]] = {
        name: {'level': level, 'handlers': ['console'], 'propagate': False}
        for name, level in _QUIET_LOGGERS.items()
    }
    loggers['capture_analysis'] = {'level': log_level, 'handlers': ['console'], 'propagate': False}

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {'default': formatter},
        'filters': {'context': {'()': ContextFilter}},
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'default',
                'filters': ['context'],
                'stream': 'ext://sys.stdout',
            }
        },
        'root': {'level': log_level, 'handlers': ['console']},
        'loggers': loggers,
    })


class StructuredLogger:
    """Thin wrapper over logging.Logger; keyword arguments become record fields."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: Optional[Any] = None, **fields) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = dict(_context.get())
        extra.update(fields)
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields) -> None:
        self._log(logging.CRITICAL, message, **fields)

    def exception(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, exc_info=True, **fields)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)
