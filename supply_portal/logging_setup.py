from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from supply_portal.config import settings
from supply_portal.request_context import get_request_id, get_user_id

_EXTRA_FIELDS = ('endpoint', 'method', 'status_code', 'duration_ms', 'order_id', 'discrepancy_id', 'event_type')


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'request_id': getattr(record, 'request_id', None) or get_request_id(),
            'user_id': getattr(record, 'user_id', None) or get_user_id(),
            'module': record.name,
            'message': record.getMessage(),
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None) -> None:
    log_level = (level or settings.log_level).upper()
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter('%(message)s'))
    root_logger.addHandler(handler)

    for logger_name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
        logging.getLogger(logger_name).setLevel(log_level)
