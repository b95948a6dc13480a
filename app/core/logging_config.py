"""
Logging setup for the relay.

Every record is written to stdout. In JSON mode each line carries
timestamp, level, service, request_id and message plus the emitting
module, function and line; WebSocket traffic and grace timers have no
HTTP request, so their records get request_id "no-request".

Modules log through the standard `logging.getLogger(__name__)`.
"""
import logging
import sys
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger

NO_REQUEST = "no-request"
JSON_FIELDS = "%(timestamp)s %(level)s %(service)s %(request_id)s %(message)s"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(request_id)s] %(name)s: %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps the service name and source location on each record."""

    def __init__(self, service_name: str, *args, **kwargs):
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['service'] = self.service_name
        log_record['request_id'] = getattr(record, 'request_id', NO_REQUEST)
        log_record['message'] = record.getMessage()
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


class LogContextFilter(logging.Filter):
    """Fills in request_id for records logged outside an HTTP request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'request_id'):
            record.request_id = NO_REQUEST
        return True


def configure_logging(service_name: str, level: str = "INFO", enable_json: bool = True) -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        service_name: Value of the "service" field in JSON records
        level: Root log level name; unknown names fall back to INFO
        enable_json: JSON lines when True, plain text for local runs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(LogContextFilter())
    if enable_json:
        handler.setFormatter(CustomJsonFormatter(service_name, fmt=JSON_FIELDS))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt='%H:%M:%S'))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Per-request access lines duplicate RequestIDMiddleware output
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('websockets').setLevel(logging.WARNING)
