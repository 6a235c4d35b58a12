"""One JSON line per ledger event.

Records are stamped with the correlation id, tenant and actor bound through
``farmledger.context.bind_actor``. Only ledger identifiers passed via ``extra=``
reach the output, so request payloads never leak into logs.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

from farmledger.context import current_actor


LEDGER_FIELDS = frozenset(
    {
        "posting_group_id",
        "source_type",
        "source_id",
        "crop_cycle_id",
        "settlement_id",
        "advance_offset",
        "reason",
        "status",
        "kind",
        "candidate_count",
        "error",
    }
)
ERROR_LIMIT = 500


class ActorContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in current_actor().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class LedgerJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {key: getattr(record, key) for key in sorted(LEDGER_FIELDS) if hasattr(record, key)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:ERROR_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "tenant_id": getattr(record, "tenant_id", None),
            "actor": getattr(record, "actor", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", stream: IO[str] | None = None) -> logging.Handler:
    """Attach the JSON handler to the root logger once; later calls only adjust the level."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in root_logger.handlers:
        if isinstance(handler.formatter, LedgerJsonFormatter):
            return handler

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(LedgerJsonFormatter())
    handler.addFilter(ActorContextFilter())
    root_logger.addHandler(handler)
    return handler
