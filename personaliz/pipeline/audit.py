"""
Audit Log: append-only event trail per request.

Every component writes here; nobody reads it except the status surface and
the admin views. A failed write is reported to the process log and dropped:
it must never abort generation or delivery.
"""

import json
import logging
from typing import Any, Optional

from .models import LogType, RequestLog
from .store import RequestStore

logger = logging.getLogger(__name__)


def _jsonable(data: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    # Payloads come from provider responses; coerce anything odd to strings
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))


class AuditLog:

    def __init__(self, store: RequestStore):
        self._store = store

    def record(
        self,
        request_id: str,
        log_type: LogType,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[RequestLog]:
        """Append one entry. Returns None if the write failed."""
        try:
            entry = RequestLog(
                request_id=request_id,
                log_type=log_type,
                message=message,
                data=_jsonable(data),
            )
            self._store.append_log(entry)
        except Exception as e:
            logger.error(f"Failed to write audit log for request {request_id}: {e}", exc_info=True)
            return None

        if log_type is LogType.ERROR:
            logger.warning(f"[{request_id}] [{log_type.value}] {message} {data or ''}")
        else:
            logger.info(f"[{request_id}] [{log_type.value}] {message} {data or ''}")
        return entry

    def history(self, request_id: str, limit: Optional[int] = None) -> list[RequestLog]:
        """Entries newest first. Read failures degrade to an empty trail."""
        try:
            return self._store.list_logs(request_id, limit=limit)
        except Exception as e:
            logger.error(f"Failed to read audit log for request {request_id}: {e}")
            return []
