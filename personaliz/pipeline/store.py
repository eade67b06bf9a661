"""
Request store: durable keyed storage for requests, their logs and the
presenter catalog.

Two backends share one interface:
  InMemoryRequestStore  - development and tests, lost on restart
  SupabaseRequestStore  - tables `video_requests`, `request_logs`, `actors`

`update_request` takes an optional `expected` mapping that must still match
the stored row for the write to land (compare-and-set). The state machine
relies on it to keep concurrent writers from regressing a status.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from supabase import Client, create_client

from .models import Presenter, RequestLog, VideoRequest

logger = logging.getLogger(__name__)


class RequestStore(ABC):

    # ── Requests ─────────────────────────────────────────────────────────

    @abstractmethod
    def create_request(self, request: VideoRequest) -> VideoRequest: ...

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[VideoRequest]: ...

    @abstractmethod
    def find_by_generation_job_id(self, job_id: str) -> Optional[VideoRequest]: ...

    @abstractmethod
    def find_by_delivery_message_id(self, message_id: str) -> Optional[VideoRequest]: ...

    @abstractmethod
    def update_request(
        self,
        request_id: str,
        changes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[VideoRequest]:
        """Apply `changes`; return None if the row is gone or `expected` no longer matches."""

    @abstractmethod
    def list_requests(
        self,
        generation_status: Optional[str] = None,
        delivery_status: Optional[str] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[VideoRequest], int]:
        """Newest first. Returns (page, total matching)."""

    # ── Logs ─────────────────────────────────────────────────────────────

    @abstractmethod
    def append_log(self, entry: RequestLog) -> RequestLog: ...

    @abstractmethod
    def list_logs(self, request_id: str, limit: Optional[int] = None) -> list[RequestLog]:
        """Newest first."""

    # ── Presenters ───────────────────────────────────────────────────────

    @abstractmethod
    def get_presenter(self, actor_id: str) -> Optional[Presenter]: ...

    @abstractmethod
    def list_presenters(self) -> list[Presenter]: ...

    @abstractmethod
    def add_presenter(self, presenter: Presenter) -> None: ...

    def ping(self) -> bool:
        return True


def _matches_search(request: VideoRequest, search: str) -> bool:
    needle = search.lower()
    return (
        needle in request.user_name.lower()
        or needle in request.user_city.lower()
        or search in request.user_phone
    )


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryRequestStore(RequestStore):
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: dict[str, VideoRequest] = {}
        self._logs: dict[str, list[RequestLog]] = {}
        self._presenters: dict[str, Presenter] = {}

    def create_request(self, request: VideoRequest) -> VideoRequest:
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Duplicate request id {request.id}")
            self._requests[request.id] = request.model_copy(deep=True)
            self._logs[request.id] = []
        return request

    def get_request(self, request_id: str) -> Optional[VideoRequest]:
        with self._lock:
            row = self._requests.get(request_id)
            return row.model_copy(deep=True) if row else None

    def _find_by(self, field: str, value: str) -> Optional[VideoRequest]:
        with self._lock:
            for row in self._requests.values():
                if getattr(row, field) == value:
                    return row.model_copy(deep=True)
        return None

    def find_by_generation_job_id(self, job_id: str) -> Optional[VideoRequest]:
        return self._find_by("generation_job_id", job_id)

    def find_by_delivery_message_id(self, message_id: str) -> Optional[VideoRequest]:
        return self._find_by("delivery_message_id", message_id)

    def update_request(self, request_id, changes, expected=None):
        with self._lock:
            row = self._requests.get(request_id)
            if row is None:
                return None
            current = row.model_dump()
            for key, value in (expected or {}).items():
                if current.get(key) != value:
                    return None
            updated = row.model_copy(update=changes)
            # Re-validate so enum fields stay enums after a raw-string update
            updated = VideoRequest.model_validate(updated.model_dump())
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    def list_requests(
        self,
        generation_status=None,
        delivery_status=None,
        search=None,
        created_from=None,
        created_to=None,
        offset=0,
        limit=None,
    ):
        with self._lock:
            rows = list(self._requests.values())

        if generation_status:
            rows = [r for r in rows if r.generation_status.value == generation_status]
        if delivery_status:
            rows = [r for r in rows if r.delivery_status.value == delivery_status]
        if search:
            rows = [r for r in rows if _matches_search(r, search)]
        if created_from:
            rows = [r for r in rows if r.created_at >= created_from]
        if created_to:
            rows = [r for r in rows if r.created_at <= created_to]

        rows.sort(key=lambda r: r.created_at, reverse=True)
        total = len(rows)
        end = None if limit is None else offset + limit
        return [r.model_copy(deep=True) for r in rows[offset:end]], total

    def append_log(self, entry: RequestLog) -> RequestLog:
        with self._lock:
            if entry.request_id not in self._requests:
                raise KeyError(f"Unknown request {entry.request_id}")
            self._logs[entry.request_id].append(entry)
        return entry

    def list_logs(self, request_id: str, limit: Optional[int] = None) -> list[RequestLog]:
        with self._lock:
            # Insertion order breaks created_at ties
            entries = list(reversed(self._logs.get(request_id, [])))
        return entries if limit is None else entries[:limit]

    def get_presenter(self, actor_id: str) -> Optional[Presenter]:
        with self._lock:
            return self._presenters.get(actor_id)

    def list_presenters(self) -> list[Presenter]:
        with self._lock:
            return sorted(self._presenters.values(), key=lambda p: p.name)

    def add_presenter(self, presenter: Presenter) -> None:
        with self._lock:
            self._presenters[presenter.id] = presenter


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

REQUESTS_TABLE = "video_requests"
LOGS_TABLE = "request_logs"
ACTORS_TABLE = "actors"


def _quoted_pattern(term: str) -> str:
    """
    A `%term%` match value for a PostgREST `or` filter.

    Double-quoted so commas, dots and parentheses in the search text stay
    part of the value instead of splitting the filter.
    """
    escaped = term.replace("\\", "\\\\").replace('"', '\\"')
    return f'"%{escaped}%"'


class SupabaseRequestStore(RequestStore):
    """Supabase/PostgREST store using the service role key (bypasses RLS)."""

    def __init__(self, url: str, service_role_key: str, client: Optional[Client] = None):
        if not client and (not url or not service_role_key):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        self._url = url
        self._key = service_role_key
        self._client = client

    @property
    def client(self) -> Client:
        # Lazy so importing the app never needs a live database
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    @staticmethod
    def _to_request(row: dict) -> VideoRequest:
        return VideoRequest.model_validate(row)

    def create_request(self, request: VideoRequest) -> VideoRequest:
        self.client.table(REQUESTS_TABLE).insert(request.model_dump(mode="json")).execute()
        return request

    def get_request(self, request_id: str) -> Optional[VideoRequest]:
        result = self.client.table(REQUESTS_TABLE).select("*").eq("id", request_id).limit(1).execute()
        return self._to_request(result.data[0]) if result.data else None

    def _find_by(self, column: str, value: str) -> Optional[VideoRequest]:
        result = self.client.table(REQUESTS_TABLE).select("*").eq(column, value).limit(1).execute()
        return self._to_request(result.data[0]) if result.data else None

    def find_by_generation_job_id(self, job_id: str) -> Optional[VideoRequest]:
        return self._find_by("generation_job_id", job_id)

    def find_by_delivery_message_id(self, message_id: str) -> Optional[VideoRequest]:
        return self._find_by("delivery_message_id", message_id)

    def update_request(self, request_id, changes, expected=None):
        payload = {
            key: (value.isoformat() if isinstance(value, datetime) else getattr(value, "value", value))
            for key, value in changes.items()
        }
        query = self.client.table(REQUESTS_TABLE).update(payload).eq("id", request_id)
        for column, value in (expected or {}).items():
            value = getattr(value, "value", value)
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        result = query.execute()
        return self._to_request(result.data[0]) if result.data else None

    def list_requests(
        self,
        generation_status=None,
        delivery_status=None,
        search=None,
        created_from=None,
        created_to=None,
        offset=0,
        limit=None,
    ):
        query = self.client.table(REQUESTS_TABLE).select("*", count="exact")
        if generation_status:
            query = query.eq("generation_status", generation_status)
        if delivery_status:
            query = query.eq("delivery_status", delivery_status)
        if search:
            pattern = _quoted_pattern(search)
            query = query.or_(
                f"user_name.ilike.{pattern},user_city.ilike.{pattern},user_phone.like.{pattern}"
            )
        if created_from:
            query = query.gte("created_at", created_from.isoformat())
        if created_to:
            query = query.lte("created_at", created_to.isoformat())
        query = query.order("created_at", desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)

        result = query.execute()
        rows = [self._to_request(row) for row in result.data]
        total = result.count if result.count is not None else len(rows)
        return rows, total

    def append_log(self, entry: RequestLog) -> RequestLog:
        self.client.table(LOGS_TABLE).insert(entry.model_dump(mode="json")).execute()
        return entry

    def list_logs(self, request_id: str, limit: Optional[int] = None) -> list[RequestLog]:
        query = (
            self.client.table(LOGS_TABLE)
            .select("*")
            .eq("request_id", request_id)
            .order("created_at", desc=True)
        )
        if limit is not None:
            query = query.limit(limit)
        result = query.execute()
        return [RequestLog.model_validate(row) for row in result.data]

    def get_presenter(self, actor_id: str) -> Optional[Presenter]:
        result = self.client.table(ACTORS_TABLE).select("*").eq("id", actor_id).limit(1).execute()
        return Presenter.model_validate(result.data[0]) if result.data else None

    def list_presenters(self) -> list[Presenter]:
        result = self.client.table(ACTORS_TABLE).select("*").order("name").execute()
        return [Presenter.model_validate(row) for row in result.data]

    def add_presenter(self, presenter: Presenter) -> None:
        self.client.table(ACTORS_TABLE).upsert(presenter.model_dump()).execute()

    def ping(self) -> bool:
        try:
            self.client.table(ACTORS_TABLE).select("id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"Supabase ping failed: {e}")
            return False
