"""
Admin reporting over the request store: paginated listings, breakdowns and
CSV export.
"""

import csv
import io
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from .models import GenerationStatus, VideoRequest, utcnow
from .presenters import PresenterDirectory
from .store import RequestStore

CSV_HEADERS = [
    "ID",
    "User Name",
    "User City",
    "User Phone",
    "Actor Name",
    "Status",
    "Delivery Status",
    "Video URL",
    "Created At",
    "Updated At",
]


def _breakdowns(rows: list[VideoRequest]) -> tuple[dict, dict]:
    by_status = Counter(r.generation_status.value for r in rows)
    by_delivery = Counter(r.delivery_status.value for r in rows)
    return dict(by_status), dict(by_delivery)


class AdminReports:

    def __init__(self, store: RequestStore, presenters: PresenterDirectory):
        self._store = store
        self._presenters = presenters

    def _actor_name(self, actor_id: str) -> str:
        presenter = self._presenters.find(actor_id)
        return presenter.name if presenter else actor_id

    def list_requests(
        self,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
        delivery_status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> dict:
        """One page of requests plus pagination info and status breakdowns."""
        page = max(page, 1)
        limit = max(limit, 1)
        status = None if status in (None, "", "all") else status
        delivery_status = None if delivery_status in (None, "", "all") else delivery_status

        rows, total = self._store.list_requests(
            generation_status=status,
            delivery_status=delivery_status,
            search=search or None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        everything, _ = self._store.list_requests()
        by_status, by_delivery = _breakdowns(everything)
        total_pages = math.ceil(total / limit)

        return {
            "requests": [
                {
                    **row.model_dump(mode="json"),
                    "actor_name": self._actor_name(row.actor_id),
                    "logs": [
                        log.model_dump(mode="json")
                        for log in self._store.list_logs(row.id, limit=10)
                    ],
                }
                for row in rows
            ],
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_count": total,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
            "statistics": {
                "by_status": by_status,
                "by_delivery_status": by_delivery,
                "total": total,
            },
        }

    def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        rows, total = self._store.list_requests()
        by_status, by_delivery = _breakdowns(rows)
        recent = sum(1 for r in rows if r.created_at >= now - timedelta(days=1))
        completed = by_status.get(GenerationStatus.COMPLETED.value, 0)
        success_rate = (completed / total) * 100 if total else 0.0

        return {
            "total_requests": total,
            "recent_requests": recent,
            "success_rate": round(success_rate, 2),
            "status_breakdown": by_status,
            "delivery_breakdown": by_delivery,
            "popular_actors": [
                {"actor_id": actor_id, "actor_name": self._actor_name(actor_id), "count": count}
                for actor_id, count in Counter(r.actor_id for r in rows).most_common()
            ],
        }

    def export_rows(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list[VideoRequest]:
        rows, _ = self._store.list_requests(created_from=start_date, created_to=end_date)
        return rows

    def export_csv(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for row in self.export_rows(start_date, end_date):
            writer.writerow([
                row.id,
                row.user_name,
                row.user_city,
                row.user_phone,
                self._actor_name(row.actor_id),
                row.generation_status.value,
                row.delivery_status.value,
                row.artifact_url or "",
                row.created_at.isoformat(),
                row.updated_at.isoformat(),
            ])
        return buffer.getvalue()
