"""
ledger.py — Sync ledger: append-only audit trail plus read-side statistics

Every job that reaches a final state leaves exactly one entry here. The
dashboard reads statistics and filtered, paginated logs from it; nothing
ever updates or deletes an entry.

Business Rules:
- Entries are written in the same transaction as the job's final status
- Stats time ranges: 1h, 24h, 7d, 30d (unknown values fall back to 24h)
- success_rate is a percentage rounded to 2 decimals, 0 when there are no entries
- Logs are newest first, default page size 20, capped at 100

Called by: backlog.py (record), routers/sync.py (stats, logs)
Depends on: models/ledger.py
"""

import math
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import SyncLedgerEntry

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIME_RANGE = "24h"
MAX_PAGE_SIZE = 100


class SyncLedger:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def record(self, db: Session, **fields) -> SyncLedgerEntry:
        """Append one entry inside the caller's transaction."""
        entry = SyncLedgerEntry(**fields)
        db.add(entry)
        return entry

    def get_stats(self, time_range: str = DEFAULT_TIME_RANGE, now: datetime | None = None) -> dict:
        if time_range not in TIME_RANGES:
            time_range = DEFAULT_TIME_RANGE
        now = now or datetime.now(timezone.utc)
        since = now - TIME_RANGES[time_range]

        with self._session_factory() as db:
            rows = (
                db.query(SyncLedgerEntry.success, func.count(SyncLedgerEntry.id))
                .filter(SyncLedgerEntry.created_at >= since)
                .group_by(SyncLedgerEntry.success)
                .all()
            )
        counts = {bool(success): n for success, n in rows}
        successful = counts.get(True, 0)
        failed = counts.get(False, 0)
        total = successful + failed
        return {
            "time_range": time_range,
            "total_syncs": total,
            "successful_syncs": successful,
            "failed_syncs": failed,
            "success_rate": round(successful / total * 100, 2) if total else 0,
        }

    def get_logs(
        self,
        *,
        job_type: str | None = None,
        account_id: int | None = None,
        product_id: int | None = None,
        order_id: int | None = None,
        success: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        with self._session_factory() as db:
            q = db.query(SyncLedgerEntry)
            if job_type:
                q = q.filter(SyncLedgerEntry.job_type == job_type)
            if account_id is not None:
                q = q.filter(SyncLedgerEntry.account_id == account_id)
            if product_id is not None:
                q = q.filter(SyncLedgerEntry.product_id == product_id)
            if order_id is not None:
                q = q.filter(SyncLedgerEntry.order_id == order_id)
            if success is not None:
                q = q.filter(SyncLedgerEntry.success.is_(success))
            if start is not None:
                q = q.filter(SyncLedgerEntry.created_at >= start)
            if end is not None:
                q = q.filter(SyncLedgerEntry.created_at <= end)

            total = q.count()
            entries = (
                q.order_by(SyncLedgerEntry.created_at.desc(), SyncLedgerEntry.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            items = [e.to_dict() for e in entries]

        total_pages = math.ceil(total / limit) if total else 0
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }
