"""
Saved analysis history under ``users/{uid}/history``.
"""

import logging
from typing import List, Optional, Sequence

from .blobs import ChartStore
from .db import RealtimeDatabase, join_path
from .models import AnalysisRecord, now_ms

logger = logging.getLogger(__name__)


class AnalysisHistory:
    def __init__(self, db: RealtimeDatabase, charts: ChartStore, clock=now_ms):
        self.db = db
        self.charts = charts
        self.clock = clock

    def save_analysis(
        self,
        user_id: str,
        model: str,
        analyses: Sequence[str],
        chart_keys: Sequence[str] = ()
    ) -> AnalysisRecord:
        """Persist an analysis and the keys of the charts it covers."""
        if not user_id:
            raise ValueError("user_id is required")
        record = AnalysisRecord(
            id=self.db.new_key(),
            model=model,
            analyses=list(analyses),
            chart_keys=list(chart_keys),
            timestamp=self.clock()
        )
        self.db.set(join_path("users", user_id, "history", record.id), record.to_dict())
        logger.info("Saved analysis %s for %s", record.id, user_id)
        return record

    def get_analysis(self, user_id: str, record_id: str) -> Optional[AnalysisRecord]:
        data = self.db.get(join_path("users", user_id, "history", record_id))
        if not data:
            return None
        return AnalysisRecord.from_dict(record_id, data)

    def list_history(self, user_id: str, limit: Optional[int] = None) -> List[AnalysisRecord]:
        """Saved analyses, newest first."""
        items = self.db.get(join_path("users", user_id, "history")) or {}
        records = [AnalysisRecord.from_dict(key, data) for key, data in items.items()]
        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return records[:limit]

    def delete_analysis(self, user_id: str, record_id: str) -> bool:
        """Delete an analysis and its chart images.

        Returns:
            False if the analysis did not exist
        """
        record = self.get_analysis(user_id, record_id)
        if record is None:
            return False
        self.db.remove(join_path("users", user_id, "history", record_id))
        if record.chart_keys:
            self.charts.delete_charts(record.chart_keys)
        return True
