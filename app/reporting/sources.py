# ============================================================================
# CEIBA - Incident Record Source
# ============================================================================
# Read-only access to incident records for a period. The incident workflow
# owns the table; the pipeline only snapshots it.
# ============================================================================

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from .models import get_db, to_db_ts, from_db_ts
from .statistics import IncidentRecord

logger = logging.getLogger("reporting.sources")


class SourceUnavailableError(Exception):
    """The record source could not produce a snapshot."""


class IncidentSource(ABC):
    @abstractmethod
    def fetch_incidents(self, period_start: datetime, period_end: datetime) -> List[IncidentRecord]:
        """Records created in [period_start, period_end), newest first."""


class SqliteIncidentSource(IncidentSource):
    def fetch_incidents(self, period_start, period_end):
        try:
            conn = get_db()
            try:
                rows = conn.execute(
                    """SELECT * FROM incidents
                       WHERE created_at >= ? AND created_at < ?
                       ORDER BY created_at DESC, id DESC""",
                    (to_db_ts(period_start), to_db_ts(period_end)),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Incident snapshot failed for %s - %s: %s", period_start, period_end, e)
            raise SourceUnavailableError(str(e)) from e

        return [self._to_record(r) for r in rows]

    @staticmethod
    def _to_record(row) -> IncidentRecord:
        return IncidentRecord(
            id=row["id"],
            folio=row["folio"] or "",
            created_at=from_db_ts(row["created_at"]),
            crime_type=row["crime_type"] or "",
            zone=row["zone"],
            age=row["age"],
            sex=row["sex"],
            lgbtq=bool(row["lgbtq"]),
            migrant=bool(row["migrant"]),
            street_situation=bool(row["street_situation"]),
            disability=bool(row["disability"]),
            state=row["state"] if row["state"] is not None else 0,
            attention_type=row["attention_type"],
            action_type=row["action_type"],
            transfer=row["transfer"],
            reported_facts=row["reported_facts"] or "",
            actions_taken=row["actions_taken"] or "",
        )
