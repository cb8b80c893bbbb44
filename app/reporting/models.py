# ============================================================================
# CEIBA - Reporting Models & Database Schema
# ============================================================================
# Generated reports, report templates, the three admin-owned configuration
# rows, scheduler state and the audit log. Incidents are read-only here; the
# table is declared so the sqlite record source has something to read.
# ============================================================================

import json
import os
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any

from .statistics import ReportStatistics

DB_PATH = Path(os.environ.get("REPORTING_DB_PATH", "reporting.db"))
TIMESTAMP_FMT = "%Y-%m-%d %H:%M:%S"


# ============================================================================
# Database Schema  (additive - never drops existing tables)
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ReportingConfig (
    id INTEGER PRIMARY KEY,
    key TEXT UNIQUE NOT NULL,
    value TEXT,
    value_type TEXT DEFAULT 'string',
    category TEXT DEFAULT 'general',
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS ReportAuditLog (
    id INTEGER PRIMARY KEY,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    action TEXT NOT NULL,
    category TEXT DEFAULT 'general',
    user_name TEXT,
    related_id TEXT,
    related_table TEXT,
    details TEXT
);

CREATE TABLE IF NOT EXISTS generated_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    narrative_markdown TEXT DEFAULT '',
    document_path TEXT,
    statistics_json TEXT NOT NULL,
    sent INTEGER DEFAULT 0,
    sent_at TEXT,
    last_error TEXT,
    stage_errors_json TEXT DEFAULT '{}',
    template_id INTEGER REFERENCES report_templates(id),
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS report_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    body_markdown TEXT NOT NULL,
    active INTEGER DEFAULT 1,
    is_default INTEGER DEFAULT 0,
    owner TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS schedule_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    enabled INTEGER DEFAULT 0,
    generation_time TEXT DEFAULT '06:00:00',
    recipients_json TEXT DEFAULT '[]',
    output_path TEXT DEFAULT './generated-reports',
    updated_at TEXT,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS ai_provider_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    api_key TEXT,
    endpoint TEXT,
    azure_api_version TEXT,
    max_tokens INTEGER DEFAULT 2000,
    temperature REAL DEFAULT 0.7,
    max_records_for_narrative INTEGER DEFAULT 50,
    updated_at TEXT,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS email_provider_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    provider TEXT DEFAULT 'SMTP',
    enabled INTEGER DEFAULT 0,
    from_address TEXT DEFAULT '',
    from_name TEXT DEFAULT '',
    smtp_host TEXT,
    smtp_port INTEGER,
    smtp_username TEXT,
    smtp_password TEXT,
    smtp_use_tls INTEGER DEFAULT 1,
    sendgrid_api_key TEXT,
    mailgun_api_key TEXT,
    mailgun_domain TEXT,
    mailgun_region TEXT,
    last_tested_at TEXT,
    last_test_success INTEGER,
    last_test_error TEXT,
    updated_at TEXT,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS scheduler_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_run_date TEXT,
    last_report_id INTEGER,
    updated_at TEXT
);

-- Consumed, owned by the incident workflow --------------------------------
CREATE TABLE IF NOT EXISTS incidents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    folio TEXT,
    created_at TEXT NOT NULL,
    crime_type TEXT,
    zone TEXT,
    age INTEGER,
    sex TEXT,
    lgbtq INTEGER DEFAULT 0,
    migrant INTEGER DEFAULT 0,
    street_situation INTEGER DEFAULT 0,
    disability INTEGER DEFAULT 0,
    state INTEGER DEFAULT 0,
    attention_type TEXT,
    action_type INTEGER,
    transfer INTEGER,
    reported_facts TEXT,
    actions_taken TEXT
);

CREATE INDEX IF NOT EXISTS idx_generated_reports_period ON generated_reports(period_start, period_end);
CREATE INDEX IF NOT EXISTS idx_generated_reports_created ON generated_reports(created_at);
CREATE INDEX IF NOT EXISTS idx_incidents_created ON incidents(created_at);
CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON ReportAuditLog(timestamp);
"""


def init_database():
    """Initialize the reporting database tables."""
    conn = sqlite3.connect(str(DB_PATH))
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    conn.close()


def get_db():
    """Get database connection with row factory."""
    conn = sqlite3.connect(str(DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def to_db_ts(dt: Optional[datetime]) -> Optional[str]:
    """Naive local wall time as stored in every *_at / period column."""
    if dt is None:
        return None
    return dt.replace(tzinfo=None).strftime(TIMESTAMP_FMT)


def from_db_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.strptime(raw, TIMESTAMP_FMT)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class GeneratedReport:
    id: Optional[int] = None
    period_start: str = ""
    period_end: str = ""
    narrative_markdown: str = ""
    document_path: Optional[str] = None
    statistics_json: str = "{}"
    sent: bool = False
    sent_at: Optional[str] = None
    last_error: Optional[str] = None
    stage_errors_json: str = "{}"
    template_id: Optional[int] = None
    created_by: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def statistics(self) -> ReportStatistics:
        return ReportStatistics.from_json(self.statistics_json)

    @property
    def stage_errors(self) -> Dict[str, str]:
        try:
            return json.loads(self.stage_errors_json or "{}")
        except ValueError:
            return {}

    def set_stage_error(self, stage: str, message: Optional[str]):
        """Record (or clear, when message is None) one stage's error and
        recompute last_error from whatever is still outstanding."""
        errors = self.stage_errors
        if message:
            errors[stage] = message
        else:
            errors.pop(stage, None)
        self.stage_errors_json = json.dumps(errors, ensure_ascii=False)
        self.last_error = "; ".join(errors[k] for k in sorted(errors)) or None

    def to_dict(self):
        d = asdict(self)
        d["statistics"] = self.statistics.to_dict()
        d["stage_errors"] = self.stage_errors
        d.pop("statistics_json")
        d.pop("stage_errors_json")
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d["sent"] = bool(d.get("sent"))
        return cls(**d)


@dataclass
class ReportTemplate:
    id: Optional[int] = None
    name: str = ""
    description: Optional[str] = None
    body_markdown: str = ""
    active: bool = True
    is_default: bool = False
    owner: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d["active"] = bool(d.get("active"))
        d["is_default"] = bool(d.get("is_default"))
        return cls(**d)


@dataclass
class ScheduleConfig:
    enabled: bool = False
    generation_time: str = "06:00:00"
    recipients: List[str] = field(default_factory=list)
    output_path: str = "./generated-reports"
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        try:
            recipients = json.loads(d.get("recipients_json") or "[]")
        except ValueError:
            recipients = []
        return cls(
            enabled=bool(d.get("enabled")),
            generation_time=d.get("generation_time") or "06:00:00",
            recipients=recipients,
            output_path=d.get("output_path") or "./generated-reports",
            updated_at=d.get("updated_at"),
            updated_by=d.get("updated_by"),
        )


@dataclass
class AiProviderConfig:
    provider: str = "OpenAI"
    model: str = ""
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    azure_api_version: Optional[str] = None
    max_tokens: int = 2000
    temperature: float = 0.7
    max_records_for_narrative: int = 50
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

    def to_dict(self):
        """Public view; the key itself never leaves the store."""
        d = asdict(self)
        d.pop("api_key")
        d["has_api_key"] = bool(self.api_key)
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d.pop("id", None)
        return cls(**d)


@dataclass
class EmailProviderConfig:
    provider: str = "SMTP"
    enabled: bool = False
    from_address: str = ""
    from_name: str = ""
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    sendgrid_api_key: Optional[str] = None
    mailgun_api_key: Optional[str] = None
    mailgun_domain: Optional[str] = None
    mailgun_region: Optional[str] = None
    last_tested_at: Optional[str] = None
    last_test_success: Optional[bool] = None
    last_test_error: Optional[str] = None
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

    SECRET_FIELDS = ("smtp_password", "sendgrid_api_key", "mailgun_api_key")

    def to_dict(self):
        d = asdict(self)
        for name in self.SECRET_FIELDS:
            d.pop(name)
        d["has_smtp_password"] = bool(self.smtp_password)
        d["has_sendgrid_api_key"] = bool(self.sendgrid_api_key)
        d["has_mailgun_api_key"] = bool(self.mailgun_api_key)
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d.pop("id", None)
        d["enabled"] = bool(d.get("enabled"))
        d["smtp_use_tls"] = bool(d.get("smtp_use_tls"))
        if d.get("last_test_success") is not None:
            d["last_test_success"] = bool(d["last_test_success"])
        return cls(**d)


# ============================================================================
# Repositories
# ============================================================================

class ReportRepository:
    @staticmethod
    def create(report: GeneratedReport, run_date: Optional[str] = None) -> int:
        """
        Insert a report row. When run_date is given the scheduler marker is
        written in the same transaction, so the day's row and the marker
        either both exist or neither does.
        """
        conn = get_db()
        try:
            cur = conn.execute(
                """INSERT INTO generated_reports
                   (period_start, period_end, narrative_markdown, document_path,
                    statistics_json, sent, sent_at, last_error, stage_errors_json,
                    template_id, created_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (report.period_start, report.period_end, report.narrative_markdown,
                 report.document_path, report.statistics_json, int(report.sent),
                 report.sent_at, report.last_error, report.stage_errors_json,
                 report.template_id, report.created_by, report.created_at,
                 report.updated_at or report.created_at),
            )
            rid = cur.lastrowid
            if run_date:
                conn.execute(
                    """INSERT INTO scheduler_state (id, last_run_date, last_report_id, updated_at)
                       VALUES (1, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                       last_run_date=excluded.last_run_date,
                       last_report_id=excluded.last_report_id,
                       updated_at=excluded.updated_at""",
                    (run_date, rid, report.created_at),
                )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return rid

    @staticmethod
    def get_by_id(report_id: int) -> Optional[GeneratedReport]:
        conn = get_db()
        row = conn.execute("SELECT * FROM generated_reports WHERE id = ?", (report_id,)).fetchone()
        conn.close()
        return GeneratedReport.from_row(row) if row else None

    @staticmethod
    def list(skip: int = 0, take: int = 50, period_start: str = None,
             period_end: str = None, sent: Optional[bool] = None) -> List[GeneratedReport]:
        clauses, params = [], []
        if period_start:
            clauses.append("period_start >= ?")
            params.append(period_start)
        if period_end:
            clauses.append("period_end <= ?")
            params.append(period_end)
        if sent is not None:
            clauses.append("sent = ?")
            params.append(int(sent))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = get_db()
        rows = conn.execute(
            f"SELECT * FROM generated_reports {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, take, skip),
        ).fetchall()
        conn.close()
        return [GeneratedReport.from_row(r) for r in rows]

    @staticmethod
    def find_for_period(period_start: str, period_end: str) -> List[GeneratedReport]:
        conn = get_db()
        rows = conn.execute(
            "SELECT * FROM generated_reports WHERE period_start = ? AND period_end = ? ORDER BY id",
            (period_start, period_end),
        ).fetchall()
        conn.close()
        return [GeneratedReport.from_row(r) for r in rows]

    @staticmethod
    def update(report: GeneratedReport):
        """Persist stage output. statistics_json is deliberately not written."""
        conn = get_db()
        conn.execute(
            """UPDATE generated_reports SET
               narrative_markdown = ?, document_path = ?, sent = ?, sent_at = ?,
               last_error = ?, stage_errors_json = ?, updated_at = ?
               WHERE id = ?""",
            (report.narrative_markdown, report.document_path, int(report.sent),
             report.sent_at, report.last_error, report.stage_errors_json,
             report.updated_at, report.id),
        )
        conn.commit()
        conn.close()

    @staticmethod
    def delete(report_id: int) -> bool:
        conn = get_db()
        cur = conn.execute("DELETE FROM generated_reports WHERE id = ?", (report_id,))
        conn.commit()
        conn.close()
        return cur.rowcount > 0

    @staticmethod
    def count_for_template(template_id: int) -> int:
        conn = get_db()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM generated_reports WHERE template_id = ?",
            (template_id,)).fetchone()
        conn.close()
        return row["cnt"]


class TemplateRepository:
    @staticmethod
    def get_all(active_only: bool = False) -> List[ReportTemplate]:
        conn = get_db()
        sql = "SELECT * FROM report_templates"
        if active_only:
            sql += " WHERE active = 1"
        rows = conn.execute(sql + " ORDER BY name, id").fetchall()
        conn.close()
        return [ReportTemplate.from_row(r) for r in rows]

    @staticmethod
    def get_by_id(template_id: int) -> Optional[ReportTemplate]:
        conn = get_db()
        row = conn.execute("SELECT * FROM report_templates WHERE id = ?", (template_id,)).fetchone()
        conn.close()
        return ReportTemplate.from_row(row) if row else None

    @staticmethod
    def get_default() -> Optional[ReportTemplate]:
        conn = get_db()
        row = conn.execute(
            "SELECT * FROM report_templates WHERE is_default = 1 AND active = 1 LIMIT 1"
        ).fetchone()
        conn.close()
        return ReportTemplate.from_row(row) if row else None

    @staticmethod
    def save(t: ReportTemplate) -> int:
        """
        Insert or update a template. If it is flagged as default, any other
        default is cleared in the same transaction.
        """
        conn = get_db()
        try:
            if t.is_default:
                conn.execute(
                    "UPDATE report_templates SET is_default = 0 WHERE is_default = 1 AND id IS NOT ?",
                    (t.id,))
            if t.id is None:
                cur = conn.execute(
                    """INSERT INTO report_templates
                       (name, description, body_markdown, active, is_default, owner, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (t.name, t.description, t.body_markdown, int(t.active),
                     int(t.is_default), t.owner, t.created_at, t.updated_at),
                )
                tid = cur.lastrowid
            else:
                conn.execute(
                    """UPDATE report_templates SET
                       name = ?, description = ?, body_markdown = ?, active = ?,
                       is_default = ?, owner = ?, updated_at = ?
                       WHERE id = ?""",
                    (t.name, t.description, t.body_markdown, int(t.active),
                     int(t.is_default), t.owner, t.updated_at, t.id),
                )
                tid = t.id
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return tid

    @staticmethod
    def set_default(template_id: int, updated_at: str) -> bool:
        """Atomic default swap. Returns False when the template is missing or inactive."""
        conn = get_db()
        try:
            row = conn.execute(
                "SELECT id FROM report_templates WHERE id = ? AND active = 1", (template_id,)
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "UPDATE report_templates SET is_default = 0, updated_at = ? "
                "WHERE is_default = 1 AND id != ?", (updated_at, template_id))
            conn.execute(
                "UPDATE report_templates SET is_default = 1, updated_at = ? WHERE id = ?",
                (updated_at, template_id))
            conn.commit()
            return True
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def deactivate(template_id: int, updated_at: str):
        conn = get_db()
        conn.execute(
            "UPDATE report_templates SET active = 0, is_default = 0, updated_at = ? WHERE id = ?",
            (updated_at, template_id))
        conn.commit()
        conn.close()

    @staticmethod
    def delete(template_id: int):
        conn = get_db()
        conn.execute("DELETE FROM report_templates WHERE id = ?", (template_id,))
        conn.commit()
        conn.close()


class ScheduleConfigRepository:
    @staticmethod
    def get() -> Optional[ScheduleConfig]:
        conn = get_db()
        row = conn.execute("SELECT * FROM schedule_config WHERE id = 1").fetchone()
        conn.close()
        return ScheduleConfig.from_row(row) if row else None

    @staticmethod
    def save(cfg: ScheduleConfig):
        conn = get_db()
        conn.execute(
            """INSERT INTO schedule_config
               (id, enabled, generation_time, recipients_json, output_path, updated_at, updated_by)
               VALUES (1, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
               enabled=excluded.enabled, generation_time=excluded.generation_time,
               recipients_json=excluded.recipients_json, output_path=excluded.output_path,
               updated_at=excluded.updated_at, updated_by=excluded.updated_by""",
            (int(cfg.enabled), cfg.generation_time, json.dumps(cfg.recipients),
             cfg.output_path, cfg.updated_at, cfg.updated_by),
        )
        conn.commit()
        conn.close()


class AiConfigRepository:
    @staticmethod
    def get() -> Optional[AiProviderConfig]:
        conn = get_db()
        row = conn.execute("SELECT * FROM ai_provider_config WHERE id = 1").fetchone()
        conn.close()
        return AiProviderConfig.from_row(row) if row else None

    @staticmethod
    def save(cfg: AiProviderConfig):
        conn = get_db()
        conn.execute(
            """INSERT OR REPLACE INTO ai_provider_config
               (id, provider, model, api_key, endpoint, azure_api_version, max_tokens,
                temperature, max_records_for_narrative, updated_at, updated_by)
               VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (cfg.provider, cfg.model, cfg.api_key, cfg.endpoint, cfg.azure_api_version,
             cfg.max_tokens, cfg.temperature, cfg.max_records_for_narrative,
             cfg.updated_at, cfg.updated_by),
        )
        conn.commit()
        conn.close()


class EmailConfigRepository:
    _COLUMNS = (
        "provider", "enabled", "from_address", "from_name", "smtp_host", "smtp_port",
        "smtp_username", "smtp_password", "smtp_use_tls", "sendgrid_api_key",
        "mailgun_api_key", "mailgun_domain", "mailgun_region", "last_tested_at",
        "last_test_success", "last_test_error", "updated_at", "updated_by",
    )

    @staticmethod
    def get() -> Optional[EmailProviderConfig]:
        conn = get_db()
        row = conn.execute("SELECT * FROM email_provider_config WHERE id = 1").fetchone()
        conn.close()
        return EmailProviderConfig.from_row(row) if row else None

    @classmethod
    def save(cls, cfg: EmailProviderConfig):
        values = []
        for col in cls._COLUMNS:
            v = getattr(cfg, col)
            values.append(int(v) if isinstance(v, bool) else v)
        placeholders = ", ".join("?" for _ in cls._COLUMNS)
        conn = get_db()
        conn.execute(
            f"INSERT OR REPLACE INTO email_provider_config (id, {', '.join(cls._COLUMNS)}) "
            f"VALUES (1, {placeholders})",
            values,
        )
        conn.commit()
        conn.close()

    @staticmethod
    def record_test(tested_at: str, success: bool, error: Optional[str]):
        conn = get_db()
        conn.execute(
            """UPDATE email_provider_config SET
               last_tested_at = ?, last_test_success = ?, last_test_error = ?
               WHERE id = 1""",
            (tested_at, int(success), error))
        conn.commit()
        conn.close()


def read_config_snapshot():
    """
    (ScheduleConfig | None, AiProviderConfig | None, EmailProviderConfig | None)
    read inside one transaction so a run never sees a half-applied admin update.
    """
    conn = get_db()
    try:
        conn.execute("BEGIN")
        schedule = conn.execute("SELECT * FROM schedule_config WHERE id = 1").fetchone()
        ai = conn.execute("SELECT * FROM ai_provider_config WHERE id = 1").fetchone()
        email = conn.execute("SELECT * FROM email_provider_config WHERE id = 1").fetchone()
        conn.commit()
    finally:
        conn.close()
    return (
        ScheduleConfig.from_row(schedule) if schedule else None,
        AiProviderConfig.from_row(ai) if ai else None,
        EmailProviderConfig.from_row(email) if email else None,
    )


class SchedulerStateRepository:
    @staticmethod
    def get() -> Dict[str, Any]:
        conn = get_db()
        row = conn.execute("SELECT * FROM scheduler_state WHERE id = 1").fetchone()
        conn.close()
        if not row:
            return {"last_run_date": None, "last_report_id": None, "updated_at": None}
        return dict(row)


class AuditRepository:
    @staticmethod
    def log(action, category="general", user_name=None, details=None,
            related_id=None, related_table=None):
        conn = get_db()
        conn.execute(
            """INSERT INTO ReportAuditLog
               (action, category, user_name, related_id, related_table, details)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (action, category, user_name,
             str(related_id) if related_id is not None else None, related_table, details))
        conn.commit()
        conn.close()

    @staticmethod
    def get_recent(limit=100, category=None):
        conn = get_db()
        if category:
            rows = conn.execute(
                "SELECT * FROM ReportAuditLog WHERE category = ? ORDER BY id DESC LIMIT ?",
                (category, limit)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM ReportAuditLog ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        conn.close()
        return [dict(r) for r in rows]


# ============================================================================
# Audit sink
# ============================================================================

class AuditCodes:
    RUN_STARTED = "AUTO_REPORT_START"
    RUN_COMPLETED = "AUTO_REPORT_GEN"
    RUN_PARTIAL = "AUTO_REPORT_PARTIAL"
    SENT = "AUTO_REPORT_SEND"
    SEND_FAILED = "AUTO_REPORT_FAIL"
    RUN_FAILED = "AUTO_REPORT_FAIL"
    DELETED = "AUTO_REPORT_DELETE"
    CONFIG_CHANGE = "CONFIG_CHANGE"
    SCHEDULER_STARTED = "SCHEDULER_START"
    SCHEDULER_STOPPED = "SCHEDULER_STOP"
    SCHEDULER_MISMATCH = "SCHEDULER_MISMATCH"
    SCHEDULER_JOB_ERROR = "SCHEDULER_JOB_ERROR"


class AuditSink(ABC):
    """Where pipeline transitions are reported. Fire-and-forget."""

    @abstractmethod
    def log_event(self, code: str, related_id: Any = None, related_table: str = None,
                  detail: str = None, actor: str = None):
        pass


class SqliteAuditSink(AuditSink):
    def __init__(self, category: str = "automated_reports"):
        self.category = category

    def log_event(self, code, related_id=None, related_table=None, detail=None, actor=None):
        AuditRepository.log(
            action=code,
            category=self.category,
            user_name=actor,
            details=detail,
            related_id=related_id,
            related_table=related_table,
        )
