"""
CEIBA — Test Infrastructure (conftest.py)
=========================================
Provides:
  - A fresh sqlite database per test (REPORTING_DB_PATH is never touched)
  - Deterministic fakes for the AI narrative, document renderer and email
    provider capabilities
  - Incident / configuration seed helpers
  - DB assertion helpers
"""

import datetime
import os
import sys

import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

from app.reporting import engine as engine_module  # noqa: E402
from app.reporting import models  # noqa: E402
from app.reporting import scheduler as scheduler_module  # noqa: E402
from app.reporting.config import ReportingConfig  # noqa: E402
from app.reporting.delivery import DeliveryService, EmailProvider  # noqa: E402
from app.reporting.engine import PipelineOrchestrator  # noqa: E402
from app.reporting.models import (  # noqa: E402
    EmailConfigRepository, EmailProviderConfig, ScheduleConfig, ScheduleConfigRepository,
)
from app.reporting.narrative import NarrativeGenerator, NarrativeResult  # noqa: E402
from app.reporting.renderer import DocumentRenderer  # noqa: E402
from app.reporting.sources import IncidentSource, SourceUnavailableError  # noqa: E402

RECIPIENT = "coordinacion@ceiba.mx"


# ============================================================================
# Fakes
# ============================================================================

class FakeNarrative(NarrativeGenerator):
    """Returns a fixed text, or a fixed error when `error` is set."""

    def __init__(self, text="Resumen ejecutivo generado por IA.", error=None):
        super().__init__()
        self.text = text
        self.error = error
        self.calls = 0
        self.timeouts = []

    def generate(self, stats, config, period_start, period_end, records=(),
                 timeout=60, cancel_event=None):
        self.calls += 1
        self.timeouts.append(timeout)
        if self.error:
            return NarrativeResult(error=self.error, provider="Fake")
        return NarrativeResult(text=self.text, success=True, provider="Fake")


class FakeRenderer(DocumentRenderer):
    """Writes markdown bytes under a .pdf name; raises when `fail` is set."""

    extension = "pdf"

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    def write(self, markdown, output_path, title):
        self.calls += 1
        if self.fail:
            raise RuntimeError("renderer exploded")
        with open(output_path, "wb") as f:
            f.write(f"{title}\n{markdown}".encode("utf-8"))


class FakeEmailProvider(EmailProvider):
    channel_name = "fake"

    def __init__(self, config, timeout=30, outbox=None, error=None):
        super().__init__(config, timeout)
        self.outbox = outbox if outbox is not None else []
        self.error = error

    def send(self, message):
        if self.error:
            return self._result(message, False, error=self.error)
        self.outbox.append(message)
        return self._result(message, True, message_id=f"fake-{len(self.outbox)}")


class FakeDelivery(DeliveryService):
    """DeliveryService wired to FakeEmailProvider."""

    def __init__(self, error=None):
        self.outbox = []
        self.error = error
        self.timeouts = []
        super().__init__(provider_factory=self._factory)

    def _factory(self, config, timeout=30):
        self.timeouts.append(timeout)
        return FakeEmailProvider(config, timeout, outbox=self.outbox, error=self.error)


class ListSource(IncidentSource):
    def __init__(self, records):
        self.records = list(records)

    def fetch_incidents(self, period_start, period_end):
        return [r for r in self.records if period_start <= r.created_at < period_end]


class BrokenSource(IncidentSource):
    def fetch_incidents(self, period_start, period_end):
        raise SourceUnavailableError("database is locked")


class RecordingAudit(models.AuditSink):
    def __init__(self):
        self.events = []

    def log_event(self, code, related_id=None, related_table=None, detail=None, actor=None):
        self.events.append((code, related_id, detail, actor))

    @property
    def codes(self):
        return [e[0] for e in self.events]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reporting_db(tmp_path, monkeypatch):
    """Point the reporting module at a throwaway database."""
    db_path = tmp_path / "reporting_test.db"
    monkeypatch.setattr(models, "DB_PATH", db_path)
    ReportingConfig.reset_cache()
    models.init_database()
    engine_module.set_engine(None)
    scheduler_module._scheduler_instance = None
    yield db_path
    ReportingConfig.reset_cache()
    engine_module.set_engine(None)
    scheduler_module._scheduler_instance = None


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "generated-reports"
    path.mkdir()
    return path


@pytest.fixture
def schedule_config(output_dir):
    cfg = ScheduleConfig(
        enabled=True,
        generation_time="06:00:00",
        recipients=[RECIPIENT],
        output_path=str(output_dir),
    )
    ScheduleConfigRepository.save(cfg)
    return cfg


@pytest.fixture
def email_config():
    cfg = EmailProviderConfig(
        provider="SMTP",
        enabled=True,
        from_address="reportes@ceiba.mx",
        from_name="CEIBA Reportes",
        smtp_host="smtp.ceiba.mx",
        smtp_port=587,
    )
    EmailConfigRepository.save(cfg)
    return cfg


@pytest.fixture
def make_orchestrator():
    """Factory for an orchestrator with deterministic collaborators."""
    def _make(narrative=None, renderer=None, delivery=None, source=None, audit=None):
        return PipelineOrchestrator(
            source=source,
            narrative=narrative or FakeNarrative(),
            renderer=renderer or FakeRenderer(),
            delivery=delivery or FakeDelivery(),
            audit=audit,
        )
    return _make


# ============================================================================
# Seed helpers
# ============================================================================

JULY_1 = datetime.datetime(2024, 7, 1)
JULY_2 = datetime.datetime(2024, 7, 2)


def insert_incident(created_at, crime_type="Violencia familiar", zone="Centro", age=30,
                    sex="Mujer", state=1, **extra):
    fields = {
        "folio": extra.pop("folio", f"F-{created_at:%Y%m%d%H%M%S}"),
        "created_at": models.to_db_ts(created_at),
        "crime_type": crime_type,
        "zone": zone,
        "age": age,
        "sex": sex,
        "state": state,
    }
    fields.update(extra)
    cols = ", ".join(fields)
    marks = ", ".join("?" for _ in fields)
    conn = models.get_db()
    cur = conn.execute(f"INSERT INTO incidents ({cols}) VALUES ({marks})", tuple(fields.values()))
    conn.commit()
    conn.close()
    return cur.lastrowid


def seed_two_july_incidents():
    insert_incident(JULY_1 + datetime.timedelta(hours=9), crime_type="Violencia familiar",
                    zone="Centro", age=24, lgbtq=1)
    insert_incident(JULY_1 + datetime.timedelta(hours=17), crime_type="Acoso sexual",
                    zone="Norte", age=41, migrant=1)


# ============================================================================
# DB helpers
# ============================================================================

def db_query(sql, params=()):
    """Run a query against the test DB and return rows as dicts."""
    conn = models.get_db()
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def db_count(table, where="1=1", params=()):
    """Count rows in a table matching a condition."""
    conn = models.get_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]
