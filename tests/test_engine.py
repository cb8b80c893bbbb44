"""
CEIBA — Report Pipeline Tests
=============================
End-to-end runs of PipelineOrchestrator against the sqlite incident source
with fake narrative / renderer / email collaborators.
"""

import datetime
import os
import threading

import pytest

from app.reporting.engine import PipelineOrchestrator, to_period_bound
from app.reporting.models import AuditCodes, ReportRepository, ReportTemplate, TemplateRepository
from app.reporting.results import ErrorKind
from tests.conftest import (
    JULY_1, JULY_2, RECIPIENT, BrokenSource, FakeDelivery, FakeNarrative, FakeRenderer,
    RecordingAudit, db_count, db_query, insert_incident, seed_two_july_incidents,
)


@pytest.fixture
def configured(schedule_config, email_config):
    seed_two_july_incidents()
    return schedule_config


class TestGenerate:

    def test_successful_full_run(self, configured, make_orchestrator):
        delivery = FakeDelivery()
        audit = RecordingAudit()
        orch = make_orchestrator(delivery=delivery, audit=audit)

        result = orch.generate(JULY_1, JULY_2, send_immediately=True, actor="coordinadora")
        assert result.ok
        report = result.value
        assert report.statistics.total_count == 2
        assert report.narrative_markdown
        assert "Resumen ejecutivo generado por IA." in report.narrative_markdown
        assert report.document_path and os.path.exists(report.document_path)
        assert os.path.basename(report.document_path) == f"Report_20240701_20240702_{report.id}.pdf"
        assert report.sent is True
        assert report.sent_at
        assert report.last_error is None

        stored = ReportRepository.get_by_id(report.id)
        assert stored.sent is True
        assert stored.created_by == "coordinadora"
        assert delivery.outbox[0].recipients == [RECIPIENT]
        assert delivery.outbox[0].subject == "Reporte de Incidencias - 01/07/2024 a 02/07/2024"
        assert audit.codes == [AuditCodes.RUN_STARTED, AuditCodes.SENT, AuditCodes.RUN_COMPLETED]

    def test_without_send_stops_after_document(self, configured, make_orchestrator):
        delivery = FakeDelivery()
        result = make_orchestrator(delivery=delivery).generate(JULY_1, JULY_2)
        report = result.value
        assert report.document_path
        assert report.sent is False
        assert delivery.outbox == []

    def test_ai_outage_still_produces_document_and_sends(self, configured, make_orchestrator):
        audit = RecordingAudit()
        orch = make_orchestrator(narrative=FakeNarrative(error="OpenAI unreachable: timed out"),
                                 audit=audit)
        result = orch.generate(JULY_1, JULY_2, send_immediately=True)

        assert result.ok
        report = result.value
        assert report.document_path
        assert report.sent is True
        assert "Narrative generation failed" in report.last_error
        assert "OpenAI unreachable" in report.last_error
        assert "sin asistencia de IA" in report.narrative_markdown
        assert report.stage_errors.keys() == {"narrative"}
        assert audit.codes[-1] == AuditCodes.RUN_PARTIAL

    def test_ai_outage_with_delivery_failure(self, configured, make_orchestrator):
        orch = make_orchestrator(narrative=FakeNarrative(error="boom"),
                                 delivery=FakeDelivery(error="550 rejected"))
        report = orch.generate(JULY_1, JULY_2, send_immediately=True).value
        assert report.sent is False
        assert report.document_path
        assert "Narrative generation failed" in report.last_error
        assert "Delivery failed: 550 rejected" in report.last_error

    def test_render_failure_keeps_markdown(self, configured, make_orchestrator):
        orch = make_orchestrator(renderer=FakeRenderer(fail=True))
        result = orch.generate(JULY_1, JULY_2, send_immediately=True)
        assert result.ok
        report = result.value
        assert report.document_path is None
        assert report.narrative_markdown
        assert "Document rendering failed" in report.last_error
        assert "Delivery failed" in report.last_error
        assert report.sent is False

    def test_no_recipients_records_delivery_error(self, output_dir, email_config, make_orchestrator):
        from app.reporting.models import ScheduleConfig, ScheduleConfigRepository
        ScheduleConfigRepository.save(ScheduleConfig(enabled=False, output_path=str(output_dir)))
        report = make_orchestrator().generate(JULY_1, JULY_2, send_immediately=True).value
        assert report.sent is False
        assert "No recipients configured" in report.last_error

    def test_empty_period(self, configured, make_orchestrator):
        report = make_orchestrator().generate("2023-01-01", "2023-01-02").value
        assert report.statistics.total_count == 0
        assert report.statistics.by_zone == {}
        assert "_Sin datos_" in report.narrative_markdown

    def test_source_outage_is_fatal_and_persists_nothing(self, configured, make_orchestrator):
        audit = RecordingAudit()
        orch = make_orchestrator(source=BrokenSource(), audit=audit)
        result = orch.generate(JULY_1, JULY_2, send_immediately=True)
        assert not result.ok
        assert result.kind == ErrorKind.FATAL
        assert "database is locked" in result.error
        assert db_count("generated_reports") == 0
        assert audit.codes[-1] == AuditCodes.RUN_FAILED

    def test_invalid_period_rejected(self, make_orchestrator):
        result = make_orchestrator().generate(JULY_2, JULY_1)
        assert result.kind == ErrorKind.CONFIG_REJECTED
        assert db_count("generated_reports") == 0

    def test_unknown_template(self, configured, make_orchestrator):
        result = make_orchestrator().generate(JULY_1, JULY_2, template_id=404)
        assert result.kind == ErrorKind.NOT_FOUND
        assert db_count("generated_reports") == 0

    def test_default_template_used(self, configured, make_orchestrator):
        tid = TemplateRepository.save(ReportTemplate(
            name="Breve", body_markdown="Total: {{total_reportes}} {{desconocido}}",
            is_default=True, created_at="2024-07-01 00:00:00"))
        report = make_orchestrator().generate(JULY_1, JULY_2).value
        assert report.template_id == tid
        assert report.narrative_markdown == "Total: 2 {{desconocido}}"

    def test_built_in_template_when_no_default(self, configured, make_orchestrator):
        report = make_orchestrator().generate(JULY_1, JULY_2).value
        assert report.template_id is None
        assert report.narrative_markdown.startswith("# Reporte de Incidencias")

    def test_period_excludes_end_bound(self, configured, make_orchestrator):
        insert_incident(JULY_2, crime_type="Fuera de periodo")
        report = make_orchestrator().generate(JULY_1, JULY_2).value
        assert report.statistics.total_count == 2
        assert "Fuera de periodo" not in report.statistics.by_crime_type


class TestCancellation:

    def test_cancel_before_aggregation_creates_nothing(self, configured, make_orchestrator):
        cancel = threading.Event()
        cancel.set()
        result = make_orchestrator().generate(JULY_1, JULY_2, cancel_event=cancel)
        assert result.kind == ErrorKind.CANCELLED
        assert db_count("generated_reports") == 0

    def test_cancel_after_aggregation_keeps_row(self, configured, make_orchestrator):
        cancel = threading.Event()

        class CancellingNarrative(FakeNarrative):
            def generate(self, *args, **kwargs):
                cancel.set()
                return super().generate(*args, **kwargs)

        renderer = FakeRenderer()
        delivery = FakeDelivery()
        orch = make_orchestrator(narrative=CancellingNarrative(), renderer=renderer, delivery=delivery)
        result = orch.generate(JULY_1, JULY_2, send_immediately=True, cancel_event=cancel)

        assert result.kind == ErrorKind.CANCELLED
        report = result.value
        assert ReportRepository.get_by_id(report.id) is not None
        assert report.narrative_markdown
        assert report.statistics.total_count == 2
        assert renderer.calls == 0
        assert delivery.outbox == []
        assert "cancelled" in report.last_error


class TestRetries:

    def test_regenerate_is_idempotent(self, configured, make_orchestrator):
        orch = make_orchestrator()
        report = orch.generate(JULY_1, JULY_2).value
        before = db_query("SELECT statistics_json, narrative_markdown FROM generated_reports")

        first = orch.regenerate_document(report.id)
        with open(first.value, "rb") as f:
            first_bytes = f.read()
        second = orch.regenerate_document(report.id)
        with open(second.value, "rb") as f:
            second_bytes = f.read()

        assert first.ok and second.ok
        assert first.value == second.value == report.document_path
        assert first_bytes == second_bytes
        assert db_query("SELECT statistics_json, narrative_markdown FROM generated_reports") == before
        assert len(os.listdir(os.path.dirname(first.value))) == 1

    def test_regenerate_does_not_call_narrative(self, configured, make_orchestrator):
        narrative = FakeNarrative()
        orch = make_orchestrator(narrative=narrative)
        report = orch.generate(JULY_1, JULY_2).value
        orch.regenerate_document(report.id)
        assert narrative.calls == 1

    def test_regenerate_clears_document_error(self, configured, make_orchestrator):
        renderer = FakeRenderer(fail=True)
        orch = make_orchestrator(renderer=renderer)
        report = orch.generate(JULY_1, JULY_2).value
        assert report.document_path is None

        renderer.fail = False
        result = orch.regenerate_document(report.id)
        assert result.ok
        stored = ReportRepository.get_by_id(report.id)
        assert stored.document_path == result.value
        assert stored.last_error is None

    def test_regenerate_failure_is_degraded(self, configured, make_orchestrator):
        renderer = FakeRenderer()
        orch = make_orchestrator(renderer=renderer)
        report = orch.generate(JULY_1, JULY_2).value
        renderer.fail = True
        result = orch.regenerate_document(report.id)
        assert result.kind == ErrorKind.DEGRADED
        assert ReportRepository.get_by_id(report.id).document_path == report.document_path

    def test_regenerate_missing(self, make_orchestrator):
        assert make_orchestrator().regenerate_document(12345).kind == ErrorKind.NOT_FOUND

    def test_resend_after_failed_delivery(self, configured, make_orchestrator):
        delivery = FakeDelivery(error="timeout")
        orch = make_orchestrator(delivery=delivery)
        report = orch.generate(JULY_1, JULY_2, send_immediately=True).value
        assert report.sent is False

        delivery.error = None
        result = orch.resend(report.id, override_recipients=["otra@ceiba.mx", " otra@ceiba.mx"])
        assert result.ok and result.value is True
        assert delivery.outbox[-1].recipients == ["otra@ceiba.mx"]
        stored = ReportRepository.get_by_id(report.id)
        assert stored.sent is True
        assert stored.last_error is None

    def test_resend_failure(self, configured, make_orchestrator):
        orch = make_orchestrator(delivery=FakeDelivery(error="550"))
        report = orch.generate(JULY_1, JULY_2).value
        result = orch.resend(report.id)
        assert not result.ok
        assert result.value is False
        assert ReportRepository.get_by_id(report.id).sent is False

    def test_resend_without_document_is_not_found(self, configured, make_orchestrator):
        orch = make_orchestrator(renderer=FakeRenderer(fail=True))
        report = orch.generate(JULY_1, JULY_2).value
        result = orch.resend(report.id)
        assert result.kind == ErrorKind.NOT_FOUND

    def test_resend_unknown_report(self, make_orchestrator):
        assert make_orchestrator().resend(999).kind == ErrorKind.NOT_FOUND

    def test_resend_cancelled_before_delivery(self, configured, make_orchestrator):
        delivery = FakeDelivery()
        orch = make_orchestrator(delivery=delivery)
        report = orch.generate(JULY_1, JULY_2).value

        cancel = threading.Event()
        cancel.set()
        result = orch.resend(report.id, cancel_event=cancel)
        assert result.kind == ErrorKind.CANCELLED
        assert delivery.outbox == []
        stored = ReportRepository.get_by_id(report.id)
        assert stored.sent is False
        assert stored.updated_at == report.updated_at


class TestTimeouts:

    def test_configured_timeouts_by_default(self, configured, make_orchestrator):
        narrative, delivery = FakeNarrative(), FakeDelivery()
        orch = make_orchestrator(narrative=narrative, delivery=delivery)
        orch.generate(JULY_1, JULY_2, send_immediately=True)
        assert narrative.timeouts == [60.0]
        assert delivery.timeouts == [30.0]

    def test_caller_timeout_for_generate(self, configured, make_orchestrator):
        narrative, delivery = FakeNarrative(), FakeDelivery()
        orch = make_orchestrator(narrative=narrative, delivery=delivery)
        orch.generate(JULY_1, JULY_2, send_immediately=True, timeout=3)
        assert narrative.timeouts == [3]
        assert delivery.timeouts == [3]

    def test_caller_timeout_for_resend(self, configured, make_orchestrator):
        delivery = FakeDelivery()
        orch = make_orchestrator(delivery=delivery)
        report = orch.generate(JULY_1, JULY_2).value
        assert orch.resend(report.id, timeout=5).ok
        assert delivery.timeouts == [5]


class TestQueries:

    def test_list_filters_and_paging(self, configured, make_orchestrator):
        orch = make_orchestrator()
        orch.generate(JULY_1, JULY_2, send_immediately=True)
        orch.generate("2024-07-02", "2024-07-03")
        orch.generate("2024-07-03", "2024-07-04")

        all_reports = orch.list_reports().value
        assert len(all_reports) == 3
        assert [r.id for r in all_reports] == sorted((r.id for r in all_reports), reverse=True)
        assert len(orch.list_reports(skip=1, take=1).value) == 1
        assert len(orch.list_reports(sent=True).value) == 1
        assert len(orch.list_reports(period_start="2024-07-02").value) == 2
        assert len(orch.list_reports(take=10000).value) == 3

    def test_get_report(self, configured, make_orchestrator):
        orch = make_orchestrator()
        report = orch.generate(JULY_1, JULY_2).value
        assert orch.get_report(report.id).value.id == report.id
        assert orch.get_report(999).kind == ErrorKind.NOT_FOUND

    def test_delete(self, configured, make_orchestrator):
        audit = RecordingAudit()
        orch = make_orchestrator(audit=audit)
        report = orch.generate(JULY_1, JULY_2).value

        result = orch.delete_report(report.id, actor="admin")
        assert result.ok and result.value is True
        assert not os.path.exists(report.document_path)
        assert db_count("generated_reports") == 0
        assert audit.codes[-1] == AuditCodes.DELETED

    def test_delete_missing_returns_false(self, make_orchestrator):
        result = make_orchestrator().delete_report(999)
        assert result.ok
        assert result.value is False


class TestPeriodBounds:

    def test_conversions(self):
        assert to_period_bound(datetime.date(2024, 7, 1)) == JULY_1
        assert to_period_bound("2024-07-01") == JULY_1
        assert to_period_bound("2024-07-01T08:30:00") == datetime.datetime(2024, 7, 1, 8, 30)
        with pytest.raises(ValueError):
            to_period_bound(42)

    def test_default_collaborators(self):
        orch = PipelineOrchestrator()
        assert orch.renderer.extension == "pdf"
