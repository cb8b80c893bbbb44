# ============================================================================
# CEIBA - Automated Report Pipeline
# ============================================================================
# PipelineOrchestrator runs one report through
#   Aggregating -> Rendering (template + narrative) -> DocumentGenerated
#   -> Delivered | DeliveryFailed
# and owns every write to generated_reports.
#
# Only an aggregation failure aborts a run. Later stages record their error
# on the report row (stage_errors / last_error) and the run still returns the
# report, so a reviewer can read it and retry the failed stage on its own.
# ============================================================================

import logging
import os
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, List, Optional

from .config import ConfigurationStore, ConfigSnapshot, get_local_now, get_timezone, normalize_recipients, now_ts
from .delivery import DeliveryResult, DeliveryService
from .models import (
    GeneratedReport, ReportRepository, TemplateRepository,
    AuditSink, SqliteAuditSink, AuditCodes, to_db_ts, from_db_ts,
)
from .narrative import NarrativeGenerator, fallback_narrative
from .renderer import (
    DocumentRenderer, PdfDocumentRenderer, RenderResult,
    artifact_name, render_report_html, report_title,
)
from .results import ErrorKind, OperationResult
from .sources import IncidentSource, SqliteIncidentSource, SourceUnavailableError
from .statistics import aggregate
from .templating import DEFAULT_TEMPLATE, build_bindings, render

logger = logging.getLogger("reporting.engine")

MAX_PAGE_SIZE = 500

# Actor recorded for calls that do not name one. The scheduler passes "system".
DEFAULT_ACTOR = "admin"

# stage_errors keys
STAGE_NARRATIVE = "narrative"
STAGE_DOCUMENT = "document"
STAGE_DELIVERY = "delivery"
STAGE_PIPELINE = "pipeline"


def to_period_bound(value: Any) -> datetime:
    """date / datetime / ISO string -> naive local datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(get_timezone()).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            return to_period_bound(date.fromisoformat(text))
        return to_period_bound(datetime.fromisoformat(text))
    raise ValueError(f"Not a date: {value!r}")


class PipelineOrchestrator:
    """
    Composes the pipeline stages. Collaborators are injectable; by default
    the sqlite incident source, the configured AI provider, WeasyPrint and
    the configured email provider are used.
    """

    def __init__(self,
                 source: Optional[IncidentSource] = None,
                 narrative: Optional[NarrativeGenerator] = None,
                 renderer: Optional[DocumentRenderer] = None,
                 delivery: Optional[DeliveryService] = None,
                 config_store: Optional[ConfigurationStore] = None,
                 audit: Optional[AuditSink] = None):
        self.source = source or SqliteIncidentSource()
        self.narrative = narrative or NarrativeGenerator()
        self.renderer = renderer or PdfDocumentRenderer()
        self.delivery = delivery or DeliveryService()
        self.config_store = config_store or ConfigurationStore()
        self.audit = audit or SqliteAuditSink()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _audit(self, code: str, report_id: Any = None, detail: str = None, actor: str = None):
        try:
            self.audit.log_event(code, related_id=report_id,
                                 related_table="generated_reports" if report_id else None,
                                 detail=detail, actor=actor)
        except Exception as e:
            logger.warning("Audit event %s not recorded: %s", code, e)

    @staticmethod
    def _save(report: GeneratedReport):
        report.updated_at = now_ts()
        ReportRepository.update(report)

    @staticmethod
    def _period(report: GeneratedReport):
        return from_db_ts(report.period_start), from_db_ts(report.period_end)

    def _cancelled(self, report: GeneratedReport, stage: str, actor: str) -> OperationResult:
        message = f"Run cancelled before {stage}"
        report.set_stage_error(STAGE_PIPELINE, message)
        self._save(report)
        logger.warning("Report %s: %s", report.id, message)
        self._audit(AuditCodes.RUN_PARTIAL, report.id, message, actor)
        return OperationResult(ok=False, value=report, kind=ErrorKind.CANCELLED, errors=[message])

    def _render_document(self, report: GeneratedReport, output_dir: str) -> RenderResult:
        start, end = self._period(report)
        result = self.renderer.render(
            report.narrative_markdown,
            output_dir,
            artifact_name(start, end, report.id),
            title=report_title(start, end),
        )
        if result.success:
            report.document_path = result.path
            report.set_stage_error(STAGE_DOCUMENT, None)
        else:
            report.set_stage_error(STAGE_DOCUMENT, result.error)
        self._save(report)
        return result

    def _deliver(self, report: GeneratedReport, recipients: List[str],
                 snapshot: ConfigSnapshot, actor: str, timeout: float) -> DeliveryResult:
        start, end = self._period(report)
        subject = report_title(start, end)
        result = self.delivery.send(
            report.document_path,
            recipients,
            snapshot.email,
            subject=subject,
            body_html=render_report_html(report.narrative_markdown, subject),
            body_text=report.narrative_markdown,
            timeout=timeout,
        )
        if result.success:
            report.sent = True
            report.sent_at = now_ts()
            report.set_stage_error(STAGE_DELIVERY, None)
            logger.info("Report %s sent to %d recipient(s)", report.id, len(recipients))
            self._audit(AuditCodes.SENT, report.id,
                        f"Sent to {', '.join(recipients)}", actor)
        else:
            report.set_stage_error(STAGE_DELIVERY, f"Delivery failed: {result.error}")
            logger.warning("Report %s delivery failed: %s", report.id, result.error)
            self._audit(AuditCodes.SEND_FAILED, report.id, result.error, actor)
        self._save(report)
        return result

    # ------------------------------------------------------------------ #
    # generate
    # ------------------------------------------------------------------ #

    def generate(self,
                 period_start: Any,
                 period_end: Any,
                 template_id: Optional[int] = None,
                 send_immediately: bool = False,
                 actor: str = DEFAULT_ACTOR,
                 cancel_event: Optional[threading.Event] = None,
                 run_date: Optional[str] = None,
                 timeout: Optional[float] = None) -> OperationResult:
        """
        Run the whole pipeline once for [period_start, period_end).

        `run_date` is set by the scheduler: the day marker is then written
        together with the new row. `timeout` bounds each network call (AI,
        email) and defaults to the configured per-stage timeouts. Returns the
        report (possibly with last_error set) or a FATAL / NOT_FOUND /
        CONFIG_REJECTED failure when no row was created.
        """
        try:
            start, end = to_period_bound(period_start), to_period_bound(period_end)
        except ValueError as e:
            return OperationResult.rejected([str(e)])
        if end <= start:
            return OperationResult.rejected(["period_end must be after period_start"])

        cancelled = cancel_event.is_set if cancel_event is not None else (lambda: False)
        snapshot = self.config_store.snapshot()

        template_body, resolved_template_id = DEFAULT_TEMPLATE, None
        if template_id is not None:
            template = TemplateRepository.get_by_id(template_id)
            if template is None:
                return OperationResult.not_found("Template", template_id)
        else:
            template = TemplateRepository.get_default()
        if template is not None:
            template_body, resolved_template_id = template.body_markdown, template.id

        period_label = f"{to_db_ts(start)} - {to_db_ts(end)}"
        logger.info("Report run started for %s (actor=%s, send=%s)", period_label, actor, send_immediately)
        self._audit(AuditCodes.RUN_STARTED, detail=f"Period {period_label}", actor=actor)

        # -- Aggregating ------------------------------------------------
        if cancelled():
            return OperationResult.failure(ErrorKind.CANCELLED, "Run cancelled before aggregation")
        try:
            records = self.source.fetch_incidents(start, end)
            stats = aggregate(records, start, end)
            created_at = now_ts()
            report = GeneratedReport(
                period_start=to_db_ts(start),
                period_end=to_db_ts(end),
                statistics_json=stats.to_json(),
                template_id=resolved_template_id,
                created_by=actor,
                created_at=created_at,
                updated_at=created_at,
            )
            report.id = ReportRepository.create(report, run_date=run_date)
        except SourceUnavailableError as e:
            logger.error("Report run aborted, record source unavailable: %s", e)
            self._audit(AuditCodes.RUN_FAILED, detail=f"Record source unavailable: {e}", actor=actor)
            return OperationResult.failure(ErrorKind.FATAL, f"Record source unavailable: {e}")
        except Exception as e:
            logger.error("Report run aborted during aggregation: %s", e, exc_info=True)
            self._audit(AuditCodes.RUN_FAILED, detail=f"Aggregation failed: {e}", actor=actor)
            return OperationResult.failure(ErrorKind.FATAL, f"Aggregation failed: {e}")

        logger.info("Report %s aggregated: %d record(s)", report.id, stats.total_count)

        # -- Rendering (narrative + template) ----------------------------
        if cancelled():
            return self._cancelled(report, "narrative generation", actor)
        narrative = self.narrative.generate(
            stats, snapshot.ai, start, end,
            records=records,
            timeout=timeout if timeout is not None else snapshot.narrative_timeout,
            cancel_event=cancel_event,
        )
        if narrative.success:
            text = narrative.text
        else:
            text = fallback_narrative(stats, start, end)
            report.set_stage_error(STAGE_NARRATIVE, f"Narrative generation failed: {narrative.error}")
            logger.warning("Report %s using fallback narrative: %s", report.id, narrative.error)

        bindings = build_bindings(stats, text, start, end, generated_at=get_local_now())
        report.narrative_markdown = render(template_body, bindings)
        self._save(report)

        # -- DocumentGenerated -----------------------------------------
        if cancelled():
            return self._cancelled(report, "document generation", actor)
        self._render_document(report, snapshot.schedule.output_path)

        # -- Delivered | DeliveryFailed ----------------------------------
        if send_immediately:
            if cancelled():
                return self._cancelled(report, "delivery", actor)
            self._deliver(report, snapshot.schedule.recipients, snapshot, actor,
                          timeout if timeout is not None else snapshot.delivery_timeout)

        if report.last_error:
            logger.warning("Report %s completed with warnings: %s", report.id, report.last_error)
            self._audit(AuditCodes.RUN_PARTIAL, report.id, report.last_error, actor)
        else:
            logger.info("Report %s completed", report.id)
            self._audit(AuditCodes.RUN_COMPLETED, report.id, f"Period {period_label}", actor)
        return OperationResult.success(report)

    # ------------------------------------------------------------------ #
    # Per-stage retries
    # ------------------------------------------------------------------ #

    def regenerate_document(self, report_id: int, actor: str = DEFAULT_ACTOR) -> OperationResult:
        """Re-render the stored markdown. Statistics and narrative are left alone."""
        report = ReportRepository.get_by_id(report_id)
        if report is None:
            return OperationResult.not_found("Report", report_id)
        if not report.narrative_markdown:
            return OperationResult.failure(ErrorKind.NOT_FOUND,
                                           f"Report {report_id} has no rendered content")

        if report.document_path:
            output_dir = str(Path(report.document_path).parent)
        else:
            output_dir = self.config_store.snapshot().schedule.output_path

        result = self._render_document(report, output_dir)
        if not result.success:
            return OperationResult(ok=False, value=report, kind=ErrorKind.DEGRADED,
                                   errors=[result.error])
        logger.info("Report %s document regenerated by %s", report_id, actor)
        return OperationResult.success(result.path)

    def resend(self, report_id: int, override_recipients: Optional[List[str]] = None,
               actor: str = DEFAULT_ACTOR,
               timeout: Optional[float] = None,
               cancel_event: Optional[threading.Event] = None) -> OperationResult:
        """One more delivery attempt with the stored document.

        A cancellation seen before the provider is called leaves the report
        untouched.
        """
        report = ReportRepository.get_by_id(report_id)
        if report is None:
            return OperationResult.not_found("Report", report_id)
        if not report.document_path or not os.path.exists(report.document_path):
            return OperationResult.failure(ErrorKind.NOT_FOUND,
                                           f"Report {report_id} has no document to send")

        snapshot = self.config_store.snapshot()
        if override_recipients is not None:
            recipients = normalize_recipients(override_recipients)
        else:
            recipients = snapshot.schedule.recipients
        if not recipients:
            return OperationResult.rejected(["No recipients configured"])

        if cancel_event is not None and cancel_event.is_set():
            logger.info("Resend of report %s cancelled", report_id)
            return OperationResult.failure(ErrorKind.CANCELLED, "Resend cancelled before delivery")
        result = self._deliver(report, recipients, snapshot, actor,
                               timeout if timeout is not None else snapshot.delivery_timeout)
        if result.success:
            return OperationResult.success(True)
        return OperationResult(ok=False, value=False, kind=ErrorKind.DEGRADED,
                               errors=[result.error or "Delivery failed"])

    # ------------------------------------------------------------------ #
    # Queries / delete
    # ------------------------------------------------------------------ #

    def get_report(self, report_id: int) -> OperationResult:
        report = ReportRepository.get_by_id(report_id)
        if report is None:
            return OperationResult.not_found("Report", report_id)
        return OperationResult.success(report)

    def list_reports(self, skip: int = 0, take: int = 50,
                     period_start: Any = None, period_end: Any = None,
                     sent: Optional[bool] = None) -> OperationResult:
        try:
            start = to_db_ts(to_period_bound(period_start)) if period_start else None
            end = to_db_ts(to_period_bound(period_end)) if period_end else None
        except ValueError as e:
            return OperationResult.rejected([str(e)])
        skip = max(int(skip), 0)
        take = min(max(int(take), 1), MAX_PAGE_SIZE)
        return OperationResult.success(
            ReportRepository.list(skip=skip, take=take, period_start=start,
                                  period_end=end, sent=sent))

    def delete_report(self, report_id: int, actor: str = DEFAULT_ACTOR) -> OperationResult:
        """Hard delete. A missing id is reported as value False, not as an error."""
        report = ReportRepository.get_by_id(report_id)
        if report is None:
            return OperationResult.success(False)

        if report.document_path:
            try:
                os.remove(report.document_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove artifact %s: %s", report.document_path, e)

        deleted = ReportRepository.delete(report_id)
        if deleted:
            self._audit(AuditCodes.DELETED, report_id,
                        f"Period {report.period_start} - {report.period_end}", actor)
        return OperationResult.success(deleted)


# ============================================================================
# Singleton
# ============================================================================

_engine: Optional[PipelineOrchestrator] = None


def get_engine() -> PipelineOrchestrator:
    """Return (or create) the global PipelineOrchestrator singleton."""
    global _engine
    if _engine is None:
        _engine = PipelineOrchestrator()
    return _engine


def set_engine(engine: Optional[PipelineOrchestrator]):
    """Replace the global orchestrator (tests, alternative wiring)."""
    global _engine
    _engine = engine
