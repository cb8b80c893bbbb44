# ============================================================================
# CEIBA - Automated Incident Reporting
# ============================================================================
# Periodic (or on-demand) incident reports:
#   - Statistics aggregation over a half-open period
#   - Markdown templates with {{placeholder}} substitution
#   - AI narrative (OpenAI, Azure OpenAI, local, Ollama) with fallback text
#   - PDF rendering (WeasyPrint)
#   - Email delivery (SMTP, SendGrid, Mailgun)
#   - Daily scheduling (APScheduler) with a persisted last-run marker
# ============================================================================

from .config import ConfigurationStore, ReportingConfig, get_config, set_config
from .engine import PipelineOrchestrator, get_engine
from .results import ErrorKind, OperationResult
from .routes import register_reporting_routes
from .scheduler import ReportScheduler, get_scheduler, init_scheduler
from .statistics import IncidentRecord, ReportStatistics, aggregate
from .templating import render

__version__ = "1.0.0"
__all__ = [
    "ConfigurationStore",
    "ReportingConfig",
    "get_config",
    "set_config",
    "PipelineOrchestrator",
    "get_engine",
    "ErrorKind",
    "OperationResult",
    "register_reporting_routes",
    "ReportScheduler",
    "get_scheduler",
    "init_scheduler",
    "IncidentRecord",
    "ReportStatistics",
    "aggregate",
    "render",
]
