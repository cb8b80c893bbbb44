# ============================================================================
# CEIBA - Reporting Configuration Management
# ============================================================================
# Two layers:
#   - ReportingConfig: typed key/value runtime settings (timezone, timeouts,
#     scheduler tuning) with an in-process cache.
#   - ConfigurationStore: the admin-owned entities (schedule, AI provider,
#     email provider, report templates). Every write is validated in full
#     first; a rejected write persists nothing and returns every violation.
# ============================================================================

import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime, time as dtime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import (
    get_db, to_db_ts, read_config_snapshot,
    AiProviderConfig, EmailProviderConfig, ScheduleConfig, ReportTemplate,
    AiConfigRepository, EmailConfigRepository, ScheduleConfigRepository,
    TemplateRepository, ReportRepository, AuditSink, SqliteAuditSink, AuditCodes,
)
from .results import OperationResult

logger = logging.getLogger("reporting.config")

DEFAULT_TIMEZONE = "America/Mexico_City"

# key -> (default, type, category)
DEFAULT_CONFIG = {
    "timezone": (DEFAULT_TIMEZONE, "string", "general"),
    "narrative_timeout_seconds": (60, "int", "pipeline"),
    "delivery_timeout_seconds": (30, "int", "pipeline"),
    "scheduler_poll_seconds": (60, "int", "scheduler"),
    "scheduler_autostart": (True, "bool", "scheduler"),
}

AI_PROVIDERS = ("OpenAI", "AzureOpenAI", "Local", "Ollama")
EMAIL_PROVIDERS = ("SMTP", "SendGrid", "Mailgun")
MAILGUN_REGIONS = ("US", "EU")

MAX_TOKENS_RANGE = (500, 128000)
TEMPERATURE_RANGE = (0.0, 2.0)
MAX_RECORDS_RANGE = (0, 1000)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class ReportingConfig:
    """
    Database-backed runtime settings.

    Values live in the ReportingConfig table with their type; unset keys
    fall back to DEFAULT_CONFIG.
    """

    _cache: Dict[str, Any] = {}
    _cache_loaded: bool = False
    _lock = threading.Lock()

    @classmethod
    def _load_cache(cls):
        """Load all config into memory cache."""
        with cls._lock:
            if cls._cache_loaded:
                return
            cache = {key: default for key, (default, _, _) in DEFAULT_CONFIG.items()}
            conn = get_db()
            rows = conn.execute("SELECT key, value, value_type FROM ReportingConfig").fetchall()
            conn.close()
            for row in rows:
                cache[row["key"]] = cls._cast_value(row["value"], row["value_type"])
            cls._cache = cache
            cls._cache_loaded = True

    @classmethod
    def _cast_value(cls, value: str, value_type: str) -> Any:
        """Cast string value to appropriate type."""
        if value is None:
            return None
        if value_type == "bool":
            return value.lower() in ("true", "1", "yes", "on")
        if value_type == "int":
            try:
                return int(value)
            except ValueError:
                return 0
        return value

    @classmethod
    def _serialize_value(cls, value: Any, value_type: str) -> str:
        """Serialize value to string for storage."""
        if value is None:
            return ""
        if value_type == "bool":
            return "true" if value else "false"
        return str(value)

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        cls._load_cache()
        value = cls._cache.get(key)
        return default if value is None else value

    @classmethod
    def set(cls, key: str, value: Any, user: str = None) -> bool:
        """Set a configuration value (UPSERT) and drop the cache."""
        _, value_type, category = DEFAULT_CONFIG.get(key, (None, "string", "general"))
        conn = get_db()
        conn.execute(
            """INSERT INTO ReportingConfig (key, value, value_type, category, updated_at, updated_by)
               VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP, ?)
               ON CONFLICT(key) DO UPDATE SET
               value=excluded.value, value_type=excluded.value_type,
               updated_at=CURRENT_TIMESTAMP, updated_by=excluded.updated_by""",
            (key, cls._serialize_value(value, value_type), value_type, category, user),
        )
        conn.commit()
        conn.close()
        cls.reset_cache()
        return True

    @classmethod
    def reset_cache(cls):
        """Reset the configuration cache."""
        with cls._lock:
            cls._cache = {}
            cls._cache_loaded = False


# Convenience functions
def get_config(key: str, default: Any = None) -> Any:
    """Get a configuration value."""
    return ReportingConfig.get(key, default)


def set_config(key: str, value: Any, user: str = None) -> bool:
    """Set a configuration value."""
    return ReportingConfig.set(key, value, user=user)


# ============================================================================
# Timezone Helpers
# ============================================================================

def get_timezone():
    """Get the configured timezone object."""
    tz_name = get_config("timezone", DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def get_local_now() -> datetime:
    """Current wall-clock time in the configured timezone (naive)."""
    return datetime.now(get_timezone()).replace(tzinfo=None)


def now_ts() -> str:
    return to_db_ts(get_local_now())


def parse_time_of_day(value: Any) -> Optional[dtime]:
    """'HH:MM' / 'HH:MM:SS' / time -> time, or None if not a valid time of day."""
    if isinstance(value, dtime):
        return value
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        nums = [int(p) for p in parts]
    except ValueError:
        return None
    hour, minute = nums[0], nums[1]
    second = nums[2] if len(nums) == 3 else 0
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        return None
    return dtime(hour, minute, second)


# ============================================================================
# Validation (pure)
# ============================================================================

def normalize_recipients(raw: Any) -> List[str]:
    """Trim, drop empties and de-duplicate (case-insensitive), keeping order."""
    if raw is None:
        return []
    if isinstance(raw, str):
        items = re.split(r"[,;\n]", raw)
    else:
        items = [str(r) for r in raw if r is not None]
    seen = set()
    result = []
    for item in items:
        addr = item.strip()
        if not addr or addr.lower() in seen:
            continue
        seen.add(addr.lower())
        result.append(addr)
    return result


def validate_schedule(cfg: ScheduleConfig) -> List[str]:
    errors = []
    if parse_time_of_day(cfg.generation_time) is None:
        errors.append("generation_time must be a time of day between 00:00:00 and 23:59:59")
    for addr in cfg.recipients:
        if not EMAIL_RE.match(addr):
            errors.append(f"Invalid recipient address: {addr}")
    if cfg.enabled and not cfg.recipients:
        errors.append("At least one recipient is required when the schedule is enabled")
    if not (cfg.output_path or "").strip():
        errors.append("output_path is required")
    return errors


def _check_range(errors: List[str], name: str, value: Any, bounds: tuple, cast):
    low, high = bounds
    try:
        number = cast(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be a number between {low} and {high}")
        return
    if isinstance(value, bool) or not (low <= number <= high):
        errors.append(f"{name} must be between {low} and {high}")


def validate_ai(cfg: AiProviderConfig) -> List[str]:
    errors = []
    if cfg.provider not in AI_PROVIDERS:
        errors.append(f"provider must be one of: {', '.join(AI_PROVIDERS)}")
    if not (cfg.model or "").strip():
        errors.append("model is required")
    _check_range(errors, "max_tokens", cfg.max_tokens, MAX_TOKENS_RANGE, int)
    _check_range(errors, "temperature", cfg.temperature, TEMPERATURE_RANGE, float)
    _check_range(errors, "max_records_for_narrative", cfg.max_records_for_narrative,
                 MAX_RECORDS_RANGE, int)

    if cfg.provider in ("OpenAI", "AzureOpenAI") and not cfg.api_key:
        errors.append(f"api_key is required for {cfg.provider}")
    if cfg.provider == "AzureOpenAI" and not cfg.endpoint:
        errors.append("endpoint is required for AzureOpenAI")
    if cfg.provider in ("Local", "Ollama") and not cfg.endpoint:
        errors.append(f"endpoint (local server URL) is required for {cfg.provider}")
    return errors


def validate_email(cfg: EmailProviderConfig) -> List[str]:
    errors = []
    if cfg.provider not in EMAIL_PROVIDERS:
        errors.append(f"provider must be one of: {', '.join(EMAIL_PROVIDERS)}")
    if cfg.smtp_port is not None:
        _check_range(errors, "smtp_port", cfg.smtp_port, (1, 65535), int)
    if cfg.mailgun_region and cfg.mailgun_region not in MAILGUN_REGIONS:
        errors.append("mailgun_region must be US or EU")

    if not cfg.enabled:
        return errors

    if not (cfg.from_address or "").strip():
        errors.append("from_address is required")
    elif not EMAIL_RE.match(cfg.from_address.strip()):
        errors.append(f"from_address is not a valid email address: {cfg.from_address}")
    if not (cfg.from_name or "").strip():
        errors.append("from_name is required")

    if cfg.provider == "SMTP":
        if not (cfg.smtp_host or "").strip():
            errors.append("smtp_host is required for SMTP")
        if cfg.smtp_port is None:
            errors.append("smtp_port is required for SMTP")
    elif cfg.provider == "SendGrid":
        if not cfg.sendgrid_api_key:
            errors.append("sendgrid_api_key is required for SendGrid")
    elif cfg.provider == "Mailgun":
        if not cfg.mailgun_api_key:
            errors.append("mailgun_api_key is required for Mailgun")
        if not (cfg.mailgun_domain or "").strip():
            errors.append("mailgun_domain is required for Mailgun")
        if not cfg.mailgun_region:
            errors.append("mailgun_region is required for Mailgun (US or EU)")
    return errors


def validate_template(t: ReportTemplate) -> List[str]:
    errors = []
    if not (t.name or "").strip():
        errors.append("name is required")
    if not (t.body_markdown or "").strip():
        errors.append("body_markdown is required")
    if t.is_default and not t.active:
        errors.append("Only an active template can be the default")
    return errors


# ============================================================================
# Configuration store
# ============================================================================

@dataclass
class ConfigSnapshot:
    """Configuration as seen by one pipeline run."""
    schedule: ScheduleConfig
    ai: Optional[AiProviderConfig]
    email: Optional[EmailProviderConfig]
    narrative_timeout: float
    delivery_timeout: float


_SCHEDULE_FIELDS = ("enabled", "generation_time", "recipients", "output_path")
_AI_FIELDS = ("provider", "model", "api_key", "endpoint", "azure_api_version",
              "max_tokens", "temperature", "max_records_for_narrative")
_EMAIL_FIELDS = ("provider", "enabled", "from_address", "from_name", "smtp_host",
                 "smtp_port", "smtp_username", "smtp_password", "smtp_use_tls",
                 "sendgrid_api_key", "mailgun_api_key", "mailgun_domain", "mailgun_region")
_EMAIL_SECRETS = {
    "SMTP": ("smtp_password",),
    "SendGrid": ("sendgrid_api_key",),
    "Mailgun": ("mailgun_api_key",),
}
_SECRET_FIELDS = {"api_key", "smtp_password", "sendgrid_api_key", "mailgun_api_key"}


def _overlay(base, data: Dict, fields: tuple, keep_if_blank: tuple = ()):
    """Copy of base with the given fields replaced from data. Blank secrets
    listed in keep_if_blank leave the stored value in place."""
    changes = {}
    for name in fields:
        if name not in data:
            continue
        value = data[name]
        if name in keep_if_blank and value in (None, ""):
            continue
        changes[name] = value
    return replace(base, **changes), sorted(changes)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


class ConfigurationStore:
    """
    Admin-facing read/update operations. The acting identity is always an
    explicit argument; pipeline runs only ever read through snapshot().
    """

    def __init__(self, audit: Optional[AuditSink] = None):
        self.audit = audit or SqliteAuditSink(category="configuration")

    def _log(self, code: str, **fields):
        try:
            self.audit.log_event(code, **fields)
        except Exception as e:
            logger.warning("Audit event %s not recorded: %s", code, e)

    def _audit(self, entity: str, actor: str, changed: List[str], related_id=None):
        shown = [c if c not in _SECRET_FIELDS else f"{c}(secret)" for c in changed]
        self._log(
            AuditCodes.CONFIG_CHANGE,
            related_id=related_id,
            related_table=entity,
            detail=f"{entity} updated: {', '.join(shown) or 'no changes'}",
            actor=actor,
        )

    # -- Schedule ------------------------------------------------------

    def get_schedule(self) -> ScheduleConfig:
        return ScheduleConfigRepository.get() or ScheduleConfig()

    def update_schedule(self, data: Dict, actor: str) -> OperationResult:
        current = self.get_schedule()
        data = dict(data)
        if "recipients" in data:
            data["recipients"] = normalize_recipients(data["recipients"])
        if "enabled" in data:
            data["enabled"] = _as_bool(data["enabled"])
        cfg, changed = _overlay(current, data, _SCHEDULE_FIELDS)

        errors = validate_schedule(cfg)
        if errors:
            return OperationResult.rejected(errors)

        cfg.generation_time = parse_time_of_day(cfg.generation_time).strftime("%H:%M:%S")
        cfg.updated_at = now_ts()
        cfg.updated_by = actor
        ScheduleConfigRepository.save(cfg)
        self._audit("schedule_config", actor, changed)
        return OperationResult.success(cfg)

    # -- AI provider ---------------------------------------------------

    def get_ai(self) -> Optional[AiProviderConfig]:
        return AiConfigRepository.get()

    def update_ai(self, data: Dict, actor: str) -> OperationResult:
        current = self.get_ai() or AiProviderConfig()
        cfg, changed = _overlay(current, data, _AI_FIELDS, keep_if_blank=("api_key",))

        errors = validate_ai(cfg)
        if errors:
            return OperationResult.rejected(errors)

        cfg.max_tokens = int(cfg.max_tokens)
        cfg.temperature = float(cfg.temperature)
        cfg.max_records_for_narrative = int(cfg.max_records_for_narrative)
        cfg.updated_at = now_ts()
        cfg.updated_by = actor
        AiConfigRepository.save(cfg)
        self._audit("ai_provider_config", actor, changed)
        return OperationResult.success(cfg)

    def test_ai_configuration(self, actor: str, generator=None) -> OperationResult:
        from .narrative import NarrativeGenerator

        cfg = self.get_ai()
        if cfg is None:
            return OperationResult.not_found("AI configuration", "")
        generator = generator or NarrativeGenerator()
        result = generator.test_connection(cfg, timeout=get_config("narrative_timeout_seconds", 60))
        self._log(
            AuditCodes.CONFIG_CHANGE, related_table="ai_provider_config",
            detail=f"AI test ({cfg.provider}): {'ok' if result.success else result.error}",
            actor=actor,
        )
        return OperationResult.success(result)

    # -- Email provider ------------------------------------------------

    def get_email(self) -> EmailProviderConfig:
        return EmailConfigRepository.get() or EmailProviderConfig()

    def update_email(self, data: Dict, actor: str) -> OperationResult:
        current = self.get_email()
        data = dict(data)
        for flag in ("enabled", "smtp_use_tls"):
            if flag in data:
                data[flag] = _as_bool(data[flag])
        if data.get("smtp_port") == "":
            data["smtp_port"] = None
        cfg, changed = _overlay(current, data, _EMAIL_FIELDS,
                                keep_if_blank=("smtp_password", "sendgrid_api_key", "mailgun_api_key"))
        if cfg.mailgun_region:
            cfg.mailgun_region = str(cfg.mailgun_region).upper()

        errors = validate_email(cfg)
        if errors:
            return OperationResult.rejected(errors)

        if cfg.smtp_port is not None:
            cfg.smtp_port = int(cfg.smtp_port)
        # Secrets of providers that are no longer selected are not kept around.
        for provider, secrets in _EMAIL_SECRETS.items():
            if provider != cfg.provider:
                for name in secrets:
                    setattr(cfg, name, None)
        cfg.updated_at = now_ts()
        cfg.updated_by = actor
        EmailConfigRepository.save(cfg)
        self._audit("email_provider_config", actor, changed)
        return OperationResult.success(cfg)

    def test_email_configuration(self, recipient: str, actor: str, delivery=None) -> OperationResult:
        """Send a test message with the stored settings and record the outcome."""
        from .delivery import DeliveryService

        cfg = self.get_email()
        if EmailConfigRepository.get() is None:
            EmailConfigRepository.save(cfg)
        delivery = delivery or DeliveryService()
        result = delivery.test_send(recipient, cfg, timeout=get_config("delivery_timeout_seconds", 30))
        EmailConfigRepository.record_test(now_ts(), result.success, result.error)
        self._log(
            AuditCodes.CONFIG_CHANGE, related_table="email_provider_config",
            detail=f"Email test to {recipient} ({cfg.provider}): "
                   f"{'ok' if result.success else result.error}",
            actor=actor,
        )
        return OperationResult.success(result)

    # -- Templates -----------------------------------------------------

    def list_templates(self, active_only: bool = False) -> List[ReportTemplate]:
        return TemplateRepository.get_all(active_only=active_only)

    def get_template(self, template_id: int) -> OperationResult:
        t = TemplateRepository.get_by_id(template_id)
        if t is None:
            return OperationResult.not_found("Template", template_id)
        return OperationResult.success(t)

    def get_default_template(self) -> Optional[ReportTemplate]:
        return TemplateRepository.get_default()

    def create_template(self, data: Dict, actor: str) -> OperationResult:
        ts = now_ts()
        t = ReportTemplate(
            name=(data.get("name") or "").strip(),
            description=data.get("description"),
            body_markdown=data.get("body_markdown") or "",
            active=_as_bool(data.get("active", True)),
            is_default=_as_bool(data.get("is_default", False)),
            owner=actor,
            created_at=ts,
            updated_at=ts,
        )
        errors = validate_template(t)
        if errors:
            return OperationResult.rejected(errors)
        t.id = TemplateRepository.save(t)
        self._audit("report_templates", actor, ["created"], related_id=t.id)
        return OperationResult.success(t)

    def update_template(self, template_id: int, data: Dict, actor: str) -> OperationResult:
        current = TemplateRepository.get_by_id(template_id)
        if current is None:
            return OperationResult.not_found("Template", template_id)
        data = dict(data)
        for flag in ("active", "is_default"):
            if flag in data:
                data[flag] = _as_bool(data[flag])
        if "name" in data:
            data["name"] = (data["name"] or "").strip()
        t, changed = _overlay(current, data, ("name", "description", "body_markdown",
                                              "active", "is_default"))
        if not t.active and "is_default" not in data:
            t.is_default = False
        errors = validate_template(t)
        if errors:
            return OperationResult.rejected(errors)
        t.owner = actor
        t.updated_at = now_ts()
        TemplateRepository.save(t)
        self._audit("report_templates", actor, changed, related_id=t.id)
        return OperationResult.success(t)

    def set_default_template(self, template_id: int, actor: str) -> OperationResult:
        t = TemplateRepository.get_by_id(template_id)
        if t is None:
            return OperationResult.not_found("Template", template_id)
        if not TemplateRepository.set_default(template_id, now_ts()):
            return OperationResult.rejected(["Only an active template can be the default"])
        self._audit("report_templates", actor, ["is_default"], related_id=template_id)
        return OperationResult.success(TemplateRepository.get_by_id(template_id))

    def delete_template(self, template_id: int, actor: str) -> OperationResult:
        """Hard delete, or deactivate when reports still reference the template."""
        t = TemplateRepository.get_by_id(template_id)
        if t is None:
            return OperationResult.not_found("Template", template_id)
        if ReportRepository.count_for_template(template_id):
            TemplateRepository.deactivate(template_id, now_ts())
            self._audit("report_templates", actor, ["deactivated"], related_id=template_id)
            return OperationResult.success({"deleted": False, "deactivated": True})
        TemplateRepository.delete(template_id)
        self._audit("report_templates", actor, ["deleted"], related_id=template_id)
        return OperationResult.success({"deleted": True, "deactivated": False})

    # -- Snapshot --------------------------------------------------------

    def snapshot(self) -> ConfigSnapshot:
        schedule, ai, email = read_config_snapshot()
        return ConfigSnapshot(
            schedule=schedule or ScheduleConfig(),
            ai=ai,
            email=email,
            narrative_timeout=float(get_config("narrative_timeout_seconds", 60)),
            delivery_timeout=float(get_config("delivery_timeout_seconds", 30)),
        )
