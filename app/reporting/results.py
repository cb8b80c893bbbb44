# ============================================================================
# CEIBA - Reporting Operation Results
# ============================================================================
# Expected failures (not-found, validation, source outage) travel as values.
# Callers check `ok` and branch on `kind` instead of catching exceptions.
# ============================================================================

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    FATAL = "fatal"                      # aborted before anything was persisted
    DEGRADED = "degraded"                # persisted, one or more stages failed
    CONFIG_REJECTED = "config_rejected"  # validation blocked the write
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    """Outcome of an orchestrator or configuration operation."""
    ok: bool
    value: Any = None
    kind: Optional[ErrorKind] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, *errors: str) -> "OperationResult":
        return cls(ok=False, kind=kind, errors=list(errors))

    @classmethod
    def not_found(cls, what: str, ident: Any) -> "OperationResult":
        return cls.failure(ErrorKind.NOT_FOUND, f"{what} {ident} not found")

    @classmethod
    def rejected(cls, errors: List[str]) -> "OperationResult":
        return cls(ok=False, kind=ErrorKind.CONFIG_REJECTED, errors=list(errors))

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok}
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        if value is not None:
            d["result"] = value
        if not self.ok:
            d["error"] = self.error
            d["kind"] = self.kind.value if self.kind else None
            d["errors"] = self.errors
        return d
