# ============================================================================
# CEIBA - Report Template Engine
# ============================================================================
# Single-pass {{placeholder}} substitution plus the bindings built from a
# statistics snapshot. Unknown placeholders stay in the output untouched so
# a broken template shows exactly which token was not understood.
# ============================================================================

import json
import re
from datetime import datetime
from typing import Dict, Mapping, Optional

from .statistics import ReportStatistics, sorted_counts

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

DATE_FMT = "%d/%m/%Y"

DEFAULT_TEMPLATE = """# Reporte de Incidencias de Género
## Período: {{fecha_inicio}} - {{fecha_fin}}

---

## Resumen Ejecutivo

{{narrativa_ia}}

---

## Estadísticas Generales

| Métrica | Valor |
|---------|-------|
| Total de Reportes | {{total_reportes}} |
| Reportes Entregados | {{total_entregados}} |
| Reportes en Borrador | {{total_borrador}} |
| Casos LGBTTTIQ+ | {{total_lgbtq}} |
| Casos Migrantes | {{total_migrantes}} |
| Casos Situación de Calle | {{total_situacion_calle}} |
| Casos con Discapacidad | {{total_discapacidad}} |

## Distribución por Tipo de Delito

{{tabla_delitos}}

## Distribución por Zona

{{tabla_zonas}}

## Distribución por Rango de Edad

{{tabla_edades}}

---

*Reporte generado automáticamente el {{fecha_generacion}}*
"""

NO_DATA = "_Sin datos_"


def render(template: str, bindings: Mapping[str, str]) -> str:
    """
    Replace every {{name}} that has a binding. Bound values are inserted as-is
    and never scanned again.
    """
    def _sub(match):
        key = match.group(1)
        if key in bindings:
            return str(bindings[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_sub, template or "")


def placeholders(template: str) -> list:
    """Distinct placeholder names in order of first appearance."""
    seen = []
    for match in PLACEHOLDER_RE.finditer(template or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def _cell(value) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ")


def count_table(counts: Dict[str, int], header: str, limit: Optional[int] = None) -> str:
    """Markdown table of key/count/percentage, biggest first."""
    if not counts:
        return NO_DATA
    total = sum(counts.values())
    rows = sorted_counts(counts)
    if limit:
        rows = rows[:limit]
    lines = [f"| {header} | Cantidad | % |", "|---|---:|---:|"]
    for key, count in rows:
        pct = (count * 100.0 / total) if total else 0.0
        lines.append(f"| {_cell(key)} | {count} | {pct:.1f}% |")
    return "\n".join(lines)


def build_bindings(stats: ReportStatistics,
                   narrative: str,
                   period_start: datetime,
                   period_end: datetime,
                   generated_at: Optional[datetime] = None) -> Dict[str, str]:
    generated_at = generated_at or datetime.now()
    return {
        "fecha_inicio": period_start.strftime(DATE_FMT),
        "fecha_fin": period_end.strftime(DATE_FMT),
        "fecha_generacion": generated_at.strftime("%d/%m/%Y %H:%M"),
        "total_reportes": str(stats.total_count),
        "total_entregados": str(stats.delivered_count),
        "total_borrador": str(stats.draft_count),
        "total_lgbtq": str(stats.lgbtq_count),
        "total_migrantes": str(stats.migrant_count),
        "total_situacion_calle": str(stats.street_situation_count),
        "total_discapacidad": str(stats.disability_count),
        "delito_mas_frecuente": stats.most_frequent_crime or "N/A",
        "zona_mas_activa": stats.most_active_zone or "N/A",
        "tabla_delitos": count_table(stats.by_crime_type, "Tipo de Delito", limit=10),
        "tabla_zonas": count_table(stats.by_zone, "Zona"),
        "tabla_edades": count_table(stats.by_age_bucket, "Rango de Edad"),
        "tabla_sexo": count_table(stats.by_sex, "Sexo"),
        "tabla_atencion": count_table(stats.by_attention_type, "Tipo de Atención"),
        "tabla_acciones": count_table(stats.by_action_type, "Tipo de Acción"),
        "estadisticas": json.dumps(stats.to_dict(), ensure_ascii=False, indent=2, sort_keys=True),
        "narrativa_ia": narrative,
    }
