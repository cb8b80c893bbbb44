# ============================================================================
# CEIBA - Report Document Renderer
# ============================================================================
# Rendered markdown -> self-contained HTML -> PDF (WeasyPrint).
#
# Artifacts are written under the configured output directory with a name
# derived from the report period and id, so re-rendering a report always
# overwrites its own file. The HTML page carries no render-time values: the
# same markdown always produces the same document.
# ============================================================================

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from html import escape as html_escape
from pathlib import Path
from typing import Any, List, Optional

logger = logging.getLogger("reporting.renderer")

# ---------------------------------------------------------------------------
# Shared CSS (inline for self-contained output)
# ---------------------------------------------------------------------------

_BRAND_PURPLE_DARK = "#5b21b6"
_BRAND_PURPLE_LIGHT = "#8b5cf6"
_GRAY_50 = "#f9fafb"
_GRAY_200 = "#e5e7eb"
_GRAY_500 = "#6b7280"
_GRAY_700 = "#374151"

_BASE_CSS = f"""
    * {{ box-sizing: border-box; }}
    body {{
        font-family: Arial, Helvetica, sans-serif;
        margin: 0;
        padding: 0;
        background: {_GRAY_50};
        color: #111827;
        font-size: 13px;
        line-height: 1.5;
    }}
    .page-wrap {{
        max-width: 960px;
        margin: 0 auto;
        padding: 20px;
    }}
    .card {{
        background: #fff;
        border-radius: 12px;
        overflow: hidden;
    }}
    .header {{
        background: linear-gradient(135deg, {_BRAND_PURPLE_DARK}, {_BRAND_PURPLE_LIGHT});
        color: #fff;
        padding: 20px 28px;
    }}
    .header .subtitle {{ margin: 0; opacity: 0.9; font-size: 14px; }}
    .body {{ padding: 24px 28px; }}
    h1 {{ font-size: 22px; color: {_BRAND_PURPLE_DARK}; }}
    h2 {{
        color: {_GRAY_700};
        border-bottom: 2px solid {_GRAY_200};
        padding-bottom: 6px;
        margin: 24px 0 12px;
        font-size: 16px;
    }}
    h3 {{ font-size: 14px; color: {_GRAY_700}; }}
    hr {{ border: 0; border-top: 1px solid {_GRAY_200}; margin: 20px 0; }}
    table {{
        width: 100%;
        border-collapse: collapse;
        margin-bottom: 16px;
        font-size: 12px;
    }}
    th {{
        background: {_BRAND_PURPLE_DARK};
        color: #fff;
        padding: 8px 10px;
        text-align: left;
        font-weight: 600;
        font-size: 11px;
    }}
    td {{
        padding: 7px 10px;
        border-bottom: 1px solid {_GRAY_200};
    }}
    td.num, th.num {{ text-align: right; }}
    tr:nth-child(even) {{ background: #faf5ff; }}
    code {{ background: {_GRAY_200}; padding: 1px 4px; border-radius: 3px; }}
    .footer {{
        text-align: center;
        color: {_GRAY_500};
        font-size: 11px;
        padding: 16px 28px;
        border-top: 1px solid {_GRAY_200};
    }}
    @page {{
        size: letter;
        margin: 0.6in 0.5in;
        @bottom-center {{
            content: "Página " counter(page) " de " counter(pages);
            font-size: 9px;
            color: {_GRAY_500};
        }}
    }}
"""


# ============================================================================
# Helper utilities
# ============================================================================

def _safe(val: Any) -> str:
    """Return a safe, HTML-escaped string representation of a value."""
    if val is None:
        return ""
    return html_escape(str(val), quote=False)


_INLINE_RULES = [
    (re.compile(r"`([^`]+)`"), r"<code>\1</code>"),
    (re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"__(.+?)__"), r"<strong>\1</strong>"),
    (re.compile(r"(?<![\w*])\*(?!\s)(.+?)(?<!\s)\*(?![\w*])"), r"<em>\1</em>"),
    (re.compile(r"(?<![\w_])_(?!\s)(.+?)(?<!\s)_(?![\w_])"), r"<em>\1</em>"),
]

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
_HR_RE = re.compile(r"^\s*([-*_])(\s*\1){2,}\s*$")
_TABLE_SEP_RE = re.compile(r"^\s*\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?\s*$")
_UL_RE = re.compile(r"^\s*[-*+]\s+(.*)$")
_OL_RE = re.compile(r"^\s*\d+[.)]\s+(.*)$")


def _inline(text: str) -> str:
    out = _safe(text)
    for pattern, repl in _INLINE_RULES:
        out = pattern.sub(repl, out)
    return out


def _split_row(line: str) -> List[str]:
    row = line.strip()
    if row.startswith("|"):
        row = row[1:]
    if row.endswith("|") and not row.endswith("\\|"):
        row = row[:-1]
    cells = re.split(r"(?<!\\)\|", row)
    return [c.strip().replace("\\|", "|") for c in cells]


def _alignments(sep_line: str) -> List[str]:
    aligns = []
    for cell in _split_row(sep_line):
        aligns.append("num" if cell.endswith(":") and not cell.startswith(":") else "")
    return aligns


def _table_html(header: List[str], aligns: List[str], rows: List[List[str]]) -> str:
    def _cls(i):
        return f' class="{aligns[i]}"' if i < len(aligns) and aligns[i] else ""

    parts = ["<table>", "<thead><tr>"]
    parts += [f"<th{_cls(i)}>{_inline(c)}</th>" for i, c in enumerate(header)]
    parts.append("</tr></thead>")
    parts.append("<tbody>")
    for row in rows:
        parts.append("<tr>" + "".join(
            f"<td{_cls(i)}>{_inline(c)}</td>" for i, c in enumerate(row)) + "</tr>")
    parts.append("</tbody></table>")
    return "".join(parts)


def markdown_to_html(markdown: str) -> str:
    """
    Convert the markdown subset produced by report templates to HTML:
    ATX headings, pipe tables, horizontal rules, bullet and numbered lists,
    emphasis, inline code and paragraphs. Raw HTML in the input is escaped.
    """
    lines = (markdown or "").replace("\r\n", "\n").split("\n")
    out: List[str] = []
    paragraph: List[str] = []
    list_tag: Optional[str] = None
    i = 0

    def flush_paragraph():
        if paragraph:
            out.append("<p>" + "<br>".join(_inline(p) for p in paragraph) + "</p>")
            paragraph.clear()

    def close_list():
        nonlocal list_tag
        if list_tag:
            out.append(f"</{list_tag}>")
            list_tag = None

    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if not stripped:
            flush_paragraph()
            close_list()
            i += 1
            continue

        heading = _HEADING_RE.match(stripped)
        if heading:
            flush_paragraph()
            close_list()
            level = len(heading.group(1))
            out.append(f"<h{level}>{_inline(heading.group(2).strip())}</h{level}>")
            i += 1
            continue

        if (stripped.startswith("|") and i + 1 < len(lines)
                and _TABLE_SEP_RE.match(lines[i + 1])):
            flush_paragraph()
            close_list()
            header = _split_row(stripped)
            aligns = _alignments(lines[i + 1])
            rows = []
            i += 2
            while i < len(lines) and lines[i].strip().startswith("|"):
                rows.append(_split_row(lines[i]))
                i += 1
            out.append(_table_html(header, aligns, rows))
            continue

        if _HR_RE.match(stripped):
            flush_paragraph()
            close_list()
            out.append("<hr>")
            i += 1
            continue

        bullet = _UL_RE.match(line)
        numbered = None if bullet else _OL_RE.match(line)
        if bullet or numbered:
            flush_paragraph()
            tag = "ul" if bullet else "ol"
            if list_tag != tag:
                close_list()
                out.append(f"<{tag}>")
                list_tag = tag
            out.append(f"<li>{_inline((bullet or numbered).group(1))}</li>")
            i += 1
            continue

        close_list()
        paragraph.append(stripped)
        i += 1

    flush_paragraph()
    close_list()
    return "\n".join(out)


def wrap_html(body_html: str, title: str = "Reporte de Incidencias") -> str:
    """Full standalone HTML page used for both the PDF and the email body."""
    return (
        "<!DOCTYPE html>\n"
        "<html lang=\"es\">\n"
        "<head>\n"
        "  <meta charset=\"utf-8\">\n"
        f"  <title>{_safe(title)}</title>\n"
        f"  <style>{_BASE_CSS}</style>\n"
        "</head>\n"
        "<body>\n"
        "<div class=\"page-wrap\">\n"
        "  <div class=\"card\">\n"
        "    <div class=\"header\">\n"
        f"      <div class=\"subtitle\">{_safe(title)}</div>\n"
        "    </div>\n"
        "    <div class=\"body\">\n"
        f"{body_html}\n"
        "    </div>\n"
        "    <div class=\"footer\">CEIBA - Reportes Automatizados</div>\n"
        "  </div>\n"
        "</div>\n"
        "</body>\n"
        "</html>"
    )


def render_report_html(markdown: str, title: str = "Reporte de Incidencias") -> str:
    return wrap_html(markdown_to_html(markdown), title)


def _date_token(dt: datetime) -> str:
    if (dt.hour, dt.minute, dt.second) == (0, 0, 0):
        return dt.strftime("%Y%m%d")
    return dt.strftime("%Y%m%dT%H%M")


def artifact_name(period_start: datetime, period_end: datetime, report_id: Any) -> str:
    """Report_<start>_<end>_<id>; stable for the lifetime of a report."""
    return f"Report_{_date_token(period_start)}_{_date_token(period_end)}_{report_id}"


def report_title(period_start: datetime, period_end: datetime) -> str:
    return f"Reporte de Incidencias - {period_start:%d/%m/%Y} a {period_end:%d/%m/%Y}"


# ============================================================================
# Renderers
# ============================================================================

@dataclass
class RenderResult:
    path: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.path is not None and self.error is None


class DocumentRenderer(ABC):
    """Turns report markdown into a persisted binary document."""

    extension = "bin"

    @abstractmethod
    def write(self, markdown: str, output_path: Path, title: str) -> None:
        """Write the document to output_path; raise on failure."""

    def render(self, markdown: str, output_dir: str, name: str,
               title: str = "Reporte de Incidencias") -> RenderResult:
        """
        Render to <output_dir>/<name>.<extension>, replacing any previous
        artifact at that path. Never raises.
        """
        target = Path(output_dir) / f"{name}.{self.extension}"
        tmp = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self.write(markdown, tmp, title)
            os.replace(tmp, target)
        except Exception as e:
            logger.error("Document render failed for %s: %s", target, e, exc_info=True)
            try:
                if tmp.exists():
                    tmp.unlink()
            except OSError:
                pass
            return RenderResult(error=f"Document rendering failed: {e}")

        logger.info("Document artifact saved: %s", target)
        return RenderResult(path=str(target))


class PdfDocumentRenderer(DocumentRenderer):
    extension = "pdf"

    def write(self, markdown, output_path, title):
        from weasyprint import HTML as WeasyprintHTML

        html = render_report_html(markdown, title)
        WeasyprintHTML(string=html).write_pdf(str(output_path))
