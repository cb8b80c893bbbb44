"""
CEIBA — Document Rendering Tests
================================
"""

import datetime
import os
import sys
import types

from app.reporting.renderer import (
    PdfDocumentRenderer, artifact_name, markdown_to_html, render_report_html, report_title,
)
from tests.conftest import FakeRenderer


class TestMarkdownToHtml:

    def test_headings_and_paragraphs(self):
        html = markdown_to_html("# Título\n\nPrimer párrafo\ncontinúa\n\n## Sub")
        assert "<h1>Título</h1>" in html
        assert "<p>Primer párrafo<br>continúa</p>" in html
        assert "<h2>Sub</h2>" in html

    def test_table_with_numeric_alignment(self):
        md = "| Zona | Cantidad |\n|---|---:|\n| Centro | 3 |\n| Norte | 1 |"
        html = markdown_to_html(md)
        assert "<th>Zona</th>" in html
        assert '<th class="num">Cantidad</th>' in html
        assert '<td class="num">3</td>' in html
        assert html.count("<tr>") == 3

    def test_lists_rules_and_emphasis(self):
        html = markdown_to_html("- uno\n- **dos**\n\n---\n\n1. *tres*")
        assert "<ul>\n<li>uno</li>\n<li><strong>dos</strong></li>\n</ul>" in html
        assert "<hr>" in html
        assert "<ol>\n<li><em>tres</em></li>\n</ol>" in html

    def test_html_is_escaped(self):
        html = markdown_to_html("<script>alert(1)</script>")
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_full_page_is_deterministic(self):
        a = render_report_html("# Hola", "Reporte")
        assert a == render_report_html("# Hola", "Reporte")
        assert a.startswith("<!DOCTYPE html>")
        assert "<title>Reporte</title>" in a


class TestArtifactNaming:

    def test_midnight_bounds(self):
        name = artifact_name(datetime.datetime(2024, 7, 1), datetime.datetime(2024, 7, 2), 15)
        assert name == "Report_20240701_20240702_15"

    def test_intraday_bounds(self):
        name = artifact_name(datetime.datetime(2024, 7, 1, 8, 30),
                             datetime.datetime(2024, 7, 1, 20, 0), 3)
        assert name == "Report_20240701T0830_20240701T2000_3"

    def test_title(self):
        title = report_title(datetime.datetime(2024, 7, 1), datetime.datetime(2024, 7, 2))
        assert title == "Reporte de Incidencias - 01/07/2024 a 02/07/2024"


class TestDocumentRenderer:

    def test_render_writes_and_overwrites(self, tmp_path):
        renderer = FakeRenderer()
        first = renderer.render("# A", str(tmp_path / "out"), "Report_x_1", title="T")
        assert first.success
        assert first.path == str(tmp_path / "out" / "Report_x_1.pdf")
        with open(first.path, "rb") as f:
            content = f.read()

        second = renderer.render("# A", str(tmp_path / "out"), "Report_x_1", title="T")
        assert second.path == first.path
        with open(second.path, "rb") as f:
            assert f.read() == content
        assert sorted(os.listdir(tmp_path / "out")) == ["Report_x_1.pdf"]

    def test_failure_returns_error_and_leaves_nothing(self, tmp_path):
        out = tmp_path / "out"
        result = FakeRenderer(fail=True).render("# A", str(out), "Report_x_2")
        assert not result.success
        assert result.path is None
        assert "renderer exploded" in result.error
        assert os.listdir(out) == []

    def test_pdf_renderer_feeds_html_to_weasyprint(self, tmp_path, monkeypatch):
        seen = {}

        class FakeHTML:
            def __init__(self, string):
                seen["html"] = string

            def write_pdf(self, target):
                seen["target"] = target
                with open(target, "wb") as f:
                    f.write(b"%PDF-1.7 fake")

        monkeypatch.setitem(sys.modules, "weasyprint", types.SimpleNamespace(HTML=FakeHTML))

        result = PdfDocumentRenderer().render("# Reporte", str(tmp_path), "Report_a_b_1", "Título")
        assert result.success
        assert result.path.endswith("Report_a_b_1.pdf")
        assert "<h1>Reporte</h1>" in seen["html"]
        assert seen["target"].endswith(".pdf.tmp")
