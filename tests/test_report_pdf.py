"""
Document builder tests — ``app/services/report_pdf.py``.

Text assertions go through pypdf's extractor with whitespace collapsed,
since ReportLab may wrap long lines anywhere.
"""

import io
from datetime import datetime, timedelta, timezone

from pypdf import PdfReader

from app.services.report_payload import ReportPayload
from app.services.report_pdf import (
    NOT_INFORMED,
    ReportContext,
    build_monthly_report_pdf,
    format_utc,
    render_monthly_report,
    sanitize_text,
)


def _context(**overrides) -> ReportContext:
    values = {
        "report_id": "rep-123",
        "subject_name": "Ana Souza",
        "subject_email": "ana@example.org",
        "period_label": "03/2026",
        "submitted_at": datetime(2026, 4, 2, 14, 5, tzinfo=timezone.utc),
        "project_code": "P-01",
        "project_title": "Soil Microbiology",
        "advisor": "Dr. Lima",
        "organization_name": "Research Foundation",
    }
    values.update(overrides)
    return ReportContext(**values)


def _payload(**overrides) -> ReportPayload:
    values = {
        "activities": "Collected samples in the north field.",
        "results": "Identified three bacterial strains.",
    }
    values.update(overrides)
    return ReportPayload.from_dict(values)


def _text(pdf_bytes: bytes) -> str:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    raw = " ".join(page.extract_text() or "" for page in reader.pages)
    return " ".join(raw.split())


class TestDeterminism:
    def test_same_inputs_same_bytes(self):
        first = build_monthly_report_pdf(_payload(), _context())
        second = build_monthly_report_pdf(_payload(), _context())
        assert first == second

    def test_submission_time_changes_output(self):
        first = build_monthly_report_pdf(_payload(), _context())
        later = build_monthly_report_pdf(
            _payload(), _context(submitted_at=datetime(2026, 4, 3, 9, 0, tzinfo=timezone.utc)),
        )
        assert first != later

    def test_is_a_pdf(self):
        pdf_bytes, pages = render_monthly_report(_payload(), _context())
        assert pdf_bytes.startswith(b"%PDF-")
        assert pages == 1


class TestContent:
    def test_mandatory_sections_present(self):
        text = _text(build_monthly_report_pdf(_payload(), _context()))
        assert "Identification" in text
        assert "Activities Carried Out" in text
        assert "Collected samples in the north field." in text
        assert "Results Achieved" in text
        assert "Electronic Declaration" in text

    def test_declaration_names_signer_and_time(self):
        text = _text(build_monthly_report_pdf(_payload(), _context()))
        assert "Signed electronically by Ana Souza" in text
        assert "02/04/2026 14:05 UTC" in text

    def test_optional_sections_omitted_when_empty(self):
        text = _text(build_monthly_report_pdf(_payload(), _context()))
        assert "Difficulties Encountered" not in text
        assert "Next Steps" not in text
        assert "Dedication and Deliverables" not in text
        assert "Remarks" not in text

    def test_optional_sections_rendered_when_filled(self):
        payload = _payload(
            difficulties="Rain delayed fieldwork.",
            next_steps="Sequence the strains.",
            hours=120,
            deliverables=["Field notebook"],
            remarks="None.",
        )
        text = _text(build_monthly_report_pdf(payload, _context()))
        for title in ("Difficulties Encountered", "Next Steps", "Dedication and Deliverables", "Remarks"):
            assert title in text
        assert "120h" in text
        assert "Field notebook" in text

    def test_empty_mandatory_section_marked_not_informed(self):
        text = _text(build_monthly_report_pdf(ReportPayload(), _context()))
        assert NOT_INFORMED in text

    def test_footer_carries_report_id_and_page(self):
        text = _text(build_monthly_report_pdf(_payload(), _context()))
        assert "Report: rep-123" in text
        assert "Page 1" in text

    def test_markup_in_user_text_is_escaped(self):
        payload = _payload(activities="Used <b>bold</b> & <script>x</script>")
        text = _text(build_monthly_report_pdf(payload, _context()))
        assert "<b>bold</b>" in text

    def test_long_report_spans_pages(self):
        payload = _payload(activities="\n".join(f"Line {i} of field notes." for i in range(400)))
        pdf_bytes, pages = render_monthly_report(payload, _context())
        assert pages > 1
        assert len(PdfReader(io.BytesIO(pdf_bytes)).pages) == pages

    def test_invalid_colour_falls_back(self):
        pdf_bytes = build_monthly_report_pdf(_payload(), _context(primary_color="navy"))
        assert pdf_bytes.startswith(b"%PDF-")


class TestTextHelpers:
    def test_typographic_characters_mapped(self):
        assert sanitize_text("“quoted” — it’s…") == '"quoted" -- it\'s...'

    def test_latin1_kept_and_others_replaced(self):
        assert sanitize_text("João 你") == "João ?"

    def test_empty_text(self):
        assert sanitize_text(None) == ""

    def test_format_utc_converts_offsets(self):
        local = datetime(2026, 4, 2, 11, 5, tzinfo=timezone(timedelta(hours=-3)))
        assert format_utc(local) == "02/04/2026 14:05"

    def test_format_utc_treats_naive_as_utc(self):
        assert format_utc(datetime(2026, 1, 9, 8, 30)) == "09/01/2026 08:30"
