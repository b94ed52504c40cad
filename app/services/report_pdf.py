"""
Official monthly report PDF builder.

Pure function of (payload, context): no database, no clock. Two calls with
the same inputs return byte-identical documents because ReportLab runs in
``invariant`` mode (fixed creation date and document id) and every
timestamp printed comes from the context.

Layout (A4, fixed order):
    header → identification → activities → results → [difficulties]
    → [next steps] → [hours & deliverables] → [remarks]
    → electronic declaration; footer on every page.

Text uses the standard Type-1 fonts, so anything outside Latin-1 is mapped
to an ASCII fallback by ``sanitize_text`` before it reaches ReportLab.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import KeepTogether, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.services.report_payload import ReportPayload

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_COLOR = "#1e3a5f"
NOT_INFORMED = "Not informed"
DECLARATION_TEXT = (
    "I declare that the information in this report is true and reflects "
    "the activities carried out during the period."
)

MARGIN = 18 * mm
FOOTER_HEIGHT = 22 * mm

_REPLACEMENTS = (
    (re.compile("[\u2018\u2019\u201a\u2032]"), "'"),
    (re.compile("[\u201c\u201d\u201e\u2033]"), '"'),
    (re.compile("[\u2013\u2212]"), "-"),
    (re.compile("\u2014"), "--"),
    (re.compile("\u2026"), "..."),
    (re.compile("[\u00a0\u2009\u202f]"), " "),
    (re.compile("\u2022"), "-"),
)
_NON_LATIN1 = re.compile("[^\x00-\xff]")
_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


@dataclass(frozen=True)
class ReportContext:
    """Everything the document needs besides the payload."""

    report_id: str
    subject_name: str
    period_label: str
    submitted_at: datetime
    subject_email: str = ""
    institution: str | None = None
    project_code: str = "-"
    project_title: str = "-"
    advisor: str = "-"
    thematic_project: str = "-"
    sponsor: str = "-"
    organization_name: str = "Institution"
    primary_color: str = DEFAULT_PRIMARY_COLOR
    platform_name: str = "Grant Reporting Platform"


def sanitize_text(text: str | None) -> str:
    """Map typographic characters to ASCII and drop anything beyond Latin-1."""
    if not text:
        return ""
    for pattern, replacement in _REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return _NON_LATIN1.sub("?", text)


def format_utc(value: datetime) -> str:
    """``DD/MM/YYYY HH:MM`` in UTC; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%d/%m/%Y %H:%M")


def _markup(text: str | None) -> str:
    """Paragraph markup for user text: escaped, line breaks kept."""
    body = escape(sanitize_text(text))
    return body.replace("\r\n", "\n").replace("\n", "<br/>")


def _primary(context: ReportContext):
    value = context.primary_color or DEFAULT_PRIMARY_COLOR
    if not _HEX_COLOR.match(value):
        logger.warning("Invalid primary colour %r for report %s; using default",
                       value, context.report_id)
        value = DEFAULT_PRIMARY_COLOR
    return colors.HexColor(value)


def _styles(primary) -> dict:
    base = getSampleStyleSheet()
    return {
        "brand": ParagraphStyle("Brand", parent=base["Normal"], fontName="Helvetica-Bold",
                                fontSize=16, leading=19, textColor=primary),
        "subtitle": ParagraphStyle("Subtitle", parent=base["Normal"], fontSize=8.5,
                                   leading=11, textColor=colors.HexColor("#7f7f8c")),
        "section": ParagraphStyle("Section", parent=base["Normal"], fontName="Helvetica-Bold",
                                  fontSize=10, leading=13, textColor=primary,
                                  spaceBefore=10, spaceAfter=4),
        "body": ParagraphStyle("Body", parent=base["Normal"], fontSize=9, leading=12.5,
                               alignment=TA_LEFT, spaceAfter=4),
        "label": ParagraphStyle("Label", parent=base["Normal"], fontName="Helvetica-Bold",
                                fontSize=8.5, leading=11, textColor=colors.HexColor("#4c4c59")),
        "value": ParagraphStyle("Value", parent=base["Normal"], fontSize=9, leading=11),
        "small": ParagraphStyle("Small", parent=base["Normal"], fontSize=7.5, leading=10,
                                textColor=colors.HexColor("#7f7f8c")),
    }


def _label_rows(rows, styles) -> Table:
    data = [
        [Paragraph(escape(label), styles["label"]), Paragraph(_markup(value), styles["value"])]
        for label, value in rows
    ]
    table = Table(data, colWidths=[38 * mm, None], hAlign="LEFT")
    table.setStyle(TableStyle([
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
        ("TOPPADDING", (0, 0), (-1, -1), 1),
    ]))
    return table


def _section(title: str, text: str | None, styles) -> list:
    return [
        Paragraph(escape(title), styles["section"]),
        Paragraph(_markup(text) if text and text.strip() else NOT_INFORMED, styles["body"]),
    ]


def _build_story(payload: ReportPayload, context: ReportContext, styles, primary) -> list:
    submitted = f"{format_utc(context.submitted_at)} UTC"
    story = []

    header = Table(
        [[
            [Paragraph(_markup(context.platform_name), styles["brand"]),
             Paragraph("Monthly Activity Report", styles["subtitle"])],
            [Paragraph(_markup(context.organization_name), styles["label"]),
             Paragraph(f"Period: {escape(context.period_label)}", styles["subtitle"])],
        ]],
        colWidths=[None, 60 * mm],
    )
    header.setStyle(TableStyle([
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ("LINEBELOW", (0, 0), (-1, 0), 2.5, primary),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    story += [header, Spacer(1, 10)]

    identification = [
        ("Beneficiary:", context.subject_name),
        ("E-mail:", context.subject_email or "-"),
    ]
    if context.institution:
        identification.append(("Institution:", context.institution))
    identification += [
        ("Advisor:", context.advisor),
        ("Thematic project:", context.thematic_project),
        ("Sponsor:", context.sponsor),
        ("Subproject:", f"{context.project_code} - {context.project_title}"),
        ("Period:", context.period_label),
        ("Submitted at:", submitted),
    ]
    story.append(Paragraph("Identification", styles["section"]))
    story.append(_label_rows(identification, styles))

    story += _section("Activities Carried Out", payload.activities, styles)
    story += _section("Results Achieved", payload.results, styles)
    if payload.difficulties.strip():
        story += _section("Difficulties Encountered", payload.difficulties, styles)
    if payload.next_steps.strip():
        story += _section("Next Steps", payload.next_steps, styles)

    if payload.hours is not None or payload.deliverables:
        story.append(Paragraph("Dedication and Deliverables", styles["section"]))
        if payload.hours is not None:
            story.append(_label_rows([("Hours dedicated:", f"{payload.hours}h")], styles))
        if payload.deliverables:
            story.append(Paragraph("Deliverables:", styles["label"]))
            for item in payload.deliverables:
                story.append(Paragraph(f"- {_markup(item)}", styles["body"]))

    if payload.remarks.strip():
        story += _section("Remarks", payload.remarks, styles)

    declaration = Table(
        [
            [Paragraph("Electronic Declaration", styles["section"])],
            [Paragraph(DECLARATION_TEXT, styles["body"])],
            [Paragraph(
                f"Signed electronically by {_markup(context.subject_name)} on {submitted}",
                styles["small"],
            )],
        ],
        colWidths=[None],
    )
    declaration.setStyle(TableStyle([
        ("BOX", (0, 0), (-1, -1), 0.5, primary),
        ("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#f2f7fc")),
        ("LEFTPADDING", (0, 0), (-1, -1), 8),
    ]))
    story += [Spacer(1, 12), KeepTogether([declaration])]
    return story


def _footer(context: ReportContext):
    lines = [
        f"{context.platform_name}: digital management of grants and projects",
        f"Author: {context.subject_name} | Email: {context.subject_email or '-'}",
        f"Period: {context.period_label} | Submitted: {format_utc(context.submitted_at)} UTC",
        f"Report: {context.report_id}",
    ]
    lines = [sanitize_text(line) for line in lines]

    def draw(canvas, doc):
        canvas.saveState()
        width, _ = A4
        top = MARGIN + FOOTER_HEIGHT - 6 * mm
        canvas.setStrokeColor(colors.HexColor("#d0d5dc"))
        canvas.setLineWidth(0.5)
        canvas.line(MARGIN, top, width - MARGIN, top)
        canvas.setFont("Helvetica", 6.5)
        canvas.setFillColor(colors.HexColor("#7f7f8c"))
        y = top - 9
        for line in lines:
            canvas.drawString(MARGIN, y, line)
            y -= 8.5
        canvas.drawRightString(width - MARGIN, MARGIN, f"Page {doc.page}")
        canvas.restoreState()

    return draw


def render_monthly_report(payload: ReportPayload, context: ReportContext) -> tuple[bytes, int]:
    """Render the official PDF and return ``(pdf_bytes, page_count)``."""
    primary = _primary(context)
    styles = _styles(primary)
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN + FOOTER_HEIGHT,
        title=sanitize_text(f"Monthly report {context.period_label}"),
        author=sanitize_text(context.subject_name),
        creator=sanitize_text(context.platform_name),
        invariant=1,
    )
    footer = _footer(context)
    doc.build(_build_story(payload, context, styles, primary), onFirstPage=footer, onLaterPages=footer)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    logger.debug("Built PDF for report %s: %d pages, %d bytes",
                 context.report_id, doc.page, len(pdf_bytes))
    return pdf_bytes, doc.page


def build_monthly_report_pdf(payload: ReportPayload, context: ReportContext) -> bytes:
    return render_monthly_report(payload, context)[0]
