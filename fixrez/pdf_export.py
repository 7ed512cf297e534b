from __future__ import annotations

import html
import io
import re
from typing import Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.pdfgen import canvas
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .utils import safe_text

EXPORT_TEMPLATES = ("classic", "modern")

SECTION_ALIASES = {
    "summary": "summary",
    "professional summary": "summary",
    "profile": "summary",
    "experience": "experience",
    "work experience": "experience",
    "professional experience": "experience",
    "education": "education",
    "skills": "skills",
    "technical skills": "skills",
    "additional": "additional",
    "additional information": "additional",
    "certifications": "certifications",
    "projects": "projects",
    "languages": "languages",
}

SECTION_TITLES = {
    "summary": "Summary",
    "experience": "Experience",
    "education": "Education",
    "skills": "Skills",
    "additional": "Additional",
    "certifications": "Certifications",
    "projects": "Projects",
    "languages": "Languages",
}

BULLET_PATTERN = re.compile(r"^(?:[-*•]|(?:\d+[\).\s]))\s*")


def sanitize_download_name(value: str | None, default: str = "fixrez-resume") -> str:
    base = re.sub(r"[^a-zA-Z0-9._-]+", "-", safe_text(value) or default).strip("-").lower()
    return base or default


def section_key(line: str) -> str | None:
    normalized = re.sub(r"[^a-z0-9]+", " ", safe_text(line).strip(":").lower()).strip()
    if normalized in SECTION_ALIASES:
        return SECTION_ALIASES[normalized]
    compact = re.sub(r"[^a-zA-Z ]+", "", safe_text(line)).strip()
    if compact and compact.isupper() and len(compact) <= 40 and len(compact.split()) <= 4:
        return normalized.replace(" ", "_")
    return None


def looks_like_contact_line(line: str) -> bool:
    text = safe_text(line).lower()
    return bool("@" in text or "•" in text or "|" in text or "linkedin" in text or re.search(r"\+?\d[\d\-\s]{7,}", text))


def split_resume_sections(name: str, resume_text: str) -> dict[str, Any]:
    lines = [safe_text(line) for line in resume_text.replace("\r", "\n").split("\n") if safe_text(line)]

    display_name = safe_text(name)
    if not display_name and lines and len(lines[0]) <= 64 and section_key(lines[0]) is None:
        display_name = lines[0]

    sections: dict[str, list[str]] = {}
    contact_lines: list[str] = []
    current = "summary"
    seen_heading = False
    for index, line in enumerate(lines):
        if index == 0 and display_name and line.lower() == display_name.lower():
            continue
        key = section_key(line)
        if key:
            current = key
            sections.setdefault(current, [])
            seen_heading = True
            continue
        if not seen_heading and len(contact_lines) < 2 and looks_like_contact_line(line):
            contact_lines.append(line)
            continue
        sections.setdefault(current, []).append(line)

    ordered = [(key, body) for key, body in sections.items() if body]
    if not ordered:
        ordered = [("summary", [safe_text(resume_text) or "Resume content not provided."])]
    return {"name": display_name or "Candidate", "contact": " | ".join(contact_lines), "sections": ordered}


def template_palette(template: str) -> dict[str, Any]:
    if template == "modern":
        return {
            "name": colors.HexColor("#0B2E4F"),
            "accent": colors.HexColor("#1479C4"),
            "text": colors.HexColor("#1C2B39"),
            "muted": colors.HexColor("#52687C"),
            "line": colors.HexColor("#C9DCEB"),
        }
    return {
        "name": colors.HexColor("#111111"),
        "accent": colors.HexColor("#333333"),
        "text": colors.HexColor("#1F1F1F"),
        "muted": colors.HexColor("#555555"),
        "line": colors.HexColor("#BBBBBB"),
    }


def build_styles(template: str) -> dict[str, ParagraphStyle]:
    sample = getSampleStyleSheet()
    palette = template_palette(template)
    heading_font = "Helvetica-Bold" if template == "modern" else "Times-Bold"
    body_font = "Helvetica" if template == "modern" else "Times-Roman"
    return {
        "name": ParagraphStyle(
            "name",
            parent=sample["Title"],
            fontName=heading_font,
            fontSize=22,
            leading=25,
            textColor=palette["name"],
            alignment=0 if template == "modern" else 1,
            spaceAfter=2,
        ),
        "contact": ParagraphStyle(
            "contact",
            parent=sample["Normal"],
            fontName=body_font,
            fontSize=9.5,
            leading=12,
            textColor=palette["muted"],
            alignment=0 if template == "modern" else 1,
            spaceAfter=4,
        ),
        "section": ParagraphStyle(
            "section",
            parent=sample["Heading3"],
            fontName=heading_font,
            fontSize=11.5,
            leading=14,
            textColor=colors.white if template == "modern" else palette["accent"],
            spaceBefore=6,
            spaceAfter=3,
        ),
        "body": ParagraphStyle(
            "body",
            parent=sample["Normal"],
            fontName=body_font,
            fontSize=10.2,
            leading=14,
            textColor=palette["text"],
            spaceAfter=3,
        ),
        "bullet": ParagraphStyle(
            "bullet",
            parent=sample["Normal"],
            fontName=body_font,
            fontSize=10.2,
            leading=14,
            textColor=palette["text"],
            leftIndent=14,
            bulletIndent=2,
            spaceAfter=2,
        ),
    }


def section_heading(template: str, title: str, styles: dict[str, ParagraphStyle], width: float) -> Any:
    if template == "modern":
        table = Table([[Paragraph(html.escape(title.upper()), styles["section"])]], colWidths=[width])
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, -1), template_palette(template)["accent"]),
                    ("LEFTPADDING", (0, 0), (-1, -1), 7),
                    ("TOPPADDING", (0, 0), (-1, -1), 4),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
                ]
            )
        )
        return table
    return Paragraph(html.escape(title.upper()), styles["section"])


def draw_page_footer(pdf: canvas.Canvas, doc: SimpleDocTemplate, template: str) -> None:
    palette = template_palette(template)
    pdf.saveState()
    if template == "modern":
        pdf.setFillColor(palette["accent"])
        pdf.rect(0, A4[1] - 10, A4[0], 10, fill=1, stroke=0)
    pdf.setStrokeColor(palette["line"])
    pdf.setLineWidth(0.6)
    pdf.line(doc.leftMargin, 24, doc.leftMargin + doc.width, 24)
    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(palette["muted"])
    pdf.drawRightString(doc.leftMargin + doc.width, 12, f"Page {pdf.getPageNumber()}")
    pdf.restoreState()


def render_resume_pdf(name: str, template: str, resume_text: str) -> bytes:
    template_key = safe_text(template).lower()
    if template_key not in EXPORT_TEMPLATES:
        template_key = "classic"

    parsed = split_resume_sections(name, resume_text)
    styles = build_styles(template_key)
    palette = template_palette(template_key)

    output = io.BytesIO()
    doc = SimpleDocTemplate(
        output,
        pagesize=A4,
        leftMargin=44,
        rightMargin=44,
        topMargin=40,
        bottomMargin=34,
        title=f"{parsed['name']} Resume",
        author="FixRez",
    )

    story: list[Any] = [Paragraph(html.escape(parsed["name"]), styles["name"])]
    if parsed["contact"]:
        story.append(Paragraph(html.escape(parsed["contact"]), styles["contact"]))
    story.append(HRFlowable(width="100%", color=palette["line"], thickness=0.9, spaceBefore=2, spaceAfter=6))

    for key, lines in parsed["sections"]:
        title = SECTION_TITLES.get(key, key.replace("_", " ").title())
        story.append(section_heading(template_key, title, styles, doc.width))
        if template_key == "classic":
            story.append(HRFlowable(width="100%", color=palette["line"], thickness=0.5, spaceAfter=3))
        else:
            story.append(Spacer(1, 4))
        for line in lines:
            if BULLET_PATTERN.match(line) and not line[:1].isdigit():
                story.append(Paragraph(html.escape(BULLET_PATTERN.sub("", line, count=1)), styles["bullet"], bulletText="• "))
            else:
                story.append(Paragraph(html.escape(line), styles["body"]))
        story.append(Spacer(1, 5))

    doc.build(
        story,
        onFirstPage=lambda pdf, page_doc: draw_page_footer(pdf, page_doc, template_key),
        onLaterPages=lambda pdf, page_doc: draw_page_footer(pdf, page_doc, template_key),
    )
    return output.getvalue()
