from __future__ import annotations

import io
import logging
import re

import mammoth
import PyPDF2
from fastapi import HTTPException

from . import config
from .utils import safe_text

logger = logging.getLogger("fixrez.backend.extraction")

PDF_TYPES = {"application/pdf"}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
DOC_TYPES = {"application/msword"}
TEXT_TYPES = {"text/plain"}

EXTENSION_KINDS = {".pdf": "pdf", ".docx": "docx", ".doc": "doc", ".txt": "txt"}


def detect_document_kind(file_name: str | None, content_type: str | None) -> str | None:
    normalized_type = safe_text(content_type).lower().split(";", 1)[0].strip()
    if normalized_type in PDF_TYPES:
        return "pdf"
    if normalized_type in DOCX_TYPES:
        return "docx"
    if normalized_type in DOC_TYPES:
        return "doc"
    if normalized_type in TEXT_TYPES:
        return "txt"

    normalized_name = safe_text(file_name).lower()
    for extension, kind in EXTENSION_KINDS.items():
        if normalized_name.endswith(extension):
            return kind
    return None


def extract_pdf_text(contents: bytes) -> str:
    pdf_reader = PyPDF2.PdfReader(io.BytesIO(contents))
    extracted_pages: list[str] = []
    for page in pdf_reader.pages:
        extracted_pages.append(page.extract_text() or "")
    return "\n".join(extracted_pages)


def extract_word_text(contents: bytes) -> str:
    result = mammoth.extract_raw_text(io.BytesIO(contents))
    return result.value or ""


def normalize_extracted_text(text: str) -> str:
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def word_count(text: str) -> int:
    return len(re.findall(r"\S+", text))


def extract_document_text(file_name: str, content_type: str | None, contents: bytes) -> tuple[str, str]:
    """Return (text, kind) for an uploaded resume or raise a 400."""
    kind = detect_document_kind(file_name, content_type)
    if kind is None:
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type. Upload a PDF, DOCX, DOC or TXT file.",
        )
    if not contents:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(contents) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"File is too large. Maximum size is {config.MAX_UPLOAD_BYTES // (1024 * 1024)} MB.",
        )

    try:
        if kind == "pdf":
            raw = extract_pdf_text(contents)
        elif kind in {"docx", "doc"}:
            raw = extract_word_text(contents)
        else:
            raw = contents.decode("utf-8", errors="ignore")
    except Exception as exc:
        logger.exception("Failed to parse %s upload %s", kind, file_name)
        raise HTTPException(status_code=400, detail=f"Unable to read the {kind.upper()} file.") from exc

    text = normalize_extracted_text(raw)
    if not text:
        raise HTTPException(status_code=400, detail="No readable text found in the uploaded file.")
    return text, kind
