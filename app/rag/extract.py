"""Text extraction from uploaded files.

Supports:
- application/pdf: text layer via PyMuPDF (no OCR)
- text/plain, text/markdown, text/html: UTF-8 text, kept as-is
"""
import mimetypes

import fitz  # PyMuPDF
import structlog

from app.errors import UnsupportedFileTypeError, ValidationError

logger = structlog.get_logger()

PDF_MIME_TYPE = "application/pdf"
TEXT_MIME_TYPES = frozenset({"text/plain", "text/markdown", "text/x-markdown", "text/html"})

_EXTENSION_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}


def guess_mime_type(filename: str) -> str:
    """Guess a file's MIME type from its name ("" if unknown)."""
    lowered = filename.lower()
    for suffix, mime_type in _EXTENSION_TYPES.items():
        if lowered.endswith(suffix):
            return mime_type
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or ""


def extract_pdf_text(data: bytes) -> str:
    """Extract text from every page of a PDF.

    Raises:
        ValidationError: If the PDF cannot be parsed or has no text layer
    """
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            pages = [page.get_text() for page in doc]
    except Exception as e:
        logger.error("pdf_parse_failed", error=str(e), error_type=type(e).__name__)
        raise ValidationError(f"Failed to parse PDF file: {e}") from e

    text = "\n\n".join(p.strip() for p in pages if p.strip()).strip()
    if not text:
        raise ValidationError("No text content extracted from PDF")

    logger.info("pdf_text_extracted", page_count=len(pages), text_length=len(text))
    return text


def extract_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("utf8_decode_failed_replacing_bytes", size=len(data))
        return data.decode("utf-8", errors="replace")


def extract_text(data: bytes, mime_type: str) -> str:
    """Extract text from file bytes based on MIME type.

    Args:
        data: Raw file content
        mime_type: MIME type, parameters such as "; charset=utf-8" are ignored

    Returns:
        Extracted text content

    Raises:
        UnsupportedFileTypeError: For any type other than PDF, text, markdown or HTML
        ValidationError: If a PDF yields no text
    """
    base_type = (mime_type or "").split(";", 1)[0].strip().lower()

    if base_type == PDF_MIME_TYPE:
        return extract_pdf_text(data)
    if base_type in TEXT_MIME_TYPES:
        return extract_plain_text(data)

    raise UnsupportedFileTypeError(mime_type or "unknown")
