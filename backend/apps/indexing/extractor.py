"""
Text extraction from uploaded document bytes.

Supports:
- .txt: UTF-8 text (with fallback for encoding errors)
- .md: UTF-8 markdown, kept as-is
- .pdf: Best-effort text extraction using PyMuPDF
"""
import logging
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

from apps.indexing.errors import FatalError

logger = logging.getLogger(__name__)


class ExtractionError(FatalError):
    """Raised when text extraction fails."""
    pass


def decode_text(data: bytes, label: str) -> str:
    """Decode UTF-8, dropping undecodable bytes rather than failing."""
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning(f"UTF-8 decode failed for {label}, using errors='ignore'")
        return data.decode('utf-8', errors='ignore')


def extract_text_from_pdf(data: bytes, label: str) -> str:
    """
    Extract text from PDF bytes using PyMuPDF.

    This is a best-effort extraction - some PDFs (scanned, image-based)
    may not yield text. There is no OCR.

    Raises:
        ExtractionError: If the PDF cannot be opened or parsed
    """
    text_parts = []
    try:
        with fitz.open(stream=data, filetype='pdf') as doc:
            for page in doc:
                page_text = page.get_text()
                if page_text.strip():
                    text_parts.append(page_text)
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}")

    if not text_parts:
        logger.warning(f"No text extracted from PDF {label} (may be image-based)")
        return ""

    return "\n\n".join(text_parts)


def extract_text(data: bytes, filename: str, content_type: Optional[str] = None) -> str:
    """
    Extract text from an uploaded document.

    Determines the extraction method based on file extension or content type.

    Args:
        data: Raw file content
        filename: Original file name (for the extension)
        content_type: Optional MIME type hint

    Returns:
        Extracted text content

    Raises:
        ExtractionError: If extraction fails or format not supported
    """
    suffix = Path(filename).suffix.lower()

    logger.info(f"Extracting text from {filename} (suffix={suffix}, content_type={content_type})")

    if suffix == '.txt' or content_type == 'text/plain':
        return decode_text(data, filename)

    elif suffix in ('.md', '.markdown') or content_type in ('text/markdown', 'text/x-markdown'):
        return decode_text(data, filename)

    elif suffix == '.pdf' or content_type == 'application/pdf':
        return extract_text_from_pdf(data, filename)

    else:
        raise ExtractionError(f"Unsupported file format: {suffix}")
