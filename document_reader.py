"""Plain text extraction from .txt, .docx and .pdf files."""

from __future__ import annotations

import base64
import binascii
import contextlib
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Union

import pypdfium2 as pdfium
from docx import Document
from docx.opc.exceptions import PackageNotFoundError


logger = logging.getLogger("neuraltranslator.documents")

PathLike = Union[str, "os.PathLike[str]"]

SUPPORTED_TYPES = {
    ".txt": "text",
    ".docx": "docx",
    ".pdf": "pdf",
}

# Tried in order; the last one decodes anything.
_TEXT_ENCODINGS = ("utf-8", "shift_jis")
_FALLBACK_ENCODING = "cp1252"


class DocumentError(RuntimeError):
    """Base class for document extraction failures."""


class DocumentNotFoundError(DocumentError):
    """Raised when the requested file does not exist."""


class UnsupportedFormatError(DocumentError):
    """Raised for file types that cannot be extracted."""


class DocumentReadError(DocumentError):
    """Raised when a supported file cannot be read or yields no text."""


def _extension(path: Path) -> str:
    return path.suffix.lower()


def validate_file_type(file_path: PathLike) -> str:
    """Return ``"text"``, ``"docx"`` or ``"pdf"`` for a supported file name."""

    ext = _extension(Path(file_path))
    try:
        return SUPPORTED_TYPES[ext]
    except KeyError:
        raise UnsupportedFormatError("Unsupported file type") from None


def read_file_content(file_path: PathLike) -> str:
    """Extract the text of ``file_path``; unknown extensions are read as text."""

    path = Path(file_path)
    if not path.exists():
        raise DocumentNotFoundError("File not found")

    ext = _extension(path)
    if ext == ".docx":
        return read_docx_file(path)
    if ext == ".pdf":
        return read_pdf_file(path)
    return read_text_file(path)


def read_text_file(path: PathLike) -> str:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise DocumentReadError(f"Failed to read file: {exc}") from exc

    for encoding in _TEXT_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode(_FALLBACK_ENCODING, errors="replace")


def read_docx_file(path: PathLike) -> str:
    try:
        document = Document(str(path))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise DocumentReadError(f"Failed to parse DOCX file: {exc}") from exc
    except OSError as exc:
        raise DocumentReadError(f"Failed to read DOCX file: {exc}") from exc

    return "\n".join(paragraph.text for paragraph in document.paragraphs).strip()


def read_pdf_file(path: PathLike) -> str:
    """Extract text page by page. A page that fails is skipped, not fatal."""

    try:
        pdf = pdfium.PdfDocument(str(path))
    except pdfium.PdfiumError as exc:
        raise DocumentReadError(f"Failed to load PDF file: {exc}") from exc

    pages = []
    try:
        for index in range(len(pdf)):
            try:
                pages.append(_extract_pdf_page(pdf, index))
            except pdfium.PdfiumError as exc:
                logger.debug("Skipping PDF page %d: %s", index + 1, exc)
    finally:
        pdf.close()

    text = "\n".join(pages).strip()
    if not text:
        raise DocumentReadError("Could not extract text from PDF file")
    return text


def _extract_pdf_page(pdf: "pdfium.PdfDocument", index: int) -> str:
    page = pdf[index]
    try:
        textpage = page.get_textpage()
        try:
            return textpage.get_text_range()
        finally:
            textpage.close()
    finally:
        page.close()


def process_file_content(file_data: str, file_name: str) -> str:
    """Extract text from a base64 encoded upload named ``file_name``."""

    try:
        payload = base64.b64decode(file_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DocumentReadError(f"Failed to decode file data: {exc}") from exc

    ext = _extension(Path(file_name))
    if ext not in SUPPORTED_TYPES:
        raise UnsupportedFormatError(f"Unsupported file type: {ext.lstrip('.')}")

    fd, temp_name = tempfile.mkstemp(prefix="neural_temp_", suffix=ext)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        return read_file_content(temp_name)
    finally:
        with contextlib.suppress(OSError):
            os.unlink(temp_name)
