"""Document extractor — PDF (pypdf), DOCX (python-docx), plain text and markdown.

The source config names a file on disk: ``{"path": ..., "file_type": ...}``.
``file_type`` is optional; the file extension is used when it is missing.
"""

from __future__ import annotations

import logging
from pathlib import Path

import docx
import pypdf

from lodestone.db.models import Source, SourceItem
from lodestone.errors import ExtractionError
from lodestone.ingest.base import ExtractedItem, Extractor

logger = logging.getLogger(__name__)

_PDF_TYPES = {"pdf", "application/pdf"}
_DOCX_TYPES = {
    "docx",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
_TEXT_TYPES = {"txt", "md", "markdown", "text/plain", "text/markdown"}


def detect_file_type(path: str | Path, declared: str | None = None) -> str:
    """Return ``pdf``, ``docx`` or ``txt`` for *path*.

    Raises:
        ExtractionError: If neither *declared* nor the extension is supported.
    """
    candidates = [declared.lower()] if declared else []
    candidates.append(Path(path).suffix.lower().lstrip("."))
    for kind in candidates:
        if kind in _PDF_TYPES:
            return "pdf"
        if kind in _DOCX_TYPES:
            return "docx"
        if kind in _TEXT_TYPES:
            return "txt"
    raise ExtractionError(f"Unsupported file type: {declared or Path(path).suffix or 'unknown'}")


class DocumentExtractor(Extractor):
    """Read an uploaded document into a single extracted item."""

    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        cfg = source.config_dict
        path = cfg.get("path")
        if not path:
            raise ExtractionError("Document source has no file path")
        file_path = Path(path)
        if not file_path.is_file():
            raise ExtractionError(f"Document not found: {file_path}")

        file_type = detect_file_type(file_path, cfg.get("file_type"))
        metadata: dict[str, object] = {"file_name": file_path.name, "file_type": file_type}

        try:
            if file_type == "pdf":
                text, page_count = _read_pdf(file_path)
                metadata["page_count"] = page_count
            elif file_type == "docx":
                text = _read_docx(file_path)
            else:
                text = file_path.read_text(encoding="utf-8", errors="replace")
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Failed to read document '{file_path.name}': {exc}") from exc

        if not text.strip():
            raise ExtractionError("No content extracted from document")
        logger.debug(
            "Extracted document",
            extra={"source_id": source.id, "file_type": file_type, "chars": len(text)},
        )
        return [ExtractedItem(text=text, metadata=metadata, title=file_path.name)]


def _read_pdf(path: Path) -> tuple[str, int]:
    """Extract page text from the PDF at *path*; pages without text are skipped."""
    reader = pypdf.PdfReader(str(path))
    parts: list[str] = []
    for page in reader.pages:
        stripped = (page.extract_text() or "").strip()
        if stripped:
            parts.append(stripped)
    return "\n\n".join(parts), len(reader.pages)


def _read_docx(path: Path) -> str:
    """Extract paragraphs, then table rows (cells joined with `` | ``)."""
    document = docx.Document(str(path))
    parts = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n\n".join(parts)
