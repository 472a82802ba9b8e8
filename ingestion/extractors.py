"""Format-specific text extraction.

`ExtractorRegistry` maps a declared format id to an extraction strategy. The
registry is built once (`ExtractorRegistry.default()`) and handed to the sync
engine; formats it does not know extract to empty text, which the engine
records as a skipped file. Strategies receive the source so that each one can
decide whether it needs the stored bytes or a converted export.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Mapping, Protocol

import fitz  # PyMuPDF
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from openpyxl import load_workbook
from pptx import Presentation

from ingestion import formats
from ingestion.sources import DocumentSource
from ingestion.text_processing import normalize_text
from types_models import RemoteEntry

logger = logging.getLogger(__name__)


class TextExtractor(Protocol):
    """Strategy turning one remote file into plain text."""

    def extract(self, source: DocumentSource, entry: RemoteEntry) -> str: ...


class BytesParser(Protocol):
    def __call__(self, data: bytes, /) -> str: ...


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


# ===============================
# Binary parsers
# ===============================


def pdf_bytes_to_text(data: bytes) -> str:
    """Read embedded text page by page, tolerating per-page failures."""
    pages: list[str] = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page in doc:
            try:
                pages.append(page.get_text("text") or "")
            except (RuntimeError, ValueError) as exc:
                logger.error(f"⚠️ Error reading PDF page: {type(exc).__name__}: {exc}")
                logger.debug("Full traceback:", exc_info=True)
                continue
    return "\n".join(pages).strip()


def docx_bytes_to_text(data: bytes) -> str:
    """Paragraph text followed by table rows, one row per line."""
    doc = DocxDocument(io.BytesIO(data))
    parts: list[str] = []

    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        rows = [" | ".join(cell.text.strip() for cell in row.cells) for row in table.rows]
        if rows:
            parts.append("\n".join(rows))

    return "\n".join(parts).strip()


def xlsx_bytes_to_text(data: bytes) -> str:
    """One header line per sheet, then non-empty cells joined with ' | '."""
    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    lines: list[str] = []
    try:
        for sheet in workbook.worksheets:
            lines.append(f"\n=== SHEET: {sheet.title} ===")
            for row in sheet.iter_rows(values_only=True):
                cells = [str(value) for value in row if value is not None and str(value) != ""]
                if cells:
                    lines.append(" | ".join(cells))
    finally:
        workbook.close()
    return "\n".join(lines).strip()


def pptx_bytes_to_text(data: bytes) -> str:
    """Text frames of every slide, slides in presentation order."""
    presentation = Presentation(io.BytesIO(data))
    slides: list[str] = []

    for slide in presentation.slides:
        texts: list[str] = []
        for shape in slide.shapes:
            if shape.has_text_frame:
                for paragraph in shape.text_frame.paragraphs:
                    text = "".join(run.text for run in paragraph.runs).strip()
                    if text:
                        texts.append(text)
            if shape.has_table:
                for row in shape.table.rows:
                    texts.append(" | ".join(cell.text.strip() for cell in row.cells))
        if texts:
            slides.append("\n".join(texts))

    return "\n\n".join(slides).strip()


def html_bytes_to_text(data: bytes) -> str:
    """Convert HTML to text, stripping scripts/styles for clean chunks."""
    parser = "lxml"
    try:
        import lxml  # type: ignore[import-untyped]

        _ = lxml
    except ImportError:
        parser = "html.parser"

    soup = BeautifulSoup(data, parser)
    for tag in soup(["script", "style", "noscript"]):
        _ = tag.extract()
    return soup.get_text(separator="\n").strip()


def csv_bytes_to_text(data: bytes) -> str:
    """Re-emit CSV rows with ' | ' separators, dropping empty rows."""
    reader = csv.reader(io.StringIO(_decode(data)))
    rows = [" | ".join(cell for cell in row if cell) for row in reader]
    return "\n".join(row for row in rows if row).strip()


# ===============================
# Strategies
# ===============================


class DownloadedText:
    """Stored file bytes decoded as UTF-8."""

    def extract(self, source: DocumentSource, entry: RemoteEntry) -> str:
        return _decode(source.fetch_bytes(entry.id))


class DownloadedBinary:
    """Stored file bytes run through a binary parser."""

    def __init__(self, parser: BytesParser) -> None:
        super().__init__()
        self._parser = parser

    def extract(self, source: DocumentSource, entry: RemoteEntry) -> str:
        return self._parser(source.fetch_bytes(entry.id))


class Exported:
    """Ask the source to convert a suite-native document, then parse the export."""

    def __init__(self, target_format: str, parser: BytesParser = _decode) -> None:
        super().__init__()
        self.target_format = target_format
        self._parser = parser

    def extract(self, source: DocumentSource, entry: RemoteEntry) -> str:
        return self._parser(source.export_bytes(entry.id, self.target_format))


class ExtractorRegistry:
    """Fixed mapping from format id to extraction strategy."""

    def __init__(
        self,
        strategies: Mapping[str, TextExtractor],
        *,
        prefix_strategies: Mapping[str, TextExtractor] | None = None,
        max_chars: int | None = None,
    ) -> None:
        super().__init__()
        self._strategies = dict(strategies)
        self._prefix_strategies = dict(prefix_strategies or {})
        self._max_chars = max_chars

    @classmethod
    def default(cls, *, max_chars: int | None = None) -> "ExtractorRegistry":
        text = DownloadedText()
        return cls(
            {
                formats.GOOGLE_DOCUMENT: Exported(formats.PLAIN_TEXT),
                formats.GOOGLE_SPREADSHEET: Exported(formats.CSV),
                formats.GOOGLE_PRESENTATION: Exported(formats.PDF, pdf_bytes_to_text),
                formats.PDF: DownloadedBinary(pdf_bytes_to_text),
                formats.DOCX: DownloadedBinary(docx_bytes_to_text),
                formats.XLSX: DownloadedBinary(xlsx_bytes_to_text),
                formats.PPTX: DownloadedBinary(pptx_bytes_to_text),
                formats.HTML: DownloadedBinary(html_bytes_to_text),
                formats.CSV: DownloadedBinary(csv_bytes_to_text),
                formats.JSON: text,
            },
            prefix_strategies={"text/": text},
            max_chars=max_chars,
        )

    def strategy_for(self, format_id: str) -> TextExtractor | None:
        strategy = self._strategies.get(format_id)
        if strategy is not None:
            return strategy
        for prefix, candidate in self._prefix_strategies.items():
            if format_id.startswith(prefix):
                return candidate
        return None

    def supports(self, format_id: str) -> bool:
        return self.strategy_for(format_id) is not None

    def extract(self, source: DocumentSource, entry: RemoteEntry) -> str:
        """Return normalised text for the entry, or "" for unsupported formats."""
        strategy = self.strategy_for(entry.mime_hint or "")
        if strategy is None:
            logger.debug("No extractor for %s (%s)", entry.name, entry.mime_hint)
            return ""
        return normalize_text(strategy.extract(source, entry), max_chars=self._max_chars)


__all__ = [
    "DownloadedBinary",
    "DownloadedText",
    "Exported",
    "ExtractorRegistry",
    "TextExtractor",
    "csv_bytes_to_text",
    "docx_bytes_to_text",
    "html_bytes_to_text",
    "pdf_bytes_to_text",
    "pptx_bytes_to_text",
    "xlsx_bytes_to_text",
]
