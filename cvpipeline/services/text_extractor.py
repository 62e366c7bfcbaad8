import io
import re
from typing import Callable, Dict

import PyPDF2
from docx import Document

from cvpipeline.errors import TextExtractionFailed
from cvpipeline.utils import file_signatures
from cvpipeline.utils.logger import logger

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_WS = re.compile(r"[ \t]+")
_BLANK_RUNS = re.compile(r"\n{3,}")

# Printable runs inside a legacy .doc compound file (8-bit and UTF-16LE text)
_ASCII_RUN = re.compile(rb"[\x20-\x7e\t\r\n]{4,}")
_UTF16_RUN = re.compile(rb"(?:[\x20-\x7e\t\r\n]\x00){4,}")


class TextExtractor:
    """Extract plain text from PDF, DOCX and legacy DOC bytes"""

    def __init__(self):
        self.extractors: Dict[str, Callable[[bytes], str]] = {
            file_signatures.MIME_PDF: self.extract_pdf,
            file_signatures.MIME_DOCX: self.extract_docx,
            file_signatures.MIME_DOC: self.extract_doc,
        }

    def extract_text(self, content: bytes, mime_type: str) -> str:
        """
        Extract and clean the text of a CV document.

        Raises:
            TextExtractionFailed: unsupported type, unreadable document or no text
        """
        extractor = self.extractors.get(mime_type)
        if extractor is None:
            raise TextExtractionFailed(
                f"Unsupported file type: {mime_type}", details={"mime_type": mime_type}
            )

        try:
            raw_text = extractor(content)
        except TextExtractionFailed:
            raise
        except Exception as e:
            # PyPDF2 and python-docx raise a wide range of parser errors on broken input
            logger.warning("text.extraction_failed", extra={"error": str(e)})
            raise TextExtractionFailed(
                f"Text extraction failed: {e}", details={"mime_type": mime_type}
            ) from e

        text = self.clean_text(raw_text)
        if not text:
            raise TextExtractionFailed(
                "Document appears to be empty or contains no extractable text",
                details={"mime_type": mime_type},
            )
        return text

    def extract_pdf(self, content: bytes) -> str:
        reader = PyPDF2.PdfReader(io.BytesIO(content))

        # Extract text from all pages
        full_text = ""
        for page in reader.pages:
            full_text += (page.extract_text() or "") + "\n"
        return full_text

    def extract_docx(self, content: bytes) -> str:
        doc = Document(io.BytesIO(content))

        # Paragraphs first, then table cells (many CV templates lay out in tables)
        lines = [para.text for para in doc.paragraphs]
        for table in doc.tables:
            for row in table.rows:
                lines.append(" ".join(cell.text for cell in row.cells))
        return "\n".join(lines)

    def extract_doc(self, content: bytes) -> str:
        """Best-effort scan of a legacy .doc for readable text runs."""
        utf16 = [run.decode("utf-16-le") for run in _UTF16_RUN.findall(content)]
        ascii_runs = [run.decode("latin-1") for run in _ASCII_RUN.findall(content)]
        # Word 97+ usually stores body text as UTF-16; older files as 8-bit
        runs = utf16 if sum(map(len, utf16)) >= sum(map(len, ascii_runs)) else ascii_runs
        return "\n".join(runs)

    @staticmethod
    def clean_text(raw_text: str) -> str:
        """Normalize line breaks and whitespace, drop control characters."""
        cleaned = raw_text.replace("\r\n", "\n").replace("\r", "\n")
        cleaned = _CONTROL_CHARS.sub("", cleaned)
        cleaned = _HORIZONTAL_WS.sub(" ", cleaned)
        cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
        cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
        return cleaned.strip()


text_extractor = TextExtractor()
