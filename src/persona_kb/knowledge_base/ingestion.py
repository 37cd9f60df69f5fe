"""
Document ingestion helpers for the knowledge base.

Handles text extraction from stored files and chunking into overlapping windows.
"""

import asyncio
import re
import zipfile
from html.parser import HTMLParser
from io import BytesIO
from pathlib import Path
from typing import Optional

from loguru import logger
from pypdf import PdfReader

from .models import TextChunk
from .storage_manager import DOCX_MIME, EPUB_MIME, FileStorage

_DOCX_RUN_RE = re.compile(r"<w:t[^>]*>([^<]*)</w:t>")


class _HTMLTextExtractor(HTMLParser):
    """Extract visible text from HTML content.

    This is used for EPUB ingestion, where many documents store content as
    XHTML/HTML inside a ZIP container.
    """

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._ignore_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"}:
            self._ignore_depth += 1

    def handle_endtag(self, tag: str) -> None:  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"} and self._ignore_depth > 0:
            self._ignore_depth -= 1

    def handle_data(self, data: str) -> None:  # type: ignore[override]
        if self._ignore_depth > 0:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def get_text(self) -> str:
        return "\n".join(self._parts)


def normalize_text(text: str) -> str:
    """Normalize line endings and horizontal whitespace before chunking.

    Args:
        text: Raw extracted text.

    Returns:
        Normalized text. Chunk offsets refer to this form of the text.
    """

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", " ")
    text = re.sub(r" {2,}", " ", text)
    return text.strip()


class TextChunker:
    """
    Splits documents into overlapping character windows.

    Windows prefer to end on a paragraph break, a sentence end or a newline
    found in their second half. Each chunk keeps its character span in the
    normalized text so retrieval results can cite where they came from.
    """

    def __init__(self, chunk_size: int = 500, chunk_overlap: int = 50):
        """
        Initialize the text chunker.

        Args:
            chunk_size: Target size of each chunk in characters
            chunk_overlap: Number of overlapping characters between chunks

        Raises:
            ValueError: If the overlap is not smaller than the chunk size
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be in [0, chunk_size={chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def _find_break(self, text: str, start: int, end: int) -> int:
        """Return a better end position inside (start, end], or `end` itself."""
        # The break must land in the second half of the window and leave room
        # for the next window to advance past `start`.
        floor = start + max(self.chunk_size // 2, self.chunk_overlap)

        candidates = [
            text.rfind("\n\n", start, end),
            text.rfind(". ", start, end) + 1,
            text.rfind("\n", start, end),
        ]
        candidates = [bp for bp in candidates if floor < bp <= end]
        return max(candidates) if candidates else end

    def chunk_text(self, text: str) -> list[TextChunk]:
        """
        Split text into overlapping chunks.

        Args:
            text: Input text to chunk

        Returns:
            Ordered list of TextChunk; empty for blank text
        """
        text = normalize_text(text)
        if not text:
            return []

        if len(text) <= self.chunk_size:
            return [TextChunk(content=text, index=0, start_char=0, end_char=len(text))]

        chunks: list[TextChunk] = []
        start = 0

        while start < len(text):
            end = min(start + self.chunk_size, len(text))
            if end < len(text):
                end = self._find_break(text, start, end)

            content = text[start:end].strip()
            if content:
                chunks.append(
                    TextChunk(
                        content=content,
                        index=len(chunks),
                        start_char=start,
                        end_char=end,
                    )
                )

            if end >= len(text):
                break

            # Move start position with overlap
            start = end - self.chunk_overlap

        return chunks


class DocumentProcessor:
    """
    Extracts text from stored knowledge base files and chunks it.

    Supports plain text formats, PDF (pypdf), EPUB and DOCX.
    """

    def __init__(self, storage: FileStorage, chunker: TextChunker):
        self.storage = storage
        self.chunker = chunker

    async def extract_text(self, storage_path: str, file_type: Optional[str]) -> str:
        """
        Extract text content from a stored file.

        Args:
            storage_path: Path returned by the file storage
            file_type: MIME type recorded at upload time

        Returns:
            Extracted text content
        """
        content = await self.storage.read(storage_path)
        mime_type = file_type or "text/plain"

        if mime_type == "application/pdf":
            return await asyncio.to_thread(self._read_pdf, content)

        if mime_type == DOCX_MIME:
            return await asyncio.to_thread(self._read_docx, content)

        if mime_type == EPUB_MIME:
            return await asyncio.to_thread(self._read_epub, content)

        # text/*, JSON, XML and unknown types are decoded as UTF-8
        return content.decode("utf-8", errors="replace")

    @staticmethod
    def _read_pdf(content: bytes) -> str:
        reader = PdfReader(BytesIO(content))
        parts: list[str] = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            if page_text.strip():
                parts.append(page_text)
        return "\n\n".join(parts)

    @staticmethod
    def _read_docx(content: bytes) -> str:
        with zipfile.ZipFile(BytesIO(content)) as zf:
            try:
                xml = zf.read("word/document.xml").decode("utf-8", errors="replace")
            except KeyError:
                return ""
        return " ".join(_DOCX_RUN_RE.findall(xml))

    @staticmethod
    def _read_epub(content: bytes) -> str:
        """Treat EPUB as a ZIP archive and strip text from its HTML/XHTML files."""
        parts: list[str] = []
        with zipfile.ZipFile(BytesIO(content)) as zf:
            for name in sorted(zf.namelist()):
                lower = name.lower()
                if not lower.endswith((".xhtml", ".html", ".htm")):
                    continue
                # Skip metadata and nav-ish docs that are often noisy.
                if lower.startswith("meta-inf/"):
                    continue

                parser = _HTMLTextExtractor()
                parser.feed(zf.read(name).decode("utf-8", errors="replace"))
                text = parser.get_text()
                if text.strip():
                    parts.append(text)

        return "\n\n".join(parts)

    async def process_file(
        self, storage_path: str, file_type: Optional[str]
    ) -> list[TextChunk]:
        """
        Extract text from a file and split it into chunks.

        Args:
            storage_path: Path returned by the file storage
            file_type: MIME type recorded at upload time

        Returns:
            Ordered chunks (empty if the file has no text)
        """
        text = await self.extract_text(storage_path, file_type)
        chunks = self.chunker.chunk_text(text)

        logger.info(
            f"📄 Processed '{Path(storage_path).name}': {len(text)} chars -> {len(chunks)} chunks"
        )
        return chunks
