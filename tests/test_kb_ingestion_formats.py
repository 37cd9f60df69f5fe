"""Unit tests for knowledge base ingestion file formats.

These tests validate offline text extraction for supported KB document formats.

They are intentionally small and self-contained (no server required).
"""

from __future__ import annotations

import io
import tempfile
import unittest
import zipfile
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def _make_processor(base_dir: str):
    from persona_kb.knowledge_base.ingestion import DocumentProcessor, TextChunker
    from persona_kb.knowledge_base.storage_manager import LocalFileStorage

    storage = LocalFileStorage(base_dir)
    return storage, DocumentProcessor(storage, TextChunker(chunk_size=200, chunk_overlap=20))


class TestKnowledgeBaseIngestionFormats(unittest.IsolatedAsyncioTestCase):
    """Tests for `DocumentProcessor.extract_text` format support."""

    async def test_extract_epub_text(self) -> None:
        """Extracts text from a minimal EPUB (ZIP + XHTML)."""
        from persona_kb.knowledge_base.storage_manager import EPUB_MIME

        buffer = io.BytesIO()
        # Minimal EPUB-like ZIP. The extractor only needs HTML/XHTML entries.
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(
                "OEBPS/content.xhtml",
                """<?xml version='1.0' encoding='utf-8'?>
<html xmlns='http://www.w3.org/1999/xhtml'>
  <head><title>t</title><style>.x{color:red}</style></head>
  <body>
    <h1>Hello EPUB</h1>
    <p>Second line.</p>
    <script>console.log('ignore');</script>
  </body>
</html>
""",
            )

        with tempfile.TemporaryDirectory() as tmp:
            storage, processor = _make_processor(tmp)
            stored = await storage.store("user-1", "char-1", buffer.getvalue(), "sample.epub")
            self.assertEqual(stored.mime_type, EPUB_MIME)

            text = await processor.extract_text(stored.path, stored.mime_type)

        self.assertIn("Hello EPUB", text)
        self.assertIn("Second line.", text)
        self.assertNotIn("console.log", text)

    async def test_extract_docx_text_runs(self) -> None:
        """Joins the `w:t` runs of a DOCX document body."""
        from persona_kb.knowledge_base.storage_manager import DOCX_MIME

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(
                "word/document.xml",
                '<w:document><w:body><w:p><w:r><w:t>Hello</w:t></w:r>'
                '<w:r><w:t xml:space="preserve">DOCX</w:t></w:r></w:p></w:body></w:document>',
            )

        with tempfile.TemporaryDirectory() as tmp:
            storage, processor = _make_processor(tmp)
            stored = await storage.store("user-1", "char-1", buffer.getvalue(), "notes.docx")
            text = await processor.extract_text(stored.path, DOCX_MIME)

        self.assertEqual(text, "Hello DOCX")

    async def test_extract_pdf_empty_pdf_does_not_crash(self) -> None:
        """Handles a minimal PDF container without crashing.

        We only assert that extraction runs and returns a string; content may be
        empty depending on PDF structure.
        """
        from pypdf import PdfWriter

        writer = PdfWriter()
        writer.add_blank_page(width=72, height=72)
        buffer = io.BytesIO()
        writer.write(buffer)

        with tempfile.TemporaryDirectory() as tmp:
            storage, processor = _make_processor(tmp)
            stored = await storage.store("user-1", "char-1", buffer.getvalue(), "empty.pdf")
            text = await processor.extract_text(stored.path, "application/pdf")

        self.assertIsInstance(text, str)

    async def test_process_markdown_file_into_chunks(self) -> None:
        """Plain text formats are decoded as UTF-8 and chunked."""
        content = ("# Title\r\n\r\n" + "Some\tmarkdown   text. " * 30).encode("utf-8")

        with tempfile.TemporaryDirectory() as tmp:
            storage, processor = _make_processor(tmp)
            stored = await storage.store("user-1", "char-1", content, "notes.md")
            self.assertEqual(stored.mime_type, "text/markdown")

            chunks = await processor.process_file(stored.path, stored.mime_type)

        self.assertGreater(len(chunks), 1)
        self.assertTrue(chunks[0].content.startswith("# Title"))
        self.assertTrue(all("\r" not in c.content and "\t" not in c.content for c in chunks))
        self.assertEqual([c.index for c in chunks], list(range(len(chunks))))


class TestLocalFileStorage(unittest.IsolatedAsyncioTestCase):
    """Tests for the on-disk file storage layout."""

    async def test_store_read_delete(self) -> None:
        from persona_kb.knowledge_base.storage_manager import LocalFileStorage

        with tempfile.TemporaryDirectory() as tmp:
            storage = LocalFileStorage(tmp)
            stored = await storage.store("user-1", "char-1", b"hello", "my notes?.txt")

            path = Path(stored.path)
            self.assertEqual(path.parent, Path(tmp).resolve() / "user-1" / "char-1")
            self.assertTrue(path.name.endswith("-my_notes_.txt"))
            self.assertEqual(stored.original_name, "my notes?.txt")
            self.assertEqual(stored.size_bytes, 5)
            self.assertEqual(await storage.read(stored.path), b"hello")

            await storage.delete(stored.path)
            self.assertFalse(await storage.exists(stored.path))
            # Deleting twice is not an error
            await storage.delete(stored.path)

    async def test_rejects_path_traversal(self) -> None:
        from persona_kb.knowledge_base.storage_manager import LocalFileStorage

        with tempfile.TemporaryDirectory() as tmp:
            storage = LocalFileStorage(Path(tmp) / "kb")
            with self.assertRaises(ValueError):
                await storage.store("../other", "char-1", b"x", "a.txt")
            with self.assertRaises(ValueError):
                await storage.read(str(Path(tmp) / "outside.txt"))


if __name__ == "__main__":
    unittest.main()
