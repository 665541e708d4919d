"""Tests for file content extraction."""

import threading

import pytest

from shelf.errors import ExtractionFailure, ExtractionTimeout
from shelf.providers.documents import FileContentExtractor, extract_html_text


def _write_epub(path, chapters):
    from ebooklib import epub

    book = epub.EpubBook()
    book.set_identifier("shelf-test")
    book.set_title("Test Book")
    book.set_language("en")
    items = []
    for number, body in enumerate(chapters, 1):
        chapter = epub.EpubHtml(title=f"Chapter {number}", file_name=f"ch{number}.xhtml", lang="en")
        chapter.content = f"<html><body><h1>Chapter {number}</h1><p>{body}</p></body></html>"
        book.add_item(chapter)
        items.append(chapter)
    book.toc = tuple(items)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = items
    epub.write_epub(str(path), book)
    return path


def test_extract_html_text_strips_markup():
    html = "<html><head><style>p {}</style></head><body><p>Hello</p>\n<p>world</p><script>x()</script></body></html>"
    assert extract_html_text(html) == "Hello world"


class TestFileContentExtractor:

    def test_plain_text(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Chapter one begins here.")
        assert FileContentExtractor().extract(str(path)) == "Chapter one begins here."

    def test_text_truncated_to_cap(self, tmp_path):
        path = tmp_path / "long.md"
        path.write_text("x" * 100)
        assert FileContentExtractor(max_chars=10).extract(str(path)) == "x" * 10

    def test_epub_sections(self, tmp_path):
        path = _write_epub(tmp_path / "book.epub", ["Dragons fly.", "Knights ride."])
        text = FileContentExtractor().extract(str(path))
        assert "Dragons fly." in text
        assert "Knights ride." in text
        assert "<p>" not in text

    def test_epub_section_limit(self, tmp_path):
        path = _write_epub(tmp_path / "book.epub", ["First part.", "Second part.", "Third part."])
        text = FileContentExtractor(max_sections=2).extract(str(path))
        assert "Second part." in text
        assert "Third part." not in text

    def test_epub_char_cap(self, tmp_path):
        path = _write_epub(tmp_path / "book.epub", ["word " * 500, "later " * 500])
        text = FileContentExtractor(max_chars=200).extract(str(path))
        assert len(text) == 200

    def test_corrupt_epub(self, tmp_path):
        path = tmp_path / "broken.epub"
        path.write_bytes(b"this is not a zip file")
        with pytest.raises(ExtractionFailure):
            FileContentExtractor().extract(str(path))

    def test_corrupt_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"%PDF-nonsense")
        with pytest.raises(ExtractionFailure):
            FileContentExtractor().extract(str(path))

    def test_unsupported_type(self, tmp_path):
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"\xff\xd8")
        with pytest.raises(ExtractionFailure, match="Unsupported file type"):
            FileContentExtractor().extract(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtractionFailure, match="File not found"):
            FileContentExtractor().extract(str(tmp_path / "gone.epub"))

    def test_timeout(self, tmp_path):
        path = tmp_path / "slow.epub"
        path.write_bytes(b"")
        release = threading.Event()
        extractor = FileContentExtractor(timeout=0.1)

        def hang(p):
            release.wait(5)
            return "too late"

        extractor._extract_epub = hang
        try:
            with pytest.raises(ExtractionTimeout) as exc_info:
                extractor.extract(str(path))
        finally:
            release.set()
        assert exc_info.value.seconds == 0.1
        assert str(exc_info.value) == "Parsing timed out (0.1s)"

    def test_supports(self):
        extractor = FileContentExtractor()
        assert extractor.supports("/a/B.EPUB")
        assert extractor.supports("/a/b.pdf")
        assert not extractor.supports("/a/b.mobi")
