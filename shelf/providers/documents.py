"""
Content extraction for library files.

Pulls a bounded excerpt of readable text out of EPUB, PDF and plain-text
files. Container formats are parsed on a worker thread raced against a
timeout so one pathological file cannot stall a job.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable

from ..errors import ExtractionError, ExtractionFailure, ExtractionTimeout

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def extract_html_text(html_content: bytes | str) -> str:
    """
    Readable text from an XHTML chapter, markup replaced by spaces.

    Raises:
        ImportError: If beautifulsoup4 is not installed
    """
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html_content, "html.parser")
    for script in soup(["script", "style"]):
        script.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


class FileContentExtractor:
    """
    Extracts a text excerpt from a local file.

    EPUB: the first ``max_sections`` spine documents, stopping once
    ``max_chars`` is reached. PDF: the first ``pdf_max_pages`` pages.
    Text/Markdown: the leading ``max_chars`` characters.
    """

    EXTENSION_TYPES = {
        ".epub": "application/epub+zip",
        ".pdf": "application/pdf",
        ".txt": "text/plain",
        ".md": "text/markdown",
        ".markdown": "text/markdown",
    }

    def __init__(
        self,
        max_chars: int = 5000,
        timeout: float = 15.0,
        max_sections: int = 5,
        pdf_max_pages: int = 10,
    ):
        self.max_chars = max_chars
        self.timeout = timeout
        self.max_sections = max_sections
        self.pdf_max_pages = pdf_max_pages

    def supports(self, path: str) -> bool:
        return Path(path).suffix.lower() in self.EXTENSION_TYPES

    def extract(self, path: str) -> str:
        """
        Extract up to ``max_chars`` of text.

        Returns:
            The excerpt, possibly empty

        Raises:
            ExtractionTimeout: Parsing did not finish within ``timeout`` seconds
            ExtractionFailure: Missing, unsupported or unreadable file
        """
        p = Path(path)
        suffix = p.suffix.lower()
        if suffix not in self.EXTENSION_TYPES:
            raise ExtractionFailure(f"Unsupported file type: {suffix or p.name}")
        if not p.is_file():
            raise ExtractionFailure(f"File not found: {path}")

        if suffix == ".epub":
            return self._with_timeout(self._extract_epub, p)
        if suffix == ".pdf":
            return self._with_timeout(self._extract_pdf, p)
        return self._extract_text(p)

    def _with_timeout(self, fn: Callable[[Path], str], path: Path) -> str:
        """Run ``fn(path)`` on a worker thread; give up after ``timeout`` seconds.

        A timed-out worker is abandoned, not killed; it finishes in the
        background and its result is discarded.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shelf-extract")
        future = executor.submit(fn, path)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning("Extraction timed out after %gs: %s", self.timeout, path.name)
            raise ExtractionTimeout(str(path), self.timeout) from None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _extract_epub(self, path: Path) -> str:
        try:
            import ebooklib
            from ebooklib import epub
        except ImportError:
            raise ExtractionFailure(
                "EPUB support requires 'ebooklib'. Install with: pip install ebooklib"
            )

        try:
            book = epub.read_epub(str(path), options={"ignore_ncx": True})
            parts: list[str] = []
            length = 0
            for idref, _linear in book.spine[:self.max_sections]:
                item = book.get_item_with_id(idref)
                if item is None or item.get_type() != ebooklib.ITEM_DOCUMENT:
                    continue
                text = extract_html_text(item.get_content())
                if not text:
                    continue
                parts.append(text)
                length += len(text) + 1
                if length > self.max_chars:
                    break
            return " ".join(parts)[:self.max_chars]
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionFailure(f"Failed to read EPUB {path.name}: {e}") from e

    def _extract_pdf(self, path: Path) -> str:
        try:
            from pypdf import PdfReader
        except ImportError:
            raise ExtractionFailure(
                "PDF support requires 'pypdf'. Install with: pip install pypdf"
            )

        try:
            reader = PdfReader(path)
            parts: list[str] = []
            length = 0
            for page in reader.pages[:self.pdf_max_pages]:
                text = page.extract_text()
                if not text or not text.strip():
                    continue
                parts.append(text)
                length += len(text) + 2
                if length > self.max_chars:
                    break
            return "\n\n".join(parts)[:self.max_chars]
        except Exception as e:
            raise ExtractionFailure(f"Failed to extract text from PDF {path.name}: {e}") from e

    def _extract_text(self, path: Path) -> str:
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read(self.max_chars)
        except OSError as e:
            raise ExtractionFailure(f"Failed to read {path.name}: {e}") from e
