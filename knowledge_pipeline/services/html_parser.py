"""Extract document text from uploaded HTML files"""

import html
import logging
import re

from bs4 import BeautifulSoup

from knowledge_pipeline.exceptions import ExtractionFailedError
from knowledge_pipeline.models.extraction import ExtractedContent

logger = logging.getLogger(__name__)

_HEADING_TAG_RE = re.compile(r"^h([1-6])$")
_HEADING_LINE_RE = re.compile(r"^#{1,6} ")

# Containers that hold the main content, most specific first
_CONTENT_SELECTORS = (
    ("main", "main_tag"),
    ("article", "article_tag"),
    ("div.content", "content_div"),
    ("div.main-content", "content_div"),
    ("div.article", "content_div"),
    ("div.markdown-body", "content_div"),
)

# Page chrome removed when falling back to the whole body
_CHROME_SELECTOR = (
    "nav, header, footer, aside, script, style, "
    ".navigation, .sidebar, .menu, .breadcrumb, .toc"
)


class HtmlParser:
    """Extract main content from HTML as markdown-style text"""

    def parse(self, html_content: str, name: str) -> ExtractedContent:
        """
        Parse HTML and extract document content

        Headings become `#` lines and list items become `- ` lines so the
        chunker sees the same structure as for markdown uploads.

        Args:
            html_content: HTML content to parse
            name: File name (for messages and as a fallback title)

        Returns:
            ExtractedContent with title and text (text may be empty)

        Raises:
            ExtractionFailedError: If the HTML has no body to extract from
        """
        soup = BeautifulSoup(html_content or "", "lxml")
        title = self._extract_title(soup) or name

        root, extraction_method = self.extract_main_content(soup)
        if root is None:
            if not html_content.strip():
                return ExtractedContent(title=title, content="")
            raise ExtractionFailedError(f"Failed to parse {name}: no <body> found")

        self._mark_structure(root)
        content = self.clean_text(root.get_text(separator="\n", strip=True))

        logger.info(f"Parsed {name} using '{extraction_method}' ({len(content.split())} words)")
        return ExtractedContent(title=title, content=content)

    def extract_main_content(self, soup: BeautifulSoup):
        """
        Find the element holding the main content

        Returns:
            Tuple of (element or None, extraction_method)
            extraction_method is one of: 'main_tag', 'article_tag', 'content_div', 'fallback'
        """
        for selector, method in _CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                return element, method

        body = soup.body
        if body is None:
            return None, "fallback"

        for tag in body.select(_CHROME_SELECTOR):
            # Nested chrome goes away with its container
            if not tag.decomposed:
                tag.decompose()
        return body, "fallback"

    @staticmethod
    def _mark_structure(root) -> None:
        """Rewrite headings and list items in place as markdown lines"""
        for tag in root.find_all(["script", "style"]):
            tag.decompose()

        for tag in root.find_all(_HEADING_TAG_RE):
            level = int(tag.name[1])
            text = tag.get_text(" ", strip=True)
            if text:
                tag.string = f"{'#' * level} {text}"
            else:
                tag.decompose()

        for tag in root.find_all("li"):
            text = tag.get_text(" ", strip=True)
            if text and not tag.find(["ul", "ol"]):
                tag.string = f"- {text}"

    @staticmethod
    def clean_text(text: str) -> str:
        """
        Clean and normalize extracted text

        Args:
            text: Raw text extracted from HTML

        Returns:
            Cleaned text with normalized whitespace and a blank line before each heading
        """
        text = html.unescape(text)
        text = re.sub(r"[ \t]+", " ", text)

        lines: list[str] = []
        for line in text.split("\n"):
            if _HEADING_LINE_RE.match(line) and lines and lines[-1] != "":
                lines.append("")
            lines.append(line)
            if _HEADING_LINE_RE.match(line):
                lines.append("")

        text = "\n".join(lines)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    @staticmethod
    def _extract_title(soup: BeautifulSoup) -> str | None:
        """Page title from <title>, the first <h1> or og:title"""
        candidates = []
        if soup.title is not None:
            candidates.append(soup.title.get_text(strip=True))
        h1 = soup.find("h1")
        if h1 is not None:
            candidates.append(h1.get_text(" ", strip=True))
        og_title = soup.find("meta", attrs={"property": "og:title"})
        if og_title is not None:
            candidates.append((og_title.get("content") or "").strip())

        return next((c for c in candidates if c), None)
