"""HTTP client for the page provider's block API with retry logic"""

import asyncio
import logging
from typing import Any

import httpx

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import ExtractionFailedError
from knowledge_pipeline.models.extraction import ExtractedContent, PageSummary

logger = logging.getLogger(__name__)

# Nested blocks deeper than this are not fetched
_MAX_DEPTH = 8

_HEADING_PREFIXES = {"heading_1": "# ", "heading_2": "## ", "heading_3": "### "}

_SILENT_BLOCKS = {"table_of_contents", "breadcrumb", "column_list", "column", "unsupported"}


def _plain_text(rich_text: list[dict[str, Any]] | None) -> str:
    return "".join(part.get("plain_text", "") for part in rich_text or [])


def render_block(block: dict[str, Any], depth: int = 0) -> str | None:
    """
    Render one provider block as a line of markdown-style text

    Args:
        block: Block object as returned by the children endpoint
        depth: Nesting depth, used to indent list items

    Returns:
        str | None: Rendered text, or None for blocks without visible text
    """
    block_type = block.get("type", "")
    data = block.get(block_type) or {}
    indent = "  " * depth

    if block_type in _SILENT_BLOCKS:
        return None
    if block_type == "divider":
        return "---"
    if block_type == "equation":
        return data.get("expression") or None
    if block_type in ("child_page", "child_database"):
        kind = "Page" if block_type == "child_page" else "Database"
        return f"[{kind}: {data.get('title', '')}]"
    if block_type in ("bookmark", "link_preview", "embed"):
        return f"[Link: {data.get('url', '')}]"
    if block_type in ("image", "video", "file", "pdf"):
        caption = _plain_text(data.get("caption"))
        return caption or f"[{block_type.capitalize()}: {data.get('name') or 'Attachment'}]"

    text = _plain_text(data.get("rich_text"))
    if not text:
        return None

    if block_type in _HEADING_PREFIXES:
        return f"{_HEADING_PREFIXES[block_type]}{text}"
    if block_type == "bulleted_list_item":
        return f"{indent}- {text}"
    if block_type == "numbered_list_item":
        return f"{indent}1. {text}"
    if block_type == "to_do":
        mark = "x" if data.get("checked") else " "
        return f"{indent}[{mark}] {text}"
    if block_type == "quote":
        return f"{indent}> {text}"
    if block_type == "callout":
        icon = (data.get("icon") or {}).get("emoji")
        return f"{indent}{icon} {text}" if icon else f"{indent}{text}"
    if block_type == "code":
        return f"```{data.get('language', '')}\n{text}\n```"
    return f"{indent}{text}"


def page_title(page: dict[str, Any]) -> str:
    """Title of a page object, from its title-typed property"""
    properties = page.get("properties") or {}
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return _plain_text(prop.get("title")) or "Untitled"
    return "Untitled"


class PageFetcher:
    """Fetch a page and its block tree from the page provider API"""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        max_retries: int | None = None,
    ) -> None:
        """
        Initialize fetcher with configuration

        Args:
            client: Preconfigured HTTP client (a default one is created if None)
            base_url: API base URL (default from config)
            max_retries: Attempts per request (default from config)
        """
        self.base_url = (base_url or config.page_provider_api_url).rstrip("/")
        self.max_retries = max_retries or config.page_provider_max_retries
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(float(config.page_provider_timeout)),
            follow_redirects=True,
        )

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Notion-Version": config.page_provider_api_version,
            "Accept": "application/json",
        }

    async def _request_json(
        self,
        method: str,
        path: str,
        token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Call an API path with retries on 5xx, timeouts and network errors

        Raises:
            ExtractionFailedError: Client error, or all retries exhausted
        """
        url = f"{self.base_url}/{path}"

        for attempt in range(self.max_retries):
            try:
                response = await self.client.request(
                    method, url, headers=self._headers(token), params=params, json=json
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                error_type = "Timeout" if isinstance(e, httpx.TimeoutException) else "Network error"
                if attempt < self.max_retries - 1:
                    wait_time = 2**attempt
                    logger.warning(
                        f"{error_type} for {url}, "
                        f"retry {attempt + 1}/{self.max_retries} after {wait_time}s"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"All retries failed with {error_type.lower()} for {url}")
                raise ExtractionFailedError(
                    f"{error_type} after {attempt + 1} attempts: {e}"
                ) from e

            # Client errors - don't retry
            if 400 <= response.status_code < 500:
                logger.warning(f"Client error {response.status_code} for {url}")
                raise ExtractionFailedError(
                    f"HTTP {response.status_code}: {response.text[:100]}",
                    status_code=response.status_code,
                )

            if response.status_code >= 500:
                if attempt < self.max_retries - 1:
                    wait_time = 2**attempt
                    logger.warning(
                        f"Server error {response.status_code} for {url}, "
                        f"retry {attempt + 1}/{self.max_retries} after {wait_time}s"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"All retries failed with {response.status_code} for {url}")
                raise ExtractionFailedError(
                    f"HTTP {response.status_code} after {attempt + 1} attempts",
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError as e:
                raise ExtractionFailedError(f"Invalid JSON from {url}: {e}") from e

        raise ExtractionFailedError(f"Fetch failed for {url}")

    async def _list_children(self, block_id: str, token: str) -> list[dict[str, Any]]:
        """All children of a block, following pagination cursors"""
        blocks: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            params: dict[str, Any] = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            payload = await self._request_json(
                "GET", f"blocks/{block_id}/children", token, params
            )
            blocks.extend(payload.get("results", []))

            cursor = payload.get("next_cursor")
            if not payload.get("has_more") or not cursor:
                return blocks

    async def _render_children(self, block_id: str, token: str, depth: int = 0) -> list[str]:
        lines: list[str] = []

        for block in await self._list_children(block_id, token):
            rendered = render_block(block, depth)
            is_heading = block.get("type") in _HEADING_PREFIXES
            if rendered is not None:
                # Blank lines around headings keep sections apart for the chunker
                if is_heading and lines:
                    lines.append("")
                lines.append(rendered)
                if is_heading:
                    lines.append("")

            if block.get("has_children") and block.get("id"):
                if depth + 1 >= _MAX_DEPTH:
                    logger.warning(f"Skipping children of block {block['id']} beyond depth")
                    continue
                lines.extend(await self._render_children(block["id"], token, depth + 1))

        return lines

    async def fetch_page(self, page_id: str, token: str) -> ExtractedContent:
        """
        Fetch a page with its full block tree

        Args:
            page_id: Provider page identifier
            token: Bearer token for the provider API

        Returns:
            ExtractedContent with title, markdown-style text and page URL

        Raises:
            ExtractionFailedError: If the page or any block listing cannot be fetched
        """
        page = await self._request_json("GET", f"pages/{page_id}", token)
        lines = await self._render_children(page_id, token)
        content = "\n".join(lines).strip()

        logger.info(f"Fetched page {page_id} ({len(content)} chars)")
        return ExtractedContent(title=page_title(page), content=content, url=page.get("url"))

    async def list_pages(self, token: str, query: str | None = None) -> list[PageSummary]:
        """
        List the pages a token can read, following search pagination

        Args:
            token: Bearer token for the provider API
            query: Optional title filter passed to the search endpoint

        Raises:
            ExtractionFailedError: If the search cannot be completed
        """
        pages: list[PageSummary] = []
        cursor: str | None = None

        while True:
            body: dict[str, Any] = {
                "filter": {"property": "object", "value": "page"},
                "page_size": 100,
            }
            if query:
                body["query"] = query
            if cursor:
                body["start_cursor"] = cursor
            payload = await self._request_json("POST", "search", token, json=body)

            for page in payload.get("results", []):
                if page.get("object", "page") != "page" or not page.get("id"):
                    continue
                pages.append(
                    PageSummary(
                        id=page["id"],
                        title=page_title(page),
                        url=page.get("url"),
                        last_edited_time=page.get("last_edited_time"),
                    )
                )

            cursor = payload.get("next_cursor")
            if not payload.get("has_more") or not cursor:
                logger.info(f"Listed {len(pages)} pages")
                return pages

    async def close(self) -> None:
        """Close HTTP client"""
        await self.client.aclose()
