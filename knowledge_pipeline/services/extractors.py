"""Content extraction dispatch by source provider"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import ExtractionFailedError, UnsupportedProviderError
from knowledge_pipeline.models.extraction import ExtractedContent, PageSummary
from knowledge_pipeline.models.knowledge import SourceProvider
from knowledge_pipeline.services.html_parser import HtmlParser
from knowledge_pipeline.services.page_fetcher import PageFetcher

logger = logging.getLogger(__name__)

ExtractFn = Callable[[str, str | None], Awaitable[ExtractedContent]]

TEXT_SUFFIXES = {".md", ".markdown", ".txt"}
HTML_SUFFIXES = {".html", ".htm"}


class ContentExtractor:
    """Turn (provider, external id, connection ref) into plain text with a title"""

    def __init__(
        self,
        page_fetcher: PageFetcher | None = None,
        upload_dir: str | Path | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> None:
        """
        Args:
            page_fetcher: Client for the page provider (created lazily if None)
            upload_dir: Root directory of uploaded files (default from config)
            credentials: Bearer tokens keyed by connection_ref
        """
        self._page_fetcher = page_fetcher
        self.upload_dir = Path(upload_dir or config.upload_dir)
        self.credentials = dict(credentials or {})
        self.html_parser = HtmlParser()
        self._extractors: dict[SourceProvider, ExtractFn] = {
            SourceProvider.PAGE: self._extract_page,
            SourceProvider.FILE_UPLOAD: self._extract_upload,
        }

    @property
    def page_fetcher(self) -> PageFetcher:
        if self._page_fetcher is None:
            self._page_fetcher = PageFetcher()
        return self._page_fetcher

    async def extract(
        self, provider: SourceProvider | str, external_id: str, connection_ref: str | None = None
    ) -> ExtractedContent:
        """
        Extract the current content of one external document

        Raises:
            UnsupportedProviderError: No extractor for the provider
            ExtractionFailedError: The document cannot be fetched or read
        """
        try:
            extractor = self._extractors[SourceProvider(provider)]
        except (KeyError, ValueError) as e:
            raise UnsupportedProviderError(str(provider)) from e

        return await extractor(external_id, connection_ref)

    def _resolve_token(self, connection_ref: str | None) -> str:
        if connection_ref and connection_ref in self.credentials:
            return self.credentials[connection_ref]
        if config.page_provider_token:
            return config.page_provider_token
        raise ExtractionFailedError(
            f"No page provider credentials for connection {connection_ref or '<none>'}"
        )

    async def _extract_page(
        self, external_id: str, connection_ref: str | None
    ) -> ExtractedContent:
        token = self._resolve_token(connection_ref)
        return await self.page_fetcher.fetch_page(external_id, token)

    async def list_pages(
        self, connection_ref: str | None = None, query: str | None = None
    ) -> list[PageSummary]:
        """Pages readable through a page provider connection, for choosing external ids"""
        token = self._resolve_token(connection_ref)
        return await self.page_fetcher.list_pages(token, query)

    async def _extract_upload(
        self, external_id: str, connection_ref: str | None
    ) -> ExtractedContent:
        path = self._resolve_upload_path(external_id)
        suffix = path.suffix.lower()
        if suffix not in TEXT_SUFFIXES | HTML_SUFFIXES:
            raise ExtractionFailedError(f"Unsupported upload type: {path.name}")

        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise ExtractionFailedError(f"Uploaded file not found: {external_id}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ExtractionFailedError(f"Cannot read uploaded file {external_id}: {e}") from e

        if suffix in HTML_SUFFIXES:
            return self.html_parser.parse(raw, path.stem)

        logger.debug(f"Read upload {external_id} ({len(raw)} chars)")
        return ExtractedContent(title=path.stem, content=raw.strip())

    def _resolve_upload_path(self, external_id: str) -> Path:
        """Path of an upload, refusing anything outside the upload directory"""
        root = self.upload_dir.resolve()
        path = (root / external_id).resolve()
        if not path.is_relative_to(root) or path == root:
            raise ExtractionFailedError(f"Upload path escapes upload directory: {external_id}")
        return path

    async def close(self) -> None:
        if self._page_fetcher is not None:
            await self._page_fetcher.close()
