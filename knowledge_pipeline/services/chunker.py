"""Content chunking service with structure awareness"""

import logging
import re
import uuid

import tiktoken

from knowledge_pipeline.config import config
from knowledge_pipeline.models.knowledge import Document, DocumentChunk

logger = logging.getLogger(__name__)

# Markdown ATX headings; extractors render provider headings this way
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n[ \t]*\n")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*\s+")
_WHITESPACE_RE = re.compile(r"\s+")
# Code fence delimiter lines; headings and blank lines inside fences are not structure
_FENCE_RE = re.compile(r"^[ \t]*(?:```|~~~).*$", re.MULTILINE)

_CHUNK_ID_NAMESPACE = uuid.UUID("6f1c2a8e-4b7d-5e39-9a0c-3d2f8b1e7c45")


def _fenced_ranges(text: str) -> list[tuple[int, int]]:
    """Spans of fenced code blocks, an unclosed fence runs to the end of the text"""
    ranges: list[tuple[int, int]] = []
    opened: int | None = None
    for match in _FENCE_RE.finditer(text):
        if opened is None:
            opened = match.start()
        else:
            ranges.append((opened, match.end()))
            opened = None
    if opened is not None:
        ranges.append((opened, len(text)))
    return ranges


def _in_ranges(position: int, ranges: list[tuple[int, int]]) -> bool:
    return any(start <= position < end for start, end in ranges)


def reassemble(chunks: list[DocumentChunk]) -> str:
    """Rebuild the source text from an ordered chunk list by dropping overlaps"""
    return "".join(chunk.new_content for chunk in chunks)


class Chunker:
    """Split document text into overlapping, heading-annotated chunks

    Text is cut into blocks at headings and blank lines, then blocks are
    packed greedily up to the character budget. Every chunk after the first
    starts with a fixed-size tail of its predecessor. Chunk content is always
    a verbatim slice of the source, so the chunk list minus overlaps
    reconstructs the text exactly.
    """

    def __init__(
        self, chunk_size_chars: int | None = None, chunk_overlap_chars: int | None = None
    ):
        self.chunk_size_chars = chunk_size_chars or config.chunk_size_chars
        self.chunk_overlap_chars = (
            config.chunk_overlap_chars if chunk_overlap_chars is None else chunk_overlap_chars
        )
        if self.chunk_overlap_chars >= self.chunk_size_chars:
            raise ValueError(
                f"Chunk overlap ({self.chunk_overlap_chars}) must be smaller than "
                f"chunk size ({self.chunk_size_chars})"
            )

        # Token counts are informational; fall back to cl100k_base for non-OpenAI models
        try:
            self.encoder = tiktoken.encoding_for_model(config.embedding_model)
        except KeyError:
            self.encoder = tiktoken.get_encoding("cl100k_base")

    def chunk(self, document: Document, text: str) -> list[DocumentChunk]:
        """
        Chunk the text of a document snapshot

        Args:
            document: Document the chunks will belong to
            text: Extracted text of the document

        Returns:
            list[DocumentChunk]: Ordered chunks, empty if text has no content
        """
        if not text.strip():
            return []

        fenced = _fenced_ranges(text)
        spans = self._pack(text, self._block_boundaries(text, fenced))
        headings = [
            (m.start(), len(m.group(1)), m.group(2).strip())
            for m in _HEADING_RE.finditer(text)
            if not _in_ranges(m.start(), fenced)
        ]

        chunks: list[DocumentChunk] = []
        trail: list[tuple[int, str]] = []
        heading_idx = 0

        for position, (start, end) in enumerate(spans):
            # Heading trail in effect at the first visible character of the new content
            segment = text[start:end]
            anchor = start + (len(segment) - len(segment.lstrip()))
            while heading_idx < len(headings) and headings[heading_idx][0] <= anchor:
                _, level, title = headings[heading_idx]
                while trail and trail[-1][0] >= level:
                    trail.pop()
                trail.append((level, title))
                heading_idx += 1

            overlap = 0
            if position > 0:
                overlap = min(self.chunk_overlap_chars, start - spans[position - 1][0])
            chunk_start = start - overlap
            content = text[chunk_start:end]

            chunks.append(
                DocumentChunk(
                    id=str(
                        uuid.uuid5(
                            _CHUNK_ID_NAMESPACE,
                            f"{document.source_id}:{document.content_hash}:{position}",
                        )
                    ),
                    document_id=document.id,
                    source_id=document.source_id,
                    chunk_position=position,
                    content=content,
                    context_header=" > ".join(title for _, title in trail) or None,
                    char_start=chunk_start,
                    char_end=end,
                    overlap_chars=overlap,
                    token_count=max(1, self.count_tokens(content)),
                )
            )

        logger.debug(f"Chunked {len(text)} chars of document {document.id} into {len(chunks)}")
        return chunks

    def _block_boundaries(self, text: str, fenced: list[tuple[int, int]]) -> list[int]:
        """Offsets where a structural block starts (headings and paragraph breaks)"""
        points = {m.start() for m in _BLANK_RUN_RE.finditer(text)}
        points.update(m.start() for m in _HEADING_RE.finditer(text))
        points = {p for p in points if not _in_ranges(p, fenced)}

        # Keep only boundaries that leave visible content on both sides
        content_end = len(text.rstrip())
        boundaries: list[int] = []
        previous = 0
        for point in sorted(points):
            if point <= previous or point >= content_end:
                continue
            if text[previous:point].strip():
                boundaries.append(point)
                previous = point
        return boundaries

    def _pack(self, text: str, boundaries: list[int]) -> list[tuple[int, int]]:
        """Greedily merge consecutive blocks into spans no longer than the budget"""
        edges = [0, *boundaries, len(text)]
        spans: list[tuple[int, int]] = []
        current: tuple[int, int] | None = None

        for block_start, block_end in zip(edges, edges[1:], strict=False):
            if block_end - block_start > self.chunk_size_chars:
                if current is not None:
                    spans.append(current)
                pieces = self._split_oversized(text, block_start, block_end)
                spans.extend(pieces[:-1])
                # The tail of a split block can still absorb following small blocks
                current = pieces[-1]
            elif current is None:
                current = (block_start, block_end)
            elif block_end - current[0] > self.chunk_size_chars:
                spans.append(current)
                current = (block_start, block_end)
            else:
                current = (current[0], block_end)

        if current is not None:
            spans.append(current)
        return spans

    def _split_oversized(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        """Split a single block that exceeds the budget into adjacent pieces"""
        content_end = start + len(text[start:end].rstrip())
        pieces: list[tuple[int, int]] = []
        pos = start

        while content_end - pos > self.chunk_size_chars:
            cut = self._find_cut(text, pos, pos + self.chunk_size_chars)
            pieces.append((pos, cut))
            pos = cut

        pieces.append((pos, end))
        return pieces

    def _find_cut(self, text: str, start: int, limit: int) -> int:
        """Pick a cut in (start, limit]: sentence end, then whitespace, then hard cut"""
        floor = start + self.chunk_size_chars // 2

        sentence_ends = [m.end() for m in _SENTENCE_END_RE.finditer(text, floor, limit)]
        if sentence_ends:
            return sentence_ends[-1]

        whitespace_ends = [m.end() for m in _WHITESPACE_RE.finditer(text, floor, limit)]
        if whitespace_ends:
            return whitespace_ends[-1]

        return limit

    def count_tokens(self, text: str) -> int:
        """Count tokens in text using tiktoken"""
        return len(self.encoder.encode(text))
