"""Unit tests for the chunking engine"""

import pytest

from knowledge_pipeline.models.knowledge import Document
from knowledge_pipeline.services.chunker import Chunker, reassemble
from knowledge_pipeline.services.fingerprint import fingerprint

BUDGET = 1200
OVERLAP = 150

NUTRITION = "Protein supports muscle repair and should be spread evenly across the meals of a day."
STORAGE = "Cooked meals keep for three days in the fridge when stored in sealed glass containers."


def _document(text: str, source_id: str = "source-1") -> Document:
    return Document(source_id=source_id, content_hash=fingerprint(text), content_length=len(text))


def _guide() -> str:
    nutrition = "\n\n".join(f"{NUTRITION} Tip {i}." for i in range(16))
    storage = "\n\n".join(f"{STORAGE} Rule {i}." for i in range(16))
    return (
        "# Guide\n\nHow to plan a week of meals.\n\n"
        f"## Nutrition\n\n{nutrition}\n\n"
        f"## Storage\n\n{storage}"
    )


@pytest.fixture
def chunker() -> Chunker:
    return Chunker(chunk_size_chars=BUDGET, chunk_overlap_chars=OVERLAP)


def test_empty_and_whitespace_text_yield_no_chunks(chunker):
    assert chunker.chunk(_document(""), "") == []
    assert chunker.chunk(_document("  \n\n "), "  \n\n ") == []


def test_short_document_is_one_chunk_without_overlap(chunker):
    text = "# Title\n\nShort body about hydration."
    chunks = chunker.chunk(_document(text), text)

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.content == text
    assert chunk.chunk_position == 0
    assert chunk.overlap_chars == 0
    assert (chunk.char_start, chunk.char_end) == (0, len(text))
    assert chunk.context_header == "Title"
    assert chunk.token_count > 0


def test_long_document_with_headings(chunker):
    text = _guide()
    assert len(text) > 3000

    chunks = chunker.chunk(_document(text), text)

    assert len(chunks) >= 2
    assert [c.chunk_position for c in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert len(chunk.content) <= BUDGET + OVERLAP
        assert len(chunk.new_content) <= BUDGET
        assert text[chunk.char_start : chunk.char_end] == chunk.content


def test_chunks_reconstruct_source_text(chunker):
    text = _guide()
    chunks = chunker.chunk(_document(text), text)

    assert reassemble(chunks) == text


def test_overlap_repeats_tail_of_previous_chunk(chunker):
    text = _guide()
    chunks = chunker.chunk(_document(text), text)

    assert chunks[0].overlap_chars == 0
    for previous, current in zip(chunks, chunks[1:], strict=False):
        assert current.overlap_chars == OVERLAP
        assert current.content[: current.overlap_chars] == previous.content[-OVERLAP:]
        assert current.char_start == previous.char_end - OVERLAP


def test_context_header_is_heading_trail(chunker):
    text = _guide()
    chunks = chunker.chunk(_document(text), text)

    assert chunks[0].context_header == "Guide"
    assert chunks[-1].context_header == "Guide > Storage"
    assert any(c.context_header == "Guide > Nutrition" for c in chunks)


def test_embedding_text_adds_context_when_header_not_in_content(chunker):
    text = _guide()
    chunks = chunker.chunk(_document(text), text)

    last = chunks[-1]
    assert last.embedding_text == f"[Context: Guide > Storage]\n\n{last.content}"

    short = "# Title\n\nBody."
    only = chunker.chunk(_document(short), short)[0]
    assert only.embedding_text == short


def test_chunking_is_deterministic(chunker):
    text = _guide()
    first = chunker.chunk(_document(text), text)
    second = chunker.chunk(_document(text), text)

    assert [c.id for c in first] == [c.id for c in second]
    assert [c.content for c in first] == [c.content for c in second]


def test_chunk_ids_depend_on_content_hash(chunker):
    text = _guide()
    changed = text + " One more rule."

    ids_before = {c.id for c in chunker.chunk(_document(text), text)}
    ids_after = {c.id for c in chunker.chunk(_document(changed), changed)}

    assert ids_before.isdisjoint(ids_after)


def test_oversized_paragraph_splits_at_sentence_end(chunker):
    text = " ".join(f"Sentence number {i} ends right here." for i in range(200))
    chunks = chunker.chunk(_document(text), text)

    assert len(chunks) > 2
    assert reassemble(chunks) == text
    for chunk in chunks[:-1]:
        assert chunk.new_content.rstrip().endswith(".")
        assert len(chunk.new_content) <= BUDGET


def test_oversized_paragraph_without_sentences_splits_at_whitespace(chunker):
    text = " ".join(["hydrate"] * 600)
    chunks = chunker.chunk(_document(text), text)

    assert reassemble(chunks) == text
    for chunk in chunks[1:]:
        assert chunk.new_content.startswith("hydrate")


def test_unbroken_text_is_hard_cut(chunker):
    text = "x" * 3000
    chunks = chunker.chunk(_document(text), text)

    assert [len(c.new_content) for c in chunks] == [1200, 1200, 600]
    assert [c.overlap_chars for c in chunks] == [0, OVERLAP, OVERLAP]
    assert reassemble(chunks) == text


def test_overlap_must_be_smaller_than_chunk_size():
    with pytest.raises(ValueError, match="overlap"):
        Chunker(chunk_size_chars=300, chunk_overlap_chars=300)


def test_fenced_code_comments_are_not_headings():
    fence = "```bash\n# install deps first\npip install -r requirements.txt\n\nmake build\n```"
    text = f"# Setup\n\n{fence}\n\n{NUTRITION}\n\n{STORAGE}"
    chunker = Chunker(chunk_size_chars=200, chunk_overlap_chars=50)

    chunks = chunker.chunk(_document(text), text)

    assert len(chunks) >= 2
    assert [c.context_header for c in chunks] == ["Setup"] * len(chunks)
    assert fence in chunks[0].content
    fence_start = text.index(fence)
    fence_end = fence_start + len(fence)
    assert not any(fence_start < c.char_start < fence_end for c in chunks)


def test_unclosed_fence_runs_to_end_of_text(chunker):
    text = "# Setup\n\nRun this:\n\n```\n# not a heading\n\nstill code"
    chunks = chunker.chunk(_document(text), text)

    assert len(chunks) == 1
    assert chunks[0].context_header == "Setup"
