"""Tests for the source processor state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lodestone.config import ChunkingCfg
from lodestone.db.models import SourceItem, SourceStatus, SourceType, from_timestamp, utcnow
from lodestone.errors import ExtractionError
from lodestone.ingest.base import ExtractedItem, Extractor
from lodestone.ingest.web import FetchedPage, WebsiteExtractor
from lodestone.processing.processor import (
    ALREADY_PROCESSING,
    LINK_ALREADY_PROCESSING,
    NOT_RECRAWLABLE,
    SourceProcessor,
)
from lodestone.rag.vector_index import ChunkRecord, VectorIndex


class StubExtractor(Extractor):
    """Returns canned items (or raises) and remembers what it was given."""

    def __init__(self, items=None, exc: Exception | None = None) -> None:
        self.items = items or []
        self.exc = exc
        self.seen = []

    def extract(self, source, items):
        self.seen.append((source.config_dict, items))
        if self.exc is not None:
            raise self.exc
        return self.items


@pytest.fixture
def processor(database, embedder, test_config):
    return SourceProcessor(database, embedder, test_config)


def _with_extractor(database, embedder, test_config, kind, extractor):
    return SourceProcessor(database, embedder, test_config, extractors={kind: extractor})


def _chunks(repo, source_id):
    return repo.list_chunks_by_source(source_id)


# ------------------------------------------------------------------
# Successful runs
# ------------------------------------------------------------------


def test_text_source_completes(processor, repo, add_source):
    source = add_source(name="Intro", config={"content": "alpha content for the knowledge base"})
    result = processor.process_source(source.id)

    assert result.success is True
    assert result.chunks_created == 1
    assert result.total_tokens == 9
    stored = repo.get_source(source.id)
    assert stored.status == SourceStatus.COMPLETED
    assert (stored.chunks_count, stored.tokens_count) == (1, 9)
    assert stored.error_message is None

    [chunk] = _chunks(repo, source.id)
    assert chunk.project_id == "proj-1"
    assert chunk.embedding_model == "test/embedding-3d"
    assert chunk.metadata_dict == {
        "source_name": "Intro",
        "source_type": "text",
        "chunk_index": 0,
        "start_char": 0,
        "end_char": 36,
    }


def test_long_text_is_chunked_in_order(database, embedder, test_config, repo, add_source):
    test_config.chunking = ChunkingCfg(chunk_size=60, overlap=10)
    processor = SourceProcessor(database, embedder, test_config)
    text = "\n\n".join(f"Paragraph number {i} talks about alpha." for i in range(6))
    source = add_source(config={"content": text})

    result = processor.process_source(source.id)
    chunks = _chunks(repo, source.id)
    assert result.chunks_created == len(chunks) > 1
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert sum(c.tokens_count for c in chunks) == result.total_tokens


def test_qa_source_is_single_unsplit_chunk(database, embedder, test_config, repo, add_source):
    test_config.chunking = ChunkingCfg(chunk_size=20, overlap=5)
    processor = SourceProcessor(database, embedder, test_config)
    source = add_source(
        SourceType.QA, {"question": "What is alpha?", "answer": "Alpha is the first letter of the alphabet."}
    )
    result = processor.process_source(source.id)

    assert result.chunks_created == 1
    [chunk] = _chunks(repo, source.id)
    assert chunk.content.startswith("Question: What is alpha?")
    assert chunk.metadata_dict["question"] == "What is alpha?"


def test_options_override_config_for_one_run(database, embedder, test_config, add_source, repo):
    extractor = StubExtractor([ExtractedItem("alpha body")])
    processor = _with_extractor(database, embedder, test_config, SourceType.WEBSITE, extractor)
    source = add_source(SourceType.WEBSITE, {"url": "https://e.com", "crawl_type": "crawl", "max_pages": 10})

    processor.process_source(source.id, {"max_pages": 3})
    assert extractor.seen[0][0]["max_pages"] == 3
    assert repo.get_source(source.id).config_dict["max_pages"] == 10


def test_item_metadata_flows_into_chunks(database, embedder, test_config, repo, add_source):
    extractor = StubExtractor([ExtractedItem("alpha page", metadata={"source_url": "https://e.com"})])
    processor = _with_extractor(database, embedder, test_config, SourceType.WEBSITE, extractor)
    source = add_source(SourceType.WEBSITE, {"url": "https://e.com"})
    processor.process_source(source.id)

    [chunk] = _chunks(repo, source.id)
    assert chunk.metadata_dict["source_url"] == "https://e.com"
    assert chunk.metadata_dict["source_type"] == "website"


def test_per_item_failures_recorded(database, embedder, test_config, repo, add_source):
    source = add_source(SourceType.WEBSITE, {"crawl_type": "sitemap"})
    repo.add_item(SourceItem(id="ok", source_id=source.id, kind="link", address="https://e.com/a"))
    repo.add_item(SourceItem(id="bad", source_id=source.id, kind="link", address="https://e.com/b"))
    extractor = StubExtractor(
        [
            ExtractedItem("alpha page", item_id="ok", title="A"),
            ExtractedItem("", item_id="bad", error="Failed to fetch URL: 404"),
        ]
    )
    processor = _with_extractor(database, embedder, test_config, SourceType.WEBSITE, extractor)

    result = processor.process_source(source.id)
    assert result.success is True
    items = {i.id: i for i in repo.list_items(source.id)}
    assert items["ok"].status == "completed"
    assert items["ok"].content_size == len("alpha page")
    assert items["bad"].status == "failed"
    assert "404" in items["bad"].error_message
    assert len(extractor.seen[0][1]) == 2


def test_auto_retrain_completion_stamps_retrained_at(database, embedder, test_config, repo, add_source):
    extractor = StubExtractor([ExtractedItem("alpha page")])
    processor = _with_extractor(database, embedder, test_config, SourceType.WEBSITE, extractor)
    source = add_source(SourceType.WEBSITE, {"url": "https://e.com"}, auto_retrain=True)

    before = utcnow().replace(microsecond=0)
    processor.process_source(source.id)
    assert from_timestamp(repo.get_source(source.id).last_retrained_at) >= before


def test_plain_completion_leaves_retrained_at_unset(processor, repo, add_source):
    source = add_source(auto_retrain=True)
    processor.process_source(source.id)
    assert repo.get_source(source.id).last_retrained_at is None


# ------------------------------------------------------------------
# Refusals
# ------------------------------------------------------------------


def test_missing_source(processor):
    result = processor.process_source("nope")
    assert result.success is False
    assert result.error == "Source not found"
    assert result.skipped is False


def test_processing_source_is_conflict(processor, repo, add_source):
    source = add_source()
    repo.claim_source(source.id)
    result = processor.process_source(source.id)
    assert (result.success, result.skipped, result.conflict) == (False, True, True)
    assert result.error == ALREADY_PROCESSING
    assert repo.get_source(source.id).status == SourceStatus.PROCESSING


@pytest.mark.parametrize("status", [SourceStatus.COMPLETED, SourceStatus.FAILED])
def test_finished_source_needs_retrain(processor, add_source, status):
    source = add_source(status=status)
    result = processor.process_source(source.id)
    assert result.skipped is True
    assert result.conflict is False
    assert result.error == f"Source is {status.value}; retrain it to process again"


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


def test_extraction_failure_marks_failed(processor, repo, add_source):
    source = add_source(config={"content": "   "})
    result = processor.process_source(source.id)
    assert result.success is False
    assert result.error == "No content to process"
    stored = repo.get_source(source.id)
    assert stored.status == SourceStatus.FAILED
    assert stored.error_message == "No content to process"


def test_embedding_failure_writes_no_chunks(processor, repo, add_source, mock_embedding):
    mock_embedding.side_effect = RuntimeError("provider unavailable")
    source = add_source()
    result = processor.process_source(source.id)
    assert result.success is False
    assert "provider unavailable" in result.error
    assert _chunks(repo, source.id) == []
    assert repo.get_source(source.id).status == SourceStatus.FAILED


def test_unexpected_exception_is_contained(database, embedder, test_config, repo, add_source):
    extractor = StubExtractor(exc=KeyError("boom"))
    processor = _with_extractor(database, embedder, test_config, SourceType.TEXT, extractor)
    source = add_source()
    result = processor.process_source(source.id)
    assert result.success is False
    assert "boom" in result.error
    assert repo.get_source(source.id).status == SourceStatus.FAILED


def test_unsupported_type_fails(database, embedder, test_config, repo, add_source):
    processor = SourceProcessor(database, embedder, test_config, extractors={})
    source = add_source()
    result = processor.process_source(source.id)
    assert result.error == "Unsupported source type: text"


def test_all_items_failing_fails_source(database, embedder, test_config, repo, add_source):
    extractor = StubExtractor([ExtractedItem("", error="Notion API error 404"), ExtractedItem("   ")])
    processor = _with_extractor(database, embedder, test_config, SourceType.WORKSPACE, extractor)
    source = add_source(SourceType.WORKSPACE, {})
    result = processor.process_source(source.id)
    assert result.error == "No chunks created from source content (Notion API error 404)"


def test_failed_run_error_cleared_on_next_claim(processor, repo, add_source):
    source = add_source(config={"content": ""})
    processor.process_source(source.id)
    repo.conn.execute(
        "UPDATE sources SET status = 'pending', config = ? WHERE id = ?",
        ('{"content": "alpha again"}', source.id),
    )
    repo.conn.commit()
    assert processor.process_source(source.id).success is True
    assert repo.get_source(source.id).error_message is None


# ------------------------------------------------------------------
# Retrain + recovery
# ------------------------------------------------------------------


def test_retrain_replaces_chunks(processor, repo, add_source):
    source = add_source()
    processor.process_source(source.id)
    old_ids = {c.id for c in _chunks(repo, source.id)}

    result = processor.retrain_source(source.id)
    assert result.success is True
    new_ids = {c.id for c in _chunks(repo, source.id)}
    assert new_ids and new_ids.isdisjoint(old_ids)
    assert repo.get_source(source.id).status == SourceStatus.COMPLETED


def test_failed_retrain_leaves_no_old_chunks(processor, repo, add_source, mock_embedding):
    source = add_source()
    processor.process_source(source.id)
    mock_embedding.side_effect = RuntimeError("down")

    result = processor.retrain_source(source.id)
    assert result.success is False
    assert _chunks(repo, source.id) == []
    assert repo.get_source(source.id).chunks_count == 0


def test_retrain_refused_while_processing(processor, repo, tmp_db, add_source):
    source = add_source()
    repo.claim_source(source.id)
    VectorIndex(tmp_db, 3, "test/embedding-3d").replace_source_chunks(
        source.id, [ChunkRecord("alpha", [1.0, 0.0, 0.1])]
    )
    result = processor.retrain_source(source.id)
    assert result.conflict is True
    assert len(_chunks(repo, source.id)) == 1


def test_retrain_missing_source(processor):
    assert processor.retrain_source("ghost").error == "Source not found"


def test_recover_stalled(processor, repo, add_source):
    source = add_source()
    repo.claim_source(source.id)
    assert processor.recover_stalled() == []
    assert processor.recover_stalled(utcnow() + timedelta(seconds=5)) == [source.id]
    assert repo.get_source(source.id).status == SourceStatus.PENDING


def test_expected_failures_logged_without_traceback(processor, add_source, caplog):
    source = add_source(config={"content": ""})
    with caplog.at_level("WARNING", logger="lodestone.processing.processor"):
        processor.process_source(source.id)
    [record] = [r for r in caplog.records if r.getMessage() == "Source processing failed"]
    assert record.levelname == "WARNING"
    assert record.exc_info is None


# ------------------------------------------------------------------
# Single-link recrawl
# ------------------------------------------------------------------


class PageFetcher:
    """Serves ``pages[url]`` as page text; anything else is a 404."""

    def __init__(self, pages: dict[str, str]) -> None:
        self.pages = pages

    def fetch_page(self, url):
        if url not in self.pages:
            raise ExtractionError(f"Failed to fetch URL '{url}': 404")
        return FetchedPage(url=url, title=url.rsplit("/", 1)[-1].upper(), text=self.pages[url])


@pytest.fixture
def pages():
    return {"https://e.com/a": "alpha first page", "https://e.com/b": "beta second page"}


@pytest.fixture
def site_processor(database, embedder, test_config, pages):
    return _with_extractor(
        database, embedder, test_config, SourceType.WEBSITE, WebsiteExtractor(fetcher=PageFetcher(pages))
    )


@pytest.fixture
def site(repo, add_source, site_processor):
    source = add_source(SourceType.WEBSITE, {"url": "https://e.com", "crawl_type": "sitemap"}, name="Site")
    for key in ("a", "b"):
        repo.add_item(SourceItem(id=key, source_id=source.id, kind="link", address=f"https://e.com/{key}"))
    assert site_processor.process_source(source.id).chunks_created == 2
    return source


def test_recrawl_link_swaps_only_its_chunks(site_processor, repo, pages, site):
    pages["https://e.com/a"] = "alpha first page, revised with more words"
    untouched = [c for c in _chunks(repo, site.id) if c.metadata_dict["link_id"] == "b"]

    result = site_processor.recrawl_link(site.id, "a")

    assert result.success is True
    assert result.chunks_created == 1
    chunks = {c.metadata_dict["link_id"]: c for c in _chunks(repo, site.id)}
    assert chunks["b"].id == untouched[0].id
    assert "revised" in chunks["a"].content
    assert chunks["a"].chunk_index == 2
    assert chunks["a"].metadata_dict["source_url"] == "https://e.com/a"
    assert chunks["a"].metadata_dict["source_type"] == "website"

    stored = repo.get_source(site.id)
    assert stored.status == SourceStatus.COMPLETED
    assert stored.chunks_count == 2
    assert stored.tokens_count == sum(c.tokens_count for c in chunks.values())
    link = repo.get_item("a")
    assert link.status == "completed"
    assert link.title == "A"


def test_recrawl_link_fetch_failure_marks_link_only(site_processor, repo, pages, site):
    before = [c.id for c in _chunks(repo, site.id)]
    del pages["https://e.com/a"]

    result = site_processor.recrawl_link(site.id, "a")

    assert result.success is False
    assert "404" in result.error
    assert repo.get_item("a").status == "failed"
    assert [c.id for c in _chunks(repo, site.id)] == before
    assert repo.get_source(site.id).status == SourceStatus.COMPLETED


def test_recrawl_link_embedding_failure_keeps_chunks(site_processor, repo, site, mock_embedding):
    before = [c.id for c in _chunks(repo, site.id)]
    mock_embedding.side_effect = RuntimeError("provider down")

    result = site_processor.recrawl_link(site.id, "a")

    assert result.success is False
    link = repo.get_item("a")
    assert link.status == "failed"
    assert link.error_message
    assert [c.id for c in _chunks(repo, site.id)] == before


def test_recrawl_link_lookup_errors(site_processor, repo, add_source, site):
    other = add_source(SourceType.WEBSITE, {"crawl_type": "sitemap"})
    assert site_processor.recrawl_link("ghost", "a").error == "Source not found"
    assert site_processor.recrawl_link(site.id, "ghost").error == "Link not found"
    assert site_processor.recrawl_link(other.id, "a").error == "Link not found"


def test_recrawl_link_conflicts(site_processor, repo, site):
    assert repo.mark_item_processing("a")
    result = site_processor.recrawl_link(site.id, "a")
    assert (result.conflict, result.error) == (True, LINK_ALREADY_PROCESSING)

    repo.reset_source(site.id)
    repo.claim_source(site.id)
    result = site_processor.recrawl_link(site.id, "b")
    assert (result.conflict, result.error) == (True, ALREADY_PROCESSING)
    assert repo.get_item("b").status == "completed"


def test_recrawl_link_needs_website_extractor(processor, repo, add_source):
    source = add_source()
    repo.add_item(SourceItem(id="x", source_id=source.id, kind="link", address="https://e.com/x"))
    result = processor.recrawl_link(source.id, "x")
    assert result.success is False
    assert result.error == NOT_RECRAWLABLE
    assert repo.get_item("x").status == "pending"
