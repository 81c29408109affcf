"""Pytest configuration and fakes for the Calibre tools."""

import logging
import sys
from pathlib import Path

import pytest

# Flat layout: make the top-level modules importable without installing
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from calibre_updatr import (  # noqa: E402
    BookSnapshot, Catalog, Embedder, FetchResult, MemoryStateStore, MetadataFetcher,
)
from calibre_updatr_config import PolicyConfig, ScoringConfig  # noqa: E402
from calibre_updatr_errors import StepError  # noqa: E402


def make_book(book_id: int = 1, **overrides) -> BookSnapshot:
    """A complete English EPUB by default; override fields to punch holes."""
    data = dict(
        title=f"Book {book_id}",
        authors=["Ann Author"],
        publisher="Pub House",
        pubdate="2001-02-03T00:00:00+00:00",
        languages=["eng"],
        isbn="9780000000001",
        identifiers={"isbn": "9780000000001"},
        tags=["fiction"],
        description="A description.",
        has_cover=True,
        series="Saga",
        series_index=1.0,
        formats={"epub": f"/lib/{book_id}/book.epub"},
    )
    data.update(overrides)
    return BookSnapshot(book_id=book_id, **data)


def sparse_book(book_id: int = 1, **overrides) -> BookSnapshot:
    """Title/authors/language/format only: scores low enough to need a fetch."""
    data = dict(title=f"Sparse {book_id}", authors=["Ann Author"], languages=["eng"],
                formats={"epub": f"/lib/{book_id}/book.epub"})
    data.update(overrides)
    return BookSnapshot(book_id=book_id, **data)


class FakeCatalog(Catalog):
    def __init__(self, books=None, fail_ids=()):
        self.books = {b.book_id: b for b in (books or [])}
        self.fail_ids = set(fail_ids)
        self.updates = []

    def list_books(self, formats):
        return [b for b in self.books.values() if any(f in b.formats for f in formats)]

    def refresh(self, book_id):
        return None

    def update_metadata(self, book, changes, cover_path=None):
        if book.book_id in self.fail_ids:
            raise StepError("catalog", "set_metadata failed rc=1")
        self.updates.append((book.book_id, dict(changes), cover_path))


class FakeFetcher(MetadataFetcher):
    def __init__(self, results=None, fail_ids=(), crash_ids=()):
        self.results = dict(results or {})
        self.fail_ids = set(fail_ids)
        self.crash_ids = set(crash_ids)
        self.calls = []

    def fetch(self, book):
        self.calls.append(book.book_id)
        if book.book_id in self.fail_ids:
            raise StepError("fetch", "fetch-ebook-metadata timed out after 180s")
        if book.book_id in self.crash_ids:
            raise RuntimeError("boom")
        snap = self.results.get(book.book_id) or BookSnapshot(
            book_id=book.book_id, publisher="Fetched Pub", description="Fetched description.",
            tags=["fetched"], isbn="9781111111111", pubdate="1999")
        return FetchResult(snapshot=snap, cover_path=None, source="fake")


class FakeEmbedder(Embedder):
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.calls = []

    def embed(self, book, fmt, path):
        if book.book_id in self.fail_ids:
            raise StepError("embed", "embed_metadata failed rc=1")
        self.calls.append((book.book_id, fmt, path))


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def state():
    return MemoryStateStore()


@pytest.fixture
def policy():
    return PolicyConfig(delay_between_fetches_seconds=0.5)


@pytest.fixture
def scoring():
    return ScoringConfig()


@pytest.fixture
def book_factory():
    return make_book


@pytest.fixture(autouse=True)
def _quiet_updatr_logger():
    """Leave handlers installed by setup_logging() out of other tests."""
    yield
    for name in ("calibre_updatr", "calibre_updatr.stats"):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
            h.close()
