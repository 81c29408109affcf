#!/usr/bin/env python3
"""
Calibre Updatr
==============
Idempotent bulk metadata updater + format embedder for Calibre libraries.

For each book that has one of the target formats:
  1. Language gate: only allowed languages (or missing language, if enabled)
  2. Idempotency gate: books already processed successfully are skipped
     (or re-processed when their tracked metadata changed, if enabled)
  3. Completeness score: "good enough" books skip the online fetch
  4. fetch-ebook-metadata (or Open Library) fills the gaps
  5. calibredb set_metadata writes the merged fields into the catalog
  6. calibredb embed_metadata writes them into the book files
  7. The outcome is recorded in the state file, and a failure never
     stops the run

A separate `dups` mode finds duplicate files under a folder by content hash.

Usage:
  calibre-updatr --library /path/to/Calibre [--dry-run] [options]
  calibre-updatr dups /path/to/Calibre [--ext epub --ext pdf] [--threads 8]
  calibre-updatr state --library /path/to/Calibre [--failed] [--forget ID ...]

  Run with --help for full options.
"""

import hashlib
import json
import logging
import os
import sys
import tempfile
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from calibre_updatr_config import (
    PolicyConfig, ScoringConfig, UpdaterConfig, build_dups_parser, build_state_parser,
    build_update_parser, default_config_yaml, load_config_for,
)
from calibre_updatr_errors import ConfigError, StateFileError, StepError, UpdaterError

__version__ = '1.0.0'

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'

# Calibre stores "no date" as this sentinel
CALIBRE_UNDEFINED_DATE_PREFIX = '0101-01-01'

TRACKED_FIELDS = (
    'title', 'authors', 'series', 'series_index', 'publisher', 'pubdate',
    'languages', 'isbn', 'identifiers', 'tags', 'description', 'has_cover',
)
MERGEABLE_FIELDS = (
    'title', 'authors', 'series', 'publisher', 'pubdate', 'languages',
    'isbn', 'identifiers', 'tags', 'description',
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# DATA MODEL
# =============================================================================

def _clean_str(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def _clean_list(value: Any, split_on: Optional[str] = None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        s = str(value).strip()
        if not s:
            return []
        items = s.split(split_on) if split_on else [s]
    out = []
    for item in items:
        s = _clean_str(item)
        if s and s not in out:
            out.append(s)
    return out


def normalize_languages(value: Any) -> List[str]:
    return [lang.lower() for lang in _clean_list(value, ',')]


def normalize_identifiers(value: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if isinstance(value, dict):
        for k, v in value.items():
            key, val = _clean_str(k).lower(), _clean_str(v)
            if key and val:
                out[key] = val
    return out


def normalize_formats(value: Any) -> Dict[str, str]:
    """Map lower-case format -> file path. Calibre gives a list of paths; older
    versions or fakes may give names like "EPUB, PDF"."""
    if value is None:
        return {}
    if isinstance(value, str):
        value = value.replace(';', ',').split(',')
    out: Dict[str, str] = {}
    for item in value:
        s = _clean_str(item)
        if not s:
            continue
        ext = os.path.splitext(s)[1]
        if ext:
            out.setdefault(ext.lstrip('.').lower(), s)
        else:
            out.setdefault(s.lstrip('.').lower(), '')
    return out


def normalize_pubdate(value: Any) -> str:
    s = _clean_str(value)
    return '' if s.startswith(CALIBRE_UNDEFINED_DATE_PREFIX) else s


@dataclass
class BookSnapshot:
    book_id: int
    title: str = ''
    authors: List[str] = field(default_factory=list)
    series: str = ''
    series_index: Optional[float] = None
    publisher: str = ''
    pubdate: str = ''
    languages: List[str] = field(default_factory=list)
    isbn: str = ''
    identifiers: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    description: str = ''
    has_cover: bool = False
    formats: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_calibre(cls, record: Dict[str, Any]) -> 'BookSnapshot':
        """Build a snapshot from one `calibredb list --for-machine` entry."""
        try:
            book_id = int(record['id'])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"catalog record without a usable id: {record!r}") from e
        authors = record.get('authors')
        if isinstance(authors, str):
            authors = authors.split(' & ')
        series_index = record.get('series_index')
        try:
            series_index = float(series_index) if series_index not in (None, '') else None
        except (TypeError, ValueError):
            series_index = None
        known = {'id', 'title', 'authors', 'series', 'series_index', 'publisher', 'pubdate',
                 'languages', 'isbn', 'identifiers', 'tags', 'comments', 'cover', 'formats'}
        return cls(
            book_id=book_id,
            title=_clean_str(record.get('title')),
            authors=_clean_list(authors),
            series=_clean_str(record.get('series')),
            series_index=series_index,
            publisher=_clean_str(record.get('publisher')),
            pubdate=normalize_pubdate(record.get('pubdate')),
            languages=normalize_languages(record.get('languages')),
            isbn=_clean_str(record.get('isbn')),
            identifiers=normalize_identifiers(record.get('identifiers')),
            tags=_clean_list(record.get('tags'), ','),
            description=_clean_str(record.get('comments')),
            has_cover=bool(record.get('cover')),
            formats=normalize_formats(record.get('formats')),
            extra={k: v for k, v in record.items() if k not in known},
        )

    def tracked(self) -> Dict[str, Any]:
        """The fields that define "this book's metadata" for change detection."""
        return {
            'title': self.title,
            'authors': list(self.authors),
            'series': self.series,
            'series_index': self.series_index if self.series else None,
            'publisher': self.publisher,
            'pubdate': self.pubdate,
            'languages': list(self.languages),
            'isbn': self.isbn,
            'identifiers': dict(self.identifiers),
            'tags': list(self.tags),
            'description': self.description,
            'has_cover': self.has_cover,
        }

    def fingerprint(self) -> str:
        return fingerprint_snapshot(self)

    def copy(self) -> 'BookSnapshot':
        return replace(self, authors=list(self.authors), languages=list(self.languages),
                       identifiers=dict(self.identifiers), tags=list(self.tags),
                       formats=dict(self.formats), extra=dict(self.extra))

    @property
    def label(self) -> str:
        return f"id={self.book_id} title={self.title!r}"


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(',', ':'))


def fingerprint_snapshot(snapshot: BookSnapshot) -> str:
    return hashlib.sha256(stable_json_dumps(snapshot.tracked()).encode('utf-8')).hexdigest()


@dataclass
class FetchResult:
    """Best-effort metadata from a fetcher. Empty fields mean "unknown"."""
    snapshot: BookSnapshot
    cover_path: Optional[str] = None
    source: str = 'unknown'


# =============================================================================
# SCORING
# =============================================================================

@dataclass
class ScoreResult:
    score: int
    missing: List[str]
    required_missing: List[str] = field(default_factory=list)

    def good_enough(self, min_score: int) -> bool:
        return self.score >= min_score and not self.required_missing


def score_snapshot(snapshot: BookSnapshot, scoring: ScoringConfig) -> ScoreResult:
    """Weighted metadata completeness in [0, 100].

    Each present field earns its weight, and the sum is normalized by the total
    configured weight, so custom weights need not add up to 100. Weights are
    never negative, so filling a field can only raise the score.
    """
    checks = (
        ('title', bool(snapshot.title.strip()), 'missing title'),
        ('authors', any(a.strip() for a in snapshot.authors), 'missing authors'),
        ('identifiers', bool(snapshot.isbn.strip()) or bool(snapshot.identifiers),
         'missing identifiers/isbn'),
        ('description', bool(snapshot.description.strip()), 'missing description/comments'),
        ('tags', any(t.strip() for t in snapshot.tags), 'missing tags'),
        ('publisher', bool(snapshot.publisher.strip()), 'missing publisher'),
        ('pubdate', bool(snapshot.pubdate.strip()), 'missing pubdate'),
        ('cover', snapshot.has_cover, 'missing cover'),
        ('language', any(l.strip() for l in snapshot.languages), 'missing language'),
        ('series', bool(snapshot.series.strip()), 'missing series'),
    )
    earned = 0
    missing = []
    for name, present, reason in checks:
        if present:
            earned += scoring.weight(name)
        else:
            missing.append(reason)
    score = round(100 * earned / scoring.total_weight)

    required_missing = []
    if scoring.require_title and not snapshot.title.strip():
        required_missing.append('title')
    if scoring.require_authors and not any(a.strip() for a in snapshot.authors):
        required_missing.append('authors')
    return ScoreResult(score=max(0, min(100, score)), missing=missing, required_missing=required_missing)


# =============================================================================
# POLICY HELPERS
# =============================================================================

def language_allowed(languages: Iterable[str], policy: PolicyConfig) -> bool:
    langs = [l.replace('_', '-').lower() for l in languages if l and l.strip()]
    if not langs:
        return policy.include_missing_language
    allowed = set(policy.allowed_languages)
    allowed_primary = {code.split('-', 1)[0] for code in allowed}
    for lang in langs:
        if lang in allowed or lang.split('-', 1)[0] in allowed:
            return True
        # Some installs store the English name instead of a code
        if lang == 'english' and allowed_primary & {'en', 'eng'}:
            return True
    return False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def merge_fetched(current: BookSnapshot, fetched: BookSnapshot, rule: str = 'fill_gaps'
                  ) -> Tuple[BookSnapshot, Dict[str, Any]]:
    """Combine fetched metadata into the current snapshot.

    fill_gaps: non-empty fetched values replace empty current values only.
    override:  non-empty fetched values replace current values.
    Identifiers merge per key. Returns the merged snapshot and the changed fields.
    """
    merged = current.copy()
    changes: Dict[str, Any] = {}
    for name in MERGEABLE_FIELDS:
        incoming = getattr(fetched, name)
        if _is_empty(incoming):
            continue
        existing = getattr(merged, name)
        if name == 'identifiers':
            combined = dict(existing)
            for key, val in incoming.items():
                if rule == 'override' or key not in combined:
                    combined[key] = val
            if combined != existing:
                merged.identifiers = combined
                changes[name] = combined
            continue
        if rule == 'fill_gaps' and not _is_empty(existing):
            continue
        if incoming != existing:
            setattr(merged, name, list(incoming) if isinstance(incoming, list) else incoming)
            changes[name] = getattr(merged, name)
            if name == 'series' and fetched.series_index is not None:
                merged.series_index = fetched.series_index
                changes['series_index'] = fetched.series_index
    return merged, changes


# =============================================================================
# PROCESSING STATE
# =============================================================================

@dataclass
class ProcessingRecord:
    book_id: int
    fingerprint: str
    status: str
    last_processed_at: str
    reason: str = ''
    last_ok_at: Optional[str] = None
    fail_count: int = 0
    score: Optional[int] = None
    action: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('book_id')
        return data

    @classmethod
    def from_dict(cls, book_id: int, data: Dict[str, Any]) -> 'ProcessingRecord':
        if not isinstance(data, dict):
            raise ValueError(f"record for book {book_id} is not an object")
        status = data.get('status')
        if status not in (STATUS_SUCCESS, STATUS_FAILED):
            raise ValueError(f"record for book {book_id} has unknown status {status!r}")
        return cls(
            book_id=book_id,
            fingerprint=str(data.get('fingerprint') or ''),
            status=status,
            last_processed_at=str(data.get('last_processed_at') or ''),
            reason=str(data.get('reason') or ''),
            last_ok_at=data.get('last_ok_at'),
            fail_count=int(data.get('fail_count') or 0),
            score=data.get('score'),
            action=data.get('action'),
        )


class StateStore:
    """book_id -> ProcessingRecord, persisted as one JSON file.

    Writes only touch memory until flush(), which replaces the file atomically
    (temp file in the same directory + os.replace).
    """
    VERSION = 1

    def __init__(self, path: Optional[str] = None, records: Optional[Dict[int, ProcessingRecord]] = None):
        self.path = path
        self._records: Dict[int, ProcessingRecord] = dict(records or {})
        self.updated_at: Optional[str] = None
        self.dirty = False

    @classmethod
    def load(cls, path: str) -> 'StateStore':
        if not os.path.exists(path):
            return cls(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StateFileError(f"Failed to read state file {path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get('books', {}), dict):
            raise StateFileError(f"Failed to parse state file {path}: unexpected structure")
        records = {}
        try:
            for key, value in data.get('books', {}).items():
                book_id = int(key)
                records[book_id] = ProcessingRecord.from_dict(book_id, value)
        except (TypeError, ValueError) as e:
            raise StateFileError(f"Failed to parse state file {path}: {e}") from e
        store = cls(path, records)
        store.updated_at = data.get('updated_at')
        return store

    def get(self, book_id: int) -> Optional[ProcessingRecord]:
        return self._records.get(book_id)

    def put(self, book_id: int, record: ProcessingRecord):
        self._records[book_id] = record
        self.dirty = True

    def remove(self, book_id: int) -> bool:
        if self._records.pop(book_id, None) is None:
            return False
        self.dirty = True
        return True

    def records(self) -> List[ProcessingRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def __len__(self):
        return len(self._records)

    def __contains__(self, book_id):
        return book_id in self._records

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.VERSION,
            'updated_at': self.updated_at,
            'books': {str(r.book_id): r.to_dict() for r in self.records()},
        }

    def flush(self, path: Optional[str] = None):
        path = path or self.path
        if not path:
            raise StateFileError("No state file path configured")
        self.updated_at = utc_now()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=os.path.basename(path) + '.', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                json.dump(self.to_dict(), f, ensure_ascii=False, indent=2, sort_keys=True)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise StateFileError(f"Failed to write state file {path}: {e}") from e
        self.dirty = False

    def stats(self) -> Dict[str, Any]:
        records = self.records()
        success = sum(1 for r in records if r.ok)
        scores = [r.score for r in records if r.ok and r.score is not None]
        return {
            'total': len(records),
            'success': success,
            'failed': len(records) - success,
            'avg_score': round(sum(scores) / len(scores)) if scores else 0,
        }


class MemoryStateStore(StateStore):
    """Same interface, never touches the filesystem."""

    def __init__(self, records: Optional[Dict[int, ProcessingRecord]] = None):
        super().__init__(None, records)
        self.flush_count = 0

    def flush(self, path: Optional[str] = None):
        self.updated_at = utc_now()
        self.flush_count += 1
        self.dirty = False


# =============================================================================
# COLLABORATOR INTERFACES
# =============================================================================

class Catalog:
    """The book database: enumerate, refresh and update records."""

    def list_books(self, formats: Iterable[str]) -> List[BookSnapshot]:
        raise NotImplementedError

    def refresh(self, book_id: int) -> Optional[BookSnapshot]:
        return None

    def update_metadata(self, book: BookSnapshot, changes: Dict[str, Any],
                        cover_path: Optional[str] = None):
        raise NotImplementedError


class MetadataFetcher:
    def fetch(self, book: BookSnapshot) -> FetchResult:
        raise NotImplementedError


class Embedder:
    def embed(self, book: BookSnapshot, fmt: str, path: str):
        raise NotImplementedError


# =============================================================================
# DECISION ENGINE
# =============================================================================

DECISION_OUT_OF_SCOPE = 'out_of_scope'
DECISION_SKIP = 'skip'
DECISION_FETCH = 'fetch'
DECISION_EMBED_ONLY = 'embed_only'


@dataclass
class Evaluation:
    decision: str
    score: ScoreResult
    fingerprint: str
    previous: Optional[ProcessingRecord]
    reason: str = ''


@dataclass
class BookOutcome:
    book_id: int
    title: str
    decision: str
    status: str
    score: Optional[int] = None
    reason: str = ''

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


@dataclass
class RunSummary:
    total: int = 0
    out_of_scope: int = 0
    skipped: int = 0
    fetched: int = 0
    embedded: int = 0
    failed: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)
    dry_run: bool = False
    interrupted: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DecisionEngine:
    """Sequential per-book state machine:

    Pending -> Evaluated -> (Skip | NeedsFetch) -> Fetched? -> Embedded -> Recorded

    Books are handled one at a time: the throttle between fetches and the
    catalog are both shared, non-reentrant resources.
    """

    def __init__(self, policy: PolicyConfig, scoring: ScoringConfig, state: StateStore,
                 catalog: Optional[Catalog] = None, fetcher: Optional[MetadataFetcher] = None,
                 embedder: Optional[Embedder] = None, sleep: Callable[[float], None] = time.sleep,
                 now: Callable[[], str] = utc_now, logger: Optional[logging.Logger] = None):
        self.policy = policy
        self.scoring = scoring
        self.state = state
        self.catalog = catalog
        self.fetcher = fetcher
        self.embedder = embedder
        self.sleep = sleep
        self.now = now
        self.log = logger or logging.getLogger('calibre_updatr')
        self.stats_log = logging.getLogger('calibre_updatr.stats')
        self._throttle_pending = False
        self._since_checkpoint = 0

    # --- evaluation (no side effects) ---

    def evaluate(self, book: BookSnapshot) -> Evaluation:
        score = score_snapshot(book, self.scoring)
        fp = fingerprint_snapshot(book)
        previous = self.state.get(book.book_id)

        if not language_allowed(book.languages, self.policy):
            langs = ','.join(book.languages) or '<none>'
            return Evaluation(DECISION_OUT_OF_SCOPE, score, fp, previous, f"language {langs} not allowed")

        if previous is not None:
            unchanged = previous.fingerprint == fp
            if previous.ok and (not self.policy.reprocess_on_metadata_change or unchanged):
                reason = ('already processed' if not self.policy.reprocess_on_metadata_change
                          else 'already processed for current metadata hash')
                return Evaluation(DECISION_SKIP, score, fp, previous, reason)
            if (not previous.ok and self.policy.max_failures > 0
                    and previous.fail_count >= self.policy.max_failures and unchanged):
                return Evaluation(DECISION_SKIP, score, fp, previous,
                                  f"gave up after {previous.fail_count} failures")

        if score.good_enough(self.policy.min_score_to_skip_fetch):
            return Evaluation(DECISION_EMBED_ONLY, score, fp, previous, 'good enough')
        return Evaluation(DECISION_FETCH, score, fp, previous, ', '.join(score.missing))

    # --- processing ---

    def process(self, book: BookSnapshot) -> BookOutcome:
        ev = self.evaluate(book)

        if ev.decision == DECISION_OUT_OF_SCOPE:
            self.log.debug(f"\033[90m[out-of-scope] {book.label} ({ev.reason})\033[0m")
            return BookOutcome(book.book_id, book.title, ev.decision, DECISION_OUT_OF_SCOPE,
                               ev.score.score, ev.reason)

        if self._throttle_pending:
            self._throttle_pending = False
            if self.policy.delay_between_fetches_seconds > 0:
                self.sleep(self.policy.delay_between_fetches_seconds)

        if ev.decision == DECISION_SKIP:
            self.log.info(f"\033[90m[skip] {book.label} ({ev.reason})\033[0m")
            return BookOutcome(book.book_id, book.title, ev.decision, 'skipped', ev.score.score, ev.reason)

        targets = [(fmt, book.formats[fmt]) for fmt in self.policy.formats if fmt in book.formats]

        if self.policy.dry_run:
            return self._dry_run(book, ev, targets)

        if ev.decision == DECISION_EMBED_ONLY:
            self.log.info(f"[good-enough] {book.label} score={ev.score.score} -> embedding only")
        else:
            self.log.info(f"\033[36m[work]\033[0m {book.label} score={ev.score.score} "
                          f"-> fetch metadata (missing: {ev.reason})")

        final = book
        fetched = False
        try:
            changes: Dict[str, Any] = {}
            cover_path = None
            if ev.decision == DECISION_FETCH:
                self._throttle_pending = True
                result = self.fetcher.fetch(book)
                final, changes = merge_fetched(book, result.snapshot, self.policy.merge)
                if result.cover_path and (not book.has_cover or self.policy.merge == 'override'):
                    cover_path = result.cover_path
                    final.has_cover = True
                fetched = True
                filled = ', '.join(sorted(changes)) or 'nothing new'
                self.log.info(f"  [fetch] {book.label} from {result.source}: {filled}"
                              f"{' + cover' if cover_path else ''}")

            self.catalog.update_metadata(book, changes, cover_path)
            if not targets:
                raise StepError('embed', f"no target format available (wanted {','.join(self.policy.formats)})")
            for fmt, path in targets:
                self.embedder.embed(final, fmt, path)

            refreshed = self.catalog.refresh(book.book_id)
            if refreshed is not None:
                final = refreshed
        except StepError as e:
            return self._record_failure(book, ev, final, e.reason, fetched)
        except Exception as e:
            self.log.debug("Unexpected error", exc_info=True)
            return self._record_failure(book, ev, final, f"exception: {e}", fetched)

        now = self.now()
        action = 'fetched' if fetched else 'embedded_only'
        self._put(ProcessingRecord(
            book_id=book.book_id, fingerprint=fingerprint_snapshot(final), status=STATUS_SUCCESS,
            last_processed_at=now, last_ok_at=now, fail_count=0, score=ev.score.score, action=action,
        ))
        self.log.info(f"\033[32m[done]\033[0m {book.label} "
                      f"({'updated + embedded' if fetched else 'good enough; embedded'})")
        return BookOutcome(book.book_id, book.title, ev.decision, 'fetched' if fetched else 'embedded',
                           ev.score.score)

    def _dry_run(self, book: BookSnapshot, ev: Evaluation, targets) -> BookOutcome:
        fmts = ','.join(fmt for fmt, _ in targets) or '<none>'
        if ev.decision == DECISION_FETCH:
            self.log.info(f"\033[33m[dry-run]\033[0m {book.label} score={ev.score.score} "
                          f"fetch -> apply -> embed [{fmts}] (missing: {ev.reason})")
        else:
            self.log.info(f"\033[33m[dry-run]\033[0m {book.label} score={ev.score.score} embed [{fmts}]")
        reason = ''
        if not targets:
            reason = f"no target format available (wanted {','.join(self.policy.formats)})"
            self.log.warning(f"\033[33m[dry-run] would fail:\033[0m {book.label} ({reason})")
        status = 'failed' if reason else ('fetched' if ev.decision == DECISION_FETCH else 'embedded')
        return BookOutcome(book.book_id, book.title, ev.decision, status, ev.score.score, reason)

    def _record_failure(self, book: BookSnapshot, ev: Evaluation, best: BookSnapshot,
                        reason: str, fetched: bool) -> BookOutcome:
        prev = ev.previous
        self._put(ProcessingRecord(
            book_id=book.book_id, fingerprint=fingerprint_snapshot(best), status=STATUS_FAILED,
            last_processed_at=self.now(), reason=reason,
            last_ok_at=prev.last_ok_at if prev else None,
            fail_count=(prev.fail_count if prev and not prev.ok else 0) + 1,
            score=ev.score.score, action='fetched' if fetched else ev.decision,
        ))
        self.log.warning(f"\033[31m[fail]\033[0m {book.label} ({reason})")
        return BookOutcome(book.book_id, book.title, ev.decision, 'failed', ev.score.score, reason)

    def _put(self, record: ProcessingRecord):
        self.state.put(record.book_id, record)
        self._since_checkpoint += 1
        if self._since_checkpoint >= self.policy.checkpoint_interval:
            self.state.flush()
            self._since_checkpoint = 0

    def run(self, books: Iterable[BookSnapshot], limit: Optional[int] = None) -> RunSummary:
        summary = RunSummary(dry_run=self.policy.dry_run)
        books = list(books)
        if limit is not None:
            books = books[:limit]
        try:
            for i, book in enumerate(books, 1):
                self.log.debug(f"[book] {i}/{len(books)} {book.label}")
                try:
                    outcome = self.process(book)
                except KeyboardInterrupt:
                    self.log.warning("\nInterrupted!")
                    summary.interrupted = True
                    break
                self._tally(summary, outcome)
                self.stats_log.info(outcome.to_json())
        finally:
            if self.state.dirty and not self.policy.dry_run:
                self.state.flush()

        self.log.info(
            f"\033[36m[summary]\033[0m {'(dry run) ' if summary.dry_run else ''}"
            f"total={summary.total} skipped={summary.skipped} fetched={summary.fetched} "
            f"embedded={summary.embedded} failed={summary.failed} out_of_scope={summary.out_of_scope}")
        return summary

    @staticmethod
    def _tally(summary: RunSummary, outcome: BookOutcome):
        summary.total += 1
        if outcome.status == DECISION_OUT_OF_SCOPE:
            summary.out_of_scope += 1
        elif outcome.status == 'skipped':
            summary.skipped += 1
        elif outcome.status == 'failed':
            summary.failed += 1
            summary.failures.append((outcome.book_id, outcome.reason))
        else:
            if outcome.status == 'fetched':
                summary.fetched += 1
            summary.embedded += 1


# =============================================================================
# LOGGING SETUP
# =============================================================================

class ColorFormatter(logging.Formatter):
    COLORS = {
        'TRACE': '\033[90m', 'DEBUG': '\033[90m', 'INFO': '\033[0m', 'WARNING': '\033[33m',
        'ERROR': '\033[31m', 'CRITICAL': '\033[41m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        return f"{color}{record.getMessage()}{self.RESET}"


TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def setup_logging(level: str = 'info', log_dir: Optional[str] = None) -> logging.Logger:
    """Console output always; run/error/stats files when a log dir is given.

    Safe to call again once the config is known (handlers are replaced).
    """
    logger = logging.getLogger('calibre_updatr')
    stats_logger = logging.getLogger('calibre_updatr.stats')
    for lg in (logger, stats_logger):
        for h in list(lg.handlers):
            lg.removeHandler(h)
            h.close()
    logger.setLevel(TRACE)
    stats_logger.propagate = False
    stats_logger.setLevel(logging.INFO)

    console_level = logging.getLevelName(level.upper())
    if not isinstance(console_level, int):
        raise ConfigError(f"Unknown log level: {level!r}")
    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(ColorFormatter())
    logger.addHandler(ch)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

        fh = logging.FileHandler(os.path.join(log_dir, f'run_{timestamp}.log'), encoding='utf-8')
        fh.setLevel(TRACE)
        fh.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(fh)

        eh = logging.FileHandler(os.path.join(log_dir, f'errors_{timestamp}.log'), encoding='utf-8')
        eh.setLevel(logging.ERROR)
        eh.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(eh)

        sh = logging.FileHandler(os.path.join(log_dir, f'stats_{timestamp}.jsonl'), encoding='utf-8')
        sh.setLevel(logging.INFO)
        sh.setFormatter(logging.Formatter('%(message)s'))
        stats_logger.addHandler(sh)
    else:
        stats_logger.addHandler(logging.NullHandler())

    return logger


# =============================================================================
# COMMANDS
# =============================================================================

def run_update(config: UpdaterConfig, log: logging.Logger) -> int:
    from calibre_updatr_tools import CalibreCatalog, CalibreEmbedder, ToolRunner, make_fetcher, require_tool

    policy = config.policy()
    scoring = config.scoring()
    fetch_cfg = config.fetch()
    library = config.library

    require_tool('calibredb')
    if fetch_cfg.backend == 'calibre' and not policy.dry_run:
        require_tool('fetch-ebook-metadata')
    if not config.is_remote and not os.path.isdir(library):
        raise ConfigError(f"Library path does not exist or is not a directory: {library}")

    runner = ToolRunner(env_mode=config.calibredb_env, debug_env=config.debug_env,
                        headless=fetch_cfg.headless, headless_env=dict(fetch_cfg.headless_env),
                        use_xvfb=fetch_cfg.use_xvfb)
    catalog = CalibreCatalog(runner, library, username=config.username, password=config.password,
                             timeout=config.tool_timeout)
    state = StateStore.load(config.state_path)
    books = catalog.list_books(policy.formats)

    C, D, Y, X = '\033[36m', '\033[90m', '\033[33m', '\033[0m'
    log.info(f"{C}[info]{X} library    {library}")
    if config.is_remote:
        log.info(f"{C}[info]{X} auth       {config.username or '<none>'}")
    log.info(f"{C}[info]{X} state      {config.state_path} {D}({len(state)} books tracked){X}")
    log.info(f"{C}[info]{X} candidates {len(books)} {D}(formats={','.join(policy.formats)}, "
             f"languages={','.join(policy.allowed_languages)}"
             f"{' + missing' if policy.include_missing_language else ''}){X}")
    if policy.dry_run:
        log.info(f"{Y}[info] dry-run enabled (no changes will be written){X}")
    log.debug(f"Resolved config: {config.to_dict()}")

    with tempfile.TemporaryDirectory(prefix='calibre-updatr-') as workdir:
        engine = DecisionEngine(
            policy, scoring, state,
            catalog=catalog,
            fetcher=make_fetcher(fetch_cfg, runner, workdir),
            embedder=CalibreEmbedder(catalog),
            logger=log,
        )
        summary = engine.run(books, limit=config.limit)

    for book_id, reason in summary.failures[:20]:
        log.info(f"  \033[31m✗\033[0m id={book_id}: {reason}")
    return 130 if summary.interrupted else 0


def run_dups(config: UpdaterConfig, args, log: logging.Logger) -> int:
    from calibre_updatr_dups import find_duplicates, write_report

    root = args.root or args.library
    if not root:
        root = config.library
        if config.is_remote:
            raise ConfigError("dups needs a local folder; pass ROOT or --library")
    dups = config.dups()
    report = find_duplicates(root, extensions=dups.extensions, min_size=dups.min_size,
                             include_sidecars=dups.include_sidecars, thread_count=dups.threads,
                             follow_symlinks=dups.follow_symlinks)
    write_report(report, dups.output, args.out)
    log.info(f"\033[36m[summary]\033[0m scanned={report.scanned} groups={report.total_groups} "
             f"reclaimable={report.reclaimable_bytes} bytes skipped={len(report.skipped)}")
    logging.getLogger('calibre_updatr.stats').info(json.dumps({
        'mode': 'dups', 'root': os.path.abspath(root), 'scanned': report.scanned,
        'groups': report.total_groups, 'reclaimable_bytes': report.reclaimable_bytes,
    }))
    return 0


def run_state(config: UpdaterConfig, args, log: logging.Logger) -> int:
    path = config.state_path
    if not os.path.exists(path):
        print(f"No state file at: {path}")
        return 0
    store = StateStore.load(path)

    if args.forget:
        removed = [book_id for book_id in args.forget if store.remove(book_id)]
        if removed:
            store.flush()
        print(f"Forgot {len(removed)} book(s): {', '.join(map(str, removed)) or '-'}")

    stats = store.stats()
    print(f"\n{'=' * 60}")
    print(f"  STATE: {path}")
    print(f"{'=' * 60}")
    print(f"  Total tracked:  {stats['total']}")
    print(f"  Successful:     {stats['success']}")
    print(f"  Failed:         {stats['failed']}")
    print(f"  Avg score:      {stats['avg_score']}")
    if store.updated_at:
        print(f"  Updated at:     {store.updated_at}")
    if args.failed:
        failed = [r for r in store.records() if not r.ok]
        print(f"\n  Failed books ({len(failed)}):")
        for r in failed:
            print(f"    {r.book_id:>6}  x{r.fail_count:<3} {r.last_processed_at[:19]}  {r.reason[:80]}")
    print(f"{'=' * 60}\n")
    return 0


COMMANDS = {
    'update': build_update_parser,
    'dups': build_dups_parser,
    'state': build_state_parser,
}


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    command = 'update'
    if argv and argv[0] in COMMANDS:
        command = argv.pop(0)
    args = COMMANDS[command]().parse_args(argv)

    if command == 'update' and args.generate_config:
        text = default_config_yaml()
        if args.generate_config == '-':
            sys.stdout.write(text)
        else:
            with open(args.generate_config, 'w', encoding='utf-8') as f:
                f.write(text)
            print(f"Wrote default config to {args.generate_config}")
        return 0

    log = setup_logging('debug' if args.verbose else 'info')
    try:
        config = load_config_for(args)
        log = setup_logging(config.log_level, config.log_dir)
        if command == 'update':
            return run_update(config, log)
        if command == 'dups':
            return run_dups(config, args, log)
        return run_state(config, args, log)
    except UpdaterError as e:
        log.error(f"FATAL: {e}")
        return 1
    except KeyboardInterrupt:
        log.warning("\nInterrupted!")
        return 130


if __name__ == '__main__':
    sys.exit(main())
