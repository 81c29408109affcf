#!/usr/bin/env python3
"""
Calibre Updatr - External Tools
===============================
Thin adapters around the Calibre command line tools and Open Library.

  ToolRunner          subprocess wrapper (timeouts, calibredb env modes, headless fetch)
  CalibreCatalog      calibredb list / set_metadata / embed_metadata
  CalibreEmbedder     embed(book, fmt, path) via calibredb embed_metadata
  CalibreFetcher      fetch-ebook-metadata -> OPF + cover -> partial BookSnapshot
  OpenLibraryFetcher  Open Library search API (requests), alternative backend

Per-book failures raise StepError, library-wide failures raise CatalogError.
"""

import json
import logging
import os
import shutil
import subprocess
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests

from calibre_updatr import (
    BookSnapshot, Catalog, Embedder, FetchResult, MetadataFetcher, normalize_pubdate,
)
from calibre_updatr_config import FetchConfig
from calibre_updatr_errors import CatalogError, ConfigError, StepError

log = logging.getLogger('calibre_updatr.tools')

TIMEOUT_RETURN_CODE = 124
NOT_FOUND_RETURN_CODE = 127

# Leaked Python environments break calibre's bundled interpreter
CLEAN_ENV_PREFIXES = ('PYTHON', 'VIRTUAL_ENV', 'UV_', 'PIP_', 'CONDA', 'POETRY', 'PYENV')
DEBUG_ENV_KEYS = (
    'PYTHONPATH', 'PYTHONHOME', 'PYTHONNOUSERSITE', 'PYTHONUSERBASE', 'VIRTUAL_ENV',
    'UV_PROJECT_ENVIRONMENT', 'UV_PYTHON', 'CONDA_PREFIX', 'POETRY_ACTIVE', 'PYENV_VERSION',
    'LANG', 'LC_ALL', 'PATH',
)
LOCALE_OVERRIDES = (
    {'LC_ALL': 'en_US.utf8', 'LANG': 'en_US.utf8', 'LANGUAGE': 'en_US:en', 'CALIBRE_OVERRIDE_LANG': 'en'},
    {'LC_ALL': 'C.utf8', 'LANG': 'C.utf8', 'LANGUAGE': 'en', 'CALIBRE_OVERRIDE_LANG': 'en'},
    {'LC_ALL': 'C', 'LANG': 'C', 'LANGUAGE': 'en', 'CALIBRE_OVERRIDE_LANG': 'en'},
)

LIST_FIELDS = (
    'id', 'title', 'authors', 'series', 'series_index', 'publisher', 'pubdate', 'languages',
    'formats', 'isbn', 'identifiers', 'tags', 'comments', 'cover', 'last_modified',
)

# snapshot field -> calibredb set_metadata field
CALIBRE_FIELD_NAMES = {'description': 'comments'}

OPF_NS = 'http://www.idpf.org/2007/opf'
DC_NS = 'http://purl.org/dc/elements/1.1/'
IGNORED_ID_SCHEMES = ('calibre', 'uuid')


def require_tool(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise ConfigError(f"Required tool not found on PATH: {name} (install Calibre command line tools)")
    return path


def _truncate(text: str, limit: int = 500) -> str:
    text = (text or '').strip()
    return text if len(text) <= limit else text[:limit] + '...'


def _as_text(data: Any) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return str(data)


# =============================================================================
# COMMAND RUNNER
# =============================================================================

@dataclass
class CommandResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self, name: str) -> str:
        msg = f"{name} failed rc={self.returncode}"
        if self.stderr.strip():
            msg += f" stderr={_truncate(self.stderr)}"
        return msg


class ToolRunner:
    def __init__(self, env_mode: str = 'inherit', debug_env: bool = False, headless: bool = True,
                 headless_env: Optional[Dict[str, str]] = None, use_xvfb: bool = False,
                 run_fn=subprocess.run):
        self.env_mode = env_mode
        self.debug_env = debug_env
        self.headless = headless
        self.headless_env = dict(headless_env or {})
        self.use_xvfb = use_xvfb
        self._run_fn = run_fn

    def run(self, cmd: List[str], timeout: Optional[float] = None,
            extra_env: Optional[Dict[str, str]] = None, env: Optional[Dict[str, str]] = None) -> CommandResult:
        if env is None:
            env = dict(os.environ)
        if extra_env:
            env.update(extra_env)
        log.debug(f"[cmd] {' '.join(cmd)}")
        try:
            proc = self._run_fn(cmd, capture_output=True, text=True, encoding='utf-8', errors='replace',
                                timeout=timeout, env=env)
        except subprocess.TimeoutExpired as e:
            return CommandResult(TIMEOUT_RETURN_CODE, _as_text(e.stdout),
                                 _as_text(e.stderr) or f"timed out after {timeout}s", timed_out=True)
        except OSError as e:
            return CommandResult(NOT_FOUND_RETURN_CODE, '', str(e))
        return CommandResult(proc.returncode, proc.stdout or '', proc.stderr or '')

    def run_calibredb(self, cmd: List[str], timeout: Optional[float] = None) -> CommandResult:
        base_env = dict(os.environ)
        if self.debug_env:
            for key in DEBUG_ENV_KEYS:
                if key in base_env:
                    log.debug(f"[calibredb env] {key}={base_env[key]}")

        if self.env_mode == 'clean':
            return self.run(cmd, timeout, env=_clean_env(base_env))

        first = self.run(cmd, timeout, env=base_env)
        if first.ok:
            return first
        self._warn_output(first)

        if self.env_mode == 'override':
            last = first
            for overrides in LOCALE_OVERRIDES:
                last = self.run(cmd, timeout, extra_env=overrides, env=dict(base_env))
                if last.ok:
                    log.info(f"[calibredb] succeeded with LC_ALL={overrides['LC_ALL']}")
                    return last
            return last

        if "No module named 'msgpack'" in first.stderr:
            retry = self.run(cmd, timeout, env=_clean_env(base_env))
            if retry.ok:
                log.info("[calibredb] succeeded after cleaning env vars")
            return retry
        return first

    def run_fetch(self, cmd: List[str], timeout: Optional[float] = None) -> CommandResult:
        env = dict(os.environ)
        if self.headless:
            for key, value in self.headless_env.items():
                env.setdefault(key, value)
            log.debug("[fetch] using headless Qt/WebEngine env")
        if self.use_xvfb:
            cmd = ['xvfb-run', '-a'] + list(cmd)
        return self.run(cmd, timeout, env=env)

    @staticmethod
    def _warn_output(result: CommandResult):
        if result.stderr.strip():
            log.warning(f"[calibredb stderr] {_truncate(result.stderr, 2000)}")


def _clean_env(env: Dict[str, str]) -> Dict[str, str]:
    return {k: v for k, v in env.items() if not k.startswith(CLEAN_ENV_PREFIXES)}


# =============================================================================
# CALIBRE CATALOG
# =============================================================================

def _field_value(name: str, value: Any) -> str:
    if name == 'authors':
        return ' & '.join(value)
    if name in ('tags', 'languages'):
        return ','.join(value)
    if name == 'identifiers':
        return ','.join(f"{k}:{v}" for k, v in sorted(value.items()))
    if value is None:
        return ''
    return str(value)


class CalibreCatalog(Catalog):
    def __init__(self, runner: ToolRunner, library: str, username: Optional[str] = None,
                 password: Optional[str] = None, timeout: Optional[float] = None):
        self.runner = runner
        self.library = library
        self.username = username
        self.password = password
        self.timeout = timeout

    @property
    def is_remote(self) -> bool:
        return self.library.lower().startswith(('http://', 'https://'))

    def base_command(self) -> List[str]:
        cmd = ['calibredb', '--with-library', self.library]
        # Credentials only mean something to a Content Server
        if self.is_remote and self.username:
            cmd += ['--username', self.username]
            if self.password:
                cmd += ['--password', self.password]
        return cmd

    def _list_command(self, search: str) -> List[str]:
        return self.base_command() + ['list', '--for-machine', '--fields', ','.join(LIST_FIELDS),
                                      '--search', search]

    def list_books(self, formats: Iterable[str]) -> List[BookSnapshot]:
        formats = [f.lower() for f in formats]
        if not formats:
            raise CatalogError("No target formats provided")
        search = ' or '.join(f"formats:{f}" for f in formats)
        result = self.runner.run_calibredb(self._list_command(search), timeout=self.timeout)

        if not result.ok:
            stderr = result.stderr.lower()
            if ('another calibre program such as calibre-server' in stderr
                    or 'another calibre program such as calibre server' in stderr):
                raise CatalogError(
                    "calibredb refused to use the library because Calibre (or calibre-server) is running. "
                    "Either close Calibre or pass --library-url pointing at the running Content Server.")
            if 'not found' in stderr and self.is_remote:
                raise CatalogError(
                    "calibredb returned Not Found for the library URL. Check the Content Server URL and "
                    "library id, and avoid a trailing slash after the fragment "
                    "(example: --library-url \"http://localhost:8081/#books\").")
            if 'no books matching the search expression' in stderr:
                return []
            if result.timed_out:
                raise CatalogError(f"calibredb list timed out after {self.timeout}s")
            raise CatalogError(result.describe('calibredb list'))

        records = self._parse_list(result.stdout)
        books = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                book = BookSnapshot.from_calibre(record)
            except ValueError as e:
                log.warning(f"Skipping catalog entry: {e}")
                continue
            if any(f in book.formats for f in formats):
                books.append(book)
        return books

    @staticmethod
    def _parse_list(stdout: str) -> List[Any]:
        if not stdout.strip():
            return []
        try:
            data = json.loads(stdout)
        except ValueError as e:
            raise CatalogError(f"calibredb list returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise CatalogError("Unexpected JSON shape from calibredb list (expected a list)")
        return data

    def refresh(self, book_id: int) -> Optional[BookSnapshot]:
        result = self.runner.run_calibredb(self._list_command(f"id:{book_id}"), timeout=self.timeout)
        if not result.ok or not result.stdout.strip():
            return None
        try:
            data = json.loads(result.stdout)
        except ValueError:
            return None
        if isinstance(data, list) and data and isinstance(data[0], dict):
            try:
                return BookSnapshot.from_calibre(data[0])
            except ValueError:
                return None
        return None

    def update_metadata(self, book: BookSnapshot, changes: Dict[str, Any], cover_path: Optional[str] = None):
        if not changes and not cover_path:
            return
        cmd = self.base_command() + ['set_metadata', str(book.book_id)]
        for name in sorted(changes):
            calibre_name = CALIBRE_FIELD_NAMES.get(name, name)
            cmd += ['--field', f"{calibre_name}:{_field_value(name, changes[name])}"]
        if cover_path:
            if not os.path.isfile(cover_path) or os.path.getsize(cover_path) == 0:
                raise StepError('catalog', f"cover file missing or empty: {cover_path}")
            cmd += ['--field', f"cover:{cover_path}"]
        log.debug(f"[apply] set_metadata id={book.book_id} fields={','.join(sorted(changes)) or '-'}")
        result = self.runner.run_calibredb(cmd, timeout=self.timeout)
        if not result.ok:
            raise StepError('catalog', result.describe('set_metadata'))

    def embed_metadata(self, book_id: int, fmt: str):
        cmd = self.base_command() + ['embed_metadata', '--only-formats', fmt.upper(), str(book_id)]
        result = self.runner.run_calibredb(cmd, timeout=self.timeout)
        if not result.ok:
            raise StepError('embed', result.describe('embed_metadata'))


class CalibreEmbedder(Embedder):
    """Calibre rewrites its own copy of each format file from the catalog record."""

    def __init__(self, catalog: CalibreCatalog):
        self.catalog = catalog

    def embed(self, book: BookSnapshot, fmt: str, path: str):
        log.debug(f"[embed] id={book.book_id} {fmt.upper()} {path}")
        self.catalog.embed_metadata(book.book_id, fmt)


# =============================================================================
# OPF PARSING
# =============================================================================

def _local(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def parse_opf(text: str, book_id: int) -> BookSnapshot:
    """Parse the OPF written by fetch-ebook-metadata into a partial snapshot.

    Raises ValueError when the document is not a usable OPF.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ValueError(f"invalid OPF: {e}") from e
    metadata = None
    for el in root.iter():
        if _local(el.tag) == 'metadata':
            metadata = el
            break
    if metadata is None:
        raise ValueError("OPF has no <metadata> element")

    snap = BookSnapshot(book_id=book_id)
    for el in metadata:
        name = _local(el.tag)
        value = (el.text or '').strip()
        if name == 'title' and value and not snap.title:
            snap.title = value
        elif name == 'creator' and value:
            role = el.get(f'{{{OPF_NS}}}role') or el.get('role') or 'aut'
            if role == 'aut' and value not in snap.authors:
                snap.authors.append(value)
        elif name == 'publisher' and value:
            snap.publisher = value
        elif name == 'date' and value:
            snap.pubdate = normalize_pubdate(value)
        elif name == 'language' and value:
            lang = value.lower()
            if lang not in snap.languages and lang != 'und':
                snap.languages.append(lang)
        elif name == 'subject' and value and value not in snap.tags:
            snap.tags.append(value)
        elif name == 'description' and value:
            snap.description = value
        elif name == 'identifier' and value:
            scheme = (el.get(f'{{{OPF_NS}}}scheme') or el.get('scheme') or '').lower()
            if not scheme and ':' in value:
                scheme, value = value.split(':', 1)
                scheme = scheme.lower()
                if scheme == 'urn' and value.lower().startswith('isbn:'):
                    scheme, value = 'isbn', value[5:]
            if not scheme or scheme in IGNORED_ID_SCHEMES:
                continue
            snap.identifiers[scheme] = value.strip()
            if scheme == 'isbn' and not snap.isbn:
                snap.isbn = value.strip()
        elif name == 'meta':
            meta_name, content = el.get('name', ''), (el.get('content') or '').strip()
            if meta_name == 'calibre:series' and content:
                snap.series = content
            elif meta_name == 'calibre:series_index' and content:
                try:
                    snap.series_index = float(content)
                except ValueError:
                    pass
    return snap


# =============================================================================
# FETCHERS
# =============================================================================

class CalibreFetcher(MetadataFetcher):
    def __init__(self, runner: ToolRunner, workdir: str, timeout: int = 180):
        self.runner = runner
        self.workdir = workdir
        self.timeout = timeout

    def build_command(self, book: BookSnapshot, opf_path: str, cover_path: str) -> List[str]:
        cmd = ['fetch-ebook-metadata', '--opf', opf_path, '--cover', cover_path]
        if book.isbn:
            cmd += ['--isbn', book.isbn]
            return cmd
        for key, value in sorted(book.identifiers.items()):
            cmd += ['--identifier', f"{key}:{value}"]
        if book.title:
            cmd += ['--title', book.title]
        if book.authors:
            cmd += ['--authors', ', '.join(book.authors)]
        return cmd

    def fetch(self, book: BookSnapshot) -> FetchResult:
        opf_path = os.path.join(self.workdir, f"{book.book_id}.opf")
        cover_path = os.path.join(self.workdir, f"{book.book_id}.jpg")
        for path in (opf_path, cover_path):
            if os.path.exists(path):
                os.remove(path)

        log.debug(f"[fetch] starting fetch-ebook-metadata timeout={self.timeout}s title={book.title!r}")
        result = self.runner.run_fetch(self.build_command(book, opf_path, cover_path), timeout=self.timeout)
        if result.timed_out:
            raise StepError('fetch', f"fetch-ebook-metadata timed out after {self.timeout}s")
        if not result.ok:
            raise StepError('fetch', result.describe('fetch-ebook-metadata'))
        if not os.path.isfile(opf_path) or os.path.getsize(opf_path) == 0:
            raise StepError('fetch', "fetch-ebook-metadata produced no OPF")

        with open(opf_path, 'r', encoding='utf-8', errors='replace') as f:
            text = f.read()
        try:
            snapshot = parse_opf(text, book.book_id)
        except ValueError as e:
            raise StepError('fetch', str(e)) from e
        has_cover = os.path.isfile(cover_path) and os.path.getsize(cover_path) > 0
        return FetchResult(snapshot=snapshot, cover_path=cover_path if has_cover else None,
                           source='fetch-ebook-metadata')


OPENLIBRARY_SEARCH_URL = 'https://openlibrary.org/search.json'
OPENLIBRARY_COVER_URL = 'https://covers.openlibrary.org/b/id/{cover_id}-L.jpg'


class OpenLibraryFetcher(MetadataFetcher):
    MAX_RETRIES = 2
    BACKOFF_BASE = 1.5
    REQUEST_TIMEOUT = 10
    MIN_COVER_BYTES = 500

    def __init__(self, workdir: str, session=None, timeout: Optional[float] = None, sleep=time.sleep):
        self.workdir = workdir
        self._session = session
        self.timeout = timeout or self.REQUEST_TIMEOUT
        self.sleep = sleep

    @property
    def session(self):
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({'User-Agent': 'calibre-updatr/1.0'})
        return self._session

    def _request_with_retry(self, method: str, url: str, **kwargs):
        """Returns the response, or None when the request is not worth retrying."""
        kwargs.setdefault('timeout', self.timeout)
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                resp = self.session.request(method, url, **kwargs)
                if resp.status_code == 429:
                    wait = self.BACKOFF_BASE ** (attempt + 1)
                    ra = resp.headers.get('Retry-After')
                    if ra:
                        try:
                            wait = min(int(ra), 10)
                        except ValueError:
                            pass
                    if attempt < self.MAX_RETRIES:
                        self.sleep(wait)
                        continue
                    return None
                if 400 <= resp.status_code < 500:
                    return None
                resp.raise_for_status()
                return resp
            except requests.exceptions.HTTPError as e:
                sc = e.response.status_code if e.response is not None else 0
                if sc >= 500 and attempt < self.MAX_RETRIES:
                    self.sleep(self.BACKOFF_BASE ** attempt)
                    continue
                return None
            except requests.exceptions.Timeout:
                if attempt < self.MAX_RETRIES:
                    self.sleep(self.BACKOFF_BASE ** attempt)
                    continue
                return None
            except requests.exceptions.ConnectionError:
                return None
        return None

    def _search(self, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        params = dict(params, limit=1)
        resp = self._request_with_retry('GET', OPENLIBRARY_SEARCH_URL, params=params)
        if resp is None:
            return None
        try:
            docs = resp.json().get('docs') or []
        except ValueError:
            return None
        return docs[0] if docs else None

    def fetch(self, book: BookSnapshot) -> FetchResult:
        doc = None
        if book.isbn:
            doc = self._search({'isbn': book.isbn})
        if doc is None and book.title:
            params = {'title': book.title}
            if book.authors:
                params['author'] = book.authors[0]
            doc = self._search(params)
        if doc is None:
            raise StepError('fetch', "no match on Open Library")

        snapshot = self._parse_doc(doc, book.book_id)
        cover_path = None
        if doc.get('cover_i'):
            cover_path = self._download_cover(doc['cover_i'], book.book_id)
        return FetchResult(snapshot=snapshot, cover_path=cover_path, source='openlibrary')

    def _parse_doc(self, doc: Dict[str, Any], book_id: int) -> BookSnapshot:
        snap = BookSnapshot(book_id=book_id)
        snap.title = (doc.get('title') or '').strip()
        snap.authors = [a.strip() for a in doc.get('author_name') or [] if a and a.strip()]
        snap.publisher = ((doc.get('publisher') or [''])[0] or '').strip()
        if doc.get('first_publish_year'):
            snap.pubdate = str(doc['first_publish_year'])
        snap.languages = [l.lower() for l in doc.get('language') or []][:3]
        for isbn in doc.get('isbn') or []:
            if len(isbn) == 13:
                snap.isbn = isbn
                break
        if snap.isbn:
            snap.identifiers['isbn'] = snap.isbn
        key = doc.get('key') or ''
        if key:
            snap.identifiers['openlibrary'] = key.replace('/works/', '')
        snap.tags = [s for s in doc.get('subject') or []][:20]
        if key:
            resp = self._request_with_retry('GET', f"https://openlibrary.org{key}.json")
            if resp is not None:
                try:
                    desc = resp.json().get('description')
                except ValueError:
                    desc = None
                if isinstance(desc, dict):
                    desc = desc.get('value')
                if isinstance(desc, str):
                    snap.description = desc.strip()
        return snap

    def _download_cover(self, cover_id, book_id: int) -> Optional[str]:
        resp = self._request_with_retry('GET', OPENLIBRARY_COVER_URL.format(cover_id=cover_id), stream=True)
        if resp is None:
            return None
        path = os.path.join(self.workdir, f"{book_id}.jpg")
        with open(path, 'wb') as f:
            for chunk in resp.iter_content(8192):
                f.write(chunk)
        # Open Library serves a tiny placeholder for missing covers
        if os.path.getsize(path) < self.MIN_COVER_BYTES:
            os.remove(path)
            return None
        return path


def make_fetcher(fetch_cfg: FetchConfig, runner: ToolRunner, workdir: str) -> MetadataFetcher:
    if fetch_cfg.backend == 'openlibrary':
        return OpenLibraryFetcher(workdir)
    return CalibreFetcher(runner, workdir, timeout=fetch_cfg.timeout_seconds)
