#!/usr/bin/env python3
"""
Calibre Updatr - Duplicate Finder
=================================
Groups book files under a folder by (size, full-content sha256).

Hashing runs on a thread pool. Each worker hashes its own slice of the sorted
candidate list and returns its own results; they are merged only after every
worker has finished, so the report does not depend on the thread count.
"""

import hashlib
import json
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from calibre_updatr_config import DEFAULT_DUP_EXTENSIONS, normalize_formats
from calibre_updatr_errors import ConfigError

log = logging.getLogger('calibre_updatr.dups')

SIDECAR_NAMES = ('metadata.opf', 'cover.jpg', 'cover.jpeg', 'cover.png')
CHUNK_SIZE = 1024 * 1024


@dataclass
class DuplicateGroup:
    content_hash: str
    size: int
    paths: List[str]

    @property
    def reclaimable_bytes(self) -> int:
        return self.size * (len(self.paths) - 1)

    def to_dict(self):
        return {'hash': self.content_hash, 'bytes': self.size, 'files': list(self.paths)}


@dataclass
class DuplicateReport:
    groups: List[DuplicateGroup] = field(default_factory=list)
    scanned: int = 0
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    elapsed: float = 0.0

    def __iter__(self):
        return iter(self.groups)

    def __len__(self):
        return len(self.groups)

    @property
    def total_groups(self) -> int:
        return len(self.groups)

    @property
    def reclaimable_bytes(self) -> int:
        return sum(g.reclaimable_bytes for g in self.groups)

    def render_text(self) -> str:
        if not self.groups:
            return "No duplicates found (by full-file sha256 hash).\n"
        lines = [f"Duplicate groups: {len(self.groups)}", ""]
        for i, g in enumerate(self.groups, 1):
            lines.append(f"== Group {i}: {len(g.paths)} files | {g.size} bytes | sha256 {g.content_hash} ==")
            lines.extend(f"  - {p}" for p in g.paths)
            lines.append("")
        lines.append(f"Reclaimable: {self.reclaimable_bytes} bytes")
        return '\n'.join(lines) + '\n'

    def render_json(self) -> str:
        return json.dumps([g.to_dict() for g in self.groups], indent=2, ensure_ascii=False) + '\n'


def file_sha256(filepath: str) -> Tuple[int, str]:
    """Returns (bytes read, hex digest)."""
    h = hashlib.sha256()
    size = 0
    with open(filepath, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            h.update(chunk)
            size += len(chunk)
    return size, h.hexdigest()


def default_thread_count() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


def discover_candidates(root: str, extensions: Optional[Iterable[str]] = None, min_size: int = 0,
                        include_sidecars: bool = False, follow_symlinks: bool = False
                        ) -> Tuple[List[str], List[Tuple[str, str]]]:
    # An empty list means the same as no list: fall back to the default extensions.
    exts = set(normalize_formats(extensions)) or set(DEFAULT_DUP_EXTENSIONS)
    by_inode: Dict[Tuple[int, int], str] = {}
    seen_dirs = set()
    skipped = []

    def on_error(err: OSError):
        log.warning(f"[dups] walk error: {err}")
        skipped.append((getattr(err, 'filename', None) or root, str(err)))

    for dirpath, _dirs, filenames in os.walk(root, onerror=on_error, followlinks=follow_symlinks):
        if follow_symlinks:
            try:
                st = os.stat(dirpath)
            except OSError as e:
                skipped.append((dirpath, str(e)))
                _dirs[:] = []
                continue
            if (st.st_dev, st.st_ino) in seen_dirs:
                log.debug(f"[dups] already visited {dirpath}, not descending")
                _dirs[:] = []
                continue
            seen_dirs.add((st.st_dev, st.st_ino))
        for fname in filenames:
            path = os.path.join(dirpath, fname)
            if not follow_symlinks and os.path.islink(path):
                continue
            if fname.lower() in SIDECAR_NAMES:
                if not include_sidecars:
                    continue
            elif os.path.splitext(fname)[1].lstrip('.').lower() not in exts:
                continue
            try:
                st = os.stat(path)
            except OSError as e:
                log.warning(f"[dups] cannot stat {path}: {e}")
                skipped.append((path, str(e)))
                continue
            if st.st_size < min_size:
                continue
            # Several paths to one inode are one file, not copies of it.
            key = (st.st_dev, st.st_ino)
            by_inode[key] = min(by_inode.get(key, path), path)
    return sorted(by_inode.values()), skipped


def _hash_slice(paths: List[str]):
    hashed, skipped = [], []
    for path in paths:
        try:
            size, digest = file_sha256(path)
        except OSError as e:
            skipped.append((path, str(e)))
            continue
        hashed.append((path, size, digest))
    return hashed, skipped


def _slices(items: List[str], count: int) -> List[List[str]]:
    count = max(1, min(count, len(items)))
    step, extra = divmod(len(items), count)
    out, start = [], 0
    for i in range(count):
        end = start + step + (1 if i < extra else 0)
        out.append(items[start:end])
        start = end
    return out


def find_duplicates(root: str, extensions: Optional[Iterable[str]] = None, min_size: int = 0,
                    include_sidecars: bool = False, thread_count: Optional[int] = None,
                    follow_symlinks: bool = False) -> DuplicateReport:
    if not os.path.isdir(root):
        raise ConfigError(f"Duplicate scan root is not a directory: {root}")
    start = time.time()
    candidates, skipped = discover_candidates(root, extensions, min_size, include_sidecars, follow_symlinks)
    workers = thread_count or default_thread_count()
    log.info(f"\033[36m[dups]\033[0m hashing {len(candidates)} files under {root} with {workers} threads")

    results: List[Tuple[str, int, str]] = []
    if candidates:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_hash_slice, chunk) for chunk in _slices(candidates, workers)]
            partials = [future.result() for future in futures]
        for hashed, failed in partials:
            results.extend(hashed)
            for path, reason in failed:
                log.warning(f"[dups] skipping {path}: {reason}")
            skipped.extend(failed)

    by_key: Dict[Tuple[int, str], List[str]] = {}
    for path, size, digest in results:
        by_key.setdefault((size, digest), []).append(path)

    groups = [DuplicateGroup(content_hash=digest, size=size, paths=sorted(paths))
              for (size, digest), paths in by_key.items() if len(paths) >= 2]
    groups.sort(key=lambda g: (-len(g.paths), -g.size, g.content_hash))
    return DuplicateReport(groups=groups, scanned=len(results), skipped=skipped,
                           elapsed=time.time() - start)


def write_report(report: DuplicateReport, fmt: str = 'text', out: Optional[str] = None):
    contents = report.render_json() if fmt == 'json' else report.render_text()
    if out:
        with open(out, 'w', encoding='utf-8') as f:
            f.write(contents)
        log.info(f"Report written to {out}")
    else:
        sys.stdout.write(contents)
        sys.stdout.flush()
