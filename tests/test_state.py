"""State file persistence."""

import json
import os

import pytest

from calibre_updatr import (
    STATUS_FAILED, STATUS_SUCCESS, MemoryStateStore, ProcessingRecord, StateStore,
)
from calibre_updatr_errors import StateFileError


def _record(book_id: int, status: str = STATUS_SUCCESS, **kw) -> ProcessingRecord:
    data = dict(fingerprint=f"fp{book_id}", status=status, last_processed_at='2024-01-01T00:00:00+00:00')
    data.update(kw)
    return ProcessingRecord(book_id=book_id, **data)


def test_missing_file_is_an_empty_store(tmp_path) -> None:
    store = StateStore.load(str(tmp_path / 'state.json'))
    assert len(store) == 0
    assert store.get(1) is None
    assert not store.dirty


def test_flush_and_reload_round_trip(tmp_path) -> None:
    path = str(tmp_path / 'state.json')
    store = StateStore(path)
    store.put(1, _record(1, score=80, action='fetched', last_ok_at='2024-01-01T00:00:00+00:00'))
    store.put(2, _record(2, STATUS_FAILED, reason='fetch: boom', fail_count=3))
    assert store.dirty
    store.flush()
    assert not store.dirty

    loaded = StateStore.load(path)
    assert loaded.get(1) == store.get(1)
    assert loaded.get(2) == store.get(2)
    assert loaded.updated_at == store.updated_at


def test_file_layout(tmp_path) -> None:
    path = tmp_path / 'state.json'
    store = StateStore(str(path))
    store.put(5, _record(5))
    store.flush()
    data = json.loads(path.read_text(encoding='utf-8'))
    assert data['version'] == 1
    assert data['updated_at']
    assert list(data['books']) == ['5']
    assert data['books']['5']['status'] == 'success'
    assert 'book_id' not in data['books']['5']


def test_flush_leaves_no_temp_files_and_creates_parents(tmp_path) -> None:
    path = tmp_path / 'nested' / 'dir' / 'state.json'
    store = StateStore(str(path))
    store.put(1, _record(1))
    store.flush()
    store.put(2, _record(2))
    store.flush()
    assert sorted(os.listdir(path.parent)) == ['state.json']


def test_failed_flush_keeps_previous_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / 'state.json'
    store = StateStore(str(path))
    store.put(1, _record(1))
    store.flush()
    before = path.read_text(encoding='utf-8')

    def broken_replace(src, dst):
        raise OSError('disk full')

    monkeypatch.setattr(os, 'replace', broken_replace)
    store.put(2, _record(2))
    with pytest.raises(StateFileError):
        store.flush()
    assert path.read_text(encoding='utf-8') == before
    assert sorted(os.listdir(tmp_path)) == ['state.json']


@pytest.mark.parametrize('content', [
    '{not json',
    '[]',
    '{"version": 1, "books": []}',
    '{"version": 1, "books": {"abc": {"status": "success"}}}',
    '{"version": 1, "books": {"1": {"status": "weird"}}}',
])
def test_malformed_state_is_fatal(tmp_path, content) -> None:
    path = tmp_path / 'state.json'
    path.write_text(content, encoding='utf-8')
    with pytest.raises(StateFileError):
        StateStore.load(str(path))


def test_remove_and_stats() -> None:
    store = MemoryStateStore()
    store.put(1, _record(1, score=70))
    store.put(2, _record(2, score=90))
    store.put(3, _record(3, STATUS_FAILED))
    assert store.stats() == {'total': 3, 'success': 2, 'failed': 1, 'avg_score': 80}

    store.flush()
    assert store.remove(3) is True
    assert store.remove(3) is False
    assert store.dirty
    assert [r.book_id for r in store.records()] == [1, 2]


def test_memory_store_never_touches_disk(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    store = MemoryStateStore()
    store.put(1, _record(1))
    store.flush()
    assert store.flush_count == 1
    assert os.listdir(tmp_path) == []
