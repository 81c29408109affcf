"""Duplicate finder."""

import json
import os

import pytest

import calibre_updatr_dups
from calibre_updatr_dups import find_duplicates, write_report
from calibre_updatr_errors import ConfigError


def _write(path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return str(path)


@pytest.fixture
def library(tmp_path):
    root = tmp_path / 'lib'
    files = {
        'a': _write(root / 'Author A' / 'Book (1)' / 'book.epub', b'same epub bytes'),
        'b': _write(root / 'Author B' / 'Copy (2)' / 'copy.epub', b'same epub bytes'),
        'c': _write(root / 'Author C' / 'Other (3)' / 'other.EPUB', b'same epub bytes'),
        'd': _write(root / 'Author D' / 'Big (4)' / 'big.pdf', b'x' * 4096),
        'e': _write(root / 'Author E' / 'Big (5)' / 'big.pdf', b'x' * 4096),
        # same size as a/b/c, different content
        'f': _write(root / 'Author F' / 'Decoy (6)' / 'decoy.epub', b'SAME EPUB BYTES'),
        'g': _write(root / 'Author G' / 'Unique (7)' / 'unique.mobi', b'only one'),
        'opf1': _write(root / 'Author A' / 'Book (1)' / 'metadata.opf', b'<package/>'),
        'opf2': _write(root / 'Author B' / 'Copy (2)' / 'metadata.opf', b'<package/>'),
        'notes': _write(root / 'notes.md', b'same epub bytes'),
    }
    return str(root), files


def test_groups_identical_content(library) -> None:
    root, files = library
    report = find_duplicates(root, thread_count=2)
    assert report.total_groups == 2
    big, small = report.groups[0], report.groups[1]
    # 3 files beat 2 files
    assert sorted([files['a'], files['b'], files['c']]) == big.paths
    assert big.size == len(b'same epub bytes')
    assert small.paths == sorted([files['d'], files['e']])
    assert small.size == 4096
    assert report.reclaimable_bytes == 2 * len(b'same epub bytes') + 4096
    assert report.scanned == 7


def test_groups_sorted_by_count_then_size_then_hash(tmp_path) -> None:
    root = tmp_path / 'lib'
    for i, payload in enumerate([b'aa', b'bb', b'cccc']):
        _write(root / f'x{i}' / 'one.txt', payload)
        _write(root / f'y{i}' / 'two.txt', payload)
    report = find_duplicates(str(root))
    assert [g.size for g in report.groups] == [4, 2, 2]
    assert report.groups[1].content_hash < report.groups[2].content_hash


@pytest.mark.parametrize('threads', [1, 4, 16])
def test_output_is_independent_of_thread_count(library, threads) -> None:
    root, _ = library
    baseline = find_duplicates(root, thread_count=1)
    report = find_duplicates(root, thread_count=threads)
    assert report.groups == baseline.groups
    assert report.render_json() == baseline.render_json()


def test_sidecars_only_when_requested(library) -> None:
    root, files = library
    assert all(files['opf1'] not in g.paths for g in find_duplicates(root))
    report = find_duplicates(root, include_sidecars=True)
    assert any(g.paths == sorted([files['opf1'], files['opf2']]) for g in report.groups)


def test_extension_filter_and_min_size(library) -> None:
    root, files = library
    report = find_duplicates(root, extensions=['.PDF'])
    assert [g.paths for g in report.groups] == [sorted([files['d'], files['e']])]

    report = find_duplicates(root, min_size=100)
    assert [g.size for g in report.groups] == [4096]

    report = find_duplicates(root, extensions=['md', 'epub'])
    assert files['notes'] in report.groups[0].paths


def test_unreadable_file_is_skipped(library, monkeypatch) -> None:
    root, files = library
    real = calibre_updatr_dups.file_sha256

    def flaky(path):
        if path == files['c']:
            raise PermissionError(13, 'Permission denied', path)
        return real(path)

    monkeypatch.setattr(calibre_updatr_dups, 'file_sha256', flaky)
    report = find_duplicates(root, thread_count=3)
    assert [p for p, _ in report.skipped] == [files['c']]
    epubs = [g for g in report.groups if files['a'] in g.paths]
    assert epubs[0].paths == sorted([files['a'], files['b']])
    assert report.scanned == 6


@pytest.mark.skipif(not hasattr(os, 'symlink'), reason='needs symlinks')
def test_symlinks_are_not_followed_by_default(tmp_path) -> None:
    root = tmp_path / 'lib'
    _write(root / 'real' / 'book.epub', b'content')
    outside = _write(tmp_path / 'elsewhere' / 'book.epub', b'content')
    os.symlink(outside, str(root / 'link.epub'))
    assert find_duplicates(str(root)).total_groups == 0
    assert find_duplicates(str(root), follow_symlinks=True).total_groups == 1


@pytest.mark.skipif(not hasattr(os, 'symlink'), reason='needs symlinks')
def test_directory_symlink_loop_is_walked_once(tmp_path) -> None:
    root = tmp_path / 'lib'
    only = _write(root / 'only.epub', b'unique content')
    os.symlink(str(root), str(root / 'loop'))
    report = find_duplicates(str(root), follow_symlinks=True)
    assert report.total_groups == 0
    assert report.scanned == 1

    candidates, _ = calibre_updatr_dups.discover_candidates(str(root), follow_symlinks=True)
    assert candidates == [only]


@pytest.mark.skipif(not hasattr(os, 'link'), reason='needs hard links')
def test_paths_to_one_file_are_not_copies(tmp_path) -> None:
    root = tmp_path / 'lib'
    first = _write(root / 'a' / 'book.epub', b'one physical file')
    (root / 'b').mkdir()
    os.link(first, str(root / 'b' / 'book.epub'))
    report = find_duplicates(str(root))
    assert report.total_groups == 0
    assert report.scanned == 1


def test_empty_extension_list_uses_defaults(tmp_path) -> None:
    root = tmp_path / 'lib'
    _write(root / 'a' / 'book.epub', b'twin')
    _write(root / 'b' / 'book.epub', b'twin')
    report = find_duplicates(str(root), extensions=[])
    assert report.scanned == 2
    assert report.total_groups == 1


def test_missing_root_is_a_config_error(tmp_path) -> None:
    with pytest.raises(ConfigError):
        find_duplicates(str(tmp_path / 'nope'))


def test_empty_tree(tmp_path) -> None:
    report = find_duplicates(str(tmp_path))
    assert report.total_groups == 0
    assert report.scanned == 0
    assert 'No duplicates found' in report.render_text()


def test_text_and_json_reports(library, tmp_path, capsys) -> None:
    root, files = library
    report = find_duplicates(root)

    write_report(report, 'text')
    text = capsys.readouterr().out
    assert text.startswith('Duplicate groups: 2\n')
    assert f'== Group 1: 3 files | {len(b"same epub bytes")} bytes | sha256 ' in text
    assert f'  - {files["a"]}' in text

    out = tmp_path / 'report.json'
    write_report(report, 'json', str(out))
    data = json.loads(out.read_text(encoding='utf-8'))
    assert [len(g['files']) for g in data] == [3, 2]
    assert data[1]['bytes'] == 4096
