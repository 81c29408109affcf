"""Configuration layering: CLI > environment > config file > defaults."""

import logging

import pytest
import yaml

from calibre_updatr_config import (
    DEFAULT_CONFIG, DupsConfig, UpdaterConfig, build_dups_parser, build_update_parser, default_config_yaml,
    default_state_path, find_config_file, load_config_for, merge_config,
)
from calibre_updatr_errors import ConfigError

ENV_VARS = ('CALIBRE_LIBRARY', 'CALIBRE_LIBRARY_URL', 'CALIBRE_USERNAME', 'CALIBRE_PASSWORD',
            'CALIBRE_UPDATR_LOG_LEVEL')


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('HOME', str(tmp_path / 'home'))
    monkeypatch.setenv('XDG_CACHE_HOME', str(tmp_path / 'cache'))
    monkeypatch.chdir(tmp_path)


def _config(argv, data=None) -> UpdaterConfig:
    args = build_update_parser().parse_args(argv)
    return UpdaterConfig(args, data or {}, None)


def test_defaults(tmp_path) -> None:
    cfg = _config(['--library', str(tmp_path)])
    policy = cfg.policy()
    assert policy.formats == ('epub', 'pdf')
    assert policy.min_score_to_skip_fetch == 65
    assert policy.merge == 'fill_gaps'
    assert policy.reprocess_on_metadata_change is False
    assert policy.include_missing_language is True
    assert policy.delay_between_fetches_seconds == 0.35
    assert policy.dry_run is False
    assert cfg.fetch().backend == 'calibre'
    assert cfg.state_path == str(tmp_path / '.calibre_updatr_state.json')
    assert cfg.log_level == 'info'
    assert cfg.scoring().total_weight == 100


def test_config_file_values_apply(tmp_path) -> None:
    data = {
        'library': {'path': str(tmp_path)},
        'formats': ['EPUB'],
        'policy': {'min_score_to_skip_fetch': 80, 'allowed_languages': ['en_GB'], 'merge': 'override'},
        'fetch': {'delay_between_fetches_seconds': 2},
        'scoring': {'weights': {'series': 0}},
    }
    cfg = _config([], data)
    policy = cfg.policy()
    assert cfg.library == str(tmp_path)
    assert policy.formats == ('epub',)
    assert policy.min_score_to_skip_fetch == 80
    assert policy.allowed_languages == ('en-gb',)
    assert policy.merge == 'override'
    assert policy.delay_between_fetches_seconds == 2.0
    assert cfg.scoring().total_weight == 95


def test_cli_beats_config(tmp_path) -> None:
    data = {'policy': {'min_score_to_skip_fetch': 80, 'reprocess_on_metadata_change': True,
                       'include_missing_language': True}}
    cfg = _config(['--library', str(tmp_path), '--min-score', '50', '--no-reprocess-on-change',
                   '--exclude-missing-language', '--formats', 'pdf,epub', '--allow-language', 'fr'], data)
    policy = cfg.policy()
    assert policy.min_score_to_skip_fetch == 50
    assert policy.reprocess_on_metadata_change is False
    assert policy.include_missing_language is False
    assert policy.formats == ('pdf', 'epub')
    assert policy.allowed_languages == ('fr',)


def test_unset_cli_flags_do_not_mask_config() -> None:
    data = {'policy': {'reprocess_on_metadata_change': True, 'include_missing_language': False}}
    policy = _config(['--library', '/lib'], data).policy()
    assert policy.reprocess_on_metadata_change is True
    assert policy.include_missing_language is False


def test_env_sits_between_cli_and_config(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv('CALIBRE_USERNAME', 'env-user')
    monkeypatch.setenv('CALIBRE_LIBRARY_URL', 'http://env:8080/#books')
    data = {'library': {'url': 'http://file:8080/#books', 'username': 'file-user'}}

    cfg = _config([], data)
    assert cfg.username == 'env-user'
    assert cfg.library == 'http://env:8080/#books'
    assert cfg.is_remote

    cfg = _config(['--username', 'cli-user', '--library-url', 'http://cli:8080/#books/'], data)
    assert cfg.username == 'cli-user'
    assert cfg.library == 'http://cli:8080/#books'


def test_local_library_flag_wins_over_configured_url(tmp_path) -> None:
    cfg = _config(['--library', str(tmp_path)], {'library': {'url': 'http://x:1/#a'}})
    assert cfg.library == str(tmp_path)
    assert not cfg.is_remote


def test_missing_library_is_an_error() -> None:
    with pytest.raises(ConfigError):
        _ = _config([]).library


def test_remote_state_path_goes_to_cache(tmp_path) -> None:
    path = default_state_path('http://localhost:8081/#books')
    assert path.startswith(str(tmp_path / 'cache' / 'calibre-updatr'))
    assert path.endswith('.json')
    assert path != default_state_path('http://localhost:8081/#other')


def test_explicit_state_path(tmp_path) -> None:
    cfg = _config(['--library', str(tmp_path), '--state-path', '~/state.json'])
    assert cfg.state_path.endswith('state.json')
    assert not cfg.state_path.startswith('~')


def test_password_is_masked() -> None:
    cfg = _config(['--library-url', 'http://h:1/#l', '--username', 'u', '--password', 'secret'])
    assert cfg.to_dict()['password'] == '***'
    assert 'secret' not in repr(cfg.to_dict())


def test_unknown_keys_warn(caplog) -> None:
    caplog.set_level(logging.WARNING, logger='calibre_updatr.config')
    merged = merge_config(DEFAULT_CONFIG, {'policy': {'bogus': 1}, 'nonsense': True})
    assert 'bogus' not in merged['policy']
    assert 'policy.bogus' in caplog.text
    assert 'nonsense' in caplog.text


@pytest.mark.parametrize('data', [
    {'policy': 'not a mapping'},
    {'fetch': {'headless_env': ['A=1']}},
])
def test_wrong_section_types_are_errors(data) -> None:
    with pytest.raises(ConfigError):
        merge_config(DEFAULT_CONFIG, data)


@pytest.mark.parametrize('data', [
    {'policy': {'merge': 'smash'}},
    {'policy': {'min_score_to_skip_fetch': 'high'}},
    {'fetch': {'backend': 'goodreads'}},
    {'fetch': {'delay_between_fetches_seconds': -1}},
    {'state': {'checkpoint_interval': 0}},
    {'tools': {'calibredb_env': 'weird'}},
])
def test_invalid_values_are_errors(data) -> None:
    cfg = _config(['--library', '/lib'], data)
    with pytest.raises(ConfigError):
        cfg.policy()
        cfg.fetch()
        _ = cfg.calibredb_env


def test_config_file_discovery(tmp_path) -> None:
    assert find_config_file() is None
    (tmp_path / 'calibre_updatr.yaml').write_text('formats: [pdf]\n', encoding='utf-8')
    assert find_config_file() == str(tmp_path / 'calibre_updatr.yaml')
    with pytest.raises(ConfigError):
        find_config_file(explicit_path=str(tmp_path / 'missing.yaml'))


def test_library_config_file_is_found(tmp_path) -> None:
    lib = tmp_path / 'Calibre'
    lib.mkdir()
    (lib / 'calibre_updatr.yaml').write_text('policy:\n  min_score_to_skip_fetch: 90\n', encoding='utf-8')
    args = build_update_parser().parse_args(['--library', str(lib)])
    cfg = load_config_for(args)
    assert cfg.config_path == str(lib / 'calibre_updatr.yaml')
    assert cfg.policy().min_score_to_skip_fetch == 90


def test_broken_yaml_is_an_error(tmp_path) -> None:
    bad = tmp_path / 'bad.yaml'
    bad.write_text('policy: [unclosed\n', encoding='utf-8')
    args = build_update_parser().parse_args(['--config', str(bad)])
    with pytest.raises(ConfigError):
        load_config_for(args)


def test_generated_config_matches_defaults() -> None:
    assert yaml.safe_load(default_config_yaml()) == DEFAULT_CONFIG


def test_dups_options(tmp_path) -> None:
    args = build_dups_parser().parse_args([str(tmp_path), '--ext', 'EPUB', '--ext', '.pdf',
                                           '--threads', '4', '--output', 'json'])
    dups = UpdaterConfig(args, {'dups': {'min_size': 10}}, None).dups()
    assert dups.extensions == ('epub', 'pdf')
    assert dups.threads == 4
    assert dups.min_size == 10
    assert dups.output == 'json'
    assert dups.include_sidecars is False


def test_empty_dups_extension_list_means_defaults(tmp_path) -> None:
    args = build_dups_parser().parse_args([str(tmp_path)])
    dups = UpdaterConfig(args, {'dups': {'extensions': []}}, None).dups()
    assert dups.extensions == DupsConfig().extensions
    assert 'epub' in dups.extensions
