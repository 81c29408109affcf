#!/usr/bin/env python3
"""
Calibre Updatr - Configuration Loader
=====================================
Loads configuration from YAML file with CLI flag overrides.

Priority (highest wins):
  1. CLI flags (explicit only, not defaults)
  2. Environment variables (CALIBRE_LIBRARY, CALIBRE_LIBRARY_URL,
     CALIBRE_USERNAME, CALIBRE_PASSWORD, CALIBRE_UPDATR_LOG_LEVEL)
  3. Config file (calibre_updatr.yaml)
  4. Built-in defaults

Config file search order:
  1. --config <path>  (explicit)
  2. ./calibre_updatr.yaml  (current directory)
  3. <library>/calibre_updatr.yaml  (alongside the library)
  4. ~/.config/calibre-updatr/config.yaml  (user config)
  5. /etc/calibre-updatr/config.yaml  (system config)
"""

import argparse
import copy
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml

from calibre_updatr_errors import ConfigError

log = logging.getLogger('calibre_updatr.config')

CONFIG_FILENAMES = ('calibre_updatr.yaml', 'calibre_updatr.yml')
STATE_FILENAME = '.calibre_updatr_state.json'

DEFAULT_HEADLESS_ENV = {
    'QT_QPA_PLATFORM': 'offscreen',
    'QTWEBENGINE_DISABLE_SANDBOX': '1',
    'QTWEBENGINE_CHROMIUM_FLAGS': '--no-sandbox --disable-gpu',
    'QTWEBENGINE_DISABLE_GPU': '1',
    'LIBGL_ALWAYS_SOFTWARE': '1',
}

DEFAULT_WEIGHTS = {
    'title': 15, 'authors': 15, 'identifiers': 15, 'description': 10,
    'tags': 10, 'publisher': 10, 'pubdate': 10, 'cover': 5,
    'language': 5, 'series': 5,
}

DEFAULT_DUP_EXTENSIONS = [
    'epub', 'pdf', 'mobi', 'azw', 'azw3', 'djvu', 'fb2', 'rtf', 'txt',
    'doc', 'docx', 'cbz', 'cbr',
]

DEFAULT_CONFIG: Dict[str, Any] = {
    'logging': {'level': 'info', 'dir': None},
    'library': {'path': None, 'url': None, 'username': None, 'password': None},
    'state': {'path': None, 'checkpoint_interval': 1},
    'formats': ['epub', 'pdf'],
    'tools': {'calibredb_env': 'inherit', 'debug_env': False, 'timeout_seconds': 300},
    'fetch': {
        'backend': 'calibre',
        'headless': True,
        'headless_env': dict(DEFAULT_HEADLESS_ENV),
        'use_xvfb': False,
        'timeout_seconds': 180,
        'delay_between_fetches_seconds': 0.35,
    },
    'policy': {
        'reprocess_on_metadata_change': False,
        'min_score_to_skip_fetch': 65,
        'allowed_languages': ['en', 'eng', 'en-us', 'en-gb'],
        'include_missing_language': True,
        'merge': 'fill_gaps',
        'max_failures': 0,
    },
    'scoring': {
        'weights': dict(DEFAULT_WEIGHTS),
        'require_title': True,
        'require_authors': True,
    },
    'dups': {
        'extensions': list(DEFAULT_DUP_EXTENSIONS),
        'min_size': 0,
        'include_sidecars': False,
        'threads': 0,
        'follow_symlinks': False,
        'output': 'text',
    },
}

MERGE_RULES = ('fill_gaps', 'override')
ENV_MODES = ('inherit', 'clean', 'override')
FETCH_BACKENDS = ('calibre', 'openlibrary')
OUTPUT_FORMATS = ('text', 'json')


# ============================================================================
# Resolved, immutable settings handed to the components
# ============================================================================

@dataclass(frozen=True)
class ScoringConfig:
    weights: Tuple[Tuple[str, int], ...] = tuple(DEFAULT_WEIGHTS.items())
    require_title: bool = True
    require_authors: bool = True

    def __post_init__(self):
        unknown = [name for name, _ in self.weights if name not in DEFAULT_WEIGHTS]
        if unknown:
            raise ConfigError(f"Unknown scoring weight(s): {', '.join(unknown)}")
        for name, weight in self.weights:
            if not isinstance(weight, int) or isinstance(weight, bool) or weight < 0:
                raise ConfigError(f"Scoring weight for {name!r} must be a non-negative integer")
        if self.total_weight <= 0:
            raise ConfigError("Scoring weights must sum to a positive total")

    @property
    def total_weight(self) -> int:
        return sum(w for _, w in self.weights)

    def weight(self, name: str) -> int:
        return dict(self.weights).get(name, 0)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> 'ScoringConfig':
        weights = dict(DEFAULT_WEIGHTS)
        weights.update(data.get('weights') or {})
        return cls(weights=tuple(weights.items()),
                   require_title=bool(data.get('require_title', True)),
                   require_authors=bool(data.get('require_authors', True)))


@dataclass(frozen=True)
class PolicyConfig:
    reprocess_on_metadata_change: bool = False
    min_score_to_skip_fetch: int = 65
    allowed_languages: Tuple[str, ...] = ('en', 'eng', 'en-us', 'en-gb')
    include_missing_language: bool = True
    merge: str = 'fill_gaps'
    max_failures: int = 0
    delay_between_fetches_seconds: float = 0.35
    formats: Tuple[str, ...] = ('epub', 'pdf')
    checkpoint_interval: int = 1
    dry_run: bool = False

    def __post_init__(self):
        if self.merge not in MERGE_RULES:
            raise ConfigError(f"policy.merge must be one of {', '.join(MERGE_RULES)}, got {self.merge!r}")
        if self.delay_between_fetches_seconds < 0:
            raise ConfigError("fetch.delay_between_fetches_seconds cannot be negative")
        if not self.formats:
            raise ConfigError("No formats specified. Set formats in the config file or pass --formats")
        if self.checkpoint_interval < 1:
            raise ConfigError("state.checkpoint_interval must be at least 1")


@dataclass(frozen=True)
class FetchConfig:
    backend: str = 'calibre'
    headless: bool = True
    headless_env: Tuple[Tuple[str, str], ...] = tuple(DEFAULT_HEADLESS_ENV.items())
    use_xvfb: bool = False
    timeout_seconds: int = 180

    def __post_init__(self):
        if self.backend not in FETCH_BACKENDS:
            raise ConfigError(f"fetch.backend must be one of {', '.join(FETCH_BACKENDS)}, got {self.backend!r}")


@dataclass(frozen=True)
class DupsConfig:
    extensions: Tuple[str, ...] = tuple(DEFAULT_DUP_EXTENSIONS)
    min_size: int = 0
    include_sidecars: bool = False
    threads: int = 0
    follow_symlinks: bool = False
    output: str = 'text'

    def __post_init__(self):
        if self.output not in OUTPUT_FORMATS:
            raise ConfigError(f"dups.output must be one of {', '.join(OUTPUT_FORMATS)}, got {self.output!r}")
        if self.min_size < 0 or self.threads < 0:
            raise ConfigError("dups.min_size and dups.threads cannot be negative")


# ============================================================================
# File handling
# ============================================================================

def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML config file."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def find_config_file(library: Optional[str] = None, explicit_path: Optional[str] = None) -> Optional[str]:
    """Search for config file in standard locations."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        raise ConfigError(f"Config file not found: {explicit_path}")

    search_paths = [os.path.join(os.getcwd(), name) for name in CONFIG_FILENAMES]
    if library and not is_remote_library(library):
        search_paths.extend(os.path.join(library, name) for name in CONFIG_FILENAMES)
    search_paths.extend([
        os.path.expanduser('~/.config/calibre-updatr/config.yaml'),
        os.path.expanduser('~/.config/calibre-updatr/config.yml'),
        '/etc/calibre-updatr/config.yaml',
    ])

    for path in search_paths:
        if os.path.isfile(path):
            return path
    return None


def merge_config(defaults: Dict[str, Any], overrides: Dict[str, Any], _section: str = '') -> Dict[str, Any]:
    """Overlay user config on defaults, warning on keys we do not know."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        where = f"{_section}.{key}" if _section else key
        if key not in defaults:
            log.warning(f"Ignoring unknown config key: {where}")
            continue
        default = defaults[key]
        if isinstance(default, dict) and key not in ('headless_env', 'weights'):
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigError(f"Config section {where!r} must be a mapping")
            merged[key] = merge_config(default, value, where)
        elif isinstance(default, dict):
            if value is not None and not isinstance(value, dict):
                raise ConfigError(f"Config key {where!r} must be a mapping")
            merged[key] = dict(value or {})
        else:
            merged[key] = value
    return merged


def default_config_yaml() -> str:
    return yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False, default_flow_style=False)


# ============================================================================
# Library / state path helpers
# ============================================================================

def is_remote_library(location: Optional[str]) -> bool:
    return bool(location) and location.strip().lower().startswith(('http://', 'https://'))


def normalize_library_location(location: str) -> str:
    trimmed = location.strip()
    if is_remote_library(trimmed):
        return trimmed.rstrip('/')
    return os.path.expanduser(trimmed)


def normalize_optional_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


def default_state_path(library: str) -> str:
    """State lives next to a local library; remote libraries get a per-URL cache file."""
    if not is_remote_library(library):
        return os.path.join(library, STATE_FILENAME)
    base = os.environ.get('XDG_CACHE_HOME') or os.path.join(os.path.expanduser('~'), '.cache')
    digest = hashlib.sha1(library.encode('utf-8')).hexdigest()[:12]
    return os.path.join(base, 'calibre-updatr', f'state-{digest}.json')


def normalize_formats(values: Any) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = values.replace(';', ',').split(',')
    out = []
    for v in values:
        s = str(v).strip().lstrip('.').lower()
        if s and s not in out:
            out.append(s)
    return tuple(out)


# ============================================================================
# Merged config
# ============================================================================

class UpdaterConfig:
    """Merged configuration from config file, environment, and CLI args."""

    def __init__(self, args: argparse.Namespace, config_data: Dict[str, Any], config_path: Optional[str]):
        self._args = args
        self._config = merge_config(DEFAULT_CONFIG, config_data or {})
        self.config_path = config_path

    def _get(self, cli_name: Optional[str], config_key: str, env_var: Optional[str] = None,
             type_fn=None) -> Any:
        """Get config value with priority: explicit CLI > env > config > default."""
        # 1. Explicit CLI flag (our parsers default everything to None)
        cli_val = getattr(self._args, cli_name, None) if cli_name else None
        if cli_val is not None:
            return self._convert(cli_val, type_fn, cli_name)

        # 2. Environment variable
        if env_var:
            env_val = os.environ.get(env_var)
            if env_val is not None and env_val.strip():
                return self._convert(env_val, type_fn, env_var)

        # 3. Config file / defaults, dotted keys like "policy.merge"
        config_val: Any = self._config
        for part in config_key.split('.'):
            config_val = config_val.get(part) if isinstance(config_val, dict) else None
        return self._convert(config_val, type_fn, config_key) if config_val is not None else None

    @staticmethod
    def _convert(value: Any, type_fn, name: str) -> Any:
        if type_fn is None:
            return value
        try:
            return type_fn(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}: {value!r}") from e

    # --- Logging ---
    @property
    def log_level(self) -> str:
        if getattr(self._args, 'verbose', None):
            return 'debug'
        return str(self._get(None, 'logging.level', env_var='CALIBRE_UPDATR_LOG_LEVEL') or 'info').lower()

    @property
    def log_dir(self) -> Optional[str]:
        value = normalize_optional_string(self._get('log_dir', 'logging.dir'))
        return os.path.expanduser(value) if value else None

    # --- Library ---
    @property
    def library(self) -> str:
        # An explicit --library means a local library even if a URL is configured.
        if getattr(self._args, 'library', None):
            return normalize_library_location(self._args.library)
        url = normalize_optional_string(self._get('library_url', 'library.url', env_var='CALIBRE_LIBRARY_URL'))
        path = normalize_optional_string(self._get(None, 'library.path', env_var='CALIBRE_LIBRARY'))
        location = url or path
        if not location:
            raise ConfigError("Missing library path or library URL (set library.path / library.url or pass --library)")
        return normalize_library_location(location)

    @property
    def is_remote(self) -> bool:
        return is_remote_library(self.library)

    @property
    def username(self) -> Optional[str]:
        return normalize_optional_string(self._get('username', 'library.username', env_var='CALIBRE_USERNAME'))

    @property
    def password(self) -> Optional[str]:
        return normalize_optional_string(self._get('password', 'library.password', env_var='CALIBRE_PASSWORD'))

    # --- State ---
    @property
    def state_path(self) -> str:
        explicit = normalize_optional_string(self._get('state_path', 'state.path'))
        if explicit:
            return os.path.expanduser(explicit)
        return default_state_path(self.library)

    # --- Tools ---
    @property
    def calibredb_env(self) -> str:
        mode = str(self._get(None, 'tools.calibredb_env')).lower()
        if mode not in ENV_MODES:
            raise ConfigError(f"tools.calibredb_env must be one of {', '.join(ENV_MODES)}, got {mode!r}")
        return mode

    @property
    def debug_env(self) -> bool:
        return bool(self._get(None, 'tools.debug_env'))

    @property
    def tool_timeout(self) -> int:
        return self._get(None, 'tools.timeout_seconds', type_fn=int)

    @property
    def limit(self) -> Optional[int]:
        return getattr(self._args, 'limit', None)

    # --- Component settings ---
    def policy(self) -> PolicyConfig:
        langs = self._get('allow_language', 'policy.allowed_languages') or []
        if isinstance(langs, str):
            langs = [langs]
        return PolicyConfig(
            reprocess_on_metadata_change=bool(self._get('reprocess_on_change', 'policy.reprocess_on_metadata_change')),
            min_score_to_skip_fetch=self._get('min_score', 'policy.min_score_to_skip_fetch', type_fn=int),
            allowed_languages=tuple(str(l).strip().lower().replace('_', '-') for l in langs if str(l).strip()),
            include_missing_language=bool(self._get('include_missing_language', 'policy.include_missing_language')),
            merge=str(self._get('merge', 'policy.merge')),
            max_failures=self._get(None, 'policy.max_failures', type_fn=int),
            delay_between_fetches_seconds=self._get('delay', 'fetch.delay_between_fetches_seconds', type_fn=float),
            formats=normalize_formats(self._get('formats', 'formats')),
            checkpoint_interval=self._get(None, 'state.checkpoint_interval', type_fn=int),
            dry_run=bool(getattr(self._args, 'dry_run', None)),
        )

    def scoring(self) -> ScoringConfig:
        return ScoringConfig.from_mapping(self._config.get('scoring', {}))

    def fetch(self) -> FetchConfig:
        env = self._config['fetch'].get('headless_env') or {}
        return FetchConfig(
            backend=str(self._get('fetch_backend', 'fetch.backend')),
            headless=bool(self._get(None, 'fetch.headless')),
            headless_env=tuple((str(k), str(v)) for k, v in env.items()),
            use_xvfb=bool(self._get(None, 'fetch.use_xvfb')),
            timeout_seconds=self._get(None, 'fetch.timeout_seconds', type_fn=int),
        )

    def dups(self) -> DupsConfig:
        exts = self._get('ext', 'dups.extensions')
        return DupsConfig(
            extensions=normalize_formats(exts) or tuple(DEFAULT_DUP_EXTENSIONS),
            min_size=self._get('min_size', 'dups.min_size', type_fn=int),
            include_sidecars=bool(self._get('include_sidecars', 'dups.include_sidecars')),
            threads=self._get('threads', 'dups.threads', type_fn=int),
            follow_symlinks=bool(self._get('follow_symlinks', 'dups.follow_symlinks')),
            output=str(self._get('output', 'dups.output')),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Dump resolved config as dict (for logging). Credentials are masked."""
        policy = self.policy()
        return {
            'library': self.library,
            'username': self.username,
            'password': '***' if self.password else None,
            'state_path': self.state_path,
            'formats': list(policy.formats),
            'dry_run': policy.dry_run,
            'reprocess_on_metadata_change': policy.reprocess_on_metadata_change,
            'min_score_to_skip_fetch': policy.min_score_to_skip_fetch,
            'allowed_languages': list(policy.allowed_languages),
            'include_missing_language': policy.include_missing_language,
            'merge': policy.merge,
            'fetch_backend': self.fetch().backend,
            'config_path': self.config_path,
        }

    def __repr__(self):
        return f"UpdaterConfig({self.config_path or 'defaults'})"


# ============================================================================
# CLI
# ============================================================================

def _add_common(parser: argparse.ArgumentParser):
    parser.add_argument('--config', '-c', help='Path to config file (YAML)')
    parser.add_argument('--verbose', '-v', action='store_true', default=None,
                        help='Verbose debug output')
    parser.add_argument('--log-dir', help='Directory for log files')


def _add_library(parser: argparse.ArgumentParser):
    lib = parser.add_argument_group('library')
    lib.add_argument('--library', help='Path to a local Calibre library')
    lib.add_argument('--library-url', help='Calibre Content Server URL (e.g. http://host:8080/#lib)')
    lib.add_argument('--username', help='Content Server username (or CALIBRE_USERNAME env)')
    lib.add_argument('--password', help='Content Server password (or CALIBRE_PASSWORD env)')
    lib.add_argument('--state-path', help='Override the processing state file location')


def build_update_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='calibre-updatr',
        description="Calibre bulk metadata updater + format embedder (idempotent).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Commands:
  calibre-updatr [update] ...   fetch/apply/embed metadata (default)
  calibre-updatr dups ...       find duplicate files by content hash
  calibre-updatr state ...      inspect or edit the processing state

Examples:
  calibre-updatr --library ~/Calibre --dry-run
  calibre-updatr --library-url "http://localhost:8081/#books" --username me
  calibre-updatr --library ~/Calibre --formats epub --reprocess-on-change
  calibre-updatr --generate-config calibre_updatr.yaml
        """,
    )
    _add_common(parser)
    parser.add_argument('--generate-config', nargs='?', const='-', metavar='PATH',
                        help='Write the default config file (stdout if no PATH) and exit')
    _add_library(parser)

    policy = parser.add_argument_group('processing policy')
    policy.add_argument('--formats', help='Comma-separated target formats (default: epub,pdf)')
    policy.add_argument('--dry-run', action='store_true', default=None,
                        help='Report decisions without fetching, embedding or writing state')
    policy.add_argument('--reprocess-on-change', dest='reprocess_on_change', action='store_true', default=None,
                        help='Reprocess books whose tracked metadata changed since the last success')
    policy.add_argument('--no-reprocess-on-change', dest='reprocess_on_change', action='store_false', default=None,
                        help='Process each book at most once (default)')
    policy.add_argument('--min-score', type=int,
                        help='Skip fetching when completeness score >= N (0-100)')
    policy.add_argument('--allow-language', action='append', default=None, metavar='CODE',
                        help='Allowed language code (repeatable; replaces the configured set)')
    policy.add_argument('--include-missing-language', dest='include_missing_language',
                        action='store_true', default=None,
                        help='Process books with no language set')
    policy.add_argument('--exclude-missing-language', dest='include_missing_language',
                        action='store_false', default=None, help='Leave books with no language alone')
    policy.add_argument('--merge', choices=MERGE_RULES,
                        help='How fetched values combine with existing ones (default: fill_gaps)')
    policy.add_argument('--delay', type=float,
                        help='Seconds to wait after each real fetch (default: 0.35)')
    policy.add_argument('--fetch-backend', choices=FETCH_BACKENDS,
                        help='Metadata source (default: calibre fetch-ebook-metadata)')
    policy.add_argument('--limit', type=int, help='Process only the first N books')
    return parser


def build_dups_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='calibre-updatr dups',
        description="Find duplicate book files by full-content hash.",
    )
    _add_common(parser)
    parser.add_argument('root', nargs='?', help='Directory to scan (default: the configured library)')
    parser.add_argument('--library', help='Library folder to scan (same as ROOT)')
    parser.add_argument('--ext', action='append', default=None,
                        help='Only consider these extensions (repeatable). Example: --ext epub --ext pdf')
    parser.add_argument('--min-size', type=int, help='Skip files smaller than this many bytes')
    parser.add_argument('--include-sidecars', action='store_true', default=None,
                        help='Also hash Calibre sidecar files (metadata.opf, cover.jpg, ...)')
    parser.add_argument('--threads', type=int, help='Hashing threads (0 = automatic)')
    parser.add_argument('--follow-symlinks', action='store_true', default=None,
                        help='Follow symlinks while walking')
    parser.add_argument('--output', choices=OUTPUT_FORMATS, help='Report format (default: text)')
    parser.add_argument('--out', help='Write the report to a file (default: stdout)')
    return parser


def build_state_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='calibre-updatr state',
        description="Inspect or edit the processing state file.",
    )
    _add_common(parser)
    _add_library(parser)
    parser.add_argument('--failed', action='store_true', help='List books whose last attempt failed')
    parser.add_argument('--forget', type=int, nargs='+', metavar='BOOK_ID',
                        help='Delete the records of these books so they are processed again')
    return parser


def load_config_for(args: argparse.Namespace) -> UpdaterConfig:
    """Find and load the config file, then merge it with the parsed CLI args."""
    library_hint = getattr(args, 'library', None) or getattr(args, 'root', None)
    config_path = find_config_file(library=library_hint, explicit_path=getattr(args, 'config', None))
    config_data: Dict[str, Any] = {}
    if config_path:
        config_data = load_yaml(config_path)
        log.debug(f"Loaded config: {config_path}")
    return UpdaterConfig(args, config_data, config_path)
