"""
Configuration for the toolkit's tunables

Values are addressed by dot-separated keys (``executor.max_concurrent``).
A provider created with a file path keeps the file in sync on ``save()``;
one created without a path lives purely in memory.
"""

import copy
import json
import logging
import os
import re
import tempfile
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Pattern, Set

import jsonschema

from .interfaces import ConfigProvider

REDACTED = '***REDACTED***'

_SECRET_KEY_SUFFIXES = (
    'password', 'passwd', 'token', 'api[_-]?key', 'api[_-]?secret',
    'secret', 'private[_-]?key', 'auth', 'credentials?',
)

SENSITIVE_KEY_PATTERNS: Set[Pattern] = {
    re.compile(rf'^.*{suffix}$', re.IGNORECASE) for suffix in _SECRET_KEY_SUFFIXES
}

DEFAULT_CONFIG: Dict[str, Any] = {
    'executor': {
        'max_concurrent': 10,
        'timeout': None,
    },
    'pipeline': {
        'profile': 'default',
    },
    'parser': {
        'mode': 'strict',
        'case_sensitive': True,
    },
    'logging': {
        'level': 'WARNING',
        'format': 'text',
    },
}


def _section(**properties: Any) -> Dict[str, Any]:
    return {'type': 'object', 'properties': properties}


CONFIG_SCHEMA: Dict[str, Any] = _section(
    executor=_section(
        max_concurrent={'type': 'integer', 'minimum': 1},
        timeout={'type': ['number', 'null'], 'exclusiveMinimum': 0},
    ),
    pipeline=_section(
        profile={'enum': ['default', 'minimal', 'debug']},
    ),
    parser=_section(
        mode={'enum': ['strict', 'permissive']},
        case_sensitive={'type': 'boolean'},
    ),
    logging=_section(
        level={'enum': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']},
        format={'enum': ['text', 'json']},
    ),
)


class ConfigError(Exception):
    """Base exception for configuration errors"""


class ConfigValidationError(ConfigError):
    """Configuration does not match its schema"""


class ConfigIOError(ConfigError):
    """Configuration file could not be read or written"""


def _mask(key: Any, value: Any, patterns: Set[Pattern]) -> Any:
    if any(pattern.match(str(key)) for pattern in patterns):
        return REDACTED
    if isinstance(value, Mapping):
        return {k: _mask(k, v, patterns) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(key, item, patterns) for item in value]
    return value


def sanitize_for_logging(data: Mapping[str, Any],
                         sensitive_patterns: Optional[Set[Pattern]] = None) -> Dict[str, Any]:
    """
    Mask values whose key looks like a secret

    Args:
        data: Mapping to sanitize
        sensitive_patterns: Patterns checked in addition to SENSITIVE_KEY_PATTERNS

    Returns:
        Copy of ``data`` with sensitive values replaced by REDACTED
    """
    patterns = SENSITIVE_KEY_PATTERNS | (sensitive_patterns or set())
    return {key: _mask(key, value, patterns) for key, value in data.items()}


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``updates`` into a copy of ``base``"""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _split_key(key: str) -> List[str]:
    parts = key.split('.')
    if not all(parts):
        raise ValueError(f"Invalid configuration key: {key!r}")
    return parts


class JsonConfigProvider(ConfigProvider):
    """
    Dot-path configuration backed by an optional JSON file

    File values are merged over the defaults and checked against the schema.
    A file that cannot be decoded or fails validation is moved aside as
    ``<path>.corrupt.<timestamp>`` and rewritten from the defaults. Writes go
    through a temporary file in the same directory followed by ``os.replace``.
    """

    def __init__(self,
                 config_path: Optional[str] = None,
                 default_config: Optional[Dict[str, Any]] = None,
                 schema: Optional[Dict[str, Any]] = None):
        """
        Args:
            config_path: JSON file to load and save (None keeps everything in memory)
            default_config: Values used where the file has none
            schema: JSON schema every loaded or saved configuration must satisfy

        Raises:
            ConfigValidationError: Defaults do not satisfy the schema
            ConfigIOError: The file's directory cannot be created
        """
        self._path: Optional[str] = (
            os.path.abspath(os.path.expanduser(config_path)) if config_path else None
        )
        self._validator: Optional[Any] = None
        if schema is not None:
            validator_cls = jsonschema.validators.validator_for(schema)
            validator_cls.check_schema(schema)
            self._validator = validator_cls(schema)

        self._defaults: Dict[str, Any] = copy.deepcopy(default_config or {})
        self._lock = threading.RLock()
        self._logger: logging.Logger = logging.getLogger('clikit.config')

        self.validate(self._defaults)
        self._data: Dict[str, Any] = copy.deepcopy(self._defaults)

        if self._path is not None:
            self._open()

    @property
    def path(self) -> Optional[str]:
        return self._path

    def validate(self, data: Dict[str, Any]) -> None:
        """Raise ConfigValidationError listing every schema violation in ``data``"""
        if self._validator is None:
            return

        problems = [
            f"{'.'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
            for error in self._validator.iter_errors(data)
        ]
        if problems:
            raise ConfigValidationError('; '.join(sorted(problems)))

    # -- file storage -------------------------------------------------------

    def _open(self) -> None:
        try:
            os.makedirs(os.path.dirname(self._path), exist_ok=True)
        except OSError as e:
            raise ConfigIOError(f"Cannot create directory for {self._path}: {e}") from e

        if not os.path.exists(self._path):
            if self._defaults:
                try:
                    self._write(self._data)
                    self._logger.info(f"Wrote default configuration to {self._path}")
                except ConfigError as e:
                    self._logger.error(f"Cannot create {self._path}: {e}")
            return

        try:
            self._data = self._read()
        except (ValueError, ConfigValidationError) as e:
            # ValueError covers JSONDecodeError and UnicodeDecodeError
            self._logger.error(f"Unusable configuration in {self._path}: {e}")
            self._quarantine()
        except OSError as e:
            self._logger.error(f"Cannot read {self._path}: {e}")
        else:
            self._logger.debug(f"Loaded {self._path}: {sanitize_for_logging(self._data)}")

    def _read(self) -> Dict[str, Any]:
        with open(self._path, 'r', encoding='utf-8') as f:
            stored = json.load(f)

        if not isinstance(stored, dict):
            raise ConfigValidationError(f"Expected a JSON object, got {type(stored).__name__}")

        merged = deep_merge(self._defaults, stored)
        self.validate(merged)
        return merged

    def _quarantine(self) -> None:
        backup_path = f"{self._path}.corrupt.{int(time.time())}"
        try:
            os.replace(self._path, backup_path)
            self._logger.warning(f"Moved unusable configuration to {backup_path}")
            self._write(self._data)
        except (OSError, ConfigError) as e:
            raise ConfigError(f"Failed to recover configuration: {e}") from e
        self._logger.info(f"Reset {self._path} to defaults")

    def _write(self, data: Dict[str, Any]) -> None:
        self.validate(data)

        fd, temp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(self._path)}.",
            suffix='.tmp',
            dir=os.path.dirname(self._path),
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise ConfigIOError(f"Cannot write {self._path}: {e}") from e

        self._logger.debug(f"Saved configuration to {self._path}")

    # -- ConfigProvider -----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Value at ``key``, or ``default`` when any segment is missing"""
        with self._lock:
            node: Any = self._data
            for part in _split_key(key):
                if not isinstance(node, dict) or part not in node:
                    return default
                node = node[part]
            return copy.deepcopy(node)

    def set(self, key: str, value: Any) -> None:
        """Set ``key``, creating intermediate sections as needed"""
        *parents, leaf = _split_key(key)
        with self._lock:
            node = self._data
            for part in parents:
                if not isinstance(node.get(part), dict):
                    if part in node:
                        self._logger.warning(f"Replacing non-mapping value at '{part}' while setting '{key}'")
                    node[part] = {}
                node = node[part]
            node[leaf] = value
        self._logger.debug(f"Set config key '{key}'")

    def save(self) -> None:
        """Write the configuration to its file; in-memory providers do nothing"""
        if self._path is None:
            return

        with self._lock:
            try:
                self._write(self._data)
            except ConfigError as e:
                self._logger.error(f"Failed to save configuration: {e}")
                raise

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def update(self, config: Dict[str, Any]) -> None:
        """Deep-merge ``config`` in; nothing changes if the result is invalid"""
        with self._lock:
            merged = deep_merge(self._data, config)
            self.validate(merged)
            self._data = merged
        self._logger.debug("Configuration updated from dictionary")
