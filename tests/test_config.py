"""Tests for JSON configuration storage and log sanitisation."""

import json
import os
import re

import pytest

from clikit.config import (
    CONFIG_SCHEMA, DEFAULT_CONFIG, REDACTED, ConfigValidationError, JsonConfigProvider,
    deep_merge, sanitize_for_logging
)


def _provider(path=None) -> JsonConfigProvider:
    return JsonConfigProvider(path, default_config=DEFAULT_CONFIG, schema=CONFIG_SCHEMA)


class TestInMemory:
    def test_defaults_available(self) -> None:
        config = _provider()
        assert config.path is None
        assert config.get('executor.max_concurrent') == 10
        assert config.get('parser.mode') == 'strict'
        assert config.get('missing.key', 'fallback') == 'fallback'
        assert config.get('executor.max_concurrent.deeper', 'x') == 'x'

    def test_set_creates_nested_keys(self) -> None:
        config = _provider()
        config.set('plugins.cache.ttl', 30)
        assert config.get('plugins.cache.ttl') == 30
        assert config.get_all()['plugins'] == {'cache': {'ttl': 30}}

    def test_returned_values_are_copies(self) -> None:
        config = _provider()
        section = config.get('executor')
        section['max_concurrent'] = 99
        assert config.get('executor.max_concurrent') == 10

    def test_save_is_noop(self) -> None:
        _provider().save()

    def test_update_validates(self) -> None:
        config = _provider()
        config.update({'executor': {'timeout': 2.5}})
        assert config.get('executor.timeout') == 2.5
        with pytest.raises(ConfigValidationError):
            config.update({'parser': {'mode': 'lenient'}})
        assert config.get('parser.mode') == 'strict'

    def test_invalid_defaults_rejected(self) -> None:
        with pytest.raises(ConfigValidationError):
            JsonConfigProvider(default_config={'executor': {'max_concurrent': 0}}, schema=CONFIG_SCHEMA)


class TestFileStorage:
    def test_creates_file_from_defaults(self, tmp_path) -> None:
        path = tmp_path / 'nested' / 'config.json'
        _provider(str(path))
        assert json.loads(path.read_text(encoding='utf-8')) == DEFAULT_CONFIG

    def test_file_values_merge_over_defaults(self, tmp_path) -> None:
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'executor': {'timeout': 5}}), encoding='utf-8')

        config = _provider(str(path))

        assert config.get('executor.timeout') == 5
        assert config.get('executor.max_concurrent') == 10

    def test_save_round_trips(self, tmp_path) -> None:
        path = tmp_path / 'config.json'
        config = _provider(str(path))
        config.set('logging.level', 'DEBUG')
        config.save()

        assert _provider(str(path)).get('logging.level') == 'DEBUG'
        assert [p.name for p in tmp_path.iterdir()] == ['config.json']

    @pytest.mark.parametrize('content', [
        '{not json',
        json.dumps({'parser': {'mode': 'lenient'}}),
        json.dumps(['not', 'an', 'object']),
    ])
    def test_corrupt_file_is_backed_up_and_reset(self, tmp_path, content) -> None:
        path = tmp_path / 'config.json'
        path.write_text(content, encoding='utf-8')

        config = _provider(str(path))

        assert config.get('parser.mode') == 'strict'
        backups = [p for p in tmp_path.iterdir() if '.corrupt.' in p.name]
        assert len(backups) == 1
        assert backups[0].read_text(encoding='utf-8') == content
        assert json.loads(path.read_text(encoding='utf-8')) == DEFAULT_CONFIG

    def test_save_rejects_invalid_values(self, tmp_path) -> None:
        path = tmp_path / 'config.json'
        config = _provider(str(path))
        config.set('executor.max_concurrent', 'many')
        with pytest.raises(ConfigValidationError):
            config.save()
        assert json.loads(path.read_text(encoding='utf-8'))['executor']['max_concurrent'] == 10

    def test_path_is_expanded(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv('HOME', str(tmp_path))
        config = _provider('~/app.json')
        assert config.path == os.path.join(str(tmp_path), 'app.json')


class TestHelpers:
    def test_sanitize_masks_secret_keys(self) -> None:
        data = {
            'user': 'bob',
            'password': 'hunter2',
            'api_key': 'k',
            'nested': {'auth_token': 't', 'port': 22},
            'credentials': ['a', 'b'],
        }
        clean = sanitize_for_logging(data)
        assert clean['user'] == 'bob'
        assert clean['password'] == REDACTED
        assert clean['api_key'] == REDACTED
        assert clean['nested'] == {'auth_token': REDACTED, 'port': 22}
        assert clean['credentials'] == REDACTED
        assert data['password'] == 'hunter2'

    def test_sanitize_extra_patterns(self) -> None:
        clean = sanitize_for_logging({'session_id': 'abc'}, {re.compile(r'^session_id$')})
        assert clean['session_id'] == REDACTED

    def test_deep_merge(self) -> None:
        base = {'a': {'b': 1, 'c': 2}, 'd': [1]}
        merged = deep_merge(base, {'a': {'c': 3}, 'e': 4})
        assert merged == {'a': {'b': 1, 'c': 3}, 'd': [1], 'e': 4}
        assert base == {'a': {'b': 1, 'c': 2}, 'd': [1]}
