import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from daolens.config import CacheConfig
from daolens.config import DaoLensConfig
from daolens.config import EvmNodeLedgerConfig
from daolens.config import FileStatsSourceConfig
from daolens.config import HttpConfig
from daolens.config import HttpStatsSourceConfig
from daolens.config import RemoteSourceConfig
from daolens.config import ResolvedHttpConfig
from daolens.enums import CacheCategory
from daolens.exceptions import ConfigurationError
from daolens.yaml import substitute_env_variables
from tests import TEST_CONFIGS

TOKEN = '0xc00e94cb662c3520282e6f5717214004a7f26888'


def _write_config(path: Path, ledger: str) -> Path:
    config_path = path / 'daolens.yaml'
    config_path.write_text(f'spec_version: 1.0\nledger:\n{ledger}')
    return config_path


async def test_load_defaults() -> None:
    config = DaoLensConfig.load([TEST_CONFIGS])

    assert config.ledger.url == 'https://eth.llamarpc.com'
    assert config.ledger.token == TOKEN
    assert config.ledger.helper is None
    assert config.ledger.protocol_accounts == (
        '0xc0da02939e1441f497fd74f78ce7decb17b66529',
        '0x6d903f6003cca6255d85cca4d3b5e5146dc33925',
    )
    assert config.crawler.min_edges == 25
    assert config.crawler.delegate_changed_lookback == 100_000
    assert config.cache.ttl == 300
    assert config.cache.path is None
    assert config.remote is not None
    assert config.remote.api_key is None
    assert config.remote.get_path(CacheCategory.delegation) == 'delegation-data'
    assert config.proposals.max_proposal_id == 30

    primary, local = config.current_stats.sources
    assert isinstance(primary, HttpStatsSourceConfig)
    assert isinstance(local, FileStatsSourceConfig)


async def test_load_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv('NODE_URL', 'http://localhost:8545/')
    monkeypatch.setenv('CACHE_TTL', '60')
    monkeypatch.setenv('API_KEY', 'secret')

    config = DaoLensConfig.load([TEST_CONFIGS / 'daolens.yaml'], unsafe=True)

    assert config.ledger.url == 'http://localhost:8545'
    assert config.cache.ttl == 60
    assert config.remote is not None
    assert config.remote.api_key == 'secret'
    assert config.environment['API_KEY'] == 'secret'


async def test_substitute_env_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv('EMPTY', '')
    monkeypatch.delenv('MISSING', raising=False)

    assert substitute_env_variables('a: ${EMPTY:-x}', unsafe=True) == ('a: ', {'EMPTY': ''})
    assert substitute_env_variables('a: ${MISSING:-x}', unsafe=True) == ('a: x', {'MISSING': 'x'})
    assert substitute_env_variables('a: ${EMPTY:-x}', unsafe=False) == ('a: x', {'EMPTY': 'x'})
    with pytest.raises(ConfigurationError):
        substitute_env_variables('a: ${MISSING}', unsafe=True)


async def test_dump() -> None:
    config = DaoLensConfig.load([TEST_CONFIGS])

    dumped = config.dump()

    assert 'kind: evm.node' in dumped
    assert TOKEN in dumped
    assert 'api_key' not in dumped


async def test_set_up_logging() -> None:
    config = DaoLensConfig.load([TEST_CONFIGS])

    config.set_up_logging()

    assert logging.getLogger('daolens').level == logging.WARNING


@pytest.mark.parametrize(
    'ledger',
    (
        f'  url: not_an_url\n  token: "{TOKEN}"\n',
        '  url: https://localhost\n  token: "0xlalala"\n',
        f'  url: https://localhost\n  token: "{TOKEN}"\n  unknown: 1\n',
        '  url: https://localhost\n',
    ),
)
async def test_load_invalid(tmp_path: Path, ledger: str) -> None:
    with pytest.raises(ConfigurationError):
        DaoLensConfig.load([_write_config(tmp_path, ledger)])


async def test_load_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        DaoLensConfig.load([tmp_path / 'nothing.yaml'])


async def test_validators() -> None:
    with pytest.raises(ValidationError):
        EvmNodeLedgerConfig(url='not_an_url', token=TOKEN)
    with pytest.raises(ValidationError):
        EvmNodeLedgerConfig(url='https://localhost', token='0x' + 'ab' * 19)
    with pytest.raises((ValidationError, ConfigurationError)):
        CacheConfig(ttl=0)
    with pytest.raises((ValidationError, ConfigurationError)):
        RemoteSourceConfig(url='https://localhost', paths={'votes': 'votes'})

    config = EvmNodeLedgerConfig(url='https://localhost/', token=TOKEN.upper().replace('0X', '0x'))
    assert config.url == 'https://localhost'
    assert config.token == TOKEN


async def test_http_config() -> None:
    config = ResolvedHttpConfig.create(
        HttpConfig(retry_count=0, batch_size=10_000),
        HttpConfig(batch_size=500),
    )

    assert config.retry_count == 0
    assert config.batch_size == 500
    assert config.retry_sleep == 1.0


async def test_load_override(tmp_path: Path) -> None:
    override = tmp_path / 'override.yml'
    override.write_text('cache:\n  ttl: 60\n')

    config = DaoLensConfig.load([TEST_CONFIGS, tmp_path / 'override.yaml'])

    assert config.cache.ttl == 60
    assert config.cache.path is None
    assert config.crawler.min_edges == 25
