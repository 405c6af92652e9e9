"""Config files parsing and processing

* Environment variables substitution (`${...}` syntax) and YAML (de)serialization live in `daolens.yaml`.
* Config validation is done by pydantic dataclasses below.

Every numeric knob of the crawler is configurable; defaults are tuned for public Ethereum RPC providers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Annotated
from typing import Literal

import orjson
from pydantic import AfterValidator
from pydantic import BeforeValidator
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError
from pydantic.dataclasses import dataclass
from pydantic_core import to_jsonable_python

from daolens import __spec_version__
from daolens import env
from daolens.enums import CacheCategory
from daolens.exceptions import ConfigurationError
from daolens.yaml import DaoLensYAMLConfig

DEFAULT_CACHE_TTL = 300.0
DEFAULT_REMOTE_TIMEOUT = 5.0


def _valid_url(v: str) -> str:
    if not v.startswith(('http://', 'https://')):
        raise ConfigurationError(f'`{v}` is not a valid HTTP URL')
    return v.rstrip('/')


def _validate_evm_address(v: str) -> str:
    # NOTE: It's a `config export` call with environment variable substitution disabled
    if '${' in v:
        return v

    from eth_utils.address import is_address
    from eth_utils.address import to_normalized_address

    if not is_address(v):
        raise ValueError(f'{v} is not a valid EVM contract address')
    return to_normalized_address(v)


type ToStr = Annotated[str | float, BeforeValidator(lambda v: str(v))]  # type: ignore
type Url = Annotated[str, BeforeValidator(_valid_url)]  # type: ignore
type Hex = Annotated[str, BeforeValidator(lambda v: hex(v) if isinstance(v, int) else v)]  # type: ignore
type EvmAddress = Annotated[Hex, AfterValidator(_validate_evm_address)]  # type: ignore


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class HttpConfig:
    """Advanced configuration of HTTP client

    :param retry_count: Number of retries after request failed before giving up
    :param retry_sleep: Sleep time between retries
    :param retry_multiplier: Multiplier for sleep time between retries
    :param ratelimit_rate: Number of requests per period ("drops" in leaky bucket)
    :param ratelimit_period: Time period for rate limiting in seconds
    :param ratelimit_sleep: Sleep time between requests when rate limit is reached
    :param connection_limit: Number of simultaneous connections
    :param connection_timeout: Connection timeout in seconds
    :param request_timeout: Request timeout in seconds
    :param batch_size: Number of blocks fetched in a single `eth_getLogs` request
    :param alias: Alias for this HTTP client (dev only)
    """

    retry_count: int | None = None
    retry_sleep: float | None = None
    retry_multiplier: float | None = None
    ratelimit_rate: int | None = None
    ratelimit_period: int | None = None
    ratelimit_sleep: float | None = None
    connection_limit: int | None = None
    connection_timeout: int | None = None
    request_timeout: int | None = None
    batch_size: int | None = None
    alias: str | None = None


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class ResolvedHttpConfig:
    __doc__ = HttpConfig.__doc__

    retry_count: int = 5
    retry_sleep: float = 1.0
    retry_multiplier: float = 2.0
    ratelimit_rate: int = 0
    ratelimit_period: int = 0
    ratelimit_sleep: float = 0.0
    connection_limit: int = 100
    connection_timeout: int = 60
    request_timeout: int = 60
    batch_size: int = 10000
    alias: str | None = None

    @classmethod
    def create(
        cls,
        default: HttpConfig,
        user: HttpConfig | None,
    ) -> ResolvedHttpConfig:
        config = cls()
        # NOTE: Apply datasource defaults first
        for merge_config in (default, user):
            if merge_config is None:
                continue
            for k, v in merge_config.__dict__.items():
                if v is not None:
                    setattr(config, k, v)
        return config


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class EvmNodeLedgerConfig:
    """EVM node ledger config

    :param kind: always 'evm.node'
    :param url: EVM node URL
    :param token: ERC20Votes token contract address
    :param governance: Governor contract address
    :param timelock: Timelock contract address
    :param helper: Delegation helper contract address
    :param http: HTTP client configuration
    """

    kind: Literal['evm.node'] = 'evm.node'
    url: Url
    token: EvmAddress
    governance: EvmAddress | None = None
    timelock: EvmAddress | None = None
    helper: EvmAddress | None = None
    http: HttpConfig | None = None

    @property
    def name(self) -> str:
        return 'ledger'

    @property
    def protocol_accounts(self) -> tuple[str, ...]:
        return tuple(a for a in (self.governance, self.timelock) if a)


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class CrawlerConfig:
    """Delegation crawler tuning

    :param delegate_changed_lookback: Number of blocks scanned for `DelegateChanged` events
    :param transfer_lookback: Number of blocks scanned for `Transfer` events
    :param important_fanout: Max delegators fetched per important account
    :param min_edges: Scan `Transfer` events only when fewer edges were found so far
    :param max_transfer_accounts: Max accounts taken from `Transfer` events
    :param top_delegates: Number of top delegates requested from the helper contract
    :param top_delegate_fanout: Max delegators fetched per top delegate
    :param top_n: Number of delegate aggregates stored in a result
    :param concentration_n: Number of top delegates summed into concentration
    """

    delegate_changed_lookback: int = 100_000
    transfer_lookback: int = 50_000
    important_fanout: int = 50
    min_edges: int = 50
    max_transfer_accounts: int = 200
    top_delegates: int = 20
    top_delegate_fanout: int = 20
    top_n: int = 20
    concentration_n: int = 5


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class CacheConfig:
    """Result cache config

    :param ttl: Seconds a computed result stays fresh
    :param path: JSON file to persist results between runs
    """

    ttl: float = DEFAULT_CACHE_TTL
    path: str | None = None

    def __post_init__(self) -> None:
        if self.ttl <= 0:
            raise ConfigurationError('`cache.ttl` must be positive')

    @property
    def resolved_path(self) -> Path | None:
        if env.CACHE_PATH:
            return env.CACHE_PATH
        return Path(self.path).expanduser() if self.path else None


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class RemoteSourceConfig:
    """Precomputed results API

    :param url: API base URL
    :param api_key: Sent as `X-API-Key` header
    :param timeout: Seconds to wait before falling back to the ledger
    :param paths: Mapping of category names and API paths
    :param http: HTTP client configuration
    """

    url: Url
    api_key: str | None = Field(default=None, repr=False)
    timeout: float = DEFAULT_REMOTE_TIMEOUT
    paths: dict[str, str] = Field(default_factory=lambda: {CacheCategory.delegation.value: 'delegation-data'})
    http: HttpConfig | None = None

    def __post_init__(self) -> None:
        known = {c.value for c in CacheCategory}
        for category in self.paths:
            if category not in known:
                raise ConfigurationError(f'Unknown category `{category}` in `remote.paths`')

    @property
    def name(self) -> str:
        return 'remote'

    def get_path(self, category: CacheCategory) -> str | None:
        return self.paths.get(category.value)


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class HttpStatsSourceConfig:
    """Stats report served over HTTP

    :param kind: always 'http'
    :param name: Source name shown in logs
    :param url: Report URL
    :param http: HTTP client configuration
    """

    kind: Literal['http']
    name: str
    url: Url
    http: HttpConfig | None = None


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class FileStatsSourceConfig:
    """Stats report stored on disk

    :param kind: always 'file'
    :param name: Source name shown in logs
    :param path: Path to JSON file
    """

    kind: Literal['file']
    name: str
    path: str


StatsSourceConfigU = HttpStatsSourceConfig | FileStatsSourceConfig


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class CurrentStatsConfig:
    """Current stats report sources, tried in order

    :param sources: List of source configs
    """

    sources: list[StatsSourceConfigU] = Field(default_factory=list)


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class ProposalsConfig:
    """Proposal scan limits

    :param max_proposal_id: Highest proposal id probed
    :param max_consecutive_failures: Stop after this many missing proposals in a row
    """

    max_proposal_id: int = 30
    max_consecutive_failures: int = 3


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class DaoLensConfig:
    """daolens configuration file

    :param spec_version: Version of config specification, currently always `1.0`
    :param ledger: Ledger connection config
    :param crawler: Delegation crawler config
    :param cache: Result cache config
    :param remote: Precomputed results API config
    :param current_stats: Current stats report sources
    :param proposals: Proposal scan limits
    :param logging: Modify logging verbosity
    """

    spec_version: ToStr = __spec_version__
    ledger: EvmNodeLedgerConfig
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    remote: RemoteSourceConfig | None = None
    current_stats: CurrentStatsConfig = Field(default_factory=CurrentStatsConfig)
    proposals: ProposalsConfig = Field(default_factory=ProposalsConfig)
    logging: dict[str, str | int] | str | int = 'INFO'

    def __post_init__(self) -> None:
        if self.spec_version != __spec_version__:
            raise ConfigurationError(
                f'Unsupported `spec_version` {self.spec_version}, expected `{__spec_version__}`'
            )
        self._paths: list[Path] = []
        self._environment: dict[str, str] = {}

    @property
    def environment(self) -> dict[str, str]:
        return self._environment

    @classmethod
    def load(
        cls,
        paths: list[Path],
        environment: bool = True,
        unsafe: bool = False,
    ) -> DaoLensConfig:
        config_json, config_environment = DaoLensYAMLConfig.load(
            paths=paths,
            environment=environment,
            unsafe=unsafe,
        )

        try:
            config = TypeAdapter(cls).validate_python(config_json)
        except ConfigurationError:
            raise
        except ValidationError as e:
            errors_by_path = defaultdict(list)
            for error in e.errors():
                errors_by_path['.'.join(str(e) for e in error['loc'])].append(error['msg'])

            msgs = [f'- {path}: {msg}' for path, errors in errors_by_path.items() for msg in errors]
            raise ConfigurationError('Config validation failed:\n\n' + '\n'.join(msgs)) from e

        config._paths = paths
        config._environment = config_environment
        return config

    def set_up_logging(self) -> None:
        loglevels = {}
        if isinstance(self.logging, dict):
            loglevels = {**self.logging}
        else:
            loglevels['daolens'] = self.logging

        # NOTE: Environment variables have higher priority
        if env.DEBUG:
            loglevels['daolens'] = 'DEBUG'

        for name, level in loglevels.items():
            try:
                if isinstance(level, str):
                    level = getattr(logging, level.upper())
                if not isinstance(level, int):
                    raise ValueError
            except (AttributeError, ValueError):
                raise ConfigurationError(f'Invalid logging level `{level}` for logger `{name}`') from None

            logging.getLogger(name).setLevel(level)

    def dump(self) -> str:
        return DaoLensYAMLConfig(
            **orjson.loads(
                orjson.dumps(
                    self,
                    default=to_jsonable_python,
                )
            )
        ).dump()

