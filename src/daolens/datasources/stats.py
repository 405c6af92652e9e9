"""Current stats report sources.

A report is an opaque JSON object produced by an external job. It may live behind several URLs or on disk;
`SourceChain` tries providers in order and returns the first report that parses.
"""

import time
from abc import ABC
from abc import abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

import orjson

from daolens.cancellation import CancellationToken
from daolens.config import FileStatsSourceConfig
from daolens.config import HttpConfig
from daolens.config import HttpStatsSourceConfig
from daolens.config import StatsSourceConfigU
from daolens.datasources import Datasource
from daolens.exceptions import InvalidRequestError
from daolens.exceptions import SourceUnavailableError
from daolens.models import CurrentStats
from daolens.utils import FormattedLogger


def parse_report(content: Any, source: str, location: str, last_modified: float | None = None) -> CurrentStats:
    """Validate report body; HTML error pages served with 200 are rejected"""
    if isinstance(content, bytes | str):
        text = content.decode(errors='replace') if isinstance(content, bytes) else content
        if text.lstrip().startswith('<'):
            raise InvalidRequestError('Got HTML page instead of JSON report', location)
        try:
            content = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise InvalidRequestError(f'Report is not a valid JSON: {e}', location) from e

    if not isinstance(content, dict):
        raise InvalidRequestError('Report is not a JSON object', location)
    return CurrentStats(
        data=content,
        source=source,
        last_modified=last_modified if last_modified is not None else time.time(),
    )


class StatsProvider(AbstractAsyncContextManager['StatsProvider'], ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def fetch(self) -> CurrentStats: ...

    async def __aexit__(self, *args: Any) -> None:
        return None


class HttpStatsProvider(Datasource[HttpStatsSourceConfig], StatsProvider):
    _default_http_config = HttpConfig(
        retry_count=0,
        request_timeout=10,
    )

    async def fetch(self) -> CurrentStats:
        content = await self.request('get', '')
        return parse_report(content, self.name, self.url)


class FileStatsProvider(StatsProvider):
    def __init__(self, config: FileStatsSourceConfig) -> None:
        self._config = config
        self._path = Path(config.path).expanduser()

    @property
    def name(self) -> str:
        return self._config.name

    async def fetch(self) -> CurrentStats:
        try:
            content = self._path.read_bytes()
            last_modified = self._path.stat().st_mtime
        except OSError as e:
            raise InvalidRequestError(f'Report file is not readable: {e}', str(self._path)) from e
        return parse_report(content, self.name, str(self._path), last_modified)


def create_provider(config: StatsSourceConfigU) -> StatsProvider:
    if isinstance(config, HttpStatsSourceConfig):
        return HttpStatsProvider(config)
    return FileStatsProvider(config)


class SourceChain:
    """Prioritized list of report providers"""

    def __init__(self, providers: Sequence[StatsProvider]) -> None:
        self._providers = tuple(providers)
        self._exit_stack = AsyncExitStack()
        self._logger = FormattedLogger(__name__, 'currentStats: {}')

    @classmethod
    def from_config(cls, configs: Sequence[StatsSourceConfigU]) -> 'SourceChain':
        return cls([create_provider(c) for c in configs])

    @property
    def providers(self) -> tuple[StatsProvider, ...]:
        return self._providers

    async def __aenter__(self) -> 'SourceChain':
        for provider in self._providers:
            await self._exit_stack.enter_async_context(provider)
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._exit_stack.aclose()

    async def fetch(self, token: CancellationToken | None = None) -> CurrentStats:
        if not self._providers:
            raise SourceUnavailableError('No current stats sources configured', 'currentStats')

        last_error: Exception | None = None
        for provider in self._providers:
            if token is not None:
                token.raise_if_cancelled()
            try:
                stats = await provider.fetch()
            except Exception as e:
                self._logger.warning('Source `%s` failed: %s', provider.name, e)
                last_error = e
                continue

            self._logger.info('Loaded report from `%s`', provider.name)
            return stats

        raise SourceUnavailableError(f'All sources failed, last error: {last_error}', 'currentStats')
