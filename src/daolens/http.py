"""HTTP transport shared by ledger nodes, the remote result API and stats report URLs.

One `aiohttp` session per gateway. Requests are rate limited with `aiolimiter` when configured and retried with
exponential back-off; `429 Too Many Requests` waits for `Retry-After` instead.
"""

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from contextlib import suppress
from http import HTTPStatus
from typing import Any
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

import aiohttp
import orjson
from aiolimiter import AsyncLimiter

from daolens import __version__
from daolens.config import ResolvedHttpConfig
from daolens.exceptions import FrameworkException
from daolens.exceptions import InvalidRequestError
from daolens.performance import metrics
from daolens.utils import json_dumps

_logger = logging.getLogger(__name__)

retryable_exceptions = (
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ClientResponseError,
    aiohttp.ClientPayloadError,
)


def _retry_after(error: aiohttp.ClientResponseError, default: float) -> float:
    # NOTE: Only the delta-seconds form; HTTP-date values fall back to the configured sleep
    with suppress(KeyError, TypeError, ValueError):
        if error.headers is not None:
            return max(default, float(error.headers['Retry-After']))
    return default


class HTTPGateway(AbstractAsyncContextManager[None]):
    """Base class for datasources which talk to remote HTTP endpoints"""

    def __init__(self, url: str, http_config: ResolvedHttpConfig) -> None:
        parsed_url = urlsplit(url)
        self._base_url = urlunsplit((parsed_url.scheme, parsed_url.netloc, '', '', ''))
        self._base_path = parsed_url.path.rstrip('/')
        self._http_config = http_config
        self._alias = http_config.alias or parsed_url.netloc
        self._ratelimiter: AsyncLimiter | None = None
        if http_config.ratelimit_rate and http_config.ratelimit_period:
            self._ratelimiter = AsyncLimiter(
                max_rate=http_config.ratelimit_rate,
                time_period=http_config.ratelimit_period,
            )
        self._user_agent = f'daolens/{__version__} {aiohttp.http.SERVER_SOFTWARE}'
        self.__session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> None:
        """Create underlying aiohttp session"""
        self.__session = aiohttp.ClientSession(
            base_url=self._base_url,
            json_serialize=lambda obj: json_dumps(obj, option=None).decode(),
            connector=aiohttp.TCPConnector(limit=self._http_config.connection_limit),
            timeout=aiohttp.ClientTimeout(
                total=self._http_config.request_timeout,
                connect=self._http_config.connection_timeout,
            ),
        )

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        """Close underlying aiohttp session"""
        _logger.debug('Closing `%s` session', self._alias)
        if self.__session is None:
            raise FrameworkException('Session is not initialized')
        await self.__session.close()

    @property
    def url(self) -> str:
        return f'{self._base_url}{self._base_path}'

    @property
    def _session(self) -> aiohttp.ClientSession:
        if self.__session is None:
            raise FrameworkException('aiohttp session is not initialized. Wrap with `async with datasource`')
        if self.__session.closed:
            raise FrameworkException('aiohttp session is closed')
        return self.__session

    def _resolve_path(self, path: str) -> str:
        if not path:
            return self._base_path or '/'
        if path.startswith('http'):
            return path.replace(self._base_url, '').rstrip('/')
        return f'{self._base_path}/{path.lstrip("/")}'

    async def request(
        self,
        method: str,
        url: str,
        weight: int = 1,
        **kwargs: Any,
    ) -> Any:
        """Send an HTTP request, retrying transport errors and non-2xx responses.

        Returns decoded JSON when the body parses, raw bytes otherwise.
        """
        path = self._resolve_path(url)
        attempts = self._http_config.retry_count + 1
        retry_sleep = self._http_config.retry_sleep

        for attempt in range(1, attempts + 1):
            try:
                return await self._request(method, path, weight, **kwargs)
            except retryable_exceptions as e:
                status = e.status if isinstance(e, aiohttp.ClientResponseError) else 0
                metrics.set_http_error(self._alias, status)
                _logger.warning('%s: %s %s failed (%s/%s): %r', self._alias, method.upper(), path, attempt, attempts, e)
                if attempt == attempts:
                    raise

                if isinstance(e, aiohttp.ClientResponseError) and status == HTTPStatus.TOO_MANY_REQUESTS:
                    sleep = _retry_after(e, self._http_config.ratelimit_sleep)
                else:
                    sleep = retry_sleep
                    retry_sleep *= self._http_config.retry_multiplier

                _logger.info('%s: retrying in %s seconds', self._alias, sleep)
                await asyncio.sleep(sleep)

        raise FrameworkException('Retry loop exited without a result')

    async def _request(self, method: str, path: str, weight: int, **kwargs: Any) -> Any:
        headers = {**kwargs.pop('headers', {}), 'User-Agent': self._user_agent}
        location = f'{self._base_url}{path}'
        _logger.debug('%s: calling `%s`', self._alias, location)

        if self._ratelimiter:
            await self._ratelimiter.acquire(weight)

        started_at = time.perf_counter()
        async with self._session.request(
            method=method,
            url=path,
            headers=headers,
            raise_for_status=True,
            **kwargs,
        ) as response:
            body = await response.read()
        metrics.time_in_requests.labels(datasource=self._alias).observe(time.perf_counter() - started_at)

        if response.status == HTTPStatus.NO_CONTENT:
            raise InvalidRequestError('204 No Content', location)
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError:
            return body
