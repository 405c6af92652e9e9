"""Per-category fetch coordination.

A request goes through three tiers: a fresh cache entry, the remote precomputed source, and finally the category
loader. Only the latest request per category may write the cache; a newer request cancels the previous one,
and a cancelled request resolves to `None`.
"""

import asyncio
from collections.abc import Mapping
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any
from typing import Self

from daolens.analytics import Loader
from daolens.analytics.current_stats import CurrentStatsLoader
from daolens.analytics.delegation import DelegationLoader
from daolens.analytics.proposal import ProposalLoader
from daolens.analytics.timelock import TimelockLoader
from daolens.analytics.token import TokenLoader
from daolens.cache import ResultCache
from daolens.cancellation import CancellationToken
from daolens.config import DaoLensConfig
from daolens.crawler import DelegationCrawler
from daolens.datasources.evm_node import EvmNodeLedgerClient
from daolens.datasources.remote import RemoteSource
from daolens.datasources.stats import SourceChain
from daolens.enums import CacheCategory
from daolens.enums import FetchState
from daolens.exceptions import Error
from daolens.exceptions import RequestCancelledError
from daolens.exceptions import SourceUnavailableError
from daolens.models import Account
from daolens.models import Payload
from daolens.performance import metrics
from daolens.utils import FormattedLogger


@dataclass(frozen=True)
class RequestContext:
    """Caller-side request parameters.

    `token` is the caller's own cancellation token; cancelling it cancels the request too.
    """

    token: CancellationToken | None = None
    important: Sequence[Account] = ()


class FetchOrchestrator(AbstractAsyncContextManager['FetchOrchestrator']):
    def __init__(
        self,
        cache: ResultCache,
        loaders: Mapping[CacheCategory, Loader],
        remote: RemoteSource | None = None,
    ) -> None:
        self._cache = cache
        self._loaders = dict(loaders)
        self._remote = remote
        self._states: dict[CacheCategory, FetchState] = {c: FetchState.idle for c in CacheCategory}
        self._tokens: dict[CacheCategory, CancellationToken] = {}
        self._logger = FormattedLogger(__name__, 'orchestrator: {}')

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()

    @property
    def cache(self) -> ResultCache:
        return self._cache

    def state(self, category: CacheCategory) -> FetchState:
        return self._states[category]

    def close(self) -> None:
        """Cancel every outstanding request; their results are discarded"""
        for category, token in self._tokens.items():
            token.cancel()
            if self._states[category] == FetchState.fetching:
                self._states[category] = FetchState.idle
        self._tokens.clear()

    async def request(
        self,
        category: CacheCategory,
        context: RequestContext | None = None,
    ) -> Payload | None:
        context = context or RequestContext()
        labels = {'category': category.value}
        metrics.requests_total.labels(**labels).inc()

        if (previous := self._tokens.get(category)) is not None:
            previous.cancel()
        if context.token is not None:
            token = context.token.child(category.value)
        else:
            token = CancellationToken(name=category.value)
        self._tokens[category] = token
        self._states[category] = FetchState.idle

        entry = self._cache.get(category)
        if entry is not None and self._cache.is_valid(category):
            metrics.cache_hits.labels(**labels).inc()
            self._logger.debug('Serving `%s` from cache', category.value)
            self._states[category] = FetchState.succeeded
            return entry.payload

        if entry is not None:
            metrics.cache_stale.labels(**labels).inc()
            self._logger.debug('Ignoring stale or empty `%s` cache entry', category.value)
        metrics.cache_misses.labels(**labels).inc()

        self._states[category] = FetchState.fetching
        try:
            payload = await self._load(category, token, context.important)
        except RequestCancelledError:
            return self._on_cancelled(category, token)
        except Error:
            self._on_failed(category, token)
            raise
        except Exception as e:
            self._on_failed(category, token)
            raise SourceUnavailableError(str(e), category.value) from e

        if token.cancelled:
            return self._on_cancelled(category, token)

        self._cache.put(category, payload)
        if self._tokens.get(category) is token:
            self._states[category] = FetchState.succeeded
        return payload

    async def _load(
        self,
        category: CacheCategory,
        token: CancellationToken,
        important: Sequence[Account],
    ) -> Payload:
        if self._remote is not None and self._remote.has(category):
            token.raise_if_cancelled()
            try:
                payload = await self._fetch_remote(self._remote, category, token)
            except RequestCancelledError:
                raise
            except Exception as e:
                metrics.remote_fallbacks.labels(category=category.value).inc()
                self._logger.warning('Remote source failed for `%s`, falling back: %r', category.value, e)
            else:
                if not payload.is_empty():
                    self._logger.info('Loaded `%s` from remote source', category.value)
                    return payload
                metrics.remote_fallbacks.labels(category=category.value).inc()
                self._logger.warning('Remote source returned empty `%s`, falling back', category.value)

        loader = self._loaders.get(category)
        if loader is None:
            raise SourceUnavailableError('No loader configured for this category', category.value)
        return await loader.load(token, important)

    async def _fetch_remote(self, remote: RemoteSource, category: CacheCategory, token: CancellationToken) -> Payload:
        fetch = asyncio.ensure_future(asyncio.wait_for(remote.fetch(category), remote.timeout))
        # NOTE: Cancelling the token interrupts the fetch instead of waiting out the timeout
        remove_callback = token.on_cancel(fetch.cancel)
        try:
            return await fetch
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            raise RequestCancelledError(token.name or category.value) from None
        finally:
            remove_callback()

    def _on_cancelled(self, category: CacheCategory, token: CancellationToken) -> None:
        metrics.requests_cancelled.labels(category=category.value).inc()
        self._logger.info('`%s` request was cancelled', category.value)
        if self._tokens.get(category) is token:
            self._states[category] = FetchState.idle
        return None

    def _on_failed(self, category: CacheCategory, token: CancellationToken) -> None:
        metrics.requests_failed.labels(category=category.value).inc()
        if self._tokens.get(category) is token:
            self._states[category] = FetchState.failed


async def create_orchestrator(config: DaoLensConfig, exit_stack: AsyncExitStack) -> FetchOrchestrator:
    """Build orchestrator with every loader the config allows; HTTP sessions live as long as `exit_stack`"""
    cache = ResultCache(ttl=config.cache.ttl, path=config.cache.resolved_path)

    ledger = EvmNodeLedgerClient(config.ledger)
    await exit_stack.enter_async_context(ledger)

    crawler = DelegationCrawler(
        ledger=ledger,
        config=config.crawler,
        protocol_accounts=config.ledger.protocol_accounts,
    )
    loaders: dict[CacheCategory, Loader] = {
        CacheCategory.delegation: DelegationLoader(crawler),
        CacheCategory.token: TokenLoader(ledger, cache),
    }
    if config.ledger.governance:
        loaders[CacheCategory.proposal] = ProposalLoader(ledger, ledger, config.proposals)
    if config.ledger.timelock:
        loaders[CacheCategory.timelock] = TimelockLoader(ledger)
    if config.current_stats.sources:
        chain = SourceChain.from_config(config.current_stats.sources)
        await exit_stack.enter_async_context(chain)
        loaders[CacheCategory.current_stats] = CurrentStatsLoader(chain)

    remote: RemoteSource | None = None
    if config.remote:
        remote = RemoteSource(
            config.remote,
            top_n=config.crawler.top_n,
            concentration_n=config.crawler.concentration_n,
        )
        await exit_stack.enter_async_context(remote)

    orchestrator = FetchOrchestrator(cache, loaders, remote)
    await exit_stack.enter_async_context(orchestrator)
    return orchestrator
