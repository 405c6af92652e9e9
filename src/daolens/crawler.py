"""Delegation graph crawler.

The ledger has no "list all delegations" query, so the crawler discovers accounts from several partial sources
and asks each one for its delegate and balance at a single block:

1. Important accounts (caller's plus protocol contracts) and their known delegators
2. Participants of recent `DelegateChanged` events
3. Participants of recent `Transfer` events, only when the graph is still sparse
4. Top delegates reported by the helper contract and their delegators

Accounts are visited once, sequentially. Only failures to establish the block context fail the crawl; anything
else is logged and skipped.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field

from daolens import metrics as formulas
from daolens.cancellation import CancellationToken
from daolens.config import CrawlerConfig
from daolens.enums import EventKind
from daolens.exceptions import RequestCancelledError
from daolens.exceptions import SourceUnavailableError
from daolens.ledger import TokenLedger
from daolens.ledger import normalize_account
from daolens.models import ZERO_ACCOUNT
from daolens.models import Account
from daolens.models import CrawlResult
from daolens.models import DelegateAggregate
from daolens.models import DelegationEdge
from daolens.models import is_self_delegation
from daolens.models import to_account
from daolens.performance import metrics
from daolens.utils import FormattedLogger
from daolens.utils import iter_block_ranges


@dataclass(frozen=True)
class EdgeAggregation:
    top_delegates: tuple[DelegateAggregate, ...]
    total_delegated: int
    unique_delegate_count: int
    unique_delegator_count: int


def aggregate_edges(
    edges: Sequence[DelegationEdge],
    total_supply: int,
    top_n: int = 20,
) -> EdgeAggregation:
    """Group edges by delegate and rank delegates by delegated balance.

    Ties keep first-discovered order. `unique_delegate_count` is taken before truncating to `top_n`.
    """
    balances: dict[Account, int] = {}
    delegators: dict[Account, set[Account]] = {}
    for edge in edges:
        balances[edge.delegate] = balances.get(edge.delegate, 0) + edge.balance
        delegators.setdefault(edge.delegate, set()).add(edge.delegator)

    aggregates = [
        DelegateAggregate(
            address=delegate,
            delegated_balance=balance,
            delegator_count=len(delegators[delegate]),
            percentage=formulas.ratio(balance, total_supply),
        )
        for delegate, balance in balances.items()
    ]
    aggregates.sort(key=lambda a: a.delegated_balance, reverse=True)

    return EdgeAggregation(
        top_delegates=tuple(aggregates[:top_n]),
        total_delegated=sum(balances.values()),
        unique_delegate_count=len(aggregates),
        unique_delegator_count=len({e.delegator for e in edges}),
    )


@dataclass
class _CrawlState:
    block: int
    token: CancellationToken
    visited: set[Account] = field(default_factory=set)
    edges: list[DelegationEdge] = field(default_factory=list)


class DelegationCrawler:
    def __init__(
        self,
        ledger: TokenLedger,
        config: CrawlerConfig | None = None,
        protocol_accounts: Sequence[Account] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._config = config or CrawlerConfig()
        self._protocol_accounts = tuple(protocol_accounts)
        self._clock = clock
        self._logger = FormattedLogger(__name__, 'crawler: {}')

    async def crawl(
        self,
        token: CancellationToken,
        important: Iterable[Account] = (),
    ) -> CrawlResult:
        started_at = time.perf_counter()
        block, total_supply = await self._get_context(token)
        state = _CrawlState(block=block, token=token)
        self._logger.info('Crawling delegations at block %s', block)

        for account in self._important_accounts(important):
            await self._visit(state, account)
            for delegator in await self._get_delegators(state, account, self._config.important_fanout):
                await self._visit(state, delegator)

        changed = await self._scan(state, EventKind.delegate_changed, self._config.delegate_changed_lookback)
        for account in changed:
            await self._visit(state, account)

        if len(state.edges) < self._config.min_edges:
            transferred = await self._scan(state, EventKind.transfer, self._config.transfer_lookback)
            for account in transferred[: self._config.max_transfer_accounts]:
                await self._visit(state, account)

        if self._ledger.has_helper:
            for delegate in await self._get_top_delegates(state):
                await self._visit(state, delegate)
                for delegator in await self._get_delegators(state, delegate, self._config.top_delegate_fanout):
                    await self._visit(state, delegator)

        aggregation = aggregate_edges(state.edges, total_supply, self._config.top_n)
        result = CrawlResult(
            edges=tuple(state.edges),
            top_delegates=aggregation.top_delegates,
            total_supply=total_supply,
            total_delegated=aggregation.total_delegated,
            percentage_delegated=formulas.percentage_delegated(aggregation.total_delegated, total_supply),
            top5_concentration=formulas.top_n_concentration(
                aggregation.top_delegates,
                self._config.concentration_n,
            ),
            unique_delegate_count=aggregation.unique_delegate_count,
            unique_delegator_count=aggregation.unique_delegator_count,
            observed_at_block=block,
            produced_at=self._clock(),
        )

        duration = time.perf_counter() - started_at
        metrics.time_in_crawl.observe(duration)
        self._logger.info(
            'Visited %s accounts, found %s edges to %s delegates in %.2f s',
            len(state.visited),
            len(state.edges),
            aggregation.unique_delegate_count,
            duration,
        )
        return result

    async def _get_context(self, token: CancellationToken) -> tuple[int, int]:
        try:
            token.raise_if_cancelled()
            block = await self._ledger.current_block()
            token.raise_if_cancelled()
            total_supply = await self._ledger.total_supply(block)
        except RequestCancelledError:
            raise
        except Exception as e:
            raise SourceUnavailableError(f'Failed to establish block context: {e}', 'ledger') from e
        return block, total_supply

    def _important_accounts(self, important: Iterable[Account]) -> list[Account]:
        accounts: list[Account] = []
        for value in (*important, *self._protocol_accounts):
            try:
                account = to_account(value)
            except ValueError:
                self._logger.warning('Skipping invalid account `%s`', value)
                continue
            if account != ZERO_ACCOUNT and account not in accounts:
                accounts.append(account)
        return accounts

    async def _visit(self, state: _CrawlState, account: Account) -> None:
        if account in state.visited:
            return
        state.token.raise_if_cancelled()
        state.visited.add(account)
        metrics.accounts_visited.inc()

        # NOTE: A failed query cancels its sibling; nothing outlives the visit
        try:
            async with asyncio.TaskGroup() as group:
                delegate_query = group.create_task(self._ledger.delegate_of(account, state.block))
                balance_query = group.create_task(self._ledger.balance_of(account, state.block))
        except ExceptionGroup as e:
            self._logger.warning('Failed to query `%s`: %s', account, e.exceptions[0])
            metrics.partial_failures.inc()
            return

        balance = balance_query.result()
        try:
            delegate = normalize_account(delegate_query.result())
        except ValueError as e:
            self._logger.warning('Invalid delegate of `%s`: %s', account, e)
            metrics.partial_failures.inc()
            return

        if delegate is None or balance <= 0 or is_self_delegation(account, delegate):
            return

        depth = 1
        if self._ledger.has_helper:
            state.token.raise_if_cancelled()
            try:
                depth = max(await self._ledger.delegation_depth(account, state.block), 1)
            except Exception as e:
                self._logger.debug('Failed to resolve delegation depth of `%s`: %s', account, e)

        state.edges.append(
            DelegationEdge(
                delegator=account,
                delegate=delegate,
                balance=balance,
                depth=depth,
            )
        )
        metrics.edges_found.inc()

    async def _get_delegators(self, state: _CrawlState, account: Account, limit: int) -> list[Account]:
        state.token.raise_if_cancelled()
        try:
            delegators = await self._ledger.delegators_of(account)
        except Exception as e:
            self._logger.warning('Failed to get delegators of `%s`: %s', account, e)
            return []
        return _unique(delegators)[:limit]

    async def _get_top_delegates(self, state: _CrawlState) -> list[Account]:
        state.token.raise_if_cancelled()
        try:
            delegates = await self._ledger.top_delegates_by_concentration(self._config.top_delegates)
        except Exception as e:
            self._logger.warning('Failed to get top delegates from helper: %s', e)
            return []
        return _unique(delegates)

    async def _scan(self, state: _CrawlState, kind: EventKind, lookback: int) -> list[Account]:
        """Collect accounts mentioned in `kind` events within `lookback` blocks, in first-seen order"""
        first_level = max(state.block - lookback, 0)
        accounts: list[Account] = []
        for from_block, to_block in iter_block_ranges(first_level, state.block, self._ledger.batch_size):
            state.token.raise_if_cancelled()
            try:
                events = await self._ledger.query_events(kind, from_block, to_block)
            except Exception as e:
                self._logger.warning(
                    'Failed to scan `%s` events in blocks %s-%s: %s', kind.value, from_block, to_block, e
                )
                continue
            for event in events:
                accounts.extend(event.accounts)

        accounts = _unique(accounts)
        self._logger.debug('Found %s accounts in `%s` events', len(accounts), kind.value)
        return accounts


def _unique(accounts: Iterable[Account]) -> list[Account]:
    result: dict[Account, None] = {}
    for account in accounts:
        if not account:
            continue
        account = account.lower()
        if account != ZERO_ACCOUNT:
            result[account] = None
    return list(result)
