import asyncio
from collections.abc import Callable
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from daolens import env
from daolens.crawler import aggregate_edges
from daolens.enums import EventKind
from daolens.enums import ProposalState
from daolens.enums import ThreatLevel
from daolens.exceptions import DatasourceError
from daolens.ledger import GovernanceLedger
from daolens.ledger import LedgerEvent
from daolens.ledger import ProposalVotes
from daolens.ledger import SnapshotMetrics
from daolens.ledger import TimelockLedger
from daolens.ledger import TokenLedger
from daolens.metrics import ratio
from daolens.metrics import top_n_concentration
from daolens.models import Account
from daolens.models import CrawlResult
from daolens.models import DelegationEdge

env.set_test()


TEST_CONFIGS = Path(__file__).parent / 'configs'

WEI = 10**18


def account(n: int) -> Account:
    return '0x' + f'{n:040x}'


def tokens(amount: int) -> int:
    return amount * WEI


def delegate_changed(*accounts: Account, block: int = 999_990) -> LedgerEvent:
    return LedgerEvent(EventKind.delegate_changed, block, tuple(accounts))


def transfer(*accounts: Account, block: int = 999_990) -> LedgerEvent:
    return LedgerEvent(EventKind.transfer, block, tuple(accounts))


class FakeLedger(TokenLedger, GovernanceLedger, TimelockLedger):
    """In-memory ledger; unknown entries behave like reverted calls.

    `errors` maps `(method, argument)` to an exception; argument `None` fails every call of the method.
    """

    def __init__(
        self,
        *,
        block: int = 1_000_000,
        total_supply: int = 0,
        balances: dict[Account, int] | None = None,
        delegates: dict[Account, Account | None] | None = None,
        delegators: dict[Account, list[Account]] | None = None,
        events: Iterable[LedgerEvent] = (),
        helper: bool = False,
        depths: dict[Account, int] | None = None,
        top_delegates: Iterable[Account] = (),
        snapshot: SnapshotMetrics | None = None,
        proposals: dict[int, ProposalState] | None = None,
        votes: dict[int, ProposalVotes] | None = None,
        timelock: dict[str, Any] | None = None,
        batch_size: int = 10_000,
    ) -> None:
        self.block = block
        self.supply = total_supply
        self.balances = balances or {}
        self.delegates = delegates or {}
        self.delegators = delegators or {}
        self.events = list(events)
        self.helper = helper
        self.depths = depths or {}
        self.top = list(top_delegates)
        self.snapshot = snapshot
        self.proposals = proposals or {}
        self.votes = votes or {}
        self.timelock = timelock or {}
        self.batch_size = batch_size

        self.errors: dict[tuple[str, Any], Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self.on_call: Callable[[str, Any], None] | None = None

    async def _call(self, method: str, argument: Any = None) -> None:
        self.calls.append((method, argument))
        if self.on_call:
            self.on_call(method, argument)
        await asyncio.sleep(0)
        for key in ((method, None), (method, argument)):
            if key in self.errors:
                raise self.errors[key]

    def calls_of(self, method: str) -> list[Any]:
        return [argument for name, argument in self.calls if name == method]

    async def current_block(self) -> int:
        await self._call('current_block')
        return self.block

    async def total_supply(self, block: int) -> int:
        await self._call('total_supply', block)
        return self.supply

    async def balance_of(self, account: Account, block: int) -> int:
        await self._call('balance_of', account)
        return self.balances.get(account, 0)

    async def delegate_of(self, account: Account, block: int) -> Account | None:
        await self._call('delegate_of', account)
        return self.delegates.get(account)

    async def delegators_of(self, account: Account) -> list[Account]:
        await self._call('delegators_of', account)
        return list(self.delegators.get(account, ()))

    async def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LedgerEvent]:
        await self._call('query_events', (kind, from_block, to_block))
        return [e for e in self.events if e.kind == kind and from_block <= e.block_number <= to_block]

    @property
    def has_helper(self) -> bool:
        return self.helper

    async def delegation_depth(self, account: Account, block: int) -> int:
        await self._call('delegation_depth', account)
        return self.depths.get(account, 1)

    async def top_delegates_by_concentration(self, n: int) -> list[Account]:
        await self._call('top_delegates_by_concentration', n)
        return self.top[:n]

    async def snapshot_metrics(self) -> SnapshotMetrics | None:
        await self._call('snapshot_metrics')
        if self.snapshot is None:
            raise DatasourceError('execution reverted', 'fake')
        return self.snapshot

    async def proposal_state(self, proposal_id: int) -> ProposalState:
        await self._call('proposal_state', proposal_id)
        if proposal_id not in self.proposals:
            raise DatasourceError('execution reverted', 'fake')
        return self.proposals[proposal_id]

    async def proposal_votes(self, proposal_id: int) -> ProposalVotes:
        await self._call('proposal_votes', proposal_id)
        if proposal_id not in self.votes:
            raise DatasourceError('execution reverted', 'fake')
        return self.votes[proposal_id]

    async def _timelock_value(self, name: str) -> int:
        await self._call(name)
        if name not in self.timelock:
            raise DatasourceError('execution reverted', 'fake')
        return int(self.timelock[name])

    async def min_delay(self) -> int:
        return await self._timelock_value('min_delay')

    async def max_delay(self) -> int:
        return await self._timelock_value('max_delay')

    async def grace_period(self) -> int:
        return await self._timelock_value('grace_period')

    async def executor_threshold(self) -> int:
        return await self._timelock_value('executor_threshold')

    async def threat_level_delay(self, level: ThreatLevel) -> int:
        return await self._timelock_value(f'{level.name}_threat_delay')

    async def pending_transaction_count(self) -> int:
        return await self._timelock_value('pending_transaction_count')


def crawl_result(*edges: DelegationEdge, total_supply: int = 1000 * WEI, block: int = 1_000_000) -> CrawlResult:
    aggregation = aggregate_edges(edges, total_supply)
    return CrawlResult(
        edges=edges,
        top_delegates=aggregation.top_delegates,
        total_supply=total_supply,
        total_delegated=aggregation.total_delegated,
        percentage_delegated=ratio(aggregation.total_delegated, total_supply),
        top5_concentration=top_n_concentration(aggregation.top_delegates),
        unique_delegate_count=aggregation.unique_delegate_count,
        unique_delegator_count=aggregation.unique_delegator_count,
        observed_at_block=block,
        produced_at=1700000000.0,
    )
