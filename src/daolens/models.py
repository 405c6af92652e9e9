from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from decimal import Decimal
from typing import Any
from typing import Self
from typing import TypeAlias

from daolens.enums import CacheCategory
from daolens.enums import ProposalState
from daolens.enums import ThreatLevel
from daolens.metrics import from_wei
from daolens.metrics import to_wei

Account: TypeAlias = str

ZERO_ACCOUNT: Account = '0x' + '0' * 40


def to_account(value: str) -> Account:
    """Normalize address to the canonical lower-case form; raise `ValueError` on garbage"""
    from eth_utils.address import is_hex_address

    if not isinstance(value, str) or not is_hex_address(value):
        raise ValueError(f'`{value}` is not a valid address')
    return value.lower()


def is_self_delegation(delegator: Account, delegate: Account | None) -> bool:
    """Self-delegation and delegation to the zero account carry no edge"""
    if delegate is None:
        return True
    delegate = delegate.lower()
    return delegate in (delegator.lower(), ZERO_ACCOUNT)


def _raw(data: dict[str, Any], raw_key: str, key: str) -> int:
    if data.get(raw_key) is not None:
        return int(data[raw_key])
    return to_wei(data.get(key) or '0')


@dataclass(frozen=True)
class DelegationEdge:
    delegator: Account
    delegate: Account
    balance: int
    depth: int = 1

    @property
    def voting_power(self) -> Decimal:
        return from_wei(self.balance)

    def to_json(self) -> dict[str, Any]:
        return {
            'delegator': self.delegator,
            'delegate': self.delegate,
            'votingPower': str(self.voting_power),
            'balance': str(self.balance),
            'depth': self.depth,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            delegator=to_account(data.get('delegator') or data['address']),
            delegate=to_account(data['delegate']),
            balance=_raw(data, 'balance', 'votingPower'),
            depth=max(int(data.get('depth') or 1), 1),
        )


@dataclass(frozen=True)
class DelegateAggregate:
    address: Account
    delegated_balance: int
    delegator_count: int
    percentage: Decimal

    @property
    def delegated_power(self) -> Decimal:
        return from_wei(self.delegated_balance)

    def to_json(self) -> dict[str, Any]:
        return {
            'address': self.address,
            'delegatedPower': str(self.delegated_power),
            'delegatedBalance': str(self.delegated_balance),
            'delegatorCount': self.delegator_count,
            'percentage': str(self.percentage),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            address=to_account(data['address']),
            delegated_balance=_raw(data, 'delegatedBalance', 'delegatedPower'),
            delegator_count=int(data.get('delegatorCount') or 0),
            percentage=Decimal(str(data.get('percentage') or 0)),
        )


@dataclass(frozen=True)
class CrawlResult:
    """Delegation graph observed at a single block"""

    edges: tuple[DelegationEdge, ...]
    top_delegates: tuple[DelegateAggregate, ...]
    total_supply: int
    total_delegated: int
    percentage_delegated: Decimal
    top5_concentration: Decimal
    unique_delegate_count: int
    unique_delegator_count: int
    observed_at_block: int
    produced_at: float

    def is_empty(self) -> bool:
        return not self.edges

    def to_json(self) -> dict[str, Any]:
        return {
            'blockNumber': self.observed_at_block,
            'timestamp': self.produced_at,
            'edges': [e.to_json() for e in self.edges],
            'topDelegates': [d.to_json() for d in self.top_delegates],
            'totalSupply': str(from_wei(self.total_supply)),
            'totalSupplyRaw': str(self.total_supply),
            'totalDelegated': str(from_wei(self.total_delegated)),
            'totalDelegatedRaw': str(self.total_delegated),
            'percentageDelegated': str(self.percentage_delegated),
            'top5Concentration': str(self.top5_concentration),
            'uniqueDelegatesCount': self.unique_delegate_count,
            'uniqueDelegatorsCount': self.unique_delegator_count,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            edges=tuple(DelegationEdge.from_json(e) for e in data.get('edges', ())),
            top_delegates=tuple(DelegateAggregate.from_json(d) for d in data.get('topDelegates', ())),
            total_supply=_raw(data, 'totalSupplyRaw', 'totalSupply'),
            total_delegated=_raw(data, 'totalDelegatedRaw', 'totalDelegated'),
            percentage_delegated=Decimal(str(data.get('percentageDelegated') or 0)),
            top5_concentration=Decimal(str(data.get('top5Concentration') or 0)),
            unique_delegate_count=int(data.get('uniqueDelegatesCount') or 0),
            unique_delegator_count=int(data.get('uniqueDelegatorsCount') or 0),
            observed_at_block=int(data['blockNumber']),
            produced_at=float(data.get('timestamp') or 0),
        )


@dataclass(frozen=True)
class ProposalAnalytics:
    total_proposals: int
    state_counts: dict[ProposalState, int]
    success_rate: Decimal
    avg_voting_turnout: Decimal

    def is_empty(self) -> bool:
        return False

    def count(self, state: ProposalState) -> int:
        return self.state_counts.get(state, 0)

    def to_json(self) -> dict[str, Any]:
        return {
            'totalProposals': self.total_proposals,
            'stateCounts': {state.name: self.count(state) for state in ProposalState},
            'successRate': str(self.success_rate),
            'avgVotingTurnout': str(self.avg_voting_turnout),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        counts = data.get('stateCounts') or {}
        return cls(
            total_proposals=int(data['totalProposals']),
            state_counts={ProposalState[name]: int(count) for name, count in counts.items()},
            success_rate=Decimal(str(data.get('successRate') or 0)),
            avg_voting_turnout=Decimal(str(data.get('avgVotingTurnout') or 0)),
        )


@dataclass(frozen=True)
class TokenAnalytics:
    total_supply: int
    active_holders: int
    active_delegates: int
    total_delegated: int
    percentage_delegated: Decimal
    tokens_per_holder: Decimal
    tokens_per_delegate: Decimal
    delegate_to_holder_ratio: Decimal
    source: str

    def is_empty(self) -> bool:
        return False

    def to_json(self) -> dict[str, Any]:
        return {
            'totalSupply': str(from_wei(self.total_supply)),
            'totalSupplyRaw': str(self.total_supply),
            'activeHolders': self.active_holders,
            'activeDelegates': self.active_delegates,
            'totalDelegated': str(from_wei(self.total_delegated)),
            'totalDelegatedRaw': str(self.total_delegated),
            'percentageDelegated': str(self.percentage_delegated),
            'tokensPerHolder': str(self.tokens_per_holder),
            'tokensPerDelegate': str(self.tokens_per_delegate),
            'delegateToHolderRatio': str(self.delegate_to_holder_ratio),
            'source': self.source,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            total_supply=_raw(data, 'totalSupplyRaw', 'totalSupply'),
            active_holders=int(data.get('activeHolders') or 0),
            active_delegates=int(data.get('activeDelegates') or 0),
            total_delegated=_raw(data, 'totalDelegatedRaw', 'totalDelegated'),
            percentage_delegated=Decimal(str(data.get('percentageDelegated') or 0)),
            tokens_per_holder=Decimal(str(data.get('tokensPerHolder') or 0)),
            tokens_per_delegate=Decimal(str(data.get('tokensPerDelegate') or 0)),
            delegate_to_holder_ratio=Decimal(str(data.get('delegateToHolderRatio') or 0)),
            source=str(data.get('source') or 'unknown'),
        )


@dataclass(frozen=True)
class TimelockAnalytics:
    min_delay: int
    max_delay: int
    grace_period: int
    executor_threshold: int
    threat_level_delays: dict[ThreatLevel, int]
    pending_transactions: int

    def is_empty(self) -> bool:
        return False

    def to_json(self) -> dict[str, Any]:
        return {
            'minDelay': self.min_delay,
            'maxDelay': self.max_delay,
            'gracePeriod': self.grace_period,
            'executorThreshold': str(from_wei(self.executor_threshold)),
            'executorThresholdRaw': str(self.executor_threshold),
            'threatLevelDelays': {level.name: delay for level, delay in self.threat_level_delays.items()},
            'pendingTransactions': self.pending_transactions,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        delays = data.get('threatLevelDelays') or {}
        return cls(
            min_delay=int(data['minDelay']),
            max_delay=int(data['maxDelay']),
            grace_period=int(data['gracePeriod']),
            executor_threshold=_raw(data, 'executorThresholdRaw', 'executorThreshold'),
            threat_level_delays={ThreatLevel[name]: int(delay) for name, delay in delays.items()},
            pending_transactions=int(data.get('pendingTransactions') or 0),
        )


@dataclass(frozen=True)
class CurrentStats:
    """Externally produced stats report; the shape is opaque"""

    data: dict[str, Any]
    source: str
    last_modified: float | None = None

    def is_empty(self) -> bool:
        return not self.data

    def to_json(self) -> dict[str, Any]:
        return {
            'data': self.data,
            'source': self.source,
            'lastModified': self.last_modified,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Self:
        return cls(
            data=dict(data['data']),
            source=str(data['source']),
            last_modified=data.get('lastModified'),
        )


Payload: TypeAlias = CrawlResult | ProposalAnalytics | TokenAnalytics | TimelockAnalytics | CurrentStats

PAYLOAD_TYPES: dict[CacheCategory, type[Payload]] = {
    CacheCategory.delegation: CrawlResult,
    CacheCategory.proposal: ProposalAnalytics,
    CacheCategory.token: TokenAnalytics,
    CacheCategory.timelock: TimelockAnalytics,
    CacheCategory.current_stats: CurrentStats,
}


@dataclass
class CacheEntry:
    category: CacheCategory
    payload: Payload
    stored_at: float = field(default=0.0)

    def to_json(self) -> dict[str, Any]:
        return {
            'payload': self.payload.to_json(),
            'storedAt': self.stored_at,
        }

    @classmethod
    def from_json(cls, category: CacheCategory, data: dict[str, Any]) -> CacheEntry:
        payload_type = PAYLOAD_TYPES[category]
        return cls(
            category=category,
            payload=payload_type.from_json(data['payload']),
            stored_at=float(data['storedAt']),
        )
