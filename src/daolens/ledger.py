"""Ledger interfaces consumed by crawler and analytics loaders.

Implementations return raw integer token amounts and canonical lower-case accounts. Every shape the wire may
take (tuples, structs, hex strings, padded words) is mapped to these types by the `normalize_*` helpers below,
so nothing downstream has to sniff payloads.
"""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from daolens.enums import EventKind
from daolens.enums import ProposalState
from daolens.enums import ThreatLevel
from daolens.models import ZERO_ACCOUNT
from daolens.models import Account
from daolens.models import to_account


@dataclass(frozen=True)
class LedgerEvent:
    """Token event reduced to the accounts it mentions.

    `DelegateChanged` yields `(delegator, to_delegate)`, `Transfer` yields `(from, to)`.
    """

    kind: EventKind
    block_number: int
    accounts: tuple[Account, ...]


@dataclass(frozen=True)
class SnapshotMetrics:
    total_supply: int
    active_holders: int
    active_delegates: int
    total_delegated: int


@dataclass(frozen=True)
class ProposalVotes:
    for_votes: int
    against_votes: int
    abstain_votes: int

    @property
    def total(self) -> int:
        return self.for_votes + self.against_votes + self.abstain_votes


class TokenLedger(ABC):
    """Point queries and event scans against a delegating token"""

    batch_size: int = 10_000

    @abstractmethod
    async def current_block(self) -> int: ...

    @abstractmethod
    async def total_supply(self, block: int) -> int: ...

    @abstractmethod
    async def balance_of(self, account: Account, block: int) -> int: ...

    @abstractmethod
    async def delegate_of(self, account: Account, block: int) -> Account | None: ...

    @abstractmethod
    async def delegators_of(self, account: Account) -> list[Account]: ...

    @abstractmethod
    async def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LedgerEvent]: ...

    @property
    def has_helper(self) -> bool:
        return False

    async def delegation_depth(self, account: Account, block: int) -> int:
        raise NotImplementedError

    async def top_delegates_by_concentration(self, n: int) -> list[Account]:
        raise NotImplementedError

    async def snapshot_metrics(self) -> SnapshotMetrics | None:
        return None


class GovernanceLedger(ABC):
    @abstractmethod
    async def proposal_state(self, proposal_id: int) -> ProposalState: ...

    @abstractmethod
    async def proposal_votes(self, proposal_id: int) -> ProposalVotes: ...


class TimelockLedger(ABC):
    @abstractmethod
    async def min_delay(self) -> int: ...

    @abstractmethod
    async def max_delay(self) -> int: ...

    @abstractmethod
    async def grace_period(self) -> int: ...

    @abstractmethod
    async def executor_threshold(self) -> int: ...

    @abstractmethod
    async def threat_level_delay(self, level: ThreatLevel) -> int: ...

    @abstractmethod
    async def pending_transaction_count(self) -> int: ...


def normalize_int(value: Any) -> int:
    """Accept int, `0x`-prefixed hex, decimal string or big-endian bytes"""
    if isinstance(value, bool):
        raise ValueError(f'`{value}` is not an integer')
    if isinstance(value, int):
        return value
    if isinstance(value, bytes | bytearray):
        return int.from_bytes(value, 'big')
    if isinstance(value, str):
        return int(value, 16) if value.startswith(('0x', '0X')) else int(value)
    raise ValueError(f'`{value}` is not an integer')


def normalize_account(value: Any) -> Account | None:
    """Map any address encoding to a canonical account; zero and empty values become `None`"""
    if value is None:
        return None
    if isinstance(value, bytes | bytearray):
        # NOTE: 32-byte words hold the address in the lowest 20 bytes
        value = '0x' + bytes(value[-20:]).hex()
    elif isinstance(value, int):
        value = '0x' + value.to_bytes(32, 'big')[-20:].hex()
    elif isinstance(value, str) and len(value) == 66:
        value = '0x' + value[-40:]
    if not value:
        return None
    account = to_account(value)
    return None if account == ZERO_ACCOUNT else account


def normalize_accounts(values: Sequence[Any]) -> list[Account]:
    """Normalize a list of addresses, skipping zero entries and keeping first-seen order"""
    result: list[Account] = []
    for value in values:
        account = normalize_account(value)
        if account is not None and account not in result:
            result.append(account)
    return result


def normalize_depth(value: Any) -> int:
    """Depth from `getDelegationPath`: bare int, `(path, depth)` tuple or struct with `depth` key"""
    if isinstance(value, Mapping):
        value = value.get('depth')
    elif isinstance(value, Sequence) and not isinstance(value, str | bytes):
        value = value[-1] if value else None
    if value is None:
        return 1
    return max(normalize_int(value), 1)


def normalize_top_delegates(value: Any) -> list[Account]:
    """Accounts from `getTopDelegateConcentration`: a list of addresses or a struct/tuple holding one first"""
    if isinstance(value, Mapping):
        value = value.get('topDelegates') or ()
    elif isinstance(value, tuple) and value and isinstance(value[0], Sequence) and not isinstance(value[0], str):
        value = value[0]
    return normalize_accounts(value)


def normalize_snapshot(value: Any) -> SnapshotMetrics:
    """`getSnapshotMetrics` result: positional tuple or named struct"""
    if isinstance(value, Mapping):
        return SnapshotMetrics(
            total_supply=normalize_int(value.get('totalSupply') or 0),
            active_holders=normalize_int(value.get('activeHolders') or 0),
            active_delegates=normalize_int(value.get('activeDelegates') or 0),
            total_delegated=normalize_int(value.get('totalDelegatedTokens') or value.get('totalDelegated') or 0),
        )
    if len(value) < 4:
        raise ValueError(f'Snapshot metrics tuple is too short: {value}')
    return SnapshotMetrics(
        total_supply=normalize_int(value[0]),
        active_holders=normalize_int(value[1]),
        active_delegates=normalize_int(value[2]),
        total_delegated=normalize_int(value[3]),
    )


def normalize_votes(value: Any) -> ProposalVotes:
    """`getProposalVoteTotals` result: `(for, against, abstain, ...)` or struct with either naming"""
    if isinstance(value, Mapping):
        return ProposalVotes(
            for_votes=normalize_int(value.get('yesVotes') or value.get('forVotes') or 0),
            against_votes=normalize_int(value.get('noVotes') or value.get('againstVotes') or 0),
            abstain_votes=normalize_int(value.get('abstainVotes') or 0),
        )
    padded = (*value, 0, 0, 0)
    return ProposalVotes(
        for_votes=normalize_int(padded[0]),
        against_votes=normalize_int(padded[1]),
        abstain_votes=normalize_int(padded[2]),
    )
