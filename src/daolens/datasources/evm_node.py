"""Ledger over Ethereum JSON-RPC.

Contract calls are plain `eth_call`s with ABI-encoded arguments; no contract ABI files are needed, only the
signatures below. Helper and snapshot functions are optional; a revert is reported as `DatasourceError` and
callers fall back.
"""

from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from eth_abi.abi import decode as decode_abi
from eth_abi.abi import encode as encode_abi
from eth_abi.exceptions import DecodingError
from eth_utils.crypto import keccak
from eth_utils.hexadecimal import decode_hex

from daolens.config import EvmNodeLedgerConfig
from daolens.config import HttpConfig
from daolens.datasources import Datasource
from daolens.enums import EventKind
from daolens.enums import ProposalState
from daolens.enums import ThreatLevel
from daolens.exceptions import ConfigurationError
from daolens.exceptions import DatasourceError
from daolens.ledger import GovernanceLedger
from daolens.ledger import LedgerEvent
from daolens.ledger import ProposalVotes
from daolens.ledger import SnapshotMetrics
from daolens.ledger import TimelockLedger
from daolens.ledger import TokenLedger
from daolens.ledger import normalize_account
from daolens.ledger import normalize_accounts
from daolens.ledger import normalize_depth
from daolens.ledger import normalize_int
from daolens.ledger import normalize_snapshot
from daolens.ledger import normalize_top_delegates
from daolens.ledger import normalize_votes
from daolens.models import Account

EVENT_SIGNATURES: dict[EventKind, str] = {
    EventKind.delegate_changed: 'DelegateChanged(address,address,address)',
    EventKind.transfer: 'Transfer(address,address,uint256)',
}
# NOTE: Positions of seed accounts among `(topic1, topic2, topic3)` or decoded data fields
EVENT_ACCOUNT_POSITIONS: dict[EventKind, tuple[int, ...]] = {
    EventKind.delegate_changed: (0, 2),
    EventKind.transfer: (0, 1),
}
EVENT_DATA_TYPES: dict[EventKind, tuple[str, ...]] = {
    EventKind.delegate_changed: ('address', 'address', 'address'),
    EventKind.transfer: ('address', 'address', 'uint256'),
}

GET_DELEGATION_PATH = 'getDelegationPath(address)'
GET_DELEGATION_PATH_OUTPUT = ('address[]', 'uint256')
GET_TOP_DELEGATE_CONCENTRATION = 'getTopDelegateConcentration(uint256)'
GET_TOP_DELEGATE_CONCENTRATION_OUTPUT = ('address[]', 'uint256[]', 'uint256[]')
GET_SNAPSHOT_METRICS = 'getSnapshotMetrics(uint256)'
GET_SNAPSHOT_METRICS_OUTPUT = ('uint256', 'uint256', 'uint256', 'uint256', 'uint256', 'address', 'uint256')
GET_PROPOSAL_VOTE_TOTALS_OUTPUT = ('uint256', 'uint256', 'uint256')

THREAT_LEVEL_GETTERS: dict[ThreatLevel, str] = {
    ThreatLevel.low: 'lowThreatDelay()',
    ThreatLevel.medium: 'mediumThreatDelay()',
    ThreatLevel.high: 'highThreatDelay()',
}


def event_topic(kind: EventKind) -> str:
    return '0x' + keccak(text=EVENT_SIGNATURES[kind]).hex()


def function_selector(signature: str) -> str:
    return '0x' + keccak(text=signature)[:4].hex()


def _input_types(signature: str) -> list[str]:
    arguments = signature[signature.index('(') + 1 : -1]
    return arguments.split(',') if arguments else []


class EvmNodeLedgerClient(Datasource[EvmNodeLedgerConfig], TokenLedger, GovernanceLedger, TimelockLedger):
    _default_http_config = HttpConfig(
        batch_size=10_000,
        ratelimit_sleep=1,
    )

    def __init__(self, config: EvmNodeLedgerConfig) -> None:
        super().__init__(config)
        self.batch_size = self._http_config.batch_size

    @property
    def has_helper(self) -> bool:
        return self._config.helper is not None

    async def current_block(self) -> int:
        return normalize_int(await self._jsonrpc_request('eth_blockNumber', []))

    async def total_supply(self, block: int) -> int:
        (value,) = await self._call(self._config.token, 'totalSupply()', (), ('uint256',), block)
        return int(value)

    async def balance_of(self, account: Account, block: int) -> int:
        (value,) = await self._call(self._config.token, 'balanceOf(address)', (account,), ('uint256',), block)
        return int(value)

    async def delegate_of(self, account: Account, block: int) -> Account | None:
        (value,) = await self._call(self._config.token, 'getDelegate(address)', (account,), ('address',), block)
        return normalize_account(value)

    async def delegators_of(self, account: Account) -> list[Account]:
        (values,) = await self._call(self._config.token, 'getDelegatorsOf(address)', (account,), ('address[]',))
        return normalize_accounts(values)

    async def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LedgerEvent]:
        logs = await self._jsonrpc_request(
            'eth_getLogs',
            [
                {
                    'address': self._config.token,
                    'fromBlock': hex(from_block),
                    'toBlock': hex(to_block),
                    'topics': [event_topic(kind)],
                }
            ],
        )
        return [self._parse_event(kind, log) for log in logs]

    async def delegation_depth(self, account: Account, block: int) -> int:
        helper = self._require(self._config.helper, 'helper')
        result = await self._call(helper, GET_DELEGATION_PATH, (account,), GET_DELEGATION_PATH_OUTPUT, block)
        return normalize_depth(result)

    async def top_delegates_by_concentration(self, n: int) -> list[Account]:
        helper = self._require(self._config.helper, 'helper')
        result = await self._call(
            helper,
            GET_TOP_DELEGATE_CONCENTRATION,
            (n,),
            GET_TOP_DELEGATE_CONCENTRATION_OUTPUT,
        )
        return normalize_top_delegates(result)

    async def snapshot_metrics(self) -> SnapshotMetrics | None:
        (snapshot_id,) = await self._call(self._config.token, 'getCurrentSnapshotId()', (), ('uint256',))
        result = await self._call(
            self._config.token,
            GET_SNAPSHOT_METRICS,
            (snapshot_id,),
            GET_SNAPSHOT_METRICS_OUTPUT,
        )
        return normalize_snapshot(result)

    async def proposal_state(self, proposal_id: int) -> ProposalState:
        governance = self._require(self._config.governance, 'governance')
        (value,) = await self._call(governance, 'getProposalState(uint256)', (proposal_id,), ('uint8',))
        return ProposalState(value)

    async def proposal_votes(self, proposal_id: int) -> ProposalVotes:
        governance = self._require(self._config.governance, 'governance')
        result = await self._call(
            governance,
            'getProposalVoteTotals(uint256)',
            (proposal_id,),
            GET_PROPOSAL_VOTE_TOTALS_OUTPUT,
        )
        return normalize_votes(result)

    async def min_delay(self) -> int:
        return await self._timelock_uint('minDelay()')

    async def max_delay(self) -> int:
        return await self._timelock_uint('maxDelay()')

    async def grace_period(self) -> int:
        return await self._timelock_uint('gracePeriod()')

    async def executor_threshold(self) -> int:
        return await self._timelock_uint('minExecutorTokenThreshold()')

    async def threat_level_delay(self, level: ThreatLevel) -> int:
        timelock = self._require(self._config.timelock, 'timelock')
        try:
            (value,) = await self._call(timelock, 'getDelayForThreatLevel(uint8)', (int(level),), ('uint256',))
        except DatasourceError as e:
            self._logger.debug('`getDelayForThreatLevel` failed, trying dedicated getter: %s', e)
            return await self._timelock_uint(THREAT_LEVEL_GETTERS[level])
        return int(value)

    async def pending_transaction_count(self) -> int:
        return await self._timelock_uint('getPendingTransactionCount()')

    async def _timelock_uint(self, signature: str) -> int:
        timelock = self._require(self._config.timelock, 'timelock')
        (value,) = await self._call(timelock, signature, (), ('uint256',))
        return int(value)

    def _require(self, address: str | None, field: str) -> str:
        if address is None:
            raise ConfigurationError(f'`ledger.{field}` address is required for this query')
        return address

    def _parse_event(self, kind: EventKind, log: dict[str, Any]) -> LedgerEvent:
        topics = log.get('topics') or []
        positions = EVENT_ACCOUNT_POSITIONS[kind]
        values: Sequence[Any]
        # NOTE: Some tokens emit these events without indexed arguments
        if len(topics) > max(positions) + 1:
            values = topics[1:]
        else:
            values = self._decode(EVENT_DATA_TYPES[kind], log.get('data') or '0x')

        accounts = tuple(a for a in (normalize_account(values[i]) for i in positions) if a is not None)
        return LedgerEvent(
            kind=kind,
            block_number=normalize_int(log.get('blockNumber') or 0),
            accounts=accounts,
        )

    async def _call(
        self,
        to: str,
        signature: str,
        args: Sequence[Any],
        output_types: Sequence[str],
        block: int | None = None,
    ) -> tuple[Any, ...]:
        data = function_selector(signature) + encode_abi(_input_types(signature), list(args)).hex()
        block_tag = hex(block) if block is not None else 'latest'
        result = await self._jsonrpc_request('eth_call', [{'to': to, 'data': data}, block_tag])
        return self._decode(output_types, result)

    def _decode(self, types: Sequence[str], data: str) -> tuple[Any, ...]:
        try:
            return decode_abi(list(types), decode_hex(data))
        except DecodingError as e:
            raise DatasourceError(f'Failed to decode `{data}` as {types}: {e}', self.name) from e

    async def _jsonrpc_request(
        self,
        method: str,
        params: Any,
    ) -> Any:
        request = {
            'jsonrpc': '2.0',
            'id': uuid4().hex,
            'method': method,
            'params': params,
        }
        data = await self.request(
            method='post',
            url='',
            json=request,
        )
        if not isinstance(data, dict):
            raise DatasourceError(f'Unexpected JSON-RPC response: {data!r}', self.name)
        if 'error' in data:
            raise DatasourceError(data['error']['message'], self.name)
        return data['result']
