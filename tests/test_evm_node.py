from collections.abc import Sequence
from typing import TYPE_CHECKING
from typing import Any

import pytest
from aiohttp import web
from aiohttp.pytest_plugin import AiohttpClient
from eth_abi.abi import encode

from daolens.config import EvmNodeLedgerConfig
from daolens.config import HttpConfig
from daolens.datasources.evm_node import GET_DELEGATION_PATH
from daolens.datasources.evm_node import GET_SNAPSHOT_METRICS
from daolens.datasources.evm_node import GET_TOP_DELEGATE_CONCENTRATION
from daolens.datasources.evm_node import EvmNodeLedgerClient
from daolens.datasources.evm_node import _input_types
from daolens.datasources.evm_node import event_topic
from daolens.datasources.evm_node import function_selector
from daolens.enums import EventKind
from daolens.enums import ProposalState
from daolens.enums import ThreatLevel
from daolens.exceptions import ConfigurationError
from daolens.exceptions import DatasourceError
from daolens.models import ZERO_ACCOUNT
from tests import account
from tests import tokens

if TYPE_CHECKING:
    from aiohttp.test_utils import TestClient

TOKEN = account(0xA0)
GOVERNANCE = account(0xA1)
TIMELOCK = account(0xA2)
HELPER = account(0xA3)
A, B, D = account(1), account(2), account(4)


class FakeNode:
    """JSON-RPC endpoint answering pre-registered `eth_call`s; anything else reverts"""

    def __init__(self, block: int = 1_000_000) -> None:
        self.block = block
        self.logs: list[dict[str, Any]] = []
        self.requests: list[dict[str, Any]] = []
        self._results: dict[tuple[str, str], str] = {}

    def on_call(
        self,
        to: str,
        signature: str,
        args: Sequence[Any],
        output_types: Sequence[str],
        values: Sequence[Any],
    ) -> None:
        data = function_selector(signature) + encode(_input_types(signature), list(args)).hex()
        self._results[(to, data)] = '0x' + encode(list(output_types), list(values)).hex()

    async def handler(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append(body)
        response: dict[str, Any] = {'jsonrpc': '2.0', 'id': body['id']}

        method, params = body['method'], body['params']
        if method == 'eth_blockNumber':
            response['result'] = hex(self.block)
        elif method == 'eth_getLogs':
            response['result'] = self.logs
        elif method == 'eth_call' and (params[0]['to'], params[0]['data']) in self._results:
            response['result'] = self._results[(params[0]['to'], params[0]['data'])]
        else:
            response['error'] = {'code': -32000, 'message': 'execution reverted'}
        return web.json_response(response)


def _topic(address: str) -> str:
    return '0x' + '00' * 12 + address[2:]


async def _client(aiohttp_client: AiohttpClient, node: FakeNode, **config: Any) -> EvmNodeLedgerClient:
    fake_api = web.Application()
    fake_api.router.add_post('/', node.handler)
    fake_client: TestClient = await aiohttp_client(fake_api)
    fake_client_url = f'http://{fake_client.server.host}:{fake_client.server.port}'

    ledger_config = EvmNodeLedgerConfig(
        url=fake_client_url,
        token=TOKEN,
        http=HttpConfig(retry_count=0, batch_size=500),
        **config,
    )
    return EvmNodeLedgerClient(ledger_config)


async def test_token_queries(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    node.on_call(TOKEN, 'totalSupply()', (), ('uint256',), (tokens(1000),))
    node.on_call(TOKEN, 'balanceOf(address)', (A,), ('uint256',), (tokens(5),))
    node.on_call(TOKEN, 'getDelegate(address)', (A,), ('address',), (D,))
    node.on_call(TOKEN, 'getDelegate(address)', (B,), ('address',), (ZERO_ACCOUNT,))
    node.on_call(TOKEN, 'getDelegatorsOf(address)', (D,), ('address[]',), ([A, ZERO_ACCOUNT, B, A],))
    client = await _client(aiohttp_client, node)

    async with client:
        block = await client.current_block()
        assert block == 1_000_000
        assert await client.total_supply(block) == tokens(1000)
        assert node.requests[-1]['params'][1] == hex(block)
        assert await client.balance_of(A, block) == tokens(5)
        assert await client.delegate_of(A, block) == D
        assert await client.delegate_of(B, block) is None
        assert await client.delegators_of(D) == [A, B]
        assert node.requests[-1]['params'][1] == 'latest'

    assert client.batch_size == 500
    assert not client.has_helper


async def test_query_events(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    node.logs = [
        {
            'blockNumber': hex(999_000),
            'topics': [event_topic(EventKind.delegate_changed), _topic(A), _topic(ZERO_ACCOUNT), _topic(D)],
            'data': '0x',
        },
        {
            'blockNumber': hex(999_001),
            'topics': [event_topic(EventKind.delegate_changed)],
            'data': '0x' + encode(['address', 'address', 'address'], [B, D, A]).hex(),
        },
    ]
    client = await _client(aiohttp_client, node)

    async with client:
        events = await client.query_events(EventKind.delegate_changed, 998_000, 999_999)

    (request_filter,) = node.requests[-1]['params']
    assert request_filter == {
        'address': TOKEN,
        'fromBlock': hex(998_000),
        'toBlock': hex(999_999),
        'topics': [event_topic(EventKind.delegate_changed)],
    }
    assert [(e.block_number, e.accounts) for e in events] == [(999_000, (A, D)), (999_001, (B, A))]


async def test_helper_queries(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    node.on_call(HELPER, GET_DELEGATION_PATH, (A,), ('address[]', 'uint256'), ([A, D], 2))
    node.on_call(
        HELPER,
        GET_TOP_DELEGATE_CONCENTRATION,
        (20,),
        ('address[]', 'uint256[]', 'uint256[]'),
        ([D, B], [tokens(300), tokens(100)], [300_000, 100_000]),
    )
    node.on_call(TOKEN, 'getCurrentSnapshotId()', (), ('uint256',), (7,))
    node.on_call(
        TOKEN,
        GET_SNAPSHOT_METRICS,
        (7,),
        ('uint256', 'uint256', 'uint256', 'uint256', 'uint256', 'address', 'uint256'),
        (tokens(1000), 120, 15, tokens(400), tokens(300), D, 1700000000),
    )
    client = await _client(aiohttp_client, node, helper=HELPER)

    async with client:
        assert client.has_helper
        assert await client.delegation_depth(A, 1_000_000) == 2
        assert await client.top_delegates_by_concentration(20) == [D, B]
        snapshot = await client.snapshot_metrics()

    assert snapshot is not None
    assert snapshot.total_supply == tokens(1000)
    assert snapshot.active_holders == 120
    assert snapshot.active_delegates == 15
    assert snapshot.total_delegated == tokens(400)


async def test_governance_queries(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    node.on_call(GOVERNANCE, 'getProposalState(uint256)', (0,), ('uint8',), (5,))
    node.on_call(
        GOVERNANCE,
        'getProposalVoteTotals(uint256)',
        (0,),
        ('uint256', 'uint256', 'uint256'),
        (tokens(60), tokens(30), tokens(10)),
    )
    client = await _client(aiohttp_client, node, governance=GOVERNANCE)

    async with client:
        assert await client.proposal_state(0) == ProposalState.executed
        votes = await client.proposal_votes(0)
        with pytest.raises(DatasourceError):
            await client.proposal_state(1)

    assert votes.total == tokens(100)


async def test_timelock_queries(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    node.on_call(TIMELOCK, 'minDelay()', (), ('uint256',), (86400,))
    node.on_call(TIMELOCK, 'getDelayForThreatLevel(uint8)', (2,), ('uint256',), (7 * 86400,))
    node.on_call(TIMELOCK, 'lowThreatDelay()', (), ('uint256',), (86400,))
    client = await _client(aiohttp_client, node, timelock=TIMELOCK)

    async with client:
        assert await client.min_delay() == 86400
        assert await client.threat_level_delay(ThreatLevel.high) == 7 * 86400
        assert await client.threat_level_delay(ThreatLevel.low) == 86400
        with pytest.raises(DatasourceError):
            await client.threat_level_delay(ThreatLevel.medium)
        with pytest.raises(DatasourceError):
            await client.grace_period()


async def test_missing_contracts(aiohttp_client: AiohttpClient) -> None:
    client = await _client(aiohttp_client, FakeNode())

    async with client:
        with pytest.raises(ConfigurationError):
            await client.delegation_depth(A, 1)
        with pytest.raises(ConfigurationError):
            await client.proposal_state(0)
        with pytest.raises(ConfigurationError):
            await client.min_delay()


async def test_undecodable_result(aiohttp_client: AiohttpClient) -> None:
    node = FakeNode()
    client = await _client(aiohttp_client, node)
    node._results[(TOKEN, function_selector('totalSupply()'))] = '0x'

    async with client:
        with pytest.raises(DatasourceError):
            await client.total_supply(1)
