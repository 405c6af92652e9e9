import time
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from daolens import metrics as formulas
from daolens.config import HttpConfig
from daolens.config import RemoteSourceConfig
from daolens.crawler import aggregate_edges
from daolens.datasources import Datasource
from daolens.enums import CacheCategory
from daolens.exceptions import InvalidDataError
from daolens.exceptions import InvalidRequestError
from daolens.models import PAYLOAD_TYPES
from daolens.models import CrawlResult
from daolens.models import DelegationEdge
from daolens.models import Payload
from daolens.models import is_self_delegation
from daolens.models import to_account
from daolens.utils import parse_object


class RemoteEdge(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    delegator: str = Field(validation_alias=AliasChoices('delegator', 'address'))
    delegate: str
    voting_power: Decimal = Field(validation_alias=AliasChoices('votingPower', 'voting_power'))
    depth: int = 1


class RemoteDelegationData(BaseModel):
    """Precomputed delegation graph; both historical field spellings are accepted"""

    model_config = ConfigDict(extra='ignore', frozen=True)

    block_number: int = Field(validation_alias=AliasChoices('blockNumber', 'block_number'))
    total_supply: Decimal = Field(validation_alias=AliasChoices('totalSupply', 'total_supply'))
    edges: list[RemoteEdge] = Field(
        default_factory=list,
        validation_alias=AliasChoices('edges', 'delegations'),
    )
    timestamp: float | None = None


class RemoteSource(Datasource[RemoteSourceConfig]):
    """API serving results computed elsewhere; any failure means falling back to the ledger"""

    _default_http_config = HttpConfig(
        retry_count=0,
    )

    def __init__(self, config: RemoteSourceConfig, top_n: int = 20, concentration_n: int = 5) -> None:
        super().__init__(config)
        self._top_n = top_n
        self._concentration_n = concentration_n

    @property
    def timeout(self) -> float:
        return self._config.timeout

    def has(self, category: CacheCategory) -> bool:
        return self._config.get_path(category) is not None

    async def fetch(self, category: CacheCategory) -> Payload:
        path = self._config.get_path(category)
        if path is None:
            raise InvalidRequestError(f'No path configured for `{category.value}`', self.url)

        headers = {'X-API-Key': self._config.api_key} if self._config.api_key else {}
        data = await self.request('get', path, headers=headers)
        if not isinstance(data, dict):
            raise InvalidRequestError('Response is not a JSON object', f'{self.url}/{path}')

        if category == CacheCategory.delegation:
            return self._parse_delegation(data)

        payload_type = PAYLOAD_TYPES[category]
        try:
            return payload_type.from_json(data)
        except (AttributeError, KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise InvalidDataError(str(e), payload_type, data) from e

    def _parse_delegation(self, data: dict[str, Any]) -> CrawlResult:
        remote = parse_object(RemoteDelegationData, data)
        total_supply = formulas.to_wei(remote.total_supply)

        edges: list[DelegationEdge] = []
        seen: set[str] = set()
        try:
            for item in remote.edges:
                delegator, delegate = to_account(item.delegator), to_account(item.delegate)
                balance = formulas.to_wei(item.voting_power)
                if delegator in seen or balance <= 0 or is_self_delegation(delegator, delegate):
                    continue
                seen.add(delegator)
                edges.append(DelegationEdge(delegator, delegate, balance, max(item.depth, 1)))
        except ValueError as e:
            raise InvalidDataError(str(e), RemoteDelegationData, data) from e

        aggregation = aggregate_edges(edges, total_supply, self._top_n)
        return CrawlResult(
            edges=tuple(edges),
            top_delegates=aggregation.top_delegates,
            total_supply=total_supply,
            total_delegated=aggregation.total_delegated,
            percentage_delegated=formulas.percentage_delegated(aggregation.total_delegated, total_supply),
            top5_concentration=formulas.top_n_concentration(aggregation.top_delegates, self._concentration_n),
            unique_delegate_count=aggregation.unique_delegate_count,
            unique_delegator_count=aggregation.unique_delegator_count,
            observed_at_block=remote.block_number,
            produced_at=remote.timestamp or time.time(),
        )
