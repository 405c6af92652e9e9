from collections.abc import Sequence

from daolens.analytics import Loader
from daolens.cancellation import CancellationToken
from daolens.datasources.stats import SourceChain
from daolens.enums import CacheCategory
from daolens.models import Account
from daolens.models import CurrentStats


class CurrentStatsLoader(Loader):
    category = CacheCategory.current_stats

    def __init__(self, chain: SourceChain) -> None:
        super().__init__()
        self._chain = chain

    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> CurrentStats:
        stats = await self._chain.fetch(token)
        self._logger.info('Loaded report from `%s`', stats.source)
        return stats
