from collections.abc import Sequence

from daolens import metrics as formulas
from daolens.analytics import Loader
from daolens.cache import ResultCache
from daolens.cancellation import CancellationToken
from daolens.enums import CacheCategory
from daolens.exceptions import RequestCancelledError
from daolens.exceptions import SourceUnavailableError
from daolens.ledger import SnapshotMetrics
from daolens.ledger import TokenLedger
from daolens.models import Account
from daolens.models import CrawlResult
from daolens.models import TokenAnalytics


class TokenLoader(Loader):
    """Token distribution from the snapshot contract; the last delegation crawl fills in when it's unavailable"""

    category = CacheCategory.token

    def __init__(self, ledger: TokenLedger, cache: ResultCache | None = None) -> None:
        super().__init__()
        self._ledger = ledger
        self._cache = cache

    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> TokenAnalytics:
        try:
            token.raise_if_cancelled()
            block = await self._ledger.current_block()
            token.raise_if_cancelled()
            total_supply = await self._ledger.total_supply(block)
        except RequestCancelledError:
            raise
        except Exception as e:
            raise SourceUnavailableError(f'Failed to get total supply: {e}', 'ledger') from e

        token.raise_if_cancelled()
        snapshot: SnapshotMetrics | None = None
        try:
            snapshot = await self._ledger.snapshot_metrics()
        except Exception as e:
            self._logger.warning('Failed to get snapshot metrics: %s', e)

        holders, delegates, total_delegated = 0, 0, 0
        if snapshot is not None:
            source = 'snapshot'
            holders = snapshot.active_holders
            delegates = snapshot.active_delegates
            total_delegated = snapshot.total_delegated
        elif (crawl := self._get_last_crawl()) is not None:
            source = 'delegation'
            delegates = crawl.unique_delegate_count
            total_delegated = crawl.total_delegated
        else:
            source = 'none'

        return TokenAnalytics(
            total_supply=total_supply,
            active_holders=holders,
            active_delegates=delegates,
            total_delegated=total_delegated,
            percentage_delegated=formulas.percentage_delegated(total_delegated, total_supply),
            tokens_per_holder=formulas.tokens_per_holder(total_supply, holders),
            tokens_per_delegate=formulas.tokens_per_delegate(total_delegated, delegates),
            delegate_to_holder_ratio=formulas.delegate_to_holder_ratio(delegates, holders),
            source=source,
        )

    def _get_last_crawl(self) -> CrawlResult | None:
        if self._cache is None:
            return None
        entry = self._cache.get(CacheCategory.delegation)
        if entry is None or not isinstance(entry.payload, CrawlResult) or entry.payload.is_empty():
            return None
        return entry.payload
