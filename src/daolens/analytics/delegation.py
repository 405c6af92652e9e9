from collections.abc import Sequence

from daolens.analytics import Loader
from daolens.cancellation import CancellationToken
from daolens.crawler import DelegationCrawler
from daolens.enums import CacheCategory
from daolens.models import Account
from daolens.models import CrawlResult


class DelegationLoader(Loader):
    category = CacheCategory.delegation

    def __init__(self, crawler: DelegationCrawler) -> None:
        super().__init__()
        self._crawler = crawler

    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> CrawlResult:
        if important:
            self._logger.debug('Crawling %s important accounts first', len(important))
        return await self._crawler.crawl(token, important)
