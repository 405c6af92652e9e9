from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Sequence

from daolens.analytics import Loader
from daolens.cancellation import CancellationToken
from daolens.enums import CacheCategory
from daolens.enums import ThreatLevel
from daolens.exceptions import RequestCancelledError
from daolens.exceptions import SourceUnavailableError
from daolens.ledger import TimelockLedger
from daolens.models import Account
from daolens.models import TimelockAnalytics

DAY = 24 * 60 * 60
DEFAULT_MAX_DELAY = 30 * DAY
DEFAULT_GRACE_PERIOD = 14 * DAY
# NOTE: Multipliers of `minDelay` used when the contract doesn't report per-level delays
THREAT_LEVEL_MULTIPLIERS = {
    ThreatLevel.low: 1,
    ThreatLevel.medium: 3,
    ThreatLevel.high: 7,
}


class TimelockLoader(Loader):
    category = CacheCategory.timelock

    def __init__(self, ledger: TimelockLedger) -> None:
        super().__init__()
        self._ledger = ledger

    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> TimelockAnalytics:
        token.raise_if_cancelled()
        try:
            min_delay = await self._ledger.min_delay()
        except Exception as e:
            raise SourceUnavailableError(f'Failed to get timelock min delay: {e}', 'ledger') from e

        threat_level_delays: dict[ThreatLevel, int] = {}
        for level, multiplier in THREAT_LEVEL_MULTIPLIERS.items():
            delay = await self._get(token, f'{level.name} threat delay', self._delay_getter(level), 0)
            threat_level_delays[level] = delay or min_delay * multiplier

        return TimelockAnalytics(
            min_delay=min_delay,
            max_delay=await self._get(token, 'max delay', self._ledger.max_delay, DEFAULT_MAX_DELAY),
            grace_period=await self._get(token, 'grace period', self._ledger.grace_period, DEFAULT_GRACE_PERIOD),
            executor_threshold=await self._get(token, 'executor threshold', self._ledger.executor_threshold, 0),
            threat_level_delays=threat_level_delays,
            pending_transactions=await self._get(
                token,
                'pending transaction count',
                self._ledger.pending_transaction_count,
                0,
            ),
        )

    def _delay_getter(self, level: ThreatLevel) -> Callable[[], Awaitable[int]]:
        async def _get_delay() -> int:
            return await self._ledger.threat_level_delay(level)

        return _get_delay

    async def _get(
        self,
        token: CancellationToken,
        title: str,
        getter: Callable[[], Awaitable[int]],
        default: int,
    ) -> int:
        token.raise_if_cancelled()
        try:
            return await getter()
        except RequestCancelledError:
            raise
        except Exception as e:
            self._logger.warning('Using default %s (%s): %s', title, default, e)
            return default
