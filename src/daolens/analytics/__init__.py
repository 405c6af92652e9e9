"""Category loaders: one per analytics category, each producing a fresh payload from primary sources"""

from abc import ABC
from abc import abstractmethod
from collections.abc import Sequence

from daolens.cancellation import CancellationToken
from daolens.enums import CacheCategory
from daolens.models import Account
from daolens.models import Payload
from daolens.utils import FormattedLogger


class Loader(ABC):
    category: CacheCategory

    def __init__(self) -> None:
        self._logger = FormattedLogger(__name__, self.category.value + ': {}')

    @abstractmethod
    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> Payload:
        """Compute payload; raise `SourceUnavailableError` when primary data can't be read"""
