from typing import Generic
from typing import Protocol
from typing import TypeVar

from daolens.config import HttpConfig
from daolens.config import ResolvedHttpConfig
from daolens.http import HTTPGateway
from daolens.utils import FormattedLogger


class DatasourceConfig(Protocol):
    url: str
    http: HttpConfig | None

    @property
    def name(self) -> str: ...


DatasourceConfigT = TypeVar('DatasourceConfigT', bound=DatasourceConfig)


class Datasource(HTTPGateway, Generic[DatasourceConfigT]):
    _default_http_config = HttpConfig()

    def __init__(self, config: DatasourceConfigT) -> None:
        self._config = config
        http_config = ResolvedHttpConfig.create(self._default_http_config, config.http)
        http_config.alias = http_config.alias or config.name
        super().__init__(
            url=config.url,
            http_config=http_config,
        )
        self._logger = FormattedLogger(__name__, config.name + ': {}')

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} {self.name}>'

    @property
    def name(self) -> str:
        return self._config.name
