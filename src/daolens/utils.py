import logging
import os
from collections.abc import Iterator
from collections.abc import Mapping
from collections.abc import MutableMapping
from decimal import Decimal
from pathlib import Path
from typing import Any
from typing import TypeVar

import orjson
from pydantic import BaseModel
from pydantic import ValidationError

from daolens.exceptions import InvalidDataError

ObjectT = TypeVar('ObjectT', bound=BaseModel)

_logger = logging.getLogger(__name__)


def write(path: Path, content: str | bytes, overwrite: bool = False) -> bool:
    """Write content to file, create directory tree if necessary.

    The file is replaced atomically, so a reader never sees a half-written cache.
    """
    if path.exists() and not overwrite:
        return False
    if not path.parent.exists():
        _logger.info('Creating directory `%s`', path.parent)
        path.parent.mkdir(parents=True, exist_ok=True)

    _logger.debug('Writing into file `%s`', path)
    if isinstance(content, str):
        content = content.encode()
    tmp_path = path.with_name(f'.{path.name}.tmp')
    tmp_path.write_bytes(content)
    os.replace(tmp_path, path)
    return True


def iter_block_ranges(first_level: int, last_level: int, size: int) -> Iterator[tuple[int, int]]:
    """Split inclusive `[first_level, last_level]` range into chunks of at most `size` blocks"""
    for level in range(first_level, last_level + 1, size):
        yield level, min(level + size - 1, last_level)


class FormattedLogger(logging.LoggerAdapter[logging.Logger]):
    """Logger prefixing every message with a component name, e.g. `crawler: visited 120 accounts`"""

    def __init__(self, name: str, fmt: str | None = None) -> None:
        super().__init__(logging.getLogger(name), {})
        self.fmt = fmt

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        if self.fmt:
            msg = self.fmt.format(msg)
        return msg, kwargs


def parse_object(
    type_: type[ObjectT],
    data: Mapping[str, Any] | None,
) -> ObjectT:
    try:
        return type_.model_validate(data)
    except ValidationError as e:
        raise InvalidDataError(f'Failed to parse: {e.errors()}', type_, data) from e


def _default(obj: Any) -> Any:
    # NOTE: Ratios stay exact; clients parse them back with `Decimal`
    if isinstance(obj, Decimal):
        return str(obj)
    raise TypeError


def json_dumps(obj: Any, option: int | None = orjson.OPT_INDENT_2) -> bytes:
    """`orjson.dumps` which keeps decimals as strings"""
    return orjson.dumps(
        obj,
        default=_default,
        option=option,
    )
