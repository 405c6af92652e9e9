"""Time-bounded store of computed analytics, one entry per category.

Entries older than `ttl` seconds or holding an empty payload are treated as absent by `is_valid`. When `path`
is set, entries survive restarts in a single JSON file.
"""

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import orjson

from daolens.enums import CacheCategory
from daolens.models import CacheEntry
from daolens.models import Payload
from daolens.utils import json_dumps
from daolens.utils import write

DEFAULT_TTL = 300.0

_logger = logging.getLogger(__name__)


class ResultCache:
    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        path: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl
        self._path = path
        self._clock = clock
        self._entries: dict[CacheCategory, CacheEntry] = {}
        if path is not None:
            self._load(path)

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, category: CacheCategory) -> CacheEntry | None:
        return self._entries.get(category)

    def put(self, category: CacheCategory, payload: Payload) -> None:
        self._entries[category] = CacheEntry(
            category=category,
            payload=payload,
            stored_at=self._clock(),
        )
        if self._path is not None:
            self._dump(self._path)

    def is_valid(self, category: CacheCategory) -> bool:
        entry = self._entries.get(category)
        if entry is None:
            return False
        if self._clock() - entry.stored_at >= self._ttl:
            return False
        return not entry.payload.is_empty()

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            raw = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            _logger.debug('Ignoring unreadable cache file `%s`: %s', path, e)
            return
        if not isinstance(raw, dict):
            _logger.debug('Ignoring cache file `%s`: not an object', path)
            return

        for key, data in raw.items():
            try:
                category = CacheCategory(key)
                self._entries[category] = CacheEntry.from_json(category, data)
            except (AttributeError, KeyError, TypeError, ValueError, ArithmeticError) as e:
                _logger.debug('Ignoring malformed cache entry `%s`: %r', key, e)

    def _dump(self, path: Path) -> None:
        data: dict[str, Any] = {
            category.value: entry.to_json() for category, entry in self._entries.items()
        }
        write(path, json_dumps(data), overwrite=True)
