"""`DAOLENS_*` environment switches, read once at import time"""

from os import getenv
from pathlib import Path


def get_bool(key: str) -> bool:
    return (getenv(key) or '').lower() in ('1', 'y', 'yes', 't', 'true', 'on')


def get_path(key: str) -> Path | None:
    value = getenv(key)
    if not value:
        return None
    return Path(value).expanduser()


def set_test() -> None:
    global TEST
    TEST = True


DEBUG: bool = get_bool('DAOLENS_DEBUG')
JSON_LOG: bool = get_bool('DAOLENS_JSON_LOG')
# NOTE: Overrides `cache.path` from config
CACHE_PATH: Path | None = get_path('DAOLENS_CACHE_PATH')
TEST: bool = get_bool('DAOLENS_TEST')
